from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import RosterSessionLocal, init_database, load_roster, seed_roster  # noqa: E402
from data_exchange import import_roster  # noqa: E402
from roster import default_roster  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the planner roster.")
    parser.add_argument("--from-json", type=Path, default=None, help="Roster export to load instead of the defaults.")
    args = parser.parse_args()

    init_database()
    with RosterSessionLocal() as session:
        if args.from_json:
            count = import_roster(session, args.from_json)
            print(f"[seed] Imported {count} people from {args.from_json}.")
        else:
            count = seed_roster(session, default_roster())
            print(f"[seed] Added {count} default people.")
        for person in load_roster(session):
            shares = f"{person.primary_share}/{person.secondary_share}/{person.remote_share}"
            state = "active" if person.active else "inactive"
            print(f"[seed] {person.name:<10} {shares:<10} {state}")


if __name__ == "__main__":
    main()
