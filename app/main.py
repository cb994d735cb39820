from __future__ import annotations

import argparse
import datetime
import json
import sys
from pathlib import Path
from typing import List, Optional

APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import get_month_state, init_database, seed_roster, toggle_absence, toggle_all_hands_day  # noqa: E402
from data_exchange import ImportFormatError, export_month_csv, import_month_csv  # noqa: E402
from generator.api import generate_plan_for_month  # noqa: E402
from generator.calendar_days import month_start  # noqa: E402
from generator.usage import usage_payload  # noqa: E402
from policy import ensure_default_policy  # noqa: E402
from roster import default_roster  # noqa: E402
from validation import validate_month  # noqa: E402


def _month_arg(value: str) -> datetime.date:
    try:
        return month_start(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _default_month(today: datetime.date | None = None) -> datetime.date:
    return month_start(today or datetime.date.today())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Monthly site planner.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create databases and the baseline policy.")
    sub.add_parser("seed", help="Insert the default roster.")

    generate = sub.add_parser("generate", help="Regenerate a month (discards manual edits).")
    generate.add_argument("--month", type=_month_arg, default=None)
    generate.add_argument("--all-hands", action="append", default=[], help="YYYY-MM-DD, up to two.")
    generate.add_argument("--absent", action="append", default=[], help="person_id:YYYY-MM-DD")
    generate.add_argument("--actor", default="cli")

    show = sub.add_parser("show", help="Print the stored month as JSON.")
    show.add_argument("--month", type=_month_arg, default=None)

    export = sub.add_parser("export", help="Write the month to a CSV file.")
    export.add_argument("--month", type=_month_arg, default=None)
    export.add_argument("--include-absent", action="store_true")

    importer = sub.add_parser("import", help="Replace the month's table from a CSV file.")
    importer.add_argument("path", type=Path)
    importer.add_argument("--month", type=_month_arg, default=None)

    validate = sub.add_parser("validate", help="Print validation findings.")
    validate.add_argument("--month", type=_month_arg, default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    month = getattr(args, "month", None) or _default_month()
    init_database()
    ensure_default_policy(database.SessionLocal)
    try:
        return _run(args, month)
    except ValueError as exc:
        print(f"[planner] {exc}", file=sys.stderr)
        return 1


def _run(args: argparse.Namespace, month: datetime.date) -> int:
    if args.command == "init":
        print(f"[planner] Databases ready in {database.DATA_DIR}")
        return 0

    if args.command == "seed":
        with database.RosterSessionLocal() as roster_session:
            created = seed_roster(roster_session, default_roster())
        print(f"[planner] Seeded {created} people.")
        return 0

    if args.command == "generate":
        with database.SessionLocal() as session:
            for value in args.all_hands:
                if month_start(value) != month:
                    raise ValueError(f"All-hands date {value} is outside {month:%Y-%m}.")
                if value not in [day.isoformat() for day in database.get_all_hands_dates(session, month)]:
                    toggle_all_hands_day(session, value)
            existing = database.get_absence_map(session, month)
            for entry in args.absent:
                person_id, _, day = entry.partition(":")
                if datetime.date.fromisoformat(day) not in existing.get(person_id, []):
                    toggle_absence(session, person_id, day)
        summary = generate_plan_for_month(
            database.SessionLocal,
            month,
            args.actor,
            roster_session_factory=database.RosterSessionLocal,
        )
        print(f"[planner] Generated {summary['cells_assigned']} cells for {summary['month'][:7]}.")
        for warning in summary["warnings"]:
            print(f"[planner] warning: {warning}")
        return 0

    if args.command == "show":
        with database.SessionLocal() as session:
            state = get_month_state(session, month)
        state["usage"] = usage_payload(state["plan"], state["days"])
        print(json.dumps(state, indent=2))
        return 0

    if args.command == "export":
        with database.SessionLocal() as session:
            path = export_month_csv(session, month, include_absent=args.include_absent)
        print(f"[planner] Wrote {path}")
        return 0

    if args.command == "import":
        try:
            with database.SessionLocal() as session:
                cells = import_month_csv(session, month, args.path, actor="cli")
        except ImportFormatError as exc:
            print(f"[planner] Import rejected: {exc}", file=sys.stderr)
            return 2
        print(f"[planner] Imported {cells} cells.")
        return 0

    if args.command == "validate":
        with database.SessionLocal() as session:
            report = validate_month(session, month)
        for check in report["checks"]:
            marker = "ok" if check["status"] == "ok" else "FAIL"
            details = f" - {check['details']}" if check["details"] else ""
            print(f"[{marker}] {check['label']}{details}")
        return 1 if report["issues"] else 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
