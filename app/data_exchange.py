from __future__ import annotations

import csv
import datetime
import io
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import delete

from database import (
    DATA_DIR,
    AbsenceDay,
    AllHandsDay,
    get_active_policy,
    get_all_hands_dates,
    get_month_plan,
    get_month_state,
    get_or_create_month,
    load_roster,
    record_audit_log,
    save_month_plan,
    stage_assignments,
    upsert_person,
)
from generator.calendar_days import business_days, day_label, iso, long_day_label, month_start, parse_iso
from policy import _normalize_policy, all_hands_limit, load_active_policy, site_labels
from roster import Person, PersonRule, active_people
from sites import Site, normalize_label, parse_site, site_label

EXPORT_DIR = DATA_DIR / "exports"
EXPORT_DIR.mkdir(parents=True, exist_ok=True)
HEADER_FIRST_CELL = "Person"
ALL_HANDS_MARKER = "All-hands days:"


class ImportFormatError(ValueError):
    """Raised when a text import cannot be applied; nothing is written."""


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


# ---------------------------------------------------------------------------
# Plan text format


def export_plan_csv(
    plan: Mapping[str, Mapping[str, Any]],
    days: Sequence[datetime.date],
    roster: Sequence[Person],
    *,
    all_hands: Iterable[datetime.date] = (),
    labels: Optional[Dict[Site, str]] = None,
    include_absent: bool = False,
) -> str:
    """Render the table as CSV text.

    ABSENT is written with the REMOTE label unless ``include_absent`` is set.
    Cells missing from ``plan`` are written as REMOTE.
    """
    labels = labels or site_labels({})
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([HEADER_FIRST_CELL, *[day_label(day) for day in days]])
    for person in active_people(roster):
        row = [person.name]
        for day in days:
            value = (plan.get(iso(day)) or {}).get(person.id, Site.REMOTE.value)
            site = Site(str(value))
            if site is Site.ABSENT and not include_absent:
                site = Site.REMOTE
            row.append(site_label(site, labels))
        writer.writerow(row)
    all_hands = sorted(parse_iso(value) for value in all_hands)
    if all_hands:
        writer.writerow([])
        writer.writerow([ALL_HANDS_MARKER])
        for day in all_hands:
            writer.writerow([long_day_label(day)])
    return buffer.getvalue()


def import_plan_csv(
    text: str,
    days: Sequence[datetime.date],
    roster: Sequence[Person],
    *,
    labels: Optional[Dict[Site, str]] = None,
) -> Dict[str, Dict[str, str]]:
    """Parse CSV text back into a plan keyed by ISO day then person id.

    Only site labels come back; absence and shares are not carried by the
    format. Unknown labels fall back to REMOTE, unknown names are skipped.
    """
    labels = labels or site_labels({})
    by_label = {normalize_label(label): site for site, label in labels.items()}
    by_name = {person.name.strip(): person for person in roster}
    lines = [line for line in (text or "").splitlines() if line.strip()]
    if len(lines) < 2:
        raise ImportFormatError("Expected a header row and at least one person row.")
    rows = list(csv.reader(lines))
    header = [cell.strip() for cell in rows[0]]
    if not header or header[0] != HEADER_FIRST_CELL:
        raise ImportFormatError(f"Header must start with '{HEADER_FIRST_CELL}'.")
    expected = len(days) + 1
    if len(header) < expected:
        raise ImportFormatError(f"Header has {len(header) - 1} day columns, expected {len(days)}.")

    plan: Dict[str, Dict[str, str]] = {iso(day): {} for day in days}
    matched = 0
    for row in rows[1:]:
        first = row[0].strip() if row else ""
        if first.startswith(ALL_HANDS_MARKER.rstrip(":")):
            break
        if len(row) < expected:
            raise ImportFormatError(f"Row '{first}' has {len(row) - 1} day columns, expected {len(days)}.")
        person = by_name.get(first)
        if person is None:
            continue
        matched += 1
        for index, day in enumerate(days, start=1):
            site = by_label.get(normalize_label(row[index]), Site.REMOTE)
            plan[iso(day)][person.id] = site.value
    if not matched:
        raise ImportFormatError("No row matches a person on the roster.")
    return plan


def export_month_csv(session, month, *, roster_session=None, include_absent: bool = False) -> Path:
    first = month_start(month)
    policy_model = get_active_policy(session)
    labels = site_labels(_normalize_policy(policy_model.params_dict() if policy_model else {}))
    text = export_plan_csv(
        get_month_plan(session, first),
        business_days(first),
        load_roster(roster_session),
        all_hands=get_all_hands_dates(session, first),
        labels=labels,
        include_absent=include_absent,
    )
    filename = EXPORT_DIR / f"plan_{first:%Y-%m}_{_timestamp()}.csv"
    filename.write_text(text, encoding="utf-8")
    return filename


def import_month_text(session, month, text: str, *, roster_session=None, actor: str = "import") -> int:
    """Parse first, then replace the stored table in one step."""
    first = month_start(month)
    policy_model = get_active_policy(session)
    labels = site_labels(_normalize_policy(policy_model.params_dict() if policy_model else {}))
    roster = load_roster(roster_session)
    plan = import_plan_csv(text, business_days(first), roster, labels=labels)
    cells = save_month_plan(session, first, plan, source="imported", status="imported")
    month_plan = get_or_create_month(session, first)
    record_audit_log(session, actor, "plan_import", target_id=month_plan.id, payload={"cells": cells})
    return cells


def import_month_csv(session, month, file_path: Path, *, roster_session=None, actor: str = "import") -> int:
    text = Path(file_path).read_text(encoding="utf-8")
    return import_month_text(session, month, text, roster_session=roster_session, actor=actor)


# ---------------------------------------------------------------------------
# JSON state snapshot


def export_month_state(session, month) -> Path:
    state = get_month_state(session, month)
    filename = EXPORT_DIR / f"state_{state['month'][:7]}_{_timestamp()}.json"
    filename.write_text(
        json.dumps({"generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(), **state}, indent=2),
        encoding="utf-8",
    )
    return filename


def import_month_state(session, file_path: Path, *, actor: str = "import") -> Dict[str, int]:
    """Restore all-hands dates, absences and the table from a snapshot.

    The whole file is checked before anything is written, and the three
    parts land in a single commit: a rejected snapshot leaves the month as
    it was.
    """
    data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    if not isinstance(data, dict) or "month" not in data:
        raise ValueError("State file must be a JSON object with a 'month' key.")
    first = month_start(data["month"])
    month_days = business_days(first)
    allowed = {iso(day) for day in month_days}

    plan: Dict[str, Dict[str, str]] = {}
    for day_iso, row in (data.get("plan") or {}).items():
        if day_iso not in allowed:
            continue
        if not isinstance(row, dict):
            raise ValueError(f"Plan row for {day_iso} must be an object of person ids to sites.")
        plan[day_iso] = {person_id: parse_site(site).value for person_id, site in row.items()}

    all_hands = sorted({parse_iso(value) for value in data.get("all_hands") or []})
    limit = all_hands_limit(load_active_policy(session))
    if any(iso(day) not in allowed for day in all_hands) or len(all_hands) > limit:
        raise ValueError(f"State file lists all-hands dates outside the month or more than {limit} of them.")

    absence_rows: List[AbsenceDay] = []
    for person_id, values in (data.get("absences") or {}).items():
        days = {parse_iso(value) for value in values}
        absence_rows.extend(
            AbsenceDay(person_id=person_id, day=day) for day in sorted(days) if iso(day) in allowed
        )

    month_plan = get_or_create_month(session, first)
    month_plan.all_hands.clear()
    session.flush()
    month_plan.all_hands.extend(AllHandsDay(day=day) for day in all_hands)
    session.execute(
        delete(AbsenceDay).where(AbsenceDay.day >= month_days[0], AbsenceDay.day <= month_days[-1])
    )
    session.add_all(absence_rows)
    cells = stage_assignments(session, month_plan, plan, source="imported")
    month_plan.status = "imported"
    # The audit row's commit persists every staged change above.
    record_audit_log(session, actor, "state_import", target_id=month_plan.id, payload={"cells": cells})
    return {"cells": cells, "absences": len(absence_rows), "all_hands": len(all_hands)}


# ---------------------------------------------------------------------------
# Roster import/export


def export_roster(roster_session=None) -> Path:
    payload = [person.to_dict() for person in load_roster(roster_session)]
    filename = EXPORT_DIR / f"roster_{_timestamp()}.json"
    filename.write_text(
        json.dumps({"generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(), "people": payload}, indent=2),
        encoding="utf-8",
    )
    return filename


def import_roster(roster_session, file_path: Path) -> int:
    data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    imported = 0
    for position, payload in enumerate(data.get("people", [])):
        person_id = payload.get("id")
        name = payload.get("name")
        if not person_id or not name:
            continue
        shares = payload.get("shares") or {}
        try:
            rules = tuple(PersonRule.from_dict(entry) for entry in payload.get("rules", []))
        except ValueError:
            continue
        person = Person(
            id=person_id,
            name=name,
            primary_share=int(shares.get(Site.PRIMARY.value, 0)),
            secondary_share=int(shares.get(Site.SECONDARY.value, 0)),
            remote_share=int(shares.get(Site.REMOTE.value, 0)),
            active=bool(payload.get("active", True)),
            rules=rules,
        )
        upsert_person(roster_session, person, position=position)
        imported += 1
    return imported
