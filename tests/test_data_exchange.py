from __future__ import annotations

import datetime
import json
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database as db  # noqa: E402
from database import (  # noqa: E402
    Base,
    Member,
    MemberRule,
    RosterBase,
    get_all_hands_dates,
    get_absence_map,
    get_month_plan,
    get_month_state,
    load_roster,
    save_month_plan,
    seed_roster,
    toggle_absence,
    toggle_all_hands_day,
)
from data_exchange import (  # noqa: E402
    ImportFormatError,
    export_month_csv,
    export_month_state,
    export_plan_csv,
    export_roster,
    import_month_csv,
    import_month_state,
    import_month_text,
    import_plan_csv,
    import_roster,
)
from generator.calendar_days import business_days  # noqa: E402
from generator.engine import PlanGenerator  # noqa: E402
from roster import Person, PersonRule, default_roster  # noqa: E402
from sites import Site  # noqa: E402

MONTH = datetime.date(2025, 11, 1)


@pytest.fixture()
def memory_db(monkeypatch, tmp_path):
    """In-memory planner and roster databases; exports land in a temp folder."""
    planner_engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    roster_engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Session = sessionmaker(bind=planner_engine, expire_on_commit=False, future=True)
    RosterSession = sessionmaker(bind=roster_engine, expire_on_commit=False, future=True)

    monkeypatch.setattr(db, "planner_engine", planner_engine)
    monkeypatch.setattr(db, "roster_engine", roster_engine)
    monkeypatch.setattr(db, "SessionLocal", Session)
    monkeypatch.setattr(db, "RosterSessionLocal", RosterSession)
    Base.metadata.create_all(planner_engine)
    RosterBase.metadata.create_all(roster_engine)

    monkeypatch.setattr("data_exchange.EXPORT_DIR", tmp_path, raising=False)

    session = Session()
    roster_session = RosterSession()
    seed_roster(roster_session, default_roster())
    try:
        yield {"session": session, "roster_session": roster_session, "tmp": tmp_path}
    finally:
        session.close()
        roster_session.close()
        planner_engine.dispose()
        roster_engine.dispose()


def _generated_plan(absences=None, all_hands=()):
    result = PlanGenerator(default_roster()).generate(MONTH, all_hands=all_hands, absences=absences)
    return result.as_payload()


def test_export_layout() -> None:
    payload = _generated_plan(all_hands=["2025-11-05"])
    text = export_plan_csv(payload["plan"], business_days(MONTH), default_roster(), all_hands=payload["all_hands"])
    lines = text.splitlines()
    assert lines[0].startswith("Person,Mon 3 Nov,Tue 4 Nov,Wed 5 Nov")
    assert lines[0].endswith("Fri 28 Nov")
    assert lines[1].startswith("Bertrand,")
    assert lines[1].split(",")[3] == "Issy"
    assert len(lines) == 1 + 12 + 3
    assert lines[-2] == "All-hands days:"
    assert lines[-1] == "Wednesday 5 November 2025"


def test_round_trip_keeps_sites_and_drops_absence() -> None:
    absences = {"eva": ["2025-11-06"]}
    payload = _generated_plan(absences=absences, all_hands=["2025-11-05"])
    days = business_days(MONTH)
    text = export_plan_csv(payload["plan"], days, default_roster(), all_hands=payload["all_hands"])
    restored = import_plan_csv(text, days, default_roster())
    for day_iso, row in payload["plan"].items():
        for person_id, site in row.items():
            expected = Site.REMOTE.value if site == Site.ABSENT.value else site
            assert restored[day_iso][person_id] == expected
    assert restored["2025-11-06"]["eva"] == "REMOTE"


def test_include_absent_writes_out_of_office() -> None:
    payload = _generated_plan(absences={"eva": ["2025-11-06"]})
    days = business_days(MONTH)
    text = export_plan_csv(payload["plan"], days, default_roster(), include_absent=True)
    assert "Out of Office" in text
    restored = import_plan_csv(text, days, default_roster())
    assert restored["2025-11-06"]["eva"] == "ABSENT"


def test_import_is_lenient_on_labels_and_names() -> None:
    days = business_days(MONTH)[:2]
    roster = [Person("ana", "Ana"), Person("ben", "Ben")]
    text = "Person,Mon 3 Nov,Tue 4 Nov\nAna,Grand\u2011Cerf,Moon base\nZed,Issy,Issy\nBen,issy,REMOTE\n"
    plan = import_plan_csv(text, days, roster)
    assert plan["2025-11-03"] == {"ana": "PRIMARY", "ben": "SECONDARY"}
    assert plan["2025-11-04"] == {"ana": "REMOTE", "ben": "REMOTE"}


@pytest.mark.parametrize(
    "text",
    [
        "",
        "Person,Mon 3 Nov,Tue 4 Nov\n",
        "Name,Mon 3 Nov,Tue 4 Nov\nAna,Issy,Issy\n",
        "Person,Mon 3 Nov\nAna,Issy\n",
        "Person,Mon 3 Nov,Tue 4 Nov\nAna,Issy\n",
        "Person,Mon 3 Nov,Tue 4 Nov\nZed,Issy,Issy\n",
    ],
)
def test_malformed_imports_raise(text) -> None:
    days = business_days(MONTH)[:2]
    with pytest.raises(ImportFormatError):
        import_plan_csv(text, days, [Person("ana", "Ana")])


def test_rejected_import_leaves_stored_plan_untouched(memory_db) -> None:
    session = memory_db["session"]
    payload = _generated_plan()
    save_month_plan(session, MONTH, payload["plan"])
    before = get_month_plan(session, MONTH)

    with pytest.raises(ImportFormatError):
        import_month_text(session, MONTH, "Person,Mon 3 Nov\nBertrand,Issy\n", roster_session=memory_db["roster_session"])
    assert get_month_plan(session, MONTH) == before
    assert get_month_state(session, MONTH)["status"] == "generated"


def test_month_csv_round_trip_through_store(memory_db) -> None:
    session = memory_db["session"]
    roster_session = memory_db["roster_session"]
    toggle_all_hands_day(session, "2025-11-05")
    payload = _generated_plan(all_hands=["2025-11-05"])
    save_month_plan(session, MONTH, payload["plan"])

    path = export_month_csv(session, MONTH, roster_session=roster_session)
    assert path.parent == memory_db["tmp"]
    assert "All-hands days:" in path.read_text(encoding="utf-8")

    save_month_plan(session, MONTH, {})
    cells = import_month_csv(session, MONTH, path, roster_session=roster_session)
    assert cells == 20 * 12
    assert get_month_plan(session, MONTH) == payload["plan"]
    assert get_month_state(session, MONTH)["status"] == "imported"


def test_import_drops_cells_for_people_missing_from_file(memory_db) -> None:
    session = memory_db["session"]
    days = business_days(MONTH)
    header = ",".join(["Person"] + [f"{day:%a} {day.day} {day:%b}" for day in days])
    text = header + "\n" + ",".join(["Karine"] + ["Grand-Cerf"] * len(days)) + "\n"
    cells = import_month_text(session, MONTH, text, roster_session=memory_db["roster_session"])
    assert cells == len(days)
    plan = get_month_plan(session, MONTH)
    assert set(plan["2025-11-03"]) == {"karine"}


def test_state_snapshot_round_trip(memory_db) -> None:
    session = memory_db["session"]
    toggle_all_hands_day(session, "2025-11-05")
    toggle_absence(session, "eva", "2025-11-06")
    payload = _generated_plan(absences={"eva": ["2025-11-06"]}, all_hands=["2025-11-05"])
    save_month_plan(session, MONTH, payload["plan"])
    path = export_month_state(session, MONTH)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["month"] == "2025-11-01"
    assert data["absences"] == {"eva": ["2025-11-06"]}

    toggle_all_hands_day(session, "2025-11-05")
    toggle_absence(session, "eva", "2025-11-06")
    toggle_absence(session, "lea", "2025-11-07")
    save_month_plan(session, MONTH, {})

    summary = import_month_state(session, path)
    assert summary == {"cells": 240, "absences": 1, "all_hands": 1}
    assert get_all_hands_dates(session, MONTH) == [datetime.date(2025, 11, 5)]
    assert get_absence_map(session, MONTH) == {"eva": [datetime.date(2025, 11, 6)]}
    assert get_month_plan(session, MONTH)["2025-11-06"]["eva"] == "ABSENT"


def test_state_import_rejects_bad_all_hands(memory_db, tmp_path) -> None:
    session = memory_db["session"]
    path = tmp_path / "bad_state.json"
    path.write_text(
        json.dumps({"month": "2025-11-01", "all_hands": ["2025-11-03", "2025-11-04", "2025-11-05"], "plan": {}}),
        encoding="utf-8",
    )
    with pytest.raises(ValueError):
        import_month_state(session, path)
    assert get_all_hands_dates(session, MONTH) == []


def test_state_import_with_unknown_site_changes_nothing(memory_db, tmp_path) -> None:
    session = memory_db["session"]
    toggle_all_hands_day(session, "2025-11-20")
    toggle_absence(session, "eva", "2025-11-06")
    save_month_plan(session, MONTH, _generated_plan(absences={"eva": ["2025-11-06"]}, all_hands=["2025-11-20"])["plan"])
    before = get_month_plan(session, MONTH)

    path = tmp_path / "unknown_site.json"
    path.write_text(
        json.dumps(
            {
                "month": "2025-11-01",
                "all_hands": ["2025-11-05"],
                "absences": {"lea": ["2025-11-07"]},
                "plan": {"2025-11-03": {"eva": "BOGUS"}},
            }
        ),
        encoding="utf-8",
    )
    with pytest.raises(ValueError):
        import_month_state(session, path)
    assert get_all_hands_dates(session, MONTH) == [datetime.date(2025, 11, 20)]
    assert get_absence_map(session, MONTH) == {"eva": [datetime.date(2025, 11, 6)]}
    assert get_month_plan(session, MONTH) == before
    assert get_month_state(session, MONTH)["status"] == "generated"


def test_state_import_collapses_repeated_all_hands_date(memory_db, tmp_path) -> None:
    session = memory_db["session"]
    path = tmp_path / "repeated.json"
    path.write_text(
        json.dumps({"month": "2025-11-01", "all_hands": ["2025-11-05", "2025-11-05"], "plan": {}}),
        encoding="utf-8",
    )
    summary = import_month_state(session, path)
    assert summary == {"cells": 0, "absences": 0, "all_hands": 1}
    assert get_all_hands_dates(session, MONTH) == [datetime.date(2025, 11, 5)]


def test_state_import_honours_policy_all_hands_limit(memory_db, tmp_path) -> None:
    session = memory_db["session"]
    db.upsert_policy(session, "default", {"all_hands": {"max_days": 1}})
    path = tmp_path / "two_days.json"
    path.write_text(
        json.dumps({"month": "2025-11-01", "all_hands": ["2025-11-05", "2025-11-20"], "plan": {}}),
        encoding="utf-8",
    )
    with pytest.raises(ValueError):
        import_month_state(session, path)
    assert get_all_hands_dates(session, MONTH) == []


def test_roster_export_import_round_trip(memory_db) -> None:
    roster_session = memory_db["roster_session"]
    db.upsert_person(
        roster_session,
        Person("eva", "Eva", 20, 20, 60, rules=(PersonRule("pin", Site.SECONDARY, weekday=1),)),
    )
    path = export_roster(roster_session)
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert len(payload["people"]) == 12

    roster_session.execute(delete(MemberRule))
    roster_session.execute(delete(Member))
    roster_session.commit()
    assert load_roster(roster_session) == []

    assert import_roster(roster_session, path) == 12
    people = load_roster(roster_session)
    assert [person.id for person in people] == [person.id for person in default_roster()]
    eva = next(person for person in people if person.id == "eva")
    assert eva.pinned_site(1) is Site.SECONDARY
