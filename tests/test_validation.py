from __future__ import annotations

import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from generator.calendar_days import business_day_isos  # noqa: E402
from generator.engine import PlanGenerator  # noqa: E402
from roster import Person, PersonRule  # noqa: E402
from validation import validate_plan  # noqa: E402

MONTH = "2025-11"


def _people(count: int = 6):
    return [Person(f"p{i}", f"P{i}", 40, 30, 30) for i in range(count)]


def _flat_plan(days, people, site: str):
    return {day_iso: {person.id: site for person in people} for day_iso in days}


class PlanValidationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.days = business_day_isos(MONTH)
        self.people = _people()

    def _types(self, entries):
        return {entry["type"] for entry in entries}

    def test_generated_plan_is_clean(self) -> None:
        absences = {"p1": ["2025-11-12"]}
        result = PlanGenerator(self.people).generate(MONTH, all_hands=["2025-11-05"], absences=absences)
        payload = result.as_payload()
        report = validate_plan(
            payload["plan"],
            payload["days"],
            self.people,
            all_hands=payload["all_hands"],
            absences=absences,
        )
        self.assertEqual(report["issues"], [])
        self.assertEqual(report["month"], "2025-11")
        self.assertTrue(all(check["status"] == "ok" for check in report["checks"][:3]))

    def test_missing_and_unknown_cells_are_issues(self) -> None:
        plan = _flat_plan(self.days, self.people, "REMOTE")
        del plan[self.days[0]]["p0"]
        plan[self.days[1]]["p2"] = "MOON"
        report = validate_plan(plan, self.days, self.people)
        self.assertEqual(self._types(report["issues"]), {"missing_cell", "unknown_site"})
        self.assertEqual(report["checks"][0]["status"], "fail")

    def test_absent_person_scheduled_is_an_issue(self) -> None:
        plan = _flat_plan(self.days, self.people, "REMOTE")
        report = validate_plan(plan, self.days, self.people, absences={"p3": ["2025-11-10"]})
        issues = [entry for entry in report["issues"] if entry["type"] == "absence"]
        self.assertEqual(len(issues), 1)
        self.assertEqual(issues[0]["person_id"], "p3")
        self.assertEqual(issues[0]["day"], "2025-11-10")

    def test_manual_overfill_is_a_capacity_issue(self) -> None:
        plan = _flat_plan(self.days, self.people, "PRIMARY")
        report = validate_plan(plan, self.days, self.people)
        capacity = [entry for entry in report["issues"] if entry["type"] == "capacity"]
        self.assertEqual(len(capacity), len(self.days))
        self.assertEqual(capacity[0]["site"], "PRIMARY")

    def test_capacity_is_not_checked_on_all_hands_days(self) -> None:
        plan = _flat_plan(self.days, self.people, "REMOTE")
        plan["2025-11-05"] = {person.id: "PRIMARY" for person in self.people}
        report = validate_plan(
            plan,
            self.days,
            self.people,
            {"all_hands": {"site": "PRIMARY"}},
            all_hands=["2025-11-05"],
        )
        self.assertEqual(report["issues"], [])
        self.assertEqual(report["warnings"], [])

    def test_floor_and_lone_occupant_are_warnings(self) -> None:
        plan = _flat_plan(self.days, self.people, "REMOTE")
        plan["2025-11-03"]["p0"] = "PRIMARY"
        plan["2025-11-04"]["p1"] = "SECONDARY"
        report = validate_plan(plan, self.days, self.people)
        self.assertEqual(report["issues"], [])
        self.assertEqual(self._types(report["warnings"]), {"floor", "lone_occupant"})
        statuses = {check["label"]: check["status"] for check in report["checks"]}
        self.assertEqual(statuses["Primary site floor met?"], "fail")
        self.assertEqual(statuses["Nobody alone at the secondary site?"], "fail")

    def test_all_hands_warning_flags_pinned_but_skips_absent_people(self) -> None:
        people = self.people + [Person("pinned", "Pinned", 0, 0, 100, rules=(PersonRule("pin", "REMOTE", weekday=2),))]
        plan = _flat_plan(self.days, people, "REMOTE")
        plan["2025-11-05"] = {person.id: "SECONDARY" for person in people}
        plan["2025-11-05"]["pinned"] = "REMOTE"
        plan["2025-11-05"]["p0"] = "ABSENT"
        plan["2025-11-05"]["p1"] = "REMOTE"
        report = validate_plan(
            plan,
            self.days,
            people,
            all_hands=["2025-11-05"],
            absences={"p0": ["2025-11-05"]},
        )
        flagged = [entry["person_id"] for entry in report["warnings"] if entry["type"] == "all_hands"]
        self.assertEqual(flagged, ["p1", "pinned"])

    def test_checklist_has_one_line_per_rule_family(self) -> None:
        report = validate_plan(_flat_plan(self.days, self.people, "REMOTE"), self.days, self.people)
        self.assertEqual(len(report["checks"]), 6)
        self.assertTrue(all(check["status"] == "ok" for check in report["checks"]))
        self.assertTrue(all(check["details"] == "" for check in report["checks"]))


if __name__ == "__main__":
    unittest.main()
