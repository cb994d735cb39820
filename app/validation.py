from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from database import get_absence_map, get_active_policy, get_all_hands_dates, get_month_plan, load_roster
from generator.calendar_days import business_day_isos, iso, month_start, parse_iso
from generator.usage import day_usage
from policy import (
    _normalize_policy,
    all_hands_site,
    primary_floor,
    secondary_min_occupancy,
    site_capacity,
)
from roster import Person, active_people
from sites import ONSITE_SITES, Site, parse_site


def validate_plan(
    plan: Mapping[str, Mapping[str, Any]],
    days: Sequence[str],
    roster: Sequence[Person],
    policy: Optional[Dict] = None,
    *,
    all_hands: Iterable[datetime.date | str] = (),
    absences: Optional[Mapping[str, Iterable[datetime.date | str]]] = None,
) -> Dict[str, Any]:
    """Return findings for a table, generated or hand edited.

    Issues are hard breaks (missing cells, unknown tags, an absent person
    scheduled, an overfull site). Warnings are soft rules a manual edit may
    legitimately bend (primary floor, lone secondary occupant, all-hands).
    """
    policy = _normalize_policy(policy or {})
    people = active_people(roster)
    all_hands_days = {iso(parse_iso(value)) for value in all_hands}
    absence_days = {
        person_id: {iso(parse_iso(value)) for value in values}
        for person_id, values in (absences or {}).items()
    }
    issues: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    issues.extend(_cell_issues(plan, days, people))
    issues.extend(_absence_issues(plan, days, people, absence_days))
    issues.extend(_capacity_issues(plan, days, policy, all_hands_days))
    warnings.extend(_floor_warnings(plan, days, policy, all_hands_days))
    warnings.extend(_all_hands_warnings(plan, people, policy, all_hands_days, absence_days))
    return {
        "month": days[0][:7] if days else None,
        "checks": _build_validation_checklist(issues, warnings),
        "issues": issues,
        "warnings": warnings,
    }


def validate_month(session, month, *, roster_session=None) -> Dict[str, Any]:
    first = month_start(month)
    policy_model = get_active_policy(session)
    policy = policy_model.params_dict() if policy_model else {}
    return validate_plan(
        get_month_plan(session, first),
        business_day_isos(first),
        load_roster(roster_session),
        policy,
        all_hands=get_all_hands_dates(session, first),
        absences=get_absence_map(session, first),
    )


def _cell_issues(plan, days: Sequence[str], people: Sequence[Person]) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    for day_iso in days:
        row = plan.get(day_iso) or {}
        for person in people:
            value = row.get(person.id)
            if value is None:
                issues.append(
                    {
                        "type": "missing_cell",
                        "severity": "error",
                        "day": day_iso,
                        "person_id": person.id,
                        "message": f"{person.name} has no assignment on {day_iso}.",
                    }
                )
                continue
            try:
                parse_site(value)
            except ValueError:
                issues.append(
                    {
                        "type": "unknown_site",
                        "severity": "error",
                        "day": day_iso,
                        "person_id": person.id,
                        "message": f"{person.name} has unknown tag '{value}' on {day_iso}.",
                    }
                )
    return issues


def _absence_issues(plan, days, people, absence_days) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    for day_iso in days:
        row = plan.get(day_iso) or {}
        for person in people:
            if day_iso not in absence_days.get(person.id, ()):
                continue
            value = row.get(person.id)
            if value is not None and value != Site.ABSENT.value:
                issues.append(
                    {
                        "type": "absence",
                        "severity": "error",
                        "day": day_iso,
                        "person_id": person.id,
                        "message": f"{person.name} is out of office on {day_iso} but assigned {value}.",
                    }
                )
    return issues


def _safe_usage(plan, day_iso: str) -> Dict[Site, int]:
    row = {
        person_id: value
        for person_id, value in (plan.get(day_iso) or {}).items()
        if str(value).upper() in Site.__members__
    }
    return day_usage({day_iso: row}, day_iso)


def _capacity_issues(plan, days, policy, all_hands_days) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    for day_iso in days:
        if day_iso in all_hands_days:
            continue
        usage = _safe_usage(plan, day_iso)
        for site in ONSITE_SITES:
            capacity = site_capacity(policy, site)
            if capacity is not None and usage[site] > capacity:
                issues.append(
                    {
                        "type": "capacity",
                        "severity": "error",
                        "day": day_iso,
                        "site": site.value,
                        "message": f"{site.value} on {day_iso} holds {usage[site]}, capacity {capacity}.",
                    }
                )
    return issues


def _floor_warnings(plan, days, policy, all_hands_days) -> List[Dict[str, Any]]:
    warnings: List[Dict[str, Any]] = []
    floor = primary_floor(policy)
    minimum = secondary_min_occupancy(policy)
    for day_iso in days:
        if day_iso in all_hands_days:
            continue
        usage = _safe_usage(plan, day_iso)
        if 0 < usage[Site.PRIMARY] < floor:
            warnings.append(
                {
                    "type": "floor",
                    "severity": "warning",
                    "day": day_iso,
                    "site": Site.PRIMARY.value,
                    "message": f"Only {usage[Site.PRIMARY]} at {Site.PRIMARY.value} on {day_iso} (floor {floor}).",
                }
            )
        if 0 < usage[Site.SECONDARY] < minimum:
            warnings.append(
                {
                    "type": "lone_occupant",
                    "severity": "warning",
                    "day": day_iso,
                    "site": Site.SECONDARY.value,
                    "message": f"Only {usage[Site.SECONDARY]} at {Site.SECONDARY.value} on {day_iso}.",
                }
            )
    return warnings


def _all_hands_warnings(plan, people, policy, all_hands_days, absence_days) -> List[Dict[str, Any]]:
    warnings: List[Dict[str, Any]] = []
    site = all_hands_site(policy)
    for day_iso in sorted(all_hands_days):
        row = plan.get(day_iso) or {}
        for person in people:
            if day_iso in absence_days.get(person.id, ()):
                continue
            value = row.get(person.id)
            if value is not None and value != site.value:
                warnings.append(
                    {
                        "type": "all_hands",
                        "severity": "warning",
                        "day": day_iso,
                        "person_id": person.id,
                        "message": f"{person.name} is not at {site.value} on all-hands day {day_iso}.",
                    }
                )
    return warnings


def _build_validation_checklist(
    issues: List[Dict[str, Any]],
    warnings: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Concise checklist: one ok|fail line per rule family."""
    checks: List[Dict[str, Any]] = []

    def summarize(items: List[Dict[str, Any]], *, limit: int = 5) -> str:
        parts = [str(entry.get("message") or "").strip() for entry in items[:limit]]
        if len(items) > limit:
            parts.append(f"+{len(items) - limit} more")
        return "; ".join(part for part in parts if part)

    def add_check(label: str, type_names: Sequence[str], source: List[Dict[str, Any]]) -> None:
        matches = [entry for entry in source if entry.get("type") in type_names]
        checks.append(
            {
                "label": label,
                "status": "ok" if not matches else "fail",
                "details": summarize(matches),
            }
        )

    add_check("Every person has a tag each day?", ("missing_cell", "unknown_site"), issues)
    add_check("Out-of-office days respected?", ("absence",), issues)
    add_check("Site capacities respected?", ("capacity",), issues)
    add_check("Primary site floor met?", ("floor",), warnings)
    add_check("Nobody alone at the secondary site?", ("lone_occupant",), warnings)
    add_check("All-hands days honoured?", ("all_hands",), warnings)
    return checks
