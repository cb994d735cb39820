from __future__ import annotations

import datetime
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from generator.calendar_days import business_days, iso, month_start, parse_iso
from generator.overrides import OverrideResult, normalize_absences, resolve_overrides
from generator.priority import DeficitCounters, priority_score, rank_candidates
from generator.targets import SiteTargets, compute_targets
from generator.usage import usage_by_day
from policy import (
    _normalize_policy,
    all_hands_limit,
    all_hands_site,
    primary_floor,
    priority_settings,
    secondary_min_occupancy,
    site_capacity,
)
from roster import Person, active_people
from sites import ONSITE_SITES, Site


@dataclass
class PlanResult:
    month: datetime.date
    days: List[str]
    plan: Dict[str, Dict[str, Site]]
    all_hands: List[str] = field(default_factory=list)
    targets: Dict[str, SiteTargets] = field(default_factory=dict)
    actual: Dict[str, Dict[str, int]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def usage(self) -> Dict[str, Dict[Site, int]]:
        return usage_by_day(self.plan, self.days)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "month": iso(self.month),
            "days": list(self.days),
            "all_hands": list(self.all_hands),
            "plan": {
                day_iso: {person_id: site.value for person_id, site in row.items()}
                for day_iso, row in self.plan.items()
            },
        }


class PlanGenerator:
    """Greedy monthly site allocator.

    The run is a fixed pipeline: business days, override overlays, share
    targets, then a per-day greedy fill driven by deficit priority. Every cell
    of every active person gets a tag; capacity or floor shortfalls surface as
    warnings, never as errors.
    """

    def __init__(self, roster: Sequence[Person], policy: Optional[Dict] = None) -> None:
        self.policy = _normalize_policy(policy or {})
        self.people: List[Person] = active_people(roster)
        self.primary_capacity: Optional[int] = site_capacity(self.policy, Site.PRIMARY)
        self.secondary_capacity: Optional[int] = site_capacity(self.policy, Site.SECONDARY)
        self.primary_floor: int = primary_floor(self.policy)
        self.secondary_minimum: int = secondary_min_occupancy(self.policy)
        self.all_hands_site: Site = all_hands_site(self.policy)
        self.all_hands_limit: int = all_hands_limit(self.policy)
        settings = priority_settings(self.policy)
        self.weights = {
            "deficit_weight": float(settings["deficit_weight"]),
            "min_weekly_boost": float(settings["min_weekly_boost"]),
        }
        self.warnings: List[str] = []

    def generate(
        self,
        month,
        all_hands: Iterable[datetime.date | str] = (),
        absences: Optional[Mapping[str, Iterable[datetime.date | str]]] = None,
    ) -> PlanResult:
        self.warnings = []
        first = month_start(month)
        days = business_days(first)
        day_isos = [iso(day) for day in days]
        all_hands_days = self._check_all_hands(all_hands, set(day_isos))
        absence_map = normalize_absences(absences, days)

        overrides = resolve_overrides(days, self.people, absence_map, all_hands_days, self.all_hands_site)
        targets = compute_targets(self.people, len(days), absence_map)
        for person in self.people:
            if targets[person.id].remote < 0:
                self.warnings.append(
                    f"{person.name}: shares overshoot availability, remote target is {targets[person.id].remote}."
                )
        counters = self.seed_counters(overrides, days)

        cells = dict(overrides.cells)
        for day in days:
            self._fill_day(day, overrides, cells, targets, counters)

        plan = {
            day_iso: {person.id: cells[(day_iso, person.id)] for person in self.people}
            for day_iso in day_isos
        }
        self._collect_day_warnings(plan, overrides.all_hands_days)
        return PlanResult(
            month=first,
            days=day_isos,
            plan=plan,
            all_hands=overrides.all_hands_days,
            targets=targets,
            actual=counters.snapshot(),
            warnings=list(self.warnings),
        )

    def seed_counters(self, overrides: OverrideResult, days: Sequence[datetime.date]) -> DeficitCounters:
        """Credit every forced non-absent cell before the greedy fill starts."""
        counters = DeficitCounters(person.id for person in self.people)
        for day in days:
            day_iso = iso(day)
            for person in self.people:
                site = overrides.site_for(day_iso, person.id)
                if site is not None and site is not Site.ABSENT:
                    counters.credit(person.id, site, day)
        return counters

    def _check_all_hands(self, values: Iterable[datetime.date | str], month_isos: set) -> List[str]:
        requested = sorted({iso(parse_iso(value)) for value in values or ()})
        kept = [value for value in requested if value in month_isos]
        for value in requested:
            if value not in month_isos:
                self.warnings.append(f"All-hands date {value} is not a business day of this month; ignored.")
        if len(kept) > self.all_hands_limit:
            raise ValueError(f"At most {self.all_hands_limit} all-hands days per month, got {len(kept)}.")
        return kept

    def _fill_day(
        self,
        day: datetime.date,
        overrides: OverrideResult,
        cells: Dict,
        targets: Dict[str, SiteTargets],
        counters: DeficitCounters,
    ) -> None:
        day_iso = iso(day)
        open_people = overrides.open_people(day_iso, self.people)
        if not open_people:
            return
        occupancy: Counter = Counter(
            cells[(day_iso, person.id)] for person in self.people if (day_iso, person.id) in cells
        )
        placed: Dict[str, Site] = {}

        def assign(person: Person, site: Site) -> None:
            cells[(day_iso, person.id)] = site
            placed[person.id] = site
            occupancy[site] += 1
            counters.credit(person.id, site, day)

        def still_open() -> List[Person]:
            return [person for person in open_people if person.id not in placed]

        # Primary fill by descending priority.
        for person, score in rank_candidates(open_people, Site.PRIMARY, targets, counters, day, **self.weights):
            if self._full(Site.PRIMARY, occupancy):
                break
            if score <= 0:
                break
            assign(person, Site.PRIMARY)

        # Floor correction ignores the positive-priority gate.
        if 0 < occupancy[Site.PRIMARY] < self.primary_floor:
            ranked = rank_candidates(still_open(), Site.PRIMARY, targets, counters, day, **self.weights)
            for person, _ in ranked:
                if occupancy[Site.PRIMARY] >= self.primary_floor or self._full(Site.PRIMARY, occupancy):
                    break
                assign(person, Site.PRIMARY)

        # Everyone left goes to the secondary site or remote.
        for person in still_open():
            secondary = priority_score(person, Site.SECONDARY, targets[person.id], counters, day, **self.weights)
            remote = priority_score(person, Site.REMOTE, targets[person.id], counters, day, **self.weights)
            if secondary is not None and secondary > remote and not self._full(Site.SECONDARY, occupancy):
                assign(person, Site.SECONDARY)
            else:
                assign(person, Site.REMOTE)

        # Nobody sits alone at the secondary site; pinned occupants stay put.
        if day_iso in overrides.all_hands_days:
            return
        if 0 < occupancy[Site.SECONDARY] < self.secondary_minimum:
            for person in self.people:
                if placed.get(person.id) is Site.SECONDARY:
                    cells[(day_iso, person.id)] = Site.REMOTE
                    placed[person.id] = Site.REMOTE
                    occupancy[Site.SECONDARY] -= 1
                    occupancy[Site.REMOTE] += 1
                    counters.move(person.id, Site.SECONDARY, Site.REMOTE, day)

    def _full(self, site: Site, occupancy: Counter) -> bool:
        capacity = self.primary_capacity if site is Site.PRIMARY else self.secondary_capacity
        return capacity is not None and occupancy[site] >= capacity

    def _collect_day_warnings(self, plan: Dict[str, Dict[str, Site]], all_hands_days: List[str]) -> None:
        for day_iso, usage in usage_by_day(plan, plan.keys()).items():
            if day_iso in all_hands_days:
                continue
            for site in ONSITE_SITES:
                capacity = self.primary_capacity if site is Site.PRIMARY else self.secondary_capacity
                if capacity is not None and usage[site] > capacity:
                    self.warnings.append(f"{day_iso}: {site.value} holds {usage[site]} people, capacity is {capacity}.")
            if 0 < usage[Site.PRIMARY] < self.primary_floor:
                self.warnings.append(
                    f"{day_iso}: {Site.PRIMARY.value} has {usage[Site.PRIMARY]} people, below the floor of {self.primary_floor}."
                )
