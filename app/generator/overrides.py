"""Override phase: absence, weekday pins and all-hands days as overlays.

Each phase produces an overlay keyed by ``(day_iso, person_id)``. Overlays are
merged by ``OVERRIDE_PRECEDENCE`` so the highest-precedence layer wins a cell
regardless of the order the layers were computed in. Cells missing from the
merged overlay are left open for the greedy fill.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from generator.calendar_days import iso, parse_iso
from roster import Person
from sites import Site

Cell = Tuple[str, str]
Overlay = Dict[Cell, Site]

# All-hands overwrites pins on its dates; absence beats both.
OVERRIDE_PRECEDENCE = ("absence", "all_hands", "pin")


@dataclass
class OverrideResult:
    cells: Overlay
    layers: Dict[str, Overlay] = field(default_factory=dict)
    all_hands_days: List[str] = field(default_factory=list)

    def site_for(self, day_iso: str, person_id: str):
        return self.cells.get((day_iso, person_id))

    def open_people(self, day_iso: str, people: Sequence[Person]) -> List[Person]:
        return [person for person in people if (day_iso, person.id) not in self.cells]


def normalize_absences(
    absences: Mapping[str, Iterable[datetime.date | str]] | None,
    days: Sequence[datetime.date],
) -> Dict[str, Set[str]]:
    """Keep only absence dates that fall on the given business days."""
    in_range = {iso(day) for day in days}
    normalized: Dict[str, Set[str]] = {}
    for person_id, values in (absences or {}).items():
        dates = {iso(parse_iso(value)) for value in values or []}
        kept = dates & in_range
        if kept:
            normalized[person_id] = kept
    return normalized


def absence_overlay(days: Sequence[datetime.date], people: Sequence[Person], absences: Dict[str, Set[str]]) -> Overlay:
    overlay: Overlay = {}
    for day in days:
        day_iso = iso(day)
        for person in people:
            if day_iso in absences.get(person.id, ()):
                overlay[(day_iso, person.id)] = Site.ABSENT
    return overlay


def pin_overlay(days: Sequence[datetime.date], people: Sequence[Person]) -> Overlay:
    overlay: Overlay = {}
    for day in days:
        for person in people:
            site = person.pinned_site(day.weekday())
            if site is not None:
                overlay[(iso(day), person.id)] = site
    return overlay


def all_hands_overlay(
    days: Sequence[datetime.date],
    people: Sequence[Person],
    all_hands: Iterable[str],
    site: Site,
) -> Overlay:
    selected = set(all_hands)
    overlay: Overlay = {}
    for day in days:
        day_iso = iso(day)
        if day_iso not in selected:
            continue
        for person in people:
            overlay[(day_iso, person.id)] = site
    return overlay


def merge_overlays(layers: Mapping[str, Overlay], precedence: Sequence[str] = OVERRIDE_PRECEDENCE) -> Overlay:
    """Merge overlays so earlier names in ``precedence`` win shared cells."""
    merged: Overlay = {}
    for name in reversed(precedence):
        merged.update(layers.get(name, {}))
    return merged


def resolve_overrides(
    days: Sequence[datetime.date],
    people: Sequence[Person],
    absences: Dict[str, Set[str]],
    all_hands: Iterable[datetime.date | str],
    all_hands_site: Site,
) -> OverrideResult:
    month_isos = {iso(day) for day in days}
    all_hands_days = sorted({iso(parse_iso(value)) for value in all_hands} & month_isos)
    layers = {
        "absence": absence_overlay(days, people, absences),
        "pin": pin_overlay(days, people),
        "all_hands": all_hands_overlay(days, people, all_hands_days, all_hands_site),
    }
    return OverrideResult(cells=merge_overlays(layers), layers=layers, all_hands_days=all_hands_days)
