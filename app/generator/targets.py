from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Sequence, Set

from roster import Person
from sites import Site


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class SiteTargets:
    available: int
    primary: int
    secondary: int
    remote: int

    def for_site(self, site: Site) -> int:
        if site is Site.PRIMARY:
            return self.primary
        if site is Site.SECONDARY:
            return self.secondary
        if site is Site.REMOTE:
            return self.remote
        return 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "available": self.available,
            Site.PRIMARY.value: self.primary,
            Site.SECONDARY.value: self.secondary,
            Site.REMOTE.value: self.remote,
        }


def person_targets(person: Person, available: int) -> SiteTargets:
    """Turn share percentages into day counts.

    Remote takes the residual and is not clamped: shares that do not add up
    to 100, or two round-ups, can leave it negative.
    """
    primary = round_half_up(person.primary_share / 100 * available)
    secondary = round_half_up(person.secondary_share / 100 * available)
    return SiteTargets(
        available=available,
        primary=primary,
        secondary=secondary,
        remote=available - primary - secondary,
    )


def compute_targets(
    people: Sequence[Person],
    day_count: int,
    absences: Dict[str, Set[str]],
) -> Dict[str, SiteTargets]:
    return {
        person.id: person_targets(person, day_count - len(absences.get(person.id, ())))
        for person in people
    }
