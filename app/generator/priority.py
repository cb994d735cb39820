from __future__ import annotations

import datetime
from collections import defaultdict
from typing import DefaultDict, Dict, Iterable, List, Optional, Sequence, Tuple

from generator.calendar_days import week_key
from generator.targets import SiteTargets
from roster import Person
from sites import ONSITE_SITES, PLANNABLE_SITES, Site

DEFAULT_DEFICIT_WEIGHT = 2.0
DEFAULT_MIN_WEEKLY_BOOST = 3.0


class DeficitCounters:
    """Running per-person day counts for a single generation run."""

    def __init__(self, person_ids: Iterable[str]) -> None:
        self.totals: Dict[str, Dict[Site, int]] = {
            person_id: {site: 0 for site in PLANNABLE_SITES} for person_id in person_ids
        }
        self.weekly: Dict[str, DefaultDict[Tuple[Tuple[int, int], Site], int]] = {
            person_id: defaultdict(int) for person_id in self.totals
        }

    def credit(self, person_id: str, site: Site, day: datetime.date, amount: int = 1) -> None:
        if site not in PLANNABLE_SITES:
            return
        self.totals[person_id][site] += amount
        self.weekly[person_id][(week_key(day), site)] += amount

    def move(self, person_id: str, source: Site, target: Site, day: datetime.date) -> None:
        self.credit(person_id, source, day, -1)
        self.credit(person_id, target, day, 1)

    def actual(self, person_id: str, site: Site) -> int:
        return self.totals[person_id].get(site, 0)

    def weekly_count(self, person_id: str, site: Site, day: datetime.date) -> int:
        return self.weekly[person_id].get((week_key(day), site), 0)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        return {
            person_id: {site.value: count for site, count in sites.items()}
            for person_id, sites in self.totals.items()
        }


def priority_score(
    person: Person,
    site: Site,
    targets: SiteTargets,
    counters: DeficitCounters,
    day: datetime.date,
    *,
    deficit_weight: float = DEFAULT_DEFICIT_WEIGHT,
    min_weekly_boost: float = DEFAULT_MIN_WEEKLY_BOOST,
) -> Optional[float]:
    """Urgency of placing ``person`` at ``site`` on ``day``.

    The base score is ``deficit_weight * (target - actual) + share / 100``.
    Returns None when a rule forbids the placement (``never`` or a reached
    ``max_weekly``). A person under a ``min_weekly`` bound gets
    ``min_weekly_boost`` on top.
    """
    if site in ONSITE_SITES:
        if person.excludes(site):
            return None
        ceiling = person.weekly_bound("max_weekly", site)
        if ceiling is not None and counters.weekly_count(person.id, site, day) >= ceiling:
            return None
    deficit = targets.for_site(site) - counters.actual(person.id, site)
    score = deficit * deficit_weight + person.share(site) / 100
    if site in ONSITE_SITES:
        minimum = person.weekly_bound("min_weekly", site)
        if minimum is not None and counters.weekly_count(person.id, site, day) < minimum:
            score += min_weekly_boost
    return score


def rank_candidates(
    people: Sequence[Person],
    site: Site,
    targets: Dict[str, SiteTargets],
    counters: DeficitCounters,
    day: datetime.date,
    **weights: float,
) -> List[Tuple[Person, float]]:
    """Eligible people by descending priority; ties keep roster order."""
    scored: List[Tuple[Person, float]] = []
    for person in people:
        score = priority_score(person, site, targets[person.id], counters, day, **weights)
        if score is not None:
            scored.append((person, score))
    # sorted() is stable, including with reverse=True.
    return sorted(scored, key=lambda item: item[1], reverse=True)
