from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sites import ONSITE_SITES, PLANNABLE_SITES, Site, parse_site

RULE_KINDS = {"pin", "min_weekly", "max_weekly", "never"}
WEEKDAY_TOKENS = ["Mon", "Tue", "Wed", "Thu", "Fri"]


@dataclass(frozen=True)
class PersonRule:
    """Declarative per-person constraint.

    ``pin`` forces ``site`` on ``weekday`` (0 = Monday). ``min_weekly`` and
    ``max_weekly`` bound the number of days per calendar week at an on-site
    location. ``never`` keeps the person out of an on-site location during the
    greedy fill.
    """

    kind: str
    site: Site
    weekday: Optional[int] = None
    count: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in RULE_KINDS:
            raise ValueError(f"Unknown rule kind '{self.kind}'.")
        object.__setattr__(self, "site", parse_site(self.site))
        if self.kind == "pin":
            if self.site not in PLANNABLE_SITES:
                raise ValueError("Pins must target PRIMARY, SECONDARY or REMOTE.")
            if self.weekday is None or not 0 <= int(self.weekday) <= 4:
                raise ValueError("Pins need a weekday between 0 (Mon) and 4 (Fri).")
            object.__setattr__(self, "weekday", int(self.weekday))
            return
        if self.site not in ONSITE_SITES:
            raise ValueError(f"'{self.kind}' rules only apply to PRIMARY or SECONDARY.")
        if self.kind in {"min_weekly", "max_weekly"}:
            if self.count is None or int(self.count) < 0:
                raise ValueError(f"'{self.kind}' rules need a non-negative count.")
            object.__setattr__(self, "count", int(self.count))

    def to_dict(self) -> Dict:
        payload: Dict = {"kind": self.kind, "site": self.site.value}
        if self.weekday is not None:
            payload["weekday"] = self.weekday
        if self.count is not None:
            payload["count"] = self.count
        return payload

    @classmethod
    def from_dict(cls, payload: Dict) -> "PersonRule":
        return cls(
            kind=payload.get("kind", ""),
            site=payload.get("site", ""),
            weekday=payload.get("weekday"),
            count=payload.get("count"),
        )


@dataclass(frozen=True)
class Person:
    id: str
    name: str
    primary_share: int = 0
    secondary_share: int = 0
    remote_share: int = 0
    active: bool = True
    rules: Tuple[PersonRule, ...] = field(default_factory=tuple)

    def share(self, site: Site) -> int:
        if site is Site.PRIMARY:
            return self.primary_share
        if site is Site.SECONDARY:
            return self.secondary_share
        if site is Site.REMOTE:
            return self.remote_share
        return 0

    def rules_of(self, kind: str) -> List[PersonRule]:
        return [rule for rule in self.rules if rule.kind == kind]

    def pinned_site(self, weekday: int) -> Optional[Site]:
        # Later pins win when several name the same weekday.
        site = None
        for rule in self.rules_of("pin"):
            if rule.weekday == weekday:
                site = rule.site
        return site

    def excludes(self, site: Site) -> bool:
        return any(rule.site is site for rule in self.rules_of("never"))

    def weekly_bound(self, kind: str, site: Site) -> Optional[int]:
        values = [rule.count for rule in self.rules_of(kind) if rule.site is site]
        if not values:
            return None
        return max(values) if kind == "min_weekly" else min(values)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "active": self.active,
            "shares": {
                Site.PRIMARY.value: self.primary_share,
                Site.SECONDARY.value: self.secondary_share,
                Site.REMOTE.value: self.remote_share,
            },
            "rules": [rule.to_dict() for rule in self.rules],
        }


def active_people(roster: Iterable[Person]) -> List[Person]:
    return [person for person in roster if person.active]


def _person(person_id: str, name: str, primary: int, secondary: int, remote: int) -> Person:
    return Person(
        id=person_id,
        name=name,
        primary_share=primary,
        secondary_share=secondary,
        remote_share=remote,
    )


DEFAULT_ROSTER: List[Person] = [
    _person("bertrand", "Bertrand", 70, 10, 20),
    _person("florence", "Florence", 60, 10, 30),
    _person("nicolas", "Nicolas", 55, 15, 30),
    _person("amelie", "Amélie", 5, 5, 90),
    _person("karine", "Karine", 90, 5, 5),
    _person("lea", "Léa", 55, 15, 30),
    _person("dounia", "Dounia", 55, 15, 30),
    _person("laurent", "Laurent", 45, 45, 10),
    _person("eva", "Eva", 20, 20, 60),
    _person("herve", "Hervé", 35, 35, 30),
    _person("mathilde", "Mathilde", 35, 35, 30),
    _person("rubie", "Rubie", 55, 15, 30),
]


def default_roster() -> List[Person]:
    return list(DEFAULT_ROSTER)
