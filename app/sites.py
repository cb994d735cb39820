from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class Site(str, Enum):
    """Closed set of tags a (day, person) cell can carry."""

    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    REMOTE = "REMOTE"
    ABSENT = "ABSENT"

    def __str__(self) -> str:
        return self.value


ONSITE_SITES = (Site.PRIMARY, Site.SECONDARY)
PLANNABLE_SITES = (Site.PRIMARY, Site.SECONDARY, Site.REMOTE)

SITE_LABELS: Dict[Site, str] = {
    Site.PRIMARY: "Grand-Cerf",
    Site.SECONDARY: "Issy",
    Site.REMOTE: "Remote",
    Site.ABSENT: "Out of Office",
}

_EDIT_CYCLE: Dict[Site, Site] = {
    Site.PRIMARY: Site.SECONDARY,
    Site.SECONDARY: Site.REMOTE,
    Site.REMOTE: Site.ABSENT,
    Site.ABSENT: Site.PRIMARY,
}

_ALIASES: Dict[str, Site] = {
    "gc": Site.PRIMARY,
    "grand-cerf": Site.PRIMARY,
    "grand cerf": Site.PRIMARY,
    "issy": Site.SECONDARY,
    "remote": Site.REMOTE,
    "ooo": Site.ABSENT,
    "out of office": Site.ABSENT,
}


def normalize_label(label: str) -> str:
    # Exports written by older tools use a non-breaking hyphen in "Grand-Cerf".
    return (label or "").strip().replace("\u2011", "-").lower()


def parse_site(value: Optional[str]) -> Site:
    """Return the Site for a wire value or alias; raise ValueError otherwise."""
    if isinstance(value, Site):
        return value
    text = (value or "").strip()
    if text.upper() in Site.__members__:
        return Site[text.upper()]
    alias = _ALIASES.get(normalize_label(text))
    if alias is not None:
        return alias
    raise ValueError(f"Unknown site '{value}'.")


def next_site(current: Site | str) -> Site:
    """Return the tag a manual editor cycles to from the current one."""
    return _EDIT_CYCLE[parse_site(current)]


def site_label(site: Site | str, labels: Optional[Dict[Site, str]] = None) -> str:
    mapping = labels or SITE_LABELS
    resolved = parse_site(site)
    return mapping.get(resolved, SITE_LABELS[resolved])
