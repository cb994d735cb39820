from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

from sites import Site, parse_site


def empty_usage() -> Dict[Site, int]:
    return {site: 0 for site in Site}


def day_usage(plan: Mapping[str, Mapping[str, Any]], day_iso: str) -> Dict[Site, int]:
    """Occupant count per tag for one day; every tag is present."""
    usage = empty_usage()
    for site in (plan.get(day_iso) or {}).values():
        usage[parse_site(site)] += 1
    return usage


def usage_by_day(plan: Mapping[str, Mapping[str, Any]], days: Iterable[str]) -> Dict[str, Dict[Site, int]]:
    return {day_iso: day_usage(plan, day_iso) for day_iso in days}


def usage_payload(plan: Mapping[str, Mapping[str, Any]], days: Iterable[str]) -> Dict[str, Dict[str, int]]:
    return {
        day_iso: {site.value: count for site, count in usage.items()}
        for day_iso, usage in usage_by_day(plan, days).items()
    }
