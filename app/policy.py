from __future__ import annotations

import copy
from typing import Any, Dict, Optional

from database import get_active_policy, upsert_policy
from sites import SITE_LABELS, Site, parse_site

UNBOUNDED = None

SITE_DEFAULTS: Dict[str, Dict[str, Any]] = {
    Site.PRIMARY.value: {"label": SITE_LABELS[Site.PRIMARY], "capacity": 5, "floor": 3},
    Site.SECONDARY.value: {"label": SITE_LABELS[Site.SECONDARY], "capacity": 12, "min_occupancy": 2},
    Site.REMOTE.value: {"label": SITE_LABELS[Site.REMOTE], "capacity": UNBOUNDED},
    Site.ABSENT.value: {"label": SITE_LABELS[Site.ABSENT], "capacity": UNBOUNDED},
}

ALL_HANDS_DEFAULTS: Dict[str, Any] = {
    "site": Site.SECONDARY.value,
    "max_days": 2,
}

PRIORITY_DEFAULTS: Dict[str, float] = {
    "deficit_weight": 2.0,
    "min_weekly_boost": 3.0,
}

BASELINE_POLICY: Dict[str, Any] = {
    "name": "Baseline Sites",
    "sites": SITE_DEFAULTS,
    "all_hands": ALL_HANDS_DEFAULTS,
    "priority": PRIORITY_DEFAULTS,
}


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return build_default_policy()
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _coerce_capacity(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return number


def _coerce_count(value: Any, default: int) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _normalize_policy(policy: Dict) -> Dict:
    """Merge stored values over the baseline and repair anything unusable."""
    if not isinstance(policy, dict):
        policy = {}
    normalized = _deep_update(build_default_policy(), copy.deepcopy(policy))
    sites_cfg = normalized["sites"]
    for key, defaults in SITE_DEFAULTS.items():
        entry = sites_cfg.setdefault(key, copy.deepcopy(defaults))
        if not isinstance(entry, dict):
            entry = sites_cfg[key] = copy.deepcopy(defaults)
        entry["label"] = str(entry.get("label") or defaults["label"]).strip() or defaults["label"]
        entry["capacity"] = _coerce_capacity(entry.get("capacity"), defaults["capacity"])
    # Remote and absence never carry a cap.
    sites_cfg[Site.REMOTE.value]["capacity"] = UNBOUNDED
    sites_cfg[Site.ABSENT.value]["capacity"] = UNBOUNDED
    primary = sites_cfg[Site.PRIMARY.value]
    primary["floor"] = _coerce_count(primary.get("floor"), SITE_DEFAULTS[Site.PRIMARY.value]["floor"])
    if primary["capacity"] is not None:
        primary["floor"] = min(primary["floor"], primary["capacity"])
    secondary = sites_cfg[Site.SECONDARY.value]
    secondary["min_occupancy"] = _coerce_count(
        secondary.get("min_occupancy"), SITE_DEFAULTS[Site.SECONDARY.value]["min_occupancy"]
    )

    all_hands = normalized["all_hands"]
    try:
        site = parse_site(all_hands.get("site"))
    except ValueError:
        site = Site(ALL_HANDS_DEFAULTS["site"])
    if site not in (Site.PRIMARY, Site.SECONDARY):
        site = Site(ALL_HANDS_DEFAULTS["site"])
    all_hands["site"] = site.value
    all_hands["max_days"] = _coerce_count(all_hands.get("max_days"), ALL_HANDS_DEFAULTS["max_days"])

    priority = normalized["priority"]
    for key, default in PRIORITY_DEFAULTS.items():
        priority[key] = _coerce_float(priority.get(key), default)
    return normalized


def site_capacity(policy: Dict, site: Site) -> Optional[int]:
    return policy.get("sites", {}).get(site.value, {}).get("capacity", SITE_DEFAULTS[site.value]["capacity"])


def primary_floor(policy: Dict) -> int:
    return int(policy.get("sites", {}).get(Site.PRIMARY.value, {}).get("floor", 0))


def secondary_min_occupancy(policy: Dict) -> int:
    return int(policy.get("sites", {}).get(Site.SECONDARY.value, {}).get("min_occupancy", 0))


def site_labels(policy: Dict) -> Dict[Site, str]:
    sites_cfg = policy.get("sites", {})
    return {site: str(sites_cfg.get(site.value, {}).get("label") or SITE_LABELS[site]) for site in Site}


def all_hands_site(policy: Dict) -> Site:
    return Site(policy.get("all_hands", {}).get("site", ALL_HANDS_DEFAULTS["site"]))


def all_hands_limit(policy: Dict) -> int:
    return int(policy.get("all_hands", {}).get("max_days", ALL_HANDS_DEFAULTS["max_days"]))


def priority_settings(policy: Dict) -> Dict[str, float]:
    values = dict(PRIORITY_DEFAULTS)
    values.update(policy.get("priority", {}) or {})
    return values


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once so generation can run end-to-end."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Baseline Sites")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")
