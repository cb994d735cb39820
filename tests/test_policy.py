from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, get_policies, upsert_policy  # noqa: E402
from policy import (  # noqa: E402
    _normalize_policy,
    all_hands_limit,
    all_hands_site,
    build_default_policy,
    ensure_default_policy,
    load_active_policy,
    primary_floor,
    secondary_min_occupancy,
    site_capacity,
    site_labels,
)
from sites import Site  # noqa: E402


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine, expire_on_commit=False, future=True)
    finally:
        engine.dispose()


def test_defaults_describe_both_sites() -> None:
    policy = _normalize_policy({})
    assert site_capacity(policy, Site.PRIMARY) == 5
    assert site_capacity(policy, Site.SECONDARY) == 12
    assert site_capacity(policy, Site.REMOTE) is None
    assert primary_floor(policy) == 3
    assert secondary_min_occupancy(policy) == 2
    assert all_hands_site(policy) is Site.SECONDARY
    assert all_hands_limit(policy) == 2
    assert site_labels(policy)[Site.PRIMARY] == "Grand-Cerf"


def test_build_default_policy_returns_a_copy() -> None:
    policy = build_default_policy()
    policy["sites"]["PRIMARY"]["capacity"] = 99
    assert build_default_policy()["sites"]["PRIMARY"]["capacity"] == 5


def test_normalize_repairs_bad_values() -> None:
    policy = _normalize_policy(
        {
            "sites": {
                "PRIMARY": {"capacity": "abc", "floor": 9},
                "SECONDARY": {"capacity": -3, "label": "  "},
                "REMOTE": {"capacity": 4},
            },
            "all_hands": {"site": "REMOTE", "max_days": "x"},
            "priority": {"deficit_weight": "heavy"},
        }
    )
    assert site_capacity(policy, Site.PRIMARY) == 5
    # The floor can never exceed the primary capacity.
    assert primary_floor(policy) == 5
    assert site_capacity(policy, Site.SECONDARY) == 12
    assert site_labels(policy)[Site.SECONDARY] == "Issy"
    assert site_capacity(policy, Site.REMOTE) is None
    assert all_hands_site(policy) is Site.SECONDARY
    assert all_hands_limit(policy) == 2
    assert policy["priority"]["deficit_weight"] == 2.0


def test_normalize_keeps_valid_overrides() -> None:
    policy = _normalize_policy({"sites": {"PRIMARY": {"capacity": 8, "label": "HQ"}}, "all_hands": {"site": "gc"}})
    assert site_capacity(policy, Site.PRIMARY) == 8
    assert primary_floor(policy) == 3
    assert site_labels(policy)[Site.PRIMARY] == "HQ"
    assert all_hands_site(policy) is Site.PRIMARY


def test_ensure_default_policy_seeds_once(session_factory) -> None:
    ensure_default_policy(session_factory)
    ensure_default_policy(session_factory)
    with session_factory() as session:
        policies = get_policies(session)
    assert [policy.name for policy in policies] == ["Baseline Sites"]
    assert load_active_policy(session_factory)["sites"]["PRIMARY"]["capacity"] == 5


def test_load_active_policy_reads_latest_edit(session_factory) -> None:
    ensure_default_policy(session_factory)
    with session_factory() as session:
        upsert_policy(session, "Small office", {"sites": {"PRIMARY": {"capacity": 3}}}, edited_by="ops")
        policy = load_active_policy(session)
    assert site_capacity(policy, Site.PRIMARY) == 3
    assert primary_floor(policy) == 3
    assert load_active_policy(None)["name"] == "Baseline Sites"
