from __future__ import annotations

import datetime
from typing import Callable, Dict

from .engine import PlanGenerator
from audit import audit_logger
from database import (
    RosterSessionLocal,
    get_absence_map,
    get_all_hands_dates,
    get_or_create_month,
    load_roster,
    record_audit_log,
    save_month_plan,
)
from policy import load_active_policy
from validation import validate_plan


def generate_plan_for_month(
    session_factory: Callable,
    month: datetime.date | str,
    actor: str,
    *,
    roster_session_factory: Callable = RosterSessionLocal,
) -> Dict:
    """Regenerate a month from stored inputs and replace its stored table.

    Manual edits made since the previous run are discarded.
    """
    if month is None:
        raise ValueError("month is required.")
    with session_factory() as session, roster_session_factory() as roster_session:
        policy = load_active_policy(session)
        roster = load_roster(roster_session)
        month_plan = get_or_create_month(session, month)
        all_hands = get_all_hands_dates(session, month_plan.month_start)
        absences = get_absence_map(session, month_plan.month_start)

        engine = PlanGenerator(roster, policy)
        result = engine.generate(month_plan.month_start, all_hands=all_hands, absences=absences)
        payload = result.as_payload()
        cells = save_month_plan(session, month_plan.month_start, payload["plan"], source="generated")
        report = validate_plan(
            payload["plan"],
            payload["days"],
            roster,
            policy,
            all_hands=payload["all_hands"],
            absences=absences,
        )
        record_audit_log(
            session,
            actor or "system",
            "plan_generate",
            target_id=month_plan.id,
            payload={"cells": cells, "warnings": len(result.warnings)},
        )
    audit_logger.log("plan_generate", actor or "system", details={"month": payload["month"], "cells": cells})
    return {
        "month": payload["month"],
        "days": payload["days"],
        "all_hands": payload["all_hands"],
        "plan": payload["plan"],
        "cells_assigned": cells,
        "usage": {
            day_iso: {site.value: count for site, count in usage.items()}
            for day_iso, usage in result.usage().items()
        },
        "targets": {person_id: targets.to_dict() for person_id, targets in result.targets.items()},
        "warnings": result.warnings,
        "validation": report,
    }
