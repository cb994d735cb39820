"""FastAPI wrapper around the site planner store and generator.

Every endpoint works on one month at a time. Generation replaces the stored
table; cell edits, absence and all-hands toggles are single-row writes.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse

# Ensure absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import (  # noqa: E402
    SessionLocal,
    RosterSessionLocal,
    get_active_policy,
    get_month_state,
    get_or_create_month,
    init_database,
    list_people,
    record_audit_log,
    reset_month,
    set_cell,
    set_person_shares,
    toggle_absence,
    toggle_all_hands_day,
)
from audit import audit_logger  # noqa: E402
from data_exchange import ImportFormatError, export_plan_csv, import_month_text  # noqa: E402
from generator.api import generate_plan_for_month  # noqa: E402
from generator.calendar_days import business_day_isos, business_days, month_start  # noqa: E402
from generator.usage import usage_payload  # noqa: E402
from policy import _normalize_policy, ensure_default_policy, site_labels  # noqa: E402
from sites import next_site, parse_site  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from validation import validate_month  # noqa: E402


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(database.SessionLocal)
    yield


app = FastAPI(title="Site Planner API", version="0.1", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_roster_db():
    db = RosterSessionLocal()
    try:
        yield db
    finally:
        db.close()


def _parse_month(value: str) -> datetime.date:
    try:
        return month_start(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="month must be YYYY-MM or YYYY-MM-DD")


def _parse_day(value: Any) -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value or "")[:10])
    except ValueError:
        raise HTTPException(status_code=400, detail="day must be YYYY-MM-DD")


def _policy(db: Session) -> Dict[str, Any]:
    model = get_active_policy(db)
    return _normalize_policy(model.params_dict() if model else {})


def _audit(db: Session, actor: str, action: str, payload: Dict[str, Any] | None = None) -> None:
    record_audit_log(db, user_id=actor, action=action, target_type="API", target_id=None, payload=payload)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/roster")
def roster(roster_db=Depends(get_roster_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"people": list_people(roster_db)}))


@app.put("/api/v1/roster/{person_id}/shares")
def update_shares(person_id: str, payload: Dict[str, Any], roster_db=Depends(get_roster_db)) -> JSONResponse:
    try:
        member = set_person_shares(
            roster_db,
            person_id,
            int(payload.get("PRIMARY", 0)),
            int(payload.get("SECONDARY", 0)),
            int(payload.get("REMOTE", 0)),
        )
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return JSONResponse(content=jsonable_encoder({"person": member.to_person().to_dict()}))


@app.get("/api/v1/months/{month}")
def month_state(month: str, db=Depends(get_db)) -> JSONResponse:
    first = _parse_month(month)
    return JSONResponse(content=jsonable_encoder(get_month_state(db, first)))


@app.post("/api/v1/months/{month}/generate")
def generate_month(month: str, payload: Dict[str, Any] | None = None) -> JSONResponse:
    first = _parse_month(month)
    actor = ((payload or {}).get("actor") or "api").strip() or "api"
    try:
        summary = generate_plan_for_month(
            database.SessionLocal,
            first,
            actor,
            roster_session_factory=database.RosterSessionLocal,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return JSONResponse(content=jsonable_encoder(summary))


@app.put("/api/v1/months/{month}/cells")
def update_cell(month: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    first = _parse_month(month)
    day = _parse_day(payload.get("day"))
    person_id = (payload.get("person_id") or "").strip()
    if not person_id:
        raise HTTPException(status_code=400, detail="person_id is required")
    try:
        if payload.get("site"):
            site = parse_site(payload["site"])
        else:
            current = get_month_state(db, first)["plan"].get(day.isoformat(), {}).get(person_id, "REMOTE")
            site = next_site(current)
        cell = set_cell(db, first, day, person_id, site)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    _audit(db, "api", "cell_edit", {"day": day.isoformat(), "person_id": person_id, "site": cell.site})
    return JSONResponse(content={"day": day.isoformat(), "person_id": person_id, "site": cell.site})


@app.post("/api/v1/months/{month}/all-hands")
def toggle_all_hands(month: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    first = _parse_month(month)
    day = _parse_day(payload.get("day"))
    if month_start(day) != first:
        raise HTTPException(status_code=400, detail="day must fall inside the month")
    try:
        dates = toggle_all_hands_day(db, day)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return JSONResponse(content={"month": first.isoformat(), "all_hands": [value.isoformat() for value in dates]})


@app.post("/api/v1/months/{month}/absences")
def toggle_person_absence(month: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    first = _parse_month(month)
    day = _parse_day(payload.get("day"))
    person_id = (payload.get("person_id") or "").strip()
    if not person_id:
        raise HTTPException(status_code=400, detail="person_id is required")
    if day not in business_days(first):
        raise HTTPException(status_code=400, detail="day must be a business day of the month")
    absent = toggle_absence(db, person_id, day)
    return JSONResponse(content={"person_id": person_id, "day": day.isoformat(), "absent": absent})


@app.get("/api/v1/months/{month}/usage")
def month_usage(month: str, db=Depends(get_db)) -> JSONResponse:
    first = _parse_month(month)
    state = get_month_state(db, first)
    return JSONResponse(content={"month": state["month"], "usage": usage_payload(state["plan"], state["days"])})


@app.get("/api/v1/months/{month}/validate")
def validate_month_endpoint(month: str, db=Depends(get_db), roster_db=Depends(get_roster_db)) -> JSONResponse:
    first = _parse_month(month)
    report = validate_month(db, first, roster_session=roster_db)
    return JSONResponse(content=jsonable_encoder(report))


@app.get("/api/v1/months/{month}/export")
def export_month(
    month: str,
    include_absent: bool = Query(False),
    db=Depends(get_db),
    roster_db=Depends(get_roster_db),
) -> PlainTextResponse:
    first = _parse_month(month)
    state = get_month_state(db, first)
    text = export_plan_csv(
        state["plan"],
        business_days(first),
        database.load_roster(roster_db),
        all_hands=state["all_hands"],
        labels=site_labels(_policy(db)),
        include_absent=include_absent,
    )
    return PlainTextResponse(content=text, media_type="text/csv")


@app.post("/api/v1/months/{month}/import")
def import_month(month: str, payload: Dict[str, Any], db=Depends(get_db), roster_db=Depends(get_roster_db)) -> JSONResponse:
    first = _parse_month(month)
    try:
        cells = import_month_text(db, first, payload.get("text") or "", roster_session=roster_db, actor="api")
    except ImportFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    audit_logger.log("plan_import", "api", details={"month": first.isoformat(), "cells": cells})
    return JSONResponse(content={"month": first.isoformat(), "cells": cells, "days": business_day_isos(first)})


@app.post("/api/v1/months/{month}/reset")
def reset(month: str, db=Depends(get_db)) -> JSONResponse:
    first = _parse_month(month)
    reset_month(db, first)
    month_plan = get_or_create_month(db, first)
    _audit(db, "api", "month_reset", {"month": first.isoformat()})
    audit_logger.log("month_reset", "api", details={"month": first.isoformat()})
    return JSONResponse(content={"month": first.isoformat(), "status": month_plan.status})
