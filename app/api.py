"""FastAPI shell over the pharmacy scheduler database.

Endpoints stay thin: they parse input, call the storage helpers or the
generator service and return JSON. No scheduling decisions are made here.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure absolute imports (e.g., "import database") resolve when served from the repo root.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    PharmacistSessionLocal,
    SessionLocal,
    Shift,
    get_active_rules,
    get_shifts_for_week,
    init_database,
    list_pharmacists,
    pharmacist_to_worker,
    record_audit_log,
    update_shift,
    upsert_pharmacist,
    upsert_rules,
)
from generator.api import generate_schedule_for_week  # noqa: E402
from generator.engine import generate_schedules  # noqa: E402
from rules import ensure_default_rules, normalize_rules, rules_from_payload  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from validation import validate_week_schedule  # noqa: E402


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_rules(SessionLocal)
    yield


app = FastAPI(title="Pharmacy Shift Planner API", version="0.1", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_pharmacist_db():
    db = PharmacistSessionLocal()
    try:
        yield db
    finally:
        db.close()


def _parse_week_start(value: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="weekStart must be YYYY-MM-DD")


def _audit(db: Session, actor: str, action: str, target_type: str, target_id: Optional[int], payload: Dict[str, Any]) -> None:
    record_audit_log(db, user_id=actor, action=action, target_type=target_type, target_id=target_id, payload=payload)


def _rules_payload(profile) -> Dict[str, Any]:
    return {
        "id": profile.id,
        "name": profile.name,
        "params": profile.params_dict(),
        "lastEditedBy": profile.lastEditedBy,
        "lastEditedAt": profile.lastEditedAt.isoformat() if profile.lastEditedAt else None,
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/pharmacists")
def pharmacists(pharmacist_db=Depends(get_pharmacist_db)) -> JSONResponse:
    roster = [pharmacist_to_worker(item).to_dict() for item in list_pharmacists(pharmacist_db)]
    return JSONResponse(content=jsonable_encoder({"pharmacists": roster}))


@app.put("/api/v1/pharmacists/{pharmacist_id}")
def save_pharmacist(
    pharmacist_id: str,
    payload: Dict[str, Any],
    db=Depends(get_db),
    pharmacist_db=Depends(get_pharmacist_db),
) -> JSONResponse:
    data = dict(payload)
    data["id"] = pharmacist_id
    try:
        pharmacist = upsert_pharmacist(pharmacist_db, data)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(
        db,
        actor=payload.get("actor") or "api",
        action="pharmacist_update",
        target_type="Pharmacist",
        target_id=None,
        payload={"id": pharmacist.id},
    )
    return JSONResponse(content=jsonable_encoder(pharmacist_to_worker(pharmacist).to_dict()))


@app.get("/api/v1/rules/active")
def active_rules(db=Depends(get_db)) -> JSONResponse:
    profile = get_active_rules(db)
    if not profile:
        raise HTTPException(status_code=404, detail="No active rules found")
    return JSONResponse(content=jsonable_encoder(_rules_payload(profile)))


@app.put("/api/v1/rules/active")
def set_active_rules(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = (payload.get("actor") or "api").strip() or "api"
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    try:
        rules_from_payload(normalize_rules(params))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    profile = upsert_rules(db, name=name, params_dict=params, edited_by=actor)
    _audit(db, actor=actor, action="rules_edit", target_type="RulesProfile", target_id=profile.id, payload={"name": name})
    return JSONResponse(content=jsonable_encoder(_rules_payload(profile)))


@app.post("/api/v1/schedules/generate")
def generate_schedule(payload: Dict[str, Any]) -> JSONResponse:
    week_start_raw = payload.get("weekStart") or payload.get("week_start")
    actor = (payload.get("actor") or "api").strip() or "api"
    if not week_start_raw:
        raise HTTPException(status_code=400, detail="weekStart is required")
    start_date = _parse_week_start(str(week_start_raw))
    try:
        weeks = int(payload.get("weeks") or 1)
        seed = payload.get("seed")
        result = generate_schedule_for_week(
            SessionLocal,
            start_date,
            actor,
            weeks=weeks,
            seed=int(seed) if seed is not None else None,
            pharmacist_session_factory=PharmacistSessionLocal,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=f"schedule generation failed: {exc}") from exc
    return JSONResponse(content=jsonable_encoder(result))


@app.post("/api/v1/schedules/preview")
def preview_schedule(payload: Dict[str, Any]) -> JSONResponse:
    """Run the engine on a roster and rules passed in the request; nothing is stored."""
    try:
        seed = payload.get("seed")
        plans = generate_schedules(
            payload.get("pharmacists") or [],
            normalize_rules(payload.get("rules") or {}),
            weeks=int(payload.get("weeks") or 1),
            start_date=payload.get("startDate"),
            seed=int(seed) if seed is not None else None,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder({"schedules": [plan.to_dict() for plan in plans]}))


@app.get("/api/v1/weeks/{week_start}/shifts")
def week_shifts(
    week_start: str,
    pharmacist_id: Optional[str] = Query(None),
    db=Depends(get_db),
    pharmacist_db=Depends(get_pharmacist_db),
) -> JSONResponse:
    start_date = _parse_week_start(week_start)
    shifts = get_shifts_for_week(db, start_date, pharmacist_id=pharmacist_id, pharmacist_session=pharmacist_db)
    return JSONResponse(content=jsonable_encoder({"week_start": start_date.isoformat(), "shifts": shifts}))


@app.get("/api/v1/schedules/{week_start}/validate")
def validate_schedule_endpoint(week_start: str, db=Depends(get_db)) -> JSONResponse:
    start_date = _parse_week_start(week_start)
    with PharmacistSessionLocal() as pharmacist_db:
        report = validate_week_schedule(db, start_date, pharmacist_session=pharmacist_db)
    if report["week_id"] is None:
        raise HTTPException(status_code=404, detail="No schedule exists for the requested week")
    return JSONResponse(content=jsonable_encoder(report))


@app.patch("/api/v1/shifts/{shift_id}")
def edit_shift(shift_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    if db.get(Shift, shift_id) is None:
        raise HTTPException(status_code=404, detail="Shift not found")
    actor = (payload.get("actor") or "api").strip() or "api"
    changes = {key: value for key, value in payload.items() if key != "actor"}
    try:
        shift = update_shift(db, shift_id, changes)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(db, actor=actor, action="shift_update", target_type="Shift", target_id=shift.id, payload=changes)
    with PharmacistSessionLocal() as pharmacist_db:
        report = validate_week_schedule(db, shift.date, pharmacist_session=pharmacist_db)
    return JSONResponse(
        content=jsonable_encoder(
            {
                "shift": {
                    "id": shift.id,
                    "pharmacistId": shift.pharmacist_id,
                    "date": shift.date.isoformat(),
                    "startTime": shift.start_time,
                    "endTime": shift.end_time,
                    "type": shift.shift_type,
                },
                "validation": report,
            }
        )
    )
