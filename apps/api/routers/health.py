"""
Health Data Router

Read side of the wearable pipeline for the dashboard, plus manual logging:
- GET  /v1/health/summary    today + weekly average + connected providers
- GET  /v1/health/entries    raw normalized entries in a date range
- GET  /v1/health/providers  active provider connections
- POST /v1/health/manual     log a day by hand (provider 'manual')
"""

from datetime import date, timedelta
from typing import Optional
from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from core.clock import Clock
from core.database import get_db
from core.dependencies import get_clock
from core.exceptions import PersistenceError, ValidationError
from services import provider_connections
from services.health_entry_store import HealthEntryStore
from services.health_normalizer import DATA_TYPES
from services.health_summary import HealthSummaryService
from services.manual_entries import build_manual_drafts, save_manual_entries
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health", tags=["health"])

# Widest range a single entries query may span.
MAX_RANGE_DAYS = 366


class ManualEntryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    entry_date: Optional[date] = Field(default=None, alias="date")
    steps: Optional[int] = Field(default=None, ge=0)
    sleep_hours: Optional[float] = Field(default=None, alias="sleepHours", ge=0, le=24)
    calories_burned: Optional[float] = Field(default=None, alias="caloriesBurned", ge=0)
    active_minutes: Optional[int] = Field(default=None, alias="activeMinutes", ge=0, le=1440)
    avg_heart_rate: Optional[float] = Field(default=None, alias="avgHeartRate", gt=0, le=250)


@router.get("/summary")
def get_summary(
    user_id: str = Query(..., alias="userId", min_length=1),
    day: Optional[date] = Query(None, alias="date", description="Day to summarize (default: today, UTC)"),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """Dashboard summary: today's totals and the 7-day average."""
    day = day or clock().date()
    return HealthSummaryService(db).get_health_summary(user_id, day)


@router.get("/entries")
def list_entries(
    user_id: str = Query(..., alias="userId", min_length=1),
    start: date = Query(...),
    end: date = Query(...),
    data_type: Optional[str] = Query(None, alias="dataType"),
    db: Session = Depends(get_db),
):
    if end < start:
        raise ValidationError("end must not be before start", field="end")
    if end - start > timedelta(days=MAX_RANGE_DAYS):
        raise ValidationError(f"range must not exceed {MAX_RANGE_DAYS} days", field="start")
    if data_type and data_type not in DATA_TYPES:
        raise ValidationError(f"dataType must be one of {', '.join(DATA_TYPES)}", field="dataType")

    entries = HealthEntryStore(db).list_entries(user_id, start, end, data_type=data_type)
    return {"entries": [e.to_dict() for e in entries]}


@router.get("/providers")
def list_providers(
    user_id: str = Query(..., alias="userId", min_length=1),
    db: Session = Depends(get_db),
):
    rows = provider_connections.list_active_connections(db, user_id)
    return {"providers": [row.to_dict() for row in rows]}


@router.post("/manual")
def log_manual_entry(
    request: Optional[ManualEntryRequest] = Body(default=None),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """Save user-logged metrics for a day. Only submitted fields are written."""
    if request is None or not request.user_id:
        raise ValidationError("userId is required", field="userId")

    day = request.entry_date or clock().date()
    drafts = build_manual_drafts(
        request.user_id,
        day,
        steps=request.steps,
        sleep_hours=request.sleep_hours,
        calories_burned=request.calories_burned,
        active_minutes=request.active_minutes,
        avg_heart_rate=request.avg_heart_rate,
    )
    if not drafts:
        raise ValidationError("at least one metric is required")

    try:
        saved = save_manual_entries(HealthEntryStore(db, clock=clock), drafts)
        db.commit()
    except PersistenceError:
        db.rollback()
        raise HTTPException(status_code=500, detail="Failed to save manual entry")

    logger.info(f"Manual entries saved: user={request.user_id} date={day} count={saved}")
    return {"success": True, "date": day.isoformat(), "saved": saved}
