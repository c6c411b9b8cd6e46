import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import STAFF_ROLES, require_roles, require_session, session_tenant_id, session_user_id
from backend.services.time_window import parse_hhmm
from database.db import (
    FREQUENCIES,
    LOCATION_MODES,
    PARTICIPANT_MODES,
    WEEKDAY_NAMES,
    cancel_gathering,
    create_gathering,
    get_gathering,
    get_roster_entry,
    get_user,
    insert_audit_log,
    list_attendance_for_gathering,
    list_gatherings,
    list_roster,
    upsert_roster_entry,
)

logger = logging.getLogger(__name__)

router = APIRouter()
require_staff = require_roles(*STAFF_ROLES)


class RosterAssignment(BaseModel):
    user_id: int
    mode: str = "Physical"


class RosterUpdate(BaseModel):
    participants: list[RosterAssignment]


class GatheringCreate(BaseModel):
    name: str
    frequency: str
    start_date: str
    start_time: str
    end_time: str
    location_mode: str
    description: str | None = None
    end_date: str | None = None
    weekly_days: list[str] = []
    latitude: float | None = None
    longitude: float | None = None
    radius_meters: float | None = None
    location_link: str | None = None
    participants: list[RosterAssignment] = []


def _parse_date_field(value: str | None, field: str) -> date | None:
    if value is None or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD.")


def _normalize_weekdays(days: list[str]) -> list[str]:
    by_lower = {name.lower(): name for name in WEEKDAY_NAMES}
    out: list[str] = []
    for raw in days:
        name = by_lower.get(raw.strip().lower())
        if not name:
            raise HTTPException(status_code=400, detail=f"Unknown weekday: {raw!r}.")
        if name not in out:
            out.append(name)
    return out


def _validate_gathering(payload: GatheringCreate) -> dict:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required.")
    if payload.frequency not in FREQUENCIES:
        raise HTTPException(status_code=400, detail="Invalid frequency.")
    if payload.location_mode not in LOCATION_MODES:
        raise HTTPException(status_code=400, detail="Invalid location_mode.")

    start_date = _parse_date_field(payload.start_date, "start_date")
    if start_date is None:
        raise HTTPException(status_code=400, detail="start_date is required.")
    end_date = _parse_date_field(payload.end_date, "end_date")
    if end_date is not None and end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date.")

    try:
        start_time = parse_hhmm(payload.start_time)
        end_time = parse_hhmm(payload.end_time)
    except ValueError:
        raise HTTPException(status_code=400, detail="Times must be HH:MM.")
    if end_time <= start_time:
        raise HTTPException(status_code=400, detail="end_time must be later than start_time.")

    weekly_days = _normalize_weekdays(payload.weekly_days)
    if payload.frequency == "Weekly" and not weekly_days:
        raise HTTPException(status_code=400, detail="Weekly gatherings need at least one weekday.")

    has_coords = payload.latitude is not None and payload.longitude is not None
    link = (payload.location_link or "").strip() or None
    if payload.location_mode != "Remote" and not has_coords and not link:
        raise HTTPException(status_code=400, detail="Physical and Hybrid gatherings need coordinates or a location link.")
    if has_coords and not (-90 <= payload.latitude <= 90 and -180 <= payload.longitude <= 180):
        raise HTTPException(status_code=400, detail="Invalid coordinates.")
    if payload.radius_meters is not None and payload.radius_meters <= 0:
        raise HTTPException(status_code=400, detail="radius_meters must be positive.")

    return {
        "name": name,
        "description": payload.description,
        "frequency": payload.frequency,
        "start_date": start_date.isoformat(),
        "end_date": end_date.isoformat() if end_date else None,
        "start_time": start_time.strftime("%H:%M"),
        "end_time": end_time.strftime("%H:%M"),
        "weekly_days": weekly_days,
        "location_mode": payload.location_mode,
        "latitude": payload.latitude if has_coords else None,
        "longitude": payload.longitude if has_coords else None,
        "radius_meters": payload.radius_meters,
        "location_link": link,
    }


def _check_assignments(tenant_id: int, participants: list[RosterAssignment]) -> None:
    for assignment in participants:
        if assignment.mode not in PARTICIPANT_MODES:
            raise HTTPException(status_code=400, detail="Participant mode must be Physical or Remote.")
        if not get_user(tenant_id, assignment.user_id):
            raise HTTPException(status_code=404, detail=f"User {assignment.user_id} not found.")


def _assign(tenant_id: int, gathering_id: int, participants: list[RosterAssignment]) -> None:
    for assignment in participants:
        upsert_roster_entry(tenant_id, gathering_id, assignment.user_id, mode=assignment.mode)


def _gathering_or_404(tenant_id: int, gathering_id: int) -> dict:
    gathering = get_gathering(tenant_id, gathering_id)
    if not gathering:
        raise HTTPException(status_code=404, detail="Gathering not found.")
    return gathering


@router.post("/gatherings")
def create_gathering_route(payload: GatheringCreate, session: dict = Depends(require_staff)):
    tenant_id = session_tenant_id(session)
    fields = _validate_gathering(payload)
    _check_assignments(tenant_id, payload.participants)

    gathering_id = create_gathering(tenant_id, created_by=session_user_id(session), **fields)
    _assign(tenant_id, gathering_id, payload.participants)
    logger.info("Gathering %s created (tenant=%s)", gathering_id, tenant_id)
    return {**get_gathering(tenant_id, gathering_id), "roster": list_roster(tenant_id, gathering_id)}


@router.get("/gatherings")
def gatherings(include_cancelled: bool = False, session: dict = Depends(require_session)):
    tenant_id = session_tenant_id(session)
    rows = list_gatherings(tenant_id, include_cancelled=include_cancelled)
    if session["role"] not in STAFF_ROLES:
        user_id = session_user_id(session)
        rows = [g for g in rows if get_roster_entry(tenant_id, g["id"], user_id)]
    return rows


@router.get("/gatherings/{gathering_id}")
def gathering_detail(gathering_id: int, session: dict = Depends(require_session)):
    tenant_id = session_tenant_id(session)
    gathering = _gathering_or_404(tenant_id, gathering_id)
    if session["role"] not in STAFF_ROLES:
        entry = get_roster_entry(tenant_id, gathering_id, session_user_id(session))
        if not entry:
            raise HTTPException(status_code=404, detail="Gathering not found.")
        return {**gathering, "roster": [entry]}
    return {**gathering, "roster": list_roster(tenant_id, gathering_id)}


@router.put("/gatherings/{gathering_id}/roster")
def update_roster(gathering_id: int, payload: RosterUpdate, session: dict = Depends(require_staff)):
    tenant_id = session_tenant_id(session)
    _gathering_or_404(tenant_id, gathering_id)
    if not payload.participants:
        raise HTTPException(status_code=400, detail="No participants given.")
    _check_assignments(tenant_id, payload.participants)
    _assign(tenant_id, gathering_id, payload.participants)
    return {"gathering_id": gathering_id, "roster": list_roster(tenant_id, gathering_id)}


@router.post("/gatherings/{gathering_id}/cancel")
def cancel_gathering_route(gathering_id: int, session: dict = Depends(require_staff)):
    tenant_id = session_tenant_id(session)
    _gathering_or_404(tenant_id, gathering_id)
    if not cancel_gathering(tenant_id, gathering_id):
        raise HTTPException(status_code=409, detail="Gathering is already cancelled.")
    insert_audit_log(
        tenant_id=tenant_id,
        action="CANCEL_SESSION",
        performed_by=session_user_id(session),
        performed_by_role=session["role"],
        details={"gathering_id": gathering_id},
    )
    logger.info("Gathering %s cancelled (tenant=%s)", gathering_id, tenant_id)
    return {"ok": True, "gathering_id": gathering_id}


@router.get("/gatherings/{gathering_id}/attendance")
def gathering_attendance(
    gathering_id: int,
    occurrence_date: str | None = None,
    session: dict = Depends(require_staff),
):
    tenant_id = session_tenant_id(session)
    _gathering_or_404(tenant_id, gathering_id)
    day = _parse_date_field(occurrence_date, "occurrence_date")
    rows = list_attendance_for_gathering(
        tenant_id,
        gathering_id,
        occurrence_date=day.isoformat() if day else None,
    )
    return {"rows": rows, "total": len(rows)}
