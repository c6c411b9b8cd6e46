from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from backend.security import require_session, session_tenant_id, session_user_id
from backend.services.checkin import record_check_in
from database.db import list_attendance_for_user

router = APIRouter()


class ClaimedLocation(BaseModel):
    lat: float
    lon: float


class CheckInRequest(BaseModel):
    gathering_id: int
    location: ClaimedLocation
    device_id: str
    # Falls back to the User-Agent header when omitted.
    client_signature: str | None = None


@router.post("/attendance/scan")
def check_in(
    payload: CheckInRequest,
    session: dict = Depends(require_session),
    user_agent: str | None = Header(default=None),
):
    return record_check_in(
        tenant_id=session_tenant_id(session),
        user_id=session_user_id(session),
        role=session["role"],
        gathering_id=payload.gathering_id,
        latitude=payload.location.lat,
        longitude=payload.location.lon,
        device_id=payload.device_id,
        user_agent=payload.client_signature or user_agent or "",
    )


@router.get("/attendance/me")
def my_attendance(session: dict = Depends(require_session)):
    rows = list_attendance_for_user(session_tenant_id(session), session_user_id(session))
    return {"rows": rows, "total": len(rows)}
