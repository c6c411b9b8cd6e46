import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import STAFF_ROLES, require_roles, require_session, session_tenant_id, session_user_id
from backend.services.leave_overlap import expand_leave_dates
from database.db import (
    LEAVE_TYPES,
    create_leave_request,
    decide_leave_request,
    get_leave_request,
    list_leave_requests,
)

logger = logging.getLogger(__name__)

router = APIRouter()
require_staff = require_roles(*STAFF_ROLES)


class LeaveApply(BaseModel):
    leave_type: str
    reason: str
    dates: list[str] = []
    start_date: str | None = None
    end_date: str | None = None


class LeaveRejection(BaseModel):
    reason: str


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date: {value!r}. Use YYYY-MM-DD.")


@router.post("/leaves")
def apply_leave(payload: LeaveApply, session: dict = Depends(require_session)):
    if payload.leave_type not in LEAVE_TYPES:
        raise HTTPException(status_code=400, detail="Invalid leave_type.")
    reason = payload.reason.strip()
    if not reason:
        raise HTTPException(status_code=400, detail="A reason is required.")

    if payload.dates:
        days = sorted({_parse_day(d) for d in payload.dates})
        start, end = days[0], days[-1]
        dates = [d.isoformat() for d in days]
        days_count = float(len(dates))
    elif payload.start_date and payload.end_date:
        start, end = _parse_day(payload.start_date), _parse_day(payload.end_date)
        try:
            days_count = float(len(expand_leave_dates(start, end)))
        except ValueError:
            raise HTTPException(status_code=400, detail="end_date must not be before start_date.")
        dates = []
    else:
        raise HTTPException(status_code=400, detail="Give either dates or start_date and end_date.")

    tenant_id = session_tenant_id(session)
    leave_id = create_leave_request(
        tenant_id,
        session_user_id(session),
        leave_type=payload.leave_type,
        dates=dates,
        start_date=start.isoformat(),
        end_date=end.isoformat(),
        days_count=days_count,
        reason=reason,
    )
    return get_leave_request(tenant_id, leave_id)


@router.get("/leaves/mine")
def my_leaves(session: dict = Depends(require_session)):
    return list_leave_requests(session_tenant_id(session), user_id=session_user_id(session))


@router.get("/leaves")
def organization_leaves(
    status: str | None = None,
    leave_type: str | None = None,
    user_id: int | None = None,
    session: dict = Depends(require_staff),
):
    return list_leave_requests(
        session_tenant_id(session),
        user_id=user_id,
        status=status,
        leave_type=leave_type,
    )


def _pending_or_error(tenant_id: int, leave_id: int) -> dict:
    leave = get_leave_request(tenant_id, leave_id)
    if not leave:
        raise HTTPException(status_code=404, detail="Leave request not found.")
    if leave["status"] != "Pending":
        raise HTTPException(status_code=400, detail=f"Leave request is already {leave['status']}.")
    return leave


@router.post("/leaves/{leave_id}/approve")
def approve_leave(leave_id: int, session: dict = Depends(require_staff)):
    tenant_id = session_tenant_id(session)
    _pending_or_error(tenant_id, leave_id)
    if not decide_leave_request(tenant_id, leave_id, status="Approved", approver_id=session_user_id(session)):
        raise HTTPException(status_code=409, detail="Leave request was decided concurrently.")
    logger.info("Leave %s approved by user=%s (tenant=%s)", leave_id, session_user_id(session), tenant_id)
    return get_leave_request(tenant_id, leave_id)


@router.post("/leaves/{leave_id}/reject")
def reject_leave(leave_id: int, payload: LeaveRejection, session: dict = Depends(require_staff)):
    tenant_id = session_tenant_id(session)
    reason = payload.reason.strip()
    if not reason:
        raise HTTPException(status_code=400, detail="A rejection reason is required.")
    _pending_or_error(tenant_id, leave_id)
    if not decide_leave_request(
        tenant_id,
        leave_id,
        status="Rejected",
        approver_id=session_user_id(session),
        rejection_reason=reason,
    ):
        raise HTTPException(status_code=409, detail="Leave request was decided concurrently.")
    return get_leave_request(tenant_id, leave_id)
