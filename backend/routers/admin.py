import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from backend.errors import STATUS_BY_KIND
from backend.security import STAFF_ROLES, require_roles, session_tenant_id, session_user_id
from backend.services.checkin import force_attendance
from backend.services.reconciler import get_reconciliation_status, run_reconciliation_job
from database.db import (
    ATTENDANCE_STATUSES,
    get_audit_logs,
    get_checkin_events,
    get_checkin_events_total,
    get_user,
    insert_audit_log,
    reset_user_device,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_roles(*STAFF_ROLES))])
require_staff = require_roles(*STAFF_ROLES)
ALLOWED_DECISION_CODES: set[str] = {"Accepted", *STATUS_BY_KIND}
ALLOWED_AUDIT_ACTIONS: set[str] = {
    "FORCE_ATTENDANCE_CORRECTION",
    "DEVICE_RESET",
    "CANCEL_SESSION",
    "UPDATE_SETTINGS",
}


class ForceAttendance(BaseModel):
    user_id: int
    gathering_id: int
    status: str
    occurrence_date: str | None = None


@router.post("/admin/users/{user_id}/reset-device")
def reset_device(user_id: int, session: dict = Depends(require_staff)):
    tenant_id = session_tenant_id(session)
    user = get_user(tenant_id, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    reset_user_device(tenant_id, user_id)
    insert_audit_log(
        tenant_id=tenant_id,
        action="DEVICE_RESET",
        performed_by=session_user_id(session),
        performed_by_role=session["role"],
        target_user_id=user_id,
        details={"previous_device_id": user["registered_device_id"]},
    )
    logger.info("Device binding reset for user=%s (tenant=%s)", user_id, tenant_id)
    return {"ok": True, "user_id": user_id, "message": "Device binding cleared."}


@router.post("/admin/attendance/force")
def force_attendance_route(payload: ForceAttendance, session: dict = Depends(require_staff)):
    if payload.status not in ATTENDANCE_STATUSES:
        raise HTTPException(status_code=400, detail="status must be Present, Absent or On-Leave.")
    result = force_attendance(
        tenant_id=session_tenant_id(session),
        actor_id=session_user_id(session),
        actor_role=session["role"],
        user_id=payload.user_id,
        gathering_id=payload.gathering_id,
        status=payload.status,
        occurrence_date=payload.occurrence_date,
    )
    return {"ok": True, **result}


@router.post("/admin/reconcile")
def run_reconcile():
    stats = run_reconciliation_job()
    if stats is None:
        raise HTTPException(status_code=409, detail="Reconciliation already running.")
    return {
        "ok": True,
        "message": "Reconciliation completed.",
        **stats,
    }


@router.get("/admin/reconcile/status")
def reconcile_status():
    return get_reconciliation_status()


@router.get("/admin/checkin-events")
def list_checkin_events(
    user_id: int | None = None,
    gathering_id: int | None = None,
    decision_code: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: dict = Depends(require_staff),
):
    clean_decision = decision_code.strip() if decision_code else None
    if clean_decision and clean_decision not in ALLOWED_DECISION_CODES:
        raise HTTPException(status_code=400, detail="Invalid decision_code filter.")

    tenant_id = session_tenant_id(session)
    rows = get_checkin_events(
        tenant_id,
        user_id=user_id,
        gathering_id=gathering_id,
        decision_code=clean_decision,
        limit=limit,
        offset=offset,
    )
    total = get_checkin_events_total(
        tenant_id,
        user_id=user_id,
        gathering_id=gathering_id,
        decision_code=clean_decision,
    )
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/admin/audit-logs")
def list_audit_logs(
    action: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: dict = Depends(require_staff),
):
    if action and action not in ALLOWED_AUDIT_ACTIONS:
        raise HTTPException(status_code=400, detail="Invalid action filter.")
    rows = get_audit_logs(session_tenant_id(session), action=action, limit=limit, offset=offset)
    return {"rows": rows, "limit": limit, "offset": offset}
