import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import (
    OWNER_ROLES,
    ROLES,
    STAFF_ROLES,
    require_roles,
    require_session,
    session_tenant_id,
    session_user_id,
)
from database.db import (
    create_user,
    get_tenant_settings,
    get_user,
    insert_audit_log,
    list_users,
    update_tenant_settings,
)

router = APIRouter()
require_owner = require_roles(*OWNER_ROLES)


class SettingsUpdate(BaseModel):
    late_grace_minutes: int | None = None
    strict_mode: bool | None = None
    utc_offset_minutes: int | None = None


class UserCreate(BaseModel):
    email: str
    full_name: str
    password: str
    role: str = "EndUser"


@router.get("/organization/settings")
def organization_settings(session: dict = Depends(require_session)):
    return get_tenant_settings(session_tenant_id(session))


@router.put("/organization/settings")
def update_organization_settings(payload: SettingsUpdate, session: dict = Depends(require_owner)):
    if payload.late_grace_minutes is not None and payload.late_grace_minutes < 0:
        raise HTTPException(status_code=400, detail="late_grace_minutes must be >= 0.")
    if payload.utc_offset_minutes is not None and not -720 <= payload.utc_offset_minutes <= 840:
        raise HTTPException(status_code=400, detail="utc_offset_minutes out of range.")

    tenant_id = session_tenant_id(session)
    settings = update_tenant_settings(
        tenant_id,
        late_grace_minutes=payload.late_grace_minutes,
        strict_mode=payload.strict_mode,
        utc_offset_minutes=payload.utc_offset_minutes,
    )
    insert_audit_log(
        tenant_id=tenant_id,
        action="UPDATE_SETTINGS",
        performed_by=session_user_id(session),
        performed_by_role=session["role"],
        details=payload.model_dump(exclude_none=True),
    )
    return settings


@router.post("/users")
def create_user_route(payload: UserCreate, session: dict = Depends(require_owner)):
    email = payload.email.strip()
    full_name = payload.full_name.strip()
    password = payload.password.strip()
    if not email or not full_name or not password:
        raise HTTPException(status_code=400, detail="All fields are required.")
    if payload.role not in ROLES:
        raise HTTPException(status_code=400, detail="Invalid role.")
    if payload.role == "SuperAdmin" and session["role"] != "SuperAdmin":
        raise HTTPException(status_code=403, detail="Only a SuperAdmin can create another SuperAdmin.")

    tenant_id = session_tenant_id(session)
    try:
        user_id = create_user(tenant_id, email=email, full_name=full_name, role=payload.role, password=password)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email already exists.")
    return get_user(tenant_id, user_id)


@router.get("/users")
def users(session: dict = Depends(require_roles(*STAFF_ROLES))):
    return list_users(session_tenant_id(session))
