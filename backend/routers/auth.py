import time
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.config import DEFAULT_TENANT_SLUG
from backend.security import issue_session_token, require_session, session_tenant_id, session_user_id
from database.db import create_tables, get_user, verify_user_credentials

router = APIRouter()


class LoginRequest(BaseModel):
    email: str
    password: str
    tenant: str | None = None


def _issue_user_token(payload: LoginRequest) -> dict:
    email = payload.email.strip()
    password = payload.password.strip()
    tenant = (payload.tenant or DEFAULT_TENANT_SLUG).strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(tenant, email, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            user = verify_user_credentials(tenant, email, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token, claims = issue_session_token(user["id"], tenant_id=user["tenant_id"], role=user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": user["id"],
        "tenant_id": user["tenant_id"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.post("/auth/login")
def login(payload: LoginRequest):
    return _issue_user_token(payload)


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    user = get_user(session_tenant_id(session), session_user_id(session))
    if not user:
        raise HTTPException(status_code=401, detail="Account no longer exists.")
    return {
        "user_id": user["id"],
        "tenant_id": user["tenant_id"],
        "email": user["email"],
        "full_name": user["full_name"],
        "role": session.get("role"),
        "device_registered": bool(user["registered_device_id"]),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
