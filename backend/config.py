import os
import secrets
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db"))
SIGNING_KEY = os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "43200"))

DEFAULT_TENANT_NAME = os.getenv("ROLLCALL_DEFAULT_TENANT_NAME", "Default Organization").strip()
DEFAULT_TENANT_SLUG = os.getenv("ROLLCALL_DEFAULT_TENANT_SLUG", "default").strip().lower() or "default"
ADMIN_EMAIL = os.getenv("ROLLCALL_ADMIN_EMAIL", "admin@example.com").strip().lower() or "admin@example.com"
ADMIN_PASSWORD = os.getenv("ROLLCALL_ADMIN_PASSWORD", "admin123").strip() or "admin123"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int | None = None) -> int:
    try:
        parsed = int(value) if value is not None else fallback
    except ValueError:
        parsed = fallback
    if minimum is not None:
        parsed = max(minimum, parsed)
    return parsed


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Request-Id"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("ROLLCALL_ENABLE_DEBUG_ENDPOINTS"), False)
ENABLE_SCHEDULER = _parse_bool(os.getenv("ROLLCALL_ENABLE_SCHEDULER"), True)
LOG_LEVEL = os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Tenant settings fallbacks (a tenant without a settings row uses these)
DEFAULT_LATE_GRACE_MINUTES = _parse_int(os.getenv("ROLLCALL_DEFAULT_LATE_GRACE_MINUTES"), 30, minimum=0)
DEFAULT_STRICT_MODE = _parse_bool(os.getenv("ROLLCALL_DEFAULT_STRICT_MODE"), False)
DEFAULT_UTC_OFFSET_MINUTES = _parse_int(os.getenv("ROLLCALL_DEFAULT_UTC_OFFSET_MINUTES"), 330)
DEFAULT_GEOFENCE_RADIUS_METERS = float(os.getenv("ROLLCALL_DEFAULT_GEOFENCE_RADIUS_METERS", "100"))

# Fixed attendance constants
EARLY_SCAN_WINDOW = timedelta(hours=2)
RECONCILE_INTERVAL = timedelta(minutes=10)
AUTO_ABSENT_DEVICE_ID = "AUTO_MARKED_ABSENT"
FORCED_DEVICE_ID = "FORCED_BY_ADMIN"
