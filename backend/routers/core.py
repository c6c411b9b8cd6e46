from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    AUTO_ABSENT_DEVICE_ID,
    DB_PATH,
    DEFAULT_GEOFENCE_RADIUS_METERS,
    DEFAULT_LATE_GRACE_MINUTES,
    DEFAULT_STRICT_MODE,
    DEFAULT_UTC_OFFSET_MINUTES,
    EARLY_SCAN_WINDOW,
    ENABLE_DEBUG_ENDPOINTS,
    FORCED_DEVICE_ID,
    RECONCILE_INTERVAL,
)
from backend.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/attendance")
def attendance_config():
    return {
        "early_scan_window_minutes": int(EARLY_SCAN_WINDOW.total_seconds() // 60),
        "reconcile_interval_minutes": int(RECONCILE_INTERVAL.total_seconds() // 60),
        "default_late_grace_minutes": DEFAULT_LATE_GRACE_MINUTES,
        "default_strict_mode": DEFAULT_STRICT_MODE,
        "default_utc_offset_minutes": DEFAULT_UTC_OFFSET_MINUTES,
        "default_geofence_radius_meters": DEFAULT_GEOFENCE_RADIUS_METERS,
        "auto_absent_device_id": AUTO_ABSENT_DEVICE_ID,
        "forced_device_id": FORCED_DEVICE_ID,
    }
