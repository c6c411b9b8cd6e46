import logging
import sqlite3
from datetime import date, datetime, timezone
from typing import Any

from backend.config import AUTO_ABSENT_DEVICE_ID, FORCED_DEVICE_ID
from backend.errors import CheckInError
from backend.security import SELF_CHECK_IN_BARRED_ROLES
from backend.services.device_guard import check_device
from backend.services.geofence import LocationUnconfiguredError, is_valid_coordinate, verify_location
from backend.services.time_window import (
    evaluate_window,
    occurs_on,
    resolve_occurrence,
    tenant_zone,
    to_tenant_time,
    too_early_detail,
)
from database.db import (
    AttendanceRecord,
    bind_user_device,
    connect_db,
    convert_record_to_forced,
    get_attendance_record,
    get_attendance_record_by_id,
    get_gathering,
    get_roster_entry,
    get_tenant_settings,
    get_user,
    insert_attendance_record_if_absent,
    insert_audit_log,
    insert_checkin_event,
    roster_status_for,
    set_roster_status,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds")


def _record_event(
    *,
    tenant_id: int,
    decision_code: str,
    message: str,
    user_id: int | None,
    gathering_id: int | None,
    occurrence_date: str | None,
    device_id: str | None,
    latitude: Any,
    longitude: Any,
    record_id: int | None = None,
) -> None:
    try:
        insert_checkin_event(
            tenant_id=tenant_id,
            decision_code=decision_code,
            message=message,
            user_id=user_id,
            gathering_id=gathering_id,
            occurrence_date=occurrence_date,
            device_id=device_id,
            latitude=latitude if isinstance(latitude, (int, float)) else None,
            longitude=longitude if isinstance(longitude, (int, float)) else None,
            record_id=record_id,
        )
    except sqlite3.Error:
        # The check-in outcome stands even if its audit row cannot be written.
        logger.exception(
            "Failed to write check-in event (tenant=%s user=%s gathering=%s decision=%s)",
            tenant_id,
            user_id,
            gathering_id,
            decision_code,
        )


def record_check_in(
    *,
    tenant_id: int,
    user_id: int,
    role: str,
    gathering_id: int,
    latitude: Any,
    longitude: Any,
    device_id: str,
    user_agent: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Accept or reject one check-in and persist the outcome.

    Raises CheckInError with a distinct kind for every rejection. Every attempt, accepted
    or not, is appended to the check-in event trail.
    """
    context: dict[str, Any] = {"occurrence_date": None}
    try:
        result = _run_pipeline(
            tenant_id=tenant_id,
            user_id=user_id,
            role=role,
            gathering_id=gathering_id,
            latitude=latitude,
            longitude=longitude,
            device_id=device_id,
            user_agent=user_agent,
            now=now or _utc_now(),
            context=context,
        )
    except CheckInError as exc:
        logger.info(
            "Check-in rejected: kind=%s tenant=%s user=%s gathering=%s",
            exc.kind,
            tenant_id,
            user_id,
            gathering_id,
        )
        _record_event(
            tenant_id=tenant_id,
            decision_code=exc.kind,
            message=exc.message,
            user_id=user_id,
            gathering_id=gathering_id,
            occurrence_date=context["occurrence_date"],
            device_id=device_id,
            latitude=latitude,
            longitude=longitude,
        )
        raise

    record = result["record"]
    _record_event(
        tenant_id=tenant_id,
        decision_code="Accepted",
        message=result["message"],
        user_id=user_id,
        gathering_id=gathering_id,
        occurrence_date=record["occurrence_date"],
        device_id=device_id,
        latitude=latitude,
        longitude=longitude,
        record_id=record["id"],
    )
    return result


def _run_pipeline(
    *,
    tenant_id: int,
    user_id: int,
    role: str,
    gathering_id: int,
    latitude: Any,
    longitude: Any,
    device_id: str,
    user_agent: str,
    now: datetime,
    context: dict[str, Any],
) -> dict[str, Any]:
    if role in SELF_CHECK_IN_BARRED_ROLES:
        raise CheckInError("Forbidden", "Organization administrators cannot check in to gatherings.")

    if not is_valid_coordinate(latitude, longitude):
        raise CheckInError("InvalidInput", "A valid latitude and longitude are required.")
    device_id = (device_id or "").strip()
    if not device_id:
        raise CheckInError("InvalidInput", "A device identifier is required.")
    user_agent = (user_agent or "").strip()

    user = get_user(tenant_id, user_id)
    if not user:
        raise CheckInError("NotFound", "Participant not found.")
    gathering = get_gathering(tenant_id, gathering_id)
    if not gathering:
        raise CheckInError("NotFound", "Gathering not found.")

    entry = get_roster_entry(tenant_id, gathering_id, user_id)
    if not entry:
        raise CheckInError("Forbidden", "You are not assigned to this gathering.")
    if gathering["is_cancelled"]:
        raise CheckInError("NotScheduledToday", "This gathering has been cancelled.")

    settings = get_tenant_settings(tenant_id)
    decision = evaluate_window(
        gathering,
        now,
        grace_minutes=settings["late_grace_minutes"],
        strict=settings["strict_mode"],
        utc_offset_minutes=settings["utc_offset_minutes"],
    )
    if decision.kind == "not_scheduled":
        raise CheckInError("NotScheduledToday", "This gathering is not scheduled for today.")

    occurrence = decision.occurrence
    occurrence_key = occurrence.date_key
    context["occurrence_date"] = occurrence_key

    if decision.kind == "too_early":
        detail = too_early_detail(decision)
        raise CheckInError(
            "TooEarly",
            (
                f"Too early to check in. Check-in opens at {detail['scanWindowStartTime']} "
                f"({detail['hoursRemaining']}h {detail['minutesRemaining']}m remaining)."
            ),
            **detail,
        )
    if decision.kind == "closed":
        raise CheckInError(
            "WindowClosedStrict",
            (
                f"Check-in closed {settings['late_grace_minutes']} minutes after the start time. "
                f"You are {decision.minutes_late} minutes late."
            ),
            minutesLate=decision.minutes_late,
            secondsLate=decision.seconds_late,
        )

    if get_attendance_record(tenant_id, user_id, gathering_id, occurrence_key) or roster_status_for(
        entry, occurrence_key
    ):
        raise CheckInError("DuplicateCheckIn", "Attendance already marked for this occurrence.")

    try:
        geofence = verify_location(gathering, entry["mode"], float(latitude), float(longitude))
    except LocationUnconfiguredError as exc:
        logger.error("%s (tenant=%s)", exc, tenant_id)
        raise CheckInError(
            "LocationUnconfigured",
            "This gathering has no location configured. Contact the organizer.",
        ) from exc
    if not geofence.verified:
        raise CheckInError(
            "GeofenceViolation",
            (
                f"You are {geofence.distance_meters:.1f} m from the gathering location; "
                f"check-in is allowed within {geofence.radius_meters:.0f} m."
            ),
            distanceMeters=round(geofence.distance_meters, 1),
            radiusMeters=geofence.radius_meters,
        )

    device = check_device(user, device_id, user_agent)
    if device.verdict == "mismatch":
        raise CheckInError(
            "DeviceMismatch",
            "This account is registered to a different device. Ask an administrator to reset it.",
        )
    if device.verdict == "cloning":
        raise CheckInError(
            "DeviceCloningDetected",
            "This device's browser signature does not match the registered one. Ask an administrator to reset it.",
        )

    is_late = decision.is_late
    late_by = decision.minutes_late if is_late else None

    conn = connect_db()
    try:
        if device.needs_write:
            bind_user_device(conn, tenant_id=tenant_id, user_id=user_id, device_id=device_id, user_agent=user_agent)
        record_id = insert_attendance_record_if_absent(
            conn,
            tenant_id=tenant_id,
            user_id=user_id,
            gathering_id=gathering_id,
            occurrence_date=occurrence_key,
            check_in_at=_utc_iso(now),
            location_verified=geofence.verified,
            is_late=is_late,
            late_by_minutes=late_by,
            latitude=float(latitude),
            longitude=float(longitude),
            device_id=device_id,
            user_agent=user_agent or None,
        )
        if record_id is None:
            conn.rollback()
            raise CheckInError("DuplicateCheckIn", "Attendance already marked for this occurrence.")
        set_roster_status(
            conn,
            tenant_id=tenant_id,
            gathering_id=gathering_id,
            user_id=user_id,
            status="Present",
            is_late=is_late,
            occurrence_date=occurrence_key,
        )
        conn.commit()
        record = get_attendance_record_by_id(tenant_id, record_id, conn=conn)
    except sqlite3.Error as exc:
        conn.rollback()
        logger.exception(
            "Check-in persistence failed (tenant=%s user=%s gathering=%s occurrence=%s)",
            tenant_id,
            user_id,
            gathering_id,
            occurrence_key,
        )
        raise CheckInError("ServerError", "Could not record attendance. Please try again.") from exc
    finally:
        conn.close()

    if is_late:
        message = f"Attendance marked. You are {late_by} minutes late."
    else:
        message = "Attendance marked successfully."
    return {"message": message, "record": record, "device_registered": device.verdict == "bind"}


def force_attendance(
    *,
    tenant_id: int,
    actor_id: int,
    actor_role: str,
    user_id: int,
    gathering_id: int,
    status: str,
    occurrence_date: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Administrative correction of one participant's status for one occurrence.

    Present creates a forced record, or converts an auto-absent one; an existing natural
    record is left as it is. Records are never deleted.
    """
    gathering = get_gathering(tenant_id, gathering_id)
    if not gathering:
        raise CheckInError("NotFound", "Gathering not found.")
    if not get_user(tenant_id, user_id):
        raise CheckInError("NotFound", "Participant not found.")
    if not get_roster_entry(tenant_id, gathering_id, user_id):
        raise CheckInError("NotFound", "Participant is not on this gathering's roster.")

    now = now or _utc_now()
    if occurrence_date:
        try:
            day = date.fromisoformat(occurrence_date)
        except ValueError as exc:
            raise CheckInError("InvalidInput", "occurrence_date must be YYYY-MM-DD.") from exc
        if not occurs_on(gathering, day):
            raise CheckInError("InvalidInput", "The gathering has no occurrence on that date.")
        occurrence_key = day.isoformat()
    else:
        settings = get_tenant_settings(tenant_id)
        now_local = to_tenant_time(now, tenant_zone(settings["utc_offset_minutes"]))
        occurrence = resolve_occurrence(gathering, now_local, grace_minutes=settings["late_grace_minutes"])
        if occurrence is None:
            raise CheckInError("InvalidInput", "The gathering has no occurrence today; pass occurrence_date.")
        occurrence_key = occurrence.date_key

    conn = connect_db()
    record: AttendanceRecord | None = None
    try:
        set_roster_status(
            conn,
            tenant_id=tenant_id,
            gathering_id=gathering_id,
            user_id=user_id,
            status=status,
            is_late=False,
            occurrence_date=occurrence_key,
        )
        existing = get_attendance_record(tenant_id, user_id, gathering_id, occurrence_key, conn=conn)
        if status == "Present":
            if existing is None:
                record_id = insert_attendance_record_if_absent(
                    conn,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    gathering_id=gathering_id,
                    occurrence_date=occurrence_key,
                    check_in_at=_utc_iso(now),
                    location_verified=False,
                    is_late=False,
                    late_by_minutes=None,
                    latitude=None,
                    longitude=None,
                    device_id=FORCED_DEVICE_ID,
                    user_agent=None,
                    is_forced=True,
                    forced_by=actor_id,
                )
                if record_id is not None:
                    existing = get_attendance_record_by_id(tenant_id, record_id, conn=conn)
                else:
                    existing = get_attendance_record(tenant_id, user_id, gathering_id, occurrence_key, conn=conn)
            elif existing["device_id"] == AUTO_ABSENT_DEVICE_ID:
                convert_record_to_forced(
                    conn,
                    tenant_id=tenant_id,
                    record_id=existing["id"],
                    forced_by=actor_id,
                    device_id=FORCED_DEVICE_ID,
                )
                existing = get_attendance_record_by_id(tenant_id, existing["id"], conn=conn)
        record = existing

        insert_audit_log(
            tenant_id=tenant_id,
            action="FORCE_ATTENDANCE_CORRECTION",
            performed_by=actor_id,
            performed_by_role=actor_role,
            target_user_id=user_id,
            details={
                "gathering_id": gathering_id,
                "occurrence_date": occurrence_key,
                "status": status,
                "record_id": record["id"] if record else None,
            },
            conn=conn,
        )
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        logger.exception(
            "Forced correction failed (tenant=%s user=%s gathering=%s occurrence=%s)",
            tenant_id,
            user_id,
            gathering_id,
            occurrence_key,
        )
        raise CheckInError("ServerError", "Could not apply the correction.") from exc
    finally:
        conn.close()

    logger.info(
        "Forced %s for user=%s gathering=%s occurrence=%s by user=%s",
        status,
        user_id,
        gathering_id,
        occurrence_key,
        actor_id,
    )
    return {"status": status, "occurrence_date": occurrence_key, "record": record}
