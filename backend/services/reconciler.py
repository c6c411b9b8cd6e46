import logging
import sqlite3
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler

from backend.config import AUTO_ABSENT_DEVICE_ID, RECONCILE_INTERVAL
from backend.services.leave_overlap import approved_leave_on
from backend.services.time_window import (
    Occurrence,
    occurrence_on,
    occurs_on,
    tenant_zone,
    to_tenant_time,
)
from database.db import (
    GatheringRow,
    TenantSettings,
    connect_db,
    get_attendance_record,
    get_tenant_settings,
    insert_attendance_record_if_absent,
    list_active_tenant_ids,
    list_gatherings,
    list_roster,
    mark_gathering_completed,
    roster_status_for,
    set_roster_status,
)

logger = logging.getLogger(__name__)

# -----------------------------
# Reconciliation status (in-memory)
# -----------------------------
RECONCILE_LOCK = threading.Lock()
STATUS_LOCK = threading.Lock()

RECONCILE_STATUS: dict[str, Any] = {
    "state": "idle",          # idle | running | success | failed
    "started_at": None,       # ISO string
    "finished_at": None,      # ISO string
    "message": "",
    "last_success": None,     # ISO string
    "last_stats": None,
}


def _empty_stats() -> dict[str, int]:
    return {
        "tenants": 0,
        "gatherings_checked": 0,
        "gatherings_completed": 0,
        "present": 0,
        "absent": 0,
        "on_leave": 0,
        "failed": 0,
        "writes": 0,
    }


def _pending_occurrences(
    gathering: GatheringRow,
    now_local: datetime,
    settings: TenantSettings,
) -> list[Occurrence]:
    """
    Occurrences a sweep at `now_local` may finalize, oldest first.

    Yesterday's is included so an occurrence ending in the last interval before
    midnight is still finalized by the first sweep of the new day.
    """
    if gathering["frequency"] == "OneTime":
        days = [date.fromisoformat(gathering["start_date"][:10])]
    else:
        today = now_local.date()
        days = [d for d in (today - timedelta(days=1), today) if occurs_on(gathering, d)]
    return [
        occurrence_on(gathering, day, zone=now_local.tzinfo, grace_minutes=settings["late_grace_minutes"])
        for day in days
    ]


def _reconcile_occurrence(
    conn: sqlite3.Connection,
    gathering: GatheringRow,
    occurrence: Occurrence,
) -> dict[str, int]:
    tenant_id = gathering["tenant_id"]
    gathering_id = gathering["id"]
    occurrence_key = occurrence.date_key
    counts = {"present": 0, "absent": 0, "on_leave": 0, "writes": 0}

    for entry in list_roster(tenant_id, gathering_id, conn=conn):
        if roster_status_for(entry, occurrence_key) is not None:
            continue
        user_id = entry["user_id"]

        record = get_attendance_record(tenant_id, user_id, gathering_id, occurrence_key, conn=conn)
        if record is not None and record["device_id"] != AUTO_ABSENT_DEVICE_ID:
            status, is_late = "Present", record["is_late"]
        elif record is not None:
            status, is_late = "Absent", False
        elif approved_leave_on(tenant_id, user_id, occurrence.date, conn=conn):
            status, is_late = "On-Leave", False
        else:
            status, is_late = "Absent", False
            inserted = insert_attendance_record_if_absent(
                conn,
                tenant_id=tenant_id,
                user_id=user_id,
                gathering_id=gathering_id,
                occurrence_date=occurrence_key,
                check_in_at=occurrence.end.astimezone(timezone.utc).isoformat(timespec="seconds"),
                location_verified=False,
                is_late=False,
                late_by_minutes=None,
                latitude=None,
                longitude=None,
                device_id=AUTO_ABSENT_DEVICE_ID,
                user_agent=None,
            )
            if inserted is not None:
                counts["writes"] += 1
        counts[{"Present": "present", "Absent": "absent", "On-Leave": "on_leave"}[status]] += 1

        # The entry already carries a later occurrence's status; the record above is
        # the only trace this occurrence keeps.
        if entry["cycle_date"] is not None and entry["cycle_date"] > occurrence_key:
            continue
        set_roster_status(
            conn,
            tenant_id=tenant_id,
            gathering_id=gathering_id,
            user_id=user_id,
            status=status,
            is_late=is_late,
            occurrence_date=occurrence_key,
        )
        counts["writes"] += 1

    mark_gathering_completed(conn, tenant_id=tenant_id, gathering_id=gathering_id, occurrence_date=occurrence_key)
    counts["writes"] += 1

    logger.info(
        "Reconciled gathering %s (tenant=%s occurrence=%s): present=%s absent=%s on_leave=%s",
        gathering_id,
        tenant_id,
        occurrence_key,
        counts["present"],
        counts["absent"],
        counts["on_leave"],
    )
    return counts


def reconcile_gathering(
    conn: sqlite3.Connection,
    gathering: GatheringRow,
    *,
    now: datetime,
    settings: TenantSettings,
) -> dict[str, int] | None:
    """
    Finalize every unset roster entry of the gathering's closed, unreconciled occurrences.

    Returns per-status counts, or None when there is nothing to do (no occurrence,
    window still open, or already completed). Does not commit.
    """
    now_local = to_tenant_time(now, tenant_zone(settings["utc_offset_minutes"]))
    completed_on = gathering["completed_on"]
    totals: dict[str, int] | None = None

    for occurrence in _pending_occurrences(gathering, now_local, settings):
        if completed_on is not None and completed_on >= occurrence.date_key:
            continue
        if now_local <= occurrence.end:
            break
        counts = _reconcile_occurrence(conn, gathering, occurrence)
        completed_on = occurrence.date_key
        if totals is None:
            totals = counts
        else:
            for key, value in counts.items():
                totals[key] += value
    return totals


def reconcile_tenant(tenant_id: int, *, now: datetime, stats: dict[str, int]) -> None:
    settings = get_tenant_settings(tenant_id)
    for gathering in list_gatherings(tenant_id, include_cancelled=False):
        stats["gatherings_checked"] += 1
        conn = connect_db()
        try:
            counts = reconcile_gathering(conn, gathering, now=now, settings=settings)
            conn.commit()
        except Exception:
            conn.rollback()
            stats["failed"] += 1
            logger.exception("Reconciliation failed for gathering %s (tenant=%s)", gathering["id"], tenant_id)
            continue
        finally:
            conn.close()

        if counts is None:
            continue
        stats["gatherings_completed"] += 1
        for key in ("present", "absent", "on_leave", "writes"):
            stats[key] += counts[key]


def run_reconciliation_sweep(now: datetime | None = None) -> dict[str, int]:
    """One full pass over every active tenant. Failures stay isolated per gathering and per tenant."""
    now = now or datetime.now(timezone.utc)
    stats = _empty_stats()
    for tenant_id in list_active_tenant_ids():
        stats["tenants"] += 1
        try:
            reconcile_tenant(tenant_id, now=now, stats=stats)
        except Exception:
            stats["failed"] += 1
            logger.exception("Reconciliation failed for tenant %s", tenant_id)

    logger.info(
        "Reconciliation sweep done: tenants=%s completed=%s present=%s absent=%s on_leave=%s failed=%s",
        stats["tenants"],
        stats["gatherings_completed"],
        stats["present"],
        stats["absent"],
        stats["on_leave"],
        stats["failed"],
    )
    return stats


def run_reconciliation_job(now: datetime | None = None) -> dict[str, int] | None:
    """Runs a sweep and updates RECONCILE_STATUS. Returns None if a sweep is already running."""
    if not RECONCILE_LOCK.acquire(blocking=False):
        return None
    try:
        with STATUS_LOCK:
            RECONCILE_STATUS["state"] = "running"
            RECONCILE_STATUS["started_at"] = datetime.now().isoformat(timespec="seconds")
            RECONCILE_STATUS["finished_at"] = None
            RECONCILE_STATUS["message"] = "Reconciliation started..."

        stats = run_reconciliation_sweep(now)
        finished_at = datetime.now().isoformat(timespec="seconds")

        with STATUS_LOCK:
            RECONCILE_STATUS["state"] = "success" if not stats["failed"] else "failed"
            RECONCILE_STATUS["finished_at"] = finished_at
            RECONCILE_STATUS["last_stats"] = stats
            if stats["failed"]:
                RECONCILE_STATUS["message"] = f"Reconciliation completed with {stats['failed']} failure(s)"
            else:
                RECONCILE_STATUS["message"] = "Reconciliation completed"
                RECONCILE_STATUS["last_success"] = finished_at
        return stats

    except Exception as e:
        with STATUS_LOCK:
            RECONCILE_STATUS["state"] = "failed"
            RECONCILE_STATUS["finished_at"] = datetime.now().isoformat(timespec="seconds")
            RECONCILE_STATUS["message"] = f"Reconciliation failed: {e}"
        logger.exception("Reconciliation sweep aborted")
        raise
    finally:
        RECONCILE_LOCK.release()


def is_reconciliation_running() -> bool:
    return RECONCILE_LOCK.locked()


def get_reconciliation_status() -> dict:
    with STATUS_LOCK:
        return dict(RECONCILE_STATUS)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationScheduler:
    """
    Drives the sweep on a fixed interval.

    `clock` and `sweep` are injected so tests can advance a fake clock and call
    `tick()` directly; `start()` registers an APScheduler interval job instead.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utc_now,
        sweep: Callable[[datetime | None], dict[str, int] | None] = run_reconciliation_job,
        interval=RECONCILE_INTERVAL,
    ) -> None:
        self.clock = clock
        self.sweep = sweep
        self.interval = interval
        self.next_due: datetime | None = None
        self._scheduler: BackgroundScheduler | None = None

    def tick(self) -> bool:
        now = self.clock()
        if self.next_due is not None and now < self.next_due:
            return False
        self.next_due = now + self.interval
        self.run_once(now)
        return True

    def _scheduled_run(self) -> None:
        # APScheduler owns the cadence here; only keep next_due in step with it.
        now = self.clock()
        self.next_due = now + self.interval
        self.run_once(now)

    def run_once(self, now: datetime | None = None) -> dict[str, int] | None:
        try:
            return self.sweep(now)
        except Exception:
            # A failed sweep is retried on the next tick.
            logger.exception("Scheduled reconciliation sweep failed")
            return None

    def start(self) -> None:
        if self._scheduler is not None:
            return
        logging.getLogger("apscheduler").setLevel(logging.WARNING)
        scheduler = BackgroundScheduler(job_defaults={"coalesce": True, "max_instances": 1})
        scheduler.add_job(
            self._scheduled_run,
            "interval",
            seconds=int(self.interval.total_seconds()),
            id="attendance-reconciler",
            next_run_time=datetime.now(),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Reconciliation scheduler started (every %s)", self.interval)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Reconciliation scheduler stopped")
