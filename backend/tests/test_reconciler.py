from datetime import timedelta

import pytest

import backend.services.reconciler as reconciler
import database.db as db
from backend.config import AUTO_ABSENT_DEVICE_ID
from backend.services.checkin import record_check_in
from backend.tests.factories import SITE, at


@pytest.fixture()
def roster(make_user, make_gathering):
    present = make_user()
    on_leave = make_user()
    absent = make_user()
    gathering_id = make_gathering(
        participants={present: "Physical", on_leave: "Physical", absent: "Physical"},
    )
    return {"gathering_id": gathering_id, "present": present, "on_leave": on_leave, "absent": absent}


def _check_in(tenant_id, user_id, gathering_id, now):
    return record_check_in(
        tenant_id=tenant_id,
        user_id=user_id,
        role="EndUser",
        gathering_id=gathering_id,
        latitude=SITE[0],
        longitude=SITE[1],
        device_id=f"dev-{user_id}",
        user_agent="Agent/1.0",
        now=now,
    )


def _approved_leave(tenant_id, user_id, *, dates=(), start="2026-03-01", end="2026-03-03"):
    leave_id = db.create_leave_request(
        tenant_id,
        user_id,
        leave_type="Sick",
        dates=list(dates),
        start_date=start,
        end_date=end,
        days_count=3.0,
        reason="Flu",
    )
    assert db.decide_leave_request(tenant_id, leave_id, status="Approved", approver_id=1)
    return leave_id


def _statuses(tenant_id, gathering_id):
    return {e["user_id"]: e["attendance_status"] for e in db.list_roster(tenant_id, gathering_id)}


def test_open_window_is_skipped(tenant_id, roster):
    stats = reconciler.run_reconciliation_sweep(at(10, 59))
    assert stats["gatherings_checked"] == 1
    assert stats["gatherings_completed"] == 0
    assert stats["writes"] == 0
    assert db.get_gathering(tenant_id, roster["gathering_id"])["completed_on"] is None


def test_closed_window_finalizes_every_entry(tenant_id, roster):
    gathering_id = roster["gathering_id"]
    _check_in(tenant_id, roster["present"], gathering_id, at(9, 5))
    _approved_leave(tenant_id, roster["on_leave"])

    stats = reconciler.run_reconciliation_sweep(at(11, 10))

    assert stats["gatherings_completed"] == 1
    assert (stats["present"], stats["on_leave"], stats["absent"]) == (1, 1, 1)
    statuses = _statuses(tenant_id, gathering_id)
    assert statuses[roster["present"]] == "Present"
    assert statuses[roster["on_leave"]] == "On-Leave"
    assert statuses[roster["absent"]] == "Absent"

    # On-Leave gets no synthesized record; Absent gets an auto-absent one at the end instant.
    assert db.get_attendance_record(tenant_id, roster["on_leave"], gathering_id, "2026-03-02") is None
    auto = db.get_attendance_record(tenant_id, roster["absent"], gathering_id, "2026-03-02")
    assert auto["device_id"] == AUTO_ABSENT_DEVICE_ID
    assert auto["check_in_at"] == "2026-03-02T05:30:00+00:00"
    assert auto["location_verified"] is False

    assert db.get_gathering(tenant_id, gathering_id)["completed_on"] == "2026-03-02"


def test_present_keeps_late_flag(tenant_id, roster):
    gathering_id = roster["gathering_id"]
    _check_in(tenant_id, roster["present"], gathering_id, at(9, 25))
    # Simulate a record written without the roster update.
    conn = db.connect_db()
    conn.execute("UPDATE roster_entries SET attendance_status = NULL, cycle_date = NULL")
    conn.commit()
    conn.close()

    reconciler.run_reconciliation_sweep(at(12, 0))
    entry = db.get_roster_entry(tenant_id, gathering_id, roster["present"])
    assert entry["attendance_status"] == "Present"
    assert entry["is_late"] is True


def test_second_sweep_makes_no_writes(tenant_id, roster):
    reconciler.run_reconciliation_sweep(at(11, 10))
    before = _statuses(tenant_id, roster["gathering_id"])

    stats = reconciler.run_reconciliation_sweep(at(11, 20))
    assert stats["writes"] == 0
    assert stats["gatherings_completed"] == 0
    assert _statuses(tenant_id, roster["gathering_id"]) == before


def test_explicit_leave_dates_count(tenant_id, make_user, make_gathering):
    user_id = make_user()
    gathering_id = make_gathering(participants={user_id: "Physical"})
    _approved_leave(tenant_id, user_id, dates=["2026-03-02"], start="2026-03-02", end="2026-03-02")

    reconciler.run_reconciliation_sweep(at(11, 10))
    assert _statuses(tenant_id, gathering_id)[user_id] == "On-Leave"


def test_pending_and_rejected_leave_do_not_count(tenant_id, make_user, make_gathering):
    pending = make_user()
    rejected = make_user()
    gathering_id = make_gathering(participants={pending: "Physical", rejected: "Physical"})
    db.create_leave_request(
        tenant_id, pending, leave_type="Casual", dates=["2026-03-02"],
        start_date="2026-03-02", end_date="2026-03-02", days_count=1.0, reason="Errand",
    )
    leave_id = db.create_leave_request(
        tenant_id, rejected, leave_type="Casual", dates=["2026-03-02"],
        start_date="2026-03-02", end_date="2026-03-02", days_count=1.0, reason="Errand",
    )
    db.decide_leave_request(tenant_id, leave_id, status="Rejected", approver_id=1, rejection_reason="Busy week")

    reconciler.run_reconciliation_sweep(at(11, 10))
    statuses = _statuses(tenant_id, gathering_id)
    assert statuses[pending] == "Absent"
    assert statuses[rejected] == "Absent"


def test_daily_gathering_reconciles_each_occurrence(tenant_id, make_user, make_gathering):
    user_id = make_user()
    gathering_id = make_gathering(
        frequency="Daily",
        start_date="2026-03-01",
        end_date="2026-03-31",
        participants={user_id: "Physical"},
    )
    _check_in(tenant_id, user_id, gathering_id, at(8, 55))
    reconciler.run_reconciliation_sweep(at(11, 30))
    assert db.get_gathering(tenant_id, gathering_id)["completed_on"] == "2026-03-02"

    # Next day: the previous status does not count for the new occurrence.
    stats = reconciler.run_reconciliation_sweep(at(11, 30, day="2026-03-03"))
    assert stats["absent"] == 1
    entry = db.get_roster_entry(tenant_id, gathering_id, user_id)
    assert entry["attendance_status"] == "Absent"
    assert entry["cycle_date"] == "2026-03-03"
    assert db.get_gathering(tenant_id, gathering_id)["completed_on"] == "2026-03-03"


def test_occurrence_ending_just_before_midnight_is_finalized_next_day(tenant_id, make_user, make_gathering):
    user_id = make_user()
    gathering_id = make_gathering(
        frequency="Daily",
        start_date="2026-03-02",
        start_time="22:00",
        end_time="23:55",
        participants={user_id: "Physical"},
    )

    stats = reconciler.run_reconciliation_sweep(at(23, 50))
    assert stats["gatherings_completed"] == 0

    stats = reconciler.run_reconciliation_sweep(at(0, 0, day="2026-03-03"))
    assert stats["gatherings_completed"] == 1
    assert stats["absent"] == 1
    entry = db.get_roster_entry(tenant_id, gathering_id, user_id)
    assert (entry["attendance_status"], entry["cycle_date"]) == ("Absent", "2026-03-02")
    auto = db.get_attendance_record(tenant_id, user_id, gathering_id, "2026-03-02")
    assert auto["check_in_at"] == "2026-03-02T18:25:00+00:00"
    assert db.get_gathering(tenant_id, gathering_id)["completed_on"] == "2026-03-02"

    # Today's occurrence is still ahead; nothing more to do.
    stats = reconciler.run_reconciliation_sweep(at(0, 10, day="2026-03-03"))
    assert stats["writes"] == 0


def test_late_reconciled_occurrence_keeps_newer_roster_status(tenant_id, make_user, make_gathering):
    user_id = make_user()
    gathering_id = make_gathering(
        frequency="Daily",
        start_date="2026-03-02",
        start_time="22:00",
        end_time="23:55",
        participants={user_id: "Physical"},
    )
    conn = db.connect_db()
    try:
        db.set_roster_status(
            conn,
            tenant_id=tenant_id,
            gathering_id=gathering_id,
            user_id=user_id,
            status="Present",
            is_late=False,
            occurrence_date="2026-03-03",
        )
        conn.commit()
    finally:
        conn.close()

    reconciler.run_reconciliation_sweep(at(0, 0, day="2026-03-03"))

    entry = db.get_roster_entry(tenant_id, gathering_id, user_id)
    assert (entry["attendance_status"], entry["cycle_date"]) == ("Present", "2026-03-03")
    auto = db.get_attendance_record(tenant_id, user_id, gathering_id, "2026-03-02")
    assert auto["device_id"] == AUTO_ABSENT_DEVICE_ID
    assert db.get_gathering(tenant_id, gathering_id)["completed_on"] == "2026-03-02"


def test_cancelled_gathering_is_skipped(tenant_id, roster):
    db.cancel_gathering(tenant_id, roster["gathering_id"])
    stats = reconciler.run_reconciliation_sweep(at(11, 10))
    assert stats["gatherings_checked"] == 0
    assert set(_statuses(tenant_id, roster["gathering_id"]).values()) == {None}


def test_one_failing_gathering_does_not_stop_the_sweep(tenant_id, make_user, make_gathering, monkeypatch):
    user_id = make_user()
    broken = make_gathering(participants={user_id: "Physical"}, name="Broken")
    healthy = make_gathering(participants={user_id: "Physical"}, name="Healthy")
    real_list_roster = reconciler.list_roster

    def _list_roster(tenant, gathering_id, **kwargs):
        if gathering_id == broken:
            raise RuntimeError("corrupt roster")
        return real_list_roster(tenant, gathering_id, **kwargs)

    monkeypatch.setattr(reconciler, "list_roster", _list_roster)

    stats = reconciler.run_reconciliation_sweep(at(11, 10))
    assert stats["failed"] == 1
    assert stats["gatherings_completed"] == 1
    assert db.get_gathering(tenant_id, broken)["completed_on"] is None
    assert db.get_gathering(tenant_id, healthy)["completed_on"] == "2026-03-02"


def test_tenants_are_isolated(tenant_id, roster):
    other_tenant = db.create_tenant("Other Org", "other")
    other_user = db.create_user(
        other_tenant, email="x@other.example", full_name="X", role="EndUser", password="secret123"
    )
    other_gathering = db.create_gathering(
        other_tenant,
        name="Other",
        frequency="OneTime",
        start_date="2026-03-02",
        start_time="09:00",
        end_time="11:00",
        location_mode="Remote",
    )
    db.upsert_roster_entry(other_tenant, other_gathering, other_user, mode="Remote")

    stats = reconciler.run_reconciliation_sweep(at(11, 10))
    assert stats["tenants"] == 2
    assert stats["gatherings_completed"] == 2
    assert db.list_roster(tenant_id, other_gathering) == []
    assert _statuses(other_tenant, other_gathering) == {other_user: "Absent"}


def test_job_is_single_flight(database):
    assert reconciler.RECONCILE_LOCK.acquire(blocking=False)
    try:
        assert reconciler.run_reconciliation_job(at(11, 10)) is None
        assert reconciler.is_reconciliation_running()
    finally:
        reconciler.RECONCILE_LOCK.release()

    stats = reconciler.run_reconciliation_job(at(11, 10))
    assert stats is not None
    status = reconciler.get_reconciliation_status()
    assert status["state"] == "success"
    assert status["last_stats"] == stats


def test_scheduler_tick_follows_fake_clock():
    clock = {"now": at(9, 0)}
    calls = []
    scheduler = reconciler.ReconciliationScheduler(
        clock=lambda: clock["now"],
        sweep=lambda now: calls.append(now) or {},
    )

    assert scheduler.tick() is True
    clock["now"] += timedelta(minutes=5)
    assert scheduler.tick() is False
    clock["now"] += timedelta(minutes=5)
    assert scheduler.tick() is True
    assert calls == [at(9, 0), at(9, 10)]


def test_scheduler_survives_sweep_failure():
    def _sweep(now):
        raise RuntimeError("database is locked")

    scheduler = reconciler.ReconciliationScheduler(clock=lambda: at(9, 0), sweep=_sweep)
    assert scheduler.tick() is True
    assert scheduler.next_due == at(9, 10)


def test_legacy_roster_modes_are_backfilled(tenant_id, make_user, make_gathering):
    user_id = make_user()
    hybrid = make_gathering(location_mode="Hybrid")
    remote = make_gathering(location_mode="Remote", latitude=None, longitude=None)
    conn = db.connect_db()
    conn.execute(
        "INSERT INTO roster_entries (tenant_id, gathering_id, user_id, mode) VALUES (?, ?, ?, NULL)",
        (tenant_id, hybrid, user_id),
    )
    conn.execute(
        "INSERT INTO roster_entries (tenant_id, gathering_id, user_id, mode) VALUES (?, ?, ?, NULL)",
        (tenant_id, remote, user_id),
    )
    conn.commit()
    conn.close()

    db.create_tables()

    assert db.get_roster_entry(tenant_id, hybrid, user_id)["mode"] == "Physical"
    assert db.get_roster_entry(tenant_id, remote, user_id)["mode"] == "Remote"
    conn = db.connect_db()
    try:
        assert db.backfill_roster_modes(conn) == 0
    finally:
        conn.close()
