import backend.config as config
import backend.routers.core as core
import backend.services.reconciler as reconciler
import database.db as db
from backend.tests.factories import SITE, at


def _gathering_payload(**overrides):
    payload = {
        "name": "Weekly Sync",
        "frequency": "Weekly",
        "start_date": "2026-03-01",
        "end_date": "2026-06-30",
        "start_time": "10:00",
        "end_time": "11:00",
        "weekly_days": ["monday", "Thursday"],
        "location_mode": "Physical",
        "latitude": SITE[0],
        "longitude": SITE[1],
    }
    payload.update(overrides)
    return payload


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_debug_dbpath_disabled_by_default(client, admin_headers):
    res = client.get("/debug/dbpath", headers=admin_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, admin_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=admin_headers)
    assert res.status_code == 200
    assert "db_path" in res.json()


def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"email": config.ADMIN_EMAIL, "password": "wrong-password"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials."


def test_login_is_scoped_to_tenant(client):
    res = client.post(
        "/auth/login",
        json={"email": config.ADMIN_EMAIL, "password": config.ADMIN_PASSWORD, "tenant": "no-such-org"},
    )
    assert res.status_code == 401


def test_auth_me(client, admin_headers, tenant_id):
    res = client.get("/auth/me", headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["email"] == config.ADMIN_EMAIL
    assert body["role"] == "SuperAdmin"
    assert body["tenant_id"] == tenant_id


def test_endpoints_require_session(client):
    for path in ("/gatherings", "/attendance/me", "/leaves/mine", "/organization/settings"):
        res = client.get(path)
        assert res.status_code == 401
        assert res.json()["detail"] == "Missing bearer token."

    res = client.get("/gatherings", headers={"Authorization": "Basic abc"})
    assert res.json()["detail"] == "Invalid authorization scheme."

    res = client.get("/gatherings", headers={"Authorization": "Bearer forged.token"})
    assert res.json()["detail"] == "Invalid or expired session token."


def test_attendance_config_reports_constants(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    payload = res.json()
    assert payload["early_scan_window_minutes"] == 120
    assert payload["reconcile_interval_minutes"] == 10
    assert payload["default_late_grace_minutes"] == 30
    assert payload["default_strict_mode"] is False
    assert payload["auto_absent_device_id"] == "AUTO_MARKED_ABSENT"


def test_organization_settings_owner_only(client, admin_headers, make_user, login):
    res = client.get("/organization/settings", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["late_grace_minutes"] == 30
    assert res.json()["strict_mode"] is False

    make_user("Manager", email="manager@example.com")
    manager_headers = login("manager@example.com")
    res = client.put("/organization/settings", json={"strict_mode": True}, headers=manager_headers)
    assert res.status_code == 403

    res = client.put(
        "/organization/settings",
        json={"strict_mode": True, "late_grace_minutes": 15},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json()["strict_mode"] is True
    assert res.json()["late_grace_minutes"] == 15
    assert res.json()["utc_offset_minutes"] == 330

    res = client.put("/organization/settings", json={"late_grace_minutes": -1}, headers=admin_headers)
    assert res.status_code == 400


def test_create_and_list_users(client, admin_headers):
    payload = {"email": "New.Member@Example.com", "full_name": "New Member", "password": "pw12345"}
    res = client.post("/users", json=payload, headers=admin_headers)
    assert res.status_code == 200
    data = res.json()
    assert data["email"] == "new.member@example.com"
    assert data["role"] == "EndUser"
    assert data["registered_device_id"] is None

    res = client.post("/users", json=payload, headers=admin_headers)
    assert res.status_code == 409

    res = client.get("/users", headers=admin_headers)
    assert res.status_code == 200
    assert any(r["id"] == data["id"] for r in res.json())


def test_company_admin_cannot_create_super_admin(client, make_user, login):
    make_user("CompanyAdmin", email="owner@example.com")
    headers = login("owner@example.com")
    res = client.post(
        "/users",
        json={"email": "root@example.com", "full_name": "Root", "password": "pw", "role": "SuperAdmin"},
        headers=headers,
    )
    assert res.status_code == 403


def test_create_gathering_with_roster(client, admin_headers, make_user):
    member = make_user()
    payload = _gathering_payload(participants=[{"user_id": member, "mode": "Physical"}])

    res = client.post("/gatherings", json=payload, headers=admin_headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["weekly_days"] == ["Monday", "Thursday"]
    assert body["radius_meters"] == 100.0
    assert body["completed_on"] is None
    assert [e["user_id"] for e in body["roster"]] == [member]

    res = client.get(f"/gatherings/{body['id']}", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["roster"][0]["mode"] == "Physical"


def test_gathering_validation(client, admin_headers):
    cases = [
        (_gathering_payload(end_time="09:30"), "end_time must be later than start_time."),
        (_gathering_payload(frequency="Yearly"), "Invalid frequency."),
        (_gathering_payload(weekly_days=[]), "Weekly gatherings need at least one weekday."),
        (_gathering_payload(weekly_days=["Funday"]), "Unknown weekday: 'Funday'."),
        (_gathering_payload(end_date="2026-02-01"), "end_date must not be before start_date."),
        (
            _gathering_payload(latitude=None, longitude=None),
            "Physical and Hybrid gatherings need coordinates or a location link.",
        ),
    ]
    for payload, detail in cases:
        res = client.post("/gatherings", json=payload, headers=admin_headers)
        assert res.status_code == 400
        assert res.json()["detail"] == detail


def test_end_user_cannot_manage_gatherings(client, make_user, login):
    make_user(email="member@example.com")
    headers = login("member@example.com")
    res = client.post("/gatherings", json=_gathering_payload(), headers=headers)
    assert res.status_code == 403
    assert res.json()["detail"] == "Not authorized for this action."


def test_end_user_sees_only_assigned_gatherings(client, admin_headers, make_user, login):
    member = make_user(email="member@example.com")
    assigned = client.post(
        "/gatherings",
        json=_gathering_payload(participants=[{"user_id": member, "mode": "Physical"}]),
        headers=admin_headers,
    ).json()
    other = client.post("/gatherings", json=_gathering_payload(name="Other"), headers=admin_headers).json()

    headers = login("member@example.com")
    rows = client.get("/gatherings", headers=headers).json()
    assert [g["id"] for g in rows] == [assigned["id"]]
    assert client.get(f"/gatherings/{other['id']}", headers=headers).status_code == 404


def test_roster_edit_changes_mode(client, admin_headers, make_user):
    member = make_user()
    gathering = client.post(
        "/gatherings",
        json=_gathering_payload(location_mode="Hybrid", participants=[{"user_id": member, "mode": "Physical"}]),
        headers=admin_headers,
    ).json()

    res = client.put(
        f"/gatherings/{gathering['id']}/roster",
        json={"participants": [{"user_id": member, "mode": "Remote"}]},
        headers=admin_headers,
    )
    assert res.status_code == 200
    roster = res.json()["roster"]
    assert len(roster) == 1
    assert roster[0]["mode"] == "Remote"

    res = client.put(
        f"/gatherings/{gathering['id']}/roster",
        json={"participants": [{"user_id": 9999, "mode": "Remote"}]},
        headers=admin_headers,
    )
    assert res.status_code == 404


def test_cancel_gathering_is_audited(client, admin_headers):
    gathering = client.post("/gatherings", json=_gathering_payload(), headers=admin_headers).json()

    res = client.post(f"/gatherings/{gathering['id']}/cancel", headers=admin_headers)
    assert res.status_code == 200
    res = client.post(f"/gatherings/{gathering['id']}/cancel", headers=admin_headers)
    assert res.status_code == 409

    assert client.get("/gatherings", headers=admin_headers).json() == []
    assert len(client.get("/gatherings?include_cancelled=true", headers=admin_headers).json()) == 1

    logs = client.get("/admin/audit-logs", headers=admin_headers).json()["rows"]
    assert logs[0]["action"] == "CANCEL_SESSION"
    assert logs[0]["details"] == {"gathering_id": gathering["id"]}


def test_admin_routes_require_staff(client, make_user, login):
    make_user(email="member@example.com")
    headers = login("member@example.com")
    assert client.get("/admin/checkin-events", headers=headers).status_code == 403
    assert client.post("/admin/reconcile", headers=headers).status_code == 403


def test_manual_reconcile(client, admin_headers, tenant_id, make_user, make_gathering):
    member = make_user()
    gathering_id = make_gathering(start_date="2026-01-05", participants={member: "Physical"})

    res = client.post("/admin/reconcile", headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["absent"] == 1
    assert db.get_gathering(tenant_id, gathering_id)["completed_on"] == "2026-01-05"

    res = client.get("/admin/reconcile/status", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["state"] == "success"


def test_force_present_converts_auto_absent(client, admin_headers, tenant_id, make_user, make_gathering):
    member = make_user()
    gathering_id = make_gathering(participants={member: "Physical"})
    reconciler.run_reconciliation_sweep(at(11, 30))
    auto = db.get_attendance_record(tenant_id, member, gathering_id, "2026-03-02")
    assert auto["device_id"] == config.AUTO_ABSENT_DEVICE_ID

    res = client.post(
        "/admin/attendance/force",
        json={"user_id": member, "gathering_id": gathering_id, "status": "Present", "occurrence_date": "2026-03-02"},
        headers=admin_headers,
    )
    assert res.status_code == 200, res.text
    record = res.json()["record"]
    assert record["id"] == auto["id"]
    assert record["is_forced"] is True
    assert record["device_id"] == config.FORCED_DEVICE_ID
    assert db.get_roster_entry(tenant_id, gathering_id, member)["attendance_status"] == "Present"

    logs = client.get("/admin/audit-logs?action=FORCE_ATTENDANCE_CORRECTION", headers=admin_headers).json()
    assert logs["rows"][0]["target_user_id"] == member


def test_force_creates_forced_record(client, admin_headers, tenant_id, make_user, make_gathering):
    member = make_user()
    gathering_id = make_gathering(participants={member: "Physical"})

    res = client.post(
        "/admin/attendance/force",
        json={"user_id": member, "gathering_id": gathering_id, "status": "Present", "occurrence_date": "2026-03-02"},
        headers=admin_headers,
    )
    assert res.status_code == 200
    record = db.get_attendance_record(tenant_id, member, gathering_id, "2026-03-02")
    assert record["is_forced"] is True
    assert record["forced_by"] is not None


def test_force_rejects_non_occurrence_date(client, admin_headers, make_user, make_gathering):
    member = make_user()
    gathering_id = make_gathering(participants={member: "Physical"})

    res = client.post(
        "/admin/attendance/force",
        json={"user_id": member, "gathering_id": gathering_id, "status": "Absent", "occurrence_date": "2026-03-09"},
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert res.json()["kind"] == "InvalidInput"

    res = client.post(
        "/admin/attendance/force",
        json={"user_id": member, "gathering_id": gathering_id, "status": "Late"},
        headers=admin_headers,
    )
    assert res.status_code == 400


def test_gathering_attendance_listing(client, admin_headers, make_user, make_gathering):
    member = make_user()
    gathering_id = make_gathering(participants={member: "Physical"})
    client.post(
        "/admin/attendance/force",
        json={"user_id": member, "gathering_id": gathering_id, "status": "Present", "occurrence_date": "2026-03-02"},
        headers=admin_headers,
    )

    res = client.get(
        f"/gatherings/{gathering_id}/attendance",
        params={"occurrence_date": "2026-03-02"},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json()["total"] == 1
    assert res.json()["rows"][0]["full_name"].startswith("User")
