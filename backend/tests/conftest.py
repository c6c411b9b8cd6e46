from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.services.checkin as checkin
import database.db as db

from backend.tests.factories import DAY, DEFAULT_PASSWORD, SITE


@pytest.fixture()
def database(tmp_path, monkeypatch):
    test_db = tmp_path / "rollcall_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def client(database, monkeypatch):
    monkeypatch.setattr(main, "ENABLE_SCHEDULER", False)
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def tenant_id(database) -> int:
    tenant = db.get_tenant_by_slug(config.DEFAULT_TENANT_SLUG)
    assert tenant is not None
    return int(tenant["id"])


@pytest.fixture()
def freeze_clock(monkeypatch):
    """Pin the check-in clock used by the API."""

    def _freeze(moment: datetime) -> None:
        monkeypatch.setattr(checkin, "_utc_now", lambda: moment)

    return _freeze


@pytest.fixture()
def make_user(tenant_id):
    counter = {"n": 0}

    def _make(role: str = "EndUser", *, email: str | None = None, password: str = DEFAULT_PASSWORD) -> int:
        counter["n"] += 1
        return db.create_user(
            tenant_id,
            email=email or f"user{counter['n']}@example.com",
            full_name=f"User {counter['n']}",
            role=role,
            password=password,
        )

    return _make


@pytest.fixture()
def make_gathering(tenant_id):
    def _make(*, participants: dict[int, str] | None = None, **overrides) -> int:
        fields = {
            "name": "Morning Standup",
            "frequency": "OneTime",
            "start_date": DAY,
            "start_time": "09:00",
            "end_time": "11:00",
            "location_mode": "Physical",
            "latitude": SITE[0],
            "longitude": SITE[1],
            "radius_meters": 100.0,
        }
        fields.update(overrides)
        gathering_id = db.create_gathering(tenant_id, **fields)
        for user_id, mode in (participants or {}).items():
            db.upsert_roster_entry(tenant_id, gathering_id, user_id, mode=mode)
        return gathering_id

    return _make


@pytest.fixture()
def login(client):
    def _login(email: str, password: str = DEFAULT_PASSWORD) -> dict:
        res = client.post("/auth/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['access_token']}"}

    return _login


@pytest.fixture()
def admin_headers(login):
    return login(config.ADMIN_EMAIL, config.ADMIN_PASSWORD)
