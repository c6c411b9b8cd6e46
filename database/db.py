import hashlib
import hmac
import json
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, Literal, TypedDict

from backend.config import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    DB_PATH,
    DEFAULT_GEOFENCE_RADIUS_METERS,
    DEFAULT_LATE_GRACE_MINUTES,
    DEFAULT_STRICT_MODE,
    DEFAULT_TENANT_NAME,
    DEFAULT_TENANT_SLUG,
    DEFAULT_UTC_OFFSET_MINUTES,
)

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

Frequency = Literal["OneTime", "Daily", "Weekly", "Monthly"]
LocationMode = Literal["Physical", "Remote", "Hybrid"]
ParticipantMode = Literal["Physical", "Remote"]
AttendanceStatus = Literal["Present", "Absent", "On-Leave"]
LeaveStatus = Literal["Pending", "Approved", "Rejected"]
LeaveType = Literal["Personal", "Casual", "Sick", "Extra"]
AuditAction = Literal["FORCE_ATTENDANCE_CORRECTION", "DEVICE_RESET", "CANCEL_SESSION", "UPDATE_SETTINGS"]

FREQUENCIES: tuple[str, ...] = ("OneTime", "Daily", "Weekly", "Monthly")
LOCATION_MODES: tuple[str, ...] = ("Physical", "Remote", "Hybrid")
PARTICIPANT_MODES: tuple[str, ...] = ("Physical", "Remote")
ATTENDANCE_STATUSES: tuple[str, ...] = ("Present", "Absent", "On-Leave")
LEAVE_TYPES: tuple[str, ...] = ("Personal", "Casual", "Sick", "Extra")
WEEKDAY_NAMES: tuple[str, ...] = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


class TenantSettings(TypedDict):
    tenant_id: int
    late_grace_minutes: int
    strict_mode: bool
    utc_offset_minutes: int


class UserRow(TypedDict):
    id: int
    tenant_id: int
    email: str
    full_name: str
    role: str
    registered_device_id: str | None
    registered_user_agent: str | None
    created_at: str


class GatheringRow(TypedDict):
    id: int
    tenant_id: int
    name: str
    description: str | None
    frequency: Frequency
    start_date: str
    end_date: str | None
    start_time: str
    end_time: str
    weekly_days: list[str]
    location_mode: LocationMode
    latitude: float | None
    longitude: float | None
    radius_meters: float | None
    location_link: str | None
    completed_on: str | None
    is_cancelled: bool
    created_by: int | None
    created_at: str


class RosterEntry(TypedDict):
    id: int
    tenant_id: int
    gathering_id: int
    user_id: int
    mode: ParticipantMode | None
    attendance_status: AttendanceStatus | None
    is_late: bool
    cycle_date: str | None


class AttendanceRecord(TypedDict):
    id: int
    tenant_id: int
    user_id: int
    gathering_id: int
    occurrence_date: str
    check_in_at: str
    location_verified: bool
    is_late: bool
    late_by_minutes: int | None
    latitude: float | None
    longitude: float | None
    device_id: str
    user_agent: str | None
    is_forced: bool
    forced_by: int | None
    created_at: str


class LeaveRequestRow(TypedDict):
    id: int
    tenant_id: int
    user_id: int
    leave_type: LeaveType
    dates: list[str]
    start_date: str
    end_date: str
    days_count: float
    reason: str
    status: LeaveStatus
    approved_by: int | None
    rejection_reason: str | None
    created_at: str
    updated_at: str


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db() -> sqlite3.Connection:
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def _borrow_conn(conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
    """Use the caller's connection as-is, or open one that commits on success."""
    if conn is not None:
        yield conn
        return

    active_conn = connect_db()
    try:
        yield active_conn
        active_conn.commit()
    except Exception:
        active_conn.rollback()
        raise
    finally:
        active_conn.close()


# -----------------------------
# Schema
# -----------------------------
def create_tables() -> None:
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS tenants (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE COLLATE NOCASE,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS tenant_settings (
        tenant_id INTEGER PRIMARY KEY,
        late_grace_minutes INTEGER NOT NULL,
        strict_mode INTEGER NOT NULL DEFAULT 0,
        utc_offset_minutes INTEGER NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL,
        email TEXT NOT NULL COLLATE NOCASE,
        full_name TEXT NOT NULL,
        role TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        registered_device_id TEXT,
        registered_user_agent TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE,
        UNIQUE(tenant_id, email)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS gatherings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        frequency TEXT NOT NULL,         -- OneTime | Daily | Weekly | Monthly
        start_date TEXT NOT NULL,        -- YYYY-MM-DD
        end_date TEXT,                   -- YYYY-MM-DD
        start_time TEXT NOT NULL,        -- HH:MM (tenant civil time)
        end_time TEXT NOT NULL,          -- HH:MM (tenant civil time)
        weekly_days TEXT NOT NULL DEFAULT '[]',
        location_mode TEXT NOT NULL,     -- Physical | Remote | Hybrid
        latitude REAL,
        longitude REAL,
        radius_meters REAL,
        location_link TEXT,
        completed_on TEXT,               -- occurrence date last reconciled
        is_cancelled INTEGER NOT NULL DEFAULT 0,
        created_by INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS roster_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL,
        gathering_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        mode TEXT,                       -- Physical | Remote
        attendance_status TEXT,          -- Present | Absent | On-Leave
        is_late INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (gathering_id) REFERENCES gatherings(id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
        UNIQUE(gathering_id, user_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        gathering_id INTEGER NOT NULL,
        occurrence_date TEXT NOT NULL,   -- YYYY-MM-DD
        check_in_at TEXT NOT NULL,       -- ISO-8601, UTC
        location_verified INTEGER NOT NULL DEFAULT 0,
        is_late INTEGER NOT NULL DEFAULT 0,
        late_by_minutes INTEGER,
        latitude REAL,
        longitude REAL,
        device_id TEXT NOT NULL,
        user_agent TEXT,
        is_forced INTEGER NOT NULL DEFAULT 0,
        forced_by INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (gathering_id) REFERENCES gatherings(id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
        UNIQUE(tenant_id, user_id, gathering_id, occurrence_date)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS leave_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        leave_type TEXT NOT NULL,
        dates TEXT NOT NULL DEFAULT '[]',  -- JSON list of YYYY-MM-DD
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        days_count REAL NOT NULL,
        reason TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'Pending',
        approved_by INTEGER,
        rejection_reason TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS checkin_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL,
        user_id INTEGER,
        gathering_id INTEGER,
        decision_code TEXT NOT NULL,
        message TEXT NOT NULL,
        occurrence_date TEXT,
        device_id TEXT,
        latitude REAL,
        longitude REAL,
        record_id INTEGER,
        captured_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS audit_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL,
        action TEXT NOT NULL,
        performed_by INTEGER,
        performed_by_role TEXT,
        target_user_id INTEGER,
        details_json TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_gatherings_tenant ON gatherings(tenant_id, is_cancelled)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_leaves_user_status ON leave_requests(tenant_id, user_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_checkin_events_tenant ON checkin_events(tenant_id, captured_at)")

    # Migration for older DB
    try:
        cursor.execute("ALTER TABLE roster_entries ADD COLUMN cycle_date TEXT;")
    except sqlite3.OperationalError:
        pass

    backfill_roster_modes(conn)
    _ensure_default_tenant(cursor)

    conn.commit()
    conn.close()


def backfill_roster_modes(conn: sqlite3.Connection) -> int:
    """
    Give every roster entry created before per-participant modes existed an explicit mode.

    Hybrid gatherings default their legacy entries to Physical; the other location modes
    copy the gathering's mode. Safe to run repeatedly.
    """
    cur = conn.execute(
        """
        UPDATE roster_entries
        SET mode = CASE
                WHEN (SELECT g.location_mode FROM gatherings g WHERE g.id = roster_entries.gathering_id) = 'Remote'
                    THEN 'Remote'
                ELSE 'Physical'
            END,
            updated_at = CURRENT_TIMESTAMP
        WHERE mode IS NULL
        """
    )
    if cur.rowcount:
        logger.info("Backfilled participant mode on %s legacy roster entries.", cur.rowcount)
    return int(cur.rowcount or 0)


def _ensure_default_tenant(cursor: sqlite3.Cursor) -> None:
    slug = (DEFAULT_TENANT_SLUG or "").strip().lower()
    email = (ADMIN_EMAIL or "").strip().lower()
    password = (ADMIN_PASSWORD or "").strip()
    if not slug or not email or not password:
        return

    cursor.execute("SELECT id FROM tenants WHERE slug = ?", (slug,))
    row = cursor.fetchone()
    if row:
        tenant_id = int(row[0])
    else:
        cursor.execute(
            "INSERT INTO tenants (name, slug) VALUES (?, ?)",
            (DEFAULT_TENANT_NAME or slug, slug),
        )
        tenant_id = int(cursor.lastrowid)

    cursor.execute(
        "SELECT id FROM users WHERE tenant_id = ? AND email = ?",
        (tenant_id, email),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (tenant_id, email, full_name, role, password_hash)
        VALUES (?, ?, ?, 'SuperAdmin', ?)
        """,
        (tenant_id, email, "Administrator", _hash_password(password)),
    )


# -----------------------------
# Tenants + settings
# -----------------------------
def create_tenant(name: str, slug: str) -> int:
    with _borrow_conn(None) as conn:
        cur = conn.execute(
            "INSERT INTO tenants (name, slug) VALUES (?, ?)",
            (name.strip(), slug.strip().lower()),
        )
        return int(cur.lastrowid)


def get_tenant_by_slug(slug: str) -> dict[str, Any] | None:
    with _borrow_conn(None) as conn:
        row = conn.execute(
            "SELECT id, name, slug, is_active FROM tenants WHERE slug = ?",
            (slug.strip().lower(),),
        ).fetchone()
    if not row:
        return None
    return {"id": row["id"], "name": row["name"], "slug": row["slug"], "is_active": bool(row["is_active"])}


def list_active_tenant_ids(conn: sqlite3.Connection | None = None) -> list[int]:
    with _borrow_conn(conn) as active_conn:
        rows = active_conn.execute("SELECT id FROM tenants WHERE is_active = 1 ORDER BY id ASC").fetchall()
    return [int(r[0]) for r in rows]


def get_tenant_settings(tenant_id: int, *, conn: sqlite3.Connection | None = None) -> TenantSettings:
    with _borrow_conn(conn) as active_conn:
        row = active_conn.execute(
            """
            SELECT late_grace_minutes, strict_mode, utc_offset_minutes
            FROM tenant_settings
            WHERE tenant_id = ?
            """,
            (tenant_id,),
        ).fetchone()
    if not row:
        return {
            "tenant_id": tenant_id,
            "late_grace_minutes": DEFAULT_LATE_GRACE_MINUTES,
            "strict_mode": DEFAULT_STRICT_MODE,
            "utc_offset_minutes": DEFAULT_UTC_OFFSET_MINUTES,
        }
    return {
        "tenant_id": tenant_id,
        "late_grace_minutes": max(0, int(row["late_grace_minutes"])),
        "strict_mode": bool(row["strict_mode"]),
        "utc_offset_minutes": int(row["utc_offset_minutes"]),
    }


def update_tenant_settings(
    tenant_id: int,
    *,
    late_grace_minutes: int | None = None,
    strict_mode: bool | None = None,
    utc_offset_minutes: int | None = None,
) -> TenantSettings:
    current = get_tenant_settings(tenant_id)
    grace = current["late_grace_minutes"] if late_grace_minutes is None else max(0, int(late_grace_minutes))
    strict = current["strict_mode"] if strict_mode is None else bool(strict_mode)
    offset = current["utc_offset_minutes"] if utc_offset_minutes is None else int(utc_offset_minutes)

    with _borrow_conn(None) as conn:
        conn.execute(
            """
            INSERT INTO tenant_settings (tenant_id, late_grace_minutes, strict_mode, utc_offset_minutes)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(tenant_id) DO UPDATE SET
                late_grace_minutes = excluded.late_grace_minutes,
                strict_mode = excluded.strict_mode,
                utc_offset_minutes = excluded.utc_offset_minutes,
                updated_at = CURRENT_TIMESTAMP
            """,
            (tenant_id, grace, 1 if strict else 0, offset),
        )
    return {
        "tenant_id": tenant_id,
        "late_grace_minutes": grace,
        "strict_mode": strict,
        "utc_offset_minutes": offset,
    }


# -----------------------------
# Users
# -----------------------------
def _user_from_row(row: sqlite3.Row) -> UserRow:
    return {
        "id": int(row["id"]),
        "tenant_id": int(row["tenant_id"]),
        "email": str(row["email"]),
        "full_name": str(row["full_name"]),
        "role": str(row["role"]),
        "registered_device_id": row["registered_device_id"],
        "registered_user_agent": row["registered_user_agent"],
        "created_at": str(row["created_at"]),
    }


def create_user(tenant_id: int, *, email: str, full_name: str, role: str, password: str) -> int:
    with _borrow_conn(None) as conn:
        cur = conn.execute(
            """
            INSERT INTO users (tenant_id, email, full_name, role, password_hash)
            VALUES (?, ?, ?, ?, ?)
            """,
            (tenant_id, email.strip().lower(), full_name.strip(), role, _hash_password(password)),
        )
        return int(cur.lastrowid)


def get_user(tenant_id: int, user_id: int, *, conn: sqlite3.Connection | None = None) -> UserRow | None:
    with _borrow_conn(conn) as active_conn:
        row = active_conn.execute(
            """
            SELECT id, tenant_id, email, full_name, role, registered_device_id, registered_user_agent, created_at
            FROM users
            WHERE tenant_id = ? AND id = ?
            """,
            (tenant_id, user_id),
        ).fetchone()
    return _user_from_row(row) if row else None


def list_users(tenant_id: int) -> list[UserRow]:
    with _borrow_conn(None) as conn:
        rows = conn.execute(
            """
            SELECT id, tenant_id, email, full_name, role, registered_device_id, registered_user_agent, created_at
            FROM users
            WHERE tenant_id = ?
            ORDER BY full_name
            """,
            (tenant_id,),
        ).fetchall()
    return [_user_from_row(r) for r in rows]


def verify_user_credentials(tenant_slug: str, email: str, password: str) -> UserRow | None:
    with _borrow_conn(None) as conn:
        row = conn.execute(
            """
            SELECT u.id, u.tenant_id, u.email, u.full_name, u.role, u.registered_device_id,
                   u.registered_user_agent, u.created_at, u.password_hash
            FROM users u
            JOIN tenants t ON t.id = u.tenant_id
            WHERE t.slug = ? AND t.is_active = 1 AND u.email = ?
            """,
            (tenant_slug.strip().lower(), email.strip().lower()),
        ).fetchone()
    if not row:
        return None
    if not _verify_password(password, str(row["password_hash"])):
        return None
    return _user_from_row(row)


def bind_user_device(
    conn: sqlite3.Connection,
    *,
    tenant_id: int,
    user_id: int,
    device_id: str,
    user_agent: str | None,
) -> None:
    # COALESCE keeps an existing binding; only unset values get written. An empty
    # client signature counts as unset.
    conn.execute(
        """
        UPDATE users
        SET registered_device_id = COALESCE(registered_device_id, ?),
            registered_user_agent = COALESCE(NULLIF(registered_user_agent, ''), ?)
        WHERE tenant_id = ? AND id = ?
        """,
        (device_id, user_agent or None, tenant_id, user_id),
    )


def reset_user_device(tenant_id: int, user_id: int) -> bool:
    with _borrow_conn(None) as conn:
        cur = conn.execute(
            """
            UPDATE users
            SET registered_device_id = NULL,
                registered_user_agent = NULL
            WHERE tenant_id = ? AND id = ?
            """,
            (tenant_id, user_id),
        )
        return cur.rowcount > 0


# -----------------------------
# Gatherings + roster
# -----------------------------
def _gathering_from_row(row: sqlite3.Row) -> GatheringRow:
    try:
        weekly_days = [str(d) for d in json.loads(row["weekly_days"] or "[]")]
    except ValueError:
        weekly_days = []
    return {
        "id": int(row["id"]),
        "tenant_id": int(row["tenant_id"]),
        "name": str(row["name"]),
        "description": row["description"],
        "frequency": row["frequency"],
        "start_date": str(row["start_date"]),
        "end_date": str(row["end_date"]) if row["end_date"] else None,
        "start_time": str(row["start_time"]),
        "end_time": str(row["end_time"]),
        "weekly_days": weekly_days,
        "location_mode": row["location_mode"],
        "latitude": float(row["latitude"]) if row["latitude"] is not None else None,
        "longitude": float(row["longitude"]) if row["longitude"] is not None else None,
        "radius_meters": float(row["radius_meters"]) if row["radius_meters"] is not None else None,
        "location_link": row["location_link"],
        "completed_on": row["completed_on"],
        "is_cancelled": bool(row["is_cancelled"]),
        "created_by": int(row["created_by"]) if row["created_by"] is not None else None,
        "created_at": str(row["created_at"]),
    }


def create_gathering(
    tenant_id: int,
    *,
    name: str,
    frequency: str,
    start_date: str,
    start_time: str,
    end_time: str,
    location_mode: str,
    description: str | None = None,
    end_date: str | None = None,
    weekly_days: list[str] | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    radius_meters: float | None = None,
    location_link: str | None = None,
    created_by: int | None = None,
) -> int:
    if latitude is not None and longitude is not None and radius_meters is None:
        radius_meters = DEFAULT_GEOFENCE_RADIUS_METERS
    with _borrow_conn(None) as conn:
        cur = conn.execute(
            """
            INSERT INTO gatherings (
                tenant_id, name, description, frequency, start_date, end_date,
                start_time, end_time, weekly_days, location_mode,
                latitude, longitude, radius_meters, location_link, created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                name.strip(),
                description,
                frequency,
                start_date,
                end_date,
                start_time,
                end_time,
                json.dumps(weekly_days or []),
                location_mode,
                latitude,
                longitude,
                radius_meters,
                location_link,
                created_by,
            ),
        )
        return int(cur.lastrowid)


_GATHERING_COLUMNS = """
    id, tenant_id, name, description, frequency, start_date, end_date, start_time, end_time,
    weekly_days, location_mode, latitude, longitude, radius_meters, location_link,
    completed_on, is_cancelled, created_by, created_at
"""


def get_gathering(tenant_id: int, gathering_id: int, *, conn: sqlite3.Connection | None = None) -> GatheringRow | None:
    with _borrow_conn(conn) as active_conn:
        row = active_conn.execute(
            f"SELECT {_GATHERING_COLUMNS} FROM gatherings WHERE tenant_id = ? AND id = ?",
            (tenant_id, gathering_id),
        ).fetchone()
    return _gathering_from_row(row) if row else None


def list_gatherings(
    tenant_id: int,
    *,
    include_cancelled: bool = True,
    conn: sqlite3.Connection | None = None,
) -> list[GatheringRow]:
    where = "tenant_id = ?" if include_cancelled else "tenant_id = ? AND is_cancelled = 0"
    with _borrow_conn(conn) as active_conn:
        rows = active_conn.execute(
            f"SELECT {_GATHERING_COLUMNS} FROM gatherings WHERE {where} ORDER BY start_date, start_time, id",
            (tenant_id,),
        ).fetchall()
    return [_gathering_from_row(r) for r in rows]


def cancel_gathering(tenant_id: int, gathering_id: int) -> bool:
    with _borrow_conn(None) as conn:
        cur = conn.execute(
            """
            UPDATE gatherings
            SET is_cancelled = 1,
                updated_at = CURRENT_TIMESTAMP
            WHERE tenant_id = ? AND id = ? AND is_cancelled = 0
            """,
            (tenant_id, gathering_id),
        )
        return cur.rowcount > 0


def mark_gathering_completed(
    conn: sqlite3.Connection,
    *,
    tenant_id: int,
    gathering_id: int,
    occurrence_date: str,
) -> None:
    conn.execute(
        """
        UPDATE gatherings
        SET completed_on = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE tenant_id = ? AND id = ?
        """,
        (occurrence_date, tenant_id, gathering_id),
    )


def _roster_from_row(row: sqlite3.Row) -> RosterEntry:
    return {
        "id": int(row["id"]),
        "tenant_id": int(row["tenant_id"]),
        "gathering_id": int(row["gathering_id"]),
        "user_id": int(row["user_id"]),
        "mode": row["mode"],
        "attendance_status": row["attendance_status"],
        "is_late": bool(row["is_late"]),
        "cycle_date": row["cycle_date"],
    }


def upsert_roster_entry(tenant_id: int, gathering_id: int, user_id: int, *, mode: str) -> int:
    """Add a participant to a roster, or change the mode of an existing entry."""
    with _borrow_conn(None) as conn:
        conn.execute(
            """
            INSERT INTO roster_entries (tenant_id, gathering_id, user_id, mode)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(gathering_id, user_id) DO UPDATE SET
                mode = excluded.mode,
                updated_at = CURRENT_TIMESTAMP
            """,
            (tenant_id, gathering_id, user_id, mode),
        )
        row = conn.execute(
            "SELECT id FROM roster_entries WHERE gathering_id = ? AND user_id = ?",
            (gathering_id, user_id),
        ).fetchone()
        return int(row[0])


def get_roster_entry(
    tenant_id: int,
    gathering_id: int,
    user_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> RosterEntry | None:
    with _borrow_conn(conn) as active_conn:
        row = active_conn.execute(
            """
            SELECT id, tenant_id, gathering_id, user_id, mode, attendance_status, is_late, cycle_date
            FROM roster_entries
            WHERE tenant_id = ? AND gathering_id = ? AND user_id = ?
            """,
            (tenant_id, gathering_id, user_id),
        ).fetchone()
    return _roster_from_row(row) if row else None


def list_roster(tenant_id: int, gathering_id: int, *, conn: sqlite3.Connection | None = None) -> list[RosterEntry]:
    with _borrow_conn(conn) as active_conn:
        rows = active_conn.execute(
            """
            SELECT id, tenant_id, gathering_id, user_id, mode, attendance_status, is_late, cycle_date
            FROM roster_entries
            WHERE tenant_id = ? AND gathering_id = ?
            ORDER BY id ASC
            """,
            (tenant_id, gathering_id),
        ).fetchall()
    return [_roster_from_row(r) for r in rows]


def roster_status_for(entry: RosterEntry, occurrence_date: str) -> AttendanceStatus | None:
    """A roster status only counts for the occurrence cycle it was written in."""
    if entry["cycle_date"] != occurrence_date:
        return None
    return entry["attendance_status"]


def set_roster_status(
    conn: sqlite3.Connection,
    *,
    tenant_id: int,
    gathering_id: int,
    user_id: int,
    status: AttendanceStatus,
    is_late: bool,
    occurrence_date: str,
) -> None:
    cur = conn.execute(
        """
        UPDATE roster_entries
        SET attendance_status = ?,
            is_late = ?,
            cycle_date = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE tenant_id = ? AND gathering_id = ? AND user_id = ?
        """,
        (status, 1 if is_late else 0, occurrence_date, tenant_id, gathering_id, user_id),
    )
    if cur.rowcount != 1:
        raise sqlite3.IntegrityError(
            f"Roster entry missing for user {user_id} in gathering {gathering_id}."
        )


# -----------------------------
# Attendance records
# -----------------------------
_RECORD_COLUMNS = """
    id, tenant_id, user_id, gathering_id, occurrence_date, check_in_at, location_verified,
    is_late, late_by_minutes, latitude, longitude, device_id, user_agent, is_forced,
    forced_by, created_at
"""


def _record_from_row(row: sqlite3.Row) -> AttendanceRecord:
    return {
        "id": int(row["id"]),
        "tenant_id": int(row["tenant_id"]),
        "user_id": int(row["user_id"]),
        "gathering_id": int(row["gathering_id"]),
        "occurrence_date": str(row["occurrence_date"]),
        "check_in_at": str(row["check_in_at"]),
        "location_verified": bool(row["location_verified"]),
        "is_late": bool(row["is_late"]),
        "late_by_minutes": int(row["late_by_minutes"]) if row["late_by_minutes"] is not None else None,
        "latitude": row["latitude"],
        "longitude": row["longitude"],
        "device_id": str(row["device_id"]),
        "user_agent": row["user_agent"],
        "is_forced": bool(row["is_forced"]),
        "forced_by": int(row["forced_by"]) if row["forced_by"] is not None else None,
        "created_at": str(row["created_at"]),
    }


def insert_attendance_record_if_absent(
    conn: sqlite3.Connection,
    *,
    tenant_id: int,
    user_id: int,
    gathering_id: int,
    occurrence_date: str,
    check_in_at: str,
    location_verified: bool,
    is_late: bool,
    late_by_minutes: int | None,
    latitude: float | None,
    longitude: float | None,
    device_id: str,
    user_agent: str | None,
    is_forced: bool = False,
    forced_by: int | None = None,
) -> int | None:
    """
    Insert one attendance record for (user, gathering, occurrence).

    Returns the new row id, or None when a record for that occurrence already exists.
    """
    cur = conn.execute(
        """
        INSERT INTO attendance_records (
            tenant_id, user_id, gathering_id, occurrence_date, check_in_at,
            location_verified, is_late, late_by_minutes, latitude, longitude,
            device_id, user_agent, is_forced, forced_by
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(tenant_id, user_id, gathering_id, occurrence_date) DO NOTHING
        """,
        (
            tenant_id,
            user_id,
            gathering_id,
            occurrence_date,
            check_in_at,
            1 if location_verified else 0,
            1 if is_late else 0,
            late_by_minutes,
            latitude,
            longitude,
            device_id,
            user_agent,
            1 if is_forced else 0,
            forced_by,
        ),
    )
    if cur.rowcount != 1:
        return None
    return int(cur.lastrowid)


def get_attendance_record(
    tenant_id: int,
    user_id: int,
    gathering_id: int,
    occurrence_date: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> AttendanceRecord | None:
    with _borrow_conn(conn) as active_conn:
        row = active_conn.execute(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM attendance_records
            WHERE tenant_id = ? AND user_id = ? AND gathering_id = ? AND occurrence_date = ?
            """,
            (tenant_id, user_id, gathering_id, occurrence_date),
        ).fetchone()
    return _record_from_row(row) if row else None


def get_attendance_record_by_id(
    tenant_id: int,
    record_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> AttendanceRecord | None:
    with _borrow_conn(conn) as active_conn:
        row = active_conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM attendance_records WHERE tenant_id = ? AND id = ?",
            (tenant_id, record_id),
        ).fetchone()
    return _record_from_row(row) if row else None


def convert_record_to_forced(
    conn: sqlite3.Connection,
    *,
    tenant_id: int,
    record_id: int,
    forced_by: int,
    device_id: str,
) -> None:
    conn.execute(
        """
        UPDATE attendance_records
        SET is_forced = 1,
            forced_by = ?,
            device_id = ?,
            is_late = 0,
            late_by_minutes = NULL
        WHERE tenant_id = ? AND id = ?
        """,
        (forced_by, device_id, tenant_id, record_id),
    )


def list_attendance_for_user(tenant_id: int, user_id: int) -> list[dict[str, Any]]:
    with _borrow_conn(None) as conn:
        rows = conn.execute(
            f"""
            SELECT {", ".join("ar." + c.strip() for c in _RECORD_COLUMNS.split(","))},
                   g.name AS gathering_name
            FROM attendance_records ar
            JOIN gatherings g ON g.id = ar.gathering_id
            WHERE ar.tenant_id = ? AND ar.user_id = ?
            ORDER BY ar.check_in_at DESC, ar.id DESC
            """,
            (tenant_id, user_id),
        ).fetchall()
    return [{**_record_from_row(r), "gathering_name": r["gathering_name"]} for r in rows]


def list_attendance_for_gathering(
    tenant_id: int,
    gathering_id: int,
    *,
    occurrence_date: str | None = None,
) -> list[dict[str, Any]]:
    where = ["ar.tenant_id = ?", "ar.gathering_id = ?"]
    params: list[Any] = [tenant_id, gathering_id]
    if occurrence_date is not None:
        where.append("ar.occurrence_date = ?")
        params.append(occurrence_date)

    with _borrow_conn(None) as conn:
        rows = conn.execute(
            f"""
            SELECT {", ".join("ar." + c.strip() for c in _RECORD_COLUMNS.split(","))},
                   u.full_name, u.email
            FROM attendance_records ar
            JOIN users u ON u.id = ar.user_id
            WHERE {" AND ".join(where)}
            ORDER BY ar.occurrence_date DESC, ar.check_in_at ASC
            """,
            params,
        ).fetchall()
    return [{**_record_from_row(r), "full_name": r["full_name"], "email": r["email"]} for r in rows]


# -----------------------------
# Leave requests
# -----------------------------
_LEAVE_COLUMNS = """
    id, tenant_id, user_id, leave_type, dates, start_date, end_date, days_count, reason,
    status, approved_by, rejection_reason, created_at, updated_at
"""


def _leave_from_row(row: sqlite3.Row) -> LeaveRequestRow:
    try:
        dates = [str(d) for d in json.loads(row["dates"] or "[]")]
    except ValueError:
        dates = []
    return {
        "id": int(row["id"]),
        "tenant_id": int(row["tenant_id"]),
        "user_id": int(row["user_id"]),
        "leave_type": row["leave_type"],
        "dates": dates,
        "start_date": str(row["start_date"]),
        "end_date": str(row["end_date"]),
        "days_count": float(row["days_count"]),
        "reason": str(row["reason"]),
        "status": row["status"],
        "approved_by": int(row["approved_by"]) if row["approved_by"] is not None else None,
        "rejection_reason": row["rejection_reason"],
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def create_leave_request(
    tenant_id: int,
    user_id: int,
    *,
    leave_type: str,
    dates: list[str],
    start_date: str,
    end_date: str,
    days_count: float,
    reason: str,
    status: LeaveStatus = "Pending",
) -> int:
    with _borrow_conn(None) as conn:
        cur = conn.execute(
            """
            INSERT INTO leave_requests (
                tenant_id, user_id, leave_type, dates, start_date, end_date, days_count, reason, status
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, user_id, leave_type, json.dumps(dates), start_date, end_date, days_count, reason, status),
        )
        return int(cur.lastrowid)


def get_leave_request(tenant_id: int, leave_id: int) -> LeaveRequestRow | None:
    with _borrow_conn(None) as conn:
        row = conn.execute(
            f"SELECT {_LEAVE_COLUMNS} FROM leave_requests WHERE tenant_id = ? AND id = ?",
            (tenant_id, leave_id),
        ).fetchone()
    return _leave_from_row(row) if row else None


def list_leave_requests(
    tenant_id: int,
    *,
    user_id: int | None = None,
    status: str | None = None,
    leave_type: str | None = None,
) -> list[LeaveRequestRow]:
    where = ["tenant_id = ?"]
    params: list[Any] = [tenant_id]
    if user_id is not None:
        where.append("user_id = ?")
        params.append(user_id)
    if status is not None:
        where.append("status = ?")
        params.append(status)
    if leave_type is not None:
        where.append("leave_type = ?")
        params.append(leave_type)

    with _borrow_conn(None) as conn:
        rows = conn.execute(
            f"""
            SELECT {_LEAVE_COLUMNS}
            FROM leave_requests
            WHERE {" AND ".join(where)}
            ORDER BY created_at DESC, id DESC
            """,
            params,
        ).fetchall()
    return [_leave_from_row(r) for r in rows]


def decide_leave_request(
    tenant_id: int,
    leave_id: int,
    *,
    status: LeaveStatus,
    approver_id: int,
    rejection_reason: str | None = None,
) -> bool:
    """Move a Pending request to Approved/Rejected. Returns False if it was not Pending."""
    with _borrow_conn(None) as conn:
        cur = conn.execute(
            """
            UPDATE leave_requests
            SET status = ?,
                approved_by = ?,
                rejection_reason = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE tenant_id = ? AND id = ? AND status = 'Pending'
            """,
            (status, approver_id, rejection_reason if status == "Rejected" else None, tenant_id, leave_id),
        )
        return cur.rowcount == 1


def find_approved_leave_covering(
    tenant_id: int,
    user_id: int,
    day: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> LeaveRequestRow | None:
    """
    Most relevant Approved leave whose explicit dates contain `day`, or whose
    inclusive [start_date, end_date] range contains it. Explicit-date matches win,
    then the most recently decided request.

    The range is stored for explicit-date requests too (min and max of the list), so
    days between non-consecutive explicit dates are covered as well.
    """
    with _borrow_conn(conn) as active_conn:
        row = active_conn.execute(
            f"""
            SELECT {_LEAVE_COLUMNS},
                   EXISTS (SELECT 1 FROM json_each(leave_requests.dates) WHERE json_each.value = ?) AS explicit_match
            FROM leave_requests
            WHERE tenant_id = ?
              AND user_id = ?
              AND status = 'Approved'
              AND (
                  EXISTS (SELECT 1 FROM json_each(leave_requests.dates) WHERE json_each.value = ?)
                  OR (start_date <= ? AND end_date >= ?)
              )
            ORDER BY explicit_match DESC, updated_at DESC, id DESC
            LIMIT 1
            """,
            (day, tenant_id, user_id, day, day, day),
        ).fetchone()
    return _leave_from_row(row) if row else None


# -----------------------------
# Check-in events + audit log
# -----------------------------
def insert_checkin_event(
    *,
    tenant_id: int,
    decision_code: str,
    message: str,
    user_id: int | None = None,
    gathering_id: int | None = None,
    occurrence_date: str | None = None,
    device_id: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    record_id: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Append a single check-in decision to the audit trail and return its id."""
    with _borrow_conn(conn) as active_conn:
        cur = active_conn.execute(
            """
            INSERT INTO checkin_events (
                tenant_id, user_id, gathering_id, decision_code, message,
                occurrence_date, device_id, latitude, longitude, record_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                user_id,
                gathering_id,
                decision_code,
                message,
                occurrence_date,
                device_id,
                latitude,
                longitude,
                record_id,
            ),
        )
        return int(cur.lastrowid)


def get_checkin_events(
    tenant_id: int,
    *,
    user_id: int | None = None,
    gathering_id: int | None = None,
    decision_code: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    where_sql, params = _build_checkin_events_where_clause(
        tenant_id=tenant_id,
        user_id=user_id,
        gathering_id=gathering_id,
        decision_code=decision_code,
    )
    safe_limit = max(1, min(int(limit), 500))
    safe_offset = max(0, int(offset))
    params.extend([safe_limit, safe_offset])

    with _borrow_conn(None) as conn:
        rows = conn.execute(
            f"""
            SELECT
                ce.id,
                ce.user_id,
                u.full_name,
                ce.gathering_id,
                g.name AS gathering_name,
                ce.decision_code,
                ce.message,
                ce.occurrence_date,
                ce.device_id,
                ce.latitude,
                ce.longitude,
                ce.record_id,
                ce.captured_at
            FROM checkin_events ce
            LEFT JOIN users u ON u.id = ce.user_id
            LEFT JOIN gatherings g ON g.id = ce.gathering_id
            WHERE {where_sql}
            ORDER BY ce.captured_at DESC, ce.id DESC
            LIMIT ?
            OFFSET ?
            """,
            params,
        ).fetchall()
    return [dict(r) for r in rows]


def get_checkin_events_total(
    tenant_id: int,
    *,
    user_id: int | None = None,
    gathering_id: int | None = None,
    decision_code: str | None = None,
) -> int:
    where_sql, params = _build_checkin_events_where_clause(
        tenant_id=tenant_id,
        user_id=user_id,
        gathering_id=gathering_id,
        decision_code=decision_code,
    )
    with _borrow_conn(None) as conn:
        row = conn.execute(f"SELECT COUNT(1) FROM checkin_events ce WHERE {where_sql}", params).fetchone()
    return int(row[0] or 0) if row else 0


def _build_checkin_events_where_clause(
    *,
    tenant_id: int,
    user_id: int | None = None,
    gathering_id: int | None = None,
    decision_code: str | None = None,
) -> tuple[str, list[Any]]:
    where = ["ce.tenant_id = ?"]
    params: list[Any] = [tenant_id]

    if user_id is not None:
        where.append("ce.user_id = ?")
        params.append(user_id)
    if gathering_id is not None:
        where.append("ce.gathering_id = ?")
        params.append(gathering_id)
    if decision_code is not None:
        where.append("ce.decision_code = ?")
        params.append(decision_code)

    return " AND ".join(where), params


def insert_audit_log(
    *,
    tenant_id: int,
    action: AuditAction,
    performed_by: int | None,
    performed_by_role: str | None,
    target_user_id: int | None = None,
    details: dict[str, Any] | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    with _borrow_conn(conn) as active_conn:
        cur = active_conn.execute(
            """
            INSERT INTO audit_logs (tenant_id, action, performed_by, performed_by_role, target_user_id, details_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                action,
                performed_by,
                performed_by_role,
                target_user_id,
                json.dumps(details or {}),
            ),
        )
        return int(cur.lastrowid)


def get_audit_logs(
    tenant_id: int,
    *,
    action: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    where = ["tenant_id = ?"]
    params: list[Any] = [tenant_id]
    if action is not None:
        where.append("action = ?")
        params.append(action)
    params.extend([max(1, min(int(limit), 500)), max(0, int(offset))])

    with _borrow_conn(None) as conn:
        rows = conn.execute(
            f"""
            SELECT id, action, performed_by, performed_by_role, target_user_id, details_json, created_at
            FROM audit_logs
            WHERE {" AND ".join(where)}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            OFFSET ?
            """,
            params,
        ).fetchall()

    out: list[dict[str, Any]] = []
    for row in rows:
        try:
            details = json.loads(row["details_json"] or "{}")
        except ValueError:
            details = {}
        out.append(
            {
                "id": row["id"],
                "action": row["action"],
                "performed_by": row["performed_by"],
                "performed_by_role": row["performed_by_role"],
                "target_user_id": row["target_user_id"],
                "details": details,
                "created_at": row["created_at"],
            }
        )
    return out
