import sqlite3
from datetime import date, datetime

from database.db import LeaveRequestRow, find_approved_leave_covering


def _day_key(day: date | datetime | str) -> str:
    if isinstance(day, datetime):
        return day.date().isoformat()
    if isinstance(day, date):
        return day.isoformat()
    return date.fromisoformat(str(day)[:10]).isoformat()


def approved_leave_on(
    tenant_id: int,
    user_id: int,
    day: date | datetime | str,
    *,
    conn: sqlite3.Connection | None = None,
) -> LeaveRequestRow | None:
    """Approved leave covering `day` for the participant, or None. Pending/Rejected never count."""
    return find_approved_leave_covering(tenant_id, user_id, _day_key(day), conn=conn)


def expand_leave_dates(start: date, end: date) -> list[str]:
    if end < start:
        raise ValueError("Leave end date is before start date.")
    days = (end - start).days
    return [date.fromordinal(start.toordinal() + offset).isoformat() for offset in range(days + 1)]
