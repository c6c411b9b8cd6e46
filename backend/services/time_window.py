import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Literal, Mapping

from backend.config import EARLY_SCAN_WINDOW
from database.db import WEEKDAY_NAMES

WindowKind = Literal["not_scheduled", "too_early", "open", "late", "closed"]


@dataclass(frozen=True)
class Occurrence:
    """One concrete, calendar-dated instance of a gathering, in tenant civil time."""

    date: date
    start: datetime
    end: datetime
    early_boundary: datetime
    grace_boundary: datetime

    @property
    def date_key(self) -> str:
        return self.date.isoformat()


@dataclass(frozen=True)
class WindowDecision:
    kind: WindowKind
    now: datetime
    occurrence: Occurrence | None = None

    @property
    def accepts_check_in(self) -> bool:
        return self.kind in ("open", "late")

    @property
    def is_late(self) -> bool:
        return self.occurrence is not None and self.now > self.occurrence.start

    @property
    def seconds_late(self) -> int:
        if not self.is_late:
            return 0
        return int((self.now - self.occurrence.start).total_seconds())

    @property
    def minutes_late(self) -> int:
        # Truncates, never rounds.
        return self.seconds_late // 60

    @property
    def remaining(self) -> timedelta:
        if self.kind != "too_early" or self.occurrence is None:
            return timedelta(0)
        return self.occurrence.early_boundary - self.now


def tenant_zone(utc_offset_minutes: int) -> timezone:
    return timezone(timedelta(minutes=int(utc_offset_minutes)))


def to_tenant_time(now: datetime, zone: timezone) -> datetime:
    """Naive datetimes are taken as already being tenant civil time."""
    if now.tzinfo is None:
        return now.replace(tzinfo=zone)
    return now.astimezone(zone)


def parse_hhmm(value: str) -> time:
    hours_text, _, minutes_text = (value or "").strip().partition(":")
    hours = int(hours_text)
    minutes = int(minutes_text or "0")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid HH:MM time: {value!r}")
    return time(hours, minutes)


def _as_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def occurs_on(gathering: Mapping[str, Any], day: date) -> bool:
    """
    Whether `day` is a valid occurrence date for the gathering's recurrence rule.

    OneTime: only the start date. Daily: any date in [start, end]. Weekly: in range and
    the weekday is in the gathering's weekly-day set. Monthly: any date in range; there
    is no day-of-month constraint.
    """
    start_date = _as_date(gathering.get("start_date"))
    if start_date is None:
        return False

    frequency = gathering.get("frequency")
    if frequency == "OneTime":
        return day == start_date

    end_date = _as_date(gathering.get("end_date"))
    if day < start_date or (end_date is not None and day > end_date):
        return False

    if frequency == "Daily":
        return True
    if frequency == "Weekly":
        weekly_days = {str(d).strip().lower() for d in gathering.get("weekly_days") or []}
        return WEEKDAY_NAMES[day.weekday()].lower() in weekly_days
    if frequency == "Monthly":
        return True
    return False


def occurrence_on(
    gathering: Mapping[str, Any],
    day: date,
    *,
    zone: timezone,
    grace_minutes: int,
) -> Occurrence:
    start = datetime.combine(day, parse_hhmm(gathering["start_time"]), tzinfo=zone)
    end = datetime.combine(day, parse_hhmm(gathering["end_time"]), tzinfo=zone)
    return Occurrence(
        date=day,
        start=start,
        end=end,
        early_boundary=start - EARLY_SCAN_WINDOW,
        grace_boundary=start + timedelta(minutes=max(0, int(grace_minutes))),
    )


def resolve_occurrence(
    gathering: Mapping[str, Any],
    now_local: datetime,
    *,
    grace_minutes: int,
) -> Occurrence | None:
    """
    The occurrence a check-in at `now_local` belongs to.

    Today's occurrence while it has not ended. After that, tomorrow's once `now_local`
    is inside its early-scan window (a gathering starting just after midnight opens
    before the calendar day turns); otherwise today's, when today qualifies.
    """
    zone = now_local.tzinfo
    today = now_local.date()

    current = None
    if occurs_on(gathering, today):
        current = occurrence_on(gathering, today, zone=zone, grace_minutes=grace_minutes)
        if now_local <= current.end:
            return current

    tomorrow = today + timedelta(days=1)
    if occurs_on(gathering, tomorrow):
        candidate = occurrence_on(gathering, tomorrow, zone=zone, grace_minutes=grace_minutes)
        if now_local >= candidate.early_boundary:
            return candidate
    return current


def evaluate_window(
    gathering: Mapping[str, Any],
    now: datetime,
    *,
    grace_minutes: int,
    strict: bool,
    utc_offset_minutes: int,
) -> WindowDecision:
    now_local = to_tenant_time(now, tenant_zone(utc_offset_minutes))
    occurrence = resolve_occurrence(gathering, now_local, grace_minutes=grace_minutes)
    if occurrence is None:
        return WindowDecision(kind="not_scheduled", now=now_local)

    if now_local < occurrence.early_boundary:
        return WindowDecision(kind="too_early", now=now_local, occurrence=occurrence)
    if now_local <= occurrence.start:
        return WindowDecision(kind="open", now=now_local, occurrence=occurrence)
    if now_local <= occurrence.grace_boundary or not strict:
        return WindowDecision(kind="late", now=now_local, occurrence=occurrence)
    return WindowDecision(kind="closed", now=now_local, occurrence=occurrence)


def too_early_detail(decision: WindowDecision) -> dict[str, Any]:
    total_minutes = math.ceil(decision.remaining.total_seconds() / 60)
    hours_remaining, minutes_remaining = divmod(max(0, total_minutes), 60)
    occurrence = decision.occurrence
    return {
        "hoursRemaining": hours_remaining,
        "minutesRemaining": minutes_remaining,
        "sessionStartTime": occurrence.start.strftime("%H:%M") if occurrence else None,
        "scanWindowStartTime": occurrence.early_boundary.strftime("%H:%M") if occurrence else None,
    }
