from datetime import datetime, timedelta, timezone

IST = timezone(timedelta(minutes=330))
# A Monday.
DAY = "2026-03-02"
SITE = (12.9716, 77.5946)
FAR_SITE = (12.9816, 77.5946)  # ~1.1 km north of SITE
DEFAULT_PASSWORD = "secret123"


def at(hour: int, minute: int = 0, second: int = 0, day: str = DAY) -> datetime:
    """Tenant civil time (UTC+05:30) on `day`."""
    base = datetime.fromisoformat(day)
    return base.replace(hour=hour, minute=minute, second=second, tzinfo=IST)
