from datetime import datetime, timezone, timedelta

DELAY_UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def duration_to_seconds(duration: float, unit: str) -> float:
    """
    Convert a delay duration to seconds. Unknown units are treated as seconds.
    """
    return duration * DELAY_UNIT_SECONDS.get(unit, 1)


def seconds_from_now(seconds: float) -> datetime:
    return utc_now() + timedelta(seconds=seconds)
