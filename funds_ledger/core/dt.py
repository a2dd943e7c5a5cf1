from datetime import datetime, timezone

TZ = timezone.utc


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(TZ)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=TZ)
    return value.astimezone(TZ)
