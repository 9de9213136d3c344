from datetime import datetime, timezone


def UtcNow() -> datetime:
    # Stored timestamps are naive UTC.
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


def ToNaiveUtc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
