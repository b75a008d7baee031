"""UTC helpers.

All timestamps stored in the database are naive UTC. Remote services return
timezone-aware ISO strings; normalize them before comparing.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    return to_naive_utc(datetime.fromisoformat(value))


def isoformat(value: datetime) -> str:
    """Serialize a naive UTC datetime as ISO-8601 with a ``Z`` suffix."""
    return to_naive_utc(value).isoformat(timespec="milliseconds") + "Z"
