"""UTC timestamp helpers.

Every timestamp column stores the same ISO-8601 shape (UTC offset, microsecond
precision) so that string comparison in SQL matches chronological order.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_utc_iso(value: datetime | str | None = None) -> str:
    """
    Normalize a datetime or ISO string to the stored timestamp format.

    Naive datetimes are taken to be UTC; None means "now".

    Raises:
        ValueError: If a string value is not ISO-8601
    """
    if value is None:
        dt = utc_now()
    elif isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value.strip())

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    return to_utc_iso(utc_now())
