"""Timezone-aware UTC timestamp utilities.

Run identifiers, ledger entries and log records all go through these
helpers so every persisted timestamp is UTC and carries an explicit
+00:00 offset.
"""

from datetime import datetime, timezone

RUN_ID_FORMAT = "%Y-%m-%d_%H-%M-%S"


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def parse_timestamp(iso_str: str) -> datetime:
    """Parse an ISO timestamp, assuming UTC if no timezone info."""
    dt = datetime.fromisoformat(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def run_stamp(dt: datetime) -> str:
    """Format a datetime as a sortable run stamp.

    Milliseconds are always three digits wide so that lexicographic order
    matches chronological order: ``2025-01-31_08-15-02.007``.
    """
    return f"{dt.strftime(RUN_ID_FORMAT)}.{dt.microsecond // 1000:03d}"
