"""UUID helpers backed by uuid-utils."""

from __future__ import annotations

import datetime
import uuid
from typing import Final

from uuid_utils.compat import uuid7 as _uuid_utils_uuid7

_NANOS_PER_SECOND: Final = 1_000_000_000


def uuid7(nanoseconds: int | None = None) -> uuid.UUID:
    """Generate a UUID v7 from a Unix timestamp in nanoseconds and random bits.

    UUIDv7 objects feature monotonicity within a millisecond, so ids minted in
    one process sort in creation order.

    Args:
        nanoseconds: Optional ns timestamp. If not provided, uses current time.
    """
    if nanoseconds is None:
        return _uuid_utils_uuid7()
    seconds, nanos = divmod(nanoseconds, _NANOS_PER_SECOND)
    return _uuid_utils_uuid7(timestamp=seconds, nanos=nanos)


def uuid7_from_datetime(dt: datetime.datetime) -> uuid.UUID:
    """Generate a UUID v7 whose timestamp corresponds to ``dt``.

    Naive datetimes are treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return uuid7(int(dt.timestamp() * _NANOS_PER_SECOND))
