"""
Server-side auction status derived from stored timestamps and wall-clock time.
"""

import time
from typing import Any, Mapping, Optional

ENDED = "ended"
UPCOMING = "upcoming"
ACTIVE = "active"
REVEALING = "revealing"
AWAITING_END = "awaiting_end"


def derive_status(record: Mapping[str, Any], now: Optional[float] = None) -> str:
    """Status of an auction record at `now` (unix seconds).

    Bidding runs over [start_time, end_time). Sealed-bid auctions then have a
    reveal phase up to reveal_end_time. Past every deadline an auction that
    nobody has closed on chain is awaiting_end.
    """
    if now is None:
        now = time.time()

    if record.get("ended"):
        return ENDED
    if now < int(record.get("start_time") or 0):
        return UPCOMING
    if now < int(record.get("end_time") or 0):
        return ACTIVE

    reveal_end_time = record.get("reveal_end_time")
    if reveal_end_time and now < int(reveal_end_time):
        return REVEALING
    return AWAITING_END


def is_active(record: Mapping[str, Any], now: Optional[float] = None) -> bool:
    return derive_status(record, now) == ACTIVE


def with_status(record: Mapping[str, Any], now: Optional[float] = None) -> dict:
    """Copy of record with status/active filled in"""
    status = derive_status(record, now)
    return {**record, "status": status, "active": status == ACTIVE}
