"""
Timestamp utilities for consistent time handling across the system.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def now_iso(timestamp: Optional[float] = None) -> str:
    """Convert timestamp to an ISO-8601 UTC string.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        ISO-8601 string with millisecond precision and a ``Z`` suffix
    """
    if timestamp is None:
        timestamp = time.time()
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f'{moment.microsecond // 1000:03d}Z'


def month_key(timestamp: Optional[float] = None) -> str:
    """Partition key for the calendar month (YYYY-MM) in UTC."""
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m')


def expires_at(days: int, timestamp: Optional[float] = None) -> int:
    """Epoch seconds ``days`` after ``timestamp``, the format DynamoDB TTL expects."""
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp) + days * 24 * 60 * 60
