"""
Time helpers.

All timestamps are stored as naive UTC so comparisons behave the same on
PostgreSQL and on the SQLite database used by the test-suite.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
