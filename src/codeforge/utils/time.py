from __future__ import annotations
from datetime import datetime, timezone

def utc_now() -> datetime:
    """Get current UTC time - replacement for deprecated datetime.utcnow()"""
    return datetime.now(timezone.utc)


def utc_iso(dt: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp, used in job logs and persisted records."""
    return (dt or utc_now()).isoformat()
