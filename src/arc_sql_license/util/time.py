from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso(seconds: bool = True) -> str:
    """
    Return current UTC time in ISO-8601 format.
    - If seconds is True, use seconds precision (stable strings).
    - Else, use milliseconds precision.
    """
    if seconds:
        return datetime.now(timezone.utc).isoformat(timespec="seconds")
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def run_timestamp(now: Optional[datetime] = None) -> str:
    """Filename timestamp, YYYYMMDD_HHMMSS in local time."""
    return (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
