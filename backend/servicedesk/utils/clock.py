from __future__ import annotations
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
