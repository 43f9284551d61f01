from __future__ import annotations
"""Reusable validation helpers for command payloads.

Keeps scattered type / range checks in one place so every bad input surfaces
as the same ValidationError shape.
"""
from typing import Any, Iterable, Optional

from servicedesk.errors import ValidationError


def validate_status(new_status: str, allowed: Iterable[str], field_name: str = 'status') -> str:
    """Validate that new_status is inside allowed.

    Returns the status (to enable inline usage) or raises ValidationError.
    """
    if new_status not in allowed:
        raise ValidationError(f"{field_name} invalid")
    return new_status


def require_int(value: Any, field_name: str, *, minimum: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")
    if isinstance(value, float) and value != ivalue:
        raise ValidationError(f"{field_name} must be an integer")
    if minimum is not None and ivalue < minimum:
        raise ValidationError(f"{field_name} must be >= {minimum}")
    return ivalue


def optional_int(value: Any, field_name: str, *, minimum: Optional[int] = None) -> Optional[int]:
    if value is None:
        return None
    return require_int(value, field_name, minimum=minimum)


def require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} required")
    return value.strip()


def int_list(value: Any, field_name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{field_name} must be a list")
    return [require_int(v, field_name) for v in value]

__all__ = ['validate_status', 'require_int', 'optional_int', 'require_text', 'int_list']
