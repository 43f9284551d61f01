"""Domain error taxonomy.

Every failure a caller can act on is one of these, each with a stable ``code``
(used in the JSON error envelope) and the HTTP status the blueprints map it to.
"""
from __future__ import annotations
from typing import Any, Dict, Optional


class ServiceDeskError(Exception):
    code = 'service_desk_error'
    status = 400
    title = 'Bad Request'

    def __init__(self, message: str, *, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta = meta or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'code': self.code,
            'title': self.title,
            'detail': self.message,
        }


class NotFound(ServiceDeskError):
    code = 'not_found'
    status = 404
    title = 'Not Found'


class ValidationError(ServiceDeskError):
    code = 'validation_error'
    status = 400
    title = 'Bad Request'


class InsufficientStock(ServiceDeskError):
    code = 'insufficient_stock'
    status = 409
    title = 'Conflict'

    def __init__(self, available: int, required: int, *, inventory_id: Optional[int] = None):
        super().__init__(
            f'Insufficient stock. Available: {available}, Required: {required}',
            meta={'available': available, 'required': required, 'inventory_id': inventory_id},
        )
        self.available = available
        self.required = required


class InvalidStateTransition(ServiceDeskError):
    code = 'invalid_state_transition'
    status = 409
    title = 'Conflict'


class InternalError(ServiceDeskError):
    code = 'internal_error'
    status = 500
    title = 'Internal Server Error'


class ImmutableRecordError(InternalError):
    """Raised by the ORM listeners guarding append-only tables."""
    code = 'immutable_record'


__all__ = [
    'ServiceDeskError', 'NotFound', 'ValidationError', 'InsufficientStock',
    'InvalidStateTransition', 'InternalError', 'ImmutableRecordError',
]
