from __future__ import annotations
"""ORM guards for the append-only tables.

StockMovement rows can never be updated or deleted. StatusHistory rows can never
be updated; they are only deleted through the owning ticket's cascade.

Call ``register_immutability_listeners()`` once after the models are imported
(``create_app`` does this). Registration is idempotent.
"""
import logging

from sqlalchemy import event

from servicedesk.errors import ImmutableRecordError
from .inventory import StockMovement
from .service_ticket import StatusHistory

logger = logging.getLogger(__name__)


def _refuse(entity: str, operation: str):
    def listener(mapper, connection, target):
        logger.error(
            'immutability_violation_blocked',
            extra={'entity_type': entity, 'entity_id': str(target.id), 'operation': operation},
        )
        raise ImmutableRecordError(f'{entity} records are append-only ({operation} refused)')
    return listener


_movement_update = _refuse('StockMovement', 'UPDATE')
_movement_delete = _refuse('StockMovement', 'DELETE')
_history_update = _refuse('StatusHistory', 'UPDATE')

_LISTENERS = (
    (StockMovement, 'before_update', _movement_update),
    (StockMovement, 'before_delete', _movement_delete),
    (StatusHistory, 'before_update', _history_update),
)


def register_immutability_listeners():
    for model, name, fn in _LISTENERS:
        if not event.contains(model, name, fn):
            event.listen(model, name, fn)


def unregister_immutability_listeners():
    """Tests only."""
    for model, name, fn in _LISTENERS:
        if event.contains(model, name, fn):
            event.remove(model, name, fn)
