from __future__ import annotations
"""Ticket status transitions, their timestamps and the side effects they gate.

Functions here mutate the ticket inside the caller's transaction and append
post-commit Effects to the list they are given; they never commit.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from servicedesk.errors import ValidationError, InvalidStateTransition
from servicedesk.models.service_ticket import ServiceTicket, StatusHistory
from servicedesk.services import costing
from servicedesk.services.audit import add_audit
from servicedesk.services.collaborators import Collaborators
from servicedesk.services.dispatch import Effect
from servicedesk.utils.fsm import TransitionValidator
from servicedesk.utils.validation import validate_status

logger = logging.getLogger(__name__)

T = ServiceTicket

TICKET_FSM = TransitionValidator({
    T.STATUS_PENDING: {T.STATUS_IN_PROGRESS, T.STATUS_WAITING_PARTS, T.STATUS_CANCELLED, T.STATUS_NOT_SERVICEABLE},
    T.STATUS_IN_PROGRESS: {T.STATUS_WAITING_PARTS, T.STATUS_COMPLETED, T.STATUS_DELIVERED, T.STATUS_CANCELLED, T.STATUS_NOT_SERVICEABLE},
    T.STATUS_WAITING_PARTS: {T.STATUS_IN_PROGRESS, T.STATUS_CANCELLED, T.STATUS_NOT_SERVICEABLE},
    T.STATUS_COMPLETED: {T.STATUS_DELIVERED, T.STATUS_IN_PROGRESS},
    T.STATUS_DELIVERED: set(),
    T.STATUS_CANCELLED: set(),
    T.STATUS_NOT_SERVICEABLE: set(),
}, allow_same=True)

UNDELETABLE_STATUSES = (T.STATUS_COMPLETED, T.STATUS_DELIVERED)
DEVICE_RETURN_STATUSES = (T.STATUS_DELIVERED, T.STATUS_NOT_SERVICEABLE, T.STATUS_CANCELLED)


def record_history(ticket: ServiceTicket, status: str, notes: Optional[str], actor_id: int, now: datetime) -> StatusHistory:
    entry = StatusHistory(status=status, notes=notes, changed_by_id=actor_id, created_at=now)
    ticket.history.append(entry)
    return entry


def apply_status(
    session: Session,
    ticket: ServiceTicket,
    target: str,
    *,
    actor_id: int,
    now: datetime,
    collaborators: Collaborators,
    effects: List[Effect],
    notes: Optional[str] = None,
    reason: Optional[str] = None,
) -> str:
    """Move ``ticket`` to ``target``; returns the previous status.

    Re-entering the current status only appends a history row.
    """
    validate_status(target, T.ALL_STATUSES)
    if target == T.STATUS_NOT_SERVICEABLE and not (reason or '').strip():
        raise ValidationError('Reason is required when marking a ticket as not serviceable')
    old = ticket.status
    TICKET_FSM.assert_can_transition(old, target)
    entered = old != target

    if entered:
        ticket.status = target
        if target == T.STATUS_COMPLETED and ticket.completed_at is None:
            ticket.completed_at = now
        elif target == T.STATUS_DELIVERED:
            ticket.delivered_at = now
            if ticket.completed_at is None:
                ticket.completed_at = now
        elif target == T.STATUS_NOT_SERVICEABLE:
            ticket.not_serviceable_reason = reason.strip()
            ticket.estimated_cost_cents = 0
            ticket.labour_charge_cents = 0
        costing.recalculate(ticket)

    record_history(ticket, target, notes, actor_id, now)
    add_audit(session, actor_id, 'TICKET.STATUS', 'ServiceTicket', ticket.id,
              {'old_status': old, 'new_status': target, 'notes': notes}, company_id=ticket.company_id)

    if entered:
        _queue_transition_effects(ticket, target, collaborators, effects)
    return old


def _queue_transition_effects(ticket: ServiceTicket, target: str, collaborators: Collaborators, effects: List[Effect]):
    if target == T.STATUS_COMPLETED and ticket.assigned_to_id:
        effects.append(Effect('points.on_completed', collaborators.points.on_completed, (ticket.id,)))
    elif target == T.STATUS_DELIVERED:
        if ticket.assigned_to_id:
            effects.append(Effect('points.on_delivered', collaborators.points.on_delivered, (ticket.id,)))
        effects.append(Effect('warranty.create_for_ticket', collaborators.warranties.create_for_ticket, (ticket.id,)))


def assert_deletable(ticket: ServiceTicket):
    if ticket.status in UNDELETABLE_STATUSES:
        raise InvalidStateTransition(f'Cannot delete a {ticket.status.lower()} ticket')


def mark_device_returned(session: Session, ticket: ServiceTicket, *, actor_id: int, now: datetime):
    if ticket.device_returned_at is not None:
        raise InvalidStateTransition('Device has already been returned to customer')
    if ticket.status not in DEVICE_RETURN_STATUSES:
        raise InvalidStateTransition(
            'Device can only be marked as returned for delivered, not serviceable or cancelled tickets'
        )
    ticket.device_returned_at = now
    ticket.device_returned_by_id = actor_id
    add_audit(session, actor_id, 'TICKET.DEVICE_RETURNED', 'ServiceTicket', ticket.id,
              {'status': ticket.status, 'returned_at': now.isoformat()}, company_id=ticket.company_id)


__all__ = [
    'TICKET_FSM', 'record_history', 'apply_status', 'assert_deletable', 'mark_device_returned',
    'UNDELETABLE_STATUSES', 'DEVICE_RETURN_STATUSES',
]
