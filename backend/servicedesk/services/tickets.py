from __future__ import annotations
"""Ticket lifecycle operations.

``TicketService`` is bound to one SQLAlchemy session. Every public method is one
transaction: it validates scope and references, mutates through the parts
sub-ledger / cost engine / state machine, writes history and audit rows, commits,
and only then hands collected side effects to the post-commit dispatcher.
"""
import logging
import random
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from servicedesk.config.settings import DEFAULTS
from servicedesk.decorators.operation import service_operation
from servicedesk.errors import NotFound, ValidationError, InvalidStateTransition
from servicedesk.models.inventory import BranchInventory
from servicedesk.models.org import Branch, User
from servicedesk.models.part_usage import PartUsage
from servicedesk.models.reference import Customer, CustomerDevice, Fault, Accessory, DamageCondition, PaymentMethod
from servicedesk.models.service_ticket import (
    ServiceTicket, TicketFault, TicketAccessory, TicketDamageCondition, TicketNote, PaymentEntry,
    TicketImage, StatusHistory,
)
from servicedesk.services import costing, parts_ledger, stock_ledger, status_machine
from servicedesk.services.audit import add_audit
from servicedesk.services.collaborators import Collaborators, SequenceNumberGenerator, DOC_SERVICE_TICKET
from servicedesk.services.commands import (
    Scope, CreateTicketCommand, UpdateTicketCommand, AddPartCommand, UpdatePartCommand,
    StatusChangeCommand, BulkPaymentCommand, RefundCommand, PaymentInput, ImageInput,
    PreviousServiceReport, INTAKE_FIELDS,
)
from servicedesk.services.dispatch import Effect, PostCommitDispatcher, MODE_INLINE
from servicedesk.utils.clock import utcnow
from servicedesk.utils.validation import require_int, require_text

logger = logging.getLogger(__name__)

T = ServiceTicket

MAX_CREATE_ATTEMPTS = 3


def _money(cents: int) -> str:
    return f'{cents / 100:.2f}'


# Unique violations another create can cause: the ticket number itself, or a
# first-of-year sequence row inserted by a concurrent create.
_NUMBERING_CONFLICT_MARKERS = ('ticket_number', 'document_sequences', 'uq_document_sequence')


def _is_numbering_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return any(marker in message for marker in _NUMBERING_CONFLICT_MARKERS)


class TicketService:
    def __init__(
        self,
        session: Session,
        *,
        collaborators: Optional[Collaborators] = None,
        dispatcher: Optional[PostCommitDispatcher] = None,
        settings: Optional[Dict[str, Any]] = None,
        clock: Callable = utcnow,
    ):
        self.session = session
        self.settings = {**DEFAULTS, **(settings or {})}
        self.collaborators = collaborators or Collaborators(
            numbers=SequenceNumberGenerator(self.settings['TICKET_NUMBER_PREFIX'])
        )
        self.dispatcher = dispatcher or PostCommitDispatcher(MODE_INLINE)
        self.clock = clock

    # ---------- helpers ---------- #

    def _commit(self, effects: Iterable[Effect] = ()):
        self.session.commit()
        effects = list(effects)
        if effects:
            self.dispatcher.dispatch(effects)

    def _ticket(self, scope: Scope, ticket_id: int) -> ServiceTicket:
        ticket = self.session.execute(
            select(ServiceTicket).where(ServiceTicket.id == ticket_id, ServiceTicket.company_id == scope.company_id)
        ).scalar_one_or_none()
        if ticket is None or not scope.allows(ticket.branch_id):
            raise NotFound('Ticket not found')
        return ticket

    @staticmethod
    def _part(ticket: ServiceTicket, part_id: int) -> PartUsage:
        for p in ticket.parts:
            if p.id == part_id:
                return p
        raise NotFound('Part not found')

    @staticmethod
    def _assert_not_delivered(ticket: ServiceTicket, what: str):
        if ticket.status == T.STATUS_DELIVERED:
            raise InvalidStateTransition(f'Cannot {what} on a delivered ticket')

    @classmethod
    def _assert_costs_editable(cls, ticket: ServiceTicket, what: str):
        cls._assert_not_delivered(ticket, what)
        if ticket.status in parts_ledger.FROZEN_STATUSES:
            raise InvalidStateTransition(f'Cannot {what} on a {ticket.status.lower()} ticket')

    def _payment_methods(self, scope: Scope, ids: Sequence[int]):
        wanted = set(ids)
        if not wanted:
            return {}
        rows = self.session.execute(
            select(PaymentMethod).where(
                PaymentMethod.id.in_(wanted),
                PaymentMethod.company_id == scope.company_id,
                PaymentMethod.is_active.is_(True),
            )
        ).scalars().all()
        if len(rows) != len(wanted):
            raise NotFound('One or more payment methods not found or inactive')
        return {m.id: m for m in rows}

    def _accessories(self, ids: Sequence[int]):
        if not ids:
            return []
        rows = self.session.execute(
            select(Accessory).where(Accessory.id.in_(set(ids)), Accessory.is_active.is_(True))
        ).scalars().all()
        if len(rows) != len(set(ids)):
            raise NotFound('One or more accessories not found or inactive')
        return rows

    def _device(self, scope: Scope, device_id: int, customer_id: Optional[int] = None) -> CustomerDevice:
        q = select(CustomerDevice).where(CustomerDevice.id == device_id, CustomerDevice.company_id == scope.company_id)
        if customer_id is not None:
            q = q.where(CustomerDevice.customer_id == customer_id)
        device = self.session.execute(q).scalar_one_or_none()
        if device is None:
            raise NotFound('Customer device not found or does not belong to this customer')
        return device

    def _recent_ticket(self, company_id: int, device_id: int) -> Optional[ServiceTicket]:
        since = self.clock() - timedelta(days=int(self.settings['REPEAT_SERVICE_WINDOW_DAYS']))
        return self.session.execute(
            select(ServiceTicket).where(
                ServiceTicket.customer_device_id == device_id,
                ServiceTicket.company_id == company_id,
                ServiceTicket.created_at >= since,
                ServiceTicket.status != T.STATUS_CANCELLED,
            ).order_by(ServiceTicket.created_at.desc(), ServiceTicket.id.desc()).limit(1)
        ).scalar_one_or_none()

    def _active_ticket(self, company_id: int, device_id: int) -> Optional[ServiceTicket]:
        return self.session.execute(
            select(ServiceTicket).where(
                ServiceTicket.customer_device_id == device_id,
                ServiceTicket.company_id == company_id,
                ServiceTicket.status.notin_(T.CLOSED_STATUSES),
            ).order_by(ServiceTicket.created_at.desc(), ServiceTicket.id.desc()).limit(1)
        ).scalar_one_or_none()

    def _number_taken(self, number: str) -> bool:
        return self.session.execute(
            select(func.count(ServiceTicket.id)).where(ServiceTicket.ticket_number == number)
        ).scalar_one() > 0

    def _ticket_number(self, scope: Scope, branch_id: int, force_suffix: bool) -> str:
        number = self.collaborators.numbers.generate(self.session, scope.company_id, DOC_SERVICE_TICKET, branch_id)
        if force_suffix or self._number_taken(number):
            suffix = f'{random.randrange(100):02d}'
            logger.warning('duplicate ticket number detected, adding suffix',
                           extra={'ticket_number': number, 'suffix': suffix})
            number = f'{number}-{suffix}'
        return number

    def _extend_statement_timeout(self):
        if self.session.get_bind().dialect.name == 'postgresql':
            ms = int(self.settings['CREATE_TICKET_TIMEOUT_MS'])
            self.session.execute(text(f'SET LOCAL statement_timeout = {ms}'))

    # ---------- create / update / delete ---------- #

    @service_operation('create ticket')
    def create_ticket(self, scope: Scope, cmd: CreateTicketCommand) -> ServiceTicket:
        scope.check_branch(cmd.branch_id)
        attempt = 0
        while True:
            attempt += 1
            effects: List[Effect] = []
            try:
                ticket = self._create_once(scope, cmd, effects, force_suffix=attempt > 1)
                self.session.commit()
            except IntegrityError as e:
                self.session.rollback()
                if not _is_numbering_conflict(e) or attempt >= MAX_CREATE_ATTEMPTS:
                    raise
                logger.warning('ticket numbering collided at commit, retrying', extra={'attempt': attempt})
                continue
            break
        self.dispatcher.dispatch(effects)
        logger.info('ticket created', extra={'ticket_id': ticket.id, 'ticket_number': ticket.ticket_number})
        return ticket

    def _create_once(self, scope: Scope, cmd: CreateTicketCommand, effects: List[Effect], force_suffix: bool) -> ServiceTicket:
        s = self.session
        self._extend_statement_timeout()
        branch = s.get(Branch, cmd.branch_id)
        if branch is None or branch.company_id != scope.company_id or not branch.is_active:
            raise NotFound('Branch not found')
        customer = s.execute(
            select(Customer).where(Customer.id == cmd.customer_id, Customer.company_id == scope.company_id)
        ).scalar_one_or_none()
        if customer is None:
            raise NotFound('Customer not found')
        device = self._device(scope, cmd.customer_device_id, customer.id)
        faults = s.execute(
            select(Fault).where(Fault.id.in_(cmd.fault_ids), Fault.company_id == scope.company_id, Fault.is_active.is_(True))
        ).scalars().all()
        if len(faults) != len(cmd.fault_ids):
            raise NotFound('One or more faults not found or inactive')
        if cmd.damage_condition_ids:
            found = s.execute(
                select(func.count(DamageCondition.id)).where(
                    DamageCondition.id.in_(set(cmd.damage_condition_ids)),
                    DamageCondition.company_id == scope.company_id,
                    DamageCondition.is_active.is_(True),
                )
            ).scalar_one()
            if found != len(set(cmd.damage_condition_ids)):
                raise NotFound('One or more damage conditions not found or inactive')
        self._accessories(cmd.accessory_ids)
        self._payment_methods(scope, [e.payment_method_id for e in cmd.payment_entries])

        now = self.clock()
        number = self._ticket_number(scope, branch.id, force_suffix)
        previous = self._recent_ticket(scope.company_id, device.id)
        active = self._active_ticket(scope.company_id, device.id)
        if active is not None:
            logger.warning('device already has an active ticket',
                           extra={'device_id': device.id, 'active_ticket_id': active.id})

        ticket = ServiceTicket(
            ticket_number=number,
            company_id=scope.company_id,
            branch_id=branch.id,
            customer_id=customer.id,
            customer_device_id=device.id,
            device_model=device.display_name,
            damage_condition=cmd.damage_condition,
            diagnosis=cmd.diagnosis,
            device_password=cmd.device_password,
            device_pattern=cmd.device_pattern,
            device_condition=cmd.device_condition,
            intake_notes=cmd.intake_notes,
            data_warranty_accepted=cmd.data_warranty_accepted,
            send_sms_notification=cmd.send_sms_notification,
            send_whatsapp_notification=cmd.send_whatsapp_notification,
            status=T.STATUS_PENDING,
            estimated_cost_cents=cmd.estimated_cost_cents,
            actual_cost_cents=0,
            labour_charge_cents=0,
            discount_cents=0,
            advance_payment_cents=0,
            is_warranty_repair=cmd.is_warranty_repair,
            warranty_reason=cmd.warranty_reason,
            is_repeated_service=previous is not None,
            previous_ticket_id=previous.id if previous is not None else None,
            created_by_id=scope.actor_id,
            created_at=now,
            updated_at=now,
        )
        for f in faults:
            ticket.faults.append(TicketFault(fault_id=f.id, price_cents=f.default_price_cents))
        for dc_id in dict.fromkeys(cmd.damage_condition_ids):
            ticket.damage_conditions.append(TicketDamageCondition(damage_condition_id=dc_id))
        for acc_id in dict.fromkeys(cmd.accessory_ids):
            ticket.accessories.append(TicketAccessory(accessory_id=acc_id))
        for entry in cmd.payment_entries:
            ticket.payments.append(PaymentEntry(
                payment_method_id=entry.payment_method_id,
                amount_cents=entry.amount_cents,
                notes=entry.notes,
                transaction_id=entry.transaction_id,
                payment_date=entry.payment_date or now,
                received_by_id=scope.actor_id,
            ))
        status_machine.record_history(ticket, T.STATUS_PENDING, 'Ticket created', scope.actor_id, now)
        s.add(ticket)
        s.flush()
        add_audit(s, scope.actor_id, 'TICKET.CREATE', 'ServiceTicket', ticket.id, {
            'ticket_number': number,
            'customer_name': customer.name,
            'device_model': ticket.device_model,
            'faults': ', '.join(f.name for f in faults),
            'estimated_cost_cents': cmd.estimated_cost_cents,
            'payment_entries': len(cmd.payment_entries),
            'is_repeated_service': ticket.is_repeated_service,
            'previous_ticket_id': ticket.previous_ticket_id,
            'active_ticket_id': active.id if active is not None else None,
        }, company_id=scope.company_id)
        effects.append(Effect('job_sheet.generate', self.collaborators.job_sheets.generate, (ticket.id, scope.actor_id)))
        return ticket

    @service_operation('update ticket')
    def update_ticket(self, scope: Scope, cmd: UpdateTicketCommand) -> ServiceTicket:
        ticket = self._ticket(scope, cmd.ticket_id)
        self._assert_not_delivered(ticket, 'edit intake details')
        changed = []
        if cmd.customer_device_id is not None and cmd.customer_device_id != ticket.customer_device_id:
            device = self._device(scope, cmd.customer_device_id, ticket.customer_id)
            ticket.customer_device_id = device.id
            ticket.device_model = device.display_name
            changed.append('customer_device_id')
        for name in INTAKE_FIELDS:
            value = getattr(cmd, name)
            if value is not None and value != getattr(ticket, name):
                setattr(ticket, name, value)
                changed.append(name)
        if cmd.advance_payment_cents is not None and cmd.advance_payment_cents != ticket.advance_payment_cents:
            ticket.advance_payment_cents = cmd.advance_payment_cents
            changed.append('advance_payment_cents')
        if cmd.accessory_ids is not None:
            self._accessories(cmd.accessory_ids)
            ticket.accessories.clear()
            for acc_id in dict.fromkeys(cmd.accessory_ids):
                ticket.accessories.append(TicketAccessory(accessory_id=acc_id))
            changed.append('accessory_ids')
        ticket.updated_at = self.clock()
        add_audit(self.session, scope.actor_id, 'TICKET.UPDATE', 'ServiceTicket', ticket.id,
                  {'changed': changed}, company_id=scope.company_id)
        self._commit()
        return ticket

    @service_operation('delete ticket')
    def delete_ticket(self, scope: Scope, ticket_id: int) -> None:
        s = self.session
        ticket = self._ticket(scope, ticket_id)
        status_machine.assert_deletable(ticket)
        restored = []
        for part in list(ticket.parts):
            if part.is_approved:
                parts_ledger.restore_stock(s, part, scope.actor_id, stock_ledger.REF_TICKET_DELETED,
                                           f'Ticket {ticket.ticket_number} deleted')
                restored.append({'part_id': part.id, 'quantity': part.quantity})
        image_urls = [img.image_url for img in ticket.images]
        s.execute(
            update(ServiceTicket).where(ServiceTicket.previous_ticket_id == ticket.id).values(previous_ticket_id=None)
        )
        add_audit(s, scope.actor_id, 'TICKET.DELETE', 'ServiceTicket', ticket.id, {
            'ticket_number': ticket.ticket_number,
            'device_model': ticket.device_model,
            'restored_parts': restored,
        }, company_id=scope.company_id)
        s.delete(ticket)
        self._commit(Effect('files.delete', self.collaborators.files.delete, (url,)) for url in image_urls)
        logger.info('ticket deleted', extra={'ticket_id': ticket_id, 'restored_parts': len(restored)})

    @service_operation('load ticket')
    def get_ticket(self, scope: Scope, ticket_id: int) -> ServiceTicket:
        return self._ticket(scope, ticket_id)

    @service_operation('compute billing summary')
    def billing_summary(self, scope: Scope, ticket_id: int) -> Dict[str, int]:
        ticket = self._ticket(scope, ticket_id)
        return costing.billing_summary(ticket, ticket.total_paid_cents)

    # ---------- parts ---------- #

    @service_operation('add part')
    def add_part(self, scope: Scope, cmd: AddPartCommand) -> PartUsage:
        ticket = self._ticket(scope, cmd.ticket_id)
        part = parts_ledger.add_part(
            self.session, ticket,
            inventory_id=cmd.inventory_id, quantity=cmd.quantity, unit_price_cents=cmd.unit_price_cents,
            is_extra_spare=cmd.is_extra_spare, fault_tag=cmd.fault_tag,
            actor_id=scope.actor_id, now=self.clock(),
        )
        self._commit()
        return part

    @service_operation('approve part')
    def approve_part(self, scope: Scope, ticket_id: int, part_id: int, approval_method: str,
                     note: Optional[str] = None) -> PartUsage:
        ticket = self._ticket(scope, ticket_id)
        part = parts_ledger.approve_part(
            self.session, ticket, self._part(ticket, part_id),
            approval_method=approval_method, note=note, actor_id=scope.actor_id, now=self.clock(),
        )
        self._commit()
        return part

    @service_operation('approve part for warranty')
    def approve_part_for_warranty(self, scope: Scope, ticket_id: int, part_id: int,
                                  note: Optional[str] = None) -> PartUsage:
        ticket = self._ticket(scope, ticket_id)
        part = parts_ledger.approve_part_for_warranty(
            self.session, ticket, self._part(ticket, part_id),
            note=note, actor_id=scope.actor_id, now=self.clock(),
        )
        self._commit()
        return part

    @service_operation('update part')
    def update_part(self, scope: Scope, cmd: UpdatePartCommand) -> PartUsage:
        ticket = self._ticket(scope, cmd.ticket_id)
        part = parts_ledger.update_part(
            self.session, ticket, self._part(ticket, cmd.part_id),
            quantity=cmd.quantity, unit_price_cents=cmd.unit_price_cents, actor_id=scope.actor_id,
        )
        self._commit()
        return part

    @service_operation('remove part')
    def remove_part(self, scope: Scope, ticket_id: int, part_id: int) -> None:
        ticket = self._ticket(scope, ticket_id)
        parts_ledger.remove_part(self.session, ticket, self._part(ticket, part_id), actor_id=scope.actor_id)
        self._commit()

    @service_operation('list available parts')
    def available_parts(self, scope: Scope, ticket_id: int) -> List[BranchInventory]:
        return parts_ledger.available_parts(self.session, self._ticket(scope, ticket_id))

    # ---------- status ---------- #

    @service_operation('update ticket status')
    def update_status(self, scope: Scope, cmd: StatusChangeCommand) -> ServiceTicket:
        ticket = self._ticket(scope, cmd.ticket_id)
        effects: List[Effect] = []
        now = self.clock()
        old = status_machine.apply_status(
            self.session, ticket, cmd.status,
            actor_id=scope.actor_id, now=now, collaborators=self.collaborators, effects=effects,
            notes=cmd.notes, reason=cmd.not_serviceable_reason,
        )
        ticket.updated_at = now
        self._commit(effects)
        logger.info('ticket status updated', extra={'ticket_id': ticket.id, 'old_status': old, 'new_status': ticket.status})
        return ticket

    @service_operation('assign technician')
    def assign_technician(self, scope: Scope, ticket_id: int, technician_id: int,
                          notes: Optional[str] = None) -> ServiceTicket:
        s = self.session
        ticket = self._ticket(scope, ticket_id)
        technician = s.execute(
            select(User).where(
                User.id == technician_id,
                User.company_id == scope.company_id,
                User.branch_id == ticket.branch_id,
                User.role == User.ROLE_TECHNICIAN,
                User.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if technician is None:
            raise NotFound('Technician not found or not in the same branch')
        previous = s.get(User, ticket.assigned_to_id) if ticket.assigned_to_id else None
        now = self.clock()
        ticket.assigned_to_id = technician.id
        if ticket.status == T.STATUS_PENDING:
            status_machine.TICKET_FSM.assert_can_transition(ticket.status, T.STATUS_IN_PROGRESS)
            ticket.status = T.STATUS_IN_PROGRESS
            status_machine.record_history(ticket, T.STATUS_IN_PROGRESS, notes or f'Assigned to {technician.name}',
                                          scope.actor_id, now)
        elif previous is not None and previous.id != technician.id:
            status_machine.record_history(ticket, ticket.status,
                                          notes or f'Reassigned from {previous.name} to {technician.name}',
                                          scope.actor_id, now)
        else:
            status_machine.record_history(ticket, ticket.status, notes or f'Assigned to {technician.name}',
                                          scope.actor_id, now)
        ticket.updated_at = now
        add_audit(s, scope.actor_id, 'TICKET.ASSIGN', 'ServiceTicket', ticket.id, {
            'technician_id': technician.id,
            'previous_technician_id': previous.id if previous is not None else None,
            'status': ticket.status,
        }, company_id=scope.company_id)
        effects = []
        if ticket.send_sms_notification or ticket.send_whatsapp_notification:
            effects.append(Effect(
                'notifications.notify_assigned', self.collaborators.notifications.notify_assigned,
                (technician.id, ticket.id, ticket.ticket_number, ticket.device_model, ticket.damage_condition or ''),
            ))
        self._commit(effects)
        return ticket

    @service_operation('mark device returned')
    def mark_device_returned(self, scope: Scope, ticket_id: int) -> ServiceTicket:
        ticket = self._ticket(scope, ticket_id)
        status_machine.mark_device_returned(self.session, ticket, actor_id=scope.actor_id, now=self.clock())
        self._commit()
        return ticket

    @service_operation('load status history')
    def get_status_history(self, scope: Scope, ticket_id: int) -> List[StatusHistory]:
        return list(self._ticket(scope, ticket_id).history)

    # ---------- money ---------- #

    @service_operation('add payment entry')
    def add_payment_entry(self, scope: Scope, ticket_id: int, payment: PaymentInput) -> PaymentEntry:
        ticket = self._ticket(scope, ticket_id)
        if payment.amount_cents <= 0:
            raise ValidationError('amount_cents must be > 0')
        method = self._payment_methods(scope, [payment.payment_method_id])[payment.payment_method_id]
        entry = self._record_payment(scope, ticket, payment, payment.notes, method.name)
        self._commit()
        return entry

    def _record_payment(self, scope: Scope, ticket: ServiceTicket, payment: PaymentInput,
                        notes: Optional[str], method_name: str) -> PaymentEntry:
        entry = PaymentEntry(
            payment_method_id=payment.payment_method_id,
            amount_cents=payment.amount_cents,
            notes=notes,
            transaction_id=payment.transaction_id,
            payment_date=payment.payment_date or self.clock(),
            received_by_id=scope.actor_id,
        )
        ticket.payments.append(entry)
        self.session.flush()
        add_audit(self.session, scope.actor_id, 'PAYMENT.CREATE', 'PaymentEntry', entry.id, {
            'ticket_id': ticket.id,
            'ticket_number': ticket.ticket_number,
            'amount_cents': payment.amount_cents,
            'payment_method': method_name,
        }, company_id=scope.company_id)
        return entry

    @service_operation('add payment entries')
    def add_payment_entries(self, scope: Scope, cmd: BulkPaymentCommand) -> Tuple[List[PaymentEntry], ServiceTicket]:
        ticket = self._ticket(scope, cmd.ticket_id)
        valid = [p for p in cmd.payments if p.amount_cents > 0]
        if not valid:
            raise ValidationError('At least one payment with amount > 0 is required')
        methods = self._payment_methods(scope, [p.payment_method_id for p in valid])
        entries = [
            self._record_payment(scope, ticket, p, cmd.notes or p.notes, methods[p.payment_method_id].name)
            for p in valid
        ]
        effects: List[Effect] = []
        if cmd.mark_as_delivered and ticket.status != T.STATUS_DELIVERED:
            status_machine.apply_status(
                self.session, ticket, T.STATUS_DELIVERED,
                actor_id=scope.actor_id, now=self.clock(), collaborators=self.collaborators, effects=effects,
                notes='Marked as delivered during payment collection',
            )
        self._commit(effects)
        logger.info('bulk payments recorded', extra={
            'ticket_id': ticket.id, 'count': len(entries), 'total_cents': sum(p.amount_cents for p in valid),
        })
        return entries, ticket

    @service_operation('process refund')
    def process_refund(self, scope: Scope, cmd: RefundCommand) -> ServiceTicket:
        ticket = self._ticket(scope, cmd.ticket_id)
        if ticket.status == T.STATUS_CANCELLED:
            raise InvalidStateTransition('Ticket is already cancelled')
        if ticket.refunded_at is not None:
            raise InvalidStateTransition('Ticket has already been refunded')
        total_paid = ticket.total_paid_cents
        if total_paid <= 0:
            raise ValidationError('No payments to refund')
        method = self.session.execute(
            select(PaymentMethod).where(PaymentMethod.id == cmd.payment_method_id,
                                        PaymentMethod.company_id == scope.company_id)
        ).scalar_one_or_none()
        if method is None:
            raise NotFound('Payment method not found')
        now = self.clock()
        old_status = ticket.status
        # Refund cancels from any non-cancelled status; it is not a regular FSM edge.
        ticket.status = T.STATUS_CANCELLED
        ticket.refund_amount_cents = total_paid
        ticket.refund_reason = cmd.reason
        ticket.refund_payment_method_id = method.id
        ticket.refunded_at = now
        ticket.refunded_by_id = scope.actor_id
        ticket.updated_at = now
        status_machine.record_history(
            ticket, T.STATUS_CANCELLED, f'Ticket refunded. Amount: {_money(total_paid)}. Reason: {cmd.reason}',
            scope.actor_id, now,
        )
        add_audit(self.session, scope.actor_id, 'TICKET.REFUND', 'ServiceTicket', ticket.id, {
            'refund_amount_cents': total_paid,
            'reason': cmd.reason,
            'payment_method_id': method.id,
            'payment_method': method.name,
            'old_status': old_status,
        }, company_id=scope.company_id)
        self._commit()
        logger.info('refund processed', extra={'ticket_id': ticket.id, 'refund_amount_cents': total_paid})
        return ticket

    @service_operation('update labour charge')
    def update_labour_charge(self, scope: Scope, ticket_id: int, labour_charge_cents: int) -> ServiceTicket:
        labour = require_int(labour_charge_cents, 'labour_charge_cents', minimum=0)
        ticket = self._ticket(scope, ticket_id)
        self._assert_costs_editable(ticket, 'change the labour charge')
        ticket.labour_charge_cents = labour
        costing.recalculate(ticket)
        add_audit(self.session, scope.actor_id, 'TICKET.LABOUR', 'ServiceTicket', ticket.id, {
            'labour_charge_cents': labour,
            'parts_total_cents': costing.parts_total(ticket.parts),
            'actual_cost_cents': ticket.actual_cost_cents,
        }, company_id=scope.company_id)
        self._commit()
        return ticket

    @service_operation('update discount')
    def update_discount(self, scope: Scope, ticket_id: int, discount_cents: int) -> ServiceTicket:
        discount = require_int(discount_cents, 'discount_cents', minimum=0)
        ticket = self._ticket(scope, ticket_id)
        self._assert_costs_editable(ticket, 'change the discount')
        old = ticket.discount_cents
        ticket.discount_cents = discount
        add_audit(self.session, scope.actor_id, 'TICKET.DISCOUNT', 'ServiceTicket', ticket.id,
                  {'old_discount_cents': old, 'new_discount_cents': discount}, company_id=scope.company_id)
        self._commit()
        return ticket

    @service_operation('update diagnosis')
    def update_diagnosis(self, scope: Scope, ticket_id: int, diagnosis: str,
                         estimated_cost_cents: Optional[int] = None) -> ServiceTicket:
        ticket = self._ticket(scope, ticket_id)
        self._assert_costs_editable(ticket, 'change the diagnosis')
        ticket.diagnosis = diagnosis
        if estimated_cost_cents is not None:
            estimate = require_int(estimated_cost_cents, 'estimated_cost_cents', minimum=0)
            if estimate != ticket.estimated_cost_cents:
                status_machine.record_history(
                    ticket, ticket.status,
                    f'Estimate changed from {_money(ticket.estimated_cost_cents)} to {_money(estimate)}',
                    scope.actor_id, self.clock(),
                )
                ticket.estimated_cost_cents = estimate
        add_audit(self.session, scope.actor_id, 'TICKET.DIAGNOSIS', 'ServiceTicket', ticket.id,
                  {'diagnosis': diagnosis, 'estimated_cost_cents': estimated_cost_cents}, company_id=scope.company_id)
        self._commit()
        return ticket

    @service_operation('add fault')
    def add_fault(self, scope: Scope, ticket_id: int, fault_id: int, price_cents: Optional[int] = None) -> ServiceTicket:
        ticket = self._ticket(scope, ticket_id)
        self._assert_costs_editable(ticket, 'add faults')
        if any(tf.fault_id == fault_id for tf in ticket.faults):
            raise ValidationError('This fault is already added to the ticket')
        fault = self.session.execute(
            select(Fault).where(Fault.id == fault_id, Fault.company_id == scope.company_id, Fault.is_active.is_(True))
        ).scalar_one_or_none()
        if fault is None:
            raise NotFound('Fault not found or inactive')
        price = fault.default_price_cents if price_cents is None else require_int(price_cents, 'price_cents')
        if price < 0:
            raise ValidationError('Price cannot be negative')
        ticket.faults.append(TicketFault(fault_id=fault.id, price_cents=price))
        ticket.estimated_cost_cents = (ticket.estimated_cost_cents or 0) + price
        add_audit(self.session, scope.actor_id, 'TICKET.FAULT_ADD', 'ServiceTicket', ticket.id, {
            'fault_id': fault.id, 'fault_name': fault.name, 'price_cents': price,
            'estimated_cost_cents': ticket.estimated_cost_cents,
        }, company_id=scope.company_id)
        self._commit()
        return ticket

    # ---------- notes / images ---------- #

    @service_operation('add note')
    def add_note(self, scope: Scope, ticket_id: int, note: str) -> TicketNote:
        body = require_text(note, 'note')
        ticket = self._ticket(scope, ticket_id)
        row = TicketNote(note=body, created_by_id=scope.actor_id, created_at=self.clock())
        ticket.notes.append(row)
        self.session.flush()
        add_audit(self.session, scope.actor_id, 'NOTE.CREATE', 'TicketNote', row.id,
                  {'ticket_id': ticket.id}, company_id=scope.company_id)
        self._commit()
        return row

    @service_operation('list notes')
    def list_notes(self, scope: Scope, ticket_id: int) -> List[TicketNote]:
        ticket = self._ticket(scope, ticket_id)
        return sorted(ticket.notes, key=lambda n: (n.created_at, n.id), reverse=True)

    @service_operation('delete note')
    def delete_note(self, scope: Scope, note_id: int) -> None:
        note = self.session.get(TicketNote, note_id)
        if note is None:
            raise NotFound('Note not found')
        ticket = self._ticket(scope, note.ticket_id)
        ticket.notes.remove(note)
        add_audit(self.session, scope.actor_id, 'NOTE.DELETE', 'TicketNote', note_id,
                  {'ticket_id': ticket.id}, company_id=scope.company_id)
        self._commit()

    @service_operation('attach images')
    def attach_images(self, scope: Scope, ticket_id: int, images: Sequence[ImageInput]) -> List[TicketImage]:
        if not images:
            raise ValidationError('At least one image is required')
        ticket = self._ticket(scope, ticket_id)
        now = self.clock()
        rows = []
        for img in images:
            row = TicketImage(image_url=require_text(img.image_url, 'image_url'), caption=img.caption,
                              uploaded_by_id=scope.actor_id, uploaded_at=now)
            ticket.images.append(row)
            rows.append(row)
        add_audit(self.session, scope.actor_id, 'TICKET.IMAGES', 'ServiceTicket', ticket.id,
                  {'count': len(rows)}, company_id=scope.company_id)
        self._commit()
        return rows

    # ---------- intake lookups ---------- #

    @service_operation('check previous services')
    def check_previous_services(self, scope: Scope, device_id: int,
                                current_fault_ids: Optional[Sequence[int]] = None) -> PreviousServiceReport:
        self._device(scope, device_id)
        previous = self._recent_ticket(scope.company_id, device_id)
        if previous is None:
            return PreviousServiceReport(is_repeated=False)
        days = (self.clock() - previous.created_at) // timedelta(days=1)
        previous_fault_ids = [tf.fault_id for tf in previous.faults]
        matching = [fid for fid in (current_fault_ids or []) if fid in previous_fault_ids]
        fault_names = dict(self.session.execute(
            select(Fault.id, Fault.name).where(Fault.id.in_(previous_fault_ids))
        ).all()) if previous_fault_ids else {}
        return PreviousServiceReport(
            is_repeated=True,
            last_ticket={
                'id': previous.id,
                'ticket_number': previous.ticket_number,
                'created_at': previous.created_at.isoformat(),
                'status': previous.status,
                'damage_condition': previous.damage_condition,
                'completed_at': previous.completed_at.isoformat() if previous.completed_at else None,
                'faults': [{'id': fid, 'name': fault_names.get(fid)} for fid in previous_fault_ids],
            },
            days_since_last_service=days,
            has_fault_match=bool(matching),
            matching_fault_ids=matching,
        )

    @service_operation('check active services')
    def check_active_services(self, scope: Scope, device_id: int) -> Dict[str, Any]:
        self._device(scope, device_id)
        active = self._active_ticket(scope.company_id, device_id)
        if active is None:
            return {'has_active_service': False, 'active_ticket': None}
        return {
            'has_active_service': True,
            'active_ticket': {
                'id': active.id,
                'ticket_number': active.ticket_number,
                'status': active.status,
                'created_at': active.created_at.isoformat(),
                'assigned_to_id': active.assigned_to_id,
            },
        }


__all__ = ['TicketService', 'MAX_CREATE_ATTEMPTS']
