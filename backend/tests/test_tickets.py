import re

import pytest
from sqlalchemy import select

from servicedesk.errors import NotFound, ValidationError, InvalidStateTransition, InternalError
from servicedesk.models.part_usage import PartUsage
from servicedesk.models.service_ticket import ServiceTicket, PaymentEntry
from servicedesk.models.audit import AuditLog
from servicedesk.services.commands import (
    Scope, AddPartCommand, StatusChangeCommand, BulkPaymentCommand, RefundCommand, PaymentInput,
    UpdateTicketCommand, ImageInput,
)
from servicedesk.services.dispatch import PostCommitDispatcher, MODE_INLINE
from servicedesk.services.tickets import TicketService
from tests.test_utils_seed import seed_shop, create_command, stock_of, movements_for, audit_actions
from tests.test_lifecycle_helpers import Recorder, recording_collaborators, FixedNumberGenerator

T = ServiceTicket


@pytest.fixture()
def shop(session):
    return seed_shop(session)


@pytest.fixture()
def recorder():
    return Recorder()


def _service(session, clock, recorder, numbers=None):
    return TicketService(session, collaborators=recording_collaborators(recorder, numbers),
                         dispatcher=PostCommitDispatcher(MODE_INLINE), clock=clock)


@pytest.fixture()
def service(session, clock, recorder):
    return _service(session, clock, recorder)


def _advance(service, shop, ticket, *statuses):
    for status in statuses:
        service.update_status(shop.scope, StatusChangeCommand(ticket.id, status))


# ---------- create ----------

def test_create_ticket(session, service, shop, recorder, clock):
    cmd = create_command(
        shop,
        fault_ids=(shop.screen_fault.id, shop.battery_fault.id),
        accessory_ids=(shop.accessory.id,),
        damage_condition_ids=(shop.damage.id,),
        device_password='1234',
        payment_entries=(PaymentInput(2000, shop.cash.id, notes='deposit'),),
    )
    ticket = service.create_ticket(shop.scope, cmd)
    assert re.fullmatch(rf'SRV-MN{shop.company.id}-\d{{4}}-000001', ticket.ticket_number)
    assert ticket.status == T.STATUS_PENDING
    assert ticket.device_model == 'Acme Phone X'
    assert ticket.created_at == clock.now
    assert ticket.created_by_id == shop.admin.id
    assert ticket.is_repeated_service is False
    assert ticket.actual_cost_cents == 0
    assert ticket.advance_payment_cents == 0
    assert ticket.total_paid_cents == 2000
    assert sorted(f.price_cents for f in ticket.faults) == [2500, 5000]
    assert [a.accessory_id for a in ticket.accessories] == [shop.accessory.id]
    assert [(h.status, h.notes) for h in ticket.history] == [(T.STATUS_PENDING, 'Ticket created')]
    assert audit_actions(session, 'TICKET.CREATE') == 1
    assert recorder.calls == [('job_sheet', ticket.id, shop.admin.id)]

    second = service.create_ticket(shop.scope, create_command(shop))
    assert second.ticket_number.endswith('-000002')


@pytest.mark.parametrize('overrides,error', [
    ({'customer_id': 999}, NotFound),
    ({'customer_device_id': 999}, NotFound),
    ({'fault_ids': (999,)}, NotFound),
    ({'accessory_ids': (999,)}, NotFound),
    ({'damage_condition_ids': (999,)}, NotFound),
    ({'payment_entries': (PaymentInput(100, 999),)}, NotFound),
])
def test_create_validates_references(session, service, shop, overrides, error):
    with pytest.raises(error):
        service.create_ticket(shop.scope, create_command(shop, **overrides))
    assert session.query(ServiceTicket).count() == 0


def test_create_command_validation(shop):
    with pytest.raises(ValidationError):
        create_command(shop, fault_ids=())
    with pytest.raises(ValidationError):
        create_command(shop, fault_ids=(shop.screen_fault.id, shop.screen_fault.id))
    with pytest.raises(ValidationError):
        create_command(shop, estimated_cost_cents=-1)
    with pytest.raises(ValidationError):
        create_command(shop, is_warranty_repair=True)
    with pytest.raises(ValidationError):
        create_command(shop, payment_entries=(PaymentInput(0, shop.cash.id),))


def test_inactive_fault_rejected(session, service, shop):
    shop.battery_fault.is_active = False
    session.commit()
    with pytest.raises(NotFound):
        service.create_ticket(shop.scope, create_command(shop, fault_ids=(shop.battery_fault.id,)))


def test_branch_scope_hides_other_branches(service, shop):
    scoped = Scope(company_id=shop.company.id, actor_id=shop.admin.id, branch_ids=(shop.other_branch.id,))
    with pytest.raises(NotFound):
        service.create_ticket(scoped, create_command(shop))
    ticket = service.create_ticket(shop.scope, create_command(shop))
    with pytest.raises(NotFound):
        service.get_ticket(scoped, ticket.id)
    foreign = Scope(company_id=shop.company.id + 100, actor_id=shop.admin.id)
    with pytest.raises(NotFound):
        service.get_ticket(foreign, ticket.id)


# ---------- repeat / active detection ----------

def test_repeat_service_within_window(service, shop, clock):
    first = service.create_ticket(shop.scope, create_command(shop))
    clock.advance(days=5)
    report = service.check_previous_services(shop.scope, shop.device.id, [shop.screen_fault.id, shop.battery_fault.id])
    assert report.is_repeated is True
    assert report.days_since_last_service == 5
    assert report.has_fault_match is True
    assert report.matching_fault_ids == [shop.screen_fault.id]
    assert report.last_ticket['ticket_number'] == first.ticket_number
    assert report.last_ticket['faults'] == [{'id': shop.screen_fault.id, 'name': 'Broken screen'}]

    second = service.create_ticket(shop.scope, create_command(shop))
    assert second.is_repeated_service is True
    assert second.previous_ticket_id == first.id


def test_repeat_window_excludes_old_and_cancelled(service, shop, clock):
    old = service.create_ticket(shop.scope, create_command(shop))
    clock.advance(days=31)
    assert service.check_previous_services(shop.scope, shop.device.id).is_repeated is False
    cancelled = service.create_ticket(shop.scope, create_command(shop))
    _advance(service, shop, cancelled, T.STATUS_CANCELLED)
    clock.advance(days=1)
    report = service.check_previous_services(shop.scope, shop.device.id)
    assert report.to_dict() == {
        'is_repeated': False, 'last_ticket': None, 'days_since_last_service': None,
        'has_fault_match': False, 'matching_fault_ids': [],
    }
    assert old.id != cancelled.id


def test_active_service_check(session, service, shop):
    assert service.check_active_services(shop.scope, shop.device.id) == {'has_active_service': False, 'active_ticket': None}
    ticket = service.create_ticket(shop.scope, create_command(shop))
    active = service.check_active_services(shop.scope, shop.device.id)
    assert active['has_active_service'] is True
    assert active['active_ticket']['id'] == ticket.id

    # a second intake for the same device is still allowed, only flagged
    again = service.create_ticket(shop.scope, create_command(shop))
    meta = session.execute(
        select(AuditLog.meta).where(AuditLog.action == 'TICKET.CREATE', AuditLog.entity_id == str(again.id))
    ).scalar_one()
    assert meta['active_ticket_id'] == ticket.id

    _advance(service, shop, ticket, T.STATUS_CANCELLED)
    _advance(service, shop, again, T.STATUS_IN_PROGRESS, T.STATUS_DELIVERED)
    assert service.check_active_services(shop.scope, shop.device.id)['has_active_service'] is False
    with pytest.raises(NotFound):
        service.check_active_services(shop.scope, 999)


# ---------- ticket numbers ----------

def test_taken_number_gets_suffix(session, clock, recorder, shop):
    service = _service(session, clock, recorder, FixedNumberGenerator('SRV-FIXED'))
    first = service.create_ticket(shop.scope, create_command(shop))
    second = service.create_ticket(shop.scope, create_command(shop))
    assert first.ticket_number == 'SRV-FIXED'
    assert re.fullmatch(r'SRV-FIXED-\d{2}', second.ticket_number)


def test_collision_at_insert_is_retried(session, clock, recorder, shop):
    service = _service(session, clock, recorder, FixedNumberGenerator('SRV-FIXED'))
    service.create_ticket(shop.scope, create_command(shop))
    racing = _service(session, clock, recorder, FixedNumberGenerator('SRV-FIXED'))
    racing._number_taken = lambda number: False  # the pre-check lost the race
    ticket = racing.create_ticket(shop.scope, create_command(shop))
    assert re.fullmatch(r'SRV-FIXED-\d{2}', ticket.ticket_number)
    assert session.query(ServiceTicket).count() == 2


def test_collision_retries_are_bounded(session, clock, recorder, shop, monkeypatch):
    import servicedesk.services.tickets as tickets_mod
    monkeypatch.setattr(tickets_mod.random, 'randrange', lambda n: 7)
    service = _service(session, clock, recorder, FixedNumberGenerator('SRV-FIXED'))
    service.create_ticket(shop.scope, create_command(shop))
    assert service.create_ticket(shop.scope, create_command(shop)).ticket_number == 'SRV-FIXED-07'
    racing = _service(session, clock, recorder, FixedNumberGenerator('SRV-FIXED'))
    racing._number_taken = lambda number: False
    with pytest.raises(InternalError) as exc:
        racing.create_ticket(shop.scope, create_command(shop))
    assert str(exc.value) == 'Failed to create ticket'
    assert session.query(ServiceTicket).count() == 2


# ---------- update / delete ----------

def test_update_ticket_intake_fields(session, service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    service.update_ticket(shop.scope, UpdateTicketCommand(
        ticket.id, device_password='9999', intake_notes='left charger', advance_payment_cents=1500,
        accessory_ids=(shop.accessory.id,),
    ))
    assert ticket.device_password == '9999'
    assert ticket.advance_payment_cents == 1500
    assert ticket.total_paid_cents == 1500
    assert len(ticket.accessories) == 1
    with pytest.raises(ValidationError):
        UpdateTicketCommand.from_payload(ticket.id, {'status': 'DELIVERED'})
    with pytest.raises(ValidationError):
        UpdateTicketCommand.from_payload(ticket.id, {'actual_cost_cents': 1})


def test_edits_refused_after_delivery(service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    _advance(service, shop, ticket, T.STATUS_IN_PROGRESS, T.STATUS_DELIVERED)
    with pytest.raises(InvalidStateTransition):
        service.update_ticket(shop.scope, UpdateTicketCommand(ticket.id, intake_notes='late'))
    with pytest.raises(InvalidStateTransition):
        service.update_labour_charge(shop.scope, ticket.id, 100)
    with pytest.raises(InvalidStateTransition):
        service.update_diagnosis(shop.scope, ticket.id, 'changed')
    with pytest.raises(InvalidStateTransition):
        service.add_fault(shop.scope, ticket.id, shop.battery_fault.id)
    # notes stay open
    assert service.add_note(shop.scope, ticket.id, 'customer happy').note == 'customer happy'


@pytest.mark.parametrize('status, reason', [
    (T.STATUS_CANCELLED, None),
    (T.STATUS_NOT_SERVICEABLE, 'Board is dead'),
])
def test_cost_edits_refused_on_closed_tickets(service, shop, status, reason):
    ticket = service.create_ticket(shop.scope, create_command(shop, estimated_cost_cents=8000))
    service.update_status(shop.scope, StatusChangeCommand(ticket.id, status, not_serviceable_reason=reason))
    before = (ticket.labour_charge_cents, ticket.discount_cents, ticket.estimated_cost_cents, ticket.actual_cost_cents)
    with pytest.raises(InvalidStateTransition):
        service.update_labour_charge(shop.scope, ticket.id, 3000)
    with pytest.raises(InvalidStateTransition):
        service.update_discount(shop.scope, ticket.id, 500)
    with pytest.raises(InvalidStateTransition):
        service.update_diagnosis(shop.scope, ticket.id, 'Digitizer', 9500)
    with pytest.raises(InvalidStateTransition):
        service.add_fault(shop.scope, ticket.id, shop.battery_fault.id)
    ticket = service.get_ticket(shop.scope, ticket.id)
    assert (ticket.labour_charge_cents, ticket.discount_cents,
            ticket.estimated_cost_cents, ticket.actual_cost_cents) == before
    assert len(ticket.faults) == 1
    assert ticket.status == status


def test_delete_restores_only_approved_stock(session, service, shop, recorder):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    service.add_part(shop.scope, AddPartCommand(ticket.id, shop.screen.id, 2, 5000))
    service.add_part(shop.scope, AddPartCommand(ticket.id, shop.battery.id, 1, 3000, is_extra_spare=True))
    service.attach_images(shop.scope, ticket.id, [ImageInput('s3://bucket/a.jpg'), ImageInput('s3://bucket/b.jpg', 'back')])
    later = service.create_ticket(shop.scope, create_command(shop))
    assert later.previous_ticket_id == ticket.id
    assert stock_of(session, shop.screen) == 8

    service.delete_ticket(shop.scope, ticket.id)
    assert stock_of(session, shop.screen) == 10
    assert stock_of(session, shop.battery) == 5
    assert movements_for(session, shop.screen)[-1].reference_type == 'SERVICE_DELETED'
    assert movements_for(session, shop.battery) == []
    assert session.get(ServiceTicket, ticket.id) is None
    assert session.query(PartUsage).count() == 0
    assert service.get_ticket(shop.scope, later.id).previous_ticket_id is None
    assert [c for c in recorder.calls if c[0] == 'file_delete'] == [
        ('file_delete', 's3://bucket/a.jpg'), ('file_delete', 's3://bucket/b.jpg'),
    ]
    assert audit_actions(session, 'TICKET.DELETE') == 1


def test_completed_and_delivered_tickets_cannot_be_deleted(service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    _advance(service, shop, ticket, T.STATUS_IN_PROGRESS, T.STATUS_COMPLETED)
    with pytest.raises(InvalidStateTransition):
        service.delete_ticket(shop.scope, ticket.id)
    _advance(service, shop, ticket, T.STATUS_DELIVERED)
    with pytest.raises(InvalidStateTransition):
        service.delete_ticket(shop.scope, ticket.id)


# ---------- assignment / device return ----------

def test_assign_and_reassign_technician(service, shop, recorder):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    service.assign_technician(shop.scope, ticket.id, shop.technician.id)
    assert ticket.status == T.STATUS_IN_PROGRESS
    assert ticket.history[-1].notes == 'Assigned to Bob'
    service.assign_technician(shop.scope, ticket.id, shop.technician2.id)
    assert ticket.status == T.STATUS_IN_PROGRESS
    assert ticket.history[-1].notes == 'Reassigned from Bob to Carol'
    assert ticket.assigned_to_id == shop.technician2.id
    assert [c[1] for c in recorder.calls if c[0] == 'notify'] == [shop.technician.id, shop.technician2.id]
    with pytest.raises(NotFound):
        service.assign_technician(shop.scope, ticket.id, shop.admin.id)


def test_assignment_notification_respects_flags(service, shop, recorder):
    ticket = service.create_ticket(shop.scope, create_command(
        shop, send_sms_notification=False, send_whatsapp_notification=False))
    service.assign_technician(shop.scope, ticket.id, shop.technician.id)
    assert 'notify' not in recorder.names()


def test_device_return(service, shop, clock):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    with pytest.raises(InvalidStateTransition):
        service.mark_device_returned(shop.scope, ticket.id)
    service.update_status(shop.scope, StatusChangeCommand(ticket.id, T.STATUS_NOT_SERVICEABLE,
                                                          not_serviceable_reason='No parts available'))
    returned = service.mark_device_returned(shop.scope, ticket.id)
    assert returned.device_returned_at == clock.now
    assert returned.device_returned_by_id == shop.admin.id
    with pytest.raises(InvalidStateTransition):
        service.mark_device_returned(shop.scope, ticket.id)


# ---------- money ----------

def test_single_payment_entry(session, service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    entry = service.add_payment_entry(shop.scope, ticket.id, PaymentInput(4500, shop.cash.id, transaction_id='TX1'))
    assert entry.received_by_id == shop.admin.id
    assert ticket.total_paid_cents == 4500
    assert ticket.advance_payment_cents == 0
    with pytest.raises(ValidationError):
        service.add_payment_entry(shop.scope, ticket.id, PaymentInput(0, shop.cash.id))
    with pytest.raises(NotFound):
        service.add_payment_entry(shop.scope, ticket.id, PaymentInput(100, 999))


def test_bulk_payments_and_delivery(session, service, shop, recorder):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    _advance(service, shop, ticket, T.STATUS_IN_PROGRESS, T.STATUS_COMPLETED)
    entries, ticket = service.add_payment_entries(shop.scope, BulkPaymentCommand(
        ticket.id,
        (PaymentInput(3000, shop.cash.id), PaymentInput(0, shop.cash.id), PaymentInput(1000, shop.cash.id)),
        notes='final settlement',
        mark_as_delivered=True,
    ))
    assert [e.amount_cents for e in entries] == [3000, 1000]
    assert all(e.notes == 'final settlement' for e in entries)
    assert ticket.status == T.STATUS_DELIVERED
    assert ticket.history[-1].notes == 'Marked as delivered during payment collection'
    assert 'warranty' in recorder.names()


def test_bulk_payment_delivery_respects_state_machine(session, service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    with pytest.raises(InvalidStateTransition):
        service.add_payment_entries(shop.scope, BulkPaymentCommand(
            ticket.id, (PaymentInput(3000, shop.cash.id),), mark_as_delivered=True))
    assert session.query(PaymentEntry).count() == 0
    with pytest.raises(ValidationError):
        service.add_payment_entries(shop.scope, BulkPaymentCommand(ticket.id, (PaymentInput(0, shop.cash.id),)))


def test_refund(session, service, shop):
    ticket = service.create_ticket(shop.scope, create_command(
        shop, payment_entries=(PaymentInput(2000, shop.cash.id),)))
    service.update_ticket(shop.scope, UpdateTicketCommand(ticket.id, advance_payment_cents=500))
    _advance(service, shop, ticket, T.STATUS_IN_PROGRESS, T.STATUS_DELIVERED)
    refunded = service.process_refund(shop.scope, RefundCommand(ticket.id, 'Screen failed again', shop.cash.id))
    assert refunded.status == T.STATUS_CANCELLED
    assert refunded.refund_amount_cents == 2500
    assert refunded.refunded_by_id == shop.admin.id
    assert refunded.history[-1].notes == 'Ticket refunded. Amount: 25.00. Reason: Screen failed again'
    assert audit_actions(session, 'TICKET.REFUND') == 1
    with pytest.raises(InvalidStateTransition):
        service.process_refund(shop.scope, RefundCommand(ticket.id, 'again', shop.cash.id))


def test_refund_requires_payments(service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    with pytest.raises(ValidationError):
        service.process_refund(shop.scope, RefundCommand(ticket.id, 'nothing paid', shop.cash.id))
    with pytest.raises(ValidationError):
        RefundCommand(ticket.id, '  ', shop.cash.id)


def test_labour_discount_and_billing(service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop, payment_entries=(PaymentInput(1000, shop.cash.id),)))
    service.add_part(shop.scope, AddPartCommand(ticket.id, shop.screen.id, 1, 5000))
    service.update_labour_charge(shop.scope, ticket.id, 2000)
    service.update_discount(shop.scope, ticket.id, 500)
    assert ticket.actual_cost_cents == 7000
    summary = service.billing_summary(shop.scope, ticket.id)
    assert summary['net_payable_cents'] == 6500
    assert summary['balance_cents'] == 5500
    with pytest.raises(ValidationError):
        service.update_labour_charge(shop.scope, ticket.id, -1)
    with pytest.raises(ValidationError):
        service.update_discount(shop.scope, ticket.id, 'lots')


def test_diagnosis_and_faults(service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop, estimated_cost_cents=8000))
    service.update_diagnosis(shop.scope, ticket.id, 'Digitizer and LCD', 9500)
    assert ticket.diagnosis == 'Digitizer and LCD'
    assert ticket.estimated_cost_cents == 9500
    assert ticket.history[-1].notes == 'Estimate changed from 80.00 to 95.00'

    service.add_fault(shop.scope, ticket.id, shop.battery_fault.id)
    assert ticket.estimated_cost_cents == 12000
    assert len(ticket.faults) == 2
    with pytest.raises(ValidationError):
        service.add_fault(shop.scope, ticket.id, shop.battery_fault.id)
    with pytest.raises(NotFound):
        service.add_fault(shop.scope, ticket.id, 999)


# ---------- notes / history ----------

def test_notes(service, shop, clock):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    first = service.add_note(shop.scope, ticket.id, 'called customer')
    clock.advance(minutes=5)
    second = service.add_note(shop.scope, ticket.id, 'customer approved')
    assert [n.id for n in service.list_notes(shop.scope, ticket.id)] == [second.id, first.id]
    service.delete_note(shop.scope, first.id)
    assert [n.id for n in service.list_notes(shop.scope, ticket.id)] == [second.id]
    with pytest.raises(ValidationError):
        service.add_note(shop.scope, ticket.id, '   ')
    with pytest.raises(NotFound):
        service.delete_note(shop.scope, first.id)


def test_status_history_in_order(service, shop):
    ticket = service.create_ticket(shop.scope, create_command(shop))
    _advance(service, shop, ticket, T.STATUS_IN_PROGRESS, T.STATUS_WAITING_PARTS, T.STATUS_IN_PROGRESS)
    history = service.get_status_history(shop.scope, ticket.id)
    assert [h.status for h in history] == [
        T.STATUS_PENDING, T.STATUS_IN_PROGRESS, T.STATUS_WAITING_PARTS, T.STATUS_IN_PROGRESS,
    ]


# ---------- side effects ----------

def test_effect_failure_does_not_undo_commit(session, clock, shop, caplog):
    recorder = Recorder(fail_on=('job_sheet',))
    service = _service(session, clock, recorder)
    ticket = service.create_ticket(shop.scope, create_command(shop))
    assert session.get(ServiceTicket, ticket.id) is not None
    assert recorder.names() == ['job_sheet']
    assert any('post-commit effect failed' in r.getMessage() for r in caplog.records)


def test_effects_not_dispatched_on_failure(session, clock, shop):
    recorder = Recorder()
    service = _service(session, clock, recorder)
    with pytest.raises(NotFound):
        service.create_ticket(shop.scope, create_command(shop, customer_id=999))
    assert recorder.calls == []


def test_unexpected_errors_become_internal_errors(session, service, shop, monkeypatch):
    ticket = service.create_ticket(shop.scope, create_command(shop))

    def boom(*args, **kwargs):
        raise RuntimeError('disk on fire')

    monkeypatch.setattr('servicedesk.services.parts_ledger.add_audit', boom)
    with pytest.raises(InternalError) as exc:
        service.add_part(shop.scope, AddPartCommand(ticket.id, shop.screen.id, 1, 5000))
    assert str(exc.value) == 'Failed to add part'
    assert stock_of(session, shop.screen) == 10
    assert session.query(PartUsage).count() == 0
