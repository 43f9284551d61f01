import pytest

from servicedesk.errors import ValidationError, NotFound
from servicedesk.services.commands import (
    Scope, CreateTicketCommand, AddPartCommand, UpdatePartCommand, BulkPaymentCommand, StatusChangeCommand,
)


def test_create_from_payload_coerces_lists():
    cmd = CreateTicketCommand.from_payload({
        'branch_id': 1, 'customer_id': 2, 'customer_device_id': 3, 'fault_ids': [4, 5],
        'payment_entries': [{'amount_cents': 100, 'payment_method_id': 9, 'notes': 'deposit'}],
    })
    assert cmd.fault_ids == (4, 5)
    assert cmd.payment_entries[0].notes == 'deposit'
    assert cmd.send_sms_notification is True


@pytest.mark.parametrize('payload', [
    [],
    {'branch_id': 1, 'customer_id': 2, 'customer_device_id': 3, 'fault_ids': 'all'},
    {'branch_id': 1, 'customer_id': 2, 'customer_device_id': 3, 'fault_ids': [1], 'send_sms_notification': 'no'},
    {'branch_id': 1, 'customer_id': 2, 'customer_device_id': 3, 'fault_ids': [1], 'payment_entries': {}},
    {'customer_id': 2, 'customer_device_id': 3, 'fault_ids': [1]},
])
def test_create_from_payload_rejects_bad_shapes(payload):
    with pytest.raises(ValidationError):
        CreateTicketCommand.from_payload(payload)


def test_part_commands_validate_quantities():
    with pytest.raises(ValidationError):
        AddPartCommand(1, 2, 0, 100)
    with pytest.raises(ValidationError):
        AddPartCommand(1, 2, 1, -5)
    with pytest.raises(ValidationError):
        UpdatePartCommand(1, 2)
    assert UpdatePartCommand.from_payload(1, 2, {'unit_price_cents': 0}).unit_price_cents == 0
    assert AddPartCommand.from_payload(1, {'inventory_id': 2, 'quantity': 1, 'unit_price_cents': 5, 'fault_tag': ''}).fault_tag is None


def test_bulk_and_status_payloads():
    cmd = BulkPaymentCommand.from_payload(7, {'payments': [{'amount_cents': 0, 'payment_method_id': 1}]})
    assert cmd.mark_as_delivered is False
    with pytest.raises(ValidationError):
        BulkPaymentCommand.from_payload(7, {'payments': 'cash'})
    with pytest.raises(ValidationError):
        StatusChangeCommand.from_payload(7, {'status': ''})


def test_scope_branch_check():
    open_scope = Scope(company_id=1, actor_id=1)
    assert open_scope.allows(99)
    limited = Scope(company_id=1, actor_id=1, branch_ids=(2,))
    assert limited.allows(2) and not limited.allows(3)
    with pytest.raises(NotFound):
        limited.check_branch(3)
