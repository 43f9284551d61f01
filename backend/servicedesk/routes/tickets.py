from __future__ import annotations
from flask import Blueprint, request, current_app, abort
from flask_jwt_extended import jwt_required
from sqlalchemy import select, func

from servicedesk import get_db
from servicedesk.config.pagination import normalize_pagination
from servicedesk.models.service_ticket import ServiceTicket
from servicedesk.services.commands import (
    CreateTicketCommand, UpdateTicketCommand, AddPartCommand, UpdatePartCommand, StatusChangeCommand,
    BulkPaymentCommand, RefundCommand, PaymentInput, ImageInput,
)
from servicedesk.services.policy import scope_from_claims, assert_branch_access
from servicedesk.services.tickets import TicketService
from servicedesk.utils.validation import validate_status, require_int, optional_int, require_text, int_list

tickets_bp = Blueprint('tickets', __name__)


def _service() -> TicketService:
    return TicketService(
        get_db(),
        collaborators=current_app.extensions['servicedesk.collaborators'],
        dispatcher=current_app.extensions['servicedesk.dispatcher'],
        settings=current_app.config,
    )


def _body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, description='JSON object body required')
    return data


def _iso(ts):
    return ts.isoformat() if ts else None


@tickets_bp.get('')
@jwt_required()
def list_tickets():
    session = get_db()
    scope = scope_from_claims()
    q = select(ServiceTicket).where(ServiceTicket.company_id == scope.company_id)
    if scope.branch_ids:
        q = q.where(ServiceTicket.branch_id.in_(scope.branch_ids))
    status = request.args.get('status')
    if status:
        q = q.where(ServiceTicket.status == validate_status(status, ServiceTicket.ALL_STATUSES))
    branch_id = request.args.get('branch_id')
    if branch_id:
        branch_id = require_int(branch_id, 'branch_id')
        assert_branch_access(branch_id)
        q = q.where(ServiceTicket.branch_id == branch_id)
    device_id = request.args.get('customer_device_id')
    if device_id:
        q = q.where(ServiceTicket.customer_device_id == require_int(device_id, 'customer_device_id'))
    limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = session.execute(
        q.order_by(ServiceTicket.created_at.desc(), ServiceTicket.id.desc()).limit(limit).offset(offset)
    ).scalars().all()
    return {'items': [_ticket_json(t) for t in rows], 'total': total, 'limit': limit, 'offset': offset}


@tickets_bp.post('')
@jwt_required()
def create_ticket():
    cmd = CreateTicketCommand.from_payload(_body())
    assert_branch_access(cmd.branch_id)
    ticket = _service().create_ticket(scope_from_claims(), cmd)
    return _ticket_json(ticket, detail=True), 201


@tickets_bp.get('/<int:ticket_id>')
@jwt_required()
def get_ticket(ticket_id: int):
    return _ticket_json(_service().get_ticket(scope_from_claims(), ticket_id), detail=True)


@tickets_bp.patch('/<int:ticket_id>')
@jwt_required()
def update_ticket(ticket_id: int):
    cmd = UpdateTicketCommand.from_payload(ticket_id, _body())
    return _ticket_json(_service().update_ticket(scope_from_claims(), cmd), detail=True)


@tickets_bp.delete('/<int:ticket_id>')
@jwt_required()
def delete_ticket(ticket_id: int):
    _service().delete_ticket(scope_from_claims(), ticket_id)
    return '', 204


@tickets_bp.post('/<int:ticket_id>/status')
@jwt_required()
def update_status(ticket_id: int):
    cmd = StatusChangeCommand.from_payload(ticket_id, _body())
    return _ticket_json(_service().update_status(scope_from_claims(), cmd))


@tickets_bp.post('/<int:ticket_id>/assign')
@jwt_required()
def assign_technician(ticket_id: int):
    data = _body()
    ticket = _service().assign_technician(
        scope_from_claims(), ticket_id,
        require_int(data.get('technician_id'), 'technician_id'), data.get('notes'),
    )
    return _ticket_json(ticket)


@tickets_bp.post('/<int:ticket_id>/device-returned')
@jwt_required()
def mark_device_returned(ticket_id: int):
    return _ticket_json(_service().mark_device_returned(scope_from_claims(), ticket_id))


@tickets_bp.get('/<int:ticket_id>/history')
@jwt_required()
def status_history(ticket_id: int):
    rows = _service().get_status_history(scope_from_claims(), ticket_id)
    return {'items': [
        {'id': h.id, 'status': h.status, 'notes': h.notes, 'changed_by_id': h.changed_by_id, 'created_at': _iso(h.created_at)}
        for h in rows
    ]}


@tickets_bp.get('/<int:ticket_id>/billing')
@jwt_required()
def billing(ticket_id: int):
    return _service().billing_summary(scope_from_claims(), ticket_id)


# ---------- parts ----------

@tickets_bp.post('/<int:ticket_id>/parts')
@jwt_required()
def add_part(ticket_id: int):
    cmd = AddPartCommand.from_payload(ticket_id, _body())
    return _part_json(_service().add_part(scope_from_claims(), cmd)), 201


@tickets_bp.post('/<int:ticket_id>/parts/<int:part_id>/approve')
@jwt_required()
def approve_part(ticket_id: int, part_id: int):
    data = _body()
    part = _service().approve_part(
        scope_from_claims(), ticket_id, part_id,
        require_text(data.get('approval_method'), 'approval_method'), data.get('note'),
    )
    return _part_json(part)


@tickets_bp.post('/<int:ticket_id>/parts/<int:part_id>/approve-warranty')
@jwt_required()
def approve_part_for_warranty(ticket_id: int, part_id: int):
    data = request.get_json(silent=True) or {}
    part = _service().approve_part_for_warranty(scope_from_claims(), ticket_id, part_id, data.get('note'))
    return _part_json(part)


@tickets_bp.patch('/<int:ticket_id>/parts/<int:part_id>')
@jwt_required()
def update_part(ticket_id: int, part_id: int):
    cmd = UpdatePartCommand.from_payload(ticket_id, part_id, _body())
    return _part_json(_service().update_part(scope_from_claims(), cmd))


@tickets_bp.delete('/<int:ticket_id>/parts/<int:part_id>')
@jwt_required()
def remove_part(ticket_id: int, part_id: int):
    _service().remove_part(scope_from_claims(), ticket_id, part_id)
    return '', 204


@tickets_bp.get('/<int:ticket_id>/available-parts')
@jwt_required()
def available_parts(ticket_id: int):
    rows = _service().available_parts(scope_from_claims(), ticket_id)
    return {'items': [
        {'inventory_id': inv.id, 'item_id': inv.item_id, 'item_name': inv.item.item_name if inv.item else None,
         'stock_quantity': inv.stock_quantity}
        for inv in rows
    ]}


# ---------- money ----------

@tickets_bp.post('/<int:ticket_id>/payments')
@jwt_required()
def add_payment(ticket_id: int):
    entry = _service().add_payment_entry(scope_from_claims(), ticket_id, PaymentInput.from_payload(_body()))
    return _payment_json(entry), 201


@tickets_bp.post('/<int:ticket_id>/payments/bulk')
@jwt_required()
def add_payments_bulk(ticket_id: int):
    cmd = BulkPaymentCommand.from_payload(ticket_id, _body())
    entries, ticket = _service().add_payment_entries(scope_from_claims(), cmd)
    return {'payments': [_payment_json(e) for e in entries], 'ticket': _ticket_json(ticket)}, 201


@tickets_bp.post('/<int:ticket_id>/refund')
@jwt_required()
def refund(ticket_id: int):
    cmd = RefundCommand.from_payload(ticket_id, _body())
    return _ticket_json(_service().process_refund(scope_from_claims(), cmd), detail=True)


@tickets_bp.put('/<int:ticket_id>/labour')
@jwt_required()
def update_labour(ticket_id: int):
    data = _body()
    ticket = _service().update_labour_charge(scope_from_claims(), ticket_id, data.get('labour_charge_cents'))
    return _ticket_json(ticket)


@tickets_bp.put('/<int:ticket_id>/discount')
@jwt_required()
def update_discount(ticket_id: int):
    data = _body()
    ticket = _service().update_discount(scope_from_claims(), ticket_id, data.get('discount_cents'))
    return _ticket_json(ticket)


@tickets_bp.put('/<int:ticket_id>/diagnosis')
@jwt_required()
def update_diagnosis(ticket_id: int):
    data = _body()
    ticket = _service().update_diagnosis(
        scope_from_claims(), ticket_id,
        require_text(data.get('diagnosis'), 'diagnosis'),
        optional_int(data.get('estimated_cost_cents'), 'estimated_cost_cents', minimum=0),
    )
    return _ticket_json(ticket)


@tickets_bp.post('/<int:ticket_id>/faults')
@jwt_required()
def add_fault(ticket_id: int):
    data = _body()
    ticket = _service().add_fault(
        scope_from_claims(), ticket_id,
        require_int(data.get('fault_id'), 'fault_id'), optional_int(data.get('price_cents'), 'price_cents'),
    )
    return _ticket_json(ticket, detail=True), 201


# ---------- notes / images ----------

@tickets_bp.get('/<int:ticket_id>/notes')
@jwt_required()
def list_notes(ticket_id: int):
    rows = _service().list_notes(scope_from_claims(), ticket_id)
    return {'items': [_note_json(n) for n in rows]}


@tickets_bp.post('/<int:ticket_id>/notes')
@jwt_required()
def add_note(ticket_id: int):
    note = _service().add_note(scope_from_claims(), ticket_id, _body().get('note'))
    return _note_json(note), 201


@tickets_bp.delete('/notes/<int:note_id>')
@jwt_required()
def delete_note(note_id: int):
    _service().delete_note(scope_from_claims(), note_id)
    return '', 204


@tickets_bp.post('/<int:ticket_id>/images')
@jwt_required()
def attach_images(ticket_id: int):
    images = _body().get('images')
    if not isinstance(images, list) or not all(isinstance(i, dict) for i in images):
        abort(400, description='images must be a list of objects')
    rows = _service().attach_images(
        scope_from_claims(), ticket_id,
        [ImageInput(image_url=i.get('image_url'), caption=i.get('caption')) for i in images],
    )
    return {'items': [
        {'id': r.id, 'image_url': r.image_url, 'caption': r.caption, 'uploaded_at': _iso(r.uploaded_at)} for r in rows
    ]}, 201


# ---------- device lookups ----------

@tickets_bp.get('/devices/<int:device_id>/previous-services')
@jwt_required()
def previous_services(device_id: int):
    raw = request.args.get('fault_ids')
    fault_ids = int_list([p for p in raw.split(',') if p.strip()], 'fault_ids') if raw else None
    return _service().check_previous_services(scope_from_claims(), device_id, fault_ids).to_dict()


@tickets_bp.get('/devices/<int:device_id>/active-services')
@jwt_required()
def active_services(device_id: int):
    return _service().check_active_services(scope_from_claims(), device_id)


def _ticket_json(t: ServiceTicket, detail: bool = False):
    body = {
        'id': t.id,
        'ticket_number': t.ticket_number,
        'branch_id': t.branch_id,
        'customer_id': t.customer_id,
        'customer_device_id': t.customer_device_id,
        'device_model': t.device_model,
        'status': t.status,
        'assigned_to_id': t.assigned_to_id,
        'estimated_cost_cents': t.estimated_cost_cents,
        'actual_cost_cents': t.actual_cost_cents,
        'labour_charge_cents': t.labour_charge_cents,
        'discount_cents': t.discount_cents,
        'advance_payment_cents': t.advance_payment_cents,
        'is_warranty_repair': t.is_warranty_repair,
        'is_repeated_service': t.is_repeated_service,
        'previous_ticket_id': t.previous_ticket_id,
        'created_at': _iso(t.created_at),
        'completed_at': _iso(t.completed_at),
        'delivered_at': _iso(t.delivered_at),
        'device_returned_at': _iso(t.device_returned_at),
        'refunded_at': _iso(t.refunded_at),
    }
    if detail:
        body.update({
            'damage_condition': t.damage_condition,
            'diagnosis': t.diagnosis,
            'device_condition': t.device_condition,
            'intake_notes': t.intake_notes,
            'not_serviceable_reason': t.not_serviceable_reason,
            'warranty_reason': t.warranty_reason,
            'refund_amount_cents': t.refund_amount_cents,
            'refund_reason': t.refund_reason,
            'total_paid_cents': t.total_paid_cents,
            'faults': [{'fault_id': f.fault_id, 'price_cents': f.price_cents} for f in t.faults],
            'accessory_ids': [a.accessory_id for a in t.accessories],
            'damage_condition_ids': [d.damage_condition_id for d in t.damage_conditions],
            'parts': [_part_json(p) for p in t.parts],
            'payments': [_payment_json(p) for p in t.payments],
        })
    return body


def _part_json(p):
    return {
        'id': p.id,
        'ticket_id': p.ticket_id,
        'inventory_id': p.branch_inventory_id,
        'legacy_part_id': p.legacy_part_id,
        'item_name': p.item_name,
        'quantity': p.quantity,
        'unit_price_cents': p.unit_price_cents,
        'total_price_cents': p.total_price_cents,
        'is_extra_spare': p.is_extra_spare,
        'is_approved': p.is_approved,
        'approval_method': p.approval_method,
        'approved_at': _iso(p.approved_at),
        'fault_tag': p.fault_tag,
    }


def _payment_json(e):
    return {
        'id': e.id,
        'payment_method_id': e.payment_method_id,
        'amount_cents': e.amount_cents,
        'notes': e.notes,
        'transaction_id': e.transaction_id,
        'payment_date': _iso(e.payment_date),
        'received_by_id': e.received_by_id,
    }


def _note_json(n):
    return {'id': n.id, 'note': n.note, 'created_by_id': n.created_by_id, 'created_at': _iso(n.created_at)}
