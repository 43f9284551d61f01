from __future__ import annotations
"""Parts attached to a ticket and the rules for when they touch stock.

- tagged parts (``is_extra_spare=False``) are approved on insert and deduct stock at once
- extra spares wait for approval; only approval deducts stock
- approval never reverts; removing an approved part returns its stock

All functions run inside the caller's transaction and leave ``actual_cost_cents``
recomputed. Stock changes go through ``stock_ledger.adjust`` for inventory-backed
parts; legacy catalog parts move their own ``quantity`` counter.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from servicedesk.errors import NotFound, ValidationError, InsufficientStock, InvalidStateTransition
from servicedesk.models.inventory import BranchInventory, StockMovement, Item
from servicedesk.models.part_usage import PartUsage, InventorySource, LegacyPartSource
from servicedesk.models.service_ticket import ServiceTicket
from servicedesk.services import costing, stock_ledger
from servicedesk.services.audit import add_audit
from servicedesk.utils.validation import validate_status

logger = logging.getLogger(__name__)

REF_PART_ADDED = 'SERVICE_PART_ADDED'
REF_PART_APPROVED = 'SERVICE_PART_APPROVED'

# remove stays possible on these so stock can still be handed back
FROZEN_STATUSES = (ServiceTicket.STATUS_CANCELLED, ServiceTicket.STATUS_NOT_SERVICEABLE)


def assert_parts_editable(ticket: ServiceTicket, operation: str, *, removing: bool = False):
    if ticket.status == ServiceTicket.STATUS_DELIVERED:
        raise InvalidStateTransition(f'Parts cannot be {operation} on a delivered ticket')
    if not removing and ticket.status in FROZEN_STATUSES:
        raise InvalidStateTransition(f'Parts cannot be {operation} on a {ticket.status.lower()} ticket')


def _branch_inventory(session: Session, ticket: ServiceTicket, inventory_id: int) -> BranchInventory:
    inv = session.execute(
        select(BranchInventory).where(
            BranchInventory.id == inventory_id,
            BranchInventory.branch_id == ticket.branch_id,
            BranchInventory.company_id == ticket.company_id,
            BranchInventory.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if inv is None:
        raise NotFound('Part not found in branch inventory')
    return inv


def _require_available(session: Session, inventory: BranchInventory, required: int):
    current = stock_ledger.available(session, inventory)
    if current < required:
        raise InsufficientStock(current, required, inventory_id=inventory.id)


def _find_mergeable(ticket: ServiceTicket, inventory_id: int, is_extra_spare: bool, fault_tag: Optional[str]) -> Optional[PartUsage]:
    for p in ticket.parts:
        if (not p.is_approved and p.branch_inventory_id == inventory_id
                and bool(p.is_extra_spare) == is_extra_spare and p.fault_tag == fault_tag):
            return p
    return None


def _stamp_approval(part: PartUsage, method: str, note: Optional[str], actor_id: int, now: datetime):
    part.is_approved = True
    part.approval_method = method
    part.approval_note = note
    part.approved_at = now
    part.approved_by_id = actor_id


def _claim_approval(session: Session, part: PartUsage, method: str, note: Optional[str], actor_id: int, now: datetime):
    """Flip the approval flag with a conditional write; only one transaction can win it."""
    values = dict(is_approved=True, approval_method=method, approval_note=note, approved_at=now, approved_by_id=actor_id)
    result = session.execute(
        update(PartUsage)
        .where(PartUsage.id == part.id, PartUsage.is_approved.is_(False))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning('part approval lost to a concurrent approval', extra={'part_id': part.id})
        raise InvalidStateTransition('Part is already approved')
    for key, value in values.items():
        set_committed_value(part, key, value)


def _deduct(session: Session, part: PartUsage, actor_id: int, reference_type: str, notes: str):
    source = part.source
    if not isinstance(source, InventorySource):
        raise ValidationError('Cannot approve legacy part without inventory reference')
    inv = session.get(BranchInventory, source.inventory_id)
    if inv is None:
        raise NotFound('Branch inventory not found')
    # stock may have been consumed by other tickets since the part was added
    _require_available(session, inv, part.quantity)
    stock_ledger.adjust(
        session, inv.id, -part.quantity, StockMovement.TYPE_SERVICE_USE, actor_id,
        reference_type=reference_type, reference_id=part.id, notes=notes,
    )


def restore_stock(session: Session, part: PartUsage, actor_id: int, reference_type: str, notes: str, delta: Optional[int] = None):
    """Hand ``delta`` (default: the part's full quantity) back to wherever the part came from."""
    qty = part.quantity if delta is None else delta
    source = part.source
    if isinstance(source, InventorySource):
        stock_ledger.adjust(
            session, source.inventory_id, qty, StockMovement.TYPE_RETURN, actor_id,
            reference_type=reference_type, reference_id=part.id, notes=notes,
        )
    elif isinstance(source, LegacyPartSource):
        if part.legacy_part is not None:
            part.legacy_part.quantity = part.legacy_part.quantity + qty
        else:
            logger.warning('legacy part missing, stock not restored', extra={'part_id': part.id})
    else:  # pragma: no cover
        raise TypeError(f'unknown part source {source!r}')


def _consume_legacy(part: PartUsage, qty: int):
    legacy = part.legacy_part
    if legacy is None:
        raise NotFound('Legacy part not found')
    if legacy.quantity < qty:
        raise InsufficientStock(legacy.quantity, qty)
    legacy.quantity = legacy.quantity - qty


def add_part(
    session: Session,
    ticket: ServiceTicket,
    *,
    inventory_id: int,
    quantity: int,
    unit_price_cents: int,
    is_extra_spare: bool,
    fault_tag: Optional[str],
    actor_id: int,
    now: datetime,
) -> PartUsage:
    assert_parts_editable(ticket, 'added')
    if quantity <= 0:
        raise ValidationError('quantity must be > 0')
    if unit_price_cents < 0:
        raise ValidationError('unit_price_cents must not be negative')
    inv = _branch_inventory(session, ticket, inventory_id)
    # Advisory only: nothing is reserved for unapproved spares.
    _require_available(session, inv, quantity)

    # Tagged rows are approved on insert, so only spares can be waiting to merge.
    existing = _find_mergeable(ticket, inv.id, is_extra_spare, fault_tag) if is_extra_spare else None
    if existing is not None:
        existing.quantity = existing.quantity + quantity
        existing.unit_price_cents = unit_price_cents
        existing.reprice()
        part = existing
        action = 'PART.QUANTITY_INCREASED'
    else:
        part = PartUsage(
            branch_inventory_id=inv.id,
            item_id=inv.item_id,
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            is_extra_spare=is_extra_spare,
            is_approved=False,
            fault_tag=fault_tag,
            created_at=now,
        )
        part.reprice()
        ticket.parts.append(part)
        session.flush()
        action = 'PART.ADD'
        if not is_extra_spare:
            method = PartUsage.APPROVAL_WARRANTY if ticket.is_warranty_repair else PartUsage.APPROVAL_AUTO_TAGGED
            _deduct(session, part, actor_id, REF_PART_ADDED,
                    f'Tagged part added to ticket {ticket.ticket_number}')
            _stamp_approval(part, method, None, actor_id, now)

    costing.recalculate(ticket)
    add_audit(session, actor_id, action, 'ServiceTicket', ticket.id, {
        'part_id': part.id,
        'inventory_id': inv.id,
        'item_name': inv.item.item_name if inv.item else None,
        'quantity': quantity,
        'unit_price_cents': unit_price_cents,
        'total_price_cents': part.total_price_cents,
        'is_extra_spare': is_extra_spare,
        'approved': part.is_approved,
        'merged': existing is not None,
    }, company_id=ticket.company_id)
    logger.info('part added', extra={'ticket_id': ticket.id, 'part_id': part.id, 'approved': part.is_approved})
    return part


def approve_part(
    session: Session,
    ticket: ServiceTicket,
    part: PartUsage,
    *,
    approval_method: str,
    note: Optional[str],
    actor_id: int,
    now: datetime,
) -> PartUsage:
    assert_parts_editable(ticket, 'approved')
    if part.is_approved:
        raise InvalidStateTransition('Part is already approved')
    validate_status(approval_method, PartUsage.MANUAL_APPROVAL_METHODS, 'approval_method')
    _claim_approval(session, part, approval_method, note, actor_id, now)
    _deduct(session, part, actor_id, REF_PART_APPROVED,
            f'Approved for ticket {ticket.ticket_number} via {approval_method}')
    costing.recalculate(ticket)
    add_audit(session, actor_id, 'PART.APPROVE', 'ServiceTicket', ticket.id, {
        'part_id': part.id, 'approval_method': approval_method, 'quantity': part.quantity,
        'total_price_cents': part.total_price_cents, 'note': note,
    }, company_id=ticket.company_id)
    return part


def approve_part_for_warranty(
    session: Session,
    ticket: ServiceTicket,
    part: PartUsage,
    *,
    note: Optional[str],
    actor_id: int,
    now: datetime,
) -> PartUsage:
    assert_parts_editable(ticket, 'approved')
    if part.is_approved:
        raise InvalidStateTransition('Part is already approved')
    if not ticket.is_warranty_repair:
        raise InvalidStateTransition('Ticket is not a warranty repair; use regular approval instead')
    _claim_approval(session, part, PartUsage.APPROVAL_WARRANTY, note, actor_id, now)
    _deduct(session, part, actor_id, stock_ledger.REF_PART_WARRANTY_APPROVED,
            f'Warranty approval for ticket {ticket.ticket_number} - no customer charge')
    costing.recalculate(ticket)
    add_audit(session, actor_id, 'PART.APPROVE_WARRANTY', 'ServiceTicket', ticket.id, {
        'part_id': part.id, 'quantity': part.quantity, 'total_price_cents': part.total_price_cents, 'note': note,
    }, company_id=ticket.company_id)
    return part


def update_part(
    session: Session,
    ticket: ServiceTicket,
    part: PartUsage,
    *,
    quantity: Optional[int],
    unit_price_cents: Optional[int],
    actor_id: int,
) -> PartUsage:
    assert_parts_editable(ticket, 'updated')
    if quantity is not None and quantity <= 0:
        raise ValidationError('quantity must be > 0')
    if unit_price_cents is not None and unit_price_cents < 0:
        raise ValidationError('unit_price_cents must not be negative')
    old_qty, old_price, old_total = part.quantity, part.unit_price_cents, part.total_price_cents
    new_qty = old_qty if quantity is None else quantity
    source = part.source
    diff = new_qty - old_qty

    if part.is_approved and diff:
        notes = f'Quantity adjusted from {old_qty} to {new_qty}'
        if diff > 0 and isinstance(source, InventorySource):
            inv = session.get(BranchInventory, source.inventory_id)
            _require_available(session, inv, diff)
            stock_ledger.adjust(session, inv.id, -diff, StockMovement.TYPE_SERVICE_USE, actor_id,
                                reference_type=stock_ledger.REF_PART_UPDATE, reference_id=part.id, notes=notes)
        elif diff > 0:
            _consume_legacy(part, diff)
        else:
            restore_stock(session, part, actor_id, stock_ledger.REF_PART_UPDATE, notes, delta=-diff)
    elif not part.is_approved and diff > 0 and isinstance(source, InventorySource):
        inv = session.get(BranchInventory, source.inventory_id)
        _require_available(session, inv, new_qty)

    part.quantity = new_qty
    if unit_price_cents is not None:
        part.unit_price_cents = unit_price_cents
    part.reprice()
    costing.recalculate(ticket)
    add_audit(session, actor_id, 'PART.UPDATE', 'ServiceTicket', ticket.id, {
        'part_id': part.id,
        'old_quantity': old_qty, 'new_quantity': new_qty,
        'old_unit_price_cents': old_price, 'new_unit_price_cents': part.unit_price_cents,
        'old_total_price_cents': old_total, 'new_total_price_cents': part.total_price_cents,
        'approved': part.is_approved,
    }, company_id=ticket.company_id)
    return part


def remove_part(session: Session, ticket: ServiceTicket, part: PartUsage, *, actor_id: int):
    assert_parts_editable(ticket, 'removed', removing=True)
    meta = {
        'part_id': part.id,
        'item_name': part.item_name,
        'was_approved': bool(part.is_approved),
        'approval_method': part.approval_method,
        'quantity': part.quantity,
        'total_price_cents': part.total_price_cents,
        'stock_restored': bool(part.is_approved),
    }
    if part.is_approved:
        restore_stock(session, part, actor_id, stock_ledger.REF_PART_REMOVED,
                      f'Part removed from ticket {ticket.ticket_number}')
    ticket.parts.remove(part)
    costing.recalculate(ticket)
    add_audit(session, actor_id, 'PART.REMOVE', 'ServiceTicket', ticket.id, meta, company_id=ticket.company_id)


def available_parts(session: Session, ticket: ServiceTicket) -> List[BranchInventory]:
    return list(session.execute(
        select(BranchInventory)
        .join(Item, Item.id == BranchInventory.item_id)
        .where(
            BranchInventory.branch_id == ticket.branch_id,
            BranchInventory.company_id == ticket.company_id,
            BranchInventory.is_active.is_(True),
            BranchInventory.stock_quantity > 0,
        )
        .order_by(Item.item_name.asc())
    ).scalars().unique())


__all__ = [
    'FROZEN_STATUSES', 'assert_parts_editable', 'add_part', 'approve_part', 'approve_part_for_warranty',
    'update_part', 'remove_part', 'restore_stock', 'available_parts',
]
