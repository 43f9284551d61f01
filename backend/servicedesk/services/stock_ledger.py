from __future__ import annotations
"""Per-branch stock counter and its append-only movement log.

``adjust`` is the only code path allowed to change ``BranchInventory.stock_quantity``.
Decrements are a single conditional UPDATE (``WHERE stock_quantity >= :qty``) so a
concurrent transaction that already consumed the stock makes this one fail with
InsufficientStock instead of driving the counter negative.
"""
import logging
from datetime import datetime
from typing import Optional, List, Sequence, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from servicedesk.errors import NotFound, ValidationError, InsufficientStock
from servicedesk.models.inventory import BranchInventory, StockMovement
from servicedesk.services.audit import add_audit
from servicedesk.config.pagination import MOVEMENTS_DEFAULT_LIMIT, MAX_LIMIT

logger = logging.getLogger(__name__)

# reference_type values written by the parts sub-ledger / ticket deletion
REF_PART_UPDATE = 'SERVICE_PART_UPDATE'
REF_PART_REMOVED = 'SERVICE_PART_REMOVED'
REF_PART_WARRANTY_APPROVED = 'SERVICE_PART_WARRANTY_APPROVED'
REF_TICKET_DELETED = 'SERVICE_DELETED'
REF_MANUAL = 'MANUAL'


def _current_quantity(session: Session, inventory_id: int) -> int:
    return session.execute(
        select(BranchInventory.stock_quantity).where(BranchInventory.id == inventory_id)
    ).scalar_one()


def available(session: Session, inventory: BranchInventory) -> int:
    """Committed-or-flushed quantity, read from the database rather than the identity map."""
    return _current_quantity(session, inventory.id)


def adjust(
    session: Session,
    inventory_id: int,
    delta: int,
    movement_type: str,
    actor_id: int,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationError('delta must be a non-zero integer')
    if movement_type not in StockMovement.ALL_TYPES:
        raise ValidationError(f'movement_type must be one of {", ".join(StockMovement.ALL_TYPES)}')
    inv = session.get(BranchInventory, inventory_id)
    if inv is None:
        raise NotFound('Inventory item not found')

    stmt = (
        update(BranchInventory)
        .where(BranchInventory.id == inventory_id)
        .values(stock_quantity=BranchInventory.stock_quantity + delta)
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(BranchInventory.stock_quantity >= -delta)
    result = session.execute(stmt)
    if result.rowcount != 1:
        current = _current_quantity(session, inventory_id)
        logger.warning(
            'stock decrement refused',
            extra={'inventory_id': inventory_id, 'available': current, 'required': -delta},
        )
        raise InsufficientStock(current, -delta, inventory_id=inventory_id)

    new_qty = _current_quantity(session, inventory_id)
    previous_qty = new_qty - delta
    set_committed_value(inv, 'stock_quantity', new_qty)

    movement = StockMovement(
        branch_inventory_id=inv.id,
        company_id=inv.company_id,
        branch_id=inv.branch_id,
        movement_type=movement_type,
        quantity=abs(delta),
        previous_qty=previous_qty,
        new_qty=new_qty,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        user_id=actor_id,
    )
    session.add(movement)
    add_audit(
        session, actor_id, 'STOCK_MOVEMENT', 'BranchInventory', inv.id,
        {
            'movement_type': movement_type,
            'quantity': abs(delta),
            'previous_qty': previous_qty,
            'new_qty': new_qty,
            'item_name': inv.item.item_name if inv.item else None,
            'notes': notes,
        },
        company_id=inv.company_id,
    )
    logger.info(
        'stock movement logged',
        extra={'inventory_id': inv.id, 'movement_type': movement_type, 'delta': delta, 'user_id': actor_id},
    )
    return movement


def list_movements(
    session: Session,
    company_id: int,
    inventory_id: Optional[int] = None,
    branch_id: Optional[int] = None,
    branch_ids: Sequence[int] = (),
    movement_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = MOVEMENTS_DEFAULT_LIMIT,
    offset: int = 0,
) -> Tuple[List[StockMovement], int]:
    """Newest first. Returns (rows, total).

    A non-empty ``branch_ids`` limits rows to those branches before counting and paging.
    """
    q = select(StockMovement).where(StockMovement.company_id == company_id)
    if inventory_id is not None:
        q = q.where(StockMovement.branch_inventory_id == inventory_id)
    if branch_id is not None:
        q = q.where(StockMovement.branch_id == branch_id)
    if branch_ids:
        q = q.where(StockMovement.branch_id.in_(tuple(branch_ids)))
    if movement_type:
        if movement_type not in StockMovement.ALL_TYPES:
            raise ValidationError('movement_type invalid')
        q = q.where(StockMovement.movement_type == movement_type)
    if start is not None:
        q = q.where(StockMovement.created_at >= start)
    if end is not None:
        q = q.where(StockMovement.created_at <= end)
    total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    limit = max(1, min(int(limit), MAX_LIMIT))
    rows = session.execute(
        q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).offset(max(0, int(offset)))
    ).scalars().all()
    return list(rows), total


__all__ = ['adjust', 'available', 'list_movements']
