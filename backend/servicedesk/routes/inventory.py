from __future__ import annotations
from datetime import datetime
from flask import Blueprint, request, abort
from flask_jwt_extended import jwt_required
from sqlalchemy import select

from servicedesk import get_db
from servicedesk.config.pagination import normalize_pagination, MOVEMENTS_DEFAULT_LIMIT
from servicedesk.errors import NotFound, ValidationError
from servicedesk.models.inventory import BranchInventory, StockMovement
from servicedesk.services import stock_ledger
from servicedesk.services.policy import scope_from_claims, assert_branch_access
from servicedesk.utils.validation import require_int

inv_bp = Blueprint('inventory', __name__)

# Movement types an operator may record by hand; SERVICE_USE / RETURN come from tickets.
MANUAL_MOVEMENT_TYPES = (StockMovement.TYPE_ADJUSTMENT, StockMovement.TYPE_PURCHASE)


def _parse_ts(raw, field):
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f'{field} must be an ISO timestamp')


@inv_bp.get('/branch-items')
@jwt_required()
def list_branch_items():
    session = get_db()
    scope = scope_from_claims()
    q = select(BranchInventory).where(BranchInventory.company_id == scope.company_id)
    if scope.branch_ids:
        q = q.where(BranchInventory.branch_id.in_(scope.branch_ids))
    branch_id = request.args.get('branch_id')
    if branch_id:
        branch_id = require_int(branch_id, 'branch_id')
        assert_branch_access(branch_id)
        q = q.where(BranchInventory.branch_id == branch_id)
    limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    rows = session.execute(q.order_by(BranchInventory.id.asc()).limit(limit).offset(offset)).scalars().all()
    return {'items': [_inventory_json(i) for i in rows], 'limit': limit, 'offset': offset}


@inv_bp.post('/branch-items/<int:inventory_id>/adjust')
@jwt_required()
def adjust_stock(inventory_id: int):
    session = get_db()
    scope = scope_from_claims()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, description='JSON object body required')
    inv = session.get(BranchInventory, inventory_id)
    if inv is None or inv.company_id != scope.company_id:
        raise NotFound('Inventory item not found')
    assert_branch_access(inv.branch_id)
    movement_type = data.get('movement_type', StockMovement.TYPE_ADJUSTMENT)
    if movement_type not in MANUAL_MOVEMENT_TYPES:
        raise ValidationError(f'movement_type must be one of {", ".join(MANUAL_MOVEMENT_TYPES)}')
    notes = data.get('notes')
    try:
        movement = stock_ledger.adjust(
            session, inv.id, require_int(data.get('delta'), 'delta'), movement_type, scope.actor_id,
            reference_type=stock_ledger.REF_MANUAL, notes=notes if isinstance(notes, str) else None,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return _movement_json(movement), 201


@inv_bp.get('/movements')
@jwt_required()
def list_movements():
    session = get_db()
    scope = scope_from_claims()
    inventory_id = request.args.get('inventory_id')
    branch_id = request.args.get('branch_id')
    if branch_id:
        branch_id = require_int(branch_id, 'branch_id')
        assert_branch_access(branch_id)
    limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'), MOVEMENTS_DEFAULT_LIMIT)
    rows, total = stock_ledger.list_movements(
        session, scope.company_id,
        inventory_id=require_int(inventory_id, 'inventory_id') if inventory_id else None,
        branch_id=branch_id or None,
        branch_ids=scope.branch_ids,
        movement_type=request.args.get('movement_type'),
        start=_parse_ts(request.args.get('start'), 'start'),
        end=_parse_ts(request.args.get('end'), 'end'),
        limit=limit,
        offset=offset,
    )
    return {'items': [_movement_json(m) for m in rows], 'total': total, 'limit': limit, 'offset': offset}


def _inventory_json(i: BranchInventory):
    return {
        'id': i.id,
        'branch_id': i.branch_id,
        'item_id': i.item_id,
        'item_name': i.item.item_name if i.item else None,
        'item_code': i.item.item_code if i.item else None,
        'stock_quantity': i.stock_quantity,
        'is_active': i.is_active,
    }


def _movement_json(m: StockMovement):
    return {
        'id': m.id,
        'inventory_id': m.branch_inventory_id,
        'branch_id': m.branch_id,
        'movement_type': m.movement_type,
        'quantity': m.quantity,
        'previous_qty': m.previous_qty,
        'new_qty': m.new_qty,
        'reference_type': m.reference_type,
        'reference_id': m.reference_id,
        'notes': m.notes,
        'user_id': m.user_id,
        'created_at': m.created_at.isoformat() if m.created_at else None,
    }
