from __future__ import annotations
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Boolean, ForeignKey, DateTime, CheckConstraint, UniqueConstraint
from typing import Optional
from datetime import datetime

from servicedesk.utils.clock import utcnow
from .org import Base


class Item(Base):
    """Catalog item; stock is held per branch in BranchInventory."""
    __tablename__ = 'items'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey('companies.id'), nullable=False, index=True)
    item_name: Mapped[str] = mapped_column(String(150), nullable=False, index=True)
    item_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)


class BranchInventory(Base):
    __tablename__ = 'branch_inventory'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey('companies.id'), nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey('branches.id'), nullable=False, index=True)
    item_id: Mapped[int] = mapped_column(ForeignKey('items.id'), nullable=False, index=True)
    # Only ever written by services.stock_ledger.adjust
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    item = relationship('Item', lazy='joined')

    __table_args__ = (
        UniqueConstraint('branch_id', 'item_id', name='uq_branch_inventory_item'),
        CheckConstraint('stock_quantity >= 0', name='ck_branch_inventory_stock_non_negative'),
    )


class StockMovement(Base):
    """Append-only log; one row per stock_quantity change (see models.immutability)."""
    __tablename__ = 'stock_movements'
    TYPE_SERVICE_USE = 'SERVICE_USE'
    TYPE_RETURN = 'RETURN'
    TYPE_ADJUSTMENT = 'ADJUSTMENT'
    TYPE_PURCHASE = 'PURCHASE'
    ALL_TYPES = (TYPE_SERVICE_USE, TYPE_RETURN, TYPE_ADJUSTMENT, TYPE_PURCHASE)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    branch_inventory_id: Mapped[int] = mapped_column(ForeignKey('branch_inventory.id'), nullable=False, index=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    movement_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    new_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    # No FK: the referenced part row may be deleted later, the movement stays.
    reference_type: Mapped[Optional[str]] = mapped_column(String(64))
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    notes: Mapped[Optional[str]] = mapped_column(String(255))
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class LegacyPart(Base):
    """Pre-inventory parts catalog; carries its own quantity counter."""
    __tablename__ = 'legacy_parts'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey('companies.id'), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
