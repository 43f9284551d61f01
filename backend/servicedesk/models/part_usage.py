from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Union
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Boolean, Text, DateTime, ForeignKey, CheckConstraint

from servicedesk.utils.clock import utcnow
from .org import Base


@dataclass(frozen=True)
class InventorySource:
    inventory_id: int


@dataclass(frozen=True)
class LegacyPartSource:
    legacy_part_id: int


PartSource = Union[InventorySource, LegacyPartSource]


class PartUsage(Base):
    """A part consumed (or proposed) on a ticket.

    Exactly one of ``branch_inventory_id`` / ``legacy_part_id`` is set; code outside
    the model reads it through ``source``. Stock is only touched once ``is_approved``
    flips to True, and it never flips back.
    """
    __tablename__ = 'part_usages'
    APPROVAL_AUTO_TAGGED = 'AUTO_TAGGED'
    APPROVAL_CUSTOMER = 'CUSTOMER'
    APPROVAL_PHONE = 'PHONE'
    APPROVAL_IN_PERSON = 'IN_PERSON'
    APPROVAL_WARRANTY = 'WARRANTY_INTERNAL'
    MANUAL_APPROVAL_METHODS = (APPROVAL_CUSTOMER, APPROVAL_PHONE, APPROVAL_IN_PERSON)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    branch_inventory_id: Mapped[Optional[int]] = mapped_column(ForeignKey('branch_inventory.id'), index=True)
    legacy_part_id: Mapped[Optional[int]] = mapped_column(ForeignKey('legacy_parts.id'))
    item_id: Mapped[Optional[int]] = mapped_column(ForeignKey('items.id'))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_extra_spare: Mapped[bool] = mapped_column(Boolean, default=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    approval_method: Mapped[Optional[str]] = mapped_column(String(32))
    approval_note: Mapped[Optional[str]] = mapped_column(Text)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    approved_by_id: Mapped[Optional[int]] = mapped_column(Integer)
    fault_tag: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    ticket = relationship('ServiceTicket', back_populates='parts')
    inventory = relationship('BranchInventory')
    legacy_part = relationship('LegacyPart')

    __table_args__ = (
        CheckConstraint(
            '(branch_inventory_id IS NULL) != (legacy_part_id IS NULL)',
            name='ck_part_usage_single_source',
        ),
        CheckConstraint('quantity > 0', name='ck_part_usage_quantity_positive'),
    )

    @property
    def source(self) -> PartSource:
        if self.branch_inventory_id is not None:
            return InventorySource(self.branch_inventory_id)
        return LegacyPartSource(self.legacy_part_id)

    @property
    def item_name(self) -> str:
        if self.inventory is not None and self.inventory.item is not None:
            return self.inventory.item.item_name
        if self.legacy_part is not None:
            return self.legacy_part.name
        return 'Unknown Part'

    def reprice(self) -> None:
        self.total_price_cents = self.quantity * self.unit_price_cents
