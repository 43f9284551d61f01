from __future__ import annotations
from typing import Optional, List
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Boolean, Text, DateTime, ForeignKey, UniqueConstraint

from servicedesk.utils.clock import utcnow
from .org import Base


class ServiceTicket(Base):
    __tablename__ = 'service_tickets'
    # Status constants
    STATUS_PENDING = 'PENDING'
    STATUS_IN_PROGRESS = 'IN_PROGRESS'
    STATUS_WAITING_PARTS = 'WAITING_PARTS'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_DELIVERED = 'DELIVERED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_NOT_SERVICEABLE = 'NOT_SERVICEABLE'
    ALL_STATUSES = (
        STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_WAITING_PARTS, STATUS_COMPLETED,
        STATUS_DELIVERED, STATUS_CANCELLED, STATUS_NOT_SERVICEABLE,
    )
    # Statuses after which the device counts as no longer "in the shop"
    CLOSED_STATUSES = (STATUS_DELIVERED, STATUS_CANCELLED)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[int] = mapped_column(ForeignKey('companies.id'), nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey('branches.id'), nullable=False, index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey('customers.id'), nullable=False, index=True)
    customer_device_id: Mapped[int] = mapped_column(ForeignKey('customer_devices.id'), nullable=False, index=True)
    device_model: Mapped[str] = mapped_column(String(160), nullable=False)
    damage_condition: Mapped[Optional[str]] = mapped_column(Text)
    diagnosis: Mapped[Optional[str]] = mapped_column(Text)
    # Intake
    device_password: Mapped[Optional[str]] = mapped_column(String(64))
    device_pattern: Mapped[Optional[str]] = mapped_column(String(64))
    device_condition: Mapped[Optional[str]] = mapped_column(Text)
    intake_notes: Mapped[Optional[str]] = mapped_column(Text)
    data_warranty_accepted: Mapped[bool] = mapped_column(Boolean, default=False)
    send_sms_notification: Mapped[bool] = mapped_column(Boolean, default=True)
    send_whatsapp_notification: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_PENDING, index=True)
    # Money (minor units)
    estimated_cost_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_cost_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    labour_charge_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    advance_payment_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_warranty_repair: Mapped[bool] = mapped_column(Boolean, default=False)
    warranty_reason: Mapped[Optional[str]] = mapped_column(String(255))
    is_repeated_service: Mapped[bool] = mapped_column(Boolean, default=False)
    previous_ticket_id: Mapped[Optional[int]] = mapped_column(ForeignKey('service_tickets.id', ondelete='SET NULL'))

    assigned_to_id: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id'), index=True)
    created_by_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    not_serviceable_reason: Mapped[Optional[str]] = mapped_column(Text)
    device_returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    device_returned_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id'))
    # Refund
    refund_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text)
    refund_payment_method_id: Mapped[Optional[int]] = mapped_column(ForeignKey('payment_methods.id'))
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    refunded_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id'))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    parts: Mapped[List['PartUsage']] = relationship(
        'PartUsage', back_populates='ticket', cascade='all, delete-orphan', order_by='PartUsage.id'
    )
    history: Mapped[List['StatusHistory']] = relationship(
        'StatusHistory', cascade='all, delete-orphan', order_by='StatusHistory.id'
    )
    notes: Mapped[List['TicketNote']] = relationship('TicketNote', cascade='all, delete-orphan', order_by='TicketNote.id')
    payments: Mapped[List['PaymentEntry']] = relationship('PaymentEntry', cascade='all, delete-orphan', order_by='PaymentEntry.id')
    faults: Mapped[List['TicketFault']] = relationship('TicketFault', cascade='all, delete-orphan')
    accessories: Mapped[List['TicketAccessory']] = relationship('TicketAccessory', cascade='all, delete-orphan')
    damage_conditions: Mapped[List['TicketDamageCondition']] = relationship('TicketDamageCondition', cascade='all, delete-orphan')
    images: Mapped[List['TicketImage']] = relationship('TicketImage', cascade='all, delete-orphan', order_by='TicketImage.id')

    __table_args__ = (UniqueConstraint('ticket_number', name='uq_service_ticket_number'),)

    @property
    def is_closed(self) -> bool:
        return self.status in self.CLOSED_STATUSES

    @property
    def total_paid_cents(self) -> int:
        return sum(p.amount_cents for p in self.payments) + (self.advance_payment_cents or 0)

# Status flow: PENDING -> IN_PROGRESS -> COMPLETED -> DELIVERED
# (WAITING_PARTS loops back to IN_PROGRESS; CANCELLED / NOT_SERVICEABLE are alternative terminals)


class TicketFault(Base):
    __tablename__ = 'ticket_faults'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    fault_id: Mapped[int] = mapped_column(ForeignKey('faults.id'), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint('ticket_id', 'fault_id', name='uq_ticket_fault'),)


class TicketAccessory(Base):
    __tablename__ = 'ticket_accessories'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    accessory_id: Mapped[int] = mapped_column(ForeignKey('accessories.id'), nullable=False)


class TicketDamageCondition(Base):
    __tablename__ = 'ticket_damage_conditions'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    damage_condition_id: Mapped[int] = mapped_column(ForeignKey('damage_conditions.id'), nullable=False)


class StatusHistory(Base):
    """One row per status write, including re-entry. Never updated (see models.immutability)."""
    __tablename__ = 'status_history'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    changed_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class TicketNote(Base):
    __tablename__ = 'ticket_notes'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    note: Mapped[str] = mapped_column(Text, nullable=False)
    created_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class PaymentEntry(Base):
    __tablename__ = 'payment_entries'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    payment_method_id: Mapped[int] = mapped_column(ForeignKey('payment_methods.id'), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(String(255))
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128))
    payment_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    received_by_id: Mapped[int] = mapped_column(Integer, nullable=False)


class TicketImage(Base):
    __tablename__ = 'ticket_images'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    image_url: Mapped[str] = mapped_column(String(512), nullable=False)
    caption: Mapped[Optional[str]] = mapped_column(String(255))
    uploaded_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
