from __future__ import annotations
"""Validated inputs for the ticket operations.

Each command validates itself on construction; ``from_payload`` builds one from a
decoded JSON body (the blueprints use it) and turns type errors into
ValidationError instead of letting them escape as TypeError / KeyError.
Money fields are integer cents.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from servicedesk.errors import NotFound, ValidationError
from servicedesk.utils.validation import require_int, optional_int, require_text, int_list


@dataclass(frozen=True)
class Scope:
    """Who is acting and which company / branches they may touch.

    An empty ``branch_ids`` means no branch restriction inside the company.
    """
    company_id: int
    actor_id: int
    branch_ids: Tuple[int, ...] = ()

    def allows(self, branch_id: int) -> bool:
        return not self.branch_ids or branch_id in self.branch_ids

    def check_branch(self, branch_id: int, message: str = 'Branch not found'):
        if not self.allows(branch_id):
            raise NotFound(message)


def _bool(payload: Dict[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f'{key} must be a boolean')
    return value


def _opt_text(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{key} must be a string')
    return value


@dataclass(frozen=True)
class PaymentInput:
    amount_cents: int
    payment_method_id: int
    notes: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_date: Optional[datetime] = None

    def __post_init__(self):
        require_int(self.amount_cents, 'amount_cents')
        require_int(self.payment_method_id, 'payment_method_id')

    @classmethod
    def from_payload(cls, payload: Any) -> 'PaymentInput':
        if not isinstance(payload, dict):
            raise ValidationError('payment entry must be an object')
        return cls(
            amount_cents=require_int(payload.get('amount_cents'), 'amount_cents'),
            payment_method_id=require_int(payload.get('payment_method_id'), 'payment_method_id'),
            notes=_opt_text(payload, 'notes'),
            transaction_id=_opt_text(payload, 'transaction_id'),
        )


@dataclass(frozen=True)
class CreateTicketCommand:
    branch_id: int
    customer_id: int
    customer_device_id: int
    fault_ids: Tuple[int, ...]
    damage_condition: str = ''
    damage_condition_ids: Tuple[int, ...] = ()
    accessory_ids: Tuple[int, ...] = ()
    diagnosis: Optional[str] = None
    estimated_cost_cents: int = 0
    device_password: Optional[str] = None
    device_pattern: Optional[str] = None
    device_condition: Optional[str] = None
    intake_notes: Optional[str] = None
    data_warranty_accepted: bool = False
    send_sms_notification: bool = True
    send_whatsapp_notification: bool = False
    is_warranty_repair: bool = False
    warranty_reason: Optional[str] = None
    payment_entries: Tuple[PaymentInput, ...] = ()

    def __post_init__(self):
        if not self.fault_ids:
            raise ValidationError('At least one fault is required')
        if len(set(self.fault_ids)) != len(self.fault_ids):
            raise ValidationError('fault_ids must not contain duplicates')
        require_int(self.estimated_cost_cents, 'estimated_cost_cents', minimum=0)
        for entry in self.payment_entries:
            if entry.amount_cents <= 0:
                raise ValidationError('payment amounts must be > 0')
        if self.is_warranty_repair and not (self.warranty_reason or '').strip():
            raise ValidationError('warranty_reason required for a warranty repair')

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'CreateTicketCommand':
        if not isinstance(payload, dict):
            raise ValidationError('JSON object body required')
        entries = payload.get('payment_entries') or []
        if not isinstance(entries, list):
            raise ValidationError('payment_entries must be a list')
        return cls(
            branch_id=require_int(payload.get('branch_id'), 'branch_id'),
            customer_id=require_int(payload.get('customer_id'), 'customer_id'),
            customer_device_id=require_int(payload.get('customer_device_id'), 'customer_device_id'),
            fault_ids=tuple(int_list(payload.get('fault_ids'), 'fault_ids')),
            damage_condition=_opt_text(payload, 'damage_condition') or '',
            damage_condition_ids=tuple(int_list(payload.get('damage_condition_ids'), 'damage_condition_ids')),
            accessory_ids=tuple(int_list(payload.get('accessory_ids'), 'accessory_ids')),
            diagnosis=_opt_text(payload, 'diagnosis'),
            estimated_cost_cents=require_int(payload.get('estimated_cost_cents', 0), 'estimated_cost_cents', minimum=0),
            device_password=_opt_text(payload, 'device_password'),
            device_pattern=_opt_text(payload, 'device_pattern'),
            device_condition=_opt_text(payload, 'device_condition'),
            intake_notes=_opt_text(payload, 'intake_notes'),
            data_warranty_accepted=_bool(payload, 'data_warranty_accepted', False),
            send_sms_notification=_bool(payload, 'send_sms_notification', True),
            send_whatsapp_notification=_bool(payload, 'send_whatsapp_notification', False),
            is_warranty_repair=_bool(payload, 'is_warranty_repair', False),
            warranty_reason=_opt_text(payload, 'warranty_reason'),
            payment_entries=tuple(PaymentInput.from_payload(e) for e in entries),
        )


# Fields of UpdateTicketCommand that are plain string copies onto the ticket
INTAKE_FIELDS = ('damage_condition', 'device_password', 'device_pattern', 'device_condition', 'intake_notes')


@dataclass(frozen=True)
class UpdateTicketCommand:
    """Partial update; ``None`` means "leave unchanged".

    ``accessory_ids`` replaces the whole accessory set when given (an empty tuple clears it).
    """
    ticket_id: int
    customer_device_id: Optional[int] = None
    damage_condition: Optional[str] = None
    device_password: Optional[str] = None
    device_pattern: Optional[str] = None
    device_condition: Optional[str] = None
    intake_notes: Optional[str] = None
    advance_payment_cents: Optional[int] = None
    accessory_ids: Optional[Tuple[int, ...]] = None

    def __post_init__(self):
        optional_int(self.advance_payment_cents, 'advance_payment_cents', minimum=0)

    @classmethod
    def from_payload(cls, ticket_id: int, payload: Dict[str, Any]) -> 'UpdateTicketCommand':
        if not isinstance(payload, dict):
            raise ValidationError('JSON object body required')
        forbidden = {'estimated_cost_cents', 'actual_cost_cents', 'labour_charge_cents', 'discount_cents', 'status'} & set(payload)
        if forbidden:
            raise ValidationError(f'{", ".join(sorted(forbidden))} cannot be changed here')
        accessories = payload.get('accessory_ids')
        return cls(
            ticket_id=ticket_id,
            customer_device_id=optional_int(payload.get('customer_device_id'), 'customer_device_id'),
            advance_payment_cents=optional_int(payload.get('advance_payment_cents'), 'advance_payment_cents', minimum=0),
            accessory_ids=None if accessories is None else tuple(int_list(accessories, 'accessory_ids')),
            **{k: _opt_text(payload, k) for k in INTAKE_FIELDS},
        )


@dataclass(frozen=True)
class AddPartCommand:
    ticket_id: int
    inventory_id: int
    quantity: int
    unit_price_cents: int
    is_extra_spare: bool = False
    fault_tag: Optional[str] = None

    def __post_init__(self):
        if require_int(self.quantity, 'quantity') <= 0:
            raise ValidationError('quantity must be > 0')
        require_int(self.unit_price_cents, 'unit_price_cents')
        if self.unit_price_cents < 0:
            raise ValidationError('unit_price_cents must not be negative')

    @classmethod
    def from_payload(cls, ticket_id: int, payload: Dict[str, Any]) -> 'AddPartCommand':
        if not isinstance(payload, dict):
            raise ValidationError('JSON object body required')
        return cls(
            ticket_id=ticket_id,
            inventory_id=require_int(payload.get('inventory_id'), 'inventory_id'),
            quantity=require_int(payload.get('quantity'), 'quantity'),
            unit_price_cents=require_int(payload.get('unit_price_cents'), 'unit_price_cents'),
            is_extra_spare=_bool(payload, 'is_extra_spare', False),
            fault_tag=_opt_text(payload, 'fault_tag') or None,
        )


@dataclass(frozen=True)
class UpdatePartCommand:
    ticket_id: int
    part_id: int
    quantity: Optional[int] = None
    unit_price_cents: Optional[int] = None

    def __post_init__(self):
        if self.quantity is None and self.unit_price_cents is None:
            raise ValidationError('quantity or unit_price_cents required')
        if self.quantity is not None and require_int(self.quantity, 'quantity') <= 0:
            raise ValidationError('quantity must be > 0')
        if self.unit_price_cents is not None and require_int(self.unit_price_cents, 'unit_price_cents') < 0:
            raise ValidationError('unit_price_cents must not be negative')

    @classmethod
    def from_payload(cls, ticket_id: int, part_id: int, payload: Dict[str, Any]) -> 'UpdatePartCommand':
        if not isinstance(payload, dict):
            raise ValidationError('JSON object body required')
        return cls(
            ticket_id=ticket_id,
            part_id=part_id,
            quantity=optional_int(payload.get('quantity'), 'quantity'),
            unit_price_cents=optional_int(payload.get('unit_price_cents'), 'unit_price_cents'),
        )


@dataclass(frozen=True)
class StatusChangeCommand:
    ticket_id: int
    status: str
    notes: Optional[str] = None
    not_serviceable_reason: Optional[str] = None

    @classmethod
    def from_payload(cls, ticket_id: int, payload: Dict[str, Any]) -> 'StatusChangeCommand':
        if not isinstance(payload, dict):
            raise ValidationError('JSON object body required')
        return cls(
            ticket_id=ticket_id,
            status=require_text(payload.get('status'), 'status'),
            notes=_opt_text(payload, 'notes'),
            not_serviceable_reason=_opt_text(payload, 'not_serviceable_reason'),
        )


@dataclass(frozen=True)
class BulkPaymentCommand:
    ticket_id: int
    payments: Tuple[PaymentInput, ...]
    notes: Optional[str] = None
    mark_as_delivered: bool = False

    @classmethod
    def from_payload(cls, ticket_id: int, payload: Dict[str, Any]) -> 'BulkPaymentCommand':
        if not isinstance(payload, dict):
            raise ValidationError('JSON object body required')
        payments = payload.get('payments')
        if not isinstance(payments, list):
            raise ValidationError('payments must be a list')
        return cls(
            ticket_id=ticket_id,
            payments=tuple(PaymentInput.from_payload(p) for p in payments),
            notes=_opt_text(payload, 'notes'),
            mark_as_delivered=_bool(payload, 'mark_as_delivered', False),
        )


@dataclass(frozen=True)
class RefundCommand:
    ticket_id: int
    reason: str
    payment_method_id: int

    def __post_init__(self):
        require_text(self.reason, 'reason')
        require_int(self.payment_method_id, 'payment_method_id')

    @classmethod
    def from_payload(cls, ticket_id: int, payload: Dict[str, Any]) -> 'RefundCommand':
        if not isinstance(payload, dict):
            raise ValidationError('JSON object body required')
        return cls(
            ticket_id=ticket_id,
            reason=require_text(payload.get('reason'), 'reason'),
            payment_method_id=require_int(payload.get('payment_method_id'), 'payment_method_id'),
        )


@dataclass(frozen=True)
class ImageInput:
    image_url: str
    caption: Optional[str] = None


@dataclass
class PreviousServiceReport:
    is_repeated: bool
    last_ticket: Optional[Dict[str, Any]] = None
    days_since_last_service: Optional[int] = None
    has_fault_match: bool = False
    matching_fault_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_repeated': self.is_repeated,
            'last_ticket': self.last_ticket,
            'days_since_last_service': self.days_since_last_service,
            'has_fault_match': self.has_fault_match,
            'matching_fault_ids': list(self.matching_fault_ids),
        }
