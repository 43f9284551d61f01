from __future__ import annotations
"""Billable-total rules.

Pure functions over PartUsage rows and ticket money fields (integer cents).
``actual_cost`` = billable parts + labour, forced to 0 while NOT_SERVICEABLE.
Discount never folds into ``actual_cost``; it is applied in ``billing_summary``.
"""
from typing import Iterable, Dict

from servicedesk.models.part_usage import PartUsage
from servicedesk.models.service_ticket import ServiceTicket


def is_billable(part: PartUsage) -> bool:
    return bool(part.is_approved) and part.approval_method != PartUsage.APPROVAL_WARRANTY


def parts_total(parts: Iterable[PartUsage]) -> int:
    return sum(p.total_price_cents for p in parts if is_billable(p))


def compute_actual_cost(parts: Iterable[PartUsage], labour_charge: int, status: str) -> int:
    if status == ServiceTicket.STATUS_NOT_SERVICEABLE:
        return 0
    return parts_total(parts) + (labour_charge or 0)


def recalculate(ticket: ServiceTicket) -> int:
    ticket.actual_cost_cents = compute_actual_cost(ticket.parts, ticket.labour_charge_cents, ticket.status)
    return ticket.actual_cost_cents


def billing_summary(ticket: ServiceTicket, paid: int) -> Dict[str, int]:
    parts = parts_total(ticket.parts)
    actual = ticket.actual_cost_cents or 0
    net = max(0, actual - (ticket.discount_cents or 0))
    return {
        'parts_total_cents': parts,
        'labour_charge_cents': ticket.labour_charge_cents or 0,
        'discount_cents': ticket.discount_cents or 0,
        'actual_cost_cents': actual,
        'net_payable_cents': net,
        'paid_cents': paid,
        'balance_cents': net - paid,
    }


__all__ = ['is_billable', 'parts_total', 'compute_actual_cost', 'recalculate', 'billing_summary']
