from __future__ import annotations
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from servicedesk.models.audit import AuditLog


def add_audit(
    session: Session,
    actor_id: Optional[int],
    action: str,
    entity: Optional[str] = None,
    entity_id: Optional[Any] = None,
    meta: Optional[Dict[str, Any]] = None,
    company_id: Optional[int] = None,
):
    """Persist an activity log entry within the caller's transaction.

    Parameters:
      action: short action code e.g. TICKET.CREATE, PART.APPROVE, TICKET.REFUND
      entity: optional entity name (ServiceTicket, PartUsage, ...)
      entity_id: optional primary key (stored as string)
      meta: additional JSON-safe dictionary (shallow copied)
    """
    log = AuditLog(
        company_id=company_id,
        actor_user_id=actor_id or 0,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=dict(meta or {}),
    )
    session.add(log)
    # No commit here; caller's transaction boundary controls durability.
    return log
