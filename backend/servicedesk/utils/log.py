from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

# Extra fields the services attach via ``extra=``; copied into JSON output when present.
# A key missing here is silently dropped from JSON output.
CONTEXT_KEYS = (
    'request_id',
    'company_id',
    'actor_id',
    'user_id',
    'technician_id',
    'ticket_id',
    'ticket_number',
    'active_ticket_id',
    'device_id',
    'inventory_id',
    'movement_id',
    'movement_type',
    'part_id',
    'entity_type',
    'entity_id',
    'operation',
    'code',
    'effect',
    'old_status',
    'new_status',
    'approved',
    'attempt',
    'suffix',
    'delta',
    'available',
    'required',
    'restored_parts',
    'refund_amount_cents',
    'count',
    'total_cents',
    'url',
)


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str = 'INFO', json_output: bool = False):
    """Install a single stream handler on the ``servicedesk`` logger."""
    logger = logging.getLogger('servicedesk')
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, '_servicedesk', False):
            logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler._servicedesk = True  # type: ignore[attr-defined]
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    logger.addHandler(handler)
    return logger


__all__ = ['JsonFormatter', 'configure_logging']
