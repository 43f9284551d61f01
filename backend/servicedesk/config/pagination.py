from servicedesk.errors import ValidationError

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
# Status history and notes are short per ticket; movement logs are not.
MOVEMENTS_DEFAULT_LIMIT = 20


def normalize_pagination(limit_raw, offset_raw, default_limit: int = DEFAULT_LIMIT):
    try:
        limit = int(limit_raw) if limit_raw is not None else default_limit
        offset = int(offset_raw) if offset_raw is not None else 0
    except (TypeError, ValueError):
        raise ValidationError('limit/offset must be int')
    limit = max(1, min(limit, MAX_LIMIT))
    offset = max(0, offset)
    return limit, offset
