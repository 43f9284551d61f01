import os

# Defaults; every key can be overridden by environment or by create_app(config=...)
DEFAULTS = {
    'DATABASE_URL': 'sqlite:///dev.db',
    'JWT_SECRET_KEY': 'dev-secret',
    'LOG_LEVEL': 'INFO',
    'LOG_JSON': False,
    'REPEAT_SERVICE_WINDOW_DAYS': 30,
    'DISPATCH_MODE': 'thread',
    'DISPATCH_MAX_WORKERS': 4,
    'TICKET_NUMBER_PREFIX': 'SRV',
    'CREATE_TICKET_TIMEOUT_MS': 30000,
}

_BOOL_TRUE = {'1', 'true', 'yes', 'on'}


def _coerce(key, raw):
    default = DEFAULTS[key]
    if isinstance(default, bool):
        return str(raw).strip().lower() in _BOOL_TRUE
    if isinstance(default, int):
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ValueError(f'{key} must be int')
    return raw


def load_settings():
    """Return DEFAULTS overlaid with any matching environment variables."""
    settings = {}
    for key, default in DEFAULTS.items():
        raw = os.getenv(key)
        settings[key] = default if raw is None else _coerce(key, raw)
    return settings
