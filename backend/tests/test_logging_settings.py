import json
import logging
import re
from pathlib import Path

import pytest

import servicedesk
from servicedesk.config.settings import DEFAULTS, load_settings
from servicedesk.utils.log import CONTEXT_KEYS, JsonFormatter, configure_logging


def _record(**extra):
    record = logging.LogRecord('servicedesk.services.tickets', logging.INFO, __file__, 1, 'ticket %s', ('created',), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context_keys():
    out = json.loads(JsonFormatter().format(_record(ticket_id=5, ticket_number='SRV-MN1-2024-000001', unrelated='x')))
    assert out['message'] == 'ticket created'
    assert out['level'] == 'INFO'
    assert out['logger'] == 'servicedesk.services.tickets'
    assert out['ticket_id'] == 5
    assert out['ticket_number'] == 'SRV-MN1-2024-000001'
    assert 'unrelated' not in out


def test_json_formatter_keeps_part_and_retry_context():
    out = json.loads(JsonFormatter().format(_record(
        part_id=7, attempt=2, suffix='A', url='https://hooks.example.com/x', device_id=3, approved=False,
    )))
    assert (out['part_id'], out['attempt'], out['suffix']) == (7, 2, 'A')
    assert out['url'] == 'https://hooks.example.com/x'
    assert out['device_id'] == 3
    assert out['approved'] is False


def test_every_logged_extra_key_is_rendered():
    root = Path(servicedesk.__file__).parent
    keys = set()
    for path in root.rglob('*.py'):
        for block in re.findall(r'extra=\{(.*?)\}', path.read_text(), re.S):
            keys.update(re.findall(r"'([a-z_]+)':", block))
    assert keys
    assert keys <= set(CONTEXT_KEYS)


def test_json_formatter_renders_exceptions():
    try:
        raise RuntimeError('printer offline')
    except RuntimeError:
        import sys
        record = logging.LogRecord('servicedesk', logging.ERROR, __file__, 1, 'failed', (), sys.exc_info())
    out = json.loads(JsonFormatter().format(record))
    assert 'printer offline' in out['exception']


def test_configure_logging_replaces_own_handler():
    logger = logging.getLogger('servicedesk')
    before = [h for h in logger.handlers if not getattr(h, '_servicedesk', False)]
    try:
        configure_logging('DEBUG', json_output=True)
        configure_logging('WARNING')
        ours = [h for h in logger.handlers if getattr(h, '_servicedesk', False)]
        assert len(ours) == 1
        assert not isinstance(ours[0].formatter, JsonFormatter)
        assert logger.level == logging.WARNING
        assert [h for h in logger.handlers if not getattr(h, '_servicedesk', False)] == before
    finally:
        configure_logging('INFO')


def test_load_settings_defaults(monkeypatch):
    for key in DEFAULTS:
        monkeypatch.delenv(key, raising=False)
    assert load_settings() == DEFAULTS


def test_load_settings_coerces_env(monkeypatch):
    monkeypatch.setenv('LOG_JSON', 'yes')
    monkeypatch.setenv('REPEAT_SERVICE_WINDOW_DAYS', '14')
    monkeypatch.setenv('TICKET_NUMBER_PREFIX', 'FIX')
    settings = load_settings()
    assert settings['LOG_JSON'] is True
    assert settings['REPEAT_SERVICE_WINDOW_DAYS'] == 14
    assert settings['TICKET_NUMBER_PREFIX'] == 'FIX'


def test_load_settings_rejects_bad_int(monkeypatch):
    monkeypatch.setenv('DISPATCH_MAX_WORKERS', 'many')
    with pytest.raises(ValueError):
        load_settings()


def test_repeat_window_setting_is_honoured(session, clock):
    from servicedesk.services.tickets import TicketService
    from tests.test_utils_seed import seed_shop, create_command

    shop = seed_shop(session)
    service = TicketService(session, settings={'REPEAT_SERVICE_WINDOW_DAYS': 7}, clock=clock)
    service.create_ticket(shop.scope, create_command(shop))
    clock.advance(days=8)
    assert service.check_previous_services(shop.scope, shop.device.id).is_repeated is False
    clock.advance(days=-2)
    assert service.check_previous_services(shop.scope, shop.device.id).days_since_last_service == 6
