#!/usr/bin/env python3
"""
Unit tests for log redaction and formatting.
"""

import logging
import sys

import pytest

from src.edgeguard.log_filters import SecureFormatter, SensitiveDataFilter, configure_logging


def _record(msg, args=None, exc_info=None, **extra):
    record = logging.LogRecord('edgeguard.test', logging.WARNING, __file__, 1, msg, args, exc_info)
    for name, value in extra.items():
        setattr(record, name, value)
    return record


class TestSensitiveDataFilter:
    """Test redaction patterns."""

    @pytest.mark.parametrize('message,leaked,marker', [
        ('login failed password=hunter2', 'hunter2', 'password=***REDACTED***'),
        ('config {"api_key": "abc123"}', 'abc123', 'api_key=***REDACTED***'),
        ('Authorization: Bearer eyJhbGciOi.payload', 'eyJhbGciOi', 'Bearer ***REDACTED***'),
        ('card 4111 1111 1111 1111 declined', '4111 1111', '***CARD_REDACTED***'),
        ('contact alice@example.org', 'alice@example.org', '***EMAIL_REDACTED***'),
    ])
    def test_redacts(self, message, leaked, marker):
        record = _record(message)
        assert SensitiveDataFilter().filter(record) is True
        assert leaked not in record.msg
        assert marker in record.msg

    def test_args_rendered_before_redaction(self):
        record = _record('user %s token=%s', ('bob@example.org', 'deadbeef'))
        SensitiveDataFilter().filter(record)

        assert record.args is None
        assert 'bob@example.org' not in record.getMessage()
        assert 'deadbeef' not in record.getMessage()

    def test_ip_addresses_kept(self):
        record = _record('WAF rule triggered: IP=192.0.2.66')
        SensitiveDataFilter().filter(record)
        assert '192.0.2.66' in record.msg


class TestSecureFormatter:
    """Test formatting."""

    def _exc_info(self):
        try:
            raise ValueError("bad input")
        except ValueError:
            return sys.exc_info()

    def test_default_event_type(self):
        output = SecureFormatter(production=True).format(_record('hello'))
        assert '[general] hello' in output

    def test_event_type_kept(self):
        output = SecureFormatter(production=True).format(_record('blocked', event_type='waf_block'))
        assert '[waf_block]' in output

    def test_production_hides_traceback(self):
        output = SecureFormatter(production=True).format(_record('failed', exc_info=self._exc_info()))

        assert 'ValueError: bad input' in output
        assert 'Traceback' not in output

    def test_development_keeps_traceback(self):
        output = SecureFormatter(production=False).format(_record('failed', exc_info=self._exc_info()))
        assert 'Traceback' in output

    def test_production_from_environment(self, monkeypatch):
        monkeypatch.setenv('ENVIRONMENT', 'development')
        assert SecureFormatter().production is False
        monkeypatch.setenv('ENVIRONMENT', 'production')
        assert SecureFormatter().production is True


class TestConfigureLogging:
    """Test root logger setup."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        level = root.level
        yield
        for handler in list(root.handlers):
            if getattr(handler, '_edgeguard', False):
                root.removeHandler(handler)
        root.setLevel(level)

    def test_single_handler(self):
        configure_logging('DEBUG')
        root = configure_logging('WARNING')

        ours = [h for h in root.handlers if getattr(h, '_edgeguard', False)]
        assert len(ours) == 1
        assert root.level == logging.WARNING
        assert any(isinstance(f, SensitiveDataFilter) for f in ours[0].filters)

    def test_unknown_level_defaults_to_info(self):
        assert configure_logging('LOUD').level == logging.INFO
