#!/usr/bin/env python3
"""
Logging filters and formatter that keep credentials and personal data out
of gateway logs.
"""

import logging
import os
import re
import sys
from typing import Optional


DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(event_type)s] %(message)s'


class SensitiveDataFilter(logging.Filter):
    """Redact secrets, card numbers and e-mail addresses from log records."""

    def __init__(self):
        super().__init__()
        self.sensitive_patterns = [
            (re.compile(r'password["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE), 'password=***REDACTED***'),
            (re.compile(r'api[_-]?key["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE), 'api_key=***REDACTED***'),
            (re.compile(r'token["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE), 'token=***REDACTED***'),
            (re.compile(r'secret["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE), 'secret=***REDACTED***'),
            (re.compile(r'authorization:\s*Bearer\s+(\S+)', re.IGNORECASE), 'Authorization: Bearer ***REDACTED***'),
            (re.compile(r'\b(?:\d[ -]?){12,18}\d\b'), '***CARD_REDACTED***'),
            (re.compile(r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}'), '***EMAIL_REDACTED***'),
        ]

    def redact(self, text: str) -> str:
        for pattern, replacement in self.sensitive_patterns:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record):
        if record.args:
            # Render first so redaction sees the final text
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError, OverflowError):
                record.args = tuple(self.redact(str(arg)) for arg in record.args)
        record.msg = self.redact(str(record.msg))
        return True


class SecureFormatter(logging.Formatter):
    """
    Formatter that guarantees an `event_type` attribute and hides
    tracebacks in production.
    """

    def __init__(self, fmt: Optional[str] = None, production: Optional[bool] = None, **kwargs):
        super().__init__(fmt or DEFAULT_FORMAT, **kwargs)
        if production is None:
            production = os.getenv('ENVIRONMENT', 'production') == 'production'
        self.production = production

    def format(self, record):
        if not hasattr(record, 'event_type'):
            record.event_type = 'general'

        if record.exc_info and self.production:
            exc_type, exc_value, _ = record.exc_info
            record.exc_text = f"{exc_type.__name__}: {exc_value}"
            record.exc_info = None

        return super().format(record)


def configure_logging(
    level: str = 'INFO',
    fmt: Optional[str] = None,
    production: Optional[bool] = None,
) -> logging.Logger:
    """Install a redacting stream handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, '_edgeguard', False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SecureFormatter(fmt, production=production))
    handler.addFilter(SensitiveDataFilter())
    handler._edgeguard = True
    root.addHandler(handler)
    return root
