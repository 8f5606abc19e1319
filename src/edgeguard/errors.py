#!/usr/bin/env python3
"""
Exception hierarchy for the edge security gateway.

Enforcement decisions (blocks) are never raised; they are returned as
responses. Exceptions here describe infrastructure and input failures that
callers recover from locally.
"""


class GatewayError(Exception):
    """Base exception for gateway errors."""
    pass


class KVStoreError(GatewayError):
    """Key-value store unavailable or operation failed."""
    pass


class ConfigurationError(GatewayError):
    """Configuration could not be interpreted."""
    pass


class RequestParseError(GatewayError):
    """Inbound request could not be parsed into a descriptor."""
    pass
