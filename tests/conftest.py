#!/usr/bin/env python3
"""Shared fixtures for EdgeGuard tests."""

import pytest

from src.edgeguard.config import GatewayConfig
from src.edgeguard.errors import KVStoreError
from src.edgeguard.kv_store import KVStore, MemoryKVStore
from src.edgeguard.request_context import RequestDescriptor


START_TIME = 1700000000.0  # 2023-11-14T22:13:20Z, on a minute boundary + 20s

BROWSER_UA = (
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0 Safari/537.36'
)


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingKVStore(KVStore):
    """Store whose every operation fails, as during a backend outage."""

    def __init__(self):
        self.calls = 0

    def _fail(self, *args, **kwargs):
        self.calls += 1
        raise KVStoreError("store unavailable")

    get = put = delete = ttl = keys = _fail

    def ping(self) -> bool:
        return False


def make_request(
    method: str = 'GET',
    url: str = '/',
    ip: str = '203.0.113.10',
    user_agent: str = BROWSER_UA,
    body=None,
    headers=None,
) -> RequestDescriptor:
    all_headers = {'CF-Connecting-IP': ip}
    if user_agent is not None:
        all_headers['User-Agent'] = user_agent
    all_headers.update(headers or {})
    return RequestDescriptor(method=method, url=url, headers=all_headers, body=body)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryKVStore(clock=clock)


@pytest.fixture
def failing_store():
    return FailingKVStore()


@pytest.fixture
def config():
    """All protections on, default thresholds."""
    return GatewayConfig(waf_enabled=True, ddos_enabled=True)
