#!/usr/bin/env python3
"""
Integration tests for the security gateway with real Redis.

These tests require a running Redis instance and verify:
- Sliding-window counters shared through Redis
- Blocklist escalation and TTLs in Redis
- Statistics and alerts persisted for the monitoring endpoints
"""

import json
import os

import pytest
import redis

from src.edgeguard import GatewayConfig, RedisKVStore, create_security_gateway
from tests.conftest import make_request


pytestmark = pytest.mark.integration


@pytest.fixture
def redis_client():
    """Create Redis client for integration tests with cleanup."""
    client = redis.Redis(
        host=os.getenv('REDIS_HOST', 'localhost'),
        port=int(os.getenv('REDIS_PORT', '6379')),
        password=os.getenv('REDIS_PASSWORD', None),
        db=15,  # Use db 15 for tests to avoid conflicts
        decode_responses=False,
    )

    try:
        client.ping()
    except redis.ConnectionError:
        pytest.skip("Redis not available for integration tests")

    client.flushdb()
    yield client
    client.flushdb()
    client.close()


@pytest.fixture
def kv_store(redis_client):
    return RedisKVStore(redis_client, namespace='edgeguard-test')


class TestGatewayWithRedis:
    """End-to-end gateway decisions backed by Redis."""

    def test_rate_limit_shared_between_gateways(self, kv_store):
        config = GatewayConfig(ip_rate_limit=4, waf_enabled=True, ddos_enabled=False)
        first = create_security_gateway(config, kv_store)
        second = create_security_gateway(config, kv_store)

        for gateway in (first, second, first, second, first, second):
            assert gateway.process_request(make_request(ip='198.51.100.40')) is None

        response = first.process_request(make_request(ip='198.51.100.40'))
        assert response.status == 429

    def test_waf_blocklist_ttl(self, kv_store, redis_client):
        gateway = create_security_gateway(GatewayConfig(waf_enabled=True), kv_store)
        request = make_request('POST', '/api', ip='192.0.2.80', body=b'1; DROP TABLE users;')

        assert gateway.process_request(request).status == 403
        ttl = redis_client.ttl('edgeguard-test:blocklist:ip:192.0.2.80')
        assert 1790 <= ttl <= 1800

        follow_up = gateway.process_request(make_request(ip='192.0.2.80'))
        assert follow_up.headers['X-Security-Rules'] == 'ip_blocklist'

    def test_stats_and_alerts_persisted(self, kv_store):
        gateway = create_security_gateway(GatewayConfig(waf_enabled=True), kv_store)
        gateway.process_request(make_request(url='/?q=<script>x</script>', ip='192.0.2.81'))
        gateway.process_request(make_request(ip='198.51.100.41'))

        response = gateway.process_request(make_request(url='/debug/security'))
        payload = json.loads(response.body)

        assert payload['metrics']['waf']['threatsBlocked'] == 1
        assert payload['metrics']['waf']['totalAnalyzed'] == 2
        assert gateway.monitor.get_recent_alerts()[0]['type'] == 'waf'
        assert 'recent_alerts' not in payload

    def test_status_reports_redis(self, kv_store):
        gateway = create_security_gateway(GatewayConfig(), kv_store)
        assert gateway.get_status()['kvStore'] == 'up'
