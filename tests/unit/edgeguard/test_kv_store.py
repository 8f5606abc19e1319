#!/usr/bin/env python3
"""
Unit tests for the KV store implementations.

Tests cover:
- Memory store TTL expiry driven by the injected clock
- JSON helpers and corrupted payloads
- Redis store command mapping and namespacing
- Redis errors translated to KVStoreError
"""

import pytest
from unittest.mock import Mock

import redis

from src.edgeguard.errors import KVStoreError
from src.edgeguard.kv_store import MemoryKVStore, RedisKVStore


class TestMemoryKVStore:
    """Test in-process store."""

    def test_put_get_delete(self, store):
        store.put('a', '1')
        assert store.get('a') == '1'
        assert store.delete('a') is True
        assert store.get('a') is None
        assert store.delete('a') is False

    def test_ttl_expiry(self, store, clock):
        store.put('k', 'v', ttl_seconds=60)
        assert store.ttl('k') == 60

        clock.advance(59)
        assert store.get('k') == 'v'
        assert store.ttl('k') == 1

        clock.advance(1)
        assert store.get('k') is None
        assert store.ttl('k') == -2

    def test_ttl_without_expiry(self, store):
        store.put('k', 'v')
        assert store.ttl('k') == -1

    def test_keys_prefix(self, store, clock):
        store.put('blocked:ip:1', 'x')
        store.put('blocked:ip:2', 'x', ttl_seconds=5)
        store.put('rate_limit:ip:1', 'x')

        assert sorted(store.keys('blocked:')) == ['blocked:ip:1', 'blocked:ip:2']
        clock.advance(10)
        assert store.keys('blocked:') == ['blocked:ip:1']

    def test_json_helpers(self, store):
        store.put_json('j', {'requests': [1, 2]}, ttl_seconds=10)
        assert store.get_json('j') == {'requests': [1, 2]}
        assert store.get_json('missing') is None

    def test_corrupted_json_treated_as_absent(self, store):
        store.put('j', '{not json')
        assert store.get_json('j') is None

    def test_expired_keys_purged_on_write(self, store, clock):
        for i in range(1000):
            store.put(f'rate_limit:ip:10.0.{i // 256}.{i % 256}', '[]', ttl_seconds=120)
        store.put('persistent', 'x')
        assert store.entry_count() == 1001

        clock.advance(3600)
        store.put('rate_limit:ip:198.51.100.1', '[]', ttl_seconds=120)

        assert store.entry_count() == 2
        assert store.get('persistent') == 'x'

    def test_overwrite_keeps_later_expiry(self, store, clock):
        store.put('k', 'old', ttl_seconds=10)
        clock.advance(5)
        store.put('k', 'new', ttl_seconds=60)

        clock.advance(10)
        store.put('other', 'x')

        assert store.get('k') == 'new'
        assert store.ttl('k') == 50

    def test_clear(self, store):
        store.put('a', '1')
        store.clear()
        assert store.get('a') is None

    def test_ping(self):
        assert MemoryKVStore().ping() is True


@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    mock = Mock(spec=redis.Redis)
    mock.ping.return_value = True
    return mock


class TestRedisKVStore:
    """Test Redis-backed store."""

    def test_requires_client(self):
        with pytest.raises(ValueError):
            RedisKVStore(None)

    def test_get_decodes_bytes(self, mock_redis):
        mock_redis.get.return_value = b'{"a": 1}'
        store = RedisKVStore(mock_redis)

        assert store.get('key') == '{"a": 1}'
        mock_redis.get.assert_called_once_with('edgeguard:key')

    def test_get_missing(self, mock_redis):
        mock_redis.get.return_value = None
        assert RedisKVStore(mock_redis).get('key') is None

    def test_put_with_ttl_uses_setex(self, mock_redis):
        RedisKVStore(mock_redis).put('key', 'value', ttl_seconds=120)
        mock_redis.setex.assert_called_once_with('edgeguard:key', 120, 'value')

    def test_put_without_ttl_uses_set(self, mock_redis):
        RedisKVStore(mock_redis, namespace='ns').put('key', 'value')
        mock_redis.set.assert_called_once_with('ns:key', 'value')

    def test_delete_and_ttl(self, mock_redis):
        mock_redis.delete.return_value = 1
        mock_redis.ttl.return_value = 42
        store = RedisKVStore(mock_redis)

        assert store.delete('key') is True
        assert store.ttl('key') == 42

    def test_keys_strip_namespace(self, mock_redis):
        mock_redis.scan_iter.return_value = iter([b'edgeguard:blocked:ip:1', b'edgeguard:blocked:ip:2'])
        store = RedisKVStore(mock_redis)

        assert store.keys('blocked:') == ['blocked:ip:1', 'blocked:ip:2']
        mock_redis.scan_iter.assert_called_once_with(match='edgeguard:blocked:*', count=500)

    @pytest.mark.parametrize('error', [
        redis.ConnectionError("down"),
        redis.TimeoutError("slow"),
        redis.ResponseError("bad"),
    ])
    def test_redis_errors_translated(self, mock_redis, error):
        mock_redis.get.side_effect = error
        mock_redis.setex.side_effect = error
        store = RedisKVStore(mock_redis)

        with pytest.raises(KVStoreError):
            store.get('key')
        with pytest.raises(KVStoreError):
            store.put('key', 'v', ttl_seconds=1)

    def test_oversized_key_rejected(self, mock_redis):
        with pytest.raises(KVStoreError):
            RedisKVStore(mock_redis).get('k' * 1000)
        mock_redis.get.assert_not_called()

    def test_ping_failure_returns_false(self, mock_redis):
        mock_redis.ping.side_effect = redis.ConnectionError("down")
        assert RedisKVStore(mock_redis).ping() is False
