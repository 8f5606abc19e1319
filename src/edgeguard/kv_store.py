#!/usr/bin/env python3
"""
Key-value store abstraction for counters, pattern history and blocklists.

Every piece of per-identifier state the gateway keeps lives behind this
interface and expires through TTLs. Two implementations are provided:

- RedisKVStore: shared store for production deployments
- MemoryKVStore: in-process store with a pluggable clock, used for local
  development and deterministic tests

Consistency:
- Single-key get/put is atomic (Redis guarantees it, the memory store
  takes a lock)
- A read followed by a write is NOT atomic across concurrent requests;
  callers accept soft under-counting
"""

import heapq
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from .errors import KVStoreError


class KVStore(ABC):
    """Minimal get/put/delete store with TTL semantics."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value for key, or None if absent or expired."""

    @abstractmethod
    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store value under key, expiring after ttl_seconds if given."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove key. Returns True if something was deleted."""

    @abstractmethod
    def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 without expiry, -2 when missing."""

    @abstractmethod
    def keys(self, prefix: str) -> List[str]:
        """List live keys starting with prefix."""

    @abstractmethod
    def ping(self) -> bool:
        """Check the backend is reachable."""

    def get_json(self, key: str) -> Optional[Any]:
        """
        Fetch and decode a JSON value.

        Undecodable payloads are treated as absent so a corrupted record
        never blocks a request on its own.
        """
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logging.getLogger(__name__).warning(
                f"Discarding undecodable value for key {key[:64]}"
            )
            return None

    def put_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Encode value as JSON and store it."""
        self.put(key, json.dumps(value, separators=(',', ':')), ttl_seconds)


class RedisKVStore(KVStore):
    """
    KV store backed by a shared Redis instance.

    All redis-py errors are translated into KVStoreError so components
    only need to handle one exception type to fail open.
    """

    MAX_KEY_LENGTH = 512  # Prevent oversized keys reaching Redis

    def __init__(self, redis_client: redis.Redis, namespace: str = "edgeguard"):
        """
        Initialize Redis-backed store.

        Args:
            redis_client: Connected Redis client
            namespace: Prefix applied to every key

        Raises:
            ValueError: If redis_client is None
        """
        if redis_client is None:
            raise ValueError("Redis client is required")

        self.redis = redis_client
        self.namespace = namespace
        self.logger = logging.getLogger(__name__)

    def _key(self, key: str) -> str:
        if not key or not isinstance(key, str):
            raise KVStoreError("Key must be non-empty string")
        if len(key) > self.MAX_KEY_LENGTH:
            raise KVStoreError("Key too long")
        return f"{self.namespace}:{key}" if self.namespace else key

    def _strip(self, key) -> str:
        if isinstance(key, bytes):
            key = key.decode('utf-8', errors='replace')
        if self.namespace and key.startswith(self.namespace + ':'):
            return key[len(self.namespace) + 1:]
        return key

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.redis.get(self._key(key))
        except redis.RedisError as e:
            raise KVStoreError(f"Redis get failed: {e}")
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode('utf-8', errors='replace')
        return str(value)

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                self.redis.setex(self._key(key), int(ttl_seconds), value)
            else:
                self.redis.set(self._key(key), value)
        except redis.RedisError as e:
            raise KVStoreError(f"Redis put failed: {e}")

    def delete(self, key: str) -> bool:
        try:
            return bool(self.redis.delete(self._key(key)))
        except redis.RedisError as e:
            raise KVStoreError(f"Redis delete failed: {e}")

    def ttl(self, key: str) -> int:
        try:
            return int(self.redis.ttl(self._key(key)))
        except redis.RedisError as e:
            raise KVStoreError(f"Redis ttl failed: {e}")

    def keys(self, prefix: str) -> List[str]:
        try:
            pattern = f"{self._key(prefix)}*" if prefix else f"{self.namespace}:*"
            return [self._strip(k) for k in self.redis.scan_iter(match=pattern, count=500)]
        except redis.RedisError as e:
            raise KVStoreError(f"Redis scan failed: {e}")

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError:
            return False


class MemoryKVStore(KVStore):
    """
    In-process KV store with TTL expiry.

    Expiry is evaluated against the injected clock, which lets tests move
    time forward without sleeping. Reads drop the key they touch once it has
    expired; every write also purges all expired keys, using a heap ordered
    by expiry, so identifiers that go quiet do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._expiry_heap: List[Tuple[float, str]] = []
        self._lock = threading.Lock()

    def entry_count(self) -> int:
        """Entries held, including expired ones not yet purged."""
        with self._lock:
            return len(self._data)

    def _purge_expired(self) -> None:
        now = self._clock()
        heap = self._expiry_heap
        while heap and heap[0][0] <= now:
            expires_at, key = heapq.heappop(heap)
            entry = self._data.get(key)
            # Skip heap entries left behind by an overwrite or delete
            if entry is not None and entry[1] == expires_at:
                del self._data[key]

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None
        if ttl_seconds is not None and ttl_seconds > 0:
            expires_at = self._clock() + ttl_seconds
        with self._lock:
            self._purge_expired()
            self._data[key] = (str(value), expires_at)
            if expires_at is not None:
                heapq.heappush(self._expiry_heap, (expires_at, key))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, int(round(entry[1] - self._clock())))

    def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k)]

    def ping(self) -> bool:
        return True

    def clear(self) -> None:
        """Drop all keys."""
        with self._lock:
            self._data.clear()
            self._expiry_heap.clear()
