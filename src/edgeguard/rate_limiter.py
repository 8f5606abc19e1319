#!/usr/bin/env python3
"""
Sliding-window rate limiting per IP and per authenticated user.

Each identifier keeps the timestamps of its recent requests in the KV store.
On every check the list is pruned to the trailing window, compared against
a burst-adjusted limit and, if the request is allowed, written back with a
TTL slightly longer than the window.

Failure policy:
- Fail-open on KV errors: the request is allowed and the nominal limit is
  reported as remaining. Availability wins over strict enforcement.
- The read-modify-write is not atomic; concurrent requests for the same
  identifier may under-count. Rate limiting is a soft control.
"""

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .block_record import BlockRecord, format_score
from .config import GatewayConfig
from .errors import KVStoreError
from .kv_store import KVStore
from .request_context import GatewayResponse, Identity, RequestDescriptor


@dataclass
class RateWindowRecord:
    """Request timestamps (epoch ms) observed for one identifier."""

    requests: List[int] = field(default_factory=list)
    first_request: Optional[int] = None

    @classmethod
    def from_dict(cls, data) -> 'RateWindowRecord':
        if not isinstance(data, dict):
            return cls()
        requests = []
        for value in data.get('requests') or []:
            try:
                requests.append(int(value))
            except (TypeError, ValueError):
                continue
        return cls(requests=requests, first_request=data.get('firstRequest'))

    def to_dict(self) -> dict:
        return {'requests': self.requests, 'firstRequest': self.first_request}

    def prune(self, window_start_ms: int) -> List[int]:
        """Timestamps strictly newer than window_start_ms."""
        return [ts for ts in self.requests if ts > window_start_ms]


@dataclass(frozen=True)
class RateLimitResult:
    """
    Outcome of one rate-limit check.

    `limit` is the effective (burst-adjusted) limit on the normal path and
    the nominal limit when the check failed open.
    """

    allowed: bool
    remaining: int
    reset_time: int  # epoch ms
    identifier: str
    limit: int

    def __post_init__(self):
        if self.remaining < 0:
            raise ValueError("Remaining cannot be negative")

    def to_headers(self, policy: str) -> Dict[str, str]:
        """X-RateLimit-* headers describing this result."""
        return {
            'X-RateLimit-Limit': str(self.limit),
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': str(self.reset_time // 1000),
            'X-RateLimit-Policy': policy,
        }


class RateLimiter:
    """
    Sliding-window rate limiter backed by a KV store.

    Keys:
        rate_limit:<identifier>  RateWindowRecord, TTL window + 60s
        blocked:<identifier>     BlockRecord, TTL block duration
    """

    KEY_PREFIX = "rate_limit"
    BLOCK_PREFIX = "blocked"
    TTL_BUFFER_SECONDS = 60
    DEFAULT_BLOCK_MINUTES = 15
    MAX_IDENTIFIER_LENGTH = 256

    STATE_HEADERS_KEY = 'rate_limit_headers'

    def __init__(
        self,
        kv_store: KVStore,
        config: GatewayConfig,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            kv_store: Shared counter store
            config: Gateway configuration
            clock: Epoch-seconds clock, injectable for tests

        Raises:
            ValueError: If kv_store is None
        """
        if kv_store is None:
            raise ValueError("KV store is required for rate limiting")

        self.kv = kv_store
        self.config = config
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def _validate_identifier(self, identifier: str) -> None:
        if not identifier or not isinstance(identifier, str):
            raise ValueError("Identifier must be non-empty string")
        if len(identifier) > self.MAX_IDENTIFIER_LENGTH:
            raise ValueError("Identifier too long")

    def check_rate_limit(
        self,
        identifier: str,
        limit: int,
        is_user: bool = False,
    ) -> RateLimitResult:
        """
        Check and record one request for an identifier.

        Args:
            identifier: 'ip:<addr>' or 'user:<id>'
            limit: Nominal requests per window
            is_user: Whether the identifier is an authenticated user

        Returns:
            RateLimitResult (allowed on KV failure)

        Raises:
            ValueError: If identifier or limit is invalid
        """
        self._validate_identifier(identifier)
        if limit <= 0:
            raise ValueError("Limit must be positive")

        now_ms = int(self.clock() * 1000)
        window_ms = self.config.window_seconds * 1000

        try:
            key = f"{self.KEY_PREFIX}:{identifier}"
            record = RateWindowRecord.from_dict(self.kv.get_json(key))
            valid_requests = record.prune(now_ms - window_ms)

            burst_limit = int(math.floor(limit * self.config.burst_multiplier))
            current_count = len(valid_requests)
            allowed = current_count < burst_limit

            if allowed:
                valid_requests.append(now_ms)
                kept = valid_requests[-burst_limit:]
                self.kv.put_json(
                    key,
                    RateWindowRecord(
                        requests=kept,
                        first_request=kept[0] if kept else now_ms,
                    ).to_dict(),
                    ttl_seconds=math.ceil(window_ms / 1000) + self.TTL_BUFFER_SECONDS,
                )

            return RateLimitResult(
                allowed=allowed,
                remaining=max(0, burst_limit - current_count - (1 if allowed else 0)),
                reset_time=math.ceil(now_ms / 60000) * 60000,
                identifier=identifier,
                limit=burst_limit,
            )

        except KVStoreError as e:
            self.logger.error(
                f"Rate limiter store error for {identifier[:32]} "
                f"(user={is_user}), allowing: {e}"
            )
            return RateLimitResult(
                allowed=True,
                remaining=limit,
                reset_time=now_ms + 60000,
                identifier=identifier,
                limit=limit,
            )

    def check_ip_rate_limit(self, ip: str) -> RateLimitResult:
        """Rate limit for an IP address."""
        return self.check_rate_limit(f"ip:{ip}", self.config.ip_rate_limit, False)

    def check_user_rate_limit(self, user_id: str) -> RateLimitResult:
        """Rate limit for an authenticated user."""
        return self.check_rate_limit(f"user:{user_id}", self.config.user_rate_limit, True)

    def get_block_record(self, identifier: str) -> Optional[BlockRecord]:
        """
        Fetch the deny-list record for an identifier.

        Raises:
            KVStoreError: If the store is unavailable
        """
        self._validate_identifier(identifier)
        raw = self.kv.get(f"{self.BLOCK_PREFIX}:{identifier}")
        if raw is None:
            return None
        try:
            return BlockRecord.from_dict(json.loads(raw))
        except ValueError:
            return BlockRecord.from_dict(raw)

    def is_blocked(self, identifier: str) -> bool:
        """Check the temporary deny-list. Fails open on store errors."""
        try:
            return self.get_block_record(identifier) is not None
        except KVStoreError as e:
            self.logger.error(f"Deny-list lookup failed for {identifier[:32]}, allowing: {e}")
            return False

    def block_identifier(
        self,
        identifier: str,
        duration_minutes: int = DEFAULT_BLOCK_MINUTES,
        reason: str = 'Temporarily blocked due to suspicious activity',
        score: Optional[float] = None,
    ) -> BlockRecord:
        """
        Temporarily deny an identifier independent of its sliding window.

        Raises:
            KVStoreError: If the store is unavailable
        """
        self._validate_identifier(identifier)
        record = BlockRecord.create(
            reason=reason,
            duration_minutes=duration_minutes,
            now=self.clock(),
            score=score,
            source='rate_limiter',
        )
        self.kv.put_json(
            f"{self.BLOCK_PREFIX}:{identifier}",
            record.to_dict(),
            ttl_seconds=duration_minutes * 60,
        )
        self.logger.warning(
            f"BLOCK: {identifier[:32]} duration={duration_minutes}m reason={reason}"
        )
        return record

    def unblock(self, identifier: str) -> bool:
        """Manually remove an identifier from the deny-list."""
        self._validate_identifier(identifier)
        removed = self.kv.delete(f"{self.BLOCK_PREFIX}:{identifier}")
        if removed:
            self.logger.warning(f"MANUAL UNBLOCK: {identifier[:32]}")
        return removed

    def evaluate_request(
        self,
        request: RequestDescriptor,
        client_ip: str,
        identity: Optional[Identity] = None,
    ) -> Optional[GatewayResponse]:
        """
        Rate-limit stage: None to continue, or a 429 response.

        Admin identities bypass the stage entirely. The more restrictive of
        the IP and user results governs; its headers are stored on the
        request for the post-response hook.
        """
        if identity is not None and identity.is_admin:
            return None

        block = self._lookup_block(f"ip:{client_ip}")
        if block is not None:
            headers = {
                'Retry-After': str(self._retry_after(f"ip:{client_ip}")),
                'X-Block-Reason': block.reason,
            }
            if block.score is not None:
                headers['X-Block-Score'] = format_score(block.score)
            return GatewayResponse.text(
                429, 'IP temporarily blocked due to suspicious activity', headers
            )

        ip_result = self.check_ip_rate_limit(client_ip)
        user_result = None
        if identity is not None and identity.id:
            user_result = self.check_user_rate_limit(identity.id)

        active = ip_result
        if user_result is not None and user_result.remaining < ip_result.remaining:
            active = user_result

        headers = active.to_headers(self.config.rate_limit_policy)

        if not active.allowed:
            self.logger.warning(
                f"Rate limit exceeded: {active.identifier[:40]} "
                f"limit={active.limit} user={identity.id if identity else 'anonymous'}"
            )
            headers['Retry-After'] = '60'
            return GatewayResponse.text(429, 'Rate limit exceeded', headers)

        request.state[self.STATE_HEADERS_KEY] = headers
        return None

    def _lookup_block(self, identifier: str) -> Optional[BlockRecord]:
        try:
            return self.get_block_record(identifier)
        except KVStoreError as e:
            self.logger.error(f"Deny-list lookup failed for {identifier[:32]}, allowing: {e}")
            return None

    def _retry_after(self, identifier: str) -> int:
        try:
            remaining = self.kv.ttl(f"{self.BLOCK_PREFIX}:{identifier}")
        except KVStoreError:
            remaining = -1
        if remaining and remaining > 0:
            return remaining
        return self.DEFAULT_BLOCK_MINUTES * 60
