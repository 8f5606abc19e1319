#!/usr/bin/env python3
"""
DDoS and traffic anomaly detection.

Keeps a rolling history of request patterns per IP (last 100 requests
inside the monitoring window) and scores it from seven signals:

    signal                     contribution
    request frequency          0.4 x frequency score, above 70% saturation
    path uniformity            0.2 x uniformity score, above 80
    single User-Agent          +15 with more than 10 requests
    regular response times     +10, variance < 10 over more than 10 samples
    request bursts             0.2 x burst score, above 50
    GET-only traffic           +10 with more than 20 requests
    error rate                 +20 above 50% with more than 10 requests

The final score is capped at 100; an IP is blocked once the score reaches
`anomaly_threshold`. Scoring is a pure function of the history and the
evaluation time, so replaying a sequence yields the same score.

Failure policy: store errors fail open with a zero score.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .block_record import BlockRecord, format_score
from .config import GatewayConfig
from .errors import KVStoreError
from .kv_store import KVStore
from .metrics import ANOMALY_SCORE
from .request_context import GatewayResponse, Identity, RequestDescriptor


MAX_PATTERN_HISTORY = 100


@dataclass(frozen=True)
class RequestPattern:
    """One observed request (timestamp in epoch ms)."""

    timestamp: int
    path: str
    method: str
    user_agent: str
    response_time: float = 0.0
    status_code: int = 200

    @classmethod
    def from_dict(cls, data: Dict) -> Optional['RequestPattern']:
        try:
            return cls(
                timestamp=int(data['timestamp']),
                path=str(data.get('path', '/')),
                method=str(data.get('method', 'GET')),
                user_agent=str(data.get('userAgent', '')),
                response_time=float(data.get('responseTime') or 0),
                status_code=int(data.get('statusCode') or 200),
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            return None

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp,
            'path': self.path,
            'method': self.method,
            'userAgent': self.user_agent,
            'responseTime': self.response_time,
            'statusCode': self.status_code,
        }


@dataclass(frozen=True)
class AnomalyResult:
    """Transient anomaly score for one request."""

    score: float
    reasons: Tuple[str, ...] = ()
    should_block: bool = False
    confidence: float = 0.0

    def __post_init__(self):
        if not (0 <= self.score <= 100):
            raise ValueError("Score must be within 0-100")
        if not (0 <= self.confidence <= 1):
            raise ValueError("Confidence must be within 0-1")

    def to_dict(self) -> Dict:
        return {
            'score': self.score,
            'reasons': list(self.reasons),
            'shouldBlock': self.should_block,
            'confidence': self.confidence,
        }


def _variance(values: Sequence[float]) -> float:
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def path_frequency(patterns: Sequence[RequestPattern]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for pattern in patterns:
        counts[pattern.path] = counts.get(pattern.path, 0) + 1
    return counts


def uniformity_score(frequency: Dict[str, int]) -> float:
    """
    0-100; higher means hits are spread evenly (or concentrated on one path).

    A single path is maximally uniform. Otherwise the score falls with the
    variance-to-mean ratio of per-path counts.
    """
    if len(frequency) <= 1:
        return 100.0
    counts = list(frequency.values())
    average = sum(counts) / len(counts)
    variance = _variance(counts)
    return min(max(0.0, 100 - (variance / average) * 10), 100.0)


def burst_score(patterns: Sequence[RequestPattern], now_ms: int, window_minutes: int = 5) -> float:
    """
    0-100 burst score.

    Compares the request rate inside the last 10s, 30s and 60s against the
    average rate over the monitoring window; any sub-window above 3x the
    average scores 20 per multiple, capped at 100.
    """
    if len(patterns) < 10:
        return 0.0

    expected_rate = len(patterns) / (window_minutes * 60)
    best = 0.0
    for interval_ms in (10000, 30000, 60000):
        in_window = sum(1 for p in patterns if p.timestamp > now_ms - interval_ms)
        actual_rate = in_window / (interval_ms / 1000)
        if actual_rate > expected_rate * 3:
            best = max(best, min((actual_rate / expected_rate) * 20, 100.0))
    return best


def score_patterns(
    patterns: Sequence[RequestPattern],
    now_ms: int,
    threshold_requests: int,
    anomaly_threshold: int,
    window_minutes: int = 5,
) -> AnomalyResult:
    """
    Score a request history. Pure: same inputs, same result.

    Args:
        patterns: History including the current request
        now_ms: Evaluation time (epoch ms)
        threshold_requests: Requests/minute considered saturation
        anomaly_threshold: Blocking threshold (0-100)
        window_minutes: Monitoring window used for the burst baseline
    """
    if not patterns:
        return AnomalyResult(score=0.0)

    reasons: List[str] = []
    score = 0.0
    total = len(patterns)

    recent = sum(1 for p in patterns if p.timestamp > now_ms - 60000)
    frequency = min((recent / threshold_requests) * 100, 100.0)
    if frequency > 70:
        score += frequency * 0.4
        reasons.append(f"High request frequency: {recent} req/min")

    uniformity = uniformity_score(path_frequency(patterns))
    if uniformity > 80:
        score += uniformity * 0.2
        reasons.append('Highly uniform request patterns detected')

    if len({p.user_agent for p in patterns}) == 1 and total > 10:
        score += 15
        reasons.append('Consistent User-Agent across many requests')

    response_times = [p.response_time for p in patterns if p.response_time > 0]
    if len(response_times) > 10 and _variance(response_times) < 10:
        score += 10
        reasons.append('Unnaturally consistent response times')

    burst = burst_score(patterns, now_ms, window_minutes)
    if burst > 50:
        score += burst * 0.2
        reasons.append('Request burst pattern detected')

    if total > 20 and all(p.method == 'GET' for p in patterns):
        score += 10
        reasons.append('Only GET requests detected')

    errors = sum(1 for p in patterns if p.status_code >= 400)
    error_rate = errors / total
    if error_rate > 0.5 and total > 10:
        score += 20
        reasons.append(f"High error rate: {error_rate * 100:.1f}%")

    final = round(min(score, 100.0), 2)
    return AnomalyResult(
        score=final,
        reasons=tuple(reasons),
        should_block=final >= anomaly_threshold,
        confidence=min(final / 100, 1.0),
    )


class DDoSDetector:
    """
    Per-IP anomaly detector backed by a KV store.

    Keys:
        ddos_history:<ip>  pattern history, TTL window + 300s
        ddos_block:<ip>    BlockRecord, TTL block_duration_minutes
    """

    HISTORY_PREFIX = "ddos_history"
    BLOCK_PREFIX = "ddos_block"
    HISTORY_TTL_BUFFER_SECONDS = 300
    LOG_SCORE_THRESHOLD = 30

    STATE_RESULT_KEY = 'anomaly_result'

    def __init__(
        self,
        config: GatewayConfig,
        history_store: KVStore,
        blocklist: Optional[KVStore] = None,
        escalation=None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize detector.

        Args:
            config: Gateway configuration
            history_store: Store for pattern history
            blocklist: Store for block records (defaults to history_store)
            escalation: Optional RateLimiter whose deny-list also receives
                anomaly blocks
            clock: Epoch-seconds clock
        """
        if history_store is None:
            raise ValueError("KV store is required for DDoS detection")

        self.config = config
        self.kv = history_store
        self.blocklist = blocklist or history_store
        self.escalation = escalation
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return self.config.ddos_enabled

    @property
    def window_ms(self) -> int:
        return self.config.monitoring_window_minutes * 60 * 1000

    def load_history(self, ip: str, now_ms: int) -> List[RequestPattern]:
        """
        Patterns for an IP inside the monitoring window.

        Raises:
            KVStoreError: If the store is unavailable
        """
        data = self.kv.get_json(f"{self.HISTORY_PREFIX}:{ip}") or {}
        patterns = []
        for item in data.get('patterns', []) if isinstance(data, dict) else []:
            pattern = RequestPattern.from_dict(item) if isinstance(item, dict) else None
            if pattern is not None and pattern.timestamp > now_ms - self.window_ms:
                patterns.append(pattern)
        return patterns

    def save_history(self, ip: str, patterns: Sequence[RequestPattern], now_ms: int) -> None:
        """
        Persist the newest MAX_PATTERN_HISTORY patterns.

        Raises:
            KVStoreError: If the store is unavailable
        """
        self.kv.put_json(
            f"{self.HISTORY_PREFIX}:{ip}",
            {
                'patterns': [p.to_dict() for p in list(patterns)[-MAX_PATTERN_HISTORY:]],
                'lastUpdate': now_ms,
            },
            ttl_seconds=self.window_ms // 1000 + self.HISTORY_TTL_BUFFER_SECONDS,
        )

    def analyze_request_pattern(
        self,
        ip: str,
        request: RequestDescriptor,
        response_time: Optional[float] = None,
    ) -> AnomalyResult:
        """
        Record the request and score the IP's recent history.

        Args:
            ip: Client address
            request: Inbound request
            response_time: Observed response time (ms), if known

        Returns:
            AnomalyResult (zero score when disabled or on store failure)
        """
        if not self.enabled:
            return AnomalyResult(score=0.0)

        now_ms = int(self.clock() * 1000)
        try:
            patterns = self.load_history(ip, now_ms)
            patterns.append(RequestPattern(
                timestamp=now_ms,
                path=request.path,
                method=request.method,
                user_agent=request.user_agent or '',
                response_time=float(response_time or 0),
                status_code=200,
            ))
            patterns = patterns[-MAX_PATTERN_HISTORY:]

            result = self.detect_anomalies(patterns, now_ms)
            self.save_history(ip, patterns, now_ms)
        except KVStoreError as e:
            self.logger.error(f"DDoS analysis store error for {ip[:32]}, allowing: {e}")
            return AnomalyResult(score=0.0, reasons=('Analysis error',))

        ANOMALY_SCORE.observe(result.score)
        return result

    def detect_anomalies(self, patterns: Sequence[RequestPattern], now_ms: int) -> AnomalyResult:
        """Score a history with this detector's thresholds."""
        return score_patterns(
            patterns,
            now_ms,
            threshold_requests=self.config.ddos_threshold_requests,
            anomaly_threshold=self.config.anomaly_threshold,
            window_minutes=self.config.monitoring_window_minutes,
        )

    def record_response(self, ip: str, status_code: int, response_time: float) -> bool:
        """
        Attach the downstream outcome to the IP's latest pattern.

        Returns:
            True if a pattern was updated. Store failures return False.
        """
        if not self.enabled:
            return False
        now_ms = int(self.clock() * 1000)
        try:
            patterns = self.load_history(ip, now_ms)
            if not patterns:
                return False
            last = patterns[-1]
            patterns[-1] = RequestPattern(
                timestamp=last.timestamp,
                path=last.path,
                method=last.method,
                user_agent=last.user_agent,
                response_time=float(response_time),
                status_code=int(status_code),
            )
            self.save_history(ip, patterns, now_ms)
            return True
        except KVStoreError as e:
            self.logger.error(f"Could not record response for {ip[:32]}: {e}")
            return False

    def block_ip(self, ip: str, reason: str, anomaly_score: float) -> BlockRecord:
        """
        Block an IP for block_duration_minutes.

        Raises:
            KVStoreError: If the store is unavailable
        """
        duration = self.config.block_duration_minutes
        record = BlockRecord.create(
            reason=reason,
            duration_minutes=duration,
            now=self.clock(),
            score=anomaly_score,
            source='ddos',
        )
        self.blocklist.put_json(
            f"{self.BLOCK_PREFIX}:{ip}", record.to_dict(), ttl_seconds=duration * 60
        )
        self.logger.error(
            f"DDOS BLOCK: IP={ip[:32]} score={anomaly_score} duration={duration}m"
        )

        if self.escalation is not None:
            try:
                self.escalation.block_identifier(
                    f"ip:{ip}", duration, reason=reason, score=anomaly_score
                )
            except KVStoreError as e:
                self.logger.error(f"Escalation to deny-list failed for {ip[:32]}: {e}")
        return record

    def get_block_info(self, ip: str) -> Optional[BlockRecord]:
        """
        Block record for an IP, if any.

        Raises:
            KVStoreError: If the store is unavailable
        """
        raw = self.blocklist.get(f"{self.BLOCK_PREFIX}:{ip}")
        if raw is None:
            return None
        try:
            return BlockRecord.from_dict(json.loads(raw))
        except ValueError:
            return BlockRecord.from_dict(raw)

    def is_blocked(self, ip: str) -> bool:
        """Check whether an IP is anomaly-blocked. Fails open."""
        try:
            return self.get_block_info(ip) is not None
        except KVStoreError as e:
            self.logger.error(f"DDoS block lookup failed for {ip[:32]}, allowing: {e}")
            return False

    def evaluate_request(
        self,
        request: RequestDescriptor,
        client_ip: str,
        identity: Optional[Identity] = None,
    ) -> Optional[GatewayResponse]:
        """
        DDoS stage: None to continue, or a 429 response.

        Admin identities bypass analysis.
        """
        if identity is not None and identity.is_admin:
            return None
        if not self.enabled:
            return None

        retry_after = str(self.config.block_duration_minutes * 60)

        try:
            existing = self.get_block_info(client_ip)
        except KVStoreError as e:
            self.logger.error(f"DDoS block lookup failed for {client_ip[:32]}, allowing: {e}")
            existing = None

        if existing is not None:
            return GatewayResponse.text(
                429,
                'IP temporarily blocked due to suspicious activity',
                {
                    'Retry-After': retry_after,
                    'X-Block-Reason': existing.reason or 'DDoS protection',
                    'X-Block-Score': format_score(existing.score if existing.score is not None else 0),
                },
            )

        result = self.analyze_request_pattern(client_ip, request)
        request.state[self.STATE_RESULT_KEY] = result

        if result.score > self.LOG_SCORE_THRESHOLD:
            level = logging.ERROR if result.should_block else logging.WARNING
            self.logger.log(
                level,
                f"DDoS anomaly: IP={client_ip[:32]} score={result.score} "
                f"blocked={result.should_block} reasons={'; '.join(result.reasons)}",
                extra={'event_type': 'ddos_anomaly'},
            )

        if not result.should_block:
            return None

        reason = f"Anomaly detection: {', '.join(result.reasons)}"
        try:
            self.block_ip(client_ip, reason, result.score)
        except KVStoreError as e:
            self.logger.error(f"Could not persist DDoS block for {client_ip[:32]}: {e}")

        return GatewayResponse.text(
            429,
            'Request blocked due to suspicious activity',
            {
                'Retry-After': retry_after,
                'X-Anomaly-Score': format_score(result.score),
                'X-Anomaly-Reasons': ', '.join(result.reasons),
            },
        )
