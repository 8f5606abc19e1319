#!/usr/bin/env python3
"""
Unit tests for DDoS anomaly detection.

Tests cover:
- Individual scoring signals on hand-built histories
- Determinism of scoring
- The bot-like scenario end to end through the stage
- Block persistence and escalation to the rate-limiter deny-list
- Disabled detector, admin bypass and fail-open behaviour
"""

import json

import pytest

from src.edgeguard.config import GatewayConfig
from src.edgeguard.ddos_detector import (
    AnomalyResult,
    DDoSDetector,
    MAX_PATTERN_HISTORY,
    RequestPattern,
    burst_score,
    score_patterns,
    uniformity_score,
)
from src.edgeguard.rate_limiter import RateLimiter
from src.edgeguard.request_context import Identity
from tests.conftest import make_request


NOW_MS = 1700000000000
BOT_IP = '198.51.100.23'


def _pattern(ts, path='/', method='GET', ua='ua', rt=0.0, status=200):
    return RequestPattern(
        timestamp=ts, path=path, method=method, user_agent=ua, response_time=rt, status_code=status
    )


@pytest.fixture
def detector(config, store, clock):
    return DDoSDetector(config, store, clock=clock)


class TestValueObjects:
    """Test pattern and result types."""

    def test_pattern_round_trip_keys(self):
        data = _pattern(NOW_MS, rt=12.5, status=404).to_dict()
        assert set(data) == {'timestamp', 'path', 'method', 'userAgent', 'responseTime', 'statusCode'}
        assert RequestPattern.from_dict(data) == _pattern(NOW_MS, rt=12.5, status=404)

    def test_pattern_from_garbage(self):
        assert RequestPattern.from_dict({'path': '/'}) is None
        assert RequestPattern.from_dict({'timestamp': 'soon'}) is None

    @pytest.mark.parametrize('kwargs', [
        {'score': -1},
        {'score': 101},
        {'score': 10, 'confidence': 1.5},
    ])
    def test_result_bounds(self, kwargs):
        with pytest.raises(ValueError):
            AnomalyResult(**kwargs)


class TestSignals:
    """Test scoring signals in isolation."""

    def test_empty_history(self):
        assert score_patterns([], NOW_MS, 1000, 50).score == 0

    def test_uniformity(self):
        assert uniformity_score({}) == 100
        assert uniformity_score({'/': 3}) == 100
        assert uniformity_score({'/a': 5, '/b': 1}) == pytest.approx(86.667, abs=0.01)
        assert uniformity_score({'/a': 30, '/b': 1}) == 0

    def test_burst_needs_ten_patterns(self):
        patterns = [_pattern(NOW_MS - i) for i in range(9)]
        assert burst_score(patterns, NOW_MS) == 0

    def test_burst_detected(self):
        patterns = [_pattern(NOW_MS - i * 300) for i in range(10)]
        assert burst_score(patterns, NOW_MS) == 100

    def test_high_frequency(self):
        patterns = [_pattern(NOW_MS - i * 1000) for i in range(8)]
        result = score_patterns(patterns, NOW_MS, threshold_requests=10, anomaly_threshold=50)

        assert result.score == 52.0
        assert result.reasons == (
            'High request frequency: 8 req/min',
            'Highly uniform request patterns detected',
        )
        assert result.should_block is True
        assert result.confidence == pytest.approx(0.52)

    def test_error_rate(self):
        patterns = [
            _pattern(NOW_MS - i * 25000, ua=f'agent-{i}', status=500 if i < 7 else 200)
            for i in range(12)
        ]
        result = score_patterns(patterns, NOW_MS, 1000, 50)

        assert result.score == 40.0
        assert 'High error rate: 58.3%' in result.reasons
        assert result.should_block is False

    def test_consistent_response_times(self):
        patterns = [_pattern(NOW_MS - i * 25000, ua=f'agent-{i}', rt=100.0) for i in range(11)]
        result = score_patterns(patterns, NOW_MS, 1000, 50)

        assert result.score == 30.0
        assert 'Unnaturally consistent response times' in result.reasons

    def test_mixed_methods_avoid_get_only(self):
        patterns = [
            _pattern(NOW_MS - i * 10000, method='POST' if i == 0 else 'GET', ua=f'a{i}')
            for i in range(25)
        ]
        assert 'Only GET requests detected' not in score_patterns(patterns, NOW_MS, 1000, 50).reasons

    def test_score_is_deterministic(self):
        patterns = [_pattern(NOW_MS - i * 300, rt=50.0) for i in range(100)]
        first = score_patterns(patterns, NOW_MS, 1000, 50)
        assert score_patterns(list(patterns), NOW_MS, 1000, 50) == first

    def test_score_capped(self):
        patterns = [_pattern(NOW_MS - i * 10, rt=50.0, status=503) for i in range(100)]
        result = score_patterns(patterns, NOW_MS, threshold_requests=10, anomaly_threshold=50)
        assert result.score == 100


class TestBotScenario:
    """A single client hammering one path every 300ms with one User-Agent."""

    def test_analysis_over_monitoring_window(self, detector, clock):
        result = None
        for _ in range(1000):
            result = detector.analyze_request_pattern(BOT_IP, make_request(url='/api/data', ip=BOT_IP))
            detector.record_response(BOT_IP, 200, 50.0)
            clock.advance(0.3)

        assert result.score == 75.0
        assert result.should_block is True
        assert result.reasons == (
            'Highly uniform request patterns detected',
            'Consistent User-Agent across many requests',
            'Unnaturally consistent response times',
            'Request burst pattern detected',
            'Only GET requests detected',
        )

    def test_stage_blocks_and_escalates(self, config, store, clock):
        limiter = RateLimiter(store, config, clock=clock)
        detector = DDoSDetector(config, store, escalation=limiter, clock=clock)

        responses = []
        for _ in range(11):
            responses.append(detector.evaluate_request(make_request(url='/api/data', ip=BOT_IP), BOT_IP))
            clock.advance(0.3)

        assert responses[:10] == [None] * 10
        blocked = responses[10]
        assert blocked.status == 429
        assert blocked.body == 'Request blocked due to suspicious activity'
        assert blocked.headers['Retry-After'] == '900'
        assert blocked.headers['X-Anomaly-Score'] == '55'
        assert 'Request burst pattern detected' in blocked.headers['X-Anomaly-Reasons']

        assert store.ttl(f'ddos_block:{BOT_IP}') == 900
        record = json.loads(store.get(f'ddos_block:{BOT_IP}'))
        assert record['source'] == 'ddos'
        assert record['anomalyScore'] == 55.0
        assert record['reason'].startswith('Anomaly detection: ')

        assert store.ttl(f'blocked:ip:{BOT_IP}') == 900
        assert limiter.is_blocked(f'ip:{BOT_IP}') is True

        follow_up = detector.evaluate_request(make_request(ip=BOT_IP), BOT_IP)
        assert follow_up.status == 429
        assert follow_up.body == 'IP temporarily blocked due to suspicious activity'
        assert follow_up.headers['X-Block-Score'] == '55'

        clock.advance(15 * 60)
        assert detector.is_blocked(BOT_IP) is False

    def test_replay_gives_same_score(self, config, clock):
        from src.edgeguard.kv_store import MemoryKVStore

        scores = []
        for _ in range(2):
            clock.now = 1700000000.0
            detector = DDoSDetector(config, MemoryKVStore(clock=clock), clock=clock)
            result = None
            for _ in range(30):
                result = detector.analyze_request_pattern(BOT_IP, make_request(url='/x', ip=BOT_IP))
                clock.advance(0.3)
            scores.append(result)

        assert scores[0] == scores[1]


class TestHistory:
    """Test pattern persistence."""

    def test_history_capped(self, detector, store):
        for _ in range(MAX_PATTERN_HISTORY + 20):
            detector.analyze_request_pattern(BOT_IP, make_request(ip=BOT_IP))

        stored = json.loads(store.get(f'ddos_history:{BOT_IP}'))
        assert len(stored['patterns']) == MAX_PATTERN_HISTORY
        assert store.ttl(f'ddos_history:{BOT_IP}') == 600

    def test_stale_patterns_dropped(self, detector, clock):
        detector.analyze_request_pattern(BOT_IP, make_request(ip=BOT_IP))
        clock.advance(5 * 60 + 1)
        assert detector.load_history(BOT_IP, int(clock() * 1000)) == []

    def test_record_response_updates_last(self, detector, store):
        detector.analyze_request_pattern(BOT_IP, make_request(ip=BOT_IP))
        assert detector.record_response(BOT_IP, 404, 12.0) is True

        last = json.loads(store.get(f'ddos_history:{BOT_IP}'))['patterns'][-1]
        assert last['statusCode'] == 404
        assert last['responseTime'] == 12.0

    def test_record_response_without_history(self, detector):
        assert detector.record_response(BOT_IP, 200, 10.0) is False


class TestBypassAndFailure:
    """Test disabled detector, admin bypass and store failures."""

    def test_disabled(self, store, clock):
        detector = DDoSDetector(GatewayConfig(), store, clock=clock)
        request = make_request(ip=BOT_IP)

        assert detector.analyze_request_pattern(BOT_IP, request).score == 0
        assert detector.evaluate_request(request, BOT_IP) is None
        assert detector.record_response(BOT_IP, 200, 1.0) is False
        assert store.keys('ddos_history:') == []

    def test_admin_bypass(self, detector, store):
        admin = Identity(id='ops', role='admin')
        for _ in range(50):
            assert detector.evaluate_request(make_request(ip=BOT_IP), BOT_IP, admin) is None
        assert store.keys('ddos_history:') == []

    def test_store_failure_fails_open(self, config, failing_store, clock):
        detector = DDoSDetector(config, failing_store, clock=clock)
        request = make_request(ip=BOT_IP)

        result = detector.analyze_request_pattern(BOT_IP, request)
        assert result.score == 0
        assert result.reasons == ('Analysis error',)
        assert detector.evaluate_request(request, BOT_IP) is None
        assert detector.is_blocked(BOT_IP) is False

    def test_requires_store(self, config):
        with pytest.raises(ValueError):
            DDoSDetector(config, None)
