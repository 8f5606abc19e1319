#!/usr/bin/env python3
"""
Property-based testing for the EdgeGuard gateway using Hypothesis.
Tests scoring bounds, input robustness and rate-limit guarantees.
"""

import ipaddress
import logging
import string
from dataclasses import fields

from hypothesis import given, settings, HealthCheck
import hypothesis.strategies as st

from src.edgeguard.config import GatewayConfig
from src.edgeguard.ddos_detector import RequestPattern, score_patterns
from src.edgeguard.kv_store import MemoryKVStore
from src.edgeguard.log_filters import SensitiveDataFilter
from src.edgeguard.rate_limiter import RateLimiter
from src.edgeguard.request_context import RequestDescriptor
from src.edgeguard.waf import WebApplicationFirewall


NOW_MS = 1700000000000

patterns_strategy = st.lists(
    st.builds(
        RequestPattern,
        timestamp=st.integers(min_value=NOW_MS - 300000, max_value=NOW_MS),
        path=st.sampled_from(['/', '/api', '/login', '/static/app.js']),
        method=st.sampled_from(['GET', 'POST', 'PUT']),
        user_agent=st.sampled_from(['a', 'b', 'c']),
        response_time=st.floats(min_value=0, max_value=5000),
        status_code=st.sampled_from([200, 301, 404, 500]),
    ),
    max_size=100,
)


class _Clock:
    def __init__(self):
        self.now = NOW_MS / 1000

    def __call__(self):
        return self.now


class TestAnomalyScoreProperties:
    """Properties of DDoS scoring."""

    @given(patterns_strategy, st.integers(min_value=1, max_value=5000), st.integers(min_value=0, max_value=100))
    def test_score_bounded(self, patterns, threshold, anomaly_threshold):
        result = score_patterns(patterns, NOW_MS, threshold, anomaly_threshold)

        assert 0 <= result.score <= 100
        assert 0 <= result.confidence <= 1
        assert result.should_block == (result.score >= anomaly_threshold)

    @given(patterns_strategy)
    def test_score_deterministic(self, patterns):
        assert score_patterns(patterns, NOW_MS, 1000, 50) == score_patterns(list(patterns), NOW_MS, 1000, 50)


class TestWAFProperties:
    """The WAF must never raise on hostile input."""

    @given(
        path=st.text(alphabet=string.printable, max_size=200),
        body=st.binary(max_size=2000),
        method=st.sampled_from(['GET', 'POST', 'PUT', 'PATCH', 'DELETE']),
        user_agent=st.one_of(st.none(), st.text(max_size=100)),
    )
    @settings(suppress_health_check=[HealthCheck.too_slow])
    def test_analyze_never_raises(self, path, body, method, user_agent):
        config = GatewayConfig(waf_enabled=True)
        waf = WebApplicationFirewall(config, MemoryKVStore())
        headers = {'User-Agent': user_agent} if user_agent else {}
        request = RequestDescriptor(method=method, url='/p/' + path, headers=headers, body=body)

        result = waf.analyze_request(request, '203.0.113.10')

        assert not result.blocked or result.rules
        assert result.reason


class TestClientIPProperties:
    """Client IP resolution only ever yields an address or 'unknown'."""

    @given(
        st.one_of(st.none(), st.text(max_size=60), st.ip_addresses().map(str)),
        st.one_of(st.none(), st.text(max_size=60)),
    )
    def test_client_ip_valid(self, header_value, forwarded):
        headers = {}
        if header_value:
            headers['CF-Connecting-IP'] = header_value
        if forwarded:
            headers['X-Forwarded-For'] = forwarded
        request = RequestDescriptor(method='GET', url='/', headers=headers)

        ip = request.client_ip()
        if ip != 'unknown':
            ipaddress.ip_address(ip)


class TestRateLimiterProperties:
    """Allowed requests never exceed the burst limit inside one window."""

    @given(
        st.lists(st.floats(min_value=0, max_value=5), min_size=1, max_size=150),
        st.integers(min_value=1, max_value=40),
    )
    @settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
    def test_burst_never_exceeded(self, gaps, limit):
        clock = _Clock()
        limiter = RateLimiter(MemoryKVStore(clock=clock), GatewayConfig(ip_rate_limit=limit), clock=clock)
        burst = int(limit * 1.5)

        allowed_at = []
        for gap in gaps:
            clock.now += gap
            result = limiter.check_ip_rate_limit('198.51.100.1')
            assert 0 <= result.remaining <= burst
            if result.allowed:
                allowed_at.append(int(clock.now * 1000))

        for i, ts in enumerate(allowed_at):
            in_window = [t for t in allowed_at[:i + 1] if t > ts - 60000]
            assert len(in_window) <= burst


class TestConfigProperties:
    """Configuration never raises, whatever the YAML contains."""

    option_names = [f.name for f in fields(GatewayConfig)]

    @given(st.dictionaries(
        st.sampled_from(option_names),
        st.one_of(
            st.none(), st.booleans(), st.integers(), st.floats(), st.text(max_size=20),
            st.lists(st.text(max_size=5), max_size=3),
        ),
    ))
    def test_from_config_dict_total(self, section):
        config = GatewayConfig.from_config_dict({'security': section})

        for name, (low, high) in GatewayConfig.BOUNDS.items():
            assert low <= getattr(config, name) <= high
        assert isinstance(config.waf_enabled, bool)
        assert isinstance(config.blocked_countries, tuple)


class TestLogFilterProperties:
    """Redaction never raises and never drops a record."""

    @given(st.text(max_size=300), st.lists(st.one_of(st.text(max_size=20), st.integers()), max_size=3))
    def test_filter_total(self, msg, args):
        record = logging.LogRecord('t', logging.INFO, __file__, 1, msg, tuple(args) or None, None)
        assert SensitiveDataFilter().filter(record) is True
        assert isinstance(record.msg, str)
