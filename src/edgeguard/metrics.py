#!/usr/bin/env python3
"""
Prometheus metrics for the edge security gateway.

Metric objects are registered once at import time in the default registry
and exposed by the proxy's metrics HTTP server.
"""

from prometheus_client import Counter, Gauge, Histogram, Info


REQUESTS_ANALYZED = Counter(
    'edgeguard_requests_total', 'Requests processed by the gateway',
    ['method', 'outcome'],
)
BLOCKED_REQUESTS = Counter(
    'edgeguard_blocked_requests_total', 'Requests short-circuited by a stage',
    ['stage', 'status'],
)
SECURITY_EVENTS = Counter(
    'edgeguard_security_events_total', 'Security events emitted',
    ['event_type', 'severity'],
)
WAF_RULE_HITS = Counter(
    'edgeguard_waf_rule_hits_total', 'WAF rule matches',
    ['rule', 'severity', 'blocking'],
)
STAGE_ERRORS = Counter(
    'edgeguard_stage_errors_total', 'Internal stage failures (failed open)',
    ['stage'],
)
CSP_REPORTS = Counter(
    'edgeguard_csp_reports_total', 'CSP violation reports received',
    ['result'],
)
ANOMALY_SCORE = Histogram(
    'edgeguard_anomaly_score', 'DDoS anomaly score per analysed request',
    buckets=[0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)
STAGE_DURATION = Histogram(
    'edgeguard_stage_duration_seconds', 'Time spent per gateway stage',
    ['stage'],
    buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
ACTIVE_CONNECTIONS = Gauge('edgeguard_active_connections', 'Active proxy connections')
GATEWAY_INFO = Info('edgeguard_gateway', 'Gateway version and configuration summary')
