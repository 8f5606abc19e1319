#!/usr/bin/env python3
"""
Security event recording, statistics and monitoring endpoints.

Every stage decision becomes a SecurityEvent. The monitor logs it, counts it
in Prometheus and folds it into per-component statistics kept in the KV
store so the debug endpoints can report across processes:

    waf_stats         totalAnalyzed, threatsBlocked, rulesTriggered,
                      severityBreakdown
    ddos_stats        anomaliesDetected, ipsBlocked, averageAnomalyScore
    rate_limit_stats  totalRequests, blockedRequests, blockedIps
    security_alert:<id>  alert record for WAF and DDoS blocks

Monitoring never affects a request: every failure here is logged and
swallowed at the boundary of record_event().
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .errors import KVStoreError
from .kv_store import KVStore
from .metrics import SECURITY_EVENTS
from .request_context import GatewayResponse, RequestDescriptor
from .severity import Severity


STATS_TTL_SECONDS = 7 * 24 * 60 * 60
ALERT_TTL_SECONDS = 30 * 24 * 60 * 60
ALERT_PREFIX = 'security_alert'
MAX_TRACKED_BLOCKED_IPS = 100
ANOMALY_REPORT_THRESHOLD = 30

ALERT_EVENT_TYPES = ('waf_block', 'ddos_block')

EVENT_SEVERITY = {
    'request_allowed': Severity.LOW,
    'rate_limit_exceeded': Severity.MEDIUM,
    'waf_block': Severity.HIGH,
    'ddos_block': Severity.HIGH,
    'security_error': Severity.MEDIUM,
}

DEBUG_SECURITY_PATH = '/debug/security'
MONITORING_SECURITY_PATH = '/monitoring/security'

ACTIVE_PROTECTIONS = [
    'Rate Limiting',
    'Web Application Firewall',
    'DDoS Protection',
    'Enhanced Security Headers',
]


def is_monitoring_path(path: str) -> bool:
    """True for the monitoring endpoints and anything below them."""
    return any(
        path == base or path.startswith(base + '/')
        for base in (DEBUG_SECURITY_PATH, MONITORING_SECURITY_PATH)
    )


def _utc_now_iso(clock: Callable[[], float]) -> str:
    return datetime.fromtimestamp(clock(), tz=timezone.utc).isoformat()


@dataclass
class SecurityEvent:
    """
    Structured record of one gateway decision.

    Attributes:
        event_type: waf_block, rate_limit_exceeded, ddos_block,
            request_allowed or security_error
        client_ip: Resolved client address
        path: Request path
        method: HTTP method
        reason: Human readable decision reason
        severity: Event severity (derived from event_type when omitted)
        user_id: Authenticated user, if any
        user_role: Role of the authenticated user, if any
        user_agent: Request User-Agent
        details: Stage specific data (matched rules, score, stage name)
    """

    event_type: str
    client_ip: str
    path: str
    method: str
    reason: str = ''
    severity: Optional[Severity] = None
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.severity is None:
            self.severity = EVENT_SEVERITY.get(self.event_type, Severity.LOW)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.event_type,
            'severity': self.severity.label,
            'clientIP': self.client_ip,
            'path': self.path,
            'method': self.method,
            'reason': self.reason,
            'userId': self.user_id,
            'userRole': self.user_role,
            'userAgent': self.user_agent,
            'details': self.details,
        }


class SecurityMonitor:
    """Aggregates security events into logs, metrics and KV statistics."""

    def __init__(
        self,
        kv_store: KVStore,
        environment: str = 'production',
        clock: Callable[[], float] = time.time,
    ):
        if kv_store is None:
            raise ValueError("KV store is required for security monitoring")

        self.kv = kv_store
        self.environment = environment
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def record_event(self, event: SecurityEvent) -> None:
        """Log, count and persist one event. Never raises."""
        level = getattr(logging, event.severity.get_log_level().upper())
        if event.event_type == 'request_allowed':
            level = logging.DEBUG
        self.logger.log(
            level,
            f"Security event {event.event_type}: IP={event.client_ip[:32]} "
            f"{event.method} {event.path[:128]} user={event.user_id or 'anonymous'} "
            f"reason={event.reason}",
            extra={'event_type': event.event_type},
        )

        SECURITY_EVENTS.labels(
            event_type=event.event_type, severity=event.severity.label
        ).inc()

        try:
            self._update_stats_for(event)
            if event.event_type in ALERT_EVENT_TYPES:
                self.record_alert(
                    alert_type='waf' if event.event_type == 'waf_block' else 'ddos',
                    severity=Severity.MEDIUM,
                    message=f"Security event: {event.event_type}",
                    client_ip=event.client_ip,
                    user_agent=event.user_agent,
                    details=event.to_dict(),
                )
        except KVStoreError as e:
            self.logger.error(f"Error recording security event {event.event_type}: {e}")

    def _update_stats_for(self, event: SecurityEvent) -> None:
        details = event.details
        if event.event_type == 'request_allowed':
            self.update_stats('waf', {'totalAnalyzed': 1})
            self.update_stats('rate_limit', {'totalRequests': 1})
        elif event.event_type == 'waf_block':
            self.update_stats('waf', {
                'totalAnalyzed': 1,
                'threatsBlocked': 1,
                'rulesTriggered': {name: 1 for name in details.get('rules', [])},
                'severityBreakdown': {details.get('severity', event.severity.label): 1},
            })
        elif event.event_type == 'rate_limit_exceeded':
            self.update_stats('waf', {'totalAnalyzed': 1})
            self.update_stats('rate_limit', {
                'totalRequests': 1,
                'blockedRequests': 1,
                'blockedIps': {event.client_ip: 1},
            })
        elif event.event_type == 'ddos_block':
            self.update_stats('waf', {'totalAnalyzed': 1})
            self.update_stats('rate_limit', {'totalRequests': 1})
            self.update_stats('ddos', {'ipsBlocked': 1})

        score = details.get('anomaly_score')
        if score is not None and float(score) > ANOMALY_REPORT_THRESHOLD:
            self.record_anomaly_score(float(score))

    def update_stats(self, kind: str, increments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Add increments into `<kind>_stats`.

        Integer values are added; dict values are added key by key.

        Raises:
            KVStoreError: If the store is unavailable
        """
        key = f"{kind}_stats"
        stats = self.kv.get_json(key)
        if not isinstance(stats, dict):
            stats = {}

        for name, value in increments.items():
            if isinstance(value, dict):
                bucket = stats.get(name)
                if not isinstance(bucket, dict):
                    bucket = {}
                for sub, amount in value.items():
                    bucket[sub] = bucket.get(sub, 0) + amount
                if name == 'blockedIps' and len(bucket) > MAX_TRACKED_BLOCKED_IPS:
                    top = sorted(bucket.items(), key=lambda kv: kv[1], reverse=True)
                    bucket = dict(top[:MAX_TRACKED_BLOCKED_IPS])
                stats[name] = bucket
            else:
                stats[name] = stats.get(name, 0) + value

        stats['lastEventTime'] = _utc_now_iso(self.clock)
        self.kv.put_json(key, stats, ttl_seconds=STATS_TTL_SECONDS)
        return stats

    def record_anomaly_score(self, score: float) -> None:
        """
        Fold an anomaly score into the running DDoS average.

        Raises:
            KVStoreError: If the store is unavailable
        """
        stats = self.kv.get_json('ddos_stats')
        if not isinstance(stats, dict):
            stats = {}
        count = int(stats.get('scoreSamples', 0))
        average = float(stats.get('averageAnomalyScore', 0))
        stats['averageAnomalyScore'] = round((average * count + score) / (count + 1), 2)
        stats['scoreSamples'] = count + 1
        stats['anomaliesDetected'] = int(stats.get('anomaliesDetected', 0)) + 1
        self.kv.put_json('ddos_stats', stats, ttl_seconds=STATS_TTL_SECONDS)

    def record_alert(
        self,
        alert_type: str,
        severity: Severity,
        message: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Persist an alert under security_alert:<id> for 30 days.

        Raises:
            KVStoreError: If the store is unavailable
        """
        now = self.clock()
        alert_id = f"alert_{int(now * 1000)}_{uuid.uuid4().hex[:9]}"
        alert = {
            'id': alert_id,
            'type': alert_type,
            'severity': severity.label,
            'message': message,
            'timestamp': _utc_now_iso(self.clock),
            'clientIP': client_ip,
            'userAgent': user_agent,
            'details': details or {},
            'resolved': False,
        }
        self.kv.put_json(f"{ALERT_PREFIX}:{alert_id}", alert, ttl_seconds=ALERT_TTL_SECONDS)
        log = self.logger.error if severity == Severity.CRITICAL else self.logger.warning
        log(
            f"Security alert {alert_type}: {message} ip={(client_ip or 'unknown')[:32]}",
            extra={'event_type': 'security_alert'},
        )
        return alert

    def get_recent_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest alerts first. Store failures return an empty list."""
        try:
            alerts = []
            for key in self.kv.keys(f"{ALERT_PREFIX}:"):
                alert = self.kv.get_json(key)
                if isinstance(alert, dict):
                    alerts.append(alert)
        except KVStoreError as e:
            self.logger.error(f"Error listing security alerts: {e}")
            return []
        alerts.sort(key=lambda a: str(a.get('timestamp', '')), reverse=True)
        return alerts[:max(0, limit)]

    def _count_keys(self, prefix: str) -> int:
        return len(self.kv.keys(prefix))

    def collect_metrics(self) -> Dict[str, Any]:
        """
        Snapshot of all security statistics.

        On store failure returns zeroed metrics with monitoringEnabled False.
        """
        try:
            waf = self.kv.get_json('waf_stats') or {}
            ddos = self.kv.get_json('ddos_stats') or {}
            rate = self.kv.get_json('rate_limit_stats') or {}

            blocked_ips = rate.get('blockedIps') or {}
            top_blocked = sorted(blocked_ips.items(), key=lambda kv: kv[1], reverse=True)[:10]

            metrics = {
                'rateLimiting': {
                    'totalRequests': rate.get('totalRequests', 0),
                    'blockedRequests': rate.get('blockedRequests', 0),
                    'currentActiveIPs': self._count_keys('rate_limit:ip:'),
                    'topBlockedIPs': [{'ip': ip, 'count': count} for ip, count in top_blocked],
                },
                'waf': {
                    'totalAnalyzed': waf.get('totalAnalyzed', 0),
                    'threatsBlocked': waf.get('threatsBlocked', 0),
                    'rulesTriggered': waf.get('rulesTriggered', {}),
                    'severityBreakdown': waf.get('severityBreakdown', {}),
                },
                'ddos': {
                    'anomaliesDetected': ddos.get('anomaliesDetected', 0),
                    'ipsBlocked': ddos.get('ipsBlocked', 0),
                    'averageAnomalyScore': ddos.get('averageAnomalyScore', 0),
                    'activeBlocks': self._count_keys('ddos_block:'),
                },
            }
            enabled = True
        except KVStoreError as e:
            self.logger.error(f"Security metrics collection error: {e}")
            metrics = {
                'rateLimiting': {
                    'totalRequests': 0, 'blockedRequests': 0,
                    'currentActiveIPs': 0, 'topBlockedIPs': [],
                },
                'waf': {
                    'totalAnalyzed': 0, 'threatsBlocked': 0,
                    'rulesTriggered': {}, 'severityBreakdown': {},
                },
                'ddos': {
                    'anomaliesDetected': 0, 'ipsBlocked': 0,
                    'averageAnomalyScore': 0, 'activeBlocks': 0,
                },
            }
            enabled = False

        metrics['general'] = {
            'securityScore': self.calculate_security_score(metrics) if enabled else 0,
            'lastUpdateTime': _utc_now_iso(self.clock),
            'environment': self.environment,
            'monitoringEnabled': enabled,
        }
        return metrics

    @staticmethod
    def calculate_security_score(metrics: Dict[str, Any]) -> int:
        """Overall posture score 0-100 from threat activity and coverage."""
        waf = metrics['waf']
        ddos = metrics['ddos']
        rate = metrics['rateLimiting']

        score = 100
        if waf['threatsBlocked'] > 100:
            score -= 10
        if ddos['anomaliesDetected'] > 50:
            score -= 15
        if rate['blockedRequests'] > 1000:
            score -= 10

        if waf['totalAnalyzed'] > 0:
            score += 5
        if ddos['anomaliesDetected'] > 0 and ddos['ipsBlocked'] > 0:
            score += 5

        return max(0, min(100, score))

    def get_security_status(self) -> Dict[str, Any]:
        """Status (healthy/warning/critical), metrics and recommendations."""
        metrics = self.collect_metrics()
        active_threats = metrics['waf']['threatsBlocked'] + metrics['ddos']['ipsBlocked']
        score = metrics['general']['securityScore']

        status = 'healthy'
        recommendations = []

        if score < 70:
            status = 'critical'
            recommendations.append('Security score is low - review security configuration')
        elif score < 85:
            status = 'warning'
            recommendations.append('Security score could be improved')

        if active_threats > 100:
            status = 'critical'
            recommendations.append('High number of active threats detected')
        elif active_threats > 50:
            if status != 'critical':
                status = 'warning'
            recommendations.append('Moderate threat activity detected')

        if metrics['waf']['threatsBlocked'] == 0 and metrics['waf']['totalAnalyzed'] > 1000:
            recommendations.append('WAF may not be properly configured - no threats detected')
        if metrics['ddos']['anomaliesDetected'] > 100:
            recommendations.append('Consider tightening DDoS protection thresholds')

        return {
            'status': status,
            'metrics': metrics,
            'activeThreats': active_threats,
            'recommendations': recommendations,
        }

    def handle_debug_request(self, request: RequestDescriptor) -> GatewayResponse:
        """
        Serve /debug/security and /monitoring/security.

        Other paths under those prefixes are 404; failures are 500 with no
        detail.
        """
        try:
            if request.path == DEBUG_SECURITY_PATH:
                status = self.get_security_status()
                return GatewayResponse.json(200, {
                    'timestamp': _utc_now_iso(self.clock),
                    'status': status['status'],
                    'security_score': status['metrics']['general']['securityScore'],
                    'active_threats': status['activeThreats'],
                    'recommendations': status['recommendations'],
                    'metrics': status['metrics'],
                })

            if request.path == MONITORING_SECURITY_PATH:
                metrics = self.collect_metrics()
                return GatewayResponse.json(200, {
                    'title': 'Security Dashboard',
                    'timestamp': _utc_now_iso(self.clock),
                    'environment': self.environment,
                    'security_overview': {
                        'overall_score': metrics['general']['securityScore'],
                        'threats_blocked_24h': (
                            metrics['waf']['threatsBlocked'] + metrics['ddos']['ipsBlocked']
                        ),
                        'active_protections': ACTIVE_PROTECTIONS,
                    },
                    'rate_limiting': metrics['rateLimiting'],
                    'waf_protection': metrics['waf'],
                    'ddos_protection': metrics['ddos'],
                    'system_info': metrics['general'],
                })

            return GatewayResponse.text(404, 'Security endpoint not found')
        except Exception as e:
            self.logger.error(f"Security monitoring endpoint error: {e}", exc_info=True)
            return GatewayResponse.text(500, 'Internal server error')
