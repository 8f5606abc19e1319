#!/usr/bin/env python3
"""
Security gateway: runs the request-time defenses in a fixed order.

Per request, terminal on the first short-circuit:

    monitoring endpoint        -> handled (/debug/security, /monitoring/security)
    POST /security/csp-report  -> handled (204 / 400)
    GET /debug/security-headers -> handled (JSON analysis)
    skip path                  -> pass
    WAF                        -> 403
    rate limiter               -> 429
    DDoS detector              -> 429
    otherwise                  -> pass ("request_allowed" event)

Each stage call is wrapped in a StageOutcome. An outcome carrying an error is
logged, reported as a security_error event and treated as "no block".
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .config import GatewayConfig
from .ddos_detector import DDoSDetector
from .kv_store import KVStore
from .metrics import BLOCKED_REQUESTS, REQUESTS_ANALYZED, STAGE_DURATION, STAGE_ERRORS
from .monitoring import SecurityEvent, SecurityMonitor, is_monitoring_path
from .rate_limiter import RateLimiter
from .request_context import GatewayResponse, Identity, RequestDescriptor, path_matches
from .security_headers import (
    apply_security_headers,
    generate_nonce,
    handle_csp_report,
    handle_security_headers_debug,
)
from .waf import WebApplicationFirewall


@dataclass(frozen=True)
class StageOutcome:
    """Result of one stage: a block response, nothing, or an internal error."""

    stage: str
    response: Optional[GatewayResponse] = None
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def blocked(self) -> bool:
        return self.error is None and self.response is not None


# Stage name -> security event emitted when it blocks
STAGE_EVENTS = (
    ('waf', 'waf_block'),
    ('rate_limit', 'rate_limit_exceeded'),
    ('ddos', 'ddos_block'),
)


class SecurityGateway:
    """
    Orchestrates WAF, rate limiting and DDoS detection for each request.

    Usage:
        gateway = create_security_gateway(config, kv_store)
        blocked = gateway.process_request(request, identity)
        if blocked is None:
            response = call_backend(request)
            response = gateway.process_response(request, response)
    """

    STATE_CLIENT_IP = 'client_ip'
    STATE_OUTCOME = 'gateway_outcome'
    STATE_PASSED_AT = 'gateway_passed_at'
    STATE_NONCE = 'csp_nonce'

    def __init__(
        self,
        config: GatewayConfig,
        kv_store: KVStore,
        waf: WebApplicationFirewall,
        rate_limiter: RateLimiter,
        ddos: DDoSDetector,
        monitor: SecurityMonitor,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.kv = kv_store
        self.waf = waf
        self.rate_limiter = rate_limiter
        self.ddos = ddos
        self.monitor = monitor
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def _stages(
        self,
        request: RequestDescriptor,
        client_ip: str,
        identity: Optional[Identity],
    ) -> List[Tuple[str, str, Callable[[], Optional[GatewayResponse]]]]:
        calls = {
            'waf': lambda: self.waf.evaluate_request(request, client_ip),
            'rate_limit': lambda: self.rate_limiter.evaluate_request(request, client_ip, identity),
            'ddos': lambda: self.ddos.evaluate_request(request, client_ip, identity),
        }
        return [(stage, event, calls[stage]) for stage, event in STAGE_EVENTS]

    def run_stage(self, stage: str, call: Callable[[], Optional[GatewayResponse]]) -> StageOutcome:
        """Invoke one stage, capturing any exception as the outcome."""
        started = time.perf_counter()
        try:
            return StageOutcome(stage=stage, response=call())
        except Exception as e:
            return StageOutcome(stage=stage, error=e)
        finally:
            STAGE_DURATION.labels(stage=stage).observe(time.perf_counter() - started)

    def process_request(
        self,
        request: RequestDescriptor,
        identity: Optional[Identity] = None,
    ) -> Optional[GatewayResponse]:
        """
        Pre-request hook.

        Args:
            request: Inbound request
            identity: Authenticated identity, if any

        Returns:
            None to let the request through, or the terminal response
        """
        try:
            return self._process_request(request, identity)
        except Exception as e:
            self.logger.error(f"Security gateway error, allowing request: {e}", exc_info=True)
            STAGE_ERRORS.labels(stage='gateway').inc()
            self._emit(
                'security_error',
                request,
                request.state.get(self.STATE_CLIENT_IP, 'unknown'),
                identity,
                reason='Security gateway error',
                details={'stage': 'gateway', 'error': type(e).__name__},
            )
            request.state[self.STATE_OUTCOME] = 'error'
            return None

    def _process_request(
        self,
        request: RequestDescriptor,
        identity: Optional[Identity],
    ) -> Optional[GatewayResponse]:
        client_ip = request.client_ip(self.config.client_ip_header)
        request.state[self.STATE_CLIENT_IP] = client_ip
        request.state[self.STATE_NONCE] = generate_nonce()
        path = request.path

        if is_monitoring_path(path):
            request.state[self.STATE_OUTCOME] = 'handled'
            return self.monitor.handle_debug_request(request)

        csp_response = handle_csp_report(request, client_ip)
        if csp_response is not None:
            request.state[self.STATE_OUTCOME] = 'handled'
            return csp_response

        debug_response = handle_security_headers_debug(request, self.config)
        if debug_response is not None:
            request.state[self.STATE_OUTCOME] = 'handled'
            return debug_response

        if any(path_matches(path, skip) for skip in self.config.skip_paths):
            request.state[self.STATE_OUTCOME] = 'skipped'
            return None

        self.logger.debug(f"Analyzing request {request.method} {path[:128]} from {client_ip[:32]}")

        for stage, event_type, call in self._stages(request, client_ip, identity):
            outcome = self.run_stage(stage, call)

            if outcome.failed:
                self._stage_failed(outcome, request, client_ip, identity)
                continue

            if outcome.blocked:
                response = outcome.response
                BLOCKED_REQUESTS.labels(stage=stage, status=str(response.status)).inc()
                REQUESTS_ANALYZED.labels(method=request.method, outcome='blocked').inc()
                self._emit(
                    event_type,
                    request,
                    client_ip,
                    identity,
                    reason=response.headers.get('X-Security-Block-Reason')
                    or response.headers.get('X-Block-Reason')
                    or str(response.body)[:200],
                    details=self._event_details(stage, request, response),
                )
                request.state[self.STATE_OUTCOME] = 'blocked'
                return response

        REQUESTS_ANALYZED.labels(method=request.method, outcome='allowed').inc()
        self._emit(
            'request_allowed',
            request,
            client_ip,
            identity,
            reason='All security checks passed',
            details=self._event_details(None, request, None),
        )
        request.state[self.STATE_OUTCOME] = 'allowed'
        request.state[self.STATE_PASSED_AT] = self.clock()
        return None

    def _stage_failed(
        self,
        outcome: StageOutcome,
        request: RequestDescriptor,
        client_ip: str,
        identity: Optional[Identity],
    ) -> None:
        self.logger.error(
            f"Stage {outcome.stage} failed, continuing without it: {outcome.error}",
            exc_info=outcome.error,
        )
        STAGE_ERRORS.labels(stage=outcome.stage).inc()
        self._emit(
            'security_error',
            request,
            client_ip,
            identity,
            reason=f"{outcome.stage} stage error",
            details={'stage': outcome.stage, 'error': type(outcome.error).__name__},
        )

    def _event_details(
        self,
        stage: Optional[str],
        request: RequestDescriptor,
        response: Optional[GatewayResponse],
    ) -> Dict:
        details: Dict = {}
        if stage:
            details['stage'] = stage
            details['status'] = response.status
        waf_result = request.state.get(WebApplicationFirewall.STATE_RESULT_KEY)
        if waf_result is not None and waf_result.rules:
            details['rules'] = list(waf_result.rules)
            details['severity'] = waf_result.severity.label
        anomaly = request.state.get(DDoSDetector.STATE_RESULT_KEY)
        if anomaly is not None:
            details['anomaly_score'] = anomaly.score
            if anomaly.reasons:
                details['anomaly_reasons'] = list(anomaly.reasons)
        return details

    def _emit(
        self,
        event_type: str,
        request: RequestDescriptor,
        client_ip: str,
        identity: Optional[Identity],
        reason: str = '',
        details: Optional[Dict] = None,
    ) -> None:
        try:
            self.monitor.record_event(SecurityEvent(
                event_type=event_type,
                client_ip=client_ip,
                path=request.path,
                method=request.method,
                reason=reason,
                user_id=identity.id if identity else None,
                user_role=identity.role if identity else None,
                user_agent=request.user_agent,
                details=details or {},
            ))
        except Exception as e:
            self.logger.error(f"Error logging security event {event_type}: {e}")

    def process_response(
        self,
        request: RequestDescriptor,
        response: GatewayResponse,
        identity: Optional[Identity] = None,
    ) -> GatewayResponse:
        """
        Post-response hook.

        Re-attaches the X-RateLimit-* headers computed before the request was
        forwarded, applies the security headers and feeds the observed status
        and response time back to the DDoS detector. Failures return the
        response unchanged.
        """
        try:
            apply_security_headers(
                response.headers,
                self.config,
                nonce=request.state.get(self.STATE_NONCE),
                extra=request.state.get(RateLimiter.STATE_HEADERS_KEY),
            )

            if (
                request.state.get(self.STATE_OUTCOME) == 'allowed'
                and DDoSDetector.STATE_RESULT_KEY in request.state
            ):
                passed_at = request.state.get(self.STATE_PASSED_AT, self.clock())
                response_time = max(0.0, (self.clock() - passed_at) * 1000)
                self.ddos.record_response(
                    request.state.get(self.STATE_CLIENT_IP, 'unknown'),
                    response.status,
                    response_time,
                )
        except Exception as e:
            self.logger.error(f"Security gateway response processing error: {e}", exc_info=True)
        return response

    def get_status(self) -> Dict:
        """Enabled components and environment."""
        return {
            'enabled': True,
            'components': {
                'rateLimiting': True,
                'waf': self.config.waf_enabled,
                'geoBlocking': self.config.geo_block_enabled,
                'ddosProtection': self.config.ddos_enabled,
                'monitoring': True,
                'securityHeaders': True,
            },
            'kvStore': 'up' if self.kv.ping() else 'down',
            'environment': self.config.environment,
            'lastCheck': datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat(),
        }


def create_security_gateway(
    config: GatewayConfig,
    kv_store: KVStore,
    blocklist: Optional[KVStore] = None,
    geo_resolver: Optional[Callable[[str], Optional[str]]] = None,
    clock: Callable[[], float] = time.time,
) -> SecurityGateway:
    """
    Build a gateway with all components wired to the given stores.

    Args:
        config: Gateway configuration
        kv_store: Store for counters, pattern history and statistics
        blocklist: Store for the WAF and DDoS blocklists (defaults to kv_store)
        geo_resolver: Optional IP -> country fallback for geo-blocking
        clock: Epoch-seconds clock shared by all components
    """
    if kv_store is None:
        raise ValueError("KV store is required")
    blocklist = blocklist or kv_store

    rate_limiter = RateLimiter(kv_store, config, clock=clock)
    waf = WebApplicationFirewall(config, blocklist, geo_resolver=geo_resolver, clock=clock)
    ddos = DDoSDetector(
        config, kv_store, blocklist=blocklist, escalation=rate_limiter, clock=clock
    )
    monitor = SecurityMonitor(kv_store, environment=config.environment, clock=clock)

    return SecurityGateway(config, kv_store, waf, rate_limiter, ddos, monitor, clock=clock)
