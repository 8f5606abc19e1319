"""Edge security gateway: rate limiting, WAF and DDoS detection."""

from .errors import GatewayError, KVStoreError, ConfigurationError, RequestParseError
from .severity import Severity
from .config import GatewayConfig
from .kv_store import KVStore, RedisKVStore, MemoryKVStore
from .request_context import Headers, Identity, RequestDescriptor, GatewayResponse
from .block_record import BlockRecord
from .rate_limiter import RateLimiter, RateLimitResult, RateWindowRecord
from .waf_rules import WAFRule, build_rule_set
from .waf import WebApplicationFirewall, WAFResult
from .ddos_detector import DDoSDetector, AnomalyResult, RequestPattern, score_patterns
from .security_headers import (
    apply_security_headers,
    calculate_security_score,
    get_security_recommendations,
    handle_csp_report,
    handle_security_headers_debug,
)
from .monitoring import SecurityEvent, SecurityMonitor
from .log_filters import SensitiveDataFilter, SecureFormatter, configure_logging
from .gateway import SecurityGateway, StageOutcome, create_security_gateway

__all__ = [
    'GatewayError',
    'KVStoreError',
    'ConfigurationError',
    'RequestParseError',
    'Severity',
    'GatewayConfig',
    'KVStore',
    'RedisKVStore',
    'MemoryKVStore',
    'Headers',
    'Identity',
    'RequestDescriptor',
    'GatewayResponse',
    'BlockRecord',
    'RateLimiter',
    'RateLimitResult',
    'RateWindowRecord',
    'WAFRule',
    'build_rule_set',
    'WebApplicationFirewall',
    'WAFResult',
    'DDoSDetector',
    'AnomalyResult',
    'RequestPattern',
    'score_patterns',
    'apply_security_headers',
    'calculate_security_score',
    'get_security_recommendations',
    'handle_csp_report',
    'handle_security_headers_debug',
    'SecurityEvent',
    'SecurityMonitor',
    'SensitiveDataFilter',
    'SecureFormatter',
    'configure_logging',
    'SecurityGateway',
    'StageOutcome',
    'create_security_gateway',
]
