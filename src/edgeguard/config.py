#!/usr/bin/env python3
"""
Gateway configuration.

A single explicit configuration object is built once at startup and passed
to every component. Unrecognized or invalid values never raise: each one
falls back to its documented default (enforcement off) and a warning is
logged, so a typo in deployment configuration cannot take the service down.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple


logger = logging.getLogger(__name__)


DEFAULT_TRUSTED_USER_AGENTS = (
    'Mozilla/', 'Chrome/', 'Safari/', 'Edge/', 'Firefox/',
    'Googlebot', 'Bingbot', 'Slackbot', 'facebookexternalhit',
)

DEFAULT_SUSPICIOUS_USER_AGENTS = (
    'sqlmap', 'nmap', 'nikto', 'w3af', 'masscan', 'nessus',
    'openvas', 'burpsuite', 'owasp', 'paros', 'webscarab',
)

DEFAULT_SKIP_PATHS = ('/health', '/ping', '/favicon.ico', '/_next/', '/assets/')

ENV_OPTIONS = {
    'SECURITY_RATE_LIMIT_IP': 'ip_rate_limit',
    'SECURITY_RATE_LIMIT_USER': 'user_rate_limit',
    'SECURITY_ENABLE_WAF': 'waf_enabled',
    'SECURITY_ENABLE_DDOS': 'ddos_enabled',
    'SECURITY_ENABLE_GEO_BLOCKING': 'geo_block_enabled',
    'SECURITY_BLOCKED_COUNTRIES': 'blocked_countries',
    'SECURITY_DDOS_THRESHOLD': 'ddos_threshold_requests',
    'SECURITY_ANOMALY_THRESHOLD': 'anomaly_threshold',
    'SECURITY_BLOCK_DURATION_MINUTES': 'block_duration_minutes',
    'CSP_REPORT_URI': 'csp_report_uri',
    'ENVIRONMENT': 'environment',
}

DEV_ENVIRONMENTS = ('development', 'dev', 'local')

TRUE_VALUES = ('true', '1', 'yes', 'on')
FALSE_VALUES = ('false', '0', 'no', 'off', '')


@dataclass(frozen=True)
class GatewayConfig:
    """
    Immutable gateway configuration.

    Rate limiting:
        ip_rate_limit: Requests per window per IP (default 100)
        user_rate_limit: Requests per window per authenticated user (500)
        window_minutes: Sliding window width (1)
        burst_multiplier: Burst allowance above the nominal limit (1.5)

    WAF:
        waf_enabled: Gates SQLi/XSS/traversal/command-injection/bot rules
        geo_block_enabled: Enables country deny-list
        blocked_countries: ISO country codes to deny (upper-case)
        waf_autoblock_minutes: Blocklist duration after a critical match

    DDoS:
        ddos_enabled: Enables anomaly analysis (follows waf_enabled unless set)
        ddos_threshold_requests: Requests/minute regarded as saturation
        anomaly_threshold: Score (0-100) at which an IP is blocked
        block_duration_minutes: How long anomaly blocks last
        monitoring_window_minutes: Pattern history window
    """

    ip_rate_limit: int = 100
    user_rate_limit: int = 500
    window_minutes: int = 1
    burst_multiplier: float = 1.5

    waf_enabled: bool = False
    geo_block_enabled: bool = False
    blocked_countries: Tuple[str, ...] = ()
    waf_autoblock_minutes: int = 30
    trusted_user_agents: Tuple[str, ...] = DEFAULT_TRUSTED_USER_AGENTS
    suspicious_user_agents: Tuple[str, ...] = DEFAULT_SUSPICIOUS_USER_AGENTS

    ddos_enabled: bool = False
    ddos_threshold_requests: int = 1000
    anomaly_threshold: int = 50
    block_duration_minutes: int = 15
    monitoring_window_minutes: int = 5

    client_ip_header: str = 'CF-Connecting-IP'
    country_header: str = 'CF-IPCountry'
    geoip_database: Optional[str] = None
    skip_paths: Tuple[str, ...] = DEFAULT_SKIP_PATHS
    csp_report_uri: Optional[str] = None
    environment: str = 'production'
    is_dev: bool = False

    # Bounds (inclusive) used when validating numeric options
    BOUNDS = {
        'ip_rate_limit': (1, 1000000),
        'user_rate_limit': (1, 1000000),
        'window_minutes': (1, 60),
        'burst_multiplier': (1.0, 10.0),
        'waf_autoblock_minutes': (1, 1440),
        'ddos_threshold_requests': (1, 10000000),
        'anomaly_threshold': (0, 100),
        'block_duration_minutes': (1, 1440),
        'monitoring_window_minutes': (1, 60),
    }

    @property
    def window_seconds(self) -> int:
        return self.window_minutes * 60

    @property
    def rate_limit_policy(self) -> str:
        """Human readable policy for the X-RateLimit-Policy header."""
        return (
            f"{self.ip_rate_limit} req/min per IP, "
            f"{self.user_rate_limit} req/min per user"
        )

    @classmethod
    def from_config_dict(cls, config: Dict) -> 'GatewayConfig':
        """
        Create from the `security` section of a configuration document.

        Accepts either the whole document or the section itself.
        """
        if not isinstance(config, dict):
            logger.warning("Configuration is not a dictionary, using defaults")
            return cls()

        section = config.get('security', config)
        if not isinstance(section, dict):
            logger.warning("security section is not a dictionary, using defaults")
            return cls()

        values: Dict[str, Any] = {}
        defaults = cls()
        known = {f.name for f in fields(cls)}

        for name, raw in section.items():
            if name not in known:
                continue
            values[name] = _coerce(name, raw, getattr(defaults, name))

        if 'ddos_enabled' not in section and 'waf_enabled' in values:
            values['ddos_enabled'] = values['waf_enabled']

        return replace(defaults, **values)

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        base: Optional[Dict] = None,
    ) -> 'GatewayConfig':
        """
        Create from SECURITY_* environment variables.

        Variables override matching options of `base` (typically the YAML
        `security` section); see ENV_OPTIONS for the names.
        """
        env = os.environ if env is None else env
        section = dict(base or {})
        for var, option in ENV_OPTIONS.items():
            if var in env:
                section[option] = env[var]
        if 'environment' in section and 'is_dev' not in section:
            section['is_dev'] = str(section['environment']).lower() in DEV_ENVIRONMENTS
        return cls.from_config_dict({'security': section})

    def to_dict(self) -> Dict:
        """Convert to dictionary for status reporting."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Coerce a raw option to the type of its default, or fall back."""
    try:
        if isinstance(default, bool):
            return _coerce_bool(raw)
        if isinstance(default, tuple):
            return _coerce_list(name, raw)
        if isinstance(default, int):
            value = int(raw)
            return _check_bounds(name, value, default)
        if isinstance(default, float):
            value = float(raw)
            return _check_bounds(name, value, default)
        if default is None or isinstance(default, str):
            if raw is None:
                return default
            return str(raw).strip() or default
    except (TypeError, ValueError, OverflowError) as e:
        logger.warning(f"Invalid value for {name}: {raw!r} ({e}), using default {default!r}")
        return default
    return default


def _coerce_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError("not a boolean")


def _coerce_list(name: str, raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        items = [part.strip() for part in raw.split(',')]
    elif isinstance(raw, (list, tuple, set)):
        items = [str(part).strip() for part in raw]
    else:
        raise ValueError("expected list or comma separated string")
    items = [item for item in items if item]
    if name == 'blocked_countries':
        items = [item.upper() for item in items]
    return tuple(items)


def _check_bounds(name: str, value, default):
    low, high = GatewayConfig.BOUNDS.get(name, (None, None))
    if low is not None and not (low <= value <= high):
        logger.warning(
            f"{name}={value} out of range [{low}, {high}], using default {default}"
        )
        return default
    return value
