#!/usr/bin/env python3
"""
Response security headers, CSP violation reports and header analysis.
"""

import json
import logging
import secrets
from typing import Dict, List, Mapping, Optional

from .config import GatewayConfig
from .metrics import CSP_REPORTS
from .request_context import GatewayResponse, Headers, RequestDescriptor


logger = logging.getLogger(__name__)


CSP_REPORT_PATH = '/security/csp-report'
HEADERS_DEBUG_PATH = '/debug/security-headers'

SECURITY_FRAMEWORK = 'EdgeGuard-WAF'
SECURITY_VERSION = '1.0'

HSTS_VALUE = 'max-age=63072000; includeSubDomains; preload'

PERMISSIONS_POLICY = ', '.join([
    'geolocation=()',
    'microphone=()',
    'camera=()',
    'payment=()',
    'usb=()',
    'magnetometer=()',
    'gyroscope=()',
    'speaker=()',
    'vibrate=()',
    'fullscreen=(self)',
    'sync-xhr=()',
])

ANALYZED_HEADERS = (
    'Strict-Transport-Security',
    'Content-Security-Policy',
    'X-Frame-Options',
    'X-Content-Type-Options',
    'X-XSS-Protection',
    'Referrer-Policy',
    'Permissions-Policy',
)

MAX_CSP_REPORT_BYTES = 64 * 1024


def generate_nonce() -> str:
    return secrets.token_urlsafe(16)


def build_csp(nonce: Optional[str] = None, report_uri: Optional[str] = None) -> str:
    """Content-Security-Policy value; script-src carries the nonce if given."""
    script_src = "script-src 'self'"
    if nonce:
        script_src += f" 'nonce-{nonce}'"
    script_src += ' https://challenges.cloudflare.com'

    parts = [
        "default-src 'self'",
        script_src,
        "style-src 'self' 'unsafe-inline'",
        "img-src 'self' data: https:",
        "font-src 'self'",
        "connect-src 'self'",
        "media-src 'self'",
        'frame-src https://challenges.cloudflare.com',
        "worker-src 'self'",
        "manifest-src 'self'",
        "object-src 'none'",
        "base-uri 'self'",
        "form-action 'self'",
        "frame-ancestors 'none'",
        'upgrade-insecure-requests',
    ]
    if report_uri:
        parts.append(f"report-uri {report_uri}")
    return '; '.join(parts)


def apply_security_headers(
    headers: Headers,
    config: GatewayConfig,
    nonce: Optional[str] = None,
    extra: Optional[Mapping[str, str]] = None,
) -> Headers:
    """
    Set the standard security headers on a response.

    HSTS is omitted in development, where permissive CORS headers are added
    instead. `extra` (typically the stored X-RateLimit-* headers) is applied
    last.
    """
    if not config.is_dev:
        headers.set('Strict-Transport-Security', HSTS_VALUE)

    headers.set('X-Content-Type-Options', 'nosniff')
    headers.set('X-Frame-Options', 'DENY')
    headers.set('X-XSS-Protection', '1; mode=block')
    headers.set('Referrer-Policy', 'strict-origin-when-cross-origin')
    headers.set('X-Download-Options', 'noopen')
    headers.set('X-Permitted-Cross-Domain-Policies', 'none')
    headers.set('Permissions-Policy', PERMISSIONS_POLICY)
    headers.set('Content-Security-Policy', build_csp(nonce, config.csp_report_uri))
    headers.set('X-Security-Framework', SECURITY_FRAMEWORK)
    headers.set('X-Security-Version', SECURITY_VERSION)

    if extra:
        headers.update(extra)

    if config.is_dev:
        headers.set('X-Development-Mode', 'true')
        headers.set('Access-Control-Allow-Origin', '*')
        headers.set('Access-Control-Allow-Methods', 'GET, POST, PUT, DELETE, OPTIONS')
        headers.set('Access-Control-Allow-Headers', 'Content-Type, Authorization')

    return headers


def extract_security_headers(headers: Headers) -> Dict[str, Optional[str]]:
    return {name.lower(): headers.get(name) for name in ANALYZED_HEADERS}


def calculate_security_score(headers: Mapping[str, Optional[str]]) -> int:
    """
    Score 0-100 for a set of security headers (lower-case names).

    HSTS 20, CSP 15 (+10 without 'unsafe-inline'), frame options 15,
    nosniff 10, XSS protection 10, referrer policy 10, permissions policy 10.
    """
    score = 0
    if headers.get('strict-transport-security'):
        score += 20

    csp = headers.get('content-security-policy')
    if csp:
        score += 15
        if "'unsafe-inline'" not in csp:
            score += 10

    if headers.get('x-frame-options'):
        score += 15
    if headers.get('x-content-type-options'):
        score += 10
    if headers.get('x-xss-protection'):
        score += 10
    if headers.get('referrer-policy'):
        score += 10
    if headers.get('permissions-policy'):
        score += 10

    return min(score, 100)


def get_security_recommendations(headers: Mapping[str, Optional[str]]) -> List[str]:
    recommendations = []

    if not headers.get('strict-transport-security'):
        recommendations.append('Add HSTS header for HTTPS enforcement')

    csp = headers.get('content-security-policy')
    if not csp:
        recommendations.append('Implement Content Security Policy')
    elif "'unsafe-inline'" in csp:
        recommendations.append('Remove unsafe-inline from CSP for better security')

    if not headers.get('x-frame-options'):
        recommendations.append('Add X-Frame-Options header to prevent clickjacking')
    if not headers.get('x-content-type-options'):
        recommendations.append('Add X-Content-Type-Options header to prevent MIME sniffing')
    if not headers.get('permissions-policy'):
        recommendations.append('Implement Permissions Policy for feature control')

    return recommendations


def analyze_security_headers(headers: Headers) -> Dict:
    found = extract_security_headers(headers)
    return {
        'headers': found,
        'security_score': calculate_security_score(found),
        'recommendations': get_security_recommendations(found),
    }


def handle_security_headers_debug(
    request: RequestDescriptor,
    config: GatewayConfig,
    response: Optional[GatewayResponse] = None,
) -> Optional[GatewayResponse]:
    """
    GET /debug/security-headers.

    Analyses the headers of `response`, or, before any response exists, the
    headers this gateway would attach to one.
    """
    if request.path != HEADERS_DEBUG_PATH or request.method != 'GET':
        return None

    if response is not None:
        analysed = response.headers
    else:
        analysed = apply_security_headers(Headers(), config)
    return GatewayResponse.json(200, analyze_security_headers(analysed))


def handle_csp_report(
    request: RequestDescriptor,
    client_ip: str = 'unknown',
) -> Optional[GatewayResponse]:
    """
    POST /security/csp-report: 204 on a JSON report, 400 otherwise.

    Returns None for any other request.
    """
    if request.path != CSP_REPORT_PATH or request.method != 'POST':
        return None

    try:
        report = json.loads(request.read_body_text(MAX_CSP_REPORT_BYTES) or '')
        if not isinstance(report, dict):
            raise ValueError("CSP report must be a JSON object")
    except Exception as e:
        logger.warning(f"CSP report parsing error: {e}")
        CSP_REPORTS.labels(result='invalid').inc()
        return GatewayResponse.text(400, 'Invalid report format')

    details = report.get('csp-report')
    if not isinstance(details, dict):
        details = {}

    CSP_REPORTS.labels(result='accepted').inc()
    logger.warning(
        f"CSP violation: document={str(details.get('document-uri', ''))[:256]} "
        f"blocked={str(details.get('blocked-uri', ''))[:256]} "
        f"directive={str(details.get('violated-directive', ''))[:128]} "
        f"ip={client_ip[:32]} ua={(request.user_agent or '')[:128]}",
        extra={'event_type': 'csp_violation'},
    )
    return GatewayResponse.text(204, 'Report received')
