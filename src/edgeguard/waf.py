#!/usr/bin/env python3
"""
Web Application Firewall.

Analyses each request in a fixed order, each step a potential early exit:

1. Geo-block: country in the configured deny-set -> blocked (medium)
2. IP blocklist: KV lookup -> blocked (high)
3. User-Agent heuristics: missing, known attack tool or bot-like UA is
   recorded as a low-severity signal but never blocks on its own
4. Signature rules over path + query + body (POST/PUT/PATCH)

A request is blocked if any matched rule blocks; the reported severity is
the highest among matched rules. A critical block also puts the source IP
on the blocklist for `waf_autoblock_minutes`.

Failure policy: blocklist lookups, body reads and rule evaluation fail open.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import unquote_plus

from .block_record import BlockRecord
from .config import GatewayConfig
from .errors import KVStoreError, RequestParseError
from .kv_store import KVStore
from .metrics import WAF_RULE_HITS
from .request_context import GatewayResponse, RequestDescriptor
from .severity import Severity
from .waf_rules import BOT_USER_AGENT_PATTERNS, WAFRule, build_rule_set


BODY_METHODS = ('POST', 'PUT', 'PATCH')


@dataclass(frozen=True)
class WAFResult:
    """Immutable outcome of a WAF analysis."""

    blocked: bool
    rules: Tuple[str, ...]
    severity: Severity
    reason: str

    def to_dict(self) -> dict:
        return {
            'blocked': self.blocked,
            'rules': list(self.rules),
            'severity': self.severity.label,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class UserAgentVerdict:
    suspicious: bool
    reason: str = ''


class WebApplicationFirewall:
    """
    Signature and heuristic request filter.

    Keys:
        blocklist:ip:<addr>  BlockRecord, TTL block duration
    """

    BLOCKLIST_PREFIX = "blocklist:ip"
    DEFAULT_BLOCK_MINUTES = 60

    STATE_RESULT_KEY = 'waf_result'

    def __init__(
        self,
        config: GatewayConfig,
        blocklist: KVStore,
        rules: Optional[Sequence[WAFRule]] = None,
        geo_resolver: Optional[Callable[[str], Optional[str]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the firewall.

        Args:
            config: Gateway configuration
            blocklist: KV store holding the IP blocklist
            rules: Pre-built rule set (built from config when omitted)
            geo_resolver: Optional IP -> ISO country fallback when the
                country header is absent
            clock: Epoch-seconds clock
        """
        if blocklist is None:
            raise ValueError("KV store is required for the WAF blocklist")

        self.config = config
        self.blocklist = blocklist
        self.rules: Tuple[WAFRule, ...] = tuple(rules) if rules is not None else build_rule_set(config)
        self.geo_resolver = geo_resolver
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._blocked_countries = frozenset(c.upper() for c in config.blocked_countries)

    def resolve_country(self, request: RequestDescriptor, client_ip: str) -> Optional[str]:
        """Country from the edge header, falling back to the geo resolver."""
        country = request.headers.get(self.config.country_header)
        if country:
            return country.strip().upper()
        if self.geo_resolver is not None and client_ip != 'unknown':
            try:
                resolved = self.geo_resolver(client_ip)
            except Exception as e:
                self.logger.warning(f"Geo lookup failed for {client_ip[:32]}: {e}")
                return None
            return resolved.upper() if resolved else None
        return None

    def check_geo_blocking(self, request: RequestDescriptor, client_ip: str) -> Optional[str]:
        """Return the offending country code, or None if allowed."""
        if not self.config.geo_block_enabled or not self._blocked_countries:
            return None
        country = self.resolve_country(request, client_ip)
        if country and country in self._blocked_countries:
            return country
        return None

    def check_user_agent(self, user_agent: Optional[str]) -> UserAgentVerdict:
        """Classify a User-Agent string."""
        if not user_agent:
            return UserAgentVerdict(True, 'Missing User-Agent header')

        if any(trusted in user_agent for trusted in self.config.trusted_user_agents):
            return UserAgentVerdict(False)

        lowered = user_agent.lower()
        for marker in self.config.suspicious_user_agents:
            if marker.lower() in lowered:
                return UserAgentVerdict(True, f"Suspicious User-Agent: {marker}")

        for pattern in BOT_USER_AGENT_PATTERNS:
            if pattern.search(user_agent):
                return UserAgentVerdict(True, f"Bot-like User-Agent detected: {pattern.pattern}")

        return UserAgentVerdict(False)

    def get_blocklist_record(self, ip: str) -> Optional[BlockRecord]:
        """
        Fetch the blocklist record for an IP.

        Raises:
            KVStoreError: If the store is unavailable
        """
        raw = self.blocklist.get(f"{self.BLOCKLIST_PREFIX}:{ip}")
        if raw is None:
            return None
        try:
            return BlockRecord.from_dict(json.loads(raw))
        except ValueError:
            return BlockRecord.from_dict(raw)

    def check_ip_blocklist(self, ip: str) -> bool:
        """Check whether an IP is blocklisted. Fails open on store errors."""
        try:
            return self.get_blocklist_record(ip) is not None
        except KVStoreError as e:
            self.logger.error(f"Blocklist lookup failed for {ip[:32]}, allowing: {e}")
            return False

    def add_to_blocklist(
        self,
        ip: str,
        reason: str,
        duration_minutes: int = DEFAULT_BLOCK_MINUTES,
        severity: Optional[Severity] = None,
    ) -> BlockRecord:
        """
        Put an IP on the blocklist.

        Raises:
            KVStoreError: If the store is unavailable
        """
        record = BlockRecord.create(
            reason=reason,
            duration_minutes=duration_minutes,
            now=self.clock(),
            severity=severity.label if severity else None,
            source='waf',
        )
        self.blocklist.put_json(
            f"{self.BLOCKLIST_PREFIX}:{ip}",
            record.to_dict(),
            ttl_seconds=duration_minutes * 60,
        )
        self.logger.warning(
            f"BLOCKLIST: IP={ip[:32]} duration={duration_minutes}m reason={reason}"
        )
        return record

    def remove_from_blocklist(self, ip: str) -> bool:
        """Manually remove an IP from the blocklist."""
        removed = self.blocklist.delete(f"{self.BLOCKLIST_PREFIX}:{ip}")
        if removed:
            self.logger.warning(f"MANUAL UNBLOCK: IP={ip[:32]}")
        return removed

    def build_analysis_text(self, request: RequestDescriptor) -> str:
        """
        Lower-cased text blob scanned by the signature rules.

        Contains the normalised path, the path as received when dot segments
        were removed, the raw query, the URL-decoded query when it differs,
        and for body-carrying methods up to 1MB of body. Body read failures
        leave the body out.
        """
        parts = [request.path, request.search]
        if request.raw_path != request.path:
            parts.append(request.raw_path)
        if request.query:
            decoded = unquote_plus(request.query)
            if decoded != request.query:
                parts.append(decoded)

        if request.method in BODY_METHODS:
            try:
                parts.append(request.read_body_text())
            except RequestParseError as e:
                self.logger.warning(f"Ignoring unreadable request body: {e}")

        return ' '.join(parts).lower()

    def match_rules(self, text: str) -> List[WAFRule]:
        """Rules matching the text; a failing rule is skipped."""
        matched = []
        for rule in self.rules:
            try:
                if rule.matches(text):
                    matched.append(rule)
            except Exception as e:
                self.logger.error(f"Rule {rule.name} evaluation failed, skipping: {e}")
        return matched

    def analyze_request(self, request: RequestDescriptor, client_ip: Optional[str] = None) -> WAFResult:
        """
        Analyse a request for security threats.

        Args:
            request: Inbound request
            client_ip: Resolved client address (resolved from headers when
                omitted)

        Returns:
            WAFResult
        """
        if client_ip is None:
            client_ip = request.client_ip(self.config.client_ip_header)

        country = self.check_geo_blocking(request, client_ip)
        if country:
            return WAFResult(
                blocked=True,
                rules=('geo_blocking',),
                severity=Severity.MEDIUM,
                reason=f"Request from blocked country: {country}",
            )

        if client_ip != 'unknown' and self.check_ip_blocklist(client_ip):
            return WAFResult(
                blocked=True,
                rules=('ip_blocklist',),
                severity=Severity.HIGH,
                reason='IP address is in blocklist',
            )

        matched_names: List[str] = []
        highest = Severity.LOW
        should_block = False
        ua_reason = ''

        if self.config.waf_enabled:
            verdict = self.check_user_agent(request.user_agent)
            if verdict.suspicious:
                matched_names.append('suspicious_user_agent')
                ua_reason = verdict.reason

        for rule in self.match_rules(self.build_analysis_text(request)):
            matched_names.append(rule.name)
            if rule.severity > highest:
                highest = rule.severity
            if rule.block:
                should_block = True
            WAF_RULE_HITS.labels(
                rule=rule.name,
                severity=rule.severity.label,
                blocking=str(rule.block).lower(),
            ).inc()

        if matched_names == ['suspicious_user_agent']:
            reason = ua_reason
        elif matched_names:
            reason = f"Security rule violation: {', '.join(matched_names)}"
        else:
            reason = 'Request passed WAF analysis'

        return WAFResult(
            blocked=should_block,
            rules=tuple(matched_names),
            severity=highest,
            reason=reason,
        )

    def evaluate_request(
        self,
        request: RequestDescriptor,
        client_ip: str,
    ) -> Optional[GatewayResponse]:
        """
        WAF stage: None to continue, or a 403 response.

        A critical block escalates the source IP to the blocklist.
        """
        result = self.analyze_request(request, client_ip)

        if result.rules:
            level = logging.ERROR if result.blocked else logging.WARNING
            self.logger.log(
                level,
                f"WAF rule triggered: IP={client_ip[:32]} {request.method} {request.path[:128]} "
                f"rules={','.join(result.rules)} severity={result.severity.label} "
                f"blocked={result.blocked}",
                extra={'event_type': 'waf_rule_triggered'},
            )

        if not result.blocked:
            request.state[self.STATE_RESULT_KEY] = result
            return None

        if result.severity == Severity.CRITICAL and client_ip != 'unknown':
            try:
                self.add_to_blocklist(
                    client_ip,
                    result.reason,
                    self.config.waf_autoblock_minutes,
                    severity=result.severity,
                )
            except KVStoreError as e:
                self.logger.error(f"Could not blocklist {client_ip[:32]}: {e}")

        request.state[self.STATE_RESULT_KEY] = result
        return GatewayResponse.text(
            403,
            'Request blocked by security policy',
            {
                'X-Security-Block-Reason': result.reason,
                'X-Security-Rules': ','.join(result.rules),
            },
        )
