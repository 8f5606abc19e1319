#!/usr/bin/env python3
"""
WAF signature rules.

The rule set is built once at startup from configuration and is immutable
afterwards (a tuple of frozen dataclasses), so it can be shared by every
request without locking.

Categories:
- SQL injection: UNION SELECT, comment / statement-terminator sequences,
  dangerous function calls, DDL/DML keyword + object pairs
- XSS: script tags, javascript: URIs, inline event handlers, numeric HTML
  entities (logged only)
- Path traversal: dot-dot sequences (raw and URL-encoded), system files
- Command injection: shell metacharacters chained into commands or
  substitutions, bare system command names (logged only)
"""

import re
from dataclasses import dataclass
from typing import Pattern, Tuple

from .config import GatewayConfig
from .severity import Severity


@dataclass(frozen=True)
class WAFRule:
    """
    Immutable signature rule.

    Security: Frozen so a rule cannot be altered once the set is built.
    """

    name: str
    pattern: Pattern
    severity: Severity
    description: str
    block: bool

    def __post_init__(self):
        if not self.name:
            raise ValueError("Rule name cannot be empty")
        if not isinstance(self.severity, Severity):
            raise ValueError("Severity must be Severity enum")
        if not hasattr(self.pattern, 'search'):
            raise ValueError("Pattern must be a compiled regular expression")

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rule(name: str, pattern: str, severity: Severity, description: str, block: bool, flags: int = 0) -> WAFRule:
    return WAFRule(
        name=name,
        pattern=re.compile(pattern, re.IGNORECASE | flags),
        severity=severity,
        description=description,
        block=block,
    )


SQL_INJECTION_RULES = (
    _rule(
        'sql_injection_union',
        r"\bunion\s+(?:all\s+)?select\b",
        Severity.CRITICAL,
        'SQL injection attempt using UNION SELECT',
        True,
    ),
    _rule(
        'sql_injection_comments',
        r"/\*.*?\*/|'\s*(?:--|#|;)|;\s*(?:select|insert|update|delete|drop|alter|"
        r"create|truncate|exec|execute|shutdown|declare)\b|--(?:\s|$)",
        Severity.HIGH,
        'SQL injection attempt using comments or statement terminators',
        True,
        re.DOTALL,
    ),
    _rule(
        'sql_injection_functions',
        r"\b(?:exec|execute|sp_executesql|xp_cmdshell|eval|concat|char|ascii)\s*\(",
        Severity.CRITICAL,
        'SQL injection attempt using dangerous functions',
        True,
    ),
    _rule(
        'sql_injection_keywords',
        r"\b(?:drop|delete|insert|update|alter|create|truncate|replace)\s+"
        r"(?:table|database|schema|index)\b",
        Severity.CRITICAL,
        'SQL injection attempt using DDL/DML keywords',
        True,
    ),
)

XSS_RULES = (
    _rule(
        'xss_script_tags',
        r"<\s*script\b[^>]*>",
        Severity.HIGH,
        'XSS attempt using script tags',
        True,
    ),
    _rule(
        'xss_javascript_protocol',
        r"javascript\s*:",
        Severity.MEDIUM,
        'XSS attempt using javascript protocol',
        True,
    ),
    _rule(
        'xss_event_handlers',
        r"\bon(?:load|error|click|mouseover|focus|blur|change|submit)\s*=",
        Severity.MEDIUM,
        'XSS attempt using event handlers',
        True,
    ),
    _rule(
        'xss_html_entities',
        r"&#x?[0-9a-f]+;?",
        Severity.LOW,
        'Potential XSS using HTML entities',
        False,
    ),
)

PATH_TRAVERSAL_RULES = (
    _rule(
        'path_traversal_dots',
        r"\.\.[/\\]",
        Severity.HIGH,
        'Path traversal attempt using dot notation',
        True,
    ),
    _rule(
        'path_traversal_encoded',
        r"%2e%2e(?:%2f|%5c|/|\\)|\.\.(?:%2f|%5c)|%252e%252e",
        Severity.HIGH,
        'Path traversal attempt using encoded characters',
        True,
    ),
    _rule(
        'path_traversal_absolute',
        r"/etc/(?:passwd|shadow|hosts|group)\b|/proc/self/|\.\./\.\./|\.\.\\\.\.\\|"
        r"c:\\windows\\",
        Severity.CRITICAL,
        'Path traversal attempt targeting system files',
        True,
    ),
)

_SHELL_COMMANDS = (
    r"cat|ls|pwd|id|whoami|uname|netstat|ps|kill|chmod|chown|sudo|su|wget|curl|"
    r"nc|ncat|telnet|ssh|ftp|sh|bash|zsh|rm|echo|ping|python|perl|php|nslookup"
)

COMMAND_INJECTION_RULES = (
    _rule(
        'command_injection_pipes',
        r"(?:;|&&|\|\|?|\n)\s*(?:[\w./-]*/)?(?:" + _SHELL_COMMANDS + r")\b|"
        r"`[^`]*`|\$\([^)]*\)|\$\{[^}]*\}",
        Severity.HIGH,
        'Command injection attempt using shell metacharacters',
        True,
    ),
    _rule(
        'command_injection_commands',
        r"\b(?:" + _SHELL_COMMANDS + r")\b",
        Severity.MEDIUM,
        'Command injection attempt using system commands',
        False,
    ),
)

BOT_USER_AGENT_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r'curl', r'wget', r'python', r'perl', r'java', r'go-http-client',
        r'bot', r'crawler', r'spider', r'scraper', r'scanner',
    )
)


def build_rule_set(config: GatewayConfig) -> Tuple[WAFRule, ...]:
    """
    Build the immutable signature rule set for a configuration.

    The single `waf_enabled` switch gates every signature category; with
    the WAF disabled the set is empty and pattern matching is a no-op.
    """
    if not config.waf_enabled:
        return ()
    return SQL_INJECTION_RULES + XSS_RULES + PATH_TRAVERSAL_RULES + COMMAND_INJECTION_RULES
