#!/usr/bin/env python3
"""
Severity levels for WAF rules and security events.

Uses IntEnum for natural ordering comparison (LOW < MEDIUM < HIGH < CRITICAL).
"""

from enum import IntEnum


class Severity(IntEnum):
    """
    Severity of a matched rule or emitted event.

    Levels:
    - LOW: Informational signal, logged only
    - MEDIUM: Likely probing, logged and sometimes blocked
    - HIGH: Clear attack signature
    - CRITICAL: Attack signature that also escalates to the IP blocklist
    """

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        """Lower-case name used in results, headers and logs."""
        return self.name.lower()

    def get_log_level(self) -> str:
        """Logging level name for events of this severity."""
        levels = {
            Severity.LOW: "info",
            Severity.MEDIUM: "warning",
            Severity.HIGH: "error",
            Severity.CRITICAL: "critical",
        }
        return levels[self]

    def __str__(self) -> str:
        return self.label
