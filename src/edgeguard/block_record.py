#!/usr/bin/env python3
"""
Block records shared by the WAF blocklist, rate-limiter deny-list and DDoS
detector.

A block record lives in the KV store under a detector-specific key and
disappears through TTL at `expires_at`; nothing deletes it explicitly except
a manual unblock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class BlockRecord:
    """Why and until when an identifier is denied."""

    reason: str
    blocked_at: str
    expires_at: str
    score: Optional[float] = None
    severity: Optional[str] = None
    source: str = 'unknown'

    @classmethod
    def create(
        cls,
        reason: str,
        duration_minutes: int,
        now: float,
        score: Optional[float] = None,
        severity: Optional[str] = None,
        source: str = 'unknown',
    ) -> 'BlockRecord':
        """Build a record starting at `now` (epoch seconds)."""
        if duration_minutes <= 0:
            raise ValueError("Block duration must be positive")
        start = datetime.fromtimestamp(now, tz=timezone.utc)
        return cls(
            reason=reason or 'blocked',
            blocked_at=start.isoformat(),
            expires_at=(start + timedelta(minutes=duration_minutes)).isoformat(),
            score=score,
            severity=severity,
            source=source,
        )

    @classmethod
    def from_dict(cls, data: Any) -> Optional['BlockRecord']:
        """Parse a stored record; tolerates bare marker values."""
        if data is None:
            return None
        if not isinstance(data, dict):
            return cls(reason=str(data), blocked_at='', expires_at='')
        return cls(
            reason=str(data.get('reason') or 'blocked'),
            blocked_at=str(data.get('blockedAt') or data.get('blocked_at') or ''),
            expires_at=str(data.get('expiresAt') or data.get('expires_at') or ''),
            score=data.get('anomalyScore', data.get('score')),
            severity=data.get('severity'),
            source=str(data.get('source') or 'unknown'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'reason': self.reason,
            'blockedAt': self.blocked_at,
            'expiresAt': self.expires_at,
            'source': self.source,
        }
        if self.score is not None:
            data['anomalyScore'] = self.score
        if self.severity is not None:
            data['severity'] = self.severity
        return data


def format_score(score: Any) -> str:
    """Render a score for headers: integral values without decimals."""
    try:
        value = float(score)
    except (TypeError, ValueError):
        return str(score)
    return str(int(value)) if value.is_integer() else f"{value:.1f}"
