from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from authcore.logging import get_logger
from authcore.service.sessions import SessionManager

logger = get_logger(__name__)

MULTIPLE_IPS = "Multiple IP addresses detected"
TOO_MANY_LOGINS = "Too many login attempts"
UNKNOWN_DEVICE = "Login from unknown device/location"


@dataclass
class SuspicionReport:
    suspicious: bool
    reason: Optional[str] = None
    distinct_ips: int = 0
    recent_sessions: int = 0


def _client_family(user_agent: Optional[str]) -> str:
    parts = (user_agent or "").split()
    return parts[0] if parts else ""


class SuspiciousActivityDetector:
    """Heuristics over a principal's recent sessions.

    Runs after the new session has been created, so the window always
    includes the login being judged. A hit is advisory only.
    """

    def __init__(
        self,
        sessions: SessionManager,
        *,
        window: timedelta = timedelta(hours=24),
        max_ips: int = 5,
        max_sessions: int = 10,
    ) -> None:
        self.sessions = sessions
        self.window = window
        self.max_ips = max_ips
        self.max_sessions = max_sessions

    async def check(
        self,
        user_id: str,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        *,
        current_session_id: Optional[str] = None,
    ) -> SuspicionReport:
        recent = await self.sessions.recent(user_id, self.window)
        distinct_ips = {s.ip_addr for s in recent if s.ip_addr}
        reason = None
        if len(distinct_ips) > self.max_ips:
            reason = MULTIPLE_IPS
        elif len(recent) > self.max_sessions:
            reason = TOO_MANY_LOGINS
        else:
            previous = [s for s in recent if s.id != current_session_id]
            if previous and not self._seen_before(previous, ip_addr, user_agent):
                reason = UNKNOWN_DEVICE
        report = SuspicionReport(
            suspicious=reason is not None,
            reason=reason,
            distinct_ips=len(distinct_ips),
            recent_sessions=len(recent),
        )
        if report.suspicious:
            logger.warning(
                "suspicious_login_detected",
                user_id=user_id,
                reason=reason,
                distinct_ips=report.distinct_ips,
                recent_sessions=report.recent_sessions,
            )
        return report

    @staticmethod
    def _seen_before(previous: List, ip_addr: Optional[str], user_agent: Optional[str]) -> bool:
        family = _client_family(user_agent)
        for session in previous:
            if ip_addr and session.ip_addr == ip_addr:
                return True
            if family and _client_family(session.user_agent) == family:
                return True
        return False
