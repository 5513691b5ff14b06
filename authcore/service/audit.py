from __future__ import annotations

import asyncio
import html
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol, Set

from authcore.clock import Clock, utc_now
from authcore.logging import get_logger
from authcore.service.notifications import (
    AlertNotifier,
    LoggingMonitor,
    MonitoringSink,
    redact_email,
)
from authcore.service.persistence import StoreGateway
from authcore.storage.models import EventType, SecurityEvent, Severity

logger = get_logger(__name__)

SEVERITY_COLORS = {
    Severity.LOW: "#52c41a",
    Severity.MEDIUM: "#fa8c16",
    Severity.HIGH: "#fa541c",
    Severity.CRITICAL: "#ff4d4f",
}

_ALERT_SUBJECTS = {
    EventType.LOGIN_LOCKED: "Security Alert: Account Temporarily Locked",
    EventType.SUSPICIOUS_ACTIVITY: "Security Alert: Suspicious Activity Detected",
    EventType.PASSWORD_CHANGED: "Security Alert: Password Changed",
    EventType.TWO_FACTOR_DISABLED: "Security Alert: Two-Factor Authentication Disabled",
}
_DEFAULT_SUBJECT = "Security Alert: Account Activity"


class EventSubscriber(Protocol):
    async def handle(self, event: SecurityEvent) -> None: ...


@dataclass
class SecurityStatistics:
    total_events: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_severity: Dict[str, int] = field(default_factory=dict)
    suspicious_activity_count: int = 0
    locked_account_count: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totalEvents": self.total_events,
            "eventsByType": dict(self.by_type),
            "eventsBySeverity": dict(self.by_severity),
            "suspiciousActivityCount": self.suspicious_activity_count,
            "lockedAccountsCount": self.locked_account_count,
        }


@dataclass
class SecurityAlert:
    subject: str
    text_body: str
    html_body: str


def _alert_message(event: SecurityEvent, name: str) -> str:
    when = event.created_at.strftime("%Y-%m-%d %H:%M:%S UTC")
    ip_addr = event.ip_addr or "unknown"
    if event.type is EventType.LOGIN_LOCKED:
        minutes = event.metadata.get("lock_minutes", 30)
        return (
            f"Hello {name},\n\n"
            "Your account has been temporarily locked due to multiple failed login attempts.\n\n"
            f"Time: {when}\nIP Address: {ip_addr}\n\n"
            f"If this was you, please wait {minutes} minutes before trying again. "
            "If this wasn't you, please contact support immediately."
        )
    if event.type is EventType.SUSPICIOUS_ACTIVITY:
        reason = event.metadata.get("reason", "Unusual activity")
        return (
            f"Hello {name},\n\n"
            "We detected suspicious activity on your account.\n\n"
            f"Time: {when}\nIP Address: {ip_addr}\nReason: {reason}\n\n"
            "If this was you, you can ignore this message. "
            "Otherwise, please change your password and review your active sessions."
        )
    if event.type is EventType.PASSWORD_CHANGED:
        return (
            f"Hello {name},\n\n"
            "Your password was recently changed.\n\n"
            f"Time: {when}\nIP Address: {ip_addr}\n\n"
            "If you didn't make this change, please reset your password "
            "immediately and contact support."
        )
    if event.type is EventType.TWO_FACTOR_DISABLED:
        return (
            f"Hello {name},\n\n"
            "Two-factor authentication has been disabled on your account.\n\n"
            f"Time: {when}\nIP Address: {ip_addr}\n\n"
            "If you didn't make this change, please re-enable two-factor "
            "authentication and change your password immediately."
        )
    return (
        f"Hello {name},\n\n"
        "We noticed security-relevant activity on your account.\n\n"
        f"Event: {event.type.value}\nTime: {when}\nIP Address: {ip_addr}\n\n"
        "If you don't recognize this activity, please contact support."
    )


def render_security_alert(event: SecurityEvent, recipient_name: Optional[str]) -> SecurityAlert:
    """Build the subject and bodies of the mail sent for an escalated event."""
    subject = _ALERT_SUBJECTS.get(event.type, _DEFAULT_SUBJECT)
    text_body = _alert_message(event, recipient_name or "there")
    color = SEVERITY_COLORS.get(event.severity, SEVERITY_COLORS[Severity.HIGH])
    paragraphs = "".join(
        f"<p>{html.escape(block).replace(chr(10), '<br>')}</p>"
        for block in text_body.split("\n\n")
    )
    html_body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px;">'
        f'<div style="background-color: {color}; color: #fff; padding: 16px;">'
        f"<h2>{html.escape(subject)}</h2></div>"
        f'<div style="padding: 16px;">{paragraphs}'
        f'<p style="color: #888; font-size: 12px;">Severity: {event.severity.value.upper()}</p>'
        "</div></div>"
    )
    return SecurityAlert(subject=subject, text_body=text_body, html_body=html_body)


class ActivityAuditor:
    """Append-only security event log with publish-on-write.

    ``log`` returns once the event is durable. Subscribers then run in a
    background task that the triggering request does not wait for; one
    that raises is logged and skipped. ``drain`` waits for deliveries still
    in flight.
    """

    def __init__(
        self,
        db: StoreGateway,
        *,
        clock: Clock = utc_now,
        subscribers: Optional[List[EventSubscriber]] = None,
    ) -> None:
        self.db = db
        self._clock = clock
        self._subscribers: List[EventSubscriber] = list(subscribers or [])
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, subscriber: EventSubscriber) -> None:
        self._subscribers.append(subscriber)

    async def log(
        self,
        event_type: EventType,
        severity: Severity = Severity.LOW,
        *,
        user_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            type=event_type,
            severity=severity,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
            created_at=self._clock(),
        )
        await self.db.call("append_security_event", event)
        logger.info(
            "security_event_logged",
            event_type=event_type.value,
            severity=severity.value,
            user_id=user_id,
            event_id=event.id,
        )
        await self._publish(event)
        return event

    async def _publish(self, event: SecurityEvent) -> None:
        if not self._subscribers:
            return
        task = asyncio.create_task(self._deliver(event, list(self._subscribers)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: SecurityEvent, subscribers: List[EventSubscriber]) -> None:
        for subscriber in subscribers:
            try:
                await subscriber.handle(event)
            except Exception as exc:
                logger.error(
                    "security_event_subscriber_failed",
                    subscriber=type(subscriber).__name__,
                    event_id=event.id,
                    error=str(exc),
                )

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def statistics(self, window_days: int = 7) -> SecurityStatistics:
        since = self._clock() - timedelta(days=window_days)
        events = await self.db.call("list_security_events", since)
        by_type = Counter(e.type.value for e in events)
        by_severity = Counter(e.severity.value for e in events)
        return SecurityStatistics(
            total_events=len(events),
            by_type=dict(by_type),
            by_severity=dict(by_severity),
            suspicious_activity_count=by_type.get(EventType.SUSPICIOUS_ACTIVITY.value, 0),
            locked_account_count=by_type.get(EventType.LOGIN_LOCKED.value, 0),
        )

    async def user_events(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        return await self.db.call("list_security_events", user_id=user_id, limit=limit)


class EscalationSubscriber:
    """Mails the account owner and forwards to monitoring for high/critical events."""

    def __init__(
        self,
        db: StoreGateway,
        notifier: Optional[AlertNotifier],
        monitor: Optional[MonitoringSink] = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.monitor: MonitoringSink = monitor or LoggingMonitor()

    async def handle(self, event: SecurityEvent) -> None:
        if not event.severity.escalates:
            return
        await self._notify_owner(event)
        try:
            await self.monitor.forward(event)
        except Exception as exc:
            logger.error("security_monitoring_forward_failed", event_id=event.id, error=str(exc))

    async def _notify_owner(self, event: SecurityEvent) -> None:
        if self.notifier is None or not event.user_id:
            return
        try:
            user = await self.db.call("get_user", event.user_id)
            if user is None or not user.email:
                return
            alert = render_security_alert(event, user.name)
            sent = await self.notifier.send_security_alert(
                user.email, alert.subject, alert.text_body, alert.html_body
            )
            if not sent:
                logger.warning(
                    "security_alert_not_delivered",
                    event_id=event.id,
                    to=redact_email(user.email),
                )
        except Exception as exc:
            logger.error(
                "security_alert_failed",
                event_id=event.id,
                event_type=event.type.value,
                error=str(exc),
            )
