from datetime import datetime, timezone

import asyncio

import pytest

from authcore.service.audit import (
    ActivityAuditor,
    EscalationSubscriber,
    SEVERITY_COLORS,
    render_security_alert,
)
from authcore.storage.models import EventType, SecurityEvent, Severity, User


@pytest.fixture
def owner(store):
    return store.create_user(
        User(id="owner-1", email="owner@example.com", password_hash="x", name="Ada")
    )


@pytest.fixture
def auditor(db, clock, mailer, monitor):
    return ActivityAuditor(
        db, clock=clock, subscribers=[EscalationSubscriber(db, mailer, monitor)]
    )


class ExplodingSubscriber:
    async def handle(self, event):
        raise RuntimeError("subscriber bug")


class GatedSubscriber:
    def __init__(self):
        self.gate = asyncio.Event()
        self.handled = []

    async def handle(self, event):
        await self.gate.wait()
        self.handled.append(event)


class TestLogging:
    async def test_event_persisted_with_clock_time(self, auditor, store, clock, owner):
        event = await auditor.log(
            EventType.LOGIN_SUCCESS,
            user_id=owner.id,
            ip_addr="10.0.0.1",
            metadata={"method": "password"},
        )
        assert store.security_events == [event]
        assert event.created_at == clock()
        assert event.severity is Severity.LOW

    async def test_low_and_medium_do_not_escalate(self, auditor, mailer, monitor, owner):
        await auditor.log(EventType.LOGIN_FAILED, Severity.LOW, user_id=owner.id)
        await auditor.log(EventType.LOGIN_FAILED, Severity.MEDIUM, user_id=owner.id)
        await auditor.drain()
        assert mailer.alerts == []
        assert monitor.events == []

    async def test_high_event_mails_owner_and_forwards(self, auditor, mailer, monitor, owner):
        event = await auditor.log(
            EventType.LOGIN_LOCKED,
            Severity.HIGH,
            user_id=owner.id,
            ip_addr="203.0.113.9",
            metadata={"lock_minutes": 30},
        )
        await auditor.drain()
        assert len(mailer.alerts) == 1
        alert = mailer.alerts[0]
        assert alert["to"] == "owner@example.com"
        assert alert["subject"] == "Security Alert: Account Temporarily Locked"
        assert "Hello Ada" in alert["text"]
        assert "203.0.113.9" in alert["text"]
        assert monitor.events == [event]

    async def test_notifier_failure_does_not_reach_caller(
        self, db, store, clock, monitor, owner, failing_mailer
    ):
        auditor = ActivityAuditor(db, clock=clock)
        auditor.subscribe(EscalationSubscriber(db, failing_mailer, monitor))
        event = await auditor.log(EventType.PASSWORD_CHANGED, Severity.HIGH, user_id=owner.id)
        await auditor.drain()
        assert event in store.security_events
        assert monitor.events == [event]
        stats = await auditor.statistics()
        assert stats.by_type == {"PASSWORD_CHANGED": 1}

    async def test_broken_subscriber_is_skipped(self, db, store, clock, monitor, owner):
        auditor = ActivityAuditor(db, clock=clock)
        auditor.subscribe(ExplodingSubscriber())
        auditor.subscribe(EscalationSubscriber(db, None, monitor))
        event = await auditor.log(EventType.SUSPICIOUS_ACTIVITY, Severity.CRITICAL, user_id=owner.id)
        await auditor.drain()
        assert monitor.events == [event]

    async def test_event_without_user_is_forwarded_only(self, auditor, mailer, monitor):
        await auditor.log(EventType.LOGIN_FAILED, Severity.HIGH, ip_addr="198.51.100.1")
        await auditor.drain()
        assert mailer.alerts == []
        assert len(monitor.events) == 1


    async def test_log_does_not_wait_for_subscribers(self, db, store, clock, owner):
        auditor = ActivityAuditor(db, clock=clock)
        gated = GatedSubscriber()
        auditor.subscribe(gated)
        event = await asyncio.wait_for(
            auditor.log(EventType.LOGIN_LOCKED, Severity.HIGH, user_id=owner.id), timeout=1
        )
        assert store.security_events == [event]
        assert gated.handled == []

        gated.gate.set()
        await auditor.drain()
        assert gated.handled == [event]

class TestQueries:
    async def test_statistics_window(self, auditor, clock, owner):
        await auditor.log(EventType.LOGIN_FAILED, user_id=owner.id)
        clock.advance(days=8)
        await auditor.log(EventType.LOGIN_LOCKED, Severity.HIGH, user_id=owner.id)
        await auditor.log(EventType.SUSPICIOUS_ACTIVITY, Severity.HIGH, user_id=owner.id)
        await auditor.log(EventType.LOGIN_FAILED, Severity.MEDIUM, user_id=owner.id)

        stats = await auditor.statistics(window_days=7)
        assert stats.total_events == 3
        assert stats.by_severity == {"high": 2, "medium": 1}
        assert stats.suspicious_activity_count == 1
        assert stats.locked_account_count == 1
        payload = stats.as_dict()
        assert payload["lockedAccountsCount"] == 1
        assert payload["eventsByType"]["LOGIN_FAILED"] == 1

    async def test_user_events_newest_first(self, auditor, clock, owner):
        for kind in (EventType.ACCOUNT_CREATED, EventType.EMAIL_VERIFIED, EventType.LOGIN_SUCCESS):
            await auditor.log(kind, user_id=owner.id)
            clock.advance(seconds=1)
        await auditor.log(EventType.LOGIN_SUCCESS, user_id="someone-else")

        events = await auditor.user_events(owner.id, limit=2)
        assert [e.type for e in events] == [EventType.LOGIN_SUCCESS, EventType.EMAIL_VERIFIED]


class TestAlertRendering:
    def _event(self, kind, severity=Severity.HIGH, **metadata):
        return SecurityEvent(
            type=kind,
            severity=severity,
            user_id="u1",
            ip_addr="192.0.2.4",
            metadata=metadata,
            created_at=datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc),
        )

    def test_suspicious_includes_reason(self):
        alert = render_security_alert(
            self._event(EventType.SUSPICIOUS_ACTIVITY, reason="Multiple IP addresses detected"),
            "Grace",
        )
        assert alert.subject == "Security Alert: Suspicious Activity Detected"
        assert "Reason: Multiple IP addresses detected" in alert.text_body
        assert "Time: 2024-03-01 09:30:00 UTC" in alert.text_body

    def test_lock_message_uses_duration(self):
        alert = render_security_alert(self._event(EventType.LOGIN_LOCKED, lock_minutes=45), None)
        assert alert.text_body.startswith("Hello there,")
        assert "wait 45 minutes" in alert.text_body

    def test_html_escapes_and_colours(self):
        alert = render_security_alert(
            self._event(EventType.TWO_FACTOR_DISABLED, Severity.CRITICAL), "<b>Mallory</b>"
        )
        assert "&lt;b&gt;Mallory&lt;/b&gt;" in alert.html_body
        assert "<b>Mallory</b>" not in alert.html_body
        assert SEVERITY_COLORS[Severity.CRITICAL] in alert.html_body

    def test_unknown_type_uses_default_subject(self):
        alert = render_security_alert(self._event(EventType.SESSION_REVOKED), "Ada")
        assert alert.subject == "Security Alert: Account Activity"
        assert "Event: SESSION_REVOKED" in alert.text_body
