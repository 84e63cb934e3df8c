"""Tests for the security event pipeline."""

import logging

import pytest

from finguard.core.alerts import AlertSeverity, AlertType, SecurityAlertSink
from finguard.core.events import (
    AlertHandler,
    AlertSpec,
    EventType,
    LoginAttemptHandler,
    SecurityEvent,
    SecurityEventBus,
    log_event,
)
from finguard.core.login_attempts import LoginAttemptRecorder


@pytest.fixture
def sink(session_maker, clock):
    return SecurityAlertSink(session_maker, clock=clock)


@pytest.fixture
def recorder(session_maker):
    return LoginAttemptRecorder(session_maker)


@pytest.fixture
def history(recorder, sink, settings):
    return LoginAttemptHandler(recorder, sink, settings)


def login_event(event_type, clock, **kwargs):
    defaults = dict(
        message="login",
        user_id="user-1",
        username="alice",
        ip_address="10.0.0.1",
        timestamp=clock(),
    )
    defaults.update(kwargs)
    return SecurityEvent(event_type=event_type, **defaults)


class TestBus:
    @pytest.mark.asyncio
    async def test_drain_without_consumer(self):
        bus = SecurityEventBus()
        seen = []

        async def handler(event):
            seen.append(event.event_type)

        bus.add_handler(handler)
        bus.emit(SecurityEvent(event_type=EventType.LOGOUT, message="bye"))
        assert seen == []

        await bus.drain()
        assert seen == [EventType.LOGOUT]

    @pytest.mark.asyncio
    async def test_consumer_task(self):
        bus = SecurityEventBus()
        seen = []

        async def handler(event):
            seen.append(event.message)

        bus.add_handler(handler)
        await bus.start()
        assert bus.running
        for i in range(3):
            bus.emit(SecurityEvent(event_type=EventType.TOKEN_ISSUED, message=str(i)))
        await bus.drain()
        assert seen == ["0", "1", "2"]

        await bus.stop()
        assert not bus.running

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = SecurityEventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("handler down")

        async def working(event):
            seen.append(event.event_type)

        bus.add_handler(broken)
        bus.add_handler(working)
        bus.emit(SecurityEvent(event_type=EventType.LOGOUT, message="bye"))
        await bus.drain()
        assert seen == [EventType.LOGOUT]

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        bus = SecurityEventBus(maxsize=1)
        bus.emit(SecurityEvent(event_type=EventType.LOGOUT, message="1"))
        bus.emit(SecurityEvent(event_type=EventType.LOGOUT, message="2"))
        assert bus.dropped == 1

    @pytest.mark.asyncio
    async def test_remove_handler(self):
        bus = SecurityEventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        bus.add_handler(handler)
        bus.remove_handler(handler)
        bus.emit(SecurityEvent(event_type=EventType.LOGOUT, message="bye"))
        await bus.drain()
        assert seen == []

    def test_to_dict(self, clock):
        event = SecurityEvent(
            event_type=EventType.ACCOUNT_LOCKED,
            message="locked",
            user_id="user-1",
            alert=AlertSpec(AlertType.ACCOUNT_LOCKED, AlertSeverity.HIGH, "locked"),
            custom_fields={"failure_count": 5},
            timestamp=clock(),
        )
        data = event.to_dict()
        assert data["event_type"] == "account-locked"
        assert data["alert_severity"] == "high"
        assert data["custom"] == {"failure_count": 5}
        assert "username" not in data


class TestLogEvent:
    @pytest.mark.asyncio
    async def test_levels(self, caplog, clock):
        caplog.set_level(logging.INFO, logger="finguard.security")
        await log_event(login_event(EventType.LOGIN_SUCCESS, clock))
        await log_event(login_event(EventType.LOGIN_FAILURE, clock))
        await log_event(login_event(EventType.TOKEN_REUSE, clock))

        levels = [r.levelno for r in caplog.records if r.name == "finguard.security"]
        assert levels == [logging.INFO, logging.WARNING, logging.ERROR]
        assert caplog.records[-1].extra_fields["event_type"] == "token-reuse"


class TestLoginHistory:
    @pytest.mark.asyncio
    async def test_records_attempts(self, history, recorder, clock):
        await history(login_event(EventType.LOGIN_FAILURE, clock, reason="invalid_password"))
        await history(login_event(EventType.LOGIN_SUCCESS, clock))
        await history(login_event(EventType.TOKEN_ISSUED, clock))

        attempts = await recorder.list_recent("user-1")
        assert len(attempts) == 2
        assert {a.success for a in attempts} == {True, False}
        failure = [a for a in attempts if not a.success][0]
        assert failure.failure_reason == "invalid_password"
        assert failure.method == "password"

    @pytest.mark.asyncio
    async def test_mfa_failure_is_recorded(self, history, recorder, clock):
        await history(login_event(EventType.MFA_FAILURE, clock, username=None))
        attempts = await recorder.list_recent("user-1")
        assert attempts[0].method == "mfa"

    @pytest.mark.asyncio
    async def test_failed_login_alert_at_threshold(self, history, sink, clock):
        for _ in range(4):
            await history(login_event(EventType.LOGIN_FAILURE, clock, reason="invalid_password"))
            clock.advance(minutes=1)

        alerts = await sink.list_unread("user-1")
        assert [a.alert_type for a in alerts] == [AlertType.FAILED_LOGIN_ATTEMPTS.value]

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_count(self, history, sink, clock):
        for _ in range(3):
            await history(login_event(EventType.LOGIN_FAILURE, clock))
            clock.advance(minutes=20)
        assert await sink.list_unread("user-1") == []

    @pytest.mark.asyncio
    async def test_impossible_travel(self, history, sink, clock):
        await history(login_event(EventType.LOGIN_SUCCESS, clock, country="US", ip_address="198.51.100.1"))
        clock.advance(minutes=45)
        await history(login_event(EventType.LOGIN_SUCCESS, clock, country="SG", ip_address="203.0.113.7"))

        alerts = await sink.list_unread("user-1")
        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.IMPOSSIBLE_TRAVEL.value
        assert alerts[0].severity == AlertSeverity.HIGH.value
        assert "US" in alerts[0].message

    @pytest.mark.asyncio
    async def test_travel_after_window_is_fine(self, history, sink, clock):
        await history(login_event(EventType.LOGIN_SUCCESS, clock, country="US"))
        clock.advance(hours=3)
        await history(login_event(EventType.LOGIN_SUCCESS, clock, country="SG"))
        assert await sink.list_unread("user-1") == []

    @pytest.mark.asyncio
    async def test_same_country(self, history, sink, clock):
        await history(login_event(EventType.LOGIN_SUCCESS, clock, country="US"))
        clock.advance(minutes=5)
        await history(login_event(EventType.LOGIN_SUCCESS, clock, country="US"))
        assert await sink.list_unread("user-1") == []


class TestAlertHandler:
    @pytest.mark.asyncio
    async def test_raises_attached_alert(self, sink, clock):
        handler = AlertHandler(sink)
        await handler(SecurityEvent(
            event_type=EventType.DEVICE_TRUSTED,
            message="trusted",
            user_id="user-1",
            device_id="d1",
            alert=AlertSpec(AlertType.NEW_DEVICE_TRUSTED, AlertSeverity.MEDIUM, "New device"),
            timestamp=clock(),
        ))
        await handler(SecurityEvent(event_type=EventType.LOGOUT, message="bye", user_id="user-1"))

        alerts = await sink.list_unread("user-1")
        assert len(alerts) == 1
        assert alerts[0].device_id == "d1"
        assert alerts[0].message == "New device"
