"""Security event pipeline.

Components emit ``SecurityEvent``s after their primary operation; a
dedicated consumer task dispatches them to handlers (logging, login
history, alert persistence). Handlers run off the request path, and a
failing handler is logged without affecting the caller or other handlers.

Usage:
    bus = SecurityEventBus()
    bus.add_handler(log_event)
    await bus.start()

    bus.emit(SecurityEvent(
        event_type=EventType.LOGIN_FAILURE,
        message="Invalid password",
        username="alice",
        ip_address="10.0.0.1",
    ))
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from finguard.config import Settings, get_settings
from finguard.core.alerts import AlertSeverity, AlertType, SecurityAlertSink
from finguard.core.clock import utcnow
from finguard.core.logging import get_logger
from finguard.core.login_attempts import LoginAttemptRecorder

logger = get_logger(__name__)
security_logger = get_logger("finguard.security")


class EventType(str, Enum):
    """Security event types."""

    LOGIN_SUCCESS = "login-success"
    LOGIN_FAILURE = "login-failure"
    ACCOUNT_LOCKED = "account-locked"
    LOGOUT = "logout"
    MFA_CHALLENGE_ISSUED = "mfa-challenge-issued"
    MFA_SUCCESS = "mfa-success"
    MFA_FAILURE = "mfa-failure"
    MFA_ENROLLED = "mfa-enrolled"
    BACKUP_CODE_USED = "backup-code-used"
    BACKUP_CODES_GENERATED = "backup-codes-generated"
    DEVICE_TRUSTED = "device-trusted"
    DEVICE_REVOKED = "device-revoked"
    TOKEN_ISSUED = "token-issued"
    TOKEN_ROTATED = "token-rotated"
    TOKEN_REVOKED = "token-revoked"
    TOKEN_REUSE = "token-reuse"
    DEVICE_MISMATCH = "device-mismatch"
    SESSIONS_REVOKED = "sessions-revoked"
    PASSWORD_CHANGED = "password-changed"
    ACCESS_DENIED = "access-denied"


# Events that go into the login attempt history
LOGIN_EVENTS = {EventType.LOGIN_SUCCESS, EventType.LOGIN_FAILURE, EventType.MFA_FAILURE}

_WARNING_EVENTS = {
    EventType.LOGIN_FAILURE,
    EventType.MFA_FAILURE,
    EventType.ACCESS_DENIED,
}
_ERROR_EVENTS = {EventType.ACCOUNT_LOCKED, EventType.TOKEN_REUSE, EventType.DEVICE_MISMATCH}


@dataclass(frozen=True)
class AlertSpec:
    """Alert to raise when the event is processed."""

    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: dict[str, Any] | None = None


@dataclass
class SecurityEvent:
    """A security-relevant occurrence."""

    event_type: EventType
    message: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    ip_address: Optional[str] = None
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    method: Optional[str] = None
    outcome: Optional[str] = None
    reason: Optional[str] = None
    alert: Optional[AlertSpec] = None
    custom_fields: dict = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        result = {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "message": self.message,
        }

        optional = [
            "user_id",
            "username",
            "ip_address",
            "device_id",
            "country",
            "city",
            "method",
            "outcome",
            "reason",
        ]
        for field_name in optional:
            value = getattr(self, field_name)
            if value is not None:
                result[field_name] = value

        if self.alert is not None:
            result["alert_type"] = self.alert.alert_type.value
            result["alert_severity"] = self.alert.severity.value
        if self.custom_fields:
            result["custom"] = self.custom_fields

        return result


EventHandler = Callable[[SecurityEvent], Awaitable[None]]


class SecurityEventBus:
    """Bounded queue of security events with a single consumer task."""

    def __init__(self, maxsize: int = 10000, handlers: list[EventHandler] | None = None):
        self._queue: asyncio.Queue[SecurityEvent] = asyncio.Queue(maxsize=maxsize)
        self._handlers: list[EventHandler] = list(handlers or [])
        self._task: asyncio.Task | None = None
        self.dropped = 0

    def add_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def emit(self, event: SecurityEvent) -> None:
        """Queue ``event`` without waiting. A full queue drops the event."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                "Security event queue full, event dropped",
                event_type=event.event_type.value,
                user_id=event.user_id,
                dropped=self.dropped,
            )

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="security-event-consumer")
        logger.info("Security event consumer started")

    async def stop(self) -> None:
        """Process what is queued, then stop the consumer."""
        if not self.running:
            await self.drain()
            return
        await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Security event consumer stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: SecurityEvent) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.error(
                    "Security event handler failed",
                    handler=getattr(handler, "__name__", type(handler).__name__),
                    event_type=event.event_type.value,
                    exc_info=True,
                )


async def log_event(event: SecurityEvent) -> None:
    """Write the event to the security log."""
    if event.event_type in _ERROR_EVENTS:
        level = logging.ERROR
    elif event.event_type in _WARNING_EVENTS:
        level = logging.WARNING
    else:
        level = logging.INFO
    security_logger.log(level, event.message, **event.to_dict())


class LoginAttemptHandler:
    """Persists login attempts and raises history-based alerts.

    - Repeated failures: an alert when a username reaches the failure
      threshold inside the alert window.
    - Impossible travel: a successful login from a different country than
      the previous successful login inside the travel window.
    """

    def __init__(
        self,
        recorder: LoginAttemptRecorder,
        alerts: SecurityAlertSink,
        settings: Settings | None = None,
    ):
        self.recorder = recorder
        self.alerts = alerts
        self.settings = settings or get_settings()

    async def __call__(self, event: SecurityEvent) -> None:
        if event.event_type not in LOGIN_EVENTS:
            return

        success = event.event_type == EventType.LOGIN_SUCCESS
        previous = None
        if success and event.user_id and event.country:
            previous = await self.recorder.last_successful(event.user_id, before=event.timestamp)

        await self.recorder.record(
            attempted_at=event.timestamp,
            success=success,
            username=event.username,
            user_id=event.user_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            failure_reason=None if success else event.reason,
            method=event.method or ("mfa" if event.event_type == EventType.MFA_FAILURE else "password"),
            country=event.country,
            city=event.city,
        )

        if success:
            await self._check_impossible_travel(event, previous)
        elif event.event_type == EventType.LOGIN_FAILURE:
            await self._check_failed_logins(event)

    async def _check_failed_logins(self, event: SecurityEvent) -> None:
        if not event.user_id or not event.username:
            return
        window = timedelta(minutes=self.settings.failed_login_alert_window_minutes)
        failures = await self.recorder.count_recent_failures(
            event.username, since=event.timestamp - window
        )
        if failures == self.settings.failed_login_alert_threshold:
            await self.alerts.raise_alert(
                user_id=event.user_id,
                alert_type=AlertType.FAILED_LOGIN_ATTEMPTS,
                message=f"{failures} failed login attempts on your account",
                severity=AlertSeverity.MEDIUM,
                ip_address=event.ip_address,
                device_id=event.device_id,
            )

    async def _check_impossible_travel(self, event: SecurityEvent, previous) -> None:
        if previous is None or not previous.country or previous.country == event.country:
            return
        window = timedelta(hours=self.settings.impossible_travel_window_hours)
        if event.timestamp - previous.attempted_at > window:
            return
        await self.alerts.raise_alert(
            user_id=event.user_id,
            alert_type=AlertType.IMPOSSIBLE_TRAVEL,
            message=(
                f"Login from {event.country} shortly after a login from {previous.country}"
            ),
            severity=AlertSeverity.HIGH,
            ip_address=event.ip_address,
            device_id=event.device_id,
            details={
                "previous_country": previous.country,
                "previous_ip": previous.ip_address,
                "previous_at": previous.attempted_at.isoformat(),
            },
        )


class AlertHandler:
    """Turns events that carry an ``alert`` into security alerts."""

    def __init__(self, alerts: SecurityAlertSink):
        self.alerts = alerts

    async def __call__(self, event: SecurityEvent) -> None:
        if event.alert is None or event.user_id is None:
            return
        await self.alerts.raise_alert(
            user_id=event.user_id,
            alert_type=event.alert.alert_type,
            message=event.alert.message,
            severity=event.alert.severity,
            ip_address=event.ip_address,
            device_id=event.device_id,
            details=event.alert.details,
        )
