"""Security alert sink.

Terminal, append-only store for user-facing security alerts. The only
mutation is marking an alert read, and only by the user who owns it.
"""

import json
from enum import Enum
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.core.clock import Clock, utcnow
from finguard.core.logging import get_logger
from finguard.models import SecurityAlert

logger = get_logger(__name__)


class AlertType(str, Enum):
    """Kinds of security alerts."""

    ACCOUNT_LOCKED = "account_locked"
    FAILED_LOGIN_ATTEMPTS = "failed_login_attempts"
    MFA_FAILURES = "mfa_failures"
    NEW_DEVICE_TRUSTED = "new_device_trusted"
    DEVICE_REVOKED = "device_revoked"
    ALL_SESSIONS_REVOKED = "all_sessions_revoked"
    TOKEN_REUSE = "token_reuse"
    DEVICE_MISMATCH = "device_mismatch"
    BACKUP_CODE_USED = "backup_code_used"
    BACKUP_CODES_LOW = "backup_codes_low"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    PASSWORD_CHANGED = "password_changed"
    IMPOSSIBLE_TRAVEL = "impossible_travel"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityAlertSink:
    """Records and exposes security alerts."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ):
        self.session_maker = session_maker
        self.clock = clock

    async def raise_alert(
        self,
        user_id: str,
        alert_type: AlertType,
        message: str,
        severity: AlertSeverity = AlertSeverity.MEDIUM,
        ip_address: str | None = None,
        device_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SecurityAlert:
        """Append an alert for ``user_id``."""
        alert = SecurityAlert(
            user_id=user_id,
            alert_type=AlertType(alert_type).value,
            severity=AlertSeverity(severity).value,
            message=message,
            details=json.dumps(details, default=str) if details else None,
            created_at=self.clock(),
            ip_address=ip_address,
            device_id=device_id,
        )
        async with self.session_maker() as db, db.begin():
            db.add(alert)

        logger.info(
            "Security alert raised",
            user_id=user_id,
            alert_type=alert.alert_type,
            severity=alert.severity,
        )
        return alert

    async def list_unread(self, user_id: str) -> list[SecurityAlert]:
        """Unread alerts, newest first."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(SecurityAlert)
                .where(SecurityAlert.user_id == user_id, SecurityAlert.read_at.is_(None))
                .order_by(SecurityAlert.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_alerts(self, user_id: str, limit: int = 50) -> list[SecurityAlert]:
        """Most recent alerts, read or not."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(SecurityAlert)
                .where(SecurityAlert.user_id == user_id)
                .order_by(SecurityAlert.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_unread(self, user_id: str) -> int:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count())
                .select_from(SecurityAlert)
                .where(SecurityAlert.user_id == user_id, SecurityAlert.read_at.is_(None))
            )
            return result.scalar_one()

    async def mark_read(self, alert_id: str, user_id: str) -> bool:
        """Mark one of the user's alerts read.

        Returns False when no alert with that id belongs to the user; an
        unknown id and another user's alert look the same.
        """
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                update(SecurityAlert)
                .where(
                    SecurityAlert.id == alert_id,
                    SecurityAlert.user_id == user_id,
                    SecurityAlert.read_at.is_(None),
                )
                .values(read_at=self.clock())
            )
            if result.rowcount == 1:
                return True
            # Already read still counts as owned
            owned = await db.execute(
                select(SecurityAlert.id).where(
                    SecurityAlert.id == alert_id,
                    SecurityAlert.user_id == user_id,
                )
            )
            return owned.scalar_one_or_none() is not None

    async def mark_all_read(self, user_id: str) -> int:
        """Mark every unread alert read. Returns how many changed."""
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                update(SecurityAlert)
                .where(SecurityAlert.user_id == user_id, SecurityAlert.read_at.is_(None))
                .values(read_at=self.clock())
            )
            return result.rowcount
