"""Step-up authentication policy.

Sensitive operations require a fresh MFA verification unless the user
verified recently (for any operation) or acts from a trusted device. One
confirmation covers a short burst of sensitive actions; once the window
lapses the next one prompts again.
"""

from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.config import Settings, get_settings
from finguard.core.clock import Clock, utcnow
from finguard.core.logging import get_logger
from finguard.core.trusted_devices import TrustedDeviceRegistry
from finguard.models import BackupCode, MfaChallenge

logger = get_logger(__name__)


class StepUpPolicy:
    """Decides whether an operation needs a new MFA challenge."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        devices: TrustedDeviceRegistry,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ):
        self.session_maker = session_maker
        self.devices = devices
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.step_up_window_minutes)

    async def last_verified_at(self, user_id: str) -> datetime | None:
        """Most recent successful challenge or backup-code use."""
        async with self.session_maker() as db:
            challenge = await db.execute(
                select(func.max(MfaChallenge.used_at)).where(MfaChallenge.user_id == user_id)
            )
            backup = await db.execute(
                select(func.max(BackupCode.used_at)).where(BackupCode.user_id == user_id)
            )
            candidates = [
                value
                for value in (challenge.scalar_one_or_none(), backup.scalar_one_or_none())
                if value is not None
            ]
        return max(candidates) if candidates else None

    async def requires_step_up(
        self,
        user_id: str,
        operation: str,
        device_id: str | None = None,
    ) -> bool:
        if device_id and await self.devices.is_trusted(user_id, device_id):
            logger.debug("Step-up skipped for trusted device", user_id=user_id, operation=operation)
            return False

        last = await self.last_verified_at(user_id)
        if last is not None and self.clock() - last < self.window:
            return False

        logger.debug("Step-up required", user_id=user_id, operation=operation)
        return True
