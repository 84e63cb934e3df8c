"""Periodic purge of expired security state.

Every step is a delete-where-expired, so running it alongside live traffic
or twice in a row is harmless.
"""

import asyncio
from dataclasses import asdict, dataclass

from finguard.config import Settings, get_settings
from finguard.core.lockout import BruteForceGuard
from finguard.core.logging import get_logger
from finguard.core.mfa import MfaChallengeMachine
from finguard.core.refresh_tokens import RefreshTokenManager
from finguard.core.trusted_devices import TrustedDeviceRegistry

logger = get_logger(__name__)


@dataclass
class PurgeReport:
    refresh_tokens: int = 0
    challenges: int = 0
    trusted_devices: int = 0
    lockouts: int = 0
    revocations_retried: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class PurgeJob:
    """Deletes expired tokens, challenges, devices and lockout states."""

    def __init__(
        self,
        refresh_tokens: RefreshTokenManager,
        challenges: MfaChallengeMachine,
        devices: TrustedDeviceRegistry,
        guard: BruteForceGuard,
        settings: Settings | None = None,
    ):
        self.refresh_tokens = refresh_tokens
        self.challenges = challenges
        self.devices = devices
        self.guard = guard
        self.settings = settings or get_settings()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> PurgeReport:
        """Run every purge step once.

        A failing step is logged and counted; the remaining steps still run.
        """
        report = PurgeReport()
        steps = [
            ("revocations_retried", self.refresh_tokens.retry_pending_revocations),
            ("refresh_tokens", self.refresh_tokens.purge_expired),
            ("challenges", self.challenges.purge_expired),
            ("trusted_devices", self.devices.purge_expired),
            ("lockouts", self.guard.purge_expired),
        ]
        for name, step in steps:
            try:
                setattr(report, name, await step())
            except Exception:
                report.errors += 1
                logger.error("Purge step failed", step=name, exc_info=True)

        logger.info("Purge completed", **report.to_dict())
        return report

    async def start(self) -> None:
        if self.running:
            logger.warning("Purge job already running")
            return
        self._task = asyncio.create_task(self._loop(), name="finguard-purge")
        logger.info("Purge job started", interval_seconds=self.settings.purge_interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Purge job stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.purge_interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.error("Purge run failed", exc_info=True)
