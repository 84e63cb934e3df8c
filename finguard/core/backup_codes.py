"""MFA backup codes.

A finite, pre-generated set of single-use recovery codes. Codes never
expire; consumption is the only transition. Regenerating replaces the
whole set, so every earlier code stops working.
"""

import hashlib
import hmac
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.config import Settings, get_settings
from finguard.core.alerts import AlertSeverity, AlertType
from finguard.core.clock import Clock, utcnow
from finguard.core.errors import ChallengeCodeMismatchError
from finguard.core.events import AlertSpec, EventType, SecurityEvent, SecurityEventBus
from finguard.core.logging import get_logger
from finguard.core.mfa import VerificationResult, generate_numeric_code, normalize_code
from finguard.models import BackupCode

logger = get_logger(__name__)

BACKUP_CODE_LENGTH = 8


class BackupCodeManager:
    """Generates, verifies and counts backup codes."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        events: SecurityEventBus,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ):
        self.session_maker = session_maker
        self.events = events
        self.settings = settings or get_settings()
        self.clock = clock
        self._code_key = hashlib.sha256(
            b"finguard-backup-code:" + self.settings.finguard_master_key.encode()
        ).digest()

    def _hash_code(self, user_id: str, code: str) -> str:
        message = f"{user_id}:{normalize_code(code)}".encode()
        return hmac.new(self._code_key, message, hashlib.sha256).hexdigest()

    async def generate(self, user_id: str, ip_address: str | None = None) -> list[str]:
        """Replace the user's codes with a fresh set.

        Returns:
            The plaintext codes. They are not retrievable again.
        """
        codes: list[str] = []
        while len(codes) < self.settings.backup_code_count:
            code = generate_numeric_code(BACKUP_CODE_LENGTH)
            if code not in codes:
                codes.append(code)

        now = self.clock()
        async with self.session_maker() as db, db.begin():
            await db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
            db.add_all([
                BackupCode(user_id=user_id, code_hash=self._hash_code(user_id, code), created_at=now)
                for code in codes
            ])

        self.events.emit(SecurityEvent(
            event_type=EventType.BACKUP_CODES_GENERATED,
            message="Backup codes regenerated",
            user_id=user_id,
            ip_address=ip_address,
            alert=AlertSpec(
                alert_type=AlertType.BACKUP_CODES_REGENERATED,
                severity=AlertSeverity.LOW,
                message="New backup codes were generated; previous codes no longer work",
            ),
            timestamp=now,
        ))
        return codes

    async def verify(
        self,
        user_id: str,
        code: str,
        ip_address: str | None = None,
        device_id: str | None = None,
    ) -> VerificationResult:
        """Consume ``code`` if it is one of the user's unused codes.

        Unknown and already-used codes are both a mismatch.
        """
        now = self.clock()
        code_hash = self._hash_code(user_id, code or "")

        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                select(BackupCode.id).where(
                    BackupCode.user_id == user_id,
                    BackupCode.code_hash == code_hash,
                    BackupCode.used_at.is_(None),
                )
            )
            code_id = result.scalars().first()
            consumed = False
            if code_id is not None:
                updated = await db.execute(
                    update(BackupCode)
                    .where(BackupCode.id == code_id, BackupCode.used_at.is_(None))
                    .values(used_at=now)
                )
                consumed = updated.rowcount == 1

        if not consumed:
            self.events.emit(SecurityEvent(
                event_type=EventType.MFA_FAILURE,
                message="Backup code rejected",
                user_id=user_id,
                ip_address=ip_address,
                device_id=device_id,
                method="backup_code",
                outcome="failure",
                reason="code_mismatch",
                timestamp=now,
            ))
            return VerificationResult(
                verified=False,
                challenge_id=None,
                user_id=user_id,
                operation="backup_code",
                error=ChallengeCodeMismatchError(),
            )

        remaining = await self.remaining_unused(user_id)
        self.events.emit(SecurityEvent(
            event_type=EventType.BACKUP_CODE_USED,
            message="Backup code used",
            user_id=user_id,
            ip_address=ip_address,
            device_id=device_id,
            method="backup_code",
            outcome="success",
            alert=AlertSpec(
                alert_type=AlertType.BACKUP_CODE_USED,
                severity=AlertSeverity.MEDIUM,
                message=f"A backup code was used to sign in; {remaining} remaining",
            ),
            custom_fields={"remaining": remaining},
            timestamp=now,
        ))
        if remaining <= self.settings.backup_code_low_watermark:
            self.events.emit(SecurityEvent(
                event_type=EventType.BACKUP_CODE_USED,
                message="Backup codes running low",
                user_id=user_id,
                ip_address=ip_address,
                device_id=device_id,
                alert=AlertSpec(
                    alert_type=AlertType.BACKUP_CODES_LOW,
                    severity=AlertSeverity.MEDIUM,
                    message=f"Only {remaining} backup codes left; generate a new set",
                ),
                custom_fields={"remaining": remaining},
                timestamp=now,
            ))

        return VerificationResult(
            verified=True,
            challenge_id=str(code_id),
            user_id=user_id,
            operation="backup_code",
        )

    async def remaining_unused(self, user_id: str) -> int:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count())
                .select_from(BackupCode)
                .where(BackupCode.user_id == user_id, BackupCode.used_at.is_(None))
            )
            return result.scalar_one()

    async def needs_regeneration(self, user_id: str) -> bool:
        """True once the unused count is at or below the low watermark."""
        return await self.remaining_unused(user_id) <= self.settings.backup_code_low_watermark

    async def last_used_at(self, user_id: str) -> datetime | None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.max(BackupCode.used_at)).where(BackupCode.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def clear(self, user_id: str) -> int:
        """Remove every code for the user (MFA disabled)."""
        async with self.session_maker() as db, db.begin():
            result = await db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
            return result.rowcount
