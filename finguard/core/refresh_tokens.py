"""Refresh token lifecycle.

Refresh tokens are opaque random strings; only their SHA-256 hash is
stored. Rotation revokes the presented token and inserts its successor in
one transaction, guarded by a conditional UPDATE, so a token can be
rotated at most once and a logical session never has two active tokens.

Presenting a token that was already rotated is treated as theft: when
reuse detection is on, every active token of the user is revoked. A token
bound to one device and presented from another gets the same treatment.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.config import Settings, get_settings
from finguard.core.alerts import AlertSeverity, AlertType
from finguard.core.clock import Clock, utcnow, with_deadline
from finguard.core.errors import TokenExpiredError, TokenNotFoundError, TokenRevokedError
from finguard.core.events import AlertSpec, EventType, SecurityEvent, SecurityEventBus
from finguard.core.logging import get_logger
from finguard.models import RefreshToken

logger = get_logger(__name__)

TOKEN_BYTES = 48


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A newly minted refresh token. ``token`` is only available here."""

    token: str
    user_id: str
    expires_at: datetime
    device_id: str | None = None


@dataclass
class PendingRevocation:
    user_id: str
    by_ip: str | None
    reason: str
    queued_at: datetime
    attempts: int = 0


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as the storage key."""
    return hashlib.sha256(token.encode()).hexdigest()


class RefreshTokenManager:
    """Issues, rotates and revokes refresh tokens."""

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
        # user_id -> revocation that failed and must be retried by the purge job
        self._pending: dict[str, PendingRevocation] = {}

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    @property
    def pending_revocations(self) -> list[PendingRevocation]:
        return list(self._pending.values())

    def _new_row(
        self,
        user_id: str,
        device_id: str | None,
        client_ip: str | None,
        now: datetime,
    ) -> tuple[str, RefreshToken]:
        token = secrets.token_urlsafe(TOKEN_BYTES)
        row = RefreshToken(
            token_hash=hash_token(token),
            user_id=user_id,
            device_id=device_id,
            issued_at=now,
            expires_at=now + self.ttl,
            created_by_ip=client_ip,
        )
        return token, row

    async def issue(
        self,
        user_id: str,
        device_id: str | None = None,
        client_ip: str | None = None,
    ) -> IssuedRefreshToken:
        now = self.clock()
        token, row = self._new_row(user_id, device_id, client_ip, now)
        async with self.session_maker() as db, db.begin():
            db.add(row)

        self.events.emit(SecurityEvent(
            event_type=EventType.TOKEN_ISSUED,
            message="Refresh token issued",
            user_id=user_id,
            ip_address=client_ip,
            device_id=device_id,
            timestamp=now,
        ))
        return IssuedRefreshToken(token=token, user_id=user_id, expires_at=row.expires_at, device_id=device_id)

    async def rotate(
        self,
        old_token: str,
        client_ip: str | None = None,
        device_id: str | None = None,
        timeout: float | None = None,
    ) -> IssuedRefreshToken:
        """Exchange ``old_token`` for a new token.

        Raises:
            TokenNotFoundError: Unknown token
            TokenRevokedError: Already revoked or rotated, or presented from another device
            TokenExpiredError: Past its expiry
            OperationTimeoutError: The deadline passed; nothing is issued
        """
        if timeout is None:
            timeout = self.settings.operation_timeout_seconds
        return await with_deadline(
            self._rotate(old_token, client_ip, device_id),
            timeout,
            "refresh_rotate",
        )

    async def _rotate(
        self,
        old_token: str,
        client_ip: str | None,
        device_id: str | None,
    ) -> IssuedRefreshToken:
        now = self.clock()
        old_hash = hash_token(old_token or "")
        compromised: str | None = None
        issued: IssuedRefreshToken | None = None

        async with self.session_maker() as db, db.begin():
            result = await db.execute(select(RefreshToken).where(RefreshToken.token_hash == old_hash))
            current = result.scalar_one_or_none()
            if current is None:
                raise TokenNotFoundError()

            user_id = current.user_id
            if current.revoked_at is not None:
                if current.replaced_by_hash is not None and self.settings.refresh_reuse_detection:
                    compromised = "reuse"
            elif now >= current.expires_at:
                raise TokenExpiredError()
            elif current.device_id and device_id and current.device_id != device_id:
                compromised = "device_mismatch"
            else:
                token, successor = self._new_row(user_id, current.device_id, client_ip, now)
                claimed = await db.execute(
                    update(RefreshToken)
                    .where(RefreshToken.id == current.id, RefreshToken.revoked_at.is_(None))
                    .values(
                        revoked_at=now,
                        revoked_by_ip=client_ip,
                        revoke_reason="rotated",
                        replaced_by_hash=successor.token_hash,
                    )
                )
                if claimed.rowcount == 1:
                    db.add(successor)
                    issued = IssuedRefreshToken(
                        token=token,
                        user_id=user_id,
                        expires_at=successor.expires_at,
                        device_id=successor.device_id,
                    )

        if compromised == "reuse":
            await self._handle_compromise(
                user_id,
                client_ip,
                device_id,
                reason="token_reuse",
                event_type=EventType.TOKEN_REUSE,
                alert_type=AlertType.TOKEN_REUSE,
                message="A previously used session token was presented again; all sessions were signed out",
            )
        elif compromised == "device_mismatch":
            await self._handle_compromise(
                user_id,
                client_ip,
                device_id,
                reason="device_mismatch",
                event_type=EventType.DEVICE_MISMATCH,
                alert_type=AlertType.DEVICE_MISMATCH,
                message="A session token was presented from an unexpected device; all sessions were signed out",
            )

        if issued is None:
            raise TokenRevokedError()

        self.events.emit(SecurityEvent(
            event_type=EventType.TOKEN_ROTATED,
            message="Refresh token rotated",
            user_id=user_id,
            ip_address=client_ip,
            device_id=issued.device_id,
            timestamp=now,
        ))
        return issued

    async def _handle_compromise(
        self,
        user_id: str,
        client_ip: str | None,
        device_id: str | None,
        reason: str,
        event_type: EventType,
        alert_type: AlertType,
        message: str,
    ) -> None:
        logger.error(
            "Refresh token compromise suspected, revoking all sessions",
            user_id=user_id,
            reason=reason,
            client_ip=client_ip,
            device_id=device_id,
        )
        count = await self.revoke_all_for_user(user_id, by_ip=client_ip, reason=reason, notify=False)
        self.events.emit(SecurityEvent(
            event_type=event_type,
            message=message,
            user_id=user_id,
            ip_address=client_ip,
            device_id=device_id,
            reason=reason,
            alert=AlertSpec(alert_type=alert_type, severity=AlertSeverity.HIGH, message=message),
            custom_fields={"revoked": count},
            timestamp=self.clock(),
        ))

    async def revoke(self, token: str, by_ip: str | None = None, reason: str | None = None) -> bool:
        """Revoke a single token. Returns False if it was unknown or already revoked."""
        now = self.clock()
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                select(RefreshToken).where(RefreshToken.token_hash == hash_token(token or ""))
            )
            row = result.scalar_one_or_none()
            if row is None or row.revoked_at is not None:
                return False
            updated = await db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == row.id, RefreshToken.revoked_at.is_(None))
                .values(revoked_at=now, revoked_by_ip=by_ip, revoke_reason=reason or "revoked")
            )
            if updated.rowcount != 1:
                return False

        self.events.emit(SecurityEvent(
            event_type=EventType.TOKEN_REVOKED,
            message="Refresh token revoked",
            user_id=row.user_id,
            ip_address=by_ip,
            device_id=row.device_id,
            reason=reason,
            timestamp=now,
        ))
        return True

    async def _revoke_all(self, user_id: str, by_ip: str | None, reason: str, now: datetime) -> int:
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
                .values(revoked_at=now, revoked_by_ip=by_ip, revoke_reason=reason)
            )
            return result.rowcount

    async def revoke_all_for_user(
        self,
        user_id: str,
        by_ip: str | None = None,
        reason: str | None = None,
        notify: bool = True,
    ) -> int:
        """Revoke every active token of the user in one atomic UPDATE.

        A failure is logged and queued for the purge job before it is
        re-raised, so it is never silently dropped.
        """
        reason = reason or "revoke_all"
        now = self.clock()
        try:
            count = await self._revoke_all(user_id, by_ip, reason, now)
        except SQLAlchemyError:
            logger.error(
                "Revoke-all failed, queued for retry",
                user_id=user_id,
                reason=reason,
                exc_info=True,
            )
            self._pending[user_id] = PendingRevocation(
                user_id=user_id, by_ip=by_ip, reason=reason, queued_at=now
            )
            raise

        self._pending.pop(user_id, None)
        if notify:
            self.events.emit(SecurityEvent(
                event_type=EventType.SESSIONS_REVOKED,
                message=f"{count} sessions revoked",
                user_id=user_id,
                ip_address=by_ip,
                reason=reason,
                alert=AlertSpec(
                    alert_type=AlertType.ALL_SESSIONS_REVOKED,
                    severity=AlertSeverity.MEDIUM,
                    message="You were signed out of all sessions",
                ),
                custom_fields={"revoked": count},
                timestamp=now,
            ))
        return count

    async def revoke_all_except_current(
        self,
        user_id: str,
        current_token: str,
        by_ip: str | None = None,
        reason: str | None = None,
    ) -> int:
        """Revoke every active token of the user except ``current_token``."""
        reason = reason or "revoke_others"
        now = self.clock()
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.token_hash != hash_token(current_token or ""),
                )
                .values(revoked_at=now, revoked_by_ip=by_ip, revoke_reason=reason)
            )
            count = result.rowcount

        if count:
            self.events.emit(SecurityEvent(
                event_type=EventType.SESSIONS_REVOKED,
                message=f"{count} other sessions revoked",
                user_id=user_id,
                ip_address=by_ip,
                reason=reason,
                custom_fields={"revoked": count},
                timestamp=now,
            ))
        return count

    async def list_active(self, user_id: str) -> list[RefreshToken]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > self.clock(),
                )
                .order_by(RefreshToken.issued_at.desc())
            )
            return list(result.scalars().all())

    async def purge_expired(self) -> int:
        """Delete expired tokens.

        Revoked but unexpired rows are kept so a replayed token is still
        recognised as reuse.
        """
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                delete(RefreshToken).where(RefreshToken.expires_at <= self.clock())
            )
            return result.rowcount

    async def retry_pending_revocations(self) -> int:
        """Retry revoke-all operations that failed earlier.

        Returns the number of users whose revocation now succeeded. Failures
        stay queued.
        """
        done = 0
        for pending in list(self._pending.values()):
            pending.attempts += 1
            try:
                count = await self._revoke_all(pending.user_id, pending.by_ip, pending.reason, self.clock())
            except SQLAlchemyError:
                logger.error(
                    "Retry of revoke-all failed",
                    user_id=pending.user_id,
                    attempts=pending.attempts,
                    exc_info=True,
                )
                continue
            self._pending.pop(pending.user_id, None)
            done += 1
            logger.info(
                "Pending revoke-all completed",
                user_id=pending.user_id,
                revoked=count,
                attempts=pending.attempts,
            )
        return done
