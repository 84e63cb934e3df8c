"""Trusted device registry.

A trusted (user, device) pair bypasses MFA challenges until it is revoked
or expires. A device id is only ever trusted for the user that registered
it. Revocation is immediate and permanent; trusting the same device again
creates a new registration.
"""

from dataclasses import dataclass, asdict
from datetime import timedelta

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.config import Settings, get_settings
from finguard.core.alerts import AlertSeverity, AlertType
from finguard.core.clock import Clock, utcnow
from finguard.core.events import AlertSpec, EventType, SecurityEvent, SecurityEventBus
from finguard.core.logging import get_logger
from finguard.models import TrustedDevice

logger = get_logger(__name__)


@dataclass
class DeviceMetadata:
    """Fingerprint details captured when a device is trusted."""

    device_name: str | None = None
    device_type: str | None = None
    operating_system: str | None = None
    browser: str | None = None
    browser_version: str | None = None
    ip_address: str | None = None
    country: str | None = None
    city: str | None = None
    region: str | None = None


class TrustedDeviceRegistry:
    """Remembers devices that may skip MFA."""

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

    def _active(self, user_id: str, device_id: str):
        now = self.clock()
        return and_(
            TrustedDevice.user_id == user_id,
            TrustedDevice.device_id == device_id,
            TrustedDevice.revoked_at.is_(None),
            or_(TrustedDevice.expires_at.is_(None), TrustedDevice.expires_at > now),
        )

    def _expiry(self, now):
        days = self.settings.trusted_device_ttl_days
        return now + timedelta(days=days) if days > 0 else None

    async def is_trusted(self, user_id: str, device_id: str | None) -> bool:
        if not device_id:
            return False
        async with self.session_maker() as db:
            result = await db.execute(
                select(TrustedDevice.id).where(self._active(user_id, device_id)).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def trust(
        self,
        user_id: str,
        device_id: str,
        metadata: DeviceMetadata | None = None,
    ) -> TrustedDevice:
        """Trust ``device_id`` for ``user_id``.

        An already-trusted device has its metadata and expiry refreshed;
        otherwise a new registration is created and the user is alerted.
        """
        metadata = metadata or DeviceMetadata()
        fields = {k: v for k, v in asdict(metadata).items() if v is not None}
        now = self.clock()

        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                select(TrustedDevice).where(self._active(user_id, device_id)).limit(1)
            )
            device = result.scalar_one_or_none()
            created = device is None
            if created:
                device = TrustedDevice(
                    user_id=user_id,
                    device_id=device_id,
                    created_at=now,
                    last_used_at=now,
                    expires_at=self._expiry(now),
                    **fields,
                )
                db.add(device)
            else:
                for key, value in fields.items():
                    setattr(device, key, value)
                device.last_used_at = now
                device.expires_at = self._expiry(now)

        if created:
            label = metadata.device_name or device_id
            self.events.emit(SecurityEvent(
                event_type=EventType.DEVICE_TRUSTED,
                message=f"Device trusted: {label}",
                user_id=user_id,
                ip_address=metadata.ip_address,
                device_id=device_id,
                country=metadata.country,
                city=metadata.city,
                alert=AlertSpec(
                    alert_type=AlertType.NEW_DEVICE_TRUSTED,
                    severity=AlertSeverity.MEDIUM,
                    message=f"A new device was trusted on your account: {label}",
                ),
                timestamp=now,
            ))
        return device

    async def revoke(self, user_id: str, device_id: str, ip_address: str | None = None) -> bool:
        """Revoke trust immediately. Returns False if nothing was trusted."""
        now = self.clock()
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                update(TrustedDevice)
                .where(
                    TrustedDevice.user_id == user_id,
                    TrustedDevice.device_id == device_id,
                    TrustedDevice.revoked_at.is_(None),
                )
                .values(revoked_at=now)
            )
            revoked = result.rowcount > 0

        if revoked:
            self.events.emit(SecurityEvent(
                event_type=EventType.DEVICE_REVOKED,
                message="Trusted device revoked",
                user_id=user_id,
                ip_address=ip_address,
                device_id=device_id,
                alert=AlertSpec(
                    alert_type=AlertType.DEVICE_REVOKED,
                    severity=AlertSeverity.LOW,
                    message="A trusted device was removed from your account",
                ),
                timestamp=now,
            ))
        return revoked

    async def revoke_all_except_current(
        self,
        user_id: str,
        current_device_id: str | None,
        ip_address: str | None = None,
    ) -> int:
        """Revoke every trusted device of the user except ``current_device_id``.

        The caller must name the current device; None revokes them all.
        """
        now = self.clock()
        conditions = [TrustedDevice.user_id == user_id, TrustedDevice.revoked_at.is_(None)]
        if current_device_id is not None:
            conditions.append(TrustedDevice.device_id != current_device_id)

        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                update(TrustedDevice).where(*conditions).values(revoked_at=now)
            )
            count = result.rowcount

        if count:
            self.events.emit(SecurityEvent(
                event_type=EventType.DEVICE_REVOKED,
                message=f"{count} trusted devices revoked",
                user_id=user_id,
                ip_address=ip_address,
                device_id=current_device_id,
                alert=AlertSpec(
                    alert_type=AlertType.DEVICE_REVOKED,
                    severity=AlertSeverity.MEDIUM,
                    message=f"{count} trusted devices were removed from your account",
                ),
                timestamp=now,
            ))
        return count

    async def touch(self, user_id: str, device_id: str) -> bool:
        """Record use of a trusted device. Returns False if it is not trusted."""
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                update(TrustedDevice)
                .where(self._active(user_id, device_id))
                .values(last_used_at=self.clock())
            )
            return result.rowcount > 0

    async def list_devices(self, user_id: str, include_revoked: bool = False) -> list[TrustedDevice]:
        conditions = [TrustedDevice.user_id == user_id]
        if not include_revoked:
            conditions.append(TrustedDevice.revoked_at.is_(None))
        async with self.session_maker() as db:
            result = await db.execute(
                select(TrustedDevice)
                .where(*conditions)
                .order_by(TrustedDevice.last_used_at.desc())
            )
            return list(result.scalars().all())

    async def purge_expired(self) -> int:
        """Delete registrations whose trust has expired."""
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                delete(TrustedDevice).where(
                    TrustedDevice.expires_at.is_not(None),
                    TrustedDevice.expires_at <= self.clock(),
                )
            )
            return result.rowcount
