"""Trusted device model for MFA bypass."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from finguard.database import Base, GUID, UTCDateTime


class TrustedDevice(Base):
    """A (user, device) pair that may skip MFA challenges.

    Revocation sets ``revoked_at`` and is permanent; trusting the same
    device again creates a new row.
    """

    __tablename__ = "trusted_devices"
    __table_args__ = (
        Index("ix_trusted_devices_user_device", "user_id", "device_id"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(GUID(), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    device_name: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # Fingerprint fields
    device_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operating_system: Mapped[str | None] = mapped_column(String(64), nullable=True)
    browser: Mapped[str | None] = mapped_column(String(64), nullable=True)
    browser_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_used_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<TrustedDevice {self.device_id} user={self.user_id}>"

    def is_trusted_at(self, now: datetime) -> bool:
        """Check if the device still grants an MFA bypass at ``now``."""
        if self.revoked_at is not None:
            return False
        if self.expires_at is not None and now >= self.expires_at:
            return False
        return True
