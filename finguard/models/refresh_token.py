"""Refresh token model for revocable sessions."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from finguard.database import Base, GUID, UTCDateTime


class RefreshToken(Base):
    """Long-lived session credential.

    Only the SHA-256 hash of the opaque token is stored. Rotation revokes
    the presented row and inserts its successor; rows are never reactivated.
    Expired rows are removed by the purge job.
    """

    __tablename__ = "refresh_tokens"
    __table_args__ = (
        Index("ix_refresh_tokens_user_active", "user_id", "revoked_at"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(GUID(), nullable=False, index=True)
    device_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    created_by_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    # Revocation tracking
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_by_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    replaced_by_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<RefreshToken user={self.user_id} revoked={self.revoked_at is not None}>"

    def is_active_at(self, now: datetime) -> bool:
        """Check if the token is neither revoked nor expired at ``now``."""
        return self.revoked_at is None and now < self.expires_at
