"""MFA challenge and backup code models."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from finguard.database import Base, GUID, UTCDateTime


class MfaChallenge(Base):
    """One-time secondary proof tied to a user and an operation.

    Terminal states are encoded by timestamps: ``used_at`` (verified),
    ``invalidated_at`` (superseded) and ``expires_at`` in the past (expired).
    Only an HMAC of the code is stored.
    """

    __tablename__ = "mfa_challenges"
    __table_args__ = (
        Index("ix_mfa_challenges_open", "user_id", "method", "operation"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(GUID(), nullable=False, index=True)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    operation: Mapped[str] = mapped_column(String(64), nullable=False, default="login")
    code_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # None for authenticator codes
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    def __repr__(self) -> str:
        return f"<MfaChallenge {self.id} {self.method}>"


class BackupCode(Base):
    """Single-use recovery code. No time expiry; consumption is the only transition."""

    __tablename__ = "mfa_backup_codes"
    __table_args__ = (
        Index("ix_mfa_backup_codes_lookup", "user_id", "code_hash"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(GUID(), nullable=False, index=True)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<BackupCode {self.id} used={self.used_at is not None}>"
