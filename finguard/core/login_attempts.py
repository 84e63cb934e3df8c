"""Append-only login attempt history.

Attempts are never mutated; they are read in sliding windows to spot
repeated failures and logins from implausibly distant places.
"""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.models import LoginAttempt


class LoginAttemptRecorder:
    """Writes and queries ``LoginAttempt`` rows."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def record(
        self,
        attempted_at: datetime,
        success: bool,
        username: str | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        failure_reason: str | None = None,
        method: str = "password",
        country: str | None = None,
        city: str | None = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            username=username,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            failure_reason=failure_reason,
            method=method,
            country=country,
            city=city,
            attempted_at=attempted_at,
        )
        async with self.session_maker() as db, db.begin():
            db.add(attempt)
        return attempt

    async def count_recent_failures(self, username: str, since: datetime) -> int:
        """Failed attempts for ``username`` at or after ``since``."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count())
                .select_from(LoginAttempt)
                .where(
                    LoginAttempt.username == username,
                    LoginAttempt.success.is_(False),
                    LoginAttempt.attempted_at >= since,
                )
            )
            return result.scalar_one()

    async def last_successful(self, user_id: str, before: datetime) -> LoginAttempt | None:
        """Most recent successful attempt strictly before ``before``."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(LoginAttempt)
                .where(
                    LoginAttempt.user_id == user_id,
                    LoginAttempt.success.is_(True),
                    LoginAttempt.attempted_at < before,
                )
                .order_by(LoginAttempt.attempted_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_recent(self, user_id: str, limit: int = 20) -> list[LoginAttempt]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(LoginAttempt)
                .where(LoginAttempt.user_id == user_id)
                .order_by(LoginAttempt.attempted_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
