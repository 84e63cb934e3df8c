"""MFA challenge machine.

A challenge is a short-lived, single-use secondary proof tied to one user
and one operation:

    Issued -> Verified     (terminal, success)
           -> Expired      (terminal, time-based)
           -> Invalidated  (terminal, superseded by a newer challenge)

Email and SMS codes are generated here, delivered out-of-band and stored
only as an HMAC. Authenticator codes come from the user's TOTP secret.
Verification is single-use, not single-check: the final transition is a
conditional UPDATE, so of two concurrent verifies with the right code
exactly one succeeds.
"""

import base64
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.twofactor import InvalidToken
from cryptography.hazmat.primitives.twofactor.totp import TOTP
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.config import Settings, get_settings
from finguard.core.alerts import AlertSeverity, AlertType
from finguard.core.clock import Clock, utcnow, with_deadline
from finguard.core.credential_store import CredentialStore
from finguard.core.delivery import (
    DeliveryBackend,
    DeliveryChannel,
    DeliveryPayload,
    LoggingDeliveryBackend,
)
from finguard.core.errors import (
    AuthError,
    ChallengeAlreadyUsedError,
    ChallengeCodeMismatchError,
    ChallengeExpiredError,
    ChallengeInvalidatedError,
    ChallengeNotFoundError,
    MfaNotConfiguredError,
    OperationTimeoutError,
    UnauthorizedError,
)
from finguard.core.events import AlertSpec, EventType, SecurityEvent, SecurityEventBus
from finguard.core.logging import get_logger
from finguard.models import MfaChallenge

logger = get_logger(__name__)

TOTP_STEP_SECONDS = 30
TOTP_SECRET_BYTES = 20


class MfaMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    AUTHENTICATOR = "authenticator"


class ChallengeState(str, Enum):
    ISSUED = "issued"
    VERIFIED = "verified"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"


@dataclass(frozen=True)
class IssuedChallenge:
    """A created challenge. The code itself is never returned."""

    id: str
    user_id: str
    method: MfaMethod
    operation: str
    expires_at: datetime
    delivered: bool


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a verification attempt.

    Truthy only when verified. ``error`` is the typed reason for a denial.
    """

    verified: bool
    challenge_id: str | None
    user_id: str | None = None
    operation: str | None = None
    error: AuthError | None = None

    def __bool__(self) -> bool:
        return self.verified

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass(frozen=True)
class TotpEnrollment:
    """Secret and provisioning URI for an authenticator app."""

    secret: str
    provisioning_uri: str


def generate_numeric_code(length: int) -> str:
    """Uniformly random decimal code of ``length`` digits."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


def normalize_code(code: str) -> str:
    return "".join(code.split()).replace("-", "")


def challenge_state(challenge: MfaChallenge, now: datetime) -> ChallengeState:
    if challenge.used_at is not None:
        return ChallengeState.VERIFIED
    if challenge.invalidated_at is not None:
        return ChallengeState.INVALIDATED
    if now >= challenge.expires_at:
        return ChallengeState.EXPIRED
    return ChallengeState.ISSUED


class MfaChallengeMachine:
    """Issues, verifies and expires MFA challenges."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store: CredentialStore,
        events: SecurityEventBus,
        delivery: DeliveryBackend | None = None,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ):
        self.session_maker = session_maker
        self.store = store
        self.events = events
        self.delivery = delivery or LoggingDeliveryBackend()
        self.settings = settings or get_settings()
        self.clock = clock
        self._code_key = hashlib.sha256(
            b"finguard-mfa-code:" + self.settings.finguard_master_key.encode()
        ).digest()

    def _hash_code(self, challenge_id: str, code: str) -> str:
        message = f"{challenge_id}:{normalize_code(code)}".encode()
        return hmac.new(self._code_key, message, hashlib.sha256).hexdigest()

    # ==================== Issuance ====================

    async def create(
        self,
        user_id: str,
        method: MfaMethod | str,
        ip_address: str | None = None,
        device_id: str | None = None,
        ttl_minutes: int | None = None,
        operation: str = "login",
    ) -> IssuedChallenge:
        """Issue a challenge, superseding open ones for the same user, method and operation.

        Raises:
            UnauthorizedError: Unknown or inactive user
            MfaNotConfiguredError: No recipient or TOTP secret for ``method``
        """
        method = MfaMethod(method)
        principal = await self.store.find_user_by_id(user_id)
        if principal is None or not principal.is_active:
            raise UnauthorizedError("Unknown or inactive user")

        code: str | None = None
        recipient: str | None = None
        channel: DeliveryChannel | None = None
        if method == MfaMethod.AUTHENTICATOR:
            if not await self.store.get_totp_secret(user_id):
                raise MfaNotConfiguredError("No authenticator enrolled")
        else:
            channel = DeliveryChannel(method.value)
            recipient = principal.email if method == MfaMethod.EMAIL else principal.phone
            if not recipient:
                raise MfaNotConfiguredError(f"No {method.value} recipient on file")
            code = generate_numeric_code(self.settings.mfa_code_length)

        if ttl_minutes is None:
            ttl_minutes = self.settings.mfa_challenge_ttl_minutes
        if ttl_minutes < 1:
            raise ValueError("ttl_minutes must be at least 1")
        ttl = timedelta(minutes=ttl_minutes)
        now = self.clock()
        challenge_id = str(uuid.uuid4())
        challenge = MfaChallenge(
            id=challenge_id,
            user_id=user_id,
            method=method.value,
            operation=operation,
            code_hash=self._hash_code(challenge_id, code) if code else None,
            created_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            device_id=device_id,
        )

        async with self.session_maker() as db, db.begin():
            superseded = await db.execute(
                update(MfaChallenge)
                .where(
                    MfaChallenge.user_id == user_id,
                    MfaChallenge.method == method.value,
                    MfaChallenge.operation == operation,
                    MfaChallenge.used_at.is_(None),
                    MfaChallenge.invalidated_at.is_(None),
                    MfaChallenge.expires_at > now,
                )
                .values(invalidated_at=now)
            )
            db.add(challenge)

        if superseded.rowcount:
            logger.info(
                "Superseded open MFA challenges",
                user_id=user_id,
                method=method.value,
                operation=operation,
                count=superseded.rowcount,
            )

        delivered = True
        if code is not None:
            result = await self.delivery.send(
                channel,
                recipient,
                DeliveryPayload(
                    subject="Your verification code",
                    code=code,
                    expires_in_minutes=int(ttl.total_seconds() // 60),
                    operation=operation,
                ),
            )
            delivered = result.delivered
            if not delivered:
                logger.warning(
                    "MFA code delivery failed",
                    user_id=user_id,
                    challenge_id=challenge_id,
                    channel=channel.value,
                    error=result.error,
                )

        self.events.emit(SecurityEvent(
            event_type=EventType.MFA_CHALLENGE_ISSUED,
            message=f"MFA challenge issued via {method.value}",
            user_id=user_id,
            ip_address=ip_address,
            device_id=device_id,
            method=method.value,
            custom_fields={"operation": operation, "delivered": delivered},
            timestamp=now,
        ))

        return IssuedChallenge(
            id=challenge_id,
            user_id=user_id,
            method=method,
            operation=operation,
            expires_at=challenge.expires_at,
            delivered=delivered,
        )

    # ==================== Verification ====================

    async def verify(
        self,
        challenge_id: str,
        code: str,
        user_id: str,
        ip_address: str | None = None,
        timeout: float | None = None,
        operation: str | None = None,
    ) -> VerificationResult:
        """Verify ``code`` against a challenge owned by ``user_id``.

        Checks run in order: exists for this user (and for ``operation``
        when given), not used, not invalidated, not expired, constant-time
        code match, then the atomic transition to verified. A mismatch
        leaves the challenge open. A challenge issued for another operation
        is reported as not found and stays untouched. A missed deadline
        denies.
        """
        if timeout is None:
            timeout = self.settings.operation_timeout_seconds
        try:
            return await with_deadline(
                self._verify(challenge_id, code, user_id, ip_address, operation),
                timeout,
                "mfa_verify",
            )
        except OperationTimeoutError as e:
            logger.warning("MFA verification timed out", user_id=user_id, challenge_id=challenge_id)
            return VerificationResult(verified=False, challenge_id=challenge_id, user_id=user_id, error=e)

    async def _verify(
        self,
        challenge_id: str,
        code: str,
        user_id: str,
        ip_address: str | None,
        expected_operation: str | None = None,
    ) -> VerificationResult:
        now = self.clock()

        def denied(error: AuthError, operation: str | None = None) -> VerificationResult:
            return VerificationResult(
                verified=False,
                challenge_id=challenge_id,
                user_id=user_id,
                operation=operation,
                error=error,
            )

        failed_attempts = None
        async with self.session_maker() as db, db.begin():
            challenge = await db.get(MfaChallenge, challenge_id)
            if challenge is None or challenge.user_id != user_id:
                return denied(ChallengeNotFoundError())
            if expected_operation is not None and challenge.operation != expected_operation:
                return denied(ChallengeNotFoundError())

            operation = challenge.operation
            state = challenge_state(challenge, now)
            if state == ChallengeState.VERIFIED:
                return denied(ChallengeAlreadyUsedError(), operation)
            if state == ChallengeState.INVALIDATED:
                return denied(ChallengeInvalidatedError(), operation)
            if state == ChallengeState.EXPIRED:
                return denied(ChallengeExpiredError(), operation)

            if await self._code_matches(challenge, code, now):
                result = await db.execute(
                    update(MfaChallenge)
                    .where(
                        MfaChallenge.id == challenge_id,
                        MfaChallenge.used_at.is_(None),
                        MfaChallenge.invalidated_at.is_(None),
                    )
                    .values(used_at=now)
                )
                won = result.rowcount == 1
            else:
                await db.execute(
                    update(MfaChallenge)
                    .where(MfaChallenge.id == challenge_id)
                    .values(failed_attempts=MfaChallenge.failed_attempts + 1)
                )
                result = await db.execute(
                    select(MfaChallenge.failed_attempts).where(MfaChallenge.id == challenge_id)
                )
                failed_attempts = result.scalar_one()

        if failed_attempts is not None:
            self._emit_failure(challenge, failed_attempts, ip_address, now)
            return denied(ChallengeCodeMismatchError(), operation)

        if not won:
            return denied(ChallengeAlreadyUsedError(), operation)

        self.events.emit(SecurityEvent(
            event_type=EventType.MFA_SUCCESS,
            message="MFA challenge verified",
            user_id=user_id,
            ip_address=ip_address,
            device_id=challenge.device_id,
            method=challenge.method,
            custom_fields={"operation": operation},
            timestamp=now,
        ))
        return VerificationResult(
            verified=True,
            challenge_id=challenge_id,
            user_id=user_id,
            operation=operation,
        )

    async def _code_matches(self, challenge: MfaChallenge, code: str, now: datetime) -> bool:
        if not code:
            return False
        if challenge.method == MfaMethod.AUTHENTICATOR.value:
            secret = await self.store.get_totp_secret(challenge.user_id)
            if not secret:
                return False
            return verify_totp(secret, code, now, self.settings.mfa_code_length)
        if challenge.code_hash is None:
            return False
        return hmac.compare_digest(self._hash_code(challenge.id, code), challenge.code_hash)

    def _emit_failure(
        self,
        challenge: MfaChallenge,
        failed_attempts: int,
        ip_address: str | None,
        now: datetime,
    ) -> None:
        alert = None
        if failed_attempts == self.settings.mfa_failure_alert_threshold:
            alert = AlertSpec(
                alert_type=AlertType.MFA_FAILURES,
                severity=AlertSeverity.HIGH,
                message=f"{failed_attempts} incorrect verification codes entered",
            )
        self.events.emit(SecurityEvent(
            event_type=EventType.MFA_FAILURE,
            message="MFA code mismatch",
            user_id=challenge.user_id,
            ip_address=ip_address,
            device_id=challenge.device_id,
            method="mfa",
            outcome="failure",
            reason="code_mismatch",
            alert=alert,
            custom_fields={"challenge_id": challenge.id, "failed_attempts": failed_attempts},
            timestamp=now,
        ))

    # ==================== State & housekeeping ====================

    async def state_of(self, challenge_id: str) -> ChallengeState | None:
        async with self.session_maker() as db:
            challenge = await db.get(MfaChallenge, challenge_id)
            if challenge is None:
                return None
            return challenge_state(challenge, self.clock())

    async def is_open(self, challenge_id: str, user_id: str, operation: str | None = None) -> bool:
        """True if the challenge belongs to the user (and ``operation``) and can still be verified."""
        async with self.session_maker() as db:
            challenge = await db.get(MfaChallenge, challenge_id)
            if challenge is None or challenge.user_id != user_id:
                return False
            if operation is not None and challenge.operation != operation:
                return False
            return challenge_state(challenge, self.clock()) == ChallengeState.ISSUED

    async def invalidate_open(self, user_id: str, operation: str | None = None) -> int:
        """Invalidate every open challenge of the user (optionally for one operation)."""
        now = self.clock()
        conditions = [
            MfaChallenge.user_id == user_id,
            MfaChallenge.used_at.is_(None),
            MfaChallenge.invalidated_at.is_(None),
            MfaChallenge.expires_at > now,
        ]
        if operation is not None:
            conditions.append(MfaChallenge.operation == operation)
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                update(MfaChallenge).where(*conditions).values(invalidated_at=now)
            )
            return result.rowcount

    async def purge_expired(self, retention: timedelta | None = None) -> int:
        """Delete challenges that expired more than ``retention`` ago."""
        if retention is None:
            retention = timedelta(hours=self.settings.challenge_retention_hours)
        cutoff = self.clock() - retention
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                delete(MfaChallenge).where(MfaChallenge.expires_at <= cutoff)
            )
            return result.rowcount

    # ==================== Authenticator enrolment ====================

    def begin_totp_enrollment(self, account_name: str) -> TotpEnrollment:
        """Generate a fresh TOTP secret and its provisioning URI.

        Nothing is stored until ``confirm_totp_enrollment`` sees a valid code.
        """
        key = secrets.token_bytes(TOTP_SECRET_BYTES)
        secret = base64.b32encode(key).decode("ascii").rstrip("=")
        totp = _totp_for(secret, self.settings.mfa_code_length)
        return TotpEnrollment(
            secret=secret,
            provisioning_uri=totp.get_provisioning_uri(account_name, self.settings.mfa_issuer_name),
        )

    async def confirm_totp_enrollment(self, user_id: str, secret: str, code: str) -> bool:
        """Store ``secret`` for the user if ``code`` proves the app is set up."""
        if not verify_totp(secret, code, self.clock(), self.settings.mfa_code_length):
            return False
        await self.store.set_totp_secret(user_id, secret, MfaMethod.AUTHENTICATOR.value)
        self.events.emit(SecurityEvent(
            event_type=EventType.MFA_ENROLLED,
            message="Authenticator app enrolled",
            user_id=user_id,
            method=MfaMethod.AUTHENTICATOR.value,
            timestamp=self.clock(),
        ))
        return True


def _totp_for(secret: str, length: int) -> TOTP:
    padded = secret + "=" * (-len(secret) % 8)
    key = base64.b32decode(padded.upper())
    return TOTP(key, length, SHA1(), TOTP_STEP_SECONDS)


def totp_code(secret: str, at: datetime, length: int = 6) -> str:
    """Authenticator code for ``secret`` at time ``at``."""
    return _totp_for(secret, length).generate(int(at.timestamp())).decode("ascii")


def verify_totp(secret: str, code: str, at: datetime, length: int = 6) -> bool:
    """Check ``code`` against the current step and one step either side."""
    try:
        totp = _totp_for(secret, length)
    except ValueError:
        return False
    candidate = normalize_code(code)
    if len(candidate) != length or not candidate.isascii() or not candidate.isdigit():
        return False
    now = int(at.timestamp())
    for drift in (-TOTP_STEP_SECONDS, 0, TOTP_STEP_SECONDS):
        try:
            totp.verify(candidate.encode("ascii"), now + drift)
            return True
        except InvalidToken:
            continue
    return False
