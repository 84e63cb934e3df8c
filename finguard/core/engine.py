"""Authentication engine facade.

Composes the security components behind the operations the HTTP boundary
calls: authenticate a bearer header, authorize an action, log in (with
MFA and trusted-device bypass), refresh, log out and step up.

Usage:
    engine = AuthEngine(settings=settings, session_maker=session_maker)
    await engine.start()
    result = await engine.login("alice", "s3cret", ip_address="10.0.0.1")
    ...
    await engine.stop()

Every component shares one event bus; the engine owns its consumer task
and the purge job, so nothing runs until ``start()`` is called.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.config import Settings, get_settings
from finguard.core.alerts import AlertSeverity, AlertType, SecurityAlertSink
from finguard.core.backup_codes import BackupCodeManager
from finguard.core.clock import Clock, utcnow, with_deadline
from finguard.core.credential_store import CredentialStore, Principal, SqlCredentialStore
from finguard.core.delivery import DeliveryBackend, LoggingDeliveryBackend, WebhookDeliveryBackend
from finguard.core.errors import (
    AccessTokenMalformedError,
    AccountLockedError,
    ChallengeCodeMismatchError,
    ChallengeNotFoundError,
    InvalidCredentialsError,
    UnauthorizedError,
)
from finguard.core.events import (
    AlertHandler,
    AlertSpec,
    EventType,
    LoginAttemptHandler,
    SecurityEvent,
    SecurityEventBus,
    log_event,
)
from finguard.core.lockout import BruteForceGuard, InMemoryLockoutStore, LockoutStore, RedisLockoutStore
from finguard.core.logging import get_logger, instrument, set_user_context
from finguard.core.login_attempts import LoginAttemptRecorder
from finguard.core.maintenance import PurgeJob
from finguard.core.mfa import IssuedChallenge, MfaChallengeMachine, MfaMethod, VerificationResult
from finguard.core.passwords import PasswordVerifier
from finguard.core.rbac import ActionKind, PermissionEvaluator, ResourceKind
from finguard.core.refresh_tokens import RefreshTokenManager
from finguard.core.step_up import StepUpPolicy
from finguard.core.token_codec import TokenCodec
from finguard.core.trusted_devices import DeviceMetadata, TrustedDeviceRegistry
from finguard.database import get_session_maker

logger = get_logger(__name__)

LOGIN_OPERATION = "login"


class LoginStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"


@dataclass(frozen=True)
class SessionTokens:
    """Access and refresh token pair handed to the client."""

    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful first factor.

    Either ``tokens`` is set (authenticated) or ``challenge`` is (a second
    factor is required).
    """

    status: LoginStatus
    user_id: str
    tokens: SessionTokens | None = None
    challenge: IssuedChallenge | None = None

    @property
    def mfa_required(self) -> bool:
        return self.status == LoginStatus.MFA_REQUIRED


class AuthEngine:
    """Authentication and session security operations."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        store: CredentialStore | None = None,
        lockout_store: LockoutStore | None = None,
        delivery: DeliveryBackend | None = None,
        passwords: PasswordVerifier | None = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.session_maker = session_maker or get_session_maker()
        self.clock = clock
        self.store = store or SqlCredentialStore(self.session_maker, self.settings)
        self.passwords = passwords or PasswordVerifier()

        if lockout_store is None:
            if self.settings.redis_url:
                lockout_store = RedisLockoutStore(self.settings.redis_url)
            else:
                lockout_store = InMemoryLockoutStore()
        if delivery is None:
            if self.settings.delivery_webhook_url:
                delivery = WebhookDeliveryBackend(
                    self.settings.delivery_webhook_url,
                    timeout=self.settings.delivery_timeout_seconds,
                )
            else:
                delivery = LoggingDeliveryBackend()
        self.delivery = delivery

        self.events = SecurityEventBus(maxsize=self.settings.event_queue_size)
        self.alerts = SecurityAlertSink(self.session_maker, clock=clock)
        self.login_attempts = LoginAttemptRecorder(self.session_maker)
        self.codec = TokenCodec(self.settings, clock=clock)
        self.permissions = PermissionEvaluator(self.store)
        self.guard = BruteForceGuard(lockout_store, self.settings, clock=clock)
        self.challenges = MfaChallengeMachine(
            self.session_maker, self.store, self.events, delivery, self.settings, clock=clock
        )
        self.backup_codes = BackupCodeManager(self.session_maker, self.events, self.settings, clock=clock)
        self.devices = TrustedDeviceRegistry(self.session_maker, self.events, self.settings, clock=clock)
        self.step_up = StepUpPolicy(self.session_maker, self.devices, self.settings, clock=clock)
        self.refresh_tokens = RefreshTokenManager(self.session_maker, self.events, self.settings, clock=clock)
        self.purge_job = PurgeJob(
            self.refresh_tokens, self.challenges, self.devices, self.guard, self.settings
        )

        self.events.add_handler(log_event)
        self.events.add_handler(LoginAttemptHandler(self.login_attempts, self.alerts, self.settings))
        self.events.add_handler(AlertHandler(self.alerts))

        # Used to spend the same verification time on unknown usernames
        self._dummy_hash = self.passwords.hash_password(secrets.token_hex(16))

        self.authenticate = instrument(self._authenticate, "authenticate")
        self.login = instrument(self._login, "login")
        self.complete_mfa_login = instrument(self._complete_mfa_login, "complete_mfa_login")
        self.complete_backup_code_login = instrument(
            self._complete_backup_code_login, "complete_backup_code_login"
        )
        self.refresh = instrument(self._refresh, "refresh")
        self.logout = instrument(self._logout, "logout")
        self.logout_everywhere = instrument(self._logout_everywhere, "logout_everywhere")
        self.change_password = instrument(self._change_password, "change_password")
        self.begin_step_up = instrument(self._begin_step_up, "begin_step_up")
        self.complete_step_up = instrument(self._complete_step_up, "complete_step_up")

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        await self.events.start()
        await self.purge_job.start()
        logger.info("Auth engine started")

    async def stop(self) -> None:
        await self.purge_job.stop()
        await self.events.stop()
        await self.delivery.close()
        await self.guard.store.close()
        logger.info("Auth engine stopped")

    # ==================== Request authentication ====================

    async def _authenticate(self, raw_header: str | None, timeout: float | None = None) -> Principal:
        """Resolve an ``Authorization: Bearer <token>`` header to a principal.

        Raises:
            UnauthorizedError: Missing header, unknown, inactive or locked user
            AccessTokenMalformedError: Not a bearer header or not a valid token
            AccessTokenExpiredError: Token expired
            AccessTokenSignatureError: Signature does not match
            OperationTimeoutError: Principal lookup missed the deadline
        """
        if not raw_header or not raw_header.strip():
            raise UnauthorizedError("Missing bearer token")
        scheme, _, token = raw_header.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise AccessTokenMalformedError("Expected a bearer token")

        claims = self.codec.verify(token)
        if timeout is None:
            timeout = self.settings.operation_timeout_seconds
        principal = await with_deadline(
            self.store.find_user_by_id(claims.subject_id), timeout, "authenticate"
        )
        if principal is None or not principal.is_active:
            raise UnauthorizedError("Unknown or inactive user")
        if principal.is_locked_at(self.clock()):
            raise UnauthorizedError("User is locked")

        set_user_context(principal.id)
        return principal

    async def authorize_action(
        self,
        principal: Principal,
        resource: ResourceKind,
        action: ActionKind,
    ) -> bool:
        allowed = await self.permissions.authorize(principal, resource, action)
        if not allowed:
            self.events.emit(SecurityEvent(
                event_type=EventType.ACCESS_DENIED,
                message=f"Access denied: {ResourceKind(resource).value}:{ActionKind(action).value}",
                user_id=principal.id,
                username=principal.username,
                outcome="denied",
                timestamp=self.clock(),
            ))
        return allowed

    # ==================== Login ====================

    async def _login(
        self,
        username: str,
        password: str,
        ip_address: str | None = None,
        device_id: str | None = None,
        user_agent: str | None = None,
        country: str | None = None,
        city: str | None = None,
    ) -> LoginResult:
        """First-factor login.

        Returns tokens directly when the user has no MFA or logs in from a
        trusted device; otherwise issues a login challenge.

        Raises:
            AccountLockedError: Too many recent failures
            InvalidCredentialsError: Unknown user, wrong password or inactive account
        """
        now = self.clock()
        context = dict(
            username=username,
            ip_address=ip_address,
            device_id=device_id,
            user_agent=user_agent,
            country=country,
            city=city,
        )

        principal = await self.store.find_user_by_username(username)
        locked = not await self.guard.allow_attempt(username)
        if not locked and principal is not None and principal.is_locked_at(now):
            locked = True
        if locked:
            self._emit_login_failure(principal, "account_locked", context)
            raise AccountLockedError(username, await self.guard.lockout_expiry(username))

        password_hash = await self.store.get_password_hash(principal.id) if principal else None
        valid = await self.passwords.verify(password_hash or self._dummy_hash, password or "")
        if principal is None or password_hash is None or not valid or not principal.is_active:
            if principal is None:
                reason = "unknown_user"
            elif not valid:
                reason = "invalid_password"
            else:
                reason = "inactive"
            await self._record_failed_factor(principal, username, reason, context)
            raise InvalidCredentialsError()

        await self.guard.record_success(username)
        if principal.locked_until is not None:
            await self.store.update_lockout(principal.id, None)

        if principal.mfa_enabled:
            if await self.devices.is_trusted(principal.id, device_id):
                await self.devices.touch(principal.id, device_id)
                logger.info("MFA bypassed for trusted device", user_id=principal.id, device_id=device_id)
            else:
                challenge = await self.challenges.create(
                    principal.id,
                    principal.mfa_method or MfaMethod.EMAIL.value,
                    ip_address=ip_address,
                    device_id=device_id,
                    operation=LOGIN_OPERATION,
                )
                return LoginResult(
                    status=LoginStatus.MFA_REQUIRED,
                    user_id=principal.id,
                    challenge=challenge,
                )

        tokens = await self._open_session(principal, "password", context)
        return LoginResult(status=LoginStatus.AUTHENTICATED, user_id=principal.id, tokens=tokens)

    async def _complete_mfa_login(
        self,
        user_id: str,
        challenge_id: str,
        code: str,
        ip_address: str | None = None,
        device_id: str | None = None,
        trust_device: bool = False,
        device_metadata: DeviceMetadata | None = None,
        user_agent: str | None = None,
        country: str | None = None,
        city: str | None = None,
    ) -> LoginResult:
        """Second-factor login with a challenge code.

        With ``trust_device`` the device skips MFA on later logins.

        Raises:
            ChallengeError: Verification failed (typed by reason)
            AccountLockedError: Too many recent failures
            UnauthorizedError: Unknown or inactive user
        """
        principal = await self._login_principal(user_id)
        context = dict(
            username=principal.username,
            ip_address=ip_address,
            device_id=device_id,
            user_agent=user_agent,
            country=country,
            city=city,
        )

        result = await self.challenges.verify(
            challenge_id, code, user_id, ip_address=ip_address, operation=LOGIN_OPERATION
        )
        if not result:
            await self._record_second_factor_failure(principal, result)
            result.raise_for_error()

        if trust_device and device_id:
            metadata = device_metadata or DeviceMetadata()
            if metadata.ip_address is None:
                metadata.ip_address = ip_address
            await self.devices.trust(user_id, device_id, metadata)

        tokens = await self._open_session(principal, "mfa", context)
        return LoginResult(status=LoginStatus.AUTHENTICATED, user_id=user_id, tokens=tokens)

    async def _complete_backup_code_login(
        self,
        user_id: str,
        challenge_id: str,
        code: str,
        ip_address: str | None = None,
        device_id: str | None = None,
        user_agent: str | None = None,
        country: str | None = None,
        city: str | None = None,
    ) -> LoginResult:
        """Second-factor login with a backup code instead of the challenge code.

        The pending login challenge must still be open; it is invalidated
        once the backup code is accepted.
        """
        principal = await self._login_principal(user_id)
        if not await self.challenges.is_open(challenge_id, user_id, operation=LOGIN_OPERATION):
            raise ChallengeNotFoundError()

        result = await self.backup_codes.verify(user_id, code, ip_address=ip_address, device_id=device_id)
        if not result:
            await self._record_second_factor_failure(principal, result)
            result.raise_for_error()

        await self.challenges.invalidate_open(user_id, LOGIN_OPERATION)
        context = dict(
            username=principal.username,
            ip_address=ip_address,
            device_id=device_id,
            user_agent=user_agent,
            country=country,
            city=city,
        )
        tokens = await self._open_session(principal, "backup_code", context)
        return LoginResult(status=LoginStatus.AUTHENTICATED, user_id=user_id, tokens=tokens)

    async def _login_principal(self, user_id: str) -> Principal:
        principal = await self.store.find_user_by_id(user_id)
        if principal is None or not principal.is_active:
            raise UnauthorizedError("Unknown or inactive user")
        if not await self.guard.allow_attempt(principal.username):
            raise AccountLockedError(
                principal.username, await self.guard.lockout_expiry(principal.username)
            )
        return principal

    async def _record_second_factor_failure(self, principal: Principal, result: VerificationResult) -> None:
        # Only wrong codes count; expired or superseded challenges are not guesses
        if not isinstance(result.error, ChallengeCodeMismatchError):
            return
        outcome = await self.guard.record_failure(principal.username)
        if outcome.locked_now:
            await self._persist_lock(principal, outcome.locked_until, outcome.failure_count)

    async def _record_failed_factor(
        self,
        principal: Principal | None,
        username: str,
        reason: str,
        context: dict,
    ) -> None:
        outcome = await self.guard.record_failure(username)
        self._emit_login_failure(principal, reason, context)
        if outcome.locked_now:
            if principal is not None:
                await self._persist_lock(principal, outcome.locked_until, outcome.failure_count)
            raise AccountLockedError(username, outcome.locked_until)

    async def _persist_lock(self, principal: Principal, locked_until: datetime, failures: int) -> None:
        await self.store.update_lockout(principal.id, locked_until)
        self.events.emit(SecurityEvent(
            event_type=EventType.ACCOUNT_LOCKED,
            message="Account locked after repeated failures",
            user_id=principal.id,
            username=principal.username,
            reason="too_many_failures",
            alert=AlertSpec(
                alert_type=AlertType.ACCOUNT_LOCKED,
                severity=AlertSeverity.HIGH,
                message=f"Your account was locked after {failures} failed attempts",
                details={"locked_until": locked_until.isoformat()},
            ),
            timestamp=self.clock(),
        ))

    def _emit_login_failure(self, principal: Principal | None, reason: str, context: dict) -> None:
        self.events.emit(SecurityEvent(
            event_type=EventType.LOGIN_FAILURE,
            message="Login failed",
            user_id=principal.id if principal else None,
            method="password",
            outcome="failure",
            reason=reason,
            timestamp=self.clock(),
            **context,
        ))

    async def _open_session(self, principal: Principal, method: str, context: dict) -> SessionTokens:
        now = self.clock()
        access = self.codec.issue(principal)
        refresh = await self.refresh_tokens.issue(
            principal.id, device_id=context.get("device_id"), client_ip=context.get("ip_address")
        )
        await self.store.record_login(principal.id, now)
        self.events.emit(SecurityEvent(
            event_type=EventType.LOGIN_SUCCESS,
            message="Login succeeded",
            user_id=principal.id,
            method=method,
            outcome="success",
            timestamp=now,
            **context,
        ))
        return SessionTokens(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
        )

    # ==================== Sessions ====================

    async def _refresh(
        self,
        refresh_token: str,
        client_ip: str | None = None,
        device_id: str | None = None,
        timeout: float | None = None,
    ) -> SessionTokens:
        """Rotate the refresh token and mint a new access token.

        Raises:
            RefreshTokenError: Token unknown, revoked or expired
            UnauthorizedError: User gone or deactivated since the token was issued
        """
        rotated = await self.refresh_tokens.rotate(
            refresh_token, client_ip=client_ip, device_id=device_id, timeout=timeout
        )
        principal = await self.store.find_user_by_id(rotated.user_id)
        if principal is None or not principal.is_active:
            await self.refresh_tokens.revoke(rotated.token, by_ip=client_ip, reason="user_inactive")
            raise UnauthorizedError("Unknown or inactive user")

        access = self.codec.issue(principal)
        return SessionTokens(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=rotated.token,
            refresh_expires_at=rotated.expires_at,
        )

    async def _logout(self, refresh_token: str, client_ip: str | None = None) -> bool:
        revoked = await self.refresh_tokens.revoke(refresh_token, by_ip=client_ip, reason="logout")
        if revoked:
            self.events.emit(SecurityEvent(
                event_type=EventType.LOGOUT,
                message="Logged out",
                ip_address=client_ip,
                timestamp=self.clock(),
            ))
        return revoked

    async def _logout_everywhere(
        self,
        user_id: str,
        client_ip: str | None = None,
        current_refresh_token: str | None = None,
        current_device_id: str | None = None,
        revoke_devices: bool = False,
    ) -> int:
        """Revoke the user's sessions.

        With ``current_refresh_token`` the calling session survives;
        without it every session ends. ``revoke_devices`` also drops trusted
        devices other than ``current_device_id``.
        """
        if current_refresh_token:
            count = await self.refresh_tokens.revoke_all_except_current(
                user_id, current_refresh_token, by_ip=client_ip, reason="logout_everywhere"
            )
        else:
            count = await self.refresh_tokens.revoke_all_for_user(
                user_id, by_ip=client_ip, reason="logout_everywhere"
            )
        if revoke_devices:
            await self.devices.revoke_all_except_current(user_id, current_device_id, ip_address=client_ip)
        return count

    async def _change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        client_ip: str | None = None,
    ) -> int:
        """Replace the password and end every session.

        Returns:
            Number of refresh tokens revoked
        """
        principal = await self._login_principal(user_id)
        password_hash = await self.store.get_password_hash(user_id)
        if not await self.passwords.verify(password_hash, current_password or ""):
            outcome = await self.guard.record_failure(principal.username)
            if outcome.locked_now:
                await self._persist_lock(principal, outcome.locked_until, outcome.failure_count)
            raise InvalidCredentialsError()

        await self.store.set_password_hash(user_id, await self.passwords.hash(new_password))
        return await self.on_password_changed(user_id, client_ip=client_ip)

    async def on_password_changed(self, user_id: str, client_ip: str | None = None) -> int:
        """Revoke all sessions after a password change made anywhere."""
        count = await self.refresh_tokens.revoke_all_for_user(
            user_id, by_ip=client_ip, reason="password_changed", notify=False
        )
        self.events.emit(SecurityEvent(
            event_type=EventType.PASSWORD_CHANGED,
            message="Password changed",
            user_id=user_id,
            ip_address=client_ip,
            alert=AlertSpec(
                alert_type=AlertType.PASSWORD_CHANGED,
                severity=AlertSeverity.MEDIUM,
                message="Your password was changed and all sessions were signed out",
            ),
            custom_fields={"revoked": count},
            timestamp=self.clock(),
        ))
        return count

    # ==================== Step-up ====================

    async def requires_step_up(self, user_id: str, operation: str, device_id: str | None = None) -> bool:
        return await self.step_up.requires_step_up(user_id, operation, device_id=device_id)

    async def _begin_step_up(
        self,
        user_id: str,
        operation: str,
        method: MfaMethod | str | None = None,
        ip_address: str | None = None,
        device_id: str | None = None,
    ) -> IssuedChallenge | None:
        """Issue a challenge for ``operation`` if one is needed.

        Returns None when the user verified recently or the device is trusted.
        """
        if not await self.step_up.requires_step_up(user_id, operation, device_id=device_id):
            return None
        principal = await self._login_principal(user_id)
        return await self.challenges.create(
            user_id,
            method or principal.mfa_method or MfaMethod.EMAIL.value,
            ip_address=ip_address,
            device_id=device_id,
            operation=operation,
        )

    async def _complete_step_up(
        self,
        user_id: str,
        challenge_id: str,
        code: str,
        ip_address: str | None = None,
        operation: str | None = None,
    ) -> VerificationResult:
        """Verify a step-up challenge. Raises the typed error on denial.

        With ``operation`` the challenge must have been issued for it.
        """
        principal = await self._login_principal(user_id)
        result = await self.challenges.verify(
            challenge_id, code, user_id, ip_address=ip_address, operation=operation
        )
        if not result:
            await self._record_second_factor_failure(principal, result)
            result.raise_for_error()
        return result
