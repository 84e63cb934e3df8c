"""End-to-end tests for the authentication engine."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import ALICE_PASSWORD, BOB_PASSWORD
from finguard.core.alerts import AlertType
from finguard.core.engine import LoginStatus
from finguard.core.errors import (
    AccessTokenExpiredError,
    AccessTokenMalformedError,
    AccountLockedError,
    ChallengeAlreadyUsedError,
    ChallengeCodeMismatchError,
    ChallengeNotFoundError,
    InvalidCredentialsError,
    TokenRevokedError,
    UnauthorizedError,
)
from finguard.core.events import EventType
from finguard.core.rbac import ActionKind, ResourceKind
from finguard.core.trusted_devices import DeviceMetadata
from finguard.models import User

WIRE = "wire_transfer"


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def captured(auth_engine):
    seen = []

    async def capture(event):
        seen.append(event)

    auth_engine.events.add_handler(capture)
    return seen


async def alert_types(engine, user_id) -> list[str]:
    await engine.events.drain()
    return sorted(a.alert_type for a in await engine.alerts.list_unread(user_id))


class TestPasswordLogin:
    @pytest.mark.asyncio
    async def test_login_without_mfa(self, auth_engine, alice, clock):
        result = await auth_engine.login("alice", ALICE_PASSWORD, ip_address="10.0.0.1", device_id="d1")

        assert result.status == LoginStatus.AUTHENTICATED
        assert not result.mfa_required
        assert result.user_id == alice.id
        assert result.tokens.token_type == "bearer"

        principal = await auth_engine.authenticate(f"Bearer {result.tokens.access_token}")
        assert principal.id == alice.id

        attempts = await _drained_attempts(auth_engine, alice.id)
        assert [a.success for a in attempts] == [True]

    @pytest.mark.asyncio
    async def test_wrong_password(self, auth_engine, alice, captured):
        with pytest.raises(InvalidCredentialsError):
            await auth_engine.login("alice", "wrong", ip_address="10.0.0.1")

        await auth_engine.events.drain()
        failure = [e for e in captured if e.event_type == EventType.LOGIN_FAILURE][0]
        assert failure.reason == "invalid_password"
        assert failure.user_id == alice.id
        assert await auth_engine.guard.remaining_attempts("alice") == 4

    @pytest.mark.asyncio
    async def test_unknown_user_looks_the_same(self, auth_engine, alice, captured):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth_engine.login("mallory", "whatever")
        assert exc_info.value.public_message == InvalidCredentialsError.public_message

        await auth_engine.events.drain()
        failure = [e for e in captured if e.event_type == EventType.LOGIN_FAILURE][0]
        assert failure.reason == "unknown_user"
        assert failure.user_id is None

    @pytest.mark.asyncio
    async def test_inactive_user(self, auth_engine, store, roles, passwords):
        await store.create_user(
            username="carol",
            email="carol@bank.test",
            password_hash=passwords.hash_password("pw"),
            role_id=roles["teller"].id,
            is_active=False,
        )
        with pytest.raises(InvalidCredentialsError):
            await auth_engine.login("carol", "pw")


class TestLockout:
    @pytest.mark.asyncio
    async def test_alice_locked_after_five_failures(self, auth_engine, store, alice, clock):
        """5 failed logins lock alice; the right password is refused until 30 minutes pass."""
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_engine.login("alice", "wrong")
        with pytest.raises(AccountLockedError) as exc_info:
            await auth_engine.login("alice", "wrong")
        assert exc_info.value.locked_until is not None

        assert not await auth_engine.guard.allow_attempt("alice")
        assert (await store.find_user_by_id(alice.id)).locked_until is not None
        with pytest.raises(AccountLockedError):
            await auth_engine.login("alice", ALICE_PASSWORD)

        assert await alert_types(auth_engine, alice.id) == [
            AlertType.ACCOUNT_LOCKED.value,
            AlertType.FAILED_LOGIN_ATTEMPTS.value,
        ]

        clock.advance(minutes=30)
        assert await auth_engine.guard.allow_attempt("alice")
        assert await auth_engine.guard.remaining_attempts("alice") == 5
        result = await auth_engine.login("alice", ALICE_PASSWORD)
        assert result.status == LoginStatus.AUTHENTICATED
        assert (await store.find_user_by_id(alice.id)).locked_until is None

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, auth_engine, alice):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_engine.login("alice", "wrong")
        await auth_engine.login("alice", ALICE_PASSWORD)
        assert await auth_engine.guard.remaining_attempts("alice") == 5

    @pytest.mark.asyncio
    async def test_locked_user_token_is_refused(self, auth_engine, store, alice, clock):
        result = await auth_engine.login("alice", ALICE_PASSWORD)
        await store.update_lockout(alice.id, clock.advance(minutes=1) + timedelta(minutes=30))
        with pytest.raises(UnauthorizedError):
            await auth_engine.authenticate(f"Bearer {result.tokens.access_token}")


class TestMfaLogin:
    @pytest.mark.asyncio
    async def test_challenge_then_tokens(self, auth_engine, delivery, bob):
        result = await auth_engine.login("bob", BOB_PASSWORD, device_id="d1")
        assert result.mfa_required
        assert result.tokens is None
        assert result.challenge.method.value == "email"
        assert delivery.sent[-1][1] == "bob@bank.test"

        done = await auth_engine.complete_mfa_login(bob.id, result.challenge.id, delivery.last_code)
        assert done.status == LoginStatus.AUTHENTICATED
        assert done.tokens.refresh_token

    @pytest.mark.asyncio
    async def test_code_cannot_be_replayed(self, auth_engine, delivery, bob):
        result = await auth_engine.login("bob", BOB_PASSWORD)
        code = delivery.last_code
        await auth_engine.complete_mfa_login(bob.id, result.challenge.id, code)
        with pytest.raises(ChallengeAlreadyUsedError):
            await auth_engine.complete_mfa_login(bob.id, result.challenge.id, code)

    @pytest.mark.asyncio
    async def test_trusted_device_skips_mfa(self, auth_engine, delivery, bob):
        result = await auth_engine.login("bob", BOB_PASSWORD, device_id="d1")
        await auth_engine.complete_mfa_login(
            bob.id,
            result.challenge.id,
            delivery.last_code,
            ip_address="10.0.0.7",
            device_id="d1",
            trust_device=True,
            device_metadata=DeviceMetadata(device_name="Office PC"),
        )
        sent = len(delivery.sent)

        again = await auth_engine.login("bob", BOB_PASSWORD, device_id="d1")
        assert again.status == LoginStatus.AUTHENTICATED
        assert len(delivery.sent) == sent

        other = await auth_engine.login("bob", BOB_PASSWORD, device_id="d2")
        assert other.mfa_required

        assert AlertType.NEW_DEVICE_TRUSTED.value in await alert_types(auth_engine, bob.id)
        devices = await auth_engine.devices.list_devices(bob.id)
        assert devices[0].ip_address == "10.0.0.7"

    @pytest.mark.asyncio
    async def test_revoked_device_needs_mfa_again(self, auth_engine, bob):
        await auth_engine.devices.trust(bob.id, "d1")
        assert not (await auth_engine.login("bob", BOB_PASSWORD, device_id="d1")).mfa_required

        await auth_engine.devices.revoke(bob.id, "d1")
        assert (await auth_engine.login("bob", BOB_PASSWORD, device_id="d1")).mfa_required

    @pytest.mark.asyncio
    async def test_wrong_codes_lock_the_account(self, auth_engine, delivery, bob):
        result = await auth_engine.login("bob", BOB_PASSWORD)
        bad = wrong_code(delivery.last_code)
        for _ in range(5):
            with pytest.raises(ChallengeCodeMismatchError):
                await auth_engine.complete_mfa_login(bob.id, result.challenge.id, bad)

        with pytest.raises(AccountLockedError):
            await auth_engine.complete_mfa_login(bob.id, result.challenge.id, delivery.last_code)
        with pytest.raises(AccountLockedError):
            await auth_engine.login("bob", BOB_PASSWORD)

        types = await alert_types(auth_engine, bob.id)
        assert AlertType.MFA_FAILURES.value in types
        assert AlertType.ACCOUNT_LOCKED.value in types

    @pytest.mark.asyncio
    async def test_step_up_challenge_cannot_complete_login(self, auth_engine, delivery, bob):
        challenge = await auth_engine.begin_step_up(bob.id, WIRE)
        code = delivery.last_code

        with pytest.raises(ChallengeNotFoundError):
            await auth_engine.complete_mfa_login(bob.id, challenge.id, code)
        assert await auth_engine.refresh_tokens.list_active(bob.id) == []

        result = await auth_engine.complete_step_up(bob.id, challenge.id, code, operation=WIRE)
        assert result.operation == WIRE


class TestBackupCodeLogin:
    @pytest.mark.asyncio
    async def test_backup_code_completes_login(self, auth_engine, bob):
        codes = await auth_engine.backup_codes.generate(bob.id)
        result = await auth_engine.login("bob", BOB_PASSWORD)

        done = await auth_engine.complete_backup_code_login(bob.id, result.challenge.id, codes[0])
        assert done.status == LoginStatus.AUTHENTICATED
        assert not await auth_engine.challenges.is_open(result.challenge.id, bob.id)
        assert await auth_engine.backup_codes.remaining_unused(bob.id) == 9

        assert AlertType.BACKUP_CODE_USED.value in await alert_types(auth_engine, bob.id)

    @pytest.mark.asyncio
    async def test_requires_open_challenge(self, auth_engine, bob):
        codes = await auth_engine.backup_codes.generate(bob.id)
        with pytest.raises(ChallengeNotFoundError):
            await auth_engine.complete_backup_code_login(bob.id, "no-such-challenge", codes[0])
        assert await auth_engine.backup_codes.remaining_unused(bob.id) == 10

    @pytest.mark.asyncio
    async def test_used_backup_code(self, auth_engine, bob):
        codes = await auth_engine.backup_codes.generate(bob.id)
        first = await auth_engine.login("bob", BOB_PASSWORD)
        await auth_engine.complete_backup_code_login(bob.id, first.challenge.id, codes[0])

        second = await auth_engine.login("bob", BOB_PASSWORD)
        with pytest.raises(ChallengeCodeMismatchError):
            await auth_engine.complete_backup_code_login(bob.id, second.challenge.id, codes[0])
        assert await auth_engine.challenges.is_open(second.challenge.id, bob.id)

    @pytest.mark.asyncio
    async def test_step_up_challenge_is_not_a_login_challenge(self, auth_engine, bob):
        codes = await auth_engine.backup_codes.generate(bob.id)
        challenge = await auth_engine.begin_step_up(bob.id, WIRE)

        with pytest.raises(ChallengeNotFoundError):
            await auth_engine.complete_backup_code_login(bob.id, challenge.id, codes[0])
        assert await auth_engine.backup_codes.remaining_unused(bob.id) == 10
        assert await auth_engine.refresh_tokens.list_active(bob.id) == []
        assert await auth_engine.challenges.is_open(challenge.id, bob.id, operation=WIRE)


class TestSessions:
    @pytest.mark.asyncio
    async def test_refresh(self, auth_engine, alice, clock):
        login = await auth_engine.login("alice", ALICE_PASSWORD, device_id="d1")
        clock.advance(minutes=20)

        with pytest.raises(AccessTokenExpiredError):
            await auth_engine.authenticate(f"Bearer {login.tokens.access_token}")

        tokens = await auth_engine.refresh(login.tokens.refresh_token, device_id="d1")
        assert tokens.refresh_token != login.tokens.refresh_token
        assert (await auth_engine.authenticate(f"Bearer {tokens.access_token}")).id == alice.id

    @pytest.mark.asyncio
    async def test_refresh_reuse_ends_all_sessions(self, auth_engine, alice):
        login = await auth_engine.login("alice", ALICE_PASSWORD)
        rotated = await auth_engine.refresh(login.tokens.refresh_token)

        with pytest.raises(TokenRevokedError):
            await auth_engine.refresh(login.tokens.refresh_token)
        with pytest.raises(TokenRevokedError):
            await auth_engine.refresh(rotated.refresh_token)

        assert AlertType.TOKEN_REUSE.value in await alert_types(auth_engine, alice.id)

    @pytest.mark.asyncio
    async def test_refresh_for_deactivated_user(self, auth_engine, session_maker, alice):
        login = await auth_engine.login("alice", ALICE_PASSWORD)
        async with session_maker() as db, db.begin():
            await db.execute(update(User).where(User.id == alice.id).values(is_active=False))

        with pytest.raises(UnauthorizedError):
            await auth_engine.refresh(login.tokens.refresh_token)
        assert await auth_engine.refresh_tokens.list_active(alice.id) == []

    @pytest.mark.asyncio
    async def test_logout(self, auth_engine, alice):
        login = await auth_engine.login("alice", ALICE_PASSWORD)
        assert await auth_engine.logout(login.tokens.refresh_token)
        assert not await auth_engine.logout(login.tokens.refresh_token)
        with pytest.raises(TokenRevokedError):
            await auth_engine.refresh(login.tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_logout_everywhere_keeps_current(self, auth_engine, alice):
        current = await auth_engine.login("alice", ALICE_PASSWORD, device_id="d1")
        await auth_engine.login("alice", ALICE_PASSWORD, device_id="d2")
        await auth_engine.login("alice", ALICE_PASSWORD, device_id="d3")

        revoked = await auth_engine.logout_everywhere(
            alice.id, current_refresh_token=current.tokens.refresh_token
        )
        assert revoked == 2
        assert len(await auth_engine.refresh_tokens.list_active(alice.id)) == 1
        assert await auth_engine.refresh(current.tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_logout_everywhere_with_devices(self, auth_engine, bob):
        for device_id in ("d1", "d2"):
            await auth_engine.devices.trust(bob.id, device_id)
            await auth_engine.login("bob", BOB_PASSWORD, device_id=device_id)

        revoked = await auth_engine.logout_everywhere(
            bob.id, current_device_id="d1", revoke_devices=True
        )
        assert revoked == 2
        assert await auth_engine.devices.is_trusted(bob.id, "d1")
        assert not await auth_engine.devices.is_trusted(bob.id, "d2")
        assert AlertType.ALL_SESSIONS_REVOKED.value in await alert_types(auth_engine, bob.id)

    @pytest.mark.asyncio
    async def test_change_password(self, auth_engine, alice):
        first = await auth_engine.login("alice", ALICE_PASSWORD)
        await auth_engine.login("alice", ALICE_PASSWORD)

        with pytest.raises(InvalidCredentialsError):
            await auth_engine.change_password(alice.id, "wrong", "new-password-123")

        assert await auth_engine.change_password(alice.id, ALICE_PASSWORD, "new-password-123") == 2
        with pytest.raises(TokenRevokedError):
            await auth_engine.refresh(first.tokens.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await auth_engine.login("alice", ALICE_PASSWORD)
        assert await auth_engine.login("alice", "new-password-123")

        assert AlertType.PASSWORD_CHANGED.value in await alert_types(auth_engine, alice.id)


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_missing_header(self, auth_engine):
        for header in (None, "", "   "):
            with pytest.raises(UnauthorizedError):
                await auth_engine.authenticate(header)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", ["Basic dXNlcjpwYXNz", "Bearer", "Bearer    ", "Token abc"])
    async def test_not_a_bearer_header(self, auth_engine, header):
        with pytest.raises(AccessTokenMalformedError):
            await auth_engine.authenticate(header)

    @pytest.mark.asyncio
    async def test_scheme_is_case_insensitive(self, auth_engine, alice):
        login = await auth_engine.login("alice", ALICE_PASSWORD)
        assert await auth_engine.authenticate(f"bearer {login.tokens.access_token}")

    @pytest.mark.asyncio
    async def test_authorize_action(self, auth_engine, alice, captured):
        assert await auth_engine.authorize_action(alice, ResourceKind.TRANSACTIONS, ActionKind.CREATE)
        assert not await auth_engine.authorize_action(alice, ResourceKind.LOANS, ActionKind.APPROVE)

        await auth_engine.events.drain()
        denied = [e for e in captured if e.event_type == EventType.ACCESS_DENIED]
        assert len(denied) == 1
        assert denied[0].message == "Access denied: loans:approve"


class TestStepUp:
    @pytest.mark.asyncio
    async def test_step_up_flow(self, auth_engine, delivery, bob, clock):
        assert await auth_engine.requires_step_up(bob.id, WIRE)

        challenge = await auth_engine.begin_step_up(bob.id, WIRE, ip_address="10.0.0.1")
        assert challenge.operation == WIRE

        result = await auth_engine.complete_step_up(bob.id, challenge.id, delivery.last_code)
        assert result.verified
        assert result.operation == WIRE

        assert not await auth_engine.requires_step_up(bob.id, WIRE)
        assert await auth_engine.begin_step_up(bob.id, WIRE) is None

        clock.advance(minutes=15)
        assert await auth_engine.requires_step_up(bob.id, WIRE)

    @pytest.mark.asyncio
    async def test_step_up_on_trusted_device(self, auth_engine, bob):
        await auth_engine.devices.trust(bob.id, "d1")
        assert await auth_engine.begin_step_up(bob.id, WIRE, device_id="d1") is None
        assert await auth_engine.begin_step_up(bob.id, WIRE, device_id="d2") is not None

    @pytest.mark.asyncio
    async def test_step_up_wrong_code(self, auth_engine, delivery, bob):
        challenge = await auth_engine.begin_step_up(bob.id, WIRE, method="sms")
        assert delivery.sent[-1][1] == "+15550002222"
        with pytest.raises(ChallengeCodeMismatchError):
            await auth_engine.complete_step_up(bob.id, challenge.id, wrong_code(delivery.last_code))
        assert await auth_engine.requires_step_up(bob.id, WIRE)

    @pytest.mark.asyncio
    async def test_login_challenge_cannot_complete_step_up(self, auth_engine, delivery, bob):
        login = await auth_engine.login("bob", BOB_PASSWORD)
        code = delivery.last_code

        with pytest.raises(ChallengeNotFoundError):
            await auth_engine.complete_step_up(bob.id, login.challenge.id, code, operation=WIRE)

        done = await auth_engine.complete_mfa_login(bob.id, login.challenge.id, code)
        assert done.status == LoginStatus.AUTHENTICATED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, auth_engine, alice):
        await auth_engine.start()
        assert auth_engine.events.running
        await auth_engine.login("alice", ALICE_PASSWORD)
        await auth_engine.stop()
        assert not auth_engine.events.running

        attempts = await auth_engine.login_attempts.list_recent(alice.id)
        assert len(attempts) == 1


async def _drained_attempts(engine, user_id):
    await engine.events.drain()
    return await engine.login_attempts.list_recent(user_id)
