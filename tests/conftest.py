"""Test configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set up test environment variables BEFORE importing finguard modules
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-32chars")
os.environ.setdefault("FINGUARD_MASTER_KEY", "test-master-key-for-testing-only-32chars")

from finguard.config import Settings, get_settings
from finguard.core.credential_store import Principal, SqlCredentialStore, seed_default_roles
from finguard.core.delivery import DeliveryBackend, DeliveryChannel, DeliveryPayload, DeliveryResult
from finguard.core.engine import AuthEngine
from finguard.core.events import SecurityEventBus
from finguard.core.lockout import InMemoryLockoutStore
from finguard.core.passwords import Argon2Params, PasswordVerifier
from finguard.database import init_db

# Cheap argon2 parameters so password checks do not dominate test time
FAST_ARGON2 = Argon2Params(time_cost=1, memory_cost=8, parallelism=1)

ALICE_PASSWORD = "correct horse battery staple"
BOB_PASSWORD = "tr0ub4dor&3"

START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class MutableClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class CapturingDelivery(DeliveryBackend):
    """Delivery backend that keeps what it was asked to send."""

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent: list[tuple[DeliveryChannel, str, DeliveryPayload]] = []

    async def send(self, channel, recipient, payload) -> DeliveryResult:
        self.sent.append((channel, recipient, payload))
        return DeliveryResult(
            delivered=self.delivered,
            channel=channel,
            error=None if self.delivered else "gateway down",
        )

    @property
    def last_code(self) -> str:
        return self.sent[-1][2].code


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret_key="test-jwt-secret-key-for-testing-only-32chars",
        finguard_master_key="test-master-key-for-testing-only-32chars",
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def delivery() -> CapturingDelivery:
    return CapturingDelivery()


@pytest.fixture
def passwords() -> PasswordVerifier:
    return PasswordVerifier(FAST_ARGON2)


@pytest.fixture
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """File-backed SQLite database per test (concurrent connections need a real file)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'finguard.db'}")
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def events() -> SecurityEventBus:
    """Event bus without a consumer; tests call ``drain()``."""
    return SecurityEventBus()


@pytest.fixture
def store(session_maker, settings) -> SqlCredentialStore:
    return SqlCredentialStore(session_maker, settings)


@pytest.fixture
async def roles(store):
    return await seed_default_roles(store)


@pytest.fixture
async def alice(store, roles, passwords) -> Principal:
    """Teller without MFA."""
    return await store.create_user(
        username="alice",
        email="alice@bank.test",
        password_hash=passwords.hash_password(ALICE_PASSWORD),
        role_id=roles["teller"].id,
        phone="+15550001111",
    )


@pytest.fixture
async def bob(store, roles, passwords) -> Principal:
    """Branch manager with email MFA."""
    return await store.create_user(
        username="bob",
        email="bob@bank.test",
        password_hash=passwords.hash_password(BOB_PASSWORD),
        role_id=roles["branch_manager"].id,
        phone="+15550002222",
        mfa_enabled=True,
        mfa_method="email",
    )


@pytest.fixture
def auth_engine(settings, session_maker, store, delivery, passwords, clock) -> AuthEngine:
    """Engine with in-memory lockout and no background tasks."""
    return AuthEngine(
        settings=settings,
        session_maker=session_maker,
        store=store,
        lockout_store=InMemoryLockoutStore(),
        delivery=delivery,
        passwords=passwords,
        clock=clock,
    )
