"""Tests for the trusted device registry."""

import pytest

from finguard.config import Settings
from finguard.core.alerts import AlertType
from finguard.core.events import EventType
from finguard.core.trusted_devices import DeviceMetadata, TrustedDeviceRegistry


@pytest.fixture
def registry(session_maker, events, settings, clock):
    return TrustedDeviceRegistry(session_maker, events, settings, clock=clock)


@pytest.fixture
def captured(events):
    seen = []

    async def capture(event):
        seen.append(event)

    events.add_handler(capture)
    return seen


class TestTrust:
    @pytest.mark.asyncio
    async def test_trust_and_check(self, registry):
        assert not await registry.is_trusted("42", "d1")
        await registry.trust("42", "d1", DeviceMetadata(device_name="Work laptop", browser="Firefox"))
        assert await registry.is_trusted("42", "d1")

    @pytest.mark.asyncio
    async def test_device_is_bound_to_user(self, registry):
        await registry.trust("42", "d1")
        assert not await registry.is_trusted("43", "d1")
        assert not await registry.is_trusted("42", "d2")

    @pytest.mark.asyncio
    async def test_missing_device_id(self, registry):
        assert not await registry.is_trusted("42", None)
        assert not await registry.is_trusted("42", "")

    @pytest.mark.asyncio
    async def test_expiry(self, registry, clock):
        device = await registry.trust("42", "d1")
        assert device.expires_at is not None

        clock.advance(days=29, hours=23)
        assert await registry.is_trusted("42", "d1")
        clock.advance(hours=1)
        assert not await registry.is_trusted("42", "d1")

    @pytest.mark.asyncio
    async def test_no_expiry_when_ttl_is_zero(self, session_maker, events, clock):
        settings = Settings(
            _env_file=None,
            jwt_secret_key="test-jwt-secret-key-for-testing-only-32chars",
            finguard_master_key="test-master-key-for-testing-only-32chars",
            trusted_device_ttl_days=0,
        )
        registry = TrustedDeviceRegistry(session_maker, events, settings, clock=clock)
        device = await registry.trust("42", "d1")
        assert device.expires_at is None

        clock.advance(days=3650)
        assert await registry.is_trusted("42", "d1")

    @pytest.mark.asyncio
    async def test_retrust_refreshes_registration(self, registry, events, captured, clock):
        first = await registry.trust("42", "d1", DeviceMetadata(browser="Firefox"))
        clock.advance(days=10)
        second = await registry.trust("42", "d1", DeviceMetadata(browser="Chrome"))

        assert second.id == first.id
        assert second.browser == "Chrome"
        assert second.expires_at == clock() + (first.expires_at - first.created_at)

        await events.drain()
        trusted = [e for e in captured if e.event_type == EventType.DEVICE_TRUSTED]
        assert len(trusted) == 1
        assert trusted[0].alert.alert_type == AlertType.NEW_DEVICE_TRUSTED

    @pytest.mark.asyncio
    async def test_touch(self, registry, clock):
        assert not await registry.touch("42", "d1")
        await registry.trust("42", "d1")
        clock.advance(hours=2)
        assert await registry.touch("42", "d1")
        devices = await registry.list_devices("42")
        assert devices[0].last_used_at == clock()


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_is_immediate(self, registry, events, captured):
        await registry.trust("42", "d1")
        assert await registry.revoke("42", "d1", ip_address="10.0.0.1")
        assert not await registry.is_trusted("42", "d1")
        assert not await registry.revoke("42", "d1")

        await events.drain()
        assert captured[-1].event_type == EventType.DEVICE_REVOKED
        assert captured[-1].alert.alert_type == AlertType.DEVICE_REVOKED

    @pytest.mark.asyncio
    async def test_retrust_after_revoke_creates_new_row(self, registry):
        first = await registry.trust("42", "d1")
        await registry.revoke("42", "d1")
        second = await registry.trust("42", "d1")

        assert second.id != first.id
        assert await registry.is_trusted("42", "d1")
        assert len(await registry.list_devices("42")) == 1
        assert len(await registry.list_devices("42", include_revoked=True)) == 2

    @pytest.mark.asyncio
    async def test_revoke_all_except_current(self, registry):
        for device_id in ("d1", "d2", "d3"):
            await registry.trust("42", device_id)
        await registry.trust("43", "d9")

        assert await registry.revoke_all_except_current("42", "d2") == 2
        assert await registry.is_trusted("42", "d2")
        assert not await registry.is_trusted("42", "d1")
        assert not await registry.is_trusted("42", "d3")
        assert await registry.is_trusted("43", "d9")

    @pytest.mark.asyncio
    async def test_revoke_all_without_current(self, registry):
        await registry.trust("42", "d1")
        await registry.trust("42", "d2")
        assert await registry.revoke_all_except_current("42", None) == 2
        assert await registry.list_devices("42") == []


class TestPurge:
    @pytest.mark.asyncio
    async def test_purge_expired(self, registry, clock):
        await registry.trust("42", "d1")
        clock.advance(days=20)
        await registry.trust("42", "d2")

        clock.advance(days=10)
        assert await registry.purge_expired() == 1
        devices = await registry.list_devices("42", include_revoked=True)
        assert [d.device_id for d in devices] == ["d2"]
