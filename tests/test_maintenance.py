"""Tests for the periodic purge job."""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from finguard.config import Settings
from finguard.core.maintenance import PurgeJob
from finguard.core.mfa import MfaMethod


@pytest.fixture
def job(auth_engine):
    return auth_engine.purge_job


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_nothing_to_purge(self, job):
        report = await job.run_once()
        assert report.to_dict() == {
            "refresh_tokens": 0,
            "challenges": 0,
            "trusted_devices": 0,
            "lockouts": 0,
            "revocations_retried": 0,
            "errors": 0,
        }

    @pytest.mark.asyncio
    async def test_purges_expired_state(self, job, auth_engine, bob, clock):
        await auth_engine.refresh_tokens.issue(bob.id)
        await auth_engine.challenges.create(bob.id, MfaMethod.EMAIL)
        await auth_engine.devices.trust(bob.id, "d1")
        await auth_engine.guard.record_failure("bob")

        clock.advance(days=31)
        report = await job.run_once()
        assert report.refresh_tokens == 1
        assert report.challenges == 1
        assert report.trusted_devices == 1
        assert report.lockouts == 1
        assert report.errors == 0

        # Idempotent
        again = await job.run_once()
        assert again.refresh_tokens == again.challenges == again.trusted_devices == 0

    @pytest.mark.asyncio
    async def test_live_state_survives(self, job, auth_engine, bob, clock):
        issued = await auth_engine.refresh_tokens.issue(bob.id)
        clock.advance(days=1)
        await job.run_once()
        assert await auth_engine.refresh_tokens.rotate(issued.token)

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_others(self, job, auth_engine, bob, clock, monkeypatch):
        await auth_engine.devices.trust(bob.id, "d1")

        async def broken():
            raise OperationalError("DELETE FROM refresh_tokens", {}, Exception("disk I/O error"))

        monkeypatch.setattr(auth_engine.refresh_tokens, "purge_expired", broken)
        clock.advance(days=31)
        report = await job.run_once()
        assert report.errors == 1
        assert report.trusted_devices == 1

    @pytest.mark.asyncio
    async def test_retries_pending_revocations(self, job, auth_engine, bob, monkeypatch):
        await auth_engine.refresh_tokens.issue(bob.id)
        real_revoke_all = auth_engine.refresh_tokens._revoke_all

        async def failing(*args):
            raise OperationalError("UPDATE refresh_tokens", {}, Exception("database is locked"))

        monkeypatch.setattr(auth_engine.refresh_tokens, "_revoke_all", failing)
        with pytest.raises(OperationalError):
            await auth_engine.logout_everywhere(bob.id)
        monkeypatch.setattr(auth_engine.refresh_tokens, "_revoke_all", real_revoke_all)

        report = await job.run_once()
        assert report.revocations_retried == 1
        assert await auth_engine.refresh_tokens.list_active(bob.id) == []


class TestSchedule:
    @pytest.mark.asyncio
    async def test_loop_runs_on_interval(self, auth_engine, settings):
        fast = Settings(
            _env_file=None,
            jwt_secret_key=settings.jwt_secret_key,
            finguard_master_key=settings.finguard_master_key,
            purge_interval_seconds=0,
        )
        runs = []
        job = PurgeJob(
            auth_engine.refresh_tokens,
            auth_engine.challenges,
            auth_engine.devices,
            auth_engine.guard,
            fast,
        )

        async def counting_run():
            runs.append(1)

        job.run_once = counting_run
        await job.start()
        assert job.running
        await job.start()
        for _ in range(20):
            if len(runs) >= 2:
                break
            await asyncio.sleep(0.01)
        await job.stop()

        assert len(runs) >= 2
        assert not job.running

    @pytest.mark.asyncio
    async def test_stop_without_start(self, job):
        await job.stop()
        assert not job.running
