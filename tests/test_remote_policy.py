"""Tests for the remote commit policy."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeEngine

from graphkeep.config import RemotePolicyConfig
from graphkeep.remote import RemoteSyncPolicy


def fast_policy(**overrides) -> RemoteSyncPolicy:
    values = {
        "idle_commit_seconds": 0.05,
        "max_pending_seconds": 0.2,
        "min_commit_interval_seconds": 0.0,
    }
    values.update(overrides)
    return RemoteSyncPolicy(RemotePolicyConfig(**values))


class TestRemoteSyncPolicy:
    """Idle, max-pending and min-interval commit timing."""

    @pytest.mark.asyncio
    async def test_disabled_without_engine(self):
        policy = fast_policy()
        policy.on_edit_activity()
        assert policy.pending_edits == 0
        assert policy.get_status()["enabled"] is False

    @pytest.mark.asyncio
    async def test_commits_after_idle(self, engine: FakeEngine):
        policy = fast_policy()
        policy.initialize(engine)
        policy.on_edit_activity()
        policy.on_edit_activity()
        assert policy.get_status()["has_pending_commit"] is True

        await asyncio.sleep(0.15)
        assert engine.commits == 1
        status = policy.get_status()
        assert status["pending_edits"] == 0
        assert status["commit_count"] == 1
        assert status["last_commit_time"] is not None
        policy.destroy()

    @pytest.mark.asyncio
    async def test_continuous_edits_commit_at_max_pending(self, engine: FakeEngine):
        policy = fast_policy(idle_commit_seconds=0.1, max_pending_seconds=0.15)
        policy.initialize(engine)
        for _ in range(10):
            policy.on_edit_activity()
            await asyncio.sleep(0.03)
        assert engine.commits >= 1
        policy.destroy()

    @pytest.mark.asyncio
    async def test_unhealthy_engine_defers(self):
        engine = FakeEngine(healthy=False)
        policy = fast_policy()
        policy.initialize(engine)
        policy.on_edit_activity()
        await asyncio.sleep(0.12)
        assert engine.commits == 0
        assert policy.pending_edits == 1

        engine.healthy = True
        await asyncio.sleep(0.12)
        assert engine.commits == 1
        policy.destroy()

    @pytest.mark.asyncio
    async def test_failed_commit_recorded_and_retried(self, engine: FakeEngine):
        engine.fail_commit = True
        policy = fast_policy()
        policy.initialize(engine)
        policy.on_edit_activity()
        await asyncio.sleep(0.08)
        assert policy.get_status()["last_error"] == "push rejected"

        engine.fail_commit = False
        await asyncio.sleep(0.12)
        assert engine.commits == 1
        assert policy.get_status()["last_error"] is None
        policy.destroy()

    @pytest.mark.asyncio
    async def test_commit_now(self, engine: FakeEngine):
        policy = fast_policy(idle_commit_seconds=10.0, max_pending_seconds=60.0)
        policy.initialize(engine)
        policy.on_edit_activity()
        assert await policy.commit_now() is True
        assert engine.commits == 1
        assert await policy.commit_now() is False
        policy.destroy()

    @pytest.mark.asyncio
    async def test_min_interval_respected(self, engine: FakeEngine):
        clock = [100.0]
        policy = RemoteSyncPolicy(
            RemotePolicyConfig(idle_commit_seconds=0.01, min_commit_interval_seconds=30.0),
            clock=lambda: clock[0],
        )
        policy.initialize(engine)
        policy.on_edit_activity()
        await policy.commit_now()

        policy.on_edit_activity()
        timer = policy._timer
        assert timer is not None
        loop = asyncio.get_running_loop()
        assert timer.when() - loop.time() > 20.0
        policy.destroy()
