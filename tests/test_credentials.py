"""Tests for the credential lifecycle manager."""

from __future__ import annotations

import asyncio

import httpx
import pytest
import pytest_asyncio

from graphkeep.config import AuthConfig
from graphkeep.credentials import CredentialLifecycleManager, StorageKeys
from graphkeep.errors import CredentialInvalid, TransientIOError
from graphkeep.events import AuthEvent, Event
from graphkeep.models import CredentialState
from graphkeep.storage import MemoryStore, NamespacedStore

DAY_MS = 24 * 60 * 60 * 1000


class Clock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def validate_handler(valid=True, status=200, delay=0.0, installation_status=200):
    async def handler(request: httpx.Request) -> httpx.Response:
        if delay:
            await asyncio.sleep(delay)
        path = request.url.path
        if path.endswith("/oauth/validate"):
            if status != 200:
                return httpx.Response(status)
            return httpx.Response(200, json={"valid": valid})
        if path.endswith("/user"):
            return httpx.Response(503)
        if path.endswith("/app/installation-token"):
            if installation_status != 200:
                return httpx.Response(installation_status)
            return httpx.Response(200, json={"token": "ghs_fresh"})
        return httpx.Response(404)

    return handler


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest_asyncio.fixture
async def make_manager(make_provider, auth_config: AuthConfig, clock: Clock):
    """Factory: manager over a fresh store with a scripted provider."""
    managers: list[CredentialLifecycleManager] = []

    def _make(handler=None, store=None, config=None):
        provider, recorder = make_provider(handler or validate_handler())
        manager = CredentialLifecycleManager(
            store if store is not None else NamespacedStore(MemoryStore(), "graphkeep"),
            config or auth_config,
            provider,
            clock=clock,
        )
        managers.append(manager)
        return manager, recorder

    yield _make
    for manager in managers:
        manager.destroy()


def collect(manager: CredentialLifecycleManager) -> list[Event]:
    events: list[Event] = []
    manager.on("*", events.append)
    return events


class TestStoreToken:
    """Storing and reading the OAuth token."""

    @pytest.mark.asyncio
    async def test_fresh_token_needs_no_network(self, make_manager):
        manager, recorder = make_manager()
        assert manager.store_token({"access_token": "abc"}) is True
        assert await manager.get_access_token() == "abc"
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_artificial_expiry(self, make_manager, clock: Clock, auth_config: AuthConfig):
        manager, _ = make_manager()
        manager.store_token({"access_token": "abc"})
        expiry = manager.store.get(StorageKeys.TOKEN_EXPIRY)
        assert expiry == clock.now + auth_config.artificial_expiry_ms

    @pytest.mark.asyncio
    async def test_provider_expiry_used(self, make_manager, clock: Clock):
        manager, _ = make_manager()
        manager.store_token({"access_token": "abc", "expires_in": 3600, "refresh_token": "r"})
        assert manager.store.get(StorageKeys.TOKEN_EXPIRY) == clock.now + 3_600_000
        assert manager.store.get(StorageKeys.REFRESH_TOKEN) == "r"

    @pytest.mark.asyncio
    async def test_missing_access_token_rejected(self, make_manager):
        manager, _ = make_manager()
        assert manager.store_token({"refresh_token": "r"}) is False
        assert manager.oauth_state is CredentialState.ABSENT

    @pytest.mark.asyncio
    async def test_emits_token_stored(self, make_manager):
        manager, _ = make_manager()
        events = collect(manager)
        manager.store_token({"access_token": "abc"}, {"login": "octocat"})
        assert events[0].name == "tokenStored"
        assert events[0].payload["user"] == "octocat"
        assert manager.get_user_data() == {"login": "octocat"}
        assert manager.is_monitoring

    @pytest.mark.asyncio
    async def test_no_token_returns_none(self, make_manager):
        manager, recorder = make_manager()
        assert await manager.get_access_token() is None
        assert recorder.calls == []


class TestRefresh:
    """Validation near expiry."""

    @pytest.mark.asyncio
    async def test_past_buffer_validates_once(self, make_manager, clock: Clock, auth_config: AuthConfig):
        manager, recorder = make_manager()
        manager.store_token({"access_token": "abc"})
        clock.advance(auth_config.artificial_expiry_ms - auth_config.refresh_buffer_ms + 1)
        assert manager.should_refresh()

        assert await manager.get_access_token() == "abc"
        assert recorder.count("/oauth/validate") == 1
        assert not manager.should_refresh()

        assert await manager.get_access_token() == "abc"
        assert recorder.count("/oauth/validate") == 1

    @pytest.mark.asyncio
    async def test_concurrent_refresh_single_flight(self, make_manager):
        manager, recorder = make_manager(validate_handler(delay=0.05))
        manager.store_token({"access_token": "abc"})

        results = await asyncio.gather(*(manager.refresh() for _ in range(3)))
        assert all(r["validated"] for r in results)
        assert recorder.count("/oauth/validate") == 1
        assert not manager.is_refreshing

    @pytest.mark.asyncio
    async def test_invalid_token_cleared_and_reauth_once(self, make_manager, clock: Clock, auth_config: AuthConfig):
        manager, _ = make_manager(validate_handler(valid=False))
        manager.store_token({"access_token": "abc"})
        events = collect(manager)

        with pytest.raises(CredentialInvalid):
            await manager.refresh()
        assert manager.oauth_state is CredentialState.INVALID
        assert manager.get_credential() is None

        names = [e.name for e in events]
        assert "tokensCleared" in names
        assert "authExpired" in names
        assert names.count("reAuthRequired") == 1

    @pytest.mark.asyncio
    async def test_concurrent_invalid_callers_share_outcome(self, make_manager):
        manager, recorder = make_manager(validate_handler(valid=False, delay=0.05))
        manager.store_token({"access_token": "abc"})
        events = collect(manager)

        results = await asyncio.gather(
            manager.refresh(), manager.refresh(), return_exceptions=True
        )
        assert all(isinstance(r, CredentialInvalid) for r in results)
        assert recorder.count("/oauth/validate") == 1
        assert [e.name for e in events].count("reAuthRequired") == 1

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_token(self, make_manager, clock: Clock, auth_config: AuthConfig):
        manager, _ = make_manager(validate_handler(status=502))
        manager.store_token({"access_token": "abc"})

        with pytest.raises(TransientIOError):
            await manager.refresh()
        assert manager.store.get(StorageKeys.ACCESS_TOKEN) == "abc"
        assert manager.oauth_state is CredentialState.VALID

        clock.advance(auth_config.artificial_expiry_ms - auth_config.refresh_buffer_ms + 1)
        assert await manager.get_access_token() == "abc"

    @pytest.mark.asyncio
    async def test_validate_without_token(self, make_manager):
        manager, _ = make_manager()
        with pytest.raises(CredentialInvalid):
            await manager.validate_token()


class TestAuthStatus:
    @pytest.mark.asyncio
    async def test_status_after_store(self, make_manager):
        manager, _ = make_manager()
        manager.store_token({"access_token": "abc"}, {"login": "octocat"})
        status = manager.get_auth_status()
        assert status["is_authenticated"] is True
        assert status["needs_refresh"] is False
        assert status["auth_method"] == "oauth"
        assert status["time_to_expiry"] > 0
        assert status["state"] == "valid"

    @pytest.mark.asyncio
    async def test_clear_tokens(self, make_manager):
        manager, _ = make_manager()
        manager.store_token({"access_token": "abc"})
        events = collect(manager)
        manager.clear_tokens()

        assert manager.get_auth_status()["is_authenticated"] is False
        assert manager.store.keys() == []
        assert not manager.is_monitoring
        assert [e.name for e in events] == ["tokensCleared"]


class TestAppInstallation:
    """Installation storage and token reissue."""

    @pytest.mark.asyncio
    async def test_store_and_get(self, make_manager, clock: Clock):
        manager, _ = make_manager()
        events = collect(manager)
        assert manager.store_app_installation({
            "installation_id": "42",
            "access_token": "ghs_old",
            "repositories": ["me/atlas"],
            "last_updated": clock.now,
        })
        installation = manager.get_app_installation()
        assert installation.installation_id == "42"
        assert installation.repositories == ["me/atlas"]
        assert events[0].name == "appInstallationStored"

    @pytest.mark.asyncio
    async def test_fresh_token_served_from_cache(self, make_manager, clock: Clock):
        manager, recorder = make_manager()
        manager.store_app_installation({"installation_id": "42", "access_token": "ghs_old", "last_updated": clock.now})
        assert await manager.get_installation_token() == "ghs_old"
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_stale_token_reissued_once(self, make_manager, clock: Clock, auth_config: AuthConfig):
        manager, recorder = make_manager(validate_handler(delay=0.02))
        manager.store_app_installation({"installation_id": "42", "access_token": "ghs_old", "last_updated": clock.now})
        clock.advance(auth_config.installation_stale_after_ms + 1)

        tokens = await asyncio.gather(manager.get_installation_token(), manager.get_installation_token())
        assert tokens == ["ghs_fresh", "ghs_fresh"]
        assert recorder.count("/app/installation-token") == 1
        assert manager.get_app_installation().last_updated == clock.now

    @pytest.mark.asyncio
    async def test_revoked_installation_cleared(self, make_manager, clock: Clock):
        manager, _ = make_manager(validate_handler(installation_status=404))
        manager.store_app_installation({"installation_id": "42", "access_token": "ghs_old", "last_updated": clock.now})
        events = collect(manager)

        assert await manager.get_installation_token(force=True) is None
        assert not manager.has_app_installation()
        assert manager.app_state is CredentialState.INVALID
        assert "reAuthRequired" in [e.name for e in events]

    @pytest.mark.asyncio
    async def test_transient_reissue_keeps_old_token(self, make_manager, clock: Clock):
        manager, _ = make_manager(validate_handler(installation_status=500))
        manager.store_app_installation({"installation_id": "42", "access_token": "ghs_old", "last_updated": clock.now})
        assert await manager.get_installation_token(force=True) == "ghs_old"
        assert manager.has_app_installation()

    @pytest.mark.asyncio
    async def test_comprehensive_status(self, make_manager, clock: Clock):
        manager, _ = make_manager()
        manager.store_app_installation({"installation_id": "42", "access_token": "ghs_old", "last_updated": clock.now})
        status = manager.get_comprehensive_auth_status()
        assert status["is_authenticated"] is False
        assert status["app"]["is_installed"] is True
        assert status["app"]["installation"]["installation_id"] == "42"


class TestHealthAndStartup:
    """Periodic probes and auto-connect."""

    @pytest.mark.asyncio
    async def test_health_check_valid(self, make_manager):
        manager, _ = make_manager()
        manager.store_token({"access_token": "abc"})
        events = collect(manager)
        assert await manager.run_health_check() is True
        assert events[-1].name == "healthCheck"
        assert events[-1].payload["is_valid"] is True

    @pytest.mark.asyncio
    async def test_health_check_invalid_degrades(self, make_manager):
        manager, _ = make_manager(validate_handler(valid=False))
        manager.store_token({"access_token": "abc"})
        events = collect(manager)

        assert await manager.run_health_check() is False
        names = [e.name for e in events]
        assert names.index("authDegraded") < names.index("reAuthRequired")
        assert manager.get_credential() is None
        assert not manager.is_monitoring

    @pytest.mark.asyncio
    async def test_health_check_transient(self, make_manager):
        manager, _ = make_manager(validate_handler(status=500))
        manager.store_token({"access_token": "abc"})
        events = collect(manager)
        assert await manager.run_health_check() is None
        assert "healthCheckError" in [e.name for e in events]
        assert manager.get_credential() is not None

    @pytest.mark.asyncio
    async def test_periodic_monitoring_runs(self, make_manager, auth_config: AuthConfig):
        config = auth_config.model_copy(update={"health_check_interval_seconds": 0.02})
        manager, recorder = make_manager(config=config)
        manager.store_token({"access_token": "abc"})
        await asyncio.sleep(0.07)
        assert recorder.count("/oauth/validate") >= 2

    @pytest.mark.asyncio
    async def test_auto_connect_once(self, make_manager):
        store = NamespacedStore(MemoryStore(), "graphkeep")
        first, _ = make_manager(store=store)
        first.store_token({"access_token": "abc"}, {"login": "octocat"})

        manager, recorder = make_manager(store=store)
        assert manager.oauth_state is CredentialState.PENDING_VALIDATION
        events = collect(manager)

        task = manager.start()
        assert task is not None
        assert await task is True
        assert manager.start() is None
        assert [e.name for e in events].count("autoConnected") == 1
        assert recorder.count("/oauth/validate") == 1
        assert manager.oauth_state is CredentialState.VALID

    @pytest.mark.asyncio
    async def test_auto_connect_prefers_installation(self, make_manager, clock: Clock):
        store = NamespacedStore(MemoryStore(), "graphkeep")
        store.update({
            StorageKeys.APP_INSTALLATION_ID: "42",
            StorageKeys.APP_ACCESS_TOKEN: "ghs_old",
            StorageKeys.APP_LAST_UPDATED: clock.now,
            StorageKeys.ACCESS_TOKEN: "abc",
            StorageKeys.TOKEN_EXPIRY: clock.now + DAY_MS,
        })
        manager, recorder = make_manager(store=store)
        events = collect(manager)

        assert await manager.start() is True
        connected = [e for e in events if e.name == "autoConnected"]
        assert connected[0].payload["auth_method"] == "github-app"
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_auto_connect_disabled(self, make_manager, auth_config: AuthConfig):
        store = NamespacedStore(MemoryStore(), "graphkeep")
        store.set(StorageKeys.ACCESS_TOKEN, "abc")
        config = auth_config.model_copy(update={"auto_connect": False})
        manager, _ = make_manager(store=store, config=config)
        assert manager.start() is None

    @pytest.mark.asyncio
    async def test_auto_connect_failure_is_quiet(self, make_manager):
        store = NamespacedStore(MemoryStore(), "graphkeep")
        store.set(StorageKeys.ACCESS_TOKEN, "abc")
        manager, _ = make_manager(validate_handler(valid=False), store=store)
        events = collect(manager)
        assert await manager.start() is False
        assert "autoConnected" not in [e.name for e in events]
        assert "reAuthRequired" in [e.name for e in events]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, make_manager):
        manager, _ = make_manager()
        seen: list[Event] = []
        sub = manager.on(AuthEvent.TOKEN_STORED, seen.append)
        sub.unsubscribe()
        manager.store_token({"access_token": "abc"})
        assert seen == []


def live_health_loops() -> list[asyncio.Task]:
    return [
        task for task in asyncio.all_tasks()
        if not task.done() and getattr(task.get_coro(), "__name__", "") == "_health_loop"
    ]


class TestHealthLoopOwnership:
    """Only one health loop ever runs, and teardown stops it."""

    @pytest.mark.asyncio
    async def test_restart_from_inside_check_leaves_one_loop(self, make_manager, auth_config: AuthConfig, clock: Clock):
        config = auth_config.model_copy(update={"health_check_interval_seconds": 0.02})
        manager, _ = make_manager(config=config)
        manager.store_app_installation({"installation_id": "42", "access_token": "ghs_old", "last_updated": clock.now})
        manager.store_token({"access_token": "abc"})
        restarted: list[bool] = []

        def restart(event: Event) -> None:
            if not restarted:
                restarted.append(True)
                manager.stop_health_monitoring()
                manager.store_token({"access_token": "abc"})

        manager.on(AuthEvent.HEALTH_CHECK, restart)
        await asyncio.sleep(0.1)
        assert restarted
        assert len(live_health_loops()) == 1
        assert manager.is_monitoring

        manager.destroy()
        await asyncio.sleep(0.01)
        assert live_health_loops() == []

    @pytest.mark.asyncio
    async def test_invalid_oauth_with_installation_keeps_one_loop(self, make_manager, auth_config: AuthConfig, clock: Clock):
        config = auth_config.model_copy(update={"health_check_interval_seconds": 0.02})
        manager, _ = make_manager(validate_handler(valid=False), config=config)
        manager.store_app_installation({"installation_id": "42", "access_token": "ghs_old", "last_updated": clock.now})
        manager.store_token({"access_token": "abc"})

        await asyncio.sleep(0.05)
        assert manager.get_credential() is None
        manager.store_token({"access_token": "abc"})
        await asyncio.sleep(0.01)
        assert len(live_health_loops()) == 1

        manager.destroy()
        await asyncio.sleep(0.01)
        assert live_health_loops() == []

    @pytest.mark.asyncio
    async def test_health_check_joins_inflight_refresh(self, make_manager):
        manager, recorder = make_manager(validate_handler(delay=0.05))
        manager.store_token({"access_token": "abc"})

        result, is_valid = await asyncio.gather(manager.refresh(), manager.run_health_check())
        assert result["validated"] is True
        assert is_valid is True
        assert recorder.count("/oauth/validate") == 1

    @pytest.mark.asyncio
    async def test_health_check_joining_invalid_refresh_degrades(self, make_manager):
        manager, recorder = make_manager(validate_handler(valid=False, delay=0.05))
        manager.store_token({"access_token": "abc"})
        events = collect(manager)

        refreshed, is_valid = await asyncio.gather(
            manager.refresh(), manager.run_health_check(), return_exceptions=True
        )
        assert isinstance(refreshed, CredentialInvalid)
        assert is_valid is False
        assert recorder.count("/oauth/validate") == 1
        names = [e.name for e in events]
        assert names.count("authDegraded") == 1
        assert names.count("reAuthRequired") == 1

    @pytest.mark.asyncio
    async def test_installation_reauth_emitted_once(self, make_manager, clock: Clock):
        manager, recorder = make_manager(validate_handler(installation_status=401))
        manager.store_app_installation({"installation_id": "42", "access_token": "ghs_old", "last_updated": clock.now})
        events = collect(manager)

        results = await asyncio.gather(
            manager.get_installation_token(force=True),
            manager.get_installation_token(force=True),
        )
        assert results == [None, None]
        assert await manager.get_installation_token(force=True) is None
        assert recorder.count("/app/installation-token") == 1
        assert [e.name for e in events].count("reAuthRequired") == 1
