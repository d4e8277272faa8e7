"""
Credential lifecycle -- OAuth and app-installation tokens that never expire silently.

Each credential moves through:

    ABSENT -> PENDING_VALIDATION -> VALID -> (near expiry) PENDING_VALIDATION
           -> VALID | INVALID

INVALID is terminal until a new external auth stores a fresh token.

The provider does not expire OAuth tokens, so an artificial expiry is
kept and pushed forward each time a live check succeeds. A token near
that expiry is re-validated on the next ``get_access_token``. A 401
clears everything and asks for re-auth exactly once; a network hiccup
changes nothing and is retried by the next natural trigger.

Storage keys (namespaced, e.g. ``graphkeep.access_token``):
    access_token, refresh_token, token_expiry (epoch ms), auth_method,
    user_data, app_installation_id, app_access_token, app_repositories,
    app_user_data, app_last_updated
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Union

from .config import AuthConfig
from .errors import CredentialInvalid, GraphkeepError, TransientIOError
from .events import AuthEvent, Event, EventChannel, Subscription
from .models import AppInstallation, AuthMethod, Credential, CredentialState, now_ms
from .provider import ProviderClient
from .storage import KeyValueStore

logger = logging.getLogger("graphkeep.credentials")


class StorageKeys:
    """Durable key names for credential state."""

    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    TOKEN_EXPIRY = "token_expiry"
    USER_DATA = "user_data"
    AUTH_METHOD = "auth_method"
    APP_INSTALLATION_ID = "app_installation_id"
    APP_ACCESS_TOKEN = "app_access_token"
    APP_REPOSITORIES = "app_repositories"
    APP_USER_DATA = "app_user_data"
    APP_LAST_UPDATED = "app_last_updated"

    OAUTH = [ACCESS_TOKEN, REFRESH_TOKEN, TOKEN_EXPIRY, USER_DATA, AUTH_METHOD]
    APP = [APP_INSTALLATION_ID, APP_ACCESS_TOKEN, APP_REPOSITORIES, APP_USER_DATA, APP_LAST_UPDATED]


def _iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


class CredentialLifecycleManager:
    """Owns storage, validation, renewal and health of remote credentials.

    Args:
        store: Durable (already namespaced) key/value store.
        config: Endpoints and timings.
        provider: HTTP client for the provider endpoints.
        clock: Epoch-millisecond clock, injectable for tests.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[AuthConfig] = None,
        provider: Optional[ProviderClient] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or AuthConfig()
        self.store = store
        self.provider = provider or ProviderClient(self.config)
        self.events = EventChannel("graphkeep.auth")
        self._clock = clock

        self._refresh_task: Optional[asyncio.Future] = None
        self._installation_task: Optional[asyncio.Future] = None
        self._health_task: Optional[asyncio.Task] = None
        self._auto_connect_task: Optional[asyncio.Task] = None
        self._auto_connect_attempted = False
        self._reauth_emitted = False
        self._app_reauth_emitted = False

        self.oauth_state = (
            CredentialState.PENDING_VALIDATION
            if self.store.get(StorageKeys.ACCESS_TOKEN)
            else CredentialState.ABSENT
        )
        self.app_state = (
            CredentialState.PENDING_VALIDATION
            if self.has_app_installation()
            else CredentialState.ABSENT
        )

    # --- events -----------------------------------------------------------

    def on(self, event: Union[str, AuthEvent], callback: Callable[[Event], Any]) -> Subscription:
        """Subscribe to credential events; returns an unsubscribe handle."""
        return self.events.on(event, callback)

    def _emit(self, event: AuthEvent, **payload: Any) -> None:
        self.events.emit(event, payload)

    # --- OAuth token ------------------------------------------------------

    def store_token(
        self,
        token_data: Mapping[str, Any],
        user_data: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Persist a freshly exchanged OAuth token.

        Args:
            token_data: Provider response with ``access_token`` and optionally
                ``refresh_token`` and ``expires_in`` (seconds).
            user_data: Profile to cache alongside the token.

        Returns:
            True if stored.
        """
        access_token = token_data.get("access_token")
        if not access_token:
            logger.error("Refusing to store token data without an access_token")
            return False

        expires_in = token_data.get("expires_in")
        now = self._clock()
        expiry = now + int(expires_in) * 1000 if expires_in else now + self.config.artificial_expiry_ms

        values: dict[str, Any] = {
            StorageKeys.ACCESS_TOKEN: access_token,
            StorageKeys.TOKEN_EXPIRY: expiry,
            StorageKeys.AUTH_METHOD: AuthMethod.OAUTH.value,
        }
        if token_data.get("refresh_token"):
            values[StorageKeys.REFRESH_TOKEN] = token_data["refresh_token"]
        if user_data is not None:
            values[StorageKeys.USER_DATA] = dict(user_data)

        try:
            self.store.update(values)
        except OSError as exc:
            logger.error("Failed to store tokens: %s", exc)
            return False

        self.oauth_state = CredentialState.VALID
        self._reauth_emitted = False
        logger.info(
            "Token stored (expires %s, user %s)",
            _iso(expiry), (user_data or {}).get("login"),
        )
        self.start_health_monitoring()
        self._emit(
            AuthEvent.TOKEN_STORED,
            user=(user_data or {}).get("login"),
            expiry_time=_iso(expiry),
        )
        return True

    def get_credential(self) -> Optional[Credential]:
        token = self.store.get(StorageKeys.ACCESS_TOKEN)
        if not token:
            return None
        return Credential(
            access_token=token,
            expiry=int(self.store.get(StorageKeys.TOKEN_EXPIRY) or 0),
            auth_method=self.store.get(StorageKeys.AUTH_METHOD) or AuthMethod.OAUTH.value,
            user_data=self.store.get(StorageKeys.USER_DATA),
        )

    async def get_access_token(self) -> Optional[str]:
        """Current OAuth token, re-validated only when near its expiry.

        Returns None without any network call when no token is stored.
        """
        token = self.store.get(StorageKeys.ACCESS_TOKEN)
        if not token:
            return None

        if self.should_refresh():
            logger.info("Token needs validation/refresh")
            try:
                await self.refresh()
            except CredentialInvalid:
                return None
            except TransientIOError as exc:
                logger.warning("Could not re-validate token, using cached one: %s", exc)
        return self.store.get(StorageKeys.ACCESS_TOKEN) or None

    def has_valid_tokens(self) -> bool:
        if self.oauth_state is CredentialState.INVALID:
            return False
        credential = self.get_credential()
        return credential is not None and credential.is_live(self._clock())

    def should_refresh(self) -> bool:
        expiry = int(self.store.get(StorageKeys.TOKEN_EXPIRY) or 0)
        return self._clock() >= expiry - self.config.refresh_buffer_ms

    async def validate_token(self) -> bool:
        """Liveness-check the stored token against the provider.

        Raises:
            CredentialInvalid: No token, or the provider rejected it.
            TransientIOError: The check itself failed.
        """
        token = self.store.get(StorageKeys.ACCESS_TOKEN)
        if not token or not str(token).strip():
            raise CredentialInvalid("No token available for validation")
        return await self.provider.validate_token(token)

    async def refresh(self) -> dict[str, Any]:
        """Re-validate the token; concurrent callers share one attempt.

        Returns:
            ``{"validated": True, "expiry_time": ...}`` on success.

        Raises:
            CredentialInvalid: Token is gone for good; state has been cleared.
            TransientIOError: Could not tell; state is unchanged.
        """
        return await asyncio.shield(self._validation_flight())

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None

    def _validation_flight(self, from_health_check: bool = False) -> asyncio.Future:
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._perform_validation(from_health_check))
            self._refresh_task = task

            def _done(fut: asyncio.Future) -> None:
                if self._refresh_task is fut:
                    self._refresh_task = None
                if not fut.cancelled():
                    fut.exception()

            task.add_done_callback(_done)
        return self._refresh_task

    async def _perform_validation(self, from_health_check: bool = False) -> dict[str, Any]:
        previous = self.oauth_state
        self.oauth_state = CredentialState.PENDING_VALIDATION
        logger.info("Validating current token...")
        try:
            await self.validate_token()
        except CredentialInvalid as exc:
            logger.error("Token validation failed: %s", exc)
            if from_health_check:
                self._emit(AuthEvent.AUTH_DEGRADED, reason=str(exc))
            self._invalidate_oauth(str(exc))
            raise
        except TransientIOError:
            self.oauth_state = previous
            raise

        expiry = self._clock() + self.config.artificial_expiry_ms
        self.store.set(StorageKeys.TOKEN_EXPIRY, expiry)
        self.oauth_state = CredentialState.VALID
        logger.info("Token validation successful, extended expiry")
        self._emit(AuthEvent.TOKEN_VALIDATED, new_expiry_time=_iso(expiry))
        return {"validated": True, "expiry_time": _iso(expiry)}

    def _invalidate_oauth(self, reason: str) -> None:
        self.clear_tokens()
        self.oauth_state = CredentialState.INVALID
        self._emit(AuthEvent.AUTH_EXPIRED, reason=reason)
        if not self._reauth_emitted:
            self._reauth_emitted = True
            self._emit(AuthEvent.RE_AUTH_REQUIRED, reason=reason, auth_method=AuthMethod.OAUTH.value)

    def clear_tokens(self) -> None:
        """Forget the OAuth credential."""
        self.store.remove_many(StorageKeys.OAUTH)
        self.oauth_state = CredentialState.ABSENT
        if not self._has_any_credential():
            self.stop_health_monitoring()
        logger.info("Tokens cleared")
        self._emit(AuthEvent.TOKENS_CLEARED)

    def get_user_data(self) -> Optional[dict[str, Any]]:
        data = self.store.get(StorageKeys.USER_DATA)
        return data if isinstance(data, dict) else None

    def get_auth_status(self) -> dict[str, Any]:
        expiry = int(self.store.get(StorageKeys.TOKEN_EXPIRY) or 0)
        return {
            "is_authenticated": self.has_valid_tokens(),
            "needs_refresh": self.should_refresh(),
            "expiry_time": datetime.fromtimestamp(expiry / 1000, tz=timezone.utc) if expiry else None,
            "time_to_expiry": max(0, expiry - self._clock()) if expiry else 0,
            "auth_method": self.store.get(StorageKeys.AUTH_METHOD),
            "user_data": self.get_user_data(),
            "is_refreshing": self.is_refreshing,
            "state": self.oauth_state.value,
        }

    # --- app installation -------------------------------------------------

    def store_app_installation(
        self, installation: Union[AppInstallation, Mapping[str, Any]]
    ) -> bool:
        """Persist an app installation and its current token."""
        try:
            if not isinstance(installation, AppInstallation):
                installation = AppInstallation.model_validate(dict(installation))
            self.store.update({
                StorageKeys.APP_INSTALLATION_ID: installation.installation_id,
                StorageKeys.APP_ACCESS_TOKEN: installation.access_token,
                StorageKeys.APP_REPOSITORIES: installation.repositories,
                StorageKeys.APP_USER_DATA: installation.user_data,
                StorageKeys.APP_LAST_UPDATED: installation.last_updated,
            })
        except (ValueError, OSError) as exc:
            logger.error("Failed to store app installation: %s", exc)
            self._emit(AuthEvent.AUTH_ERROR, error=str(exc))
            return False

        self.app_state = CredentialState.VALID
        self._app_reauth_emitted = False
        logger.info("App installation %s stored", installation.installation_id)
        self.start_health_monitoring()
        self._emit(
            AuthEvent.APP_INSTALLATION_STORED,
            installation_id=installation.installation_id,
            repository_count=len(installation.repositories),
        )
        return True

    def get_app_installation(self) -> Optional[AppInstallation]:
        installation_id = self.store.get(StorageKeys.APP_INSTALLATION_ID)
        access_token = self.store.get(StorageKeys.APP_ACCESS_TOKEN)
        if not installation_id or not access_token:
            return None
        try:
            return AppInstallation(
                installation_id=str(installation_id),
                access_token=access_token,
                repositories=self.store.get(StorageKeys.APP_REPOSITORIES) or [],
                user_data=self.store.get(StorageKeys.APP_USER_DATA) or {},
                last_updated=int(self.store.get(StorageKeys.APP_LAST_UPDATED) or self._clock()),
            )
        except ValueError as exc:
            logger.error("Stored app installation is unreadable: %s", exc)
            return None

    def has_app_installation(self) -> bool:
        return self.get_app_installation() is not None

    def clear_app_installation(self) -> None:
        """Forget the app installation."""
        self.store.remove_many(StorageKeys.APP)
        self.app_state = CredentialState.ABSENT
        if not self._has_any_credential():
            self.stop_health_monitoring()
        logger.info("App installation cleared")
        self._emit(AuthEvent.APP_INSTALLATION_CLEARED)

    async def get_installation_token(self, force: bool = False) -> Optional[str]:
        """Installation token, reissued when stale; single-flight.

        Returns:
            A token, the previous token if reissue failed transiently,
            or None when there is no (longer an) installation.
        """
        installation = self.get_app_installation()
        if installation is None:
            return None
        stale = installation.is_stale(self.config.installation_stale_after_ms, self._clock())
        if not force and not stale:
            return installation.access_token

        if self._installation_task is None:
            task = asyncio.ensure_future(self._reissue_installation_token(installation))
            self._installation_task = task

            def _done(fut: asyncio.Future) -> None:
                if self._installation_task is fut:
                    self._installation_task = None

            task.add_done_callback(_done)
        return await asyncio.shield(self._installation_task)

    async def _reissue_installation_token(self, installation: AppInstallation) -> Optional[str]:
        self.app_state = CredentialState.PENDING_VALIDATION
        try:
            token = await self.provider.issue_installation_token(installation.installation_id)
        except CredentialInvalid as exc:
            logger.error("App installation rejected: %s", exc)
            self.clear_app_installation()
            self.app_state = CredentialState.INVALID
            self._emit(AuthEvent.AUTH_EXPIRED, reason=str(exc), auth_method=AuthMethod.APP.value)
            if not self._app_reauth_emitted:
                self._app_reauth_emitted = True
                self._emit(AuthEvent.RE_AUTH_REQUIRED, reason=str(exc), auth_method=AuthMethod.APP.value)
            return None
        except TransientIOError as exc:
            logger.warning("Installation token refresh failed: %s", exc)
            self.app_state = CredentialState.VALID
            return installation.access_token

        updated = installation.model_copy(update={"access_token": token, "last_updated": self._clock()})
        self.store_app_installation(updated)
        return token

    def get_comprehensive_auth_status(self) -> dict[str, Any]:
        installation = self.get_app_installation()
        status = self.get_auth_status()
        status["app"] = {
            "is_installed": installation is not None,
            "installation": installation.model_dump(mode="json") if installation else None,
            "state": self.app_state.value,
        }
        return status

    # --- health monitoring ------------------------------------------------

    def _has_any_credential(self) -> bool:
        return bool(self.store.get(StorageKeys.ACCESS_TOKEN)) or self.has_app_installation()

    @property
    def is_monitoring(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    def start_health_monitoring(self) -> None:
        """Start the periodic liveness probe if not already running."""
        if self.is_monitoring:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; health monitoring deferred")
            return
        logger.info("Starting health monitoring")
        self._health_task = loop.create_task(self._health_loop())

    def stop_health_monitoring(self) -> None:
        task = self._health_task
        self._health_task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()
        logger.info("Health monitoring stopped")

    def _owns_health_loop(self) -> bool:
        return self._health_task is not None and self._health_task is asyncio.current_task()

    async def _health_loop(self) -> None:
        # a loop that was stopped or replaced exits at its next check
        while self._owns_health_loop() and self._has_any_credential():
            await asyncio.sleep(self.config.health_check_interval_seconds)
            if not self._owns_health_loop() or not self._has_any_credential():
                break
            await self.run_health_check()
        logger.debug("Health loop exited")

    async def run_health_check(self) -> Optional[bool]:
        """One probe of every stored credential.

        Returns:
            True/False for the OAuth token, None if it could not be checked.
        """
        is_valid: Optional[bool] = None
        if self.store.get(StorageKeys.ACCESS_TOKEN):
            joined = self._refresh_task is not None
            try:
                await asyncio.shield(self._validation_flight(from_health_check=True))
                is_valid = True
            except CredentialInvalid as exc:
                is_valid = False
                logger.warning("Health check failed - token invalid")
                if joined:
                    self._emit(AuthEvent.AUTH_DEGRADED, reason=str(exc))
            except TransientIOError as exc:
                logger.warning("Health check error: %s", exc)
                self._emit(AuthEvent.HEALTH_CHECK_ERROR, error=str(exc))

        if self.has_app_installation():
            await self.get_installation_token()

        self._emit(
            AuthEvent.HEALTH_CHECK,
            is_valid=is_valid,
            timestamp=_iso(self._clock()),
            has_tokens=self.has_valid_tokens(),
        )
        return is_valid

    # --- startup ----------------------------------------------------------

    def start(self) -> Optional[asyncio.Task]:
        """Begin monitoring and, once per instance, try to reconnect.

        Never blocks: the reconnect runs as a background task.

        Returns:
            The auto-connect task, or None if no attempt was started.
        """
        if self._has_any_credential():
            self.start_health_monitoring()
        if self._auto_connect_attempted or not self.config.auto_connect:
            return None
        if not self._has_any_credential():
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; auto-connect skipped")
            return None
        self._auto_connect_attempted = True
        self._auto_connect_task = loop.create_task(self._auto_connect())
        return self._auto_connect_task

    async def _auto_connect(self) -> bool:
        try:
            if self.has_app_installation():
                token = await self.get_installation_token()
                if token:
                    logger.info("Auto-connected via app installation")
                    self._emit(AuthEvent.AUTO_CONNECTED, auth_method=AuthMethod.APP.value)
                    return True

            if self.store.get(StorageKeys.ACCESS_TOKEN):
                await self.refresh()
                user = (self.get_user_data() or {}).get("login")
                logger.info("Auto-connected via OAuth as %s", user)
                self._emit(AuthEvent.AUTO_CONNECTED, auth_method=AuthMethod.OAUTH.value, user=user)
                return True
        except GraphkeepError as exc:
            logger.info("Auto-connect failed, staying disconnected: %s", exc)
        except Exception as exc:
            logger.warning("Auto-connect error: %s", exc)
        return False

    def destroy(self) -> None:
        """Stop every background task and drop listeners."""
        self.stop_health_monitoring()
        for task in (self._auto_connect_task, self._refresh_task, self._installation_task):
            if task is not None and not task.done():
                task.cancel()
        self._auto_connect_task = None
        self._refresh_task = None
        self._installation_task = None
        self.events.clear()
        logger.info("Credential manager destroyed")
