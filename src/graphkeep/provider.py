"""
HTTP client for the remote provider's identity and token endpoints.

Three calls, all async:

    POST {oauth_base}/oauth/validate            {access_token} -> {valid}
    GET  {api_base}/user                        bearer token   -> profile | 401
    POST {oauth_base}/app/installation-token    {installation_id} -> {token}

Server-side introspection is preferred for validation because it sees
every token type and is not subject to browser CORS; the direct identity
call is the fallback. A 401 is a definitive "no"; anything else that
goes wrong is transient.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .config import AuthConfig
from .errors import CredentialInvalid, TransientIOError

logger = logging.getLogger("graphkeep.provider")

ACCEPT_HEADER = "application/vnd.github+json"


class ProviderClient:
    """Thin async wrapper over the provider endpoints.

    Args:
        config: Endpoint base URLs and timeout.
        client: Pre-built httpx client (tests pass one with a MockTransport).
    """

    def __init__(self, config: Optional[AuthConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or AuthConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.config.request_timeout_seconds)

    def _oauth_url(self, path: str) -> str:
        return self.config.oauth_base_url.rstrip("/") + path

    def _api_url(self, path: str) -> str:
        return self.config.api_base_url.rstrip("/") + path

    async def introspect(self, access_token: str) -> Optional[bool]:
        """Ask the token server whether a token is valid.

        Returns:
            True/False from the server, or None if introspection is unavailable.
        """
        try:
            resp = await self._client.post(
                self._oauth_url("/oauth/validate"),
                json={"access_token": access_token},
            )
        except httpx.HTTPError as exc:
            logger.warning("Server-side validation unreachable: %s", exc)
            return None

        if resp.status_code != 200:
            logger.warning("Server-side validation failed: %s", resp.status_code)
            return None
        try:
            return bool(resp.json().get("valid"))
        except ValueError as exc:
            logger.warning("Server-side validation returned bad JSON: %s", exc)
            return None

    async def fetch_user(self, access_token: str) -> dict[str, Any]:
        """Fetch the identity behind a token.

        Raises:
            CredentialInvalid: The provider answered 401.
            TransientIOError: Network failure or any other non-2xx answer.
        """
        try:
            resp = await self._client.get(
                self._api_url("/user"),
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": ACCEPT_HEADER,
                },
            )
        except httpx.HTTPError as exc:
            raise TransientIOError(f"Identity check failed: {exc}") from exc

        if resp.status_code == 401:
            raise CredentialInvalid("Token rejected by provider (401)")
        if not resp.is_success:
            raise TransientIOError(
                f"Identity check returned {resp.status_code}", status_code=resp.status_code
            )
        try:
            return resp.json()
        except ValueError:
            return {}

    async def validate_token(self, access_token: str) -> bool:
        """Liveness-check a token: introspection first, identity call second.

        Returns:
            True when the token is valid.

        Raises:
            CredentialInvalid: The token is definitively invalid.
            TransientIOError: Validity could not be established.
        """
        verdict = await self.introspect(access_token)
        if verdict is True:
            return True
        if verdict is False:
            raise CredentialInvalid("Token is invalid or revoked")

        logger.debug("Falling back to direct identity validation")
        await self.fetch_user(access_token)
        return True

    async def issue_installation_token(self, installation_id: str) -> str:
        """Request a fresh installation token.

        Raises:
            CredentialInvalid: The installation is gone or not authorized.
            TransientIOError: Anything else.
        """
        try:
            resp = await self._client.post(
                self._oauth_url("/app/installation-token"),
                json={"installation_id": installation_id},
            )
        except httpx.HTTPError as exc:
            raise TransientIOError(f"Installation token request failed: {exc}") from exc

        if resp.status_code in (401, 404):
            raise CredentialInvalid(
                f"Installation {installation_id} rejected ({resp.status_code})"
            )
        if not resp.is_success:
            raise TransientIOError(
                f"Installation token request returned {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            token = resp.json().get("token")
        except ValueError as exc:
            raise TransientIOError(f"Installation token response unreadable: {exc}") from exc
        if not token:
            raise TransientIOError("Installation token response had no token")
        return token

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
