"""Credential lifecycle management.

`CredentialLifecycleManager.ensure()` runs before every Graph call and
decides between using the cached token, refreshing it silently, probing
it, or falling back to the interactive browser sign-in. Interactive
sign-in is the most disruptive recovery, so it is always tried last.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import httpx

from onenote_mcp.auth.models.errors import (
    TokenError,
    TokenRefreshError,
    TokenStoreError,
)
from onenote_mcp.auth.models.tokens import Credential, RefreshTokenRequest
from onenote_mcp.auth.primitives.redaction import redact, secret_registry
from onenote_mcp.auth.primitives.tokens import is_expired, is_valid_token_format
from onenote_mcp.auth.services.broker import InteractiveAuthBroker
from onenote_mcp.auth.services.store import TokenStore
from onenote_mcp.auth.services.tokens import OAuth2TokenManager
from onenote_mcp.config import Settings
from onenote_mcp.graph.client import GraphClient

logger = logging.getLogger(__name__)

# Scopes that never appear in an access token's granted scope list.
_NON_RESOURCE_SCOPES = frozenset({"openid", "profile", "email", "offline_access"})

# A broader grant satisfies a narrower request.
_IMPLIED_BY = {
    "notes.read": {"notes.readwrite", "notes.read.all", "notes.readwrite.all"},
    "notes.read.all": {"notes.readwrite.all"},
    "notes.readwrite": {"notes.readwrite.all"},
    "notes.create": {"notes.readwrite", "notes.readwrite.all"},
}


class CredentialLifecycleManager:
    """Keeps a usable access token available for Graph calls.

    Decision procedure for `ensure()`:
    1. Load the stored credential if none is held in memory.
    2. Malformed or missing access token: refresh, else sign in.
    3. Granted scopes lack a required scope: refresh requesting the
       required scopes, else sign in with them.
    4. Expiring within five minutes: refresh, else probe the token with
       a `/me` call and keep it if Graph still accepts it, else sign in.
    5. Return a GraphClient bound to the current access token.

    Concurrent callers are serialized so a single refresh or sign-in
    serves all of them.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        token_manager: OAuth2TokenManager,
        broker: InteractiveAuthBroker,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the lifecycle manager.

        Args:
            settings: Client id, endpoints and default scopes
            token_store: Durable credential storage
            token_manager: Token endpoint client used for silent refresh
            broker: Interactive sign-in of last resort
            http_client: Shared client for Graph calls and the token probe
            clock: Wall clock returning unix seconds
        """
        self.settings = settings
        self._token_store = token_store
        self._token_manager = token_manager
        self._broker = broker
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.http_timeout
        )
        self._clock = clock

        self._credential: Credential | None = None
        self._graph_client: GraphClient | None = None
        self._lock = asyncio.Lock()

    @property
    def credential(self) -> Credential | None:
        """The credential currently held in memory."""
        return self._credential

    async def ensure(self, required_scopes: Sequence[str] | None = None) -> GraphClient:
        """Return a Graph client carrying a usable access token.

        Args:
            required_scopes: Scopes the upcoming call needs; defaults to
                the configured scopes

        Returns:
            GraphClient: Client bound to the current access token

        Raises:
            OAuth2Error: Interactive sign-in was needed and failed
        """
        scopes = tuple(required_scopes or self.settings.default_scopes)
        # Ask for the configured scopes too so a later call does not re-prompt.
        request_scopes = tuple(dict.fromkeys((*self.settings.default_scopes, *scopes)))

        async with self._lock:
            if self._credential is None:
                self._credential = await self._token_store.load()
                logger.info(
                    f"Loaded token from store, expires: "
                    f"{_format_expiry(self._credential.expires_at)}"
                )

            credential = self._credential

            if not is_valid_token_format(credential.access_token):
                logger.info("No usable access token; attempting silent refresh")
                if not await self._refresh(request_scopes):
                    await self._sign_in(request_scopes)

            elif not self._has_scopes(credential, scopes):
                logger.info(
                    f"Cached token lacks scopes {list(scopes)}; "
                    "attempting silent refresh with the required scopes"
                )
                if not await self._refresh(request_scopes):
                    await self._sign_in(request_scopes)

            elif is_expired(credential.expires_at, now=self._clock()):
                logger.info("Token appears expired, attempting refresh")
                if not await self._refresh(request_scopes):
                    logger.info("Refresh failed, validating current token with API")
                    if await self._probe(credential.access_token):
                        logger.info("Token still valid despite expiry time")
                    else:
                        await self._sign_in(request_scopes)

            return self._current_client()

    async def sign_out(self) -> None:
        """Forget the credential in memory and in the credential store."""
        async with self._lock:
            await self._token_store.delete()
            if self._credential is not None:
                secret_registry.forget(
                    self._credential.access_token, self._credential.refresh_token
                )
            self._credential = None
            self._graph_client = None
        logger.info("Signed out")

    async def status(self) -> dict[str, Any]:
        """Token-free summary of the sign-in state."""
        async with self._lock:
            if self._credential is None:
                self._credential = await self._token_store.load()
            credential = self._credential

        now = self._clock()
        return {
            "signedIn": bool(credential.access_token or credential.refresh_token),
            "username": credential.account.username if credential.account else None,
            "expiresAt": _format_expiry(credential.expires_at),
            "expired": (
                is_expired(credential.expires_at, now=now, buffer_seconds=0)
                if credential.access_token
                else None
            ),
            "canRefresh": credential.can_refresh(),
            "scopes": credential.scope.split() if credential.scope else [],
        }

    async def close(self) -> None:
        """Release HTTP resources."""
        await self._token_manager.close()
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _refresh(self, scopes: Sequence[str]) -> bool:
        """Try a silent refresh; True when a new access token is in place."""
        credential = self._credential
        if credential is None or not credential.can_refresh():
            logger.info("No refresh token available")
            return False

        try:
            refreshed = await self._redeem_refresh_token(credential, scopes)
        except TokenError as e:
            logger.warning(f"Failed to refresh token: {redact(e)}")
            return False

        try:
            await self._token_store.save(refreshed)
        except TokenStoreError as e:
            # The new token still works for this process.
            logger.error(f"Refreshed token could not be persisted: {redact(e)}")

        self._replace_credential(refreshed)
        logger.info(
            f"Token refreshed successfully, expires: {_format_expiry(refreshed.expires_at)}"
        )
        return True

    async def _redeem_refresh_token(
        self, credential: Credential, scopes: Sequence[str]
    ) -> Credential:
        """
        Raises:
            TokenRefreshError: The token endpoint rejected the refresh token
            TokenError: The token endpoint could not be reached or parsed
        """
        token_response = await self._token_manager.refresh_access_token(
            RefreshTokenRequest(
                token_endpoint=self.settings.token_endpoint,
                refresh_token=credential.refresh_token,
                client_id=self.settings.client_id,
                scope=" ".join(scopes),
            )
        )
        if not token_response.is_success():
            raise TokenRefreshError(
                f"Token refresh rejected: {token_response.error} "
                f"({redact(token_response.error_description or '')})",
                error_code=token_response.error,
            )
        return credential.merged_with(token_response.to_credential(now=self._clock()))

    async def _probe(self, access_token: str | None) -> bool:
        if not is_valid_token_format(access_token):
            return False
        client = GraphClient(
            access_token, self._http_client, base_url=self.settings.graph_base_url
        )
        return await client.probe()

    async def _sign_in(self, scopes: Sequence[str]) -> None:
        logger.info("Starting interactive sign-in")
        credential = await self._broker.authenticate(scopes)
        previous = self._credential
        self._replace_credential(
            previous.merged_with(credential) if previous is not None else credential
        )

    def _replace_credential(self, credential: Credential) -> None:
        previous = self._credential
        self._credential = credential
        if previous is not None and previous.access_token != credential.access_token:
            secret_registry.forget(previous.access_token)
        secret_registry.register(credential.access_token, credential.refresh_token)

    def _current_client(self) -> GraphClient:
        access_token = self._credential.access_token if self._credential else None
        if access_token is None:
            # Only reachable if a sign-in returned without an access token.
            raise TokenError("No access token available after sign-in")

        if self._graph_client is None or self._graph_client.access_token != access_token:
            self._graph_client = GraphClient(
                access_token, self._http_client, base_url=self.settings.graph_base_url
            )
        return self._graph_client

    def _has_scopes(self, credential: Credential, scopes: Sequence[str]) -> bool:
        granted = credential.granted_scopes()
        if granted is None:
            return True
        granted = {_normalize_scope(scope) for scope in granted}

        for scope in scopes:
            required = _normalize_scope(scope)
            if required in _NON_RESOURCE_SCOPES or required in granted:
                continue
            if granted & _IMPLIED_BY.get(required, set()):
                continue
            return False
        return True


def _normalize_scope(scope: str) -> str:
    """Lower-case and drop any resource prefix (``https://graph.../Notes.Read``)."""
    return scope.rsplit("/", 1)[-1].lower()


def _format_expiry(expires_at: float | None) -> str | None:
    if expires_at is None:
        return None
    return datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat()
