import asyncio
import socket
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from onenote_mcp.auth.models.errors import (
    AuthorizationTimeoutError,
    CallbackListenerError,
    TokenExchangeError,
)
from onenote_mcp.auth.models.tokens import TokenResponse
from onenote_mcp.auth.primitives.pkce import derive_challenge
from onenote_mcp.auth.primitives.redaction import secret_registry
from onenote_mcp.auth.services.broker import InteractiveAuthBroker
from onenote_mcp.auth.services.store import ACCESS_TOKEN_ENTRY, TokenStore
from onenote_mcp.config import Settings


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def settings(free_port) -> Settings:
    return Settings(client_id="client-id", redirect_port=free_port, auth_timeout=5.0)


class FakeBrowser:
    """Follows the authorization URL by hitting the redirect listener."""

    def __init__(self, port: int, query: dict[str, str]):
        self.port = port
        self.query = query
        self.urls: list[str] = []
        self.responses: list[httpx.Response] = []
        self.stored_before_reply: list[bool] = []
        self.tasks: list[asyncio.Task] = []
        self.keyring = None

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        self.tasks.append(asyncio.get_running_loop().create_task(self._redirect()))
        return True

    async def _redirect(self) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://127.0.0.1:{self.port}/", params=self.query)
        self.responses.append(response)
        if self.keyring is not None:
            self.stored_before_reply.append(
                any(entry == ACCESS_TOKEN_ENTRY for _, entry in self.keyring.entries)
            )


def _token_manager(token_response: TokenResponse) -> AsyncMock:
    token_manager = AsyncMock()
    token_manager.exchange_code_for_token.return_value = token_response
    return token_manager


class TestAuthenticate:
    async def test_successful_sign_in_persists_before_browser_reply(
        self, settings, keyring_backend, free_port
    ):
        # Arrange
        store = TokenStore("onenote-mcp-test", backend=keyring_backend)
        token_manager = _token_manager(
            TokenResponse(access_token="a" * 150, expires_in=3600, refresh_token="r" * 20)
        )
        browser = FakeBrowser(free_port, {"code": "auth-code-123"})
        browser.keyring = keyring_backend
        broker = InteractiveAuthBroker(
            settings, store, token_manager, browser_opener=browser
        )

        # Act
        credential = await broker.authenticate(("Notes.ReadWrite", "offline_access"))
        await asyncio.gather(*browser.tasks)

        # Assert
        assert credential.access_token == "a" * 150
        assert (await store.load()).refresh_token == "r" * 20
        assert browser.responses[0].status_code == 200
        assert browser.stored_before_reply == [True]

    async def test_authorization_url_and_exchange_share_pkce_pair(
        self, settings, keyring_backend, free_port
    ):
        # Arrange
        store = TokenStore("onenote-mcp-test", backend=keyring_backend)
        token_manager = _token_manager(TokenResponse(access_token="a" * 150))
        browser = FakeBrowser(free_port, {"code": "auth-code-123"})
        broker = InteractiveAuthBroker(
            settings, store, token_manager, browser_opener=browser
        )

        # Act
        await broker.authenticate(("Notes.ReadWrite",))
        await asyncio.gather(*browser.tasks)

        # Assert
        params = parse_qs(urlparse(browser.urls[0]).query)
        assert params["client_id"] == ["client-id"]
        assert params["redirect_uri"] == [f"http://localhost:{free_port}"]
        assert params["scope"] == ["Notes.ReadWrite openid profile"]
        assert params["code_challenge_method"] == ["S256"]

        token_request = token_manager.exchange_code_for_token.call_args[0][0]
        assert token_request.code == "auth-code-123"
        assert token_request.redirect_uri == f"http://localhost:{free_port}"
        assert derive_challenge(token_request.code_verifier) == params["code_challenge"][0]

    async def test_pkce_secrets_are_forgotten_after_attempt(
        self, settings, keyring_backend, free_port
    ):
        # Arrange
        store = TokenStore("onenote-mcp-test", backend=keyring_backend)
        token_manager = _token_manager(TokenResponse(access_token="a" * 150))
        browser = FakeBrowser(free_port, {"code": "auth-code-123"})
        broker = InteractiveAuthBroker(
            settings, store, token_manager, browser_opener=browser
        )

        # Act
        await broker.authenticate(("Notes.ReadWrite",))
        await asyncio.gather(*browser.tasks)

        # Assert
        verifier = token_manager.exchange_code_for_token.call_args[0][0].code_verifier
        assert verifier not in secret_registry.snapshot()
        assert "auth-code-123" not in secret_registry.snapshot()

    async def test_rejected_exchange_raises_and_stores_nothing(
        self, settings, keyring_backend, free_port
    ):
        # Arrange
        store = TokenStore("onenote-mcp-test", backend=keyring_backend)
        token_manager = _token_manager(
            TokenResponse(error="invalid_grant", error_description="code expired")
        )
        browser = FakeBrowser(free_port, {"code": "auth-code-123"})
        broker = InteractiveAuthBroker(
            settings, store, token_manager, browser_opener=browser
        )

        # Act & Assert
        with pytest.raises(TokenExchangeError) as exc_info:
            await broker.authenticate(("Notes.ReadWrite",))
        await asyncio.gather(*browser.tasks)

        assert exc_info.value.error_code == "invalid_grant"
        assert browser.responses[0].status_code == 500
        assert keyring_backend.entries == {}

    async def test_timeout_without_redirect_releases_port(self, free_port, keyring_backend):
        # Arrange
        settings = Settings(redirect_port=free_port, auth_timeout=0.1)
        store = TokenStore("onenote-mcp-test", backend=keyring_backend)
        broker = InteractiveAuthBroker(
            settings, store, AsyncMock(), browser_opener=lambda url: False
        )

        # Act
        with pytest.raises(AuthorizationTimeoutError):
            await broker.authenticate(("Notes.ReadWrite",))

        # Assert - a fresh attempt can bind the same port
        with pytest.raises(AuthorizationTimeoutError):
            await broker.authenticate(("Notes.ReadWrite",))

    async def test_port_in_use_surfaces_listener_error(self, settings, keyring_backend):
        # Arrange
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", settings.redirect_port))
        blocker.listen(1)
        opener = MagicMock()
        broker = InteractiveAuthBroker(
            settings,
            TokenStore("onenote-mcp-test", backend=keyring_backend),
            AsyncMock(),
            browser_opener=opener,
        )

        # Act & Assert
        try:
            with pytest.raises(CallbackListenerError):
                await broker.authenticate(("Notes.ReadWrite",))
        finally:
            blocker.close()
        opener.assert_not_called()
