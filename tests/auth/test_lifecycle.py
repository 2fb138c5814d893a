import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from onenote_mcp.auth.lifecycle import CredentialLifecycleManager
from onenote_mcp.auth.models.errors import (
    AuthorizationTimeoutError,
    TokenError,
    TokenStoreError,
)
from onenote_mcp.auth.models.tokens import AccountDescriptor, Credential, TokenResponse
from onenote_mcp.config import READ_SCOPES, WRITE_SCOPES, Settings

NOW = 1_760_000_000.0
OLD_TOKEN = "O" * 150
NEW_TOKEN = "N" * 150
SIGNED_IN_TOKEN = "S" * 150


def _probe_transport(status_code: int, calls: list[httpx.Request]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code, json={"id": "user"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class LifecycleHarness:
    def __init__(self, stored: Credential, probe_status: int = 200):
        self.token_store = AsyncMock()
        self.token_store.load.return_value = stored
        self.token_manager = AsyncMock()
        self.broker = AsyncMock()
        self.broker.authenticate.return_value = Credential(
            access_token=SIGNED_IN_TOKEN,
            expires_at=NOW + 3600,
            refresh_token="fresh-refresh-token",
            scope="Notes.ReadWrite User.Read",
        )
        self.probe_calls: list[httpx.Request] = []
        self.manager = CredentialLifecycleManager(
            Settings(),
            self.token_store,
            self.token_manager,
            self.broker,
            http_client=_probe_transport(probe_status, self.probe_calls),
            clock=lambda: NOW,
        )

    def refresh_returns(self, response: TokenResponse) -> None:
        self.token_manager.refresh_access_token.return_value = response


class TestEnsureWithValidToken:
    async def test_fresh_token_is_used_as_is(self):
        # Arrange
        harness = LifecycleHarness(
            Credential(
                access_token=OLD_TOKEN,
                expires_at=NOW + 3600,
                refresh_token="refresh-token",
                scope="Notes.ReadWrite User.Read",
            )
        )

        # Act
        client = await harness.manager.ensure(WRITE_SCOPES)

        # Assert
        assert client.access_token == OLD_TOKEN
        harness.token_manager.refresh_access_token.assert_not_awaited()
        harness.broker.authenticate.assert_not_awaited()
        assert harness.probe_calls == []

    async def test_store_is_read_once(self):
        harness = LifecycleHarness(Credential(access_token=OLD_TOKEN, expires_at=NOW + 3600))

        first = await harness.manager.ensure()
        second = await harness.manager.ensure()

        assert harness.token_store.load.await_count == 1
        assert first is second

    async def test_readwrite_grant_satisfies_read_request(self):
        harness = LifecycleHarness(
            Credential(access_token=OLD_TOKEN, expires_at=NOW + 3600, scope="Notes.ReadWrite")
        )

        await harness.manager.ensure(READ_SCOPES)

        harness.token_manager.refresh_access_token.assert_not_awaited()
        harness.broker.authenticate.assert_not_awaited()

    async def test_resource_prefixed_scopes_are_understood(self):
        harness = LifecycleHarness(
            Credential(
                access_token=OLD_TOKEN,
                expires_at=NOW + 3600,
                scope="https://graph.microsoft.com/Notes.ReadWrite https://graph.microsoft.com/User.Read",
            )
        )

        await harness.manager.ensure(WRITE_SCOPES)

        harness.broker.authenticate.assert_not_awaited()


class TestEnsureWithExpiringToken:
    async def test_refresh_success_replaces_and_persists_token(self):
        # Arrange
        account = AccountDescriptor(username="ada")
        harness = LifecycleHarness(
            Credential(
                access_token=OLD_TOKEN,
                expires_at=NOW + 120,
                refresh_token="refresh-token",
                account=account,
            )
        )
        harness.refresh_returns(TokenResponse(access_token=NEW_TOKEN, expires_in=3600))

        # Act
        client = await harness.manager.ensure()

        # Assert
        assert client.access_token == NEW_TOKEN
        saved = harness.token_store.save.call_args[0][0]
        assert saved.access_token == NEW_TOKEN
        assert saved.expires_at == NOW + 3600
        assert saved.refresh_token == "refresh-token"
        assert saved.account is account
        harness.broker.authenticate.assert_not_awaited()

        refresh_request = harness.token_manager.refresh_access_token.call_args[0][0]
        assert refresh_request.refresh_token == "refresh-token"
        assert refresh_request.scope.split() == list(WRITE_SCOPES)

    async def test_failed_refresh_falls_back_to_successful_probe(self):
        # Arrange
        harness = LifecycleHarness(
            Credential(access_token=OLD_TOKEN, expires_at=NOW + 120, refresh_token="r" * 20)
        )
        harness.refresh_returns(TokenResponse(error="invalid_grant"))

        # Act
        client = await harness.manager.ensure()

        # Assert
        assert client.access_token == OLD_TOKEN
        assert len(harness.probe_calls) == 1
        assert harness.probe_calls[0].headers["Authorization"] == f"Bearer {OLD_TOKEN}"
        harness.broker.authenticate.assert_not_awaited()

    async def test_refresh_transport_error_also_falls_back_to_probe(self):
        harness = LifecycleHarness(
            Credential(access_token=OLD_TOKEN, expires_at=NOW + 120, refresh_token="r" * 20)
        )
        harness.token_manager.refresh_access_token.side_effect = TokenError("offline")

        client = await harness.manager.ensure()

        assert client.access_token == OLD_TOKEN
        harness.broker.authenticate.assert_not_awaited()

    async def test_rejected_refresh_is_reported_as_refresh_error(self, caplog):
        # Arrange
        harness = LifecycleHarness(
            Credential(access_token=OLD_TOKEN, expires_at=NOW + 120, refresh_token="r" * 20)
        )
        harness.refresh_returns(
            TokenResponse(error="invalid_grant", error_description="AADSTS70008: expired")
        )

        # Act
        with caplog.at_level("WARNING", logger="onenote_mcp.auth.lifecycle"):
            await harness.manager.ensure()

        # Assert
        assert "Token refresh rejected: invalid_grant (AADSTS70008: expired)" in caplog.text
        harness.token_store.save.assert_not_awaited()

    async def test_failed_refresh_and_probe_runs_interactive_sign_in(self):
        # Arrange
        harness = LifecycleHarness(
            Credential(access_token=OLD_TOKEN, expires_at=NOW - 10, refresh_token="r" * 20),
            probe_status=401,
        )
        harness.refresh_returns(TokenResponse(error="invalid_grant"))

        # Act
        client = await harness.manager.ensure()

        # Assert
        assert client.access_token == SIGNED_IN_TOKEN
        harness.broker.authenticate.assert_awaited_once_with(WRITE_SCOPES)

    async def test_unknown_expiry_is_treated_as_expired(self):
        harness = LifecycleHarness(Credential(access_token=OLD_TOKEN), probe_status=200)

        client = await harness.manager.ensure()

        # No refresh token, so straight to the probe
        harness.token_manager.refresh_access_token.assert_not_awaited()
        assert len(harness.probe_calls) == 1
        assert client.access_token == OLD_TOKEN

    async def test_persist_failure_still_uses_refreshed_token(self):
        harness = LifecycleHarness(
            Credential(access_token=OLD_TOKEN, expires_at=NOW + 60, refresh_token="r" * 20)
        )
        harness.refresh_returns(TokenResponse(access_token=NEW_TOKEN, expires_in=3600))
        harness.token_store.save.side_effect = TokenStoreError("keychain locked")

        client = await harness.manager.ensure()

        assert client.access_token == NEW_TOKEN


class TestEnsureWithUnusableToken:
    async def test_malformed_token_tries_refresh_before_sign_in(self):
        # Arrange
        harness = LifecycleHarness(
            Credential(access_token="not-a-token", refresh_token="r" * 20)
        )
        harness.refresh_returns(TokenResponse(error="invalid_grant"))

        # Act
        client = await harness.manager.ensure()

        # Assert
        harness.token_manager.refresh_access_token.assert_awaited_once()
        harness.broker.authenticate.assert_awaited_once()
        assert harness.probe_calls == []
        assert client.access_token == SIGNED_IN_TOKEN

    async def test_malformed_token_recovered_by_refresh(self):
        harness = LifecycleHarness(Credential(access_token="x.y", refresh_token="r" * 20))
        harness.refresh_returns(TokenResponse(access_token=NEW_TOKEN, expires_in=3600))

        client = await harness.manager.ensure()

        assert client.access_token == NEW_TOKEN
        harness.broker.authenticate.assert_not_awaited()

    async def test_empty_store_goes_straight_to_sign_in(self):
        harness = LifecycleHarness(Credential())

        client = await harness.manager.ensure()

        harness.token_manager.refresh_access_token.assert_not_awaited()
        assert client.access_token == SIGNED_IN_TOKEN

    async def test_sign_in_failure_propagates(self):
        harness = LifecycleHarness(Credential())
        harness.broker.authenticate.side_effect = AuthorizationTimeoutError(120)

        with pytest.raises(AuthorizationTimeoutError):
            await harness.manager.ensure()

    async def test_sign_in_keeps_previous_refresh_token_when_none_returned(self):
        harness = LifecycleHarness(Credential(refresh_token="old-refresh-token"))
        harness.refresh_returns(TokenResponse(error="invalid_grant"))
        harness.broker.authenticate.return_value = Credential(
            access_token=SIGNED_IN_TOKEN, expires_at=NOW + 3600
        )

        await harness.manager.ensure()

        assert harness.manager.credential.refresh_token == "old-refresh-token"


class TestScopeEscalation:
    async def test_missing_scope_tries_silent_refresh_with_required_scopes(self):
        # Arrange
        harness = LifecycleHarness(
            Credential(
                access_token=OLD_TOKEN,
                expires_at=NOW + 3600,
                refresh_token="r" * 20,
                scope="Notes.Read User.Read",
            )
        )
        harness.refresh_returns(
            TokenResponse(
                access_token=NEW_TOKEN, expires_in=3600, scope="Notes.ReadWrite User.Read"
            )
        )

        # Act
        client = await harness.manager.ensure(WRITE_SCOPES)

        # Assert
        refresh_request = harness.token_manager.refresh_access_token.call_args[0][0]
        assert "Notes.ReadWrite" in refresh_request.scope.split()
        assert client.access_token == NEW_TOKEN
        harness.broker.authenticate.assert_not_awaited()

    async def test_missing_scope_falls_back_to_sign_in(self):
        harness = LifecycleHarness(
            Credential(
                access_token=OLD_TOKEN,
                expires_at=NOW + 3600,
                refresh_token="r" * 20,
                scope="Notes.Read User.Read",
            )
        )
        harness.refresh_returns(TokenResponse(error="invalid_grant"))

        client = await harness.manager.ensure(WRITE_SCOPES)

        harness.broker.authenticate.assert_awaited_once()
        requested = harness.broker.authenticate.call_args[0][0]
        assert "Notes.ReadWrite" in requested
        assert client.access_token == SIGNED_IN_TOKEN


class TestConcurrency:
    async def test_concurrent_callers_share_one_refresh(self):
        # Arrange
        harness = LifecycleHarness(
            Credential(access_token=OLD_TOKEN, expires_at=NOW + 60, refresh_token="r" * 20)
        )

        async def slow_refresh(request):
            await asyncio.sleep(0.01)
            return TokenResponse(access_token=NEW_TOKEN, expires_in=3600)

        harness.token_manager.refresh_access_token.side_effect = slow_refresh

        # Act
        clients = await asyncio.gather(*(harness.manager.ensure() for _ in range(5)))

        # Assert
        assert harness.token_manager.refresh_access_token.await_count == 1
        assert {client.access_token for client in clients} == {NEW_TOKEN}


class TestSignOutAndStatus:
    async def test_sign_out_clears_memory_and_store(self):
        # Arrange
        harness = LifecycleHarness(Credential(access_token=OLD_TOKEN, expires_at=NOW + 3600))
        await harness.manager.ensure()
        harness.token_store.load.return_value = Credential()

        # Act
        await harness.manager.sign_out()
        status = await harness.manager.status()

        # Assert
        harness.token_store.delete.assert_awaited_once()
        assert harness.manager.credential == Credential()
        assert status["signedIn"] is False

    async def test_status_reports_without_tokens(self):
        harness = LifecycleHarness(
            Credential(
                access_token=OLD_TOKEN,
                expires_at=NOW + 3600,
                refresh_token="r" * 20,
                account=AccountDescriptor(username="ada@outlook.com"),
                scope="Notes.ReadWrite User.Read",
            )
        )

        status = await harness.manager.status()

        assert status["signedIn"] is True
        assert status["username"] == "ada@outlook.com"
        assert status["expired"] is False
        assert status["canRefresh"] is True
        assert status["scopes"] == ["Notes.ReadWrite", "User.Read"]
        assert OLD_TOKEN not in str(status)
