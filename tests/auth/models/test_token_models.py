from urllib.parse import parse_qs, urlparse

import pytest

from onenote_mcp.auth.models.flow import AuthorizationRequest
from onenote_mcp.auth.models.tokens import (
    DEFAULT_TOKEN_LIFETIME_SECONDS,
    AccountDescriptor,
    Credential,
    TokenResponse,
)


class TestAccountDescriptor:
    def test_from_id_token_reads_identity_claims(self, jwt_factory):
        # Arrange
        id_token = jwt_factory(
            {
                "oid": "00000000-0000-0000-aaaa-bbbbbbbbbbbb",
                "tid": "9188040d-6c67-4c5b-b112-36a304b66dad",
                "iss": "https://login.microsoftonline.com/9188040d/v2.0",
                "preferred_username": "ada@outlook.com",
            }
        )

        # Act
        account = AccountDescriptor.from_id_token(id_token)

        # Assert
        assert account.home_account_id == (
            "00000000-0000-0000-aaaa-bbbbbbbbbbbb.9188040d-6c67-4c5b-b112-36a304b66dad"
        )
        assert account.environment == "login.microsoftonline.com"
        assert account.username == "ada@outlook.com"
        assert account.local_account_id == "00000000-0000-0000-aaaa-bbbbbbbbbbbb"

    def test_from_id_token_without_subject_returns_none(self, jwt_factory):
        assert AccountDescriptor.from_id_token(jwt_factory({"tid": "t"})) is None

    def test_from_id_token_none_returns_none(self):
        assert AccountDescriptor.from_id_token(None) is None

    def test_dict_round_trip_uses_camel_case(self):
        account = AccountDescriptor("h.t", "login.microsoftonline.com", "t", "ada", "h")

        data = account.to_dict()

        assert data["homeAccountId"] == "h.t"
        assert AccountDescriptor.from_dict(data) == account


class TestCredential:
    def test_expiry_without_access_token_is_rejected(self):
        with pytest.raises(ValueError):
            Credential(expires_at=123.0)

    def test_granted_scopes_are_lowercased(self):
        credential = Credential(access_token="a" * 120, scope="Notes.ReadWrite User.Read")

        assert credential.granted_scopes() == {"notes.readwrite", "user.read"}

    def test_granted_scopes_unknown_when_scope_missing(self):
        assert Credential(access_token="a" * 120).granted_scopes() is None

    def test_merged_with_keeps_previous_refresh_token_and_account(self):
        # Arrange
        account = AccountDescriptor(username="ada")
        previous = Credential(
            access_token="old" * 40,
            expires_at=100.0,
            refresh_token="refresh-old",
            account=account,
            scope="Notes.ReadWrite",
        )
        newer = Credential(access_token="new" * 40, expires_at=5000.0)

        # Act
        merged = previous.merged_with(newer)

        # Assert
        assert merged.access_token == "new" * 40
        assert merged.expires_at == 5000.0
        assert merged.refresh_token == "refresh-old"
        assert merged.account is account
        assert merged.scope == "Notes.ReadWrite"

    def test_merged_with_takes_rotated_refresh_token(self):
        previous = Credential(access_token="old" * 40, refresh_token="refresh-old")
        newer = Credential(access_token="new" * 40, refresh_token="refresh-new")

        assert previous.merged_with(newer).refresh_token == "refresh-new"

    def test_repr_hides_tokens(self):
        credential = Credential(access_token="secret-access", refresh_token="secret-refresh")

        assert "secret-access" not in repr(credential)
        assert "secret-refresh" not in repr(credential)


class TestTokenResponse:
    def test_to_credential_computes_absolute_expiry(self):
        # Arrange
        response = TokenResponse(
            access_token="access", expires_in=3599, refresh_token="refresh", scope="Notes.Read"
        )

        # Act
        credential = response.to_credential(now=1_000.0)

        # Assert
        assert credential.expires_at == 4_599.0
        assert credential.refresh_token == "refresh"
        assert credential.scope == "Notes.Read"
        assert credential.account is None

    def test_missing_expires_in_assumes_default_lifetime(self):
        response = TokenResponse(access_token="access")

        assert response.calculate_expires_at(now=0.0) == DEFAULT_TOKEN_LIFETIME_SECONDS

    def test_error_response_cannot_become_credential(self):
        response = TokenResponse(error="invalid_grant", error_description="expired")

        assert response.is_error()
        with pytest.raises(ValueError):
            response.to_credential()

    def test_repr_hides_tokens(self):
        response = TokenResponse(access_token="access-secret", refresh_token="refresh-secret")

        assert "access-secret" not in repr(response)
        assert "refresh-secret" not in str(response)


class TestAuthorizationRequest:
    def test_build_authorization_url(self):
        # Arrange
        request = AuthorizationRequest(
            authorization_endpoint="https://login.microsoftonline.com/consumers/oauth2/v2.0/authorize",
            client_id="client-id",
            redirect_uri="http://localhost:8400",
            scopes=("Notes.ReadWrite", "offline_access"),
            code_challenge="c" * 43,
        )

        # Act
        url = urlparse(request.build_authorization_url())
        params = parse_qs(url.query)

        # Assert
        assert url.path == "/consumers/oauth2/v2.0/authorize"
        assert params["response_type"] == ["code"]
        assert params["response_mode"] == ["query"]
        assert params["redirect_uri"] == ["http://localhost:8400"]
        assert params["scope"] == ["Notes.ReadWrite offline_access"]
        assert params["code_challenge_method"] == ["S256"]
