"""Credential and token endpoint models.

`Credential` is the immutable value the token store hands out; every
refresh produces a new one. The request/response models describe the
Microsoft identity platform token endpoint (RFC 6749 Sections 4.1.3, 5, 6).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel

from onenote_mcp.auth.primitives.tokens import decode_jwt_claims

# Lifetime assumed when the token endpoint omits expires_in.
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


@dataclass(frozen=True)
class AccountDescriptor:
    """Identity fields needed to ask for a token without prompting again."""

    home_account_id: str = ""
    environment: str = ""
    tenant_id: str = ""
    username: str = ""
    local_account_id: str = ""

    @classmethod
    def from_id_token(cls, id_token: str | None) -> AccountDescriptor | None:
        """Build a descriptor from the ID token claims, if they are usable."""
        claims = decode_jwt_claims(id_token)
        if not claims:
            return None

        object_id = str(claims.get("oid") or claims.get("sub") or "")
        tenant_id = str(claims.get("tid") or "")
        if not object_id:
            return None

        issuer = str(claims.get("iss") or "")
        return cls(
            home_account_id=f"{object_id}.{tenant_id}" if tenant_id else object_id,
            environment=urlparse(issuer).hostname or "",
            tenant_id=tenant_id,
            username=str(claims.get("preferred_username") or claims.get("email") or ""),
            local_account_id=object_id,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "homeAccountId": self.home_account_id,
            "environment": self.environment,
            "tenantId": self.tenant_id,
            "username": self.username,
            "localAccountId": self.local_account_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountDescriptor:
        return cls(
            home_account_id=str(data.get("homeAccountId") or ""),
            environment=str(data.get("environment") or ""),
            tenant_id=str(data.get("tenantId") or ""),
            username=str(data.get("username") or ""),
            local_account_id=str(data.get("localAccountId") or ""),
        )


@dataclass(frozen=True)
class Credential:
    """Everything the token store persists for the signed-in account.

    The access token and its expiry travel together; the refresh token
    usually outlives many access tokens.
    """

    access_token: str | None = field(default=None, repr=False)
    expires_at: float | None = None  # Unix timestamp
    refresh_token: str | None = field(default=None, repr=False)
    account: AccountDescriptor | None = None
    scope: str | None = None

    def __post_init__(self) -> None:
        if self.access_token is None and self.expires_at is not None:
            raise ValueError("expires_at requires an access_token")

    @property
    def is_empty(self) -> bool:
        return (
            self.access_token is None
            and self.refresh_token is None
            and self.account is None
        )

    def can_refresh(self) -> bool:
        """Check if a silent refresh is possible."""
        return bool(self.refresh_token)

    def granted_scopes(self) -> set[str] | None:
        """Scopes granted to the access token, or None when unknown."""
        if not self.scope:
            return None
        return {part.lower() for part in self.scope.split()}

    def merged_with(self, newer: Credential) -> Credential:
        """Overlay a refresh result on this credential.

        Refresh responses may omit the refresh token or ID token when the
        provider does not rotate them; the previous values are kept then.
        """
        return replace(
            newer,
            refresh_token=newer.refresh_token or self.refresh_token,
            account=newer.account or self.account,
            scope=newer.scope or self.scope,
        )


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3).

    Includes the PKCE code_verifier (RFC 7636).
    """

    # Required fields first
    token_endpoint: str
    code: str = field(repr=False)
    redirect_uri: str
    client_id: str
    code_verifier: str = field(repr=False)

    # Optional
    grant_type: str = "authorization_code"
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        """Form fields for the authorization_code grant (RFC 6749 §4.1.3)."""
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }

        if self.scope:
            data["scope"] = self.scope

        return data


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh token request parameters (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str = field(repr=False)
    client_id: str

    grant_type: str = "refresh_token"
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        """Form fields for the refresh_token grant."""
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }

        if self.scope:
            data["scope"] = self.scope

        return data


class TokenResponse(BaseModel):
    """Token endpoint response (RFC 6749 Section 5).

    Represents both successful responses (Section 5.1) and error
    responses (Section 5.2). Unknown provider fields are ignored.
    """

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds until expiry
    refresh_token: str | None = None
    scope: str | None = None
    id_token: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenResponse(token_type={self.token_type!r}, "
            f"expires_in={self.expires_in!r}, scope={self.scope!r}, "
            f"error={self.error!r})"
        )

    __str__ = __repr__

    def is_success(self) -> bool:
        """True when the endpoint issued an access token."""
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        """True for RFC 6749 §5.2 error bodies."""
        return self.error is not None

    def calculate_expires_at(self, now: float | None = None) -> float:
        """Absolute expiry timestamp, assuming an hour when unspecified."""
        issued_at = time.time() if now is None else now
        lifetime = self.expires_in
        if lifetime is None:
            lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS
        return issued_at + lifetime

    def to_credential(self, now: float | None = None) -> Credential:
        """Convert a successful response into a Credential.

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to Credential")

        return Credential(
            access_token=self.access_token,
            expires_at=self.calculate_expires_at(now),
            refresh_token=self.refresh_token,
            account=AccountDescriptor.from_id_token(self.id_token),
            scope=self.scope,
        )
