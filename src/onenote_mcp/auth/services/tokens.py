"""Token endpoint client for the Microsoft identity platform.

Implements the RFC 6749 token endpoint interactions used by the sign-in
flow: authorization code exchange with a PKCE verifier (RFC 7636) and
refresh token grants.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx
from pydantic import ValidationError

from onenote_mcp.auth.models.errors import TokenError
from onenote_mcp.auth.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)
from onenote_mcp.auth.primitives.redaction import redact

logger = logging.getLogger(__name__)

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OAuth2TokenManager:
    """Posts grants to the token endpoint and parses what comes back.

    OAuth error bodies (`invalid_grant` and friends) are returned as a
    TokenResponse with `error` set so callers can decide between refresh
    and interactive sign-in. Only transport and parsing failures raise.
    """

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        """
        Args:
            timeout: Per-request timeout in seconds
            http_client: Shared client; a private one is created if omitted
        """
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(self, token_request: TokenRequest) -> TokenResponse:
        """Redeem an authorization code together with its PKCE verifier.

        Raises:
            TokenError: Network failure or an unparseable response
        """
        logger.debug(f"Exchanging authorization code at {token_request.token_endpoint}")
        return await self._post(
            token_request.token_endpoint,
            token_request.to_form_data(),
            "token exchange",
            [token_request.code, token_request.code_verifier],
        )

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        """Trade a refresh token for a new access token.

        Raises:
            TokenError: Network failure or an unparseable response
        """
        logger.debug(f"Refreshing access token at {refresh_request.token_endpoint}")
        return await self._post(
            refresh_request.token_endpoint,
            refresh_request.to_form_data(),
            "token refresh",
            [refresh_request.refresh_token],
        )

    async def _post(
        self,
        endpoint: str,
        form: dict[str, str],
        operation: str,
        secrets: Sequence[str | None],
    ) -> TokenResponse:
        try:
            response = await self._http_client.post(
                endpoint, data=form, headers=_FORM_HEADERS
            )
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during {operation}: {redact(e, secrets)}") from e
        return self._parse_token_response(response, secrets)

    def _parse_token_response(
        self, response: httpx.Response, secrets: Sequence[str | None]
    ) -> TokenResponse:
        """Turn a token endpoint reply into a TokenResponse (RFC 6749 §5).

        Raises:
            TokenError: Body is not a JSON object, or a 200 lacks access_token
        """
        try:
            body = response.json()
        except ValueError as e:
            raise TokenError(
                f"Token endpoint returned non-JSON response (HTTP {response.status_code})"
            ) from e

        if not isinstance(body, dict):
            raise TokenError("Token endpoint returned an unexpected payload")

        if response.status_code == 200:
            if "access_token" not in body:
                raise TokenError("Token endpoint reply has no access_token")
        else:
            # Some proxies strip the error body; keep the status visible.
            body.setdefault("error", f"http_{response.status_code}")
            logger.warning(
                f"Token request failed with {response.status_code}: {body.get('error')} - "
                f"{redact(body.get('error_description', ''), secrets)}"
            )

        try:
            return TokenResponse(**body)
        except ValidationError as e:
            raise TokenError(f"Malformed token response: {redact(e, secrets)}") from e

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
