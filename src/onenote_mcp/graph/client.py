"""Minimal Microsoft Graph client.

Carries one bearer token and nothing else; it has no idea how the token
was obtained. The credential lifecycle manager hands out a new instance
whenever the token rotates.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from onenote_mcp.auth.primitives.redaction import redact
from onenote_mcp.config import GRAPH_BASE_URL

logger = logging.getLogger(__name__)


class GraphApiError(Exception):
    """Raised for non-success Graph responses and transport failures.

    Attributes:
        status_code: HTTP status, or None when no response was received
        code: Graph error code such as ``itemNotFound`` or ``TooManyRequests``
    """

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    def __str__(self) -> str:
        prefix = f"HTTP {self.status_code}: " if self.status_code else ""
        return f"{prefix}{self.args[0]}"


class GraphClient:
    """Issues authenticated requests against the Graph v1.0 API."""

    def __init__(
        self,
        access_token: str,
        http_client: httpx.AsyncClient,
        base_url: str = GRAPH_BASE_URL,
    ):
        self._access_token = access_token
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")

    @property
    def access_token(self) -> str:
        return self._access_token

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("GET", path, params=params)
        return response.json()

    async def get_text(self, path: str) -> str:
        response = await self._request("GET", path)
        return response.text

    async def post_json(self, path: str, body: dict[str, Any]) -> Any:
        response = await self._request("POST", path, json=body)
        return response.json() if response.content else {}

    async def post_html(self, path: str, html: str) -> Any:
        response = await self._request(
            "POST",
            path,
            content=html.encode("utf-8"),
            headers={"Content-Type": "application/xhtml+xml"},
        )
        return response.json() if response.content else {}

    async def patch_json(self, path: str, body: Any) -> None:
        await self._request("PATCH", path, json=body)

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def probe(self) -> bool:
        """Check whether the token is accepted, using a cheap `/me` call."""
        try:
            await self._request("GET", "/me", params={"$select": "id"})
        except GraphApiError as e:
            logger.debug(f"Token probe failed: {e}")
            return False
        return True

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        request_headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(headers)

        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json,
                content=content,
                headers=request_headers,
            )
        except httpx.TimeoutException as e:
            raise GraphApiError(
                f"Request to Graph timed out: {redact(e)}", status_code=504, code="Timeout"
            ) from e
        except httpx.HTTPError as e:
            raise GraphApiError(
                f"Network error talking to Graph: {redact(e)}", code="NetworkError"
            ) from e

        if response.is_success:
            return response
        raise _error_from_response(response)


def _error_from_response(response: httpx.Response) -> GraphApiError:
    code = None
    message = response.reason_phrase or "Graph request failed"
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        code = error.get("code")
        message = error.get("message") or message

    return GraphApiError(redact(message), status_code=response.status_code, code=code)
