"""Authorization flow models.

Contains the authorization request and the ephemeral state of a single
interactive sign-in attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlencode

from onenote_mcp.auth.models.security import PkceChallenge


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for the code + PKCE flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    scopes: tuple[str, ...]
    code_challenge: str
    code_challenge_method: str = "S256"

    def build_authorization_url(self) -> str:
        params = {
            "response_type": "code",
            "response_mode": "query",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }
        return f"{self.authorization_endpoint}?{urlencode(params)}"


@dataclass
class AuthAttempt:
    """State of one browser round trip.

    Exists only while the redirect listener is bound.
    """

    port: int
    redirect_path: str
    deadline: float
    challenge: PkceChallenge = field(repr=False)
    scopes: tuple[str, ...] = ()
