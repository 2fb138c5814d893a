"""Runtime configuration.

Values come from the environment (optionally a `.env` file). The redirect
port must match the redirect URI registered for the Azure AD application,
so it is fixed per deployment rather than chosen per sign-in.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Public client registered for this server; deployments should bring their own.
DEFAULT_CLIENT_ID = "813d941f-92ac-4ac0-94a2-1e89b720e15b"
DEFAULT_AUTHORITY = "https://login.microsoftonline.com/consumers"
DEFAULT_REDIRECT_PORT = 8400
DEFAULT_AUTH_TIMEOUT_SECONDS = 120.0
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

READ_SCOPES = ("Notes.Read", "User.Read", "offline_access")
WRITE_SCOPES = ("Notes.ReadWrite", "User.Read", "offline_access")
# Requested on every sign-in so the token endpoint returns an ID token.
IDENTITY_SCOPES = ("openid", "profile")


@dataclass(frozen=True)
class Settings:
    """Server configuration.

    Attributes:
        client_id: Azure AD application (client) id
        authority: Identity platform authority, including the tenant segment
        redirect_host: Host name in the registered redirect URI
        listen_host: Interface the redirect listener binds
        redirect_port: Fixed port of the registered redirect URI
        redirect_path: Path of the registered redirect URI
        auth_timeout: Seconds to wait for the browser redirect
        default_scopes: Scopes requested when a tool does not ask for more
        keyring_service: Service name for the credential store entries
        min_spacing_ms: Minimum gap between Graph requests
        max_delay_ms: Cap on a single retry backoff
        max_retries: Retries after the first attempt for transient failures
        http_timeout: Timeout for identity and Graph HTTP requests
    """

    client_id: str = DEFAULT_CLIENT_ID
    authority: str = DEFAULT_AUTHORITY
    redirect_host: str = "localhost"
    listen_host: str = "127.0.0.1"
    redirect_port: int = DEFAULT_REDIRECT_PORT
    redirect_path: str = "/"
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT_SECONDS
    default_scopes: tuple[str, ...] = field(default=WRITE_SCOPES)
    keyring_service: str = "onenote-mcp"
    graph_base_url: str = GRAPH_BASE_URL
    min_spacing_ms: float = 100
    max_delay_ms: float = 30_000
    max_retries: int = 3
    http_timeout: float = 30.0

    @property
    def redirect_uri(self) -> str:
        path = self.redirect_path if self.redirect_path != "/" else ""
        return f"http://{self.redirect_host}:{self.redirect_port}{path}"

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.authority.rstrip('/')}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority.rstrip('/')}/oauth2/v2.0/token"

    @property
    def uses_default_client_id(self) -> bool:
        return self.client_id == DEFAULT_CLIENT_ID

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> Settings:
        """Build settings from environment variables.

        Args:
            load_env_file: Read a `.env` file from the working directory first
        """
        if load_env_file:
            load_dotenv()

        settings = cls(
            client_id=os.getenv("AZURE_CLIENT_ID") or DEFAULT_CLIENT_ID,
            authority=os.getenv("ONENOTE_MCP_AUTHORITY") or DEFAULT_AUTHORITY,
            redirect_port=_env_int("ONENOTE_MCP_REDIRECT_PORT", DEFAULT_REDIRECT_PORT),
            auth_timeout=_env_float(
                "ONENOTE_MCP_AUTH_TIMEOUT", DEFAULT_AUTH_TIMEOUT_SECONDS
            ),
            keyring_service=os.getenv("ONENOTE_MCP_KEYRING_SERVICE") or "onenote-mcp",
            min_spacing_ms=_env_float("ONENOTE_MCP_MIN_SPACING_MS", 100),
            max_delay_ms=_env_float("ONENOTE_MCP_MAX_DELAY_MS", 30_000),
            max_retries=_env_int("ONENOTE_MCP_MAX_RETRIES", 3),
        )

        if settings.uses_default_client_id:
            logger.warning(
                "Using the default public client id. For production, register "
                "your own Azure AD application and set AZURE_CLIENT_ID."
            )
        return settings


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}; using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}; using {default}")
        return default
