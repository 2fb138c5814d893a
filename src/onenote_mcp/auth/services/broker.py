"""Interactive browser sign-in.

Runs the authorization code flow with PKCE: opens the system browser on
the consent page, captures the redirect on the local listener, exchanges
the code and persists the result before the browser is told it worked.
"""

from __future__ import annotations

import asyncio
import logging
import time
import webbrowser
from collections.abc import Callable, Sequence

from onenote_mcp.auth.models.errors import TokenExchangeError
from onenote_mcp.auth.models.flow import AuthAttempt, AuthorizationRequest
from onenote_mcp.auth.models.tokens import Credential, TokenRequest
from onenote_mcp.auth.primitives.pkce import PkceGenerator
from onenote_mcp.auth.primitives.redaction import redact, secret_registry
from onenote_mcp.auth.services.callback import RedirectListener
from onenote_mcp.auth.services.store import TokenStore
from onenote_mcp.auth.services.tokens import OAuth2TokenManager
from onenote_mcp.config import IDENTITY_SCOPES, Settings

logger = logging.getLogger(__name__)

BrowserOpener = Callable[[str], object]


class InteractiveAuthBroker:
    """Brokers one human-in-the-loop sign-in per call.

    Failures are reported, never retried: re-prompting a user without
    asking is surprising, so the caller decides whether to try again.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        token_manager: OAuth2TokenManager,
        pkce_generator: PkceGenerator | None = None,
        browser_opener: BrowserOpener | None = None,
    ):
        """Initialize the broker.

        Args:
            settings: Client id, endpoints, redirect port and timeout
            token_store: Receives the credential before the browser is answered
            token_manager: Token endpoint client used for the code exchange
            pkce_generator: Source of PKCE challenges
            browser_opener: Called with the authorization URL; defaults to
                `webbrowser.open`
        """
        self.settings = settings
        self._token_store = token_store
        self._token_manager = token_manager
        self._pkce = pkce_generator or PkceGenerator()
        self._open_browser = browser_opener or webbrowser.open
        # The redirect port cannot be shared, so one attempt runs at a time.
        self._attempt_lock = asyncio.Lock()

    async def authenticate(self, scopes: Sequence[str]) -> Credential:
        """Run the interactive sign-in.

        Args:
            scopes: Graph scopes to request

        Returns:
            Credential: The persisted credential

        Raises:
            PKCEError: The entropy source failed
            CallbackListenerError: The redirect port is unavailable
            AuthorizationError: The user or provider refused consent
            AuthorizationTimeoutError: No redirect before the deadline
            TokenExchangeError: The code could not be exchanged
        """
        async with self._attempt_lock:
            return await self._run_attempt(_with_identity_scopes(scopes))

    async def _run_attempt(self, scopes: tuple[str, ...]) -> Credential:
        attempt = AuthAttempt(
            port=self.settings.redirect_port,
            redirect_path=self.settings.redirect_path,
            deadline=time.monotonic() + self.settings.auth_timeout,
            challenge=self._pkce.generate(),
            scopes=scopes,
        )

        async def exchange(code: str) -> Credential:
            return await self._exchange_and_persist(code, attempt)

        listener = RedirectListener(
            exchange_code=exchange,
            host=self.settings.listen_host,
            port=attempt.port,
            redirect_path=attempt.redirect_path,
        )
        await listener.start()

        try:
            secret_registry.register(
                attempt.challenge.verifier, attempt.challenge.challenge
            )

            auth_url = AuthorizationRequest(
                authorization_endpoint=self.settings.authorization_endpoint,
                client_id=self.settings.client_id,
                redirect_uri=self.settings.redirect_uri,
                scopes=attempt.scopes,
                code_challenge=attempt.challenge.challenge,
                code_challenge_method=attempt.challenge.method,
            ).build_authorization_url()

            logger.info("Opening browser for Microsoft sign-in")
            self._launch_browser(auth_url)

            remaining = max(0.0, attempt.deadline - time.monotonic())
            credential = await listener.wait(remaining)
            logger.info("Authentication successful; credential stored")
            return credential
        finally:
            await listener.close()
            secret_registry.forget(
                attempt.challenge.verifier, attempt.challenge.challenge
            )

    def _launch_browser(self, auth_url: str) -> None:
        try:
            opened = self._open_browser(auth_url)
        except webbrowser.Error as e:
            opened = False
            logger.warning(f"Could not open a browser: {e}")
        if opened is False:
            # stdout belongs to the protocol stream; stderr reaches the user.
            logger.warning(f"Open this URL to sign in: {auth_url}")

    async def _exchange_and_persist(self, code: str, attempt: AuthAttempt) -> Credential:
        secret_registry.register(code)
        try:
            token_response = await self._token_manager.exchange_code_for_token(
                TokenRequest(
                    token_endpoint=self.settings.token_endpoint,
                    code=code,
                    redirect_uri=self.settings.redirect_uri,
                    client_id=self.settings.client_id,
                    code_verifier=attempt.challenge.verifier,
                    scope=" ".join(attempt.scopes),
                )
            )
        finally:
            secret_registry.forget(code)

        if not token_response.is_success():
            raise TokenExchangeError(
                f"Token exchange failed: {token_response.error} "
                f"({redact(token_response.error_description or '', [code])})",
                error_code=token_response.error,
            )

        credential = token_response.to_credential()
        await self._token_store.save(credential)
        return credential


def _with_identity_scopes(scopes: Sequence[str]) -> tuple[str, ...]:
    """Append the OpenID scopes that make the provider return an ID token."""
    merged = list(dict.fromkeys(scopes))
    for scope in IDENTITY_SCOPES:
        if scope not in merged:
            merged.append(scope)
    return tuple(merged)
