"""Exception hierarchy for OneNote authentication errors.

Each failure mode gets its own type because the recovery path differs:
setup failures are fatal, a denied consent can be retried by the user,
a timeout usually means the browser never reached the redirect listener,
and refresh rejections fall back to interactive sign-in.
"""

from __future__ import annotations


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.0 related errors."""

    pass


class PKCEError(OAuth2Error):
    """Raised when PKCE parameters cannot be generated."""

    pass


class CallbackListenerError(OAuth2Error):
    """Raised when the local redirect listener cannot be started.

    Usually means the fixed redirect port is already bound by another
    process or by a previous sign-in attempt that is still running.
    """

    pass


class AuthorizationError(OAuth2Error):
    """Raised when the identity provider redirects back with an error.

    The user denied consent, closed the dialog, or the provider refused
    the request. Re-running the sign-in is the usual recovery.
    """

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.error_code = error_code


class AuthorizationTimeoutError(OAuth2Error):
    """Raised when no redirect reaches the listener before the deadline."""

    def __init__(self, timeout: float):
        super().__init__(
            f"Authentication timed out after {timeout:g} seconds. "
            "Check that the browser opened and that nothing blocks localhost."
        )
        self.timeout = timeout


class TokenError(OAuth2Error):
    """Raised when token operations fail."""

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.error_code = error_code


class TokenExchangeError(TokenError):
    """Raised when authorization code to token exchange fails."""

    pass


class TokenRefreshError(TokenError):
    """Raised when token refresh fails."""

    pass


class TokenStoreError(OAuth2Error):
    """Raised when the OS credential store rejects a write or delete."""

    pass
