"""PKCE (Proof Key for Code Exchange) challenge generation.

Implements RFC 7636 S256 challenges. A fresh pair is generated for every
interactive sign-in; the verifier only ever travels to the token endpoint.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from onenote_mcp.auth.models.errors import PKCEError
from onenote_mcp.auth.models.security import PkceChallenge

# RFC 7636 Section 4.1 unreserved characters
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
VERIFIER_LENGTH = 128


class PkceGenerator:
    """Generates PKCE verifier/challenge pairs.

    The verifier is 128 characters from the unreserved alphabet, drawn
    with the `secrets` module. Failures of the entropy source surface as
    PKCEError and are not retried.
    """

    def generate(self) -> PkceChallenge:
        """Generate a new challenge for one authorization attempt.

        Returns:
            PkceChallenge: Single-use verifier and derived S256 challenge

        Raises:
            PKCEError: If the entropy source fails
        """
        try:
            verifier = self._generate_verifier()
        except (OSError, NotImplementedError) as e:
            raise PKCEError(f"Failed to generate PKCE verifier: {e}") from e

        return PkceChallenge(
            verifier=verifier,
            challenge=derive_challenge(verifier),
            method="S256",
        )

    def _generate_verifier(self) -> str:
        return "".join(
            secrets.choice(VERIFIER_ALPHABET) for _ in range(VERIFIER_LENGTH)
        )


def derive_challenge(verifier: str) -> str:
    """BASE64URL-ENCODE(SHA256(ASCII(verifier))) per RFC 7636 Section 4.2."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
