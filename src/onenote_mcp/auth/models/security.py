"""PKCE challenge model.

A challenge lives for exactly one authorization attempt and is never
written to the credential store.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PkceChallenge:
    """Verifier/challenge pair for one authorization attempt (RFC 7636)."""

    verifier: str = field(repr=False)
    challenge: str = field(repr=False)
    method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.verifier) <= 128):
            raise ValueError("verifier must be 43-128 characters")
        if not (43 <= len(self.challenge) <= 128):
            raise ValueError("challenge must be 43-128 characters")
        if self.method != "S256":
            raise ValueError("Only S256 code challenge method is supported")
