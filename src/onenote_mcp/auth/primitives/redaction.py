"""Scrub credentials out of text before it is logged or returned.

Anything that leaves the process as a log line or a tool error payload
goes through `redact`. Known secret values (the current tokens, the
in-flight authorization code and verifier) are registered explicitly;
pattern rules catch bearer headers, JWT-shaped strings and OAuth
parameters embedded in URLs or form bodies.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable

REDACTED = "[REDACTED]"

# Values shorter than this are too generic to scrub by exact match.
_MIN_SECRET_LENGTH = 8

_BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*")
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_TOKEN_FIELDS = "access_token|refresh_token|id_token|code_verifier"
_PARAM_RE = re.compile(
    rf"(?i)\b(code|code_challenge|client_secret|{_TOKEN_FIELDS})=([^&\s\"']+)"
)
_JSON_FIELD_RE = re.compile(
    rf"(?i)([\"'](?:{_TOKEN_FIELDS}|token)[\"']\s*:\s*[\"'])([^\"']+)([\"'])"
)


class SecretRegistry:
    """Process-wide set of secret values to scrub by exact match."""

    def __init__(self) -> None:
        self._secrets: set[str] = set()
        self._lock = threading.Lock()

    def register(self, *values: str | None) -> None:
        with self._lock:
            for value in values:
                if value and len(value) >= _MIN_SECRET_LENGTH:
                    self._secrets.add(value)

    def forget(self, *values: str | None) -> None:
        with self._lock:
            for value in values:
                if value:
                    self._secrets.discard(value)

    def snapshot(self) -> list[str]:
        with self._lock:
            # Longest first so a secret containing another is fully removed.
            return sorted(self._secrets, key=len, reverse=True)


secret_registry = SecretRegistry()


def redact(text: object, extra_secrets: Iterable[str | None] = ()) -> str:
    """Return `text` with credentials replaced by a placeholder.

    Args:
        text: Message, exception or any object to render as a string
        extra_secrets: Additional values to remove for this call only

    Returns:
        The scrubbed string
    """
    result = str(text)

    secrets_to_remove = secret_registry.snapshot()
    secrets_to_remove.extend(
        value
        for value in extra_secrets
        if value and len(value) >= _MIN_SECRET_LENGTH
    )
    for value in sorted(secrets_to_remove, key=len, reverse=True):
        result = result.replace(value, REDACTED)

    result = _BEARER_RE.sub(f"Bearer {REDACTED}", result)
    result = _JWT_RE.sub(REDACTED, result)
    result = _PARAM_RE.sub(lambda m: f"{m.group(1)}={REDACTED}", result)
    result = _JSON_FIELD_RE.sub(lambda m: f"{m.group(1)}{REDACTED}{m.group(3)}", result)
    return result
