"""Token shape and expiry checks.

Microsoft Graph hands out two kinds of access tokens: signed JWTs
(header.payload.signature) for work/school accounts and long opaque
strings for personal accounts. Neither is verified locally; these checks
only decide whether a stored value is worth sending at all.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)

# Refresh this long before the advertised expiry.
EXPIRY_BUFFER_SECONDS = 5 * 60

MIN_TOKEN_LENGTH = 10
MIN_OPAQUE_TOKEN_LENGTH = 100


def is_expired(
    expires_at: float | None,
    now: float | None = None,
    buffer_seconds: float = EXPIRY_BUFFER_SECONDS,
) -> bool:
    """Check if a token is expired or about to expire.

    Args:
        expires_at: Unix timestamp of the token expiry, or None if unknown
        now: Current time, defaults to time.time()
        buffer_seconds: Safety margin before the advertised expiry

    Returns:
        True when the expiry is unknown or less than the buffer away
    """
    if expires_at is None:
        return True
    current = time.time() if now is None else now
    return expires_at - current < buffer_seconds


def is_valid_token_format(token: Any) -> bool:
    """Basic structural check for a Graph access token.

    Accepts JWTs (three non-empty dot-separated segments) and dot-free
    opaque tokens longer than 100 characters.
    """
    if not token or not isinstance(token, str):
        return False
    if len(token) < MIN_TOKEN_LENGTH:
        return False

    parts = token.split(".")
    if len(parts) == 3 and all(parts):
        return True
    if len(parts) == 1 and len(token) > MIN_OPAQUE_TOKEN_LENGTH:
        return True
    return False


def decode_jwt_claims(token: str | None) -> dict[str, Any] | None:
    """Decode a JWT payload without verifying its signature.

    Only used to read identity claims from ID tokens returned directly by
    the token endpoint over TLS.

    Returns:
        Decoded payload as a dictionary, or None if the token is not a JWT
    """
    if not token:
        return None

    parts = token.split(".")
    if len(parts) != 3:
        return None

    payload = parts[1]
    # JWT uses base64url without padding
    payload += "=" * (-len(payload) % 4)

    try:
        claims = json.loads(base64.urlsafe_b64decode(payload).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug(f"Could not decode JWT payload: {e}")
        return None

    return claims if isinstance(claims, dict) else None
