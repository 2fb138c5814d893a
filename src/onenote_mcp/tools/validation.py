"""Argument validation and sanitizing for tool inputs."""

from __future__ import annotations

import re

MAX_ID_LENGTH = 500
MAX_SEARCH_LENGTH = 200
MAX_TITLE_LENGTH = 200

# Null bytes and control characters, keeping tab, newline and carriage return.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# URL-safe characters OneNote uses in entity ids.
_ID_RE = re.compile(r"^[a-zA-Z0-9\-_!.~'()*%]+$")

_SCRIPT_BLOCK_RE = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_SCRIPT_SELF_CLOSING_RE = re.compile(r"<script[^>]*/>", re.IGNORECASE)
_EVENT_HANDLER_RES = (
    re.compile(r"\s+on\w+\s*=\s*\"[^\"]*\"", re.IGNORECASE),
    re.compile(r"\s+on\w+\s*=\s*'[^']*'", re.IGNORECASE),
    re.compile(r"\s+on\w+\s*=\s*[^\s>]+", re.IGNORECASE),
)


class InvalidArgumentError(ValueError):
    """A tool argument failed validation.

    Attributes:
        argument: Name of the offending argument
    """

    def __init__(self, argument: str, message: str):
        super().__init__(message)
        self.argument = argument


def sanitize_string(value: object) -> str:
    """Strip control characters; non-strings become an empty string."""
    if not isinstance(value, str):
        return ""
    return _CONTROL_CHARS_RE.sub("", value)


def validate_id(value: object, argument: str = "id") -> str:
    """Return a sanitized OneNote entity id.

    Args:
        value: Raw argument value
        argument: Argument name used in error messages

    Raises:
        InvalidArgumentError: Missing, empty, too long, or containing
            characters outside the id alphabet
    """
    if not value or not isinstance(value, str):
        raise InvalidArgumentError(argument, f"{argument} is required")

    sanitized = sanitize_string(value).strip()
    if not sanitized:
        raise InvalidArgumentError(argument, f"{argument} cannot be empty")
    if len(sanitized) > MAX_ID_LENGTH:
        raise InvalidArgumentError(
            argument, f"{argument} exceeds maximum length of {MAX_ID_LENGTH}"
        )
    if not _ID_RE.match(sanitized):
        raise InvalidArgumentError(argument, f"{argument} contains invalid characters")
    return sanitized


def validate_optional_id(value: object, argument: str) -> str | None:
    if value is None or value == "":
        return None
    return validate_id(value, argument)


def validate_search_term(value: object, argument: str = "query") -> str:
    """Return a sanitized search term. An absent term is the empty string."""
    if not value or not isinstance(value, str):
        return ""

    sanitized = sanitize_string(value).strip()
    if len(sanitized) > MAX_SEARCH_LENGTH:
        raise InvalidArgumentError(
            argument, f"{argument} exceeds maximum length of {MAX_SEARCH_LENGTH}"
        )
    return sanitized


def validate_title(value: object, argument: str = "title") -> str:
    if not value or not isinstance(value, str):
        raise InvalidArgumentError(argument, f"{argument} is required")

    sanitized = sanitize_string(value).strip()
    if not sanitized:
        raise InvalidArgumentError(argument, f"{argument} cannot be empty")
    if len(sanitized) > MAX_TITLE_LENGTH:
        raise InvalidArgumentError(
            argument, f"{argument} exceeds maximum length of {MAX_TITLE_LENGTH}"
        )
    return sanitized


def validate_limit(value: object, argument: str = "limit") -> int | None:
    """Return a positive result limit, or None for no limit."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(argument, f"{argument} must be an integer")
    return value if value > 0 else None


def sanitize_html_content(html: object) -> str:
    """Remove script elements and inline event handlers from page HTML."""
    if not html or not isinstance(html, str):
        return ""

    sanitized = _SCRIPT_BLOCK_RE.sub("", html)
    sanitized = _SCRIPT_SELF_CLOSING_RE.sub("", sanitized)
    for pattern in _EVENT_HANDLER_RES:
        sanitized = pattern.sub("", sanitized)
    return sanitized
