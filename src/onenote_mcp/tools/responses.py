"""Shape tool outcomes into CallToolResult payloads.

Success payloads are the Graph JSON, serialized. Failures carry a safe,
redacted message plus whatever helps the LLM recover: HTTP status, Graph
error code, and a suggestion keyed off the failure type.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from onenote_mcp.auth.models.errors import (
    AuthorizationError,
    AuthorizationTimeoutError,
    CallbackListenerError,
    OAuth2Error,
)
from onenote_mcp.auth.primitives.redaction import redact
from onenote_mcp.graph.client import GraphApiError
from onenote_mcp.tools.models import CallToolResult, TextContent
from onenote_mcp.tools.validation import InvalidArgumentError

logger = logging.getLogger(__name__)

SAFE_CONTEXT_KEYS = (
    "notebookId",
    "sectionId",
    "pageId",
    "sectionGroupId",
    "resourceType",
    "query",
)


def success_result(data: Any) -> CallToolResult:
    return CallToolResult(content=[TextContent(text=json.dumps(data))])


def error_result(
    operation: str,
    error: BaseException,
    context: dict[str, Any] | None = None,
) -> CallToolResult:
    """Build an is_error result describing a failed tool call.

    Args:
        operation: Human-readable operation name, e.g. "Get page"
        error: The exception that ended the call
        context: Identifiers involved; only non-sensitive keys are echoed

    Returns:
        CallToolResult: JSON error payload with is_error set
    """
    message = safe_error_message(operation, error)
    logger.error(f"[{operation}] {type(error).__name__}: {redact(error)}")

    payload: dict[str, Any] = {
        "error": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if isinstance(error, GraphApiError):
        if error.code:
            payload["errorCode"] = error.code
        if error.status_code:
            payload["httpStatus"] = error.status_code
    elif isinstance(error, AuthorizationError) and error.error_code:
        payload["errorCode"] = error.error_code

    suggestion = _suggestion(message, error, context or {})
    if suggestion:
        payload["suggestion"] = suggestion

    safe_context = {
        key: (context or {})[key]
        for key in SAFE_CONTEXT_KEYS
        if (context or {}).get(key) is not None
    }
    if safe_context:
        payload["context"] = safe_context

    return CallToolResult(content=[TextContent(text=json.dumps(payload))], is_error=True)


def safe_error_message(operation: str, error: BaseException) -> str:
    """Describe a failure without leaking internals or credentials."""
    if isinstance(error, InvalidArgumentError):
        return f"{operation}: {error}"
    if isinstance(error, AuthorizationTimeoutError):
        return f"{operation}: {error}"
    if isinstance(error, AuthorizationError):
        return f"{operation}: Authentication failed: {redact(error)}"
    if isinstance(error, CallbackListenerError):
        return f"{operation}: Could not start sign-in: {redact(error)}"
    if isinstance(error, OAuth2Error):
        return f"{operation}: Authentication required"

    if isinstance(error, GraphApiError):
        status = error.status_code
        if status == 401:
            return f"{operation}: Authentication required"
        if status == 403:
            return f"{operation}: Access denied"
        if status == 404:
            return f"{operation}: Resource not found"
        if status == 429:
            return f"{operation}: Rate limit exceeded, please try again later"
        if status is not None and status >= 500:
            return f"{operation}: Service temporarily unavailable"
        if error.code == "NetworkError":
            return f"{operation}: Network error reaching Microsoft Graph"
        return f"{operation}: {redact(error)}"

    return f"{operation}: Operation failed. Please try again."


def _suggestion(
    message: str, error: BaseException, context: dict[str, Any]
) -> str | None:
    code = ""
    if isinstance(error, GraphApiError) and error.code:
        code = error.code.lower()
    msg = message.lower()

    if isinstance(error, InvalidArgumentError):
        return f"Check the {error.argument} argument and try again."
    if "timed out" in msg and isinstance(error, AuthorizationTimeoutError):
        return "Call the tool again and complete the sign-in in the browser window."
    if "authentication" in msg or "sign-in" in msg or "auth" in code:
        return "Try running the authentication flow again or check if your token has expired."
    if "not found" in msg or code in ("itemnotfound", "resourcenotfound"):
        resource_type = context.get("resourceType") or "resource"
        return f"Verify the {resource_type} ID is correct. Use the list operation to find valid IDs."
    if "rate limit" in msg:
        return "Wait a few seconds before retrying the request."
    if "permission" in msg or "access denied" in msg:
        return "Check that your account has access to this OneNote resource."
    if "network" in msg or "connection" in msg:
        return "Check your internet connection and try again."
    if "read-only" in msg or "locked" in msg:
        return "This resource is read-only or locked. Try a different notebook or section."
    if context.get("sectionId") and "section" in msg:
        return "Use listSections to find valid section IDs, or create a new section first."
    if context.get("notebookId") and "notebook" in msg:
        return "Use listNotebooks to find valid notebook IDs."
    return None
