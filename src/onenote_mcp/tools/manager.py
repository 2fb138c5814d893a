"""Tool registry and dispatch."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from onenote_mcp.auth.primitives.redaction import redact
from onenote_mcp.tools.models import CallToolResult, TextContent, Tool

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[CallToolResult]]


class ToolManager:
    """Holds registered tools and routes calls to their handlers."""

    def __init__(self):
        self.registered: dict[str, Tool] = {}
        self.handlers: dict[str, ToolHandler] = {}

    def register(self, tool: Tool, handler: ToolHandler) -> None:
        """Register a tool with its handler function.

        Handlers should catch their own exceptions and return
        CallToolResult with is_error=True and a descriptive message.
        Uncaught exceptions become generic "Tool execution failed" results.

        Args:
            tool: Tool definition with name, description, and schema.
            handler: Async function receiving the call's arguments.
        """
        self.registered[tool.name] = tool
        self.handlers[tool.name] = handler

    def list_tools(self) -> list[Tool]:
        return list(self.registered.values())

    async def call(self, name: str, arguments: dict[str, Any] | None) -> CallToolResult:
        """Execute a tool call.

        Args:
            name: Registered tool name
            arguments: Tool arguments from the client

        Returns:
            CallToolResult: Tool output or execution error details

        Raises:
            KeyError: If the requested tool is not registered
        """
        handler = self.handlers[name]  # Can raise KeyError
        try:
            return await handler(arguments or {})
        except Exception as e:
            logger.exception(f"Tool {name} raised: {redact(e)}")
            return CallToolResult(
                content=[TextContent(text=f"Tool execution failed: {redact(e)}")],
                is_error=True,
            )
