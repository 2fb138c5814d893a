"""MCP server over stdio exposing OneNote through Microsoft Graph."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

from onenote_mcp.auth.lifecycle import CredentialLifecycleManager
from onenote_mcp.auth.primitives.redaction import redact
from onenote_mcp.auth.services.broker import InteractiveAuthBroker
from onenote_mcp.auth.services.store import TokenStore
from onenote_mcp.auth.services.tokens import OAuth2TokenManager
from onenote_mcp.config import Settings
from onenote_mcp.resilience.executor import ResilientExecutor, RetryPolicy
from onenote_mcp.tools.manager import ToolManager
from onenote_mcp.tools.onenote import OneNoteTools
from onenote_mcp.transport.stdio import StdioServerTransport

logger = logging.getLogger(__name__)

SERVER_NAME = "onenote-mcp"
SERVER_VERSION = "0.1.0"
PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", PROTOCOL_VERSION)

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

INSTRUCTIONS = (
    "Tools for reading and editing Microsoft OneNote notebooks. The first call "
    "may open a browser window for Microsoft sign-in."
)


@dataclass
class ServerInfo:
    name: str = SERVER_NAME
    version: str = SERVER_VERSION
    instructions: str | None = INSTRUCTIONS


class OneNoteServer:
    """Dispatches JSON-RPC requests from the transport to the tool manager.

    Requests run as independent tasks so a tool call waiting on a browser
    sign-in does not block pings or other calls.
    """

    def __init__(
        self,
        transport: StdioServerTransport,
        tools: ToolManager,
        lifecycle: CredentialLifecycleManager | None = None,
        info: ServerInfo | None = None,
    ):
        self.transport = transport
        self.tools = tools
        self.info = info or ServerInfo()
        self._lifecycle = lifecycle
        self._tasks: set[asyncio.Task] = set()
        self.initialized = False

    async def serve(self) -> None:
        """Process messages until stdin closes, then finish in-flight requests."""
        try:
            async for message in self.transport.messages():
                task = asyncio.create_task(self._process(message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            if self._lifecycle is not None:
                await self._lifecycle.close()

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Handle one JSON-RPC message.

        Returns:
            The response to send, or None for notifications and responses
        """
        method = message.get("method")
        request_id = message.get("id")
        is_notification = "id" not in message

        if not isinstance(method, str):
            if "result" in message or "error" in message:
                return None  # We never send requests, so ignore stray responses.
            return _error(request_id, INVALID_REQUEST, "Invalid request")

        if is_notification:
            await self._handle_notification(method, message.get("params") or {})
            return None

        params = message.get("params") or {}
        if not isinstance(params, dict):
            return _error(request_id, INVALID_PARAMS, "params must be an object")

        try:
            if method == "initialize":
                result = self._handle_initialize(params)
            elif method == "ping":
                result = {}
            elif method == "tools/list":
                result = {"tools": [tool.to_protocol() for tool in self.tools.list_tools()]}
            elif method == "tools/call":
                return await self._handle_call_tool(request_id, params)
            else:
                return _error(request_id, METHOD_NOT_FOUND, f"Unknown method: {method}")
        except Exception as e:
            logger.exception(f"Error handling {method}: {redact(e)}")
            return _error(request_id, INTERNAL_ERROR, "Internal error")

        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    # ================================
    # Handlers
    # ================================

    def _handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else PROTOCOL_VERSION
        client_info = params.get("clientInfo") or {}
        logger.info(
            f"Initialize from {client_info.get('name', 'unknown client')} "
            f"(protocol {requested}, answering {version})"
        )

        result: dict[str, Any] = {
            "protocolVersion": version,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": self.info.name, "version": self.info.version},
        }
        if self.info.instructions:
            result["instructions"] = self.info.instructions
        return result

    async def _handle_notification(self, method: str, params: dict[str, Any]) -> None:
        if method == "notifications/initialized":
            self.initialized = True
            logger.info("Client initialized")
        elif method == "notifications/cancelled":
            logger.debug(f"Client cancelled request {params.get('requestId')}")
        else:
            logger.debug(f"Ignoring notification {method}")

    async def _handle_call_tool(
        self, request_id: Any, params: dict[str, Any]
    ) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str):
            return _error(request_id, INVALID_PARAMS, "Tool name is required")
        if not isinstance(arguments, dict):
            return _error(request_id, INVALID_PARAMS, "Tool arguments must be an object")

        try:
            result = await self.tools.call(name, arguments)
        except KeyError:
            return _error(request_id, METHOD_NOT_FOUND, f"Unknown tool: {name}")
        return {"jsonrpc": "2.0", "id": request_id, "result": result.to_protocol()}

    async def _process(self, message: dict[str, Any]) -> None:
        response = await self.handle_message(message)
        if response is None:
            return
        try:
            await self.transport.send(response)
        except (ValueError, ConnectionError) as e:
            logger.error(f"Failed to send response: {redact(e)}")


def _error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def build_server(
    settings: Settings, transport: StdioServerTransport | None = None
) -> OneNoteServer:
    """Wire the credential lifecycle, executor and tools into a server."""
    token_store = TokenStore(service_name=settings.keyring_service)
    token_manager = OAuth2TokenManager(timeout=settings.http_timeout)
    broker = InteractiveAuthBroker(settings, token_store, token_manager)
    lifecycle = CredentialLifecycleManager(settings, token_store, token_manager, broker)
    executor = ResilientExecutor(
        RetryPolicy(
            min_spacing_ms=settings.min_spacing_ms,
            max_delay_ms=settings.max_delay_ms,
            max_retries=settings.max_retries,
        )
    )

    tools = ToolManager()
    OneNoteTools(lifecycle, executor).register(tools)
    return OneNoteServer(transport or StdioServerTransport(), tools, lifecycle)


def configure_logging() -> None:
    """Send logs to stderr; stdout carries protocol messages."""
    level_name = os.getenv("ONENOTE_MCP_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    load_dotenv()
    configure_logging()
    settings = Settings.from_env(load_env_file=False)
    server = build_server(settings)
    logger.info(f"Starting {SERVER_NAME} {SERVER_VERSION} on stdio")
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
