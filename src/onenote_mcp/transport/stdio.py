import asyncio
import json
import logging
import sys
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)


def parse_json_message(line: str) -> dict[str, Any] | None:
    """Decode one stdin line into a JSON-RPC message.

    Args:
        line: Line as read from stdin, newline included

    Returns:
        The message object, or None when the line is not a JSON object
    """
    line = line.strip()
    if not line:
        return None

    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(message, dict):
        return None
    return message


def serialize_message(message: dict[str, Any]) -> str:
    """Encode a message as compact single-line JSON.

    Raises:
        ValueError: If the message is not JSON serializable
    """
    try:
        return json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize message to JSON: {e}") from e


class StdioServerTransport:
    """Newline-delimited JSON-RPC over stdin/stdout.

    The client launches us as a subprocess and owns our lifecycle; stdout
    carries protocol messages only, so logging goes to stderr.
    """

    def __init__(self, reader: asyncio.StreamReader | None = None) -> None:
        """
        Args:
            reader: Pre-connected reader; stdin is attached lazily otherwise
        """
        self._stdin_reader = reader

    async def _setup_stdin_reader(self) -> None:
        """Attach stdin to the running loop on first use."""
        if self._stdin_reader is not None:
            return

        self._stdin_reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(self._stdin_reader)
        await asyncio.get_running_loop().connect_read_pipe(lambda: protocol, sys.stdin)

    async def send(self, message: dict[str, Any]) -> None:
        """Write one message to stdout.

        Raises:
            ValueError: If message is invalid
            ConnectionError: If stdout is closed or write fails
        """
        json_str = serialize_message(message)
        try:
            print(json_str, file=sys.stdout, flush=True)
        except OSError as e:
            raise ConnectionError(f"Failed to send message: {e}") from e

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield parsed messages until stdin reaches EOF.

        Lines that are not JSON objects are logged and skipped.
        """
        await self._setup_stdin_reader()

        while True:
            try:
                line_bytes = await self._stdin_reader.readline()
            except (OSError, ValueError) as e:
                raise ConnectionError(f"Failed to read from stdin: {e}") from e

            if not line_bytes:
                logger.info("stdin closed")
                return

            line = line_bytes.decode("utf-8", errors="replace")
            message = parse_json_message(line)
            if message is None:
                if line.strip():
                    logger.warning(f"Invalid JSON received: {line.strip()[:200]}")
                continue
            yield message
