"""Single-use local listener for the OAuth redirect.

The identity provider redirects the browser to `http://localhost:<port>/`
with either `code` or `error` in the query string. The listener turns the
first meaningful redirect (or the deadline) into exactly one terminal
event and then shuts down, releasing the fixed port for the next attempt.
"""

from __future__ import annotations

import asyncio
import html
import logging
import os
import socket
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from onenote_mcp.auth.models.errors import (
    AuthorizationError,
    AuthorizationTimeoutError,
    CallbackListenerError,
    OAuth2Error,
    TokenExchangeError,
)
from onenote_mcp.auth.models.tokens import Credential
from onenote_mcp.auth.primitives.redaction import redact

logger = logging.getLogger(__name__)

T = TypeVar("T")

CodeExchanger = Callable[[str], Awaitable[Credential]]

# Upper bound on waiting for uvicorn to stop accepting after the deadline.
_RELEASE_TIMEOUT_SECONDS = 2.0

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <title>{title}</title>
</head>
<body style="font-family: system-ui, -apple-system, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0;">
  <div style="text-align: center; padding: 50px; max-width: 400px;">
    <h1 style="color: {color}; margin: 0 0 15px 0; font-size: 28px;">{title}</h1>
    <p style="color: #666; margin: 0; font-size: 16px; line-height: 1.5;">{message}</p>
  </div>
</body>
</html>"""


def render_page(title: str, message: str, success: bool) -> str:
    return _PAGE_TEMPLATE.format(
        title=html.escape(title),
        message=html.escape(message),
        color="#107c10" if success else "#d13438",
    )


class OneShot(Generic[T]):
    """Completion that accepts exactly one outcome.

    The first call to `succeed` or `fail` wins; later calls return False
    and change nothing.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    def done(self) -> bool:
        return self._future.done()

    def succeed(self, value: T) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def fail(self, error: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True

    async def wait(self) -> T:
        return await self._future


class RedirectListener:
    """HTTP listener that captures one authorization redirect.

    Only requests to the redirect path carrying `code` or `error` affect
    the outcome. Everything else (favicon, probes, late duplicates) gets
    an empty 204.

    The code exchange runs in a task owned by the listener rather than in
    the request handler, so shutting the server down at the deadline never
    cancels an exchange that is already talking to the token endpoint.
    """

    def __init__(
        self,
        exchange_code: CodeExchanger,
        host: str = "127.0.0.1",
        port: int = 8400,
        redirect_path: str = "/",
    ):
        """Initialize the listener.

        Args:
            exchange_code: Coroutine turning an authorization code into a
                persisted Credential; awaited before the browser gets a reply
            host: Interface to bind
            port: Fixed redirect port
            redirect_path: Path of the registered redirect URI
        """
        self.host = host
        self.port = port
        self.redirect_path = redirect_path
        self._exchange_code = exchange_code

        self._completion: OneShot[Credential] = OneShot()
        self._exchanges: set[asyncio.Task] = set()
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self._closed = False

        self._app = Starlette(
            routes=[
                Route(
                    "/{path:path}",
                    self._handle_request,
                    methods=["GET", "POST", "HEAD"],
                )
            ]
        )

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Bind the port and start serving.

        Raises:
            CallbackListenerError: If the port is already in use
        """
        self._socket = _bind_socket(self.host, self.port)

        config = uvicorn.Config(
            app=self._app,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=5,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(
            self._server.serve(sockets=[self._socket])
        )

        while not self._server.started:
            if self._serve_task.done():
                self._socket.close()
                self._closed = True
                raise CallbackListenerError(
                    f"Redirect listener on port {self.port} failed to start"
                )
            await asyncio.sleep(0.01)

        logger.info(f"Redirect listener ready on http://{self.host}:{self.port}")

    async def wait(self, timeout: float) -> Credential:
        """Wait for the terminal event, then tear the listener down.

        Args:
            timeout: Seconds to wait for a redirect

        Returns:
            Credential: Result of the successful code exchange

        Raises:
            AuthorizationError: The provider redirected with an error
            AuthorizationTimeoutError: No redirect arrived in time
            TokenExchangeError: The code exchange failed
        """
        loop = asyncio.get_running_loop()
        deadline = loop.call_later(
            timeout, self._completion.fail, AuthorizationTimeoutError(timeout)
        )
        try:
            return await self._completion.wait()
        finally:
            deadline.cancel()
            await self.close()

    async def close(self) -> None:
        """Stop serving and release the port. Safe to call repeatedly.

        When an exchange is still in flight the port is released without
        waiting for its request to finish; the exchange keeps running.
        """
        if self._closed:
            return
        self._closed = True

        if self._server is None or self._serve_task is None:
            if self._socket is not None:
                self._socket.close()
            return

        self._server.should_exit = True
        if any(not task.done() for task in self._exchanges):
            self._server.force_exit = True
            await self._wait_until_not_serving()
        else:
            try:
                await self._serve_task
            except Exception as e:
                logger.warning(f"Redirect listener stopped with error: {e}")
            self._socket.close()

        logger.debug(f"Redirect listener on port {self.port} closed")

    async def wait_closed(self) -> None:
        """Wait for in-flight exchanges and the server task to finish."""
        await asyncio.gather(*self._exchanges, return_exceptions=True)
        if self._serve_task is not None:
            await asyncio.gather(self._serve_task, return_exceptions=True)

    async def _wait_until_not_serving(self) -> None:
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + _RELEASE_TIMEOUT_SECONDS
        while not self._serve_task.done():
            servers = self._server.servers
            if servers and not any(server.is_serving() for server in servers):
                return
            if loop.time() >= give_up_at:
                logger.warning(f"Redirect listener on port {self.port} is slow to stop")
                return
            await asyncio.sleep(0.01)

    async def _handle_request(self, request: Request) -> Response:
        if request.url.path != self.redirect_path:
            return Response(status_code=204)
        if self._completion.done() or self._exchanges:
            return Response(status_code=204)

        code = request.query_params.get("code")
        error = request.query_params.get("error")

        if error is not None:
            message = request.query_params.get("error_description") or error
            logger.error(f"Authentication error: {redact(message)}")
            self._completion.fail(AuthorizationError(message, error_code=error))
            return HTMLResponse(
                render_page("Authentication Failed", message, success=False),
                status_code=400,
            )

        if code:
            task = asyncio.create_task(self._run_exchange(code))
            self._exchanges.add(task)
            failure = await asyncio.shield(task)
            return _exchange_page(failure)

        return Response(status_code=204)

    async def _run_exchange(self, code: str) -> str | None:
        """Exchange the code and settle the completion.

        Returns:
            None on success, otherwise the redacted failure message
        """
        try:
            credential = await self._exchange_code(code)
        except Exception as e:
            error = (
                e
                if isinstance(e, OAuth2Error)
                else TokenExchangeError(f"Code exchange failed: {redact(e, [code])}")
            )
            message = redact(error, [code])
            logger.error(f"Failed to exchange code for token: {message}")
            self._completion.fail(error)
            return message

        if not self._completion.succeed(credential):
            logger.warning("Code exchange finished after the sign-in had already ended")
        return None


def _exchange_page(failure: str | None) -> HTMLResponse:
    if failure is None:
        return HTMLResponse(
            render_page(
                "Authentication Successful",
                "You can close this window and return to your application.",
                success=True,
            )
        )
    return HTMLResponse(
        render_page(
            "Authentication Failed",
            f"Error: {failure}. Please close this window and try again.",
            success=False,
        ),
        status_code=500,
    )


def _address_option(platform: str) -> int:
    # SO_REUSEADDR on Windows lets a second socket take a port in use.
    if platform == "nt":
        return socket.SO_EXCLUSIVEADDRUSE
    return socket.SO_REUSEADDR


def _bind_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, _address_option(os.name), 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise CallbackListenerError(
            f"Cannot listen on {host}:{port} for the OAuth redirect: {e}. "
            "Another sign-in may be in progress."
        ) from e
    sock.listen(16)
    sock.setblocking(False)
    return sock
