"""Transient local HTTP listener that receives the OAuth redirect."""

from __future__ import annotations

import asyncio
import contextlib
import errno
import socket
from html import escape

import uvicorn
from loguru import logger
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse
from starlette.routing import Route

from .oauth_handler import OAuthHandler

CALLBACK_PATH = "/auth-success"

_MESSAGES = {
    "en": {
        "success": "Authentication was successful. Please close this window and continue.",
        "failure": "Authentication failed: {reason}",
    },
    "ja": {
        "success": "認証が成功しました。このウィンドウを閉じて、作業を続けてください。",
        "failure": "認証に失敗しました: {reason}",
    },
}


class CallbackPortInUseError(RuntimeError):
    """Raised when another process already listens on the callback port."""


def bind_callback_socket(host: str, port: int) -> socket.socket:
    try:
        return socket.create_server((host, port))
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            raise CallbackPortInUseError(f"Port {port} is already in use") from exc
        raise


def _page(request: Request, key: str, status_code: int = 200, **fields: str) -> HTMLResponse:
    lang = "ja" if "ja" in request.headers.get("accept-language", "") else "en"
    text = _MESSAGES[lang][key].format(**{k: escape(v) for k, v in fields.items()})
    return HTMLResponse(
        f'<html lang="{lang}"><body><h3>{text}</h3></body></html>',
        status_code=status_code,
    )


def create_callback_app(handler: OAuthHandler) -> Starlette:
    async def auth_success(request: Request) -> HTMLResponse:
        params = request.query_params
        if "error" in params:
            logger.warning(f"Authorization was declined: {params['error']}")
            return _page(request, "failure", 400, reason=params["error"])

        code, state = params.get("code"), params.get("state")
        if not code or not state:
            return _page(request, "failure", 400, reason="missing code or state")

        result = await handler.exchange_code_for_tokens(code, state)
        if not result.success:
            return _page(request, "failure", 400, reason=result.message)
        return _page(request, "success")

    return Starlette(routes=[Route(CALLBACK_PATH, auth_success, methods=["GET"])])


class _ListenerServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host application."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CallbackListener:
    """Starts and stops the OAuth callback endpoint on demand."""

    def __init__(self, handler: OAuthHandler, host: str, port: int) -> None:
        self._app = create_callback_app(handler)
        self._host = host
        self._port = port
        self._server: _ListenerServer | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self._shutdown: asyncio.Task[None] | None = None

    @property
    def redirect_uri(self) -> str:
        return f"http://{self._host}:{self._port}{CALLBACK_PATH}"

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    async def start(self) -> bool:
        """
        Bind the callback port and serve until :meth:`stop`.

        Returns:
            True when this listener owns the port, False when another process
            already listens on it and is assumed to handle the callback.
        """
        if self.is_running:
            return True
        await self._wait_for_shutdown()

        try:
            sock = bind_callback_socket(self._host, self._port)
        except CallbackPortInUseError:
            logger.info(
                f"Port {self._port} is already in use, assuming OAuth server is already running"
            )
            return False

        config = uvicorn.Config(self._app, log_level="warning", lifespan="off")
        server = _ListenerServer(config)
        task = asyncio.get_running_loop().create_task(server.serve(sockets=[sock]))
        self._server, self._serve_task, self._socket = server, task, sock

        while not server.started:
            if task.done():
                if self._server is not server:
                    # Stopped by a newer session before startup finished.
                    return False
                await self.stop()
                raise RuntimeError(f"OAuth server failed to start on {self._host}:{self._port}")
            await asyncio.sleep(0.01)

        logger.info(f"OAuth server started on {self._host}:{self._port}")
        return True

    async def stop(self) -> None:
        """Shut the server down and wait until the port is released."""
        server, task, sock = self._server, self._serve_task, self._socket
        self._server = self._serve_task = self._socket = None
        if server is not None and task is not None:
            logger.info("Shutting down OAuth server")
            self._shutdown = asyncio.get_running_loop().create_task(
                self._close(server, task, sock)
            )
        await self._wait_for_shutdown()

    async def _wait_for_shutdown(self) -> None:
        shutdown = self._shutdown
        if shutdown is None:
            return
        # Shutdown runs to completion even when the caller is cancelled.
        await asyncio.shield(shutdown)
        if self._shutdown is shutdown:
            self._shutdown = None

    async def _close(
        self, server: _ListenerServer, task: asyncio.Task[None], sock: socket.socket | None
    ) -> None:
        server.should_exit = True
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"OAuth server exited with an error: {exc}")
        finally:
            if sock is not None:
                sock.close()
        logger.info("OAuth server has been shut down")
