"""In-process uvicorn listener for the tunnel proxy."""

import asyncio
import contextlib
import logging
import socket
from collections.abc import Iterator

import uvicorn
from fastapi import FastAPI

from tunnelgate.core.config import settings
from tunnelgate.core.exceptions import ConfigurationError
from tunnelgate.proxy.app import create_proxy_app
from tunnelgate.services.route_registry import RouteRegistry

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:  # uvicorn < 0.29
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:  # uvicorn >= 0.29
        yield


class ProxyServer:
    """Runs the proxy app on a fixed local port inside the current event loop.

    The socket is bound before uvicorn starts so a busy port surfaces as a
    ConfigurationError instead of uvicorn exiting the process.
    """

    def __init__(self, app: FastAPI, host: str | None = None, port: int | None = None):
        self.app = app
        self.host = host or settings.proxy_host
        self.port = port if port is not None else settings.proxy_port
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None
        self._socket: socket.socket | None = None

    @property
    def is_running(self) -> bool:
        return (
            self._server is not None
            and self._task is not None
            and not self._task.done()
            and self._server.started
        )

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise ConfigurationError(
                f"Proxy port {self.port} on {self.host} is unavailable: {e}"
            ) from e
        sock.listen(128)
        sock.setblocking(False)
        return sock

    async def start(self) -> None:
        if self.is_running:
            return

        self._socket = self._bind()
        config = uvicorn.Config(self.app, log_config=None, lifespan="on")
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self._socket]))

        while not self._server.started:
            if self._task.done():
                self._close_socket()
                exc = self._task.exception()
                raise ConfigurationError(f"Proxy server failed to start: {exc}")
            await asyncio.sleep(0.05)

        logger.info(f"Tunnel proxy listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return

        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=settings.stop_timeout)
        except TimeoutError:
            self._server.force_exit = True
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        finally:
            self._close_socket()
            self._server = None
            self._task = None
        logger.info("Tunnel proxy stopped")

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None


def build_proxy_server(host: str | None = None, port: int | None = None) -> ProxyServer:
    """Discover plugin routes and wrap the resulting proxy app in a server.

    Raises:
        ConfigurationError: If two plugins declare the same path prefix.
    """
    registry = RouteRegistry(settings.plugins_path, settings.auth_path)
    mappings, api_keys = registry.load()
    app = create_proxy_app(mappings, api_keys)
    return ProxyServer(app, host=host, port=port)
