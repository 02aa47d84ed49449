"""
HTTP server for the policy query API.

Runs the FastAPI app under uvicorn on a socket bound up front, so that a
bind failure surfaces as ServerError instead of terminating the process.
"""

from __future__ import annotations

import logging
import socket
from typing import Any

import uvicorn

from dnsmesh.errors import ServerError

logger = logging.getLogger(__name__)


class PolicyQueryServer:
    """
    uvicorn server wrapper with the query service's timeouts.

    Idle keep-alive connections are closed after idle_timeout; on stop,
    in-flight requests get shutdown_timeout seconds before connections
    are closed.
    """

    def __init__(
        self,
        app: Any,
        host: str = "0.0.0.0",
        port: int = 8080,
        idle_timeout: float = 60.0,
        shutdown_timeout: float = 5.0,
        log_level: str = "info",
    ) -> None:
        self.app = app
        self.host = host
        self.port = port
        self.idle_timeout = idle_timeout
        self.shutdown_timeout = shutdown_timeout
        self.log_level = log_level

        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._stopping = False

    def bind(self) -> socket.socket:
        """
        Bind and listen on the configured address.

        Raises:
            ServerError: If the address cannot be bound
        """
        if self._socket is not None:
            return self._socket

        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(128)
        except OSError as e:
            sock.close()
            raise ServerError(f"Failed to bind {self.host}:{self.port}: {e}") from e

        sock.setblocking(False)
        self._socket = sock
        logger.info("Policy query API listening on %s:%s", self.host, self.bound_port)
        return sock

    @property
    def bound_port(self) -> int | None:
        """Actual listening port (useful when port 0 was requested)."""
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    @property
    def started(self) -> bool:
        return self._server is not None and self._server.started

    async def serve(self) -> None:
        """
        Serve until stop() is called.

        Raises:
            ServerError: If binding or serving fails
        """
        sock = self.bind()
        config = uvicorn.Config(
            app=self.app,
            log_level=self.log_level,
            access_log=False,
            timeout_keep_alive=max(1, int(self.idle_timeout)),
            timeout_graceful_shutdown=max(1, int(self.shutdown_timeout)),
        )
        self._server = uvicorn.Server(config)
        # stop() may have been called before the task got scheduled
        self._server.should_exit = self._stopping
        try:
            await self._server.serve(sockets=[sock])
        except OSError as e:
            raise ServerError(f"Policy query API failed: {e}") from e
        finally:
            sock.close()
            self._socket = None
        logger.info("Policy query API stopped")

    def stop(self) -> None:
        """Ask the server to shut down gracefully."""
        self._stopping = True
        if self._server is not None:
            self._server.should_exit = True
