"""The gRPC server on which the sidecar receives requests from the controller."""

from __future__ import annotations

import logging
import threading
from concurrent import futures
from typing import Any, Protocol

import grpc

log = logging.getLogger(__name__)


class SidecarService(Protocol):
    """A service that can add its handlers to a gRPC server."""

    def register_service(self, server: Any) -> None:
        """Register the service's handlers with ``server``."""


class SidecarServer:
    """Serves the registered services over plain TCP.

    An empty IP address listens on all addresses.
    """

    def __init__(
        self, ip: str, port: str, *, max_workers: int = 10, stop_grace: float = 30.0
    ) -> None:
        self.scheme = "tcp"
        host = ip or "[::]"
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        self.endpoint = f"{host}:{port}"
        self.max_workers = max_workers
        self.stop_grace = stop_grace
        self.services: list[SidecarService] = []
        self.bound_port: int | None = None
        self._server: grpc.Server | None = None
        self._serving = threading.Event()

    def register_service(self, service: SidecarService) -> None:
        """Add a service; call before ``start``."""
        self.services.append(service)

    def start(self) -> None:
        """Create the server, register the services and serve until stopped."""
        server = grpc.server(futures.ThreadPoolExecutor(max_workers=self.max_workers))
        for service in self.services:
            service.register_service(server)

        try:
            port = server.add_insecure_port(self.endpoint)
        except RuntimeError as exc:
            raise RuntimeError(
                f"failed to listen on {self.endpoint} ({self.scheme}): {exc}"
            ) from exc
        if port == 0:
            raise RuntimeError(f"failed to listen on {self.endpoint} ({self.scheme})")

        self.bound_port = port
        self._server = server
        self._serve(server)

    def _serve(self, server: grpc.Server) -> None:
        log.info("Listening for CSI-Addons requests on address: %s", self.endpoint)
        server.start()
        self._serving.set()
        server.wait_for_termination()
        log.info("The CSI-Addons server at %r has been stopped", self.endpoint)

    def wait_until_serving(self, timeout: float | None = None) -> bool:
        """Block until the server accepts requests; False if ``timeout`` ran out."""
        return self._serving.wait(timeout)

    def stop(self) -> None:
        """Stop the server, letting running requests finish within the grace period."""
        if self._server is None:
            return
        self._server.stop(self.stop_grace).wait()