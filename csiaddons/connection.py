"""Connections from the controller to sidecars and a pool that holds them."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

import grpc

DEFAULT_TIMEOUT = timedelta(minutes=1)


class IdentityClient(Protocol):
    """The part of the CSI-Addons identity service a connection needs."""

    def get_capabilities(self, *, timeout: float) -> Sequence[Any]:
        """Return the capabilities advertised by the driver."""


@dataclass
class Connection:
    """A gRPC channel to one sidecar and what is known about its driver."""

    client: Any = None
    capabilities: list[Any] = field(default_factory=list)
    node_id: str = ""
    driver_name: str = ""
    timeout: timedelta = DEFAULT_TIMEOUT

    @classmethod
    def open(
        cls,
        endpoint: str,
        node_id: str,
        driver_name: str,
        identity_factory: Callable[[grpc.Channel], IdentityClient],
    ) -> Connection:
        """Dial ``endpoint`` without TLS and fetch the driver's capabilities."""
        channel = grpc.insecure_channel(endpoint)
        conn = cls(client=channel, node_id=node_id, driver_name=driver_name)
        try:
            conn.fetch_capabilities(identity_factory(channel))
        except BaseException:
            channel.close()
            raise
        return conn

    def close(self) -> None:
        """Close the underlying channel, if there is one."""
        if self.client is not None:
            self.client.close()

    def fetch_capabilities(self, identity_client: IdentityClient) -> None:
        """Ask the driver for its capabilities and remember them."""
        self.capabilities = list(
            identity_client.get_capabilities(timeout=self.timeout.total_seconds())
        )


class ConnectionPool:
    """A thread-safe mapping of keys to sidecar connections."""

    def __init__(self) -> None:
        self._pool: dict[str, Connection] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pool)

    def put(self, key: str, conn: Connection) -> None:
        """Store ``conn`` under ``key``, closing any connection it replaces."""
        with self._lock:
            old = self._pool.get(key)
            if old is not None:
                old.close()
            self._pool[key] = conn

    def delete(self, key: str) -> None:
        """Close and remove the connection under ``key``, if any."""
        with self._lock:
            conn = self._pool.pop(key, None)
            if conn is not None:
                conn.close()

    def _by_driver_name(self, driver_name: str) -> dict[str, Connection]:
        return {
            key: conn
            for key, conn in self._pool.items()
            if conn.driver_name == driver_name
        }

    def get_by_driver_name(self, driver_name: str) -> dict[str, Connection]:
        """Return a new mapping of the connections for ``driver_name``."""
        with self._lock:
            return self._by_driver_name(driver_name)

    def get_by_node_id(self, driver_name: str, node_id: str) -> dict[str, Connection]:
        """Return connections for ``driver_name``, limited to ``node_id`` if given."""
        with self._lock:
            return {
                key: conn
                for key, conn in self._by_driver_name(driver_name).items()
                if not node_id or conn.node_id == node_id
            }