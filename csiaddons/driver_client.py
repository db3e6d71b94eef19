"""Client for the identity service of the CSI driver next to the sidecar."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any, Protocol

import grpc

from csiaddons.errors import StatusError

log = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = timedelta(seconds=1)


class IdentityStub(Protocol):
    """The identity calls the sidecar makes; each takes a timeout in seconds."""

    def probe(self, *, timeout: float) -> bool | None:
        """Return the driver's readiness, or None when it does not say."""

    def get_identity(self, *, timeout: float) -> str:
        """Return the name of the driver."""


def _status_code(err: BaseException) -> grpc.StatusCode | None:
    if isinstance(err, StatusError):
        return err.code
    if isinstance(err, grpc.RpcError):
        code = getattr(err, "code", None)
        if callable(code):
            return code()
    return None


def _channel_target(address: str) -> str:
    if address.startswith("/"):
        return "unix:" + address
    return address


class DriverClient:
    """Talks to the CSI driver over its gRPC endpoint."""

    def __init__(
        self,
        identity: IdentityStub,
        timeout: timedelta,
        *,
        channel: Any = None,
        probe_interval: timedelta = DEFAULT_PROBE_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.identity = identity
        self.timeout = timeout
        self.channel = channel
        self.probe_interval = probe_interval
        self._sleep = sleep

    @classmethod
    def connect(
        cls,
        address: str,
        timeout: timedelta,
        identity_factory: Callable[[grpc.Channel], IdentityStub],
    ) -> DriverClient:
        """Open a channel to ``address`` (a socket path or target) and wrap it."""
        channel = grpc.insecure_channel(_channel_target(address))
        return cls(identity_factory(channel), timeout, channel=channel)

    @property
    def _seconds(self) -> float:
        return self.timeout.total_seconds()

    def probe(self) -> None:
        """Wait until the driver reports ready; errors other than timeouts raise."""
        while True:
            log.info("Probing CSI driver for readiness")
            try:
                ready = self.probe_once()
            except Exception as exc:
                if _status_code(exc) != grpc.StatusCode.DEADLINE_EXCEEDED:
                    raise RuntimeError(f"CSI driver probe failed: {exc}") from exc
                log.warning("CSI driver probe timed out")
            else:
                if ready:
                    return
                log.warning("CSI driver is not ready")
            self._sleep(self.probe_interval.total_seconds())

    def probe_once(self) -> bool:
        """Probe the driver once; a missing readiness value counts as ready."""
        ready = self.identity.probe(timeout=self._seconds)
        if ready is None:
            return True
        return bool(ready)

    def get_driver_name(self) -> str:
        """Return the name the driver reports for itself."""
        name = self.identity.get_identity(timeout=self._seconds)
        if not name:
            raise ValueError("driver name is empty")
        return name