"""Network fence service of the sidecar."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import grpc

from csiaddons.errors import StatusError
from csiaddons.kube import KubeClient, get_secret

log = logging.getLogger(__name__)

SERVICE_NAME = "proto.NetworkFence"


@dataclass
class NetworkFenceRequest:
    """A request from the controller to fence or unfence CIDR blocks."""

    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""
    cidrs: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> NetworkFenceRequest:
        return cls(
            parameters=dict(data.get("parameters") or {}),
            secret_name=data.get("secret_name", ""),
            secret_namespace=data.get("secret_namespace", ""),
            cidrs=list(data.get("cidrs") or []),
        )


@dataclass
class NetworkFenceResponse:
    """Result of a fence or unfence request."""


@dataclass(frozen=True)
class CIDR:
    cidr: str


@dataclass
class FenceClusterNetworkRequest:
    parameters: dict[str, str] = field(default_factory=dict)
    cidrs: list[CIDR] = field(default_factory=list)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class UnfenceClusterNetworkRequest:
    parameters: dict[str, str] = field(default_factory=dict)
    cidrs: list[CIDR] = field(default_factory=list)
    secrets: dict[str, str] = field(default_factory=dict)


class FenceControllerStub(Protocol):
    """The driver's fence calls; each takes a timeout in seconds."""

    def fence_cluster_network(
        self, request: FenceClusterNetworkRequest, *, timeout: float | None
    ) -> Any: ...

    def unfence_cluster_network(
        self, request: UnfenceClusterNetworkRequest, *, timeout: float | None
    ) -> Any: ...


def _deadline(context: Any) -> float | None:
    if context is None:
        return None
    return context.time_remaining()


def _decode(data: bytes) -> NetworkFenceRequest:
    message = json.loads(data) if data else {}
    if not isinstance(message, dict):
        raise ValueError("message must be a JSON object")
    return NetworkFenceRequest.from_dict(message)


def _encode(message: NetworkFenceResponse) -> bytes:
    return json.dumps(asdict(message)).encode()


def _abort_on_error(fn: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
    def call(request: Any, context: Any) -> Any:
        try:
            return fn(request, context)
        except StatusError as exc:
            context.abort(exc.code, exc.message)
        except grpc.RpcError as exc:
            code = getattr(exc, "code", None)
            details = getattr(exc, "details", None)
            if callable(code) and callable(details):
                context.abort(code(), details() or "")
            raise

    return call


def _cidrs(blocks: Iterable[str]) -> list[CIDR]:
    return [CIDR(cidr=block) for block in blocks]


class NetworkFenceServer:
    """Fences cluster networks through the CSI driver, using secrets from the cluster."""

    def __init__(self, controller_client: FenceControllerStub, kube_client: KubeClient) -> None:
        self.controller_client = controller_client
        self.kube_client = kube_client

    def register_service(self, server: Any) -> None:
        """Add the network fence handlers to a gRPC server."""
        methods = {
            "FenceClusterNetwork": self.fence_cluster_network,
            "UnFenceClusterNetwork": self.unfence_cluster_network,
        }
        handlers = {
            name: grpc.unary_unary_rpc_method_handler(
                _abort_on_error(fn),
                request_deserializer=_decode,
                response_serializer=_encode,
            )
            for name, fn in methods.items()
        }
        server.add_generic_rpc_handlers(
            (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
        )

    def _secrets(self, request: NetworkFenceRequest) -> dict[str, str]:
        try:
            return get_secret(
                self.kube_client, request.secret_name, request.secret_namespace
            )
        except Exception as exc:
            log.error(
                "Failed to get secret %s in namespace %s: %s",
                request.secret_name, request.secret_namespace, exc,
            )
            raise StatusError(grpc.StatusCode.INVALID_ARGUMENT, str(exc)) from exc

    def fence_cluster_network(
        self, request: NetworkFenceRequest, context: Any
    ) -> NetworkFenceResponse:
        """Fence the request's CIDR blocks."""
        data = self._secrets(request)
        fence_request = FenceClusterNetworkRequest(
            parameters=dict(request.parameters),
            cidrs=_cidrs(request.cidrs),
            secrets=data,
        )
        try:
            self.controller_client.fence_cluster_network(
                fence_request, timeout=_deadline(context)
            )
        except Exception as exc:
            log.error("Failed to fence cluster network: %s", exc)
            raise
        return NetworkFenceResponse()

    def unfence_cluster_network(
        self, request: NetworkFenceRequest, context: Any
    ) -> NetworkFenceResponse:
        """Lift the fence from the request's CIDR blocks."""
        data = self._secrets(request)
        fence_request = UnfenceClusterNetworkRequest(
            parameters=dict(request.parameters),
            cidrs=_cidrs(request.cidrs),
            secrets=data,
        )
        try:
            self.controller_client.unfence_cluster_network(
                fence_request, timeout=_deadline(context)
            )
        except Exception as exc:
            log.error("Failed to unfence cluster network: %s", exc)
            raise
        return NetworkFenceResponse()