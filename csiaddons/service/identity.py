"""Identity service of the sidecar, answered by the CSI driver."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any, Protocol

import grpc

from csiaddons.errors import StatusError

SERVICE_NAME = "identity.Identity"


class IdentityForwarder(Protocol):
    """The driver's identity calls; each takes the request and a timeout in seconds."""

    def get_identity(self, request: dict, *, timeout: float | None) -> dict: ...

    def get_capabilities(self, request: dict, *, timeout: float | None) -> dict: ...

    def probe(self, request: dict, *, timeout: float | None) -> dict: ...


def _deadline(context: Any) -> float | None:
    if context is None:
        return None
    return context.time_remaining()


def _decode(data: bytes) -> dict:
    message = json.loads(data) if data else {}
    if not isinstance(message, dict):
        raise ValueError("message must be a JSON object")
    return message


def _encode(message: dict) -> bytes:
    return json.dumps(message).encode()


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


class IdentityServer:
    """Answers identity requests by asking the CSI driver."""

    def __init__(self, identity_client: IdentityForwarder) -> None:
        self.identity_client = identity_client

    def register_service(self, server: Any) -> None:
        """Add the identity handlers to a gRPC server."""
        methods = {
            "GetIdentity": self.get_identity,
            "GetCapabilities": self.get_capabilities,
            "Probe": self.probe,
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

    def get_identity(self, request: dict, context: Any) -> dict:
        """Return the identity of the driver."""
        return self.identity_client.get_identity(request, timeout=_deadline(context))

    def get_capabilities(self, request: dict, context: Any) -> dict:
        """Return the capabilities of the driver."""
        return self.identity_client.get_capabilities(
            request, timeout=_deadline(context)
        )

    def probe(self, request: dict, context: Any) -> dict:
        """Report whether the driver is still healthy."""
        return self.identity_client.probe(request, timeout=_deadline(context))