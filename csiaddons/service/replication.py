"""Volume replication service of the sidecar."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Protocol

import grpc

from csiaddons.errors import StatusError
from csiaddons.kube import KubeClient, get_secret
from csiaddons.replication_client import (
    DemoteVolumeRequest,
    DemoteVolumeResponse,
    DisableVolumeReplicationRequest,
    DisableVolumeReplicationResponse,
    EnableVolumeReplicationRequest,
    EnableVolumeReplicationResponse,
    GetVolumeReplicationInfoRequest,
    GetVolumeReplicationInfoResponse,
    PromoteVolumeRequest,
    PromoteVolumeResponse,
    ResyncVolumeRequest,
    ResyncVolumeResponse,
)

log = logging.getLogger(__name__)

SERVICE_NAME = "proto.Replication"


@dataclass
class DriverEnableVolumeReplicationRequest:
    volume_id: str = ""
    replication_id: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class DriverDisableVolumeReplicationRequest:
    volume_id: str = ""
    replication_id: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class DriverPromoteVolumeRequest:
    volume_id: str = ""
    replication_id: str = ""
    force: bool = False
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class DriverDemoteVolumeRequest:
    volume_id: str = ""
    replication_id: str = ""
    force: bool = False
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class DriverResyncVolumeRequest:
    volume_id: str = ""
    replication_id: str = ""
    force: bool = False
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class DriverGetVolumeReplicationInfoRequest:
    volume_id: str = ""
    replication_id: str = ""
    secrets: dict[str, str] = field(default_factory=dict)


class ReplicationControllerStub(Protocol):
    """The driver's replication calls; each takes a timeout in seconds."""

    def enable_volume_replication(
        self, request: DriverEnableVolumeReplicationRequest, *, timeout: float | None
    ) -> Any: ...

    def disable_volume_replication(
        self, request: DriverDisableVolumeReplicationRequest, *, timeout: float | None
    ) -> Any: ...

    def promote_volume(
        self, request: DriverPromoteVolumeRequest, *, timeout: float | None
    ) -> Any: ...

    def demote_volume(
        self, request: DriverDemoteVolumeRequest, *, timeout: float | None
    ) -> Any: ...

    def resync_volume(
        self, request: DriverResyncVolumeRequest, *, timeout: float | None
    ) -> Any: ...

    def get_volume_replication_info(
        self, request: DriverGetVolumeReplicationInfoRequest, *, timeout: float | None
    ) -> Any: ...


def _deadline(context: Any) -> float | None:
    if context is None:
        return None
    return context.time_remaining()


def _decoder(cls: type) -> Callable[[bytes], Any]:
    names = {f.name for f in fields(cls)}

    def decode(data: bytes) -> Any:
        message = json.loads(data) if data else {}
        if not isinstance(message, dict):
            raise ValueError("message must be a JSON object")
        return cls(
            **{k: v for k, v in message.items() if k in names and v is not None}
        )

    return decode


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    raise TypeError(f"cannot encode {type(value).__name__}")


def _encode(message: Any) -> bytes:
    return json.dumps(asdict(message), default=_json_default).encode()


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


class ReplicationServer:
    """Controls volume replication through the CSI driver, using secrets from the cluster."""

    def __init__(
        self, controller_client: ReplicationControllerStub, kube_client: KubeClient
    ) -> None:
        self.controller_client = controller_client
        self.kube_client = kube_client

    def register_service(self, server: Any) -> None:
        """Add the replication handlers to a gRPC server."""
        methods = {
            "EnableVolumeReplication": (
                self.enable_volume_replication, EnableVolumeReplicationRequest),
            "DisableVolumeReplication": (
                self.disable_volume_replication, DisableVolumeReplicationRequest),
            "PromoteVolume": (self.promote_volume, PromoteVolumeRequest),
            "DemoteVolume": (self.demote_volume, DemoteVolumeRequest),
            "ResyncVolume": (self.resync_volume, ResyncVolumeRequest),
            "GetVolumeReplicationInfo": (
                self.get_volume_replication_info, GetVolumeReplicationInfoRequest),
        }
        handlers = {
            name: grpc.unary_unary_rpc_method_handler(
                _abort_on_error(fn),
                request_deserializer=_decoder(request_cls),
                response_serializer=_encode,
            )
            for name, (fn, request_cls) in methods.items()
        }
        server.add_generic_rpc_handlers(
            (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
        )

    def _secrets(self, request: Any) -> dict[str, str]:
        try:
            return get_secret(
                self.kube_client, request.secret_name, request.secret_namespace
            )
        except Exception as exc:
            log.error(
                "Failed to get secret %s in namespace %s: %s",
                request.secret_name, request.secret_namespace, exc,
            )
            raise StatusError(grpc.StatusCode.INTERNAL, str(exc)) from exc

    @staticmethod
    def _forward(call: Callable[..., Any], request: Any, context: Any, action: str) -> Any:
        try:
            return call(request, timeout=_deadline(context))
        except Exception as exc:
            log.error("Failed to %s: %s", action, exc)
            raise

    def enable_volume_replication(
        self, request: EnableVolumeReplicationRequest, context: Any
    ) -> EnableVolumeReplicationResponse:
        """Enable replication of the requested volume."""
        data = self._secrets(request)
        self._forward(
            self.controller_client.enable_volume_replication,
            DriverEnableVolumeReplicationRequest(
                volume_id=request.volume_id,
                replication_id=request.replication_id,
                parameters=dict(request.parameters or {}),
                secrets=data,
            ),
            context,
            "enable volume replication",
        )
        return EnableVolumeReplicationResponse()

    def disable_volume_replication(
        self, request: DisableVolumeReplicationRequest, context: Any
    ) -> DisableVolumeReplicationResponse:
        """Disable replication of the requested volume."""
        data = self._secrets(request)
        self._forward(
            self.controller_client.disable_volume_replication,
            DriverDisableVolumeReplicationRequest(
                volume_id=request.volume_id,
                replication_id=request.replication_id,
                parameters=dict(request.parameters or {}),
                secrets=data,
            ),
            context,
            "disable volume replication",
        )
        return DisableVolumeReplicationResponse()

    def promote_volume(
        self, request: PromoteVolumeRequest, context: Any
    ) -> PromoteVolumeResponse:
        """Promote the requested volume to primary."""
        data = self._secrets(request)
        self._forward(
            self.controller_client.promote_volume,
            DriverPromoteVolumeRequest(
                volume_id=request.volume_id,
                replication_id=request.replication_id,
                force=request.force,
                parameters=dict(request.parameters or {}),
                secrets=data,
            ),
            context,
            "promote volume",
        )
        return PromoteVolumeResponse()

    def demote_volume(
        self, request: DemoteVolumeRequest, context: Any
    ) -> DemoteVolumeResponse:
        """Demote the requested volume to secondary."""
        data = self._secrets(request)
        self._forward(
            self.controller_client.demote_volume,
            DriverDemoteVolumeRequest(
                volume_id=request.volume_id,
                replication_id=request.replication_id,
                force=request.force,
                parameters=dict(request.parameters or {}),
                secrets=data,
            ),
            context,
            "demote volume",
        )
        return DemoteVolumeResponse()

    def resync_volume(
        self, request: ResyncVolumeRequest, context: Any
    ) -> ResyncVolumeResponse:
        """Resync the requested volume and report whether it is ready."""
        data = self._secrets(request)
        resp = self._forward(
            self.controller_client.resync_volume,
            DriverResyncVolumeRequest(
                volume_id=request.volume_id,
                replication_id=request.replication_id,
                force=request.force,
                parameters=dict(request.parameters or {}),
                secrets=data,
            ),
            context,
            "resync volume",
        )
        return ResyncVolumeResponse(ready=bool(getattr(resp, "ready", False)))

    def get_volume_replication_info(
        self, request: GetVolumeReplicationInfoRequest, context: Any
    ) -> GetVolumeReplicationInfoResponse:
        """Return the last synchronisation details of the requested volume."""
        data = self._secrets(request)
        resp = self._forward(
            self.controller_client.get_volume_replication_info,
            DriverGetVolumeReplicationInfoRequest(
                volume_id=request.volume_id,
                replication_id=request.replication_id,
                secrets=data,
            ),
            context,
            "get volume replication info",
        )
        last_sync_time = getattr(resp, "last_sync_time", None)
        if last_sync_time is None:
            log.error("Failed to get last sync time: %s", last_sync_time)
        return GetVolumeReplicationInfoResponse(
            last_sync_time=last_sync_time,
            last_sync_duration=getattr(resp, "last_sync_duration", None),
            last_sync_bytes=getattr(resp, "last_sync_bytes", 0) or 0,
        )