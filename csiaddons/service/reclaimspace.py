"""Reclaim space service of the sidecar."""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import posixpath
import re
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import grpc

from csiaddons.errors import StatusError
from csiaddons.kube import KubeClient, get_secret

log = logging.getLogger(__name__)

SERVICE_NAME = "proto.ReclaimSpace"
DEFAULT_STAGING_PATH = "/var/lib/kubelet/plugins/kubernetes.io/csi/"

# Kubernetes 1.24 encoded as major * 1000 + minor.
_HASHED_PATH_VERSION = 1024
_INTEGER = re.compile(r"[+-]?[0-9]+")


class AccessMode(enum.IntEnum):
    UNKNOWN = 0
    SINGLE_NODE_WRITER = 1
    SINGLE_NODE_READER_ONLY = 2
    MULTI_NODE_READER_ONLY = 3
    MULTI_NODE_SINGLE_WRITER = 4
    MULTI_NODE_MULTI_WRITER = 5
    SINGLE_NODE_SINGLE_WRITER = 6
    SINGLE_NODE_MULTI_WRITER = 7


class AccessType(enum.Enum):
    MOUNT = "mount"
    BLOCK = "block"


@dataclass
class VolumeCapability:
    access_mode: AccessMode
    access_type: AccessType = AccessType.MOUNT


@dataclass
class ReclaimSpaceRequest:
    """A request from the controller to reclaim space of a PersistentVolume."""

    pv_name: str = ""


@dataclass
class StorageConsumption:
    usage_bytes: int = 0


@dataclass
class ReclaimSpaceResponse:
    """Storage used before and after reclaiming, when the driver reports it."""

    pre_usage: StorageConsumption | None = None
    post_usage: StorageConsumption | None = None


@dataclass
class ControllerReclaimSpaceRequest:
    volume_id: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class NodeReclaimSpaceRequest:
    volume_id: str = ""
    volume_path: str = ""
    staging_target_path: str = ""
    volume_capability: VolumeCapability | None = None
    secrets: dict[str, str] = field(default_factory=dict)


class ReclaimSpaceControllerStub(Protocol):
    def controller_reclaim_space(
        self, request: ControllerReclaimSpaceRequest, *, timeout: float | None
    ) -> Any: ...


class ReclaimSpaceNodeStub(Protocol):
    def node_reclaim_space(
        self, request: NodeReclaimSpaceRequest, *, timeout: float | None
    ) -> Any: ...


def _deadline(context: Any) -> float | None:
    if context is None:
        return None
    return context.time_remaining()


def _decode(data: bytes) -> ReclaimSpaceRequest:
    message = json.loads(data) if data else {}
    if not isinstance(message, dict):
        raise ValueError("message must be a JSON object")
    return ReclaimSpaceRequest(pv_name=message.get("pv_name", ""))


def _encode(message: ReclaimSpaceResponse) -> bytes:
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


def _to_csi_access_mode(pv_access_modes: Iterable[str]) -> AccessMode:
    modes = set(pv_access_modes)
    if "ReadWriteOncePod" in modes:
        if len(modes) > 1:
            raise ValueError(
                "CSI does not support ReadWriteOncePod with other "
                "PersistentVolumeAccessModes"
            )
        return AccessMode.SINGLE_NODE_SINGLE_WRITER
    if "ReadWriteMany" in modes:
        return AccessMode.MULTI_NODE_MULTI_WRITER
    if "ReadOnlyMany" in modes and "ReadWriteOnce" in modes:
        raise ValueError(
            "CSI does not support ReadOnlyMany and ReadWriteOnce on the same "
            "PersistentVolume"
        )
    if "ReadOnlyMany" in modes:
        return AccessMode.MULTI_NODE_READER_ONLY
    if "ReadWriteOnce" in modes:
        return AccessMode.SINGLE_NODE_MULTI_WRITER
    raise ValueError(
        f"unsupported AccessMode found in PersistentVolume: {sorted(modes)}"
    )


def _join(*parts: str) -> str:
    return posixpath.normpath(posixpath.join(*(p for p in parts if p)))


def _usage(value: Any) -> StorageConsumption | None:
    if value is None:
        return None
    return StorageConsumption(usage_bytes=value.usage_bytes)


def _version_number(name: str, value: Any) -> int:
    text = str(value)
    if not _INTEGER.fullmatch(text):
        raise ValueError(
            f'failed to convert Kubernetes {name} version "{text}" to int: invalid syntax'
        )
    return int(text)


class ReclaimSpaceServer:
    """Reclaims space of PersistentVolumes through the CSI driver."""

    def __init__(
        self,
        controller_client: ReclaimSpaceControllerStub,
        node_client: ReclaimSpaceNodeStub,
        kube_client: KubeClient,
        staging_path: str = DEFAULT_STAGING_PATH,
    ) -> None:
        self.controller_client = controller_client
        self.node_client = node_client
        self.kube_client = kube_client
        self.staging_path = staging_path

    def register_service(self, server: Any) -> None:
        """Add the reclaim space handlers to a gRPC server."""
        methods = {
            "ControllerReclaimSpace": self.controller_reclaim_space,
            "NodeReclaimSpace": self.node_reclaim_space,
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

    def _csi_volume(self, pv_name: str) -> tuple[dict, dict]:
        log.info(pv_name)
        try:
            pv = self.kube_client.read_persistent_volume(pv_name)
        except Exception as exc:
            log.error("Failed to get pv: %s", exc)
            raise StatusError(
                grpc.StatusCode.INVALID_ARGUMENT, f'failed to get pv "{pv_name}"'
            ) from exc
        csi = (pv.get("spec") or {}).get("csi")
        if not csi:
            raise StatusError(
                grpc.StatusCode.INVALID_ARGUMENT, f'pv "{pv_name}" is not a CSI volume'
            )
        return pv, csi

    def _stage_secrets(self, csi: dict) -> dict[str, str] | None:
        ref = csi.get("nodeStageSecretRef")
        if ref is None:
            return None
        try:
            return get_secret(self.kube_client, ref.get("name", ""), ref.get("namespace", ""))
        except Exception as exc:
            log.error("Failed to get secret: %s", exc)
            raise StatusError(grpc.StatusCode.INVALID_ARGUMENT, str(exc)) from exc

    def controller_reclaim_space(
        self, request: ReclaimSpaceRequest, context: Any
    ) -> ReclaimSpaceResponse:
        """Reclaim space of a volume on the storage backend."""
        pv_name = request.pv_name
        _, csi = self._csi_volume(pv_name)

        csi_req = ControllerReclaimSpaceRequest(
            volume_id=csi.get("volumeHandle", ""),
            parameters=dict(csi.get("volumeAttributes") or {}),
        )
        secrets = self._stage_secrets(csi)
        if secrets is not None:
            csi_req.secrets = secrets

        csi_res = self.controller_client.controller_reclaim_space(
            csi_req, timeout=_deadline(context)
        )
        if csi_res is None:
            raise StatusError(
                grpc.StatusCode.INVALID_ARGUMENT,
                "nil value returned as the response of ControllerReclaimSpace",
            )
        return ReclaimSpaceResponse(
            pre_usage=_usage(csi_res.pre_usage), post_usage=_usage(csi_res.post_usage)
        )

    def node_reclaim_space(
        self, request: ReclaimSpaceRequest, context: Any
    ) -> ReclaimSpaceResponse:
        """Reclaim space of a volume on the node where it is staged."""
        pv_name = request.pv_name
        pv, csi = self._csi_volume(pv_name)
        spec = pv.get("spec") or {}

        try:
            mode = _to_csi_access_mode(spec.get("accessModes") or [])
        except ValueError as exc:
            log.error("Failed to map access mode: %s", exc)
            raise StatusError(grpc.StatusCode.INVALID_ARGUMENT, str(exc)) from exc

        try:
            staging_target = self.staging_target_path(pv)
        except Exception as exc:
            log.error("Failed to get staging target path: %s", exc)
            raise StatusError(grpc.StatusCode.INTERNAL, str(exc)) from exc

        csi_req = NodeReclaimSpaceRequest(
            volume_id=csi.get("volumeHandle", ""),
            volume_path="",
            staging_target_path=staging_target,
            volume_capability=VolumeCapability(
                access_mode=mode, access_type=AccessType.MOUNT
            ),
        )

        if spec.get("volumeMode") == "Block":
            csi_req.staging_target_path = _join(
                self.staging_path, "volumeDevices", "staging", pv_name
            )
            csi_req.volume_capability.access_type = AccessType.BLOCK

        secrets = self._stage_secrets(csi)
        if secrets is not None:
            csi_req.secrets = secrets

        csi_res = self.node_client.node_reclaim_space(csi_req, timeout=_deadline(context))
        if csi_res is None:
            raise StatusError(
                grpc.StatusCode.INVALID_ARGUMENT,
                "nil value returned as the response of NodeReclaimSpace",
            )
        return ReclaimSpaceResponse(
            pre_usage=_usage(csi_res.pre_usage), post_usage=_usage(csi_res.post_usage)
        )

    def staging_target_path(self, pv: dict) -> str:
        """Return where the volume is staged; the layout depends on the Kubernetes version."""
        csi = (pv.get("spec") or {}).get("csi") or {}
        unique = hashlib.sha256(csi.get("volumeHandle", "").encode()).hexdigest()
        target = _join(self.staging_path, csi.get("driver", ""), unique, "globalmount")

        try:
            version = self.kube_client.server_version()
        except Exception as exc:
            raise RuntimeError(f"failed to detect Kubernetes version: {exc}") from exc

        major = _version_number("major", version.get("major", ""))
        minor = _version_number("minor", version.get("minor", ""))

        if major * 1000 + minor < _HASHED_PATH_VERSION:
            name = (pv.get("metadata") or {}).get("name", "")
            target = _join(self.staging_path, "pv", name, "globalmount")
        return target