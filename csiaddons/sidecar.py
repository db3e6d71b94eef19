"""The sidecar command: registers with the controller and serves its requests."""

from __future__ import annotations

import argparse
import enum
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any, NoReturn

from csiaddons.config import parse_duration
from csiaddons.driver_client import DriverClient
from csiaddons.endpoint import InvalidEndpointError, build_endpoint_url
from csiaddons.kube import KubeClient
from csiaddons.node import Manager
from csiaddons.server import SidecarServer
from csiaddons.service.identity import IdentityServer
from csiaddons.service.networkfence import NetworkFenceServer
from csiaddons.service.reclaimspace import DEFAULT_STAGING_PATH, ReclaimSpaceServer
from csiaddons.service.replication import ReplicationServer
from csiaddons.version import print_version

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = timedelta(minutes=3)
DEFAULT_ADDRESS = "/run/csi-addons/socket"


def _json_default(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    raise TypeError(f"cannot encode {type(value).__name__}")


def _encode(message: Any) -> bytes:
    if is_dataclass(message):
        message = asdict(message)
    return json.dumps(message, default=_json_default).encode()


def _decode(data: bytes) -> dict:
    message = json.loads(data) if data else {}
    return message if isinstance(message, dict) else {}


class _DriverChannel:
    """Makes unary calls to the CSI driver over a gRPC channel."""

    def __init__(self, channel: Any) -> None:
        self.channel = channel

    def call(self, service: str, method: str, request: Any, timeout: float | None) -> dict:
        rpc = self.channel.unary_unary(
            f"/{service}/{method}",
            request_serializer=_encode,
            response_deserializer=_decode,
        )
        return rpc(request, timeout=timeout)


class _ProbeIdentity:
    """Identity calls used by the driver client."""

    def __init__(self, rpc: _DriverChannel) -> None:
        self.rpc = rpc

    def probe(self, *, timeout: float) -> bool | None:
        ready = self.rpc.call("identity.Identity", "Probe", {}, timeout).get("ready")
        if ready is None:
            return None
        if isinstance(ready, dict):
            return bool(ready.get("value", False))
        return bool(ready)

    def get_identity(self, *, timeout: float) -> str:
        return self.rpc.call("identity.Identity", "GetIdentity", {}, timeout).get("name", "")


class _IdentityForwarder:
    def __init__(self, rpc: _DriverChannel) -> None:
        self.rpc = rpc

    def get_identity(self, request: dict, *, timeout: float | None) -> dict:
        return self.rpc.call("identity.Identity", "GetIdentity", request, timeout)

    def get_capabilities(self, request: dict, *, timeout: float | None) -> dict:
        return self.rpc.call("identity.Identity", "GetCapabilities", request, timeout)

    def probe(self, request: dict, *, timeout: float | None) -> dict:
        return self.rpc.call("identity.Identity", "Probe", request, timeout)


class _FenceController:
    def __init__(self, rpc: _DriverChannel) -> None:
        self.rpc = rpc

    def fence_cluster_network(self, request: Any, *, timeout: float | None) -> dict:
        return self.rpc.call("fence.FenceController", "FenceClusterNetwork", request, timeout)

    def unfence_cluster_network(self, request: Any, *, timeout: float | None) -> dict:
        return self.rpc.call(
            "fence.FenceController", "UnfenceClusterNetwork", request, timeout
        )


def _usage(value: Any) -> SimpleNamespace | None:
    if value is None:
        return None
    return SimpleNamespace(usage_bytes=int(value.get("usage_bytes", 0)))


def _usage_result(resp: dict) -> SimpleNamespace:
    return SimpleNamespace(
        pre_usage=_usage(resp.get("pre_usage")), post_usage=_usage(resp.get("post_usage"))
    )


class _ReclaimController:
    def __init__(self, rpc: _DriverChannel) -> None:
        self.rpc = rpc

    def controller_reclaim_space(self, request: Any, *, timeout: float | None) -> Any:
        return _usage_result(
            self.rpc.call(
                "reclaimspace.ReclaimSpaceController", "ControllerReclaimSpace",
                request, timeout,
            )
        )


class _ReclaimNode:
    def __init__(self, rpc: _DriverChannel) -> None:
        self.rpc = rpc

    def node_reclaim_space(self, request: Any, *, timeout: float | None) -> Any:
        return _usage_result(
            self.rpc.call(
                "reclaimspace.ReclaimSpaceNode", "NodeReclaimSpace", request, timeout
            )
        )


class _ReplicationController:
    _SERVICE = "replication.Controller"

    def __init__(self, rpc: _DriverChannel) -> None:
        self.rpc = rpc

    def enable_volume_replication(self, request: Any, *, timeout: float | None) -> dict:
        return self.rpc.call(self._SERVICE, "EnableVolumeReplication", request, timeout)

    def disable_volume_replication(self, request: Any, *, timeout: float | None) -> dict:
        return self.rpc.call(self._SERVICE, "DisableVolumeReplication", request, timeout)

    def promote_volume(self, request: Any, *, timeout: float | None) -> dict:
        return self.rpc.call(self._SERVICE, "PromoteVolume", request, timeout)

    def demote_volume(self, request: Any, *, timeout: float | None) -> dict:
        return self.rpc.call(self._SERVICE, "DemoteVolume", request, timeout)

    def resync_volume(self, request: Any, *, timeout: float | None) -> Any:
        resp = self.rpc.call(self._SERVICE, "ResyncVolume", request, timeout)
        return SimpleNamespace(ready=bool(resp.get("ready", False)))

    def get_volume_replication_info(self, request: Any, *, timeout: float | None) -> Any:
        resp = self.rpc.call(self._SERVICE, "GetVolumeReplicationInfo", request, timeout)
        when = resp.get("last_sync_time")
        duration = resp.get("last_sync_duration")
        return SimpleNamespace(
            last_sync_time=datetime.fromisoformat(when) if when else None,
            last_sync_duration=timedelta(seconds=duration) if duration is not None else None,
            last_sync_bytes=int(resp.get("last_sync_bytes", 0) or 0),
        )


def _duration(text: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="csi-addons-sidecar", allow_abbrev=False)

    def flag(name: str, **kwargs: Any) -> None:
        parser.add_argument(f"-{name}", f"--{name}", **kwargs)

    flag("timeout", type=_duration, default=DEFAULT_TIMEOUT,
         help="Timeout for waiting for response")
    flag("csi-addons-address", default=DEFAULT_ADDRESS, help="CSI Addons endpoint")
    flag("node-id", default="", help="NodeID")
    flag("stagingpath", default=DEFAULT_STAGING_PATH, help="stagingpath")
    flag("controller-port", default="",
         help="The TCP network port where the gRPC server for controller requests will listen")
    flag("controller-ip", default="",
         help="The TCP network ip address where the gRPC server for controller requests will listen")
    flag("pod", default="", help="name of the Pod that contains this sidecar")
    flag("namespace", default="", help="namespace of the Pod that contains this sidecar")
    flag("pod-uid", default="", help="UID of the Pod that contains this sidecar")
    flag("version", action="store_true", help="Print Version details")
    return parser.parse_args(argv)


def _fatal(message: str, *args: Any) -> NoReturn:
    log.critical(message, *args)
    raise SystemExit(1)


def main(argv: list[str] | None = None) -> int:
    """Run the sidecar until its server stops."""
    args = _parse_args(argv)
    logging.basicConfig(stream=sys.stderr, level=logging.INFO)

    if args.version:
        print_version()
        return 0

    try:
        endpoint = build_endpoint_url(
            args.controller_ip, args.controller_port, args.pod, args.namespace
        )
    except InvalidEndpointError as exc:
        _fatal("Failed to validate controller endpoint: %s", exc)

    try:
        driver = DriverClient.connect(
            args.csi_addons_address,
            args.timeout,
            lambda channel: _ProbeIdentity(_DriverChannel(channel)),
        )
    except Exception as exc:
        _fatal("Failed to connect to %r : %s", args.csi_addons_address, exc)

    try:
        driver.probe()
    except Exception as exc:
        _fatal("Failed to probe driver: %s", exc)

    try:
        kube_client = KubeClient.in_cluster()
    except Exception as exc:
        _fatal("Failed to get cluster config: %s", exc)

    manager = Manager(
        client=driver,
        kube_client=kube_client,
        node=args.node_id,
        endpoint=endpoint,
        pod_name=args.pod,
        pod_namespace=args.namespace,
        pod_uid=args.pod_uid,
    )
    try:
        manager.deploy()
    except Exception as exc:
        _fatal("Failed to create csiaddonsnode: %s", exc)

    rpc = _DriverChannel(driver.channel)
    server = SidecarServer(args.controller_ip, args.controller_port)
    server.register_service(IdentityServer(_IdentityForwarder(rpc)))
    server.register_service(
        ReclaimSpaceServer(
            _ReclaimController(rpc), _ReclaimNode(rpc), kube_client, args.stagingpath
        )
    )
    server.register_service(NetworkFenceServer(_FenceController(rpc), kube_client))
    server.register_service(ReplicationServer(_ReplicationController(rpc), kube_client))

    try:
        server.start()
    except RuntimeError as exc:
        _fatal("%s", exc)
    return 0


if __name__ == "__main__":
    sys.exit(main())