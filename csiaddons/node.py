"""Registration of the sidecar as a CSIAddonsNode resource."""

from __future__ import annotations

import logging
import time
import urllib.parse
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from csiaddons.kube import ApiError, KubeClient

log = logging.getLogger(__name__)

API_GROUP = "csiaddons.openshift.io"
API_VERSION = "v1alpha1"
RESOURCE = "csiaddonsnodes"

NODE_CREATION_RETRY = timedelta(minutes=5)
NODE_CREATION_TIMEOUT = timedelta(minutes=3)


class InvalidConfigError(ValueError):
    """Raised when the settings needed to describe the node are incomplete."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"invalid configuration: {detail}")


class DriverNameSource(Protocol):
    def get_driver_name(self) -> str:
        """Return the name of the CSI driver."""


@dataclass
class OwnerReference:
    """Points at the object that owns a resource."""

    api_version: str
    kind: str
    name: str
    uid: str

    def to_dict(self) -> dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
        }


@dataclass
class CSIAddonsNode:
    """The resource that tells the controller where a sidecar listens."""

    name: str
    namespace: str
    driver_name: str
    endpoint: str
    node_id: str
    owner_references: list[OwnerReference] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the resource as a Kubernetes API object."""
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": "CSIAddonsNode",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "ownerReferences": [ref.to_dict() for ref in self.owner_references],
            },
            "spec": {
                "driver": {
                    "name": self.driver_name,
                    "endpoint": self.endpoint,
                    "nodeID": self.node_id,
                },
            },
        }


@dataclass
class Manager:
    """Creates the CSIAddonsNode for the running sidecar."""

    client: DriverNameSource
    kube_client: KubeClient | None = None
    node: str = ""
    endpoint: str = ""
    pod_name: str = ""
    pod_namespace: str = ""
    pod_uid: str = ""
    retry_interval: timedelta = NODE_CREATION_RETRY
    creation_timeout: timedelta = NODE_CREATION_TIMEOUT
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def deploy(self) -> None:
        """Create the CSIAddonsNode, retrying failed attempts until the timeout."""
        node = self.build_node()
        interval = self.retry_interval.total_seconds()
        deadline = self.clock() + self.creation_timeout.total_seconds()
        while True:
            try:
                self.create_node(node)
                return
            except Exception as exc:
                log.error(
                    "failed to create CSIAddonsNode %s/%s: %s",
                    node.namespace, node.name, exc,
                )
            remaining = deadline - self.clock()
            if remaining < interval:
                if remaining > 0:
                    self.sleep(remaining)
                raise TimeoutError(
                    f"timed out creating CSIAddonsNode {node.namespace}/{node.name}"
                )
            self.sleep(interval)

    def create_node(self, node: CSIAddonsNode) -> None:
        """Create ``node`` in the cluster; an existing object is left as it is."""
        if self.kube_client is None:
            raise RuntimeError("no Kubernetes client configured")
        path = (
            f"/apis/{API_GROUP}/{API_VERSION}/namespaces/"
            f"{urllib.parse.quote(node.namespace, safe='')}/{RESOURCE}"
        )
        try:
            self.kube_client.post(path, node.to_dict())
        except ApiError as exc:
            if exc.is_already_exists:
                return
            raise RuntimeError(f"failed to create csiaddonsnode object: {exc}") from exc

    def build_node(self) -> CSIAddonsNode:
        """Check the settings and describe the CSIAddonsNode for this sidecar."""
        required = [
            (self.pod_name, "missing Pod name"),
            (self.pod_namespace, "missing Pod namespace"),
            (self.pod_uid, "missing Pod UID"),
            (self.endpoint, "missing endpoint"),
            (self.node, "missing node"),
        ]
        for value, detail in required:
            if not value:
                raise InvalidConfigError(detail)

        try:
            driver = self.client.get_driver_name()
        except Exception as exc:
            raise RuntimeError(f"failed to get driver name: {exc}") from exc
        if not driver:
            raise InvalidConfigError("CSI-driver returned an empty driver name")

        return CSIAddonsNode(
            name=self.pod_name,
            namespace=self.pod_namespace,
            driver_name=driver,
            endpoint=self.endpoint,
            node_id=self.node,
            owner_references=[
                OwnerReference(
                    api_version="v1", kind="Pod", name=self.pod_name, uid=self.pod_uid
                )
            ],
        )