"""A minimal Kubernetes API client and secret lookup."""

from __future__ import annotations

import base64
import json
import os
import ssl
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
USER_AGENT = "csi-addons-sidecar"


class ApiError(Exception):
    """An error response from the Kubernetes API server."""

    def __init__(self, status: int, reason: str = "", message: str = "") -> None:
        super().__init__(message or reason or f"HTTP {status}")
        self.status = status
        self.reason = reason
        self.message = message

    @classmethod
    def from_body(cls, status: int, body: bytes) -> ApiError:
        try:
            payload = json.loads(body) if body else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return cls(status, payload.get("reason", ""), payload.get("message", ""))

    @property
    def is_not_found(self) -> bool:
        return self.reason == "NotFound" or (not self.reason and self.status == 404)

    @property
    def is_already_exists(self) -> bool:
        return self.reason == "AlreadyExists"


def _segment(value: str) -> str:
    return urllib.parse.quote(value, safe="")


class KubeClient:
    """Talks JSON to a Kubernetes API server over HTTP(S)."""

    def __init__(
        self,
        host: str,
        *,
        token: str | None = None,
        ca_file: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.host = host.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._context = (
            ssl.create_default_context(cafile=ca_file)
            if self.host.startswith("https")
            else None
        )

    @classmethod
    def in_cluster(cls, account_dir: Path = SERVICE_ACCOUNT_DIR) -> KubeClient:
        """Build a client from the service account mounted into a Pod."""
        host = os.environ.get("KUBERNETES_SERVICE_HOST", "")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "")
        if not host or not port:
            raise RuntimeError(
                "unable to load in-cluster configuration, KUBERNETES_SERVICE_HOST"
                " and KUBERNETES_SERVICE_PORT must be defined"
            )
        if ":" in host:
            host = f"[{host}]"
        token = (account_dir / "token").read_text().strip()
        return cls(
            f"https://{host}:{port}",
            token=token,
            ca_file=str(account_dir / "ca.crt"),
        )

    def request(self, method: str, path: str, body: Any = None) -> dict:
        """Send a request and return the decoded JSON response."""
        data = json.dumps(body).encode() if body is not None else None
        req = urllib.request.Request(self.host + path, data=data, method=method)
        req.add_header("Accept", "application/json")
        req.add_header("User-Agent", USER_AGENT)
        if data is not None:
            req.add_header("Content-Type", "application/json")
        if self.token:
            req.add_header("Authorization", f"Bearer {self.token}")
        try:
            with urllib.request.urlopen(
                req, timeout=self.timeout, context=self._context
            ) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as exc:
            raise ApiError.from_body(exc.code, exc.read()) from exc
        return json.loads(raw) if raw else {}

    def get(self, path: str) -> dict:
        return self.request("GET", path)

    def post(self, path: str, body: Any) -> dict:
        return self.request("POST", path, body)

    def read_secret(self, namespace: str, name: str) -> dict:
        return self.get(f"/api/v1/namespaces/{_segment(namespace)}/secrets/{_segment(name)}")

    def read_config_map(self, namespace: str, name: str) -> dict:
        return self.get(
            f"/api/v1/namespaces/{_segment(namespace)}/configmaps/{_segment(name)}"
        )

    def read_persistent_volume(self, name: str) -> dict:
        return self.get(f"/api/v1/persistentvolumes/{_segment(name)}")

    def server_version(self) -> dict:
        return self.get("/version")


def get_secret(kube_client: KubeClient, name: str, namespace: str) -> dict[str, str]:
    """Return the decoded data of the Secret ``namespace/name``."""
    secret = kube_client.read_secret(namespace, name)
    return {
        key: base64.b64decode(value).decode("utf-8", errors="surrogateescape")
        for key, value in (secret.get("data") or {}).items()
    }