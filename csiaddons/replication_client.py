"""Client calls for the replication service, and a fake for tests."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol


@dataclass
class EnableVolumeReplicationRequest:
    volume_id: str = ""
    replication_id: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class DisableVolumeReplicationRequest:
    volume_id: str = ""
    replication_id: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class PromoteVolumeRequest:
    volume_id: str = ""
    replication_id: str = ""
    force: bool = False
    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class DemoteVolumeRequest:
    volume_id: str = ""
    replication_id: str = ""
    force: bool = False
    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class ResyncVolumeRequest:
    volume_id: str = ""
    replication_id: str = ""
    force: bool = False
    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class GetVolumeReplicationInfoRequest:
    volume_id: str = ""
    replication_id: str = ""
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class EnableVolumeReplicationResponse:
    """Result of enabling replication."""


@dataclass
class DisableVolumeReplicationResponse:
    """Result of disabling replication."""


@dataclass
class PromoteVolumeResponse:
    """Result of promoting a volume."""


@dataclass
class DemoteVolumeResponse:
    """Result of demoting a volume."""


@dataclass
class ResyncVolumeResponse:
    """Result of resyncing a volume."""

    ready: bool = False


@dataclass
class GetVolumeReplicationInfoResponse:
    """Replication status of a volume."""

    last_sync_time: datetime | None = None
    last_sync_duration: timedelta | None = None
    last_sync_bytes: int = 0


class ReplicationStub(Protocol):
    """Transport for the replication service; each call takes a timeout in seconds."""

    def enable_volume_replication(
        self, request: EnableVolumeReplicationRequest, *, timeout: float
    ) -> EnableVolumeReplicationResponse: ...

    def disable_volume_replication(
        self, request: DisableVolumeReplicationRequest, *, timeout: float
    ) -> DisableVolumeReplicationResponse: ...

    def promote_volume(
        self, request: PromoteVolumeRequest, *, timeout: float
    ) -> PromoteVolumeResponse: ...

    def demote_volume(
        self, request: DemoteVolumeRequest, *, timeout: float
    ) -> DemoteVolumeResponse: ...

    def resync_volume(
        self, request: ResyncVolumeRequest, *, timeout: float
    ) -> ResyncVolumeResponse: ...

    def get_volume_replication_info(
        self, request: GetVolumeReplicationInfoRequest, *, timeout: float
    ) -> GetVolumeReplicationInfoResponse: ...


def _params(parameters: Mapping[str, str] | None) -> dict[str, str]:
    return dict(parameters or {})


class ReplicationClient:
    """Builds replication requests and sends them through a stub with a timeout."""

    def __init__(self, stub: ReplicationStub, timeout: timedelta) -> None:
        self.stub = stub
        self.timeout = timeout

    @property
    def _seconds(self) -> float:
        return self.timeout.total_seconds()

    def enable_volume_replication(
        self, volume_id, replication_id, secret_name, secret_namespace, parameters
    ) -> EnableVolumeReplicationResponse:
        """Enable replication of a volume."""
        req = EnableVolumeReplicationRequest(
            volume_id=volume_id,
            replication_id=replication_id,
            parameters=_params(parameters),
            secret_name=secret_name,
            secret_namespace=secret_namespace,
        )
        return self.stub.enable_volume_replication(req, timeout=self._seconds)

    def disable_volume_replication(
        self, volume_id, replication_id, secret_name, secret_namespace, parameters
    ) -> DisableVolumeReplicationResponse:
        """Disable replication of a volume."""
        req = DisableVolumeReplicationRequest(
            volume_id=volume_id,
            replication_id=replication_id,
            parameters=_params(parameters),
            secret_name=secret_name,
            secret_namespace=secret_namespace,
        )
        return self.stub.disable_volume_replication(req, timeout=self._seconds)

    def promote_volume(
        self, volume_id, replication_id, force, secret_name, secret_namespace, parameters
    ) -> PromoteVolumeResponse:
        """Promote a volume to primary."""
        req = PromoteVolumeRequest(
            volume_id=volume_id,
            replication_id=replication_id,
            force=force,
            parameters=_params(parameters),
            secret_name=secret_name,
            secret_namespace=secret_namespace,
        )
        return self.stub.promote_volume(req, timeout=self._seconds)

    def demote_volume(
        self, volume_id, replication_id, secret_name, secret_namespace, parameters
    ) -> DemoteVolumeResponse:
        """Demote a volume to secondary."""
        req = DemoteVolumeRequest(
            volume_id=volume_id,
            replication_id=replication_id,
            parameters=_params(parameters),
            secret_name=secret_name,
            secret_namespace=secret_namespace,
        )
        return self.stub.demote_volume(req, timeout=self._seconds)

    def resync_volume(
        self, volume_id, replication_id, force, secret_name, secret_namespace, parameters
    ) -> ResyncVolumeResponse:
        """Resync a volume."""
        req = ResyncVolumeRequest(
            volume_id=volume_id,
            replication_id=replication_id,
            force=force,
            parameters=_params(parameters),
            secret_name=secret_name,
            secret_namespace=secret_namespace,
        )
        return self.stub.resync_volume(req, timeout=self._seconds)

    def get_volume_replication_info(
        self, volume_id, replication_id, secret_name, secret_namespace
    ) -> GetVolumeReplicationInfoResponse:
        """Fetch the replication status of a volume."""
        req = GetVolumeReplicationInfoRequest(
            volume_id=volume_id,
            replication_id=replication_id,
            secret_name=secret_name,
            secret_namespace=secret_namespace,
        )
        return self.stub.get_volume_replication_info(req, timeout=self._seconds)


MockFn = Callable[..., Any]


@dataclass
class FakeReplicationClient:
    """A replication client whose calls are answered by the given functions."""

    enable_volume_replication_mock: MockFn | None = None
    disable_volume_replication_mock: MockFn | None = None
    promote_volume_mock: MockFn | None = None
    demote_volume_mock: MockFn | None = None
    resync_volume_mock: MockFn | None = None
    get_volume_replication_info_mock: MockFn | None = None

    @staticmethod
    def _call(mock: MockFn | None, name: str, *args: Any) -> Any:
        if mock is None:
            raise RuntimeError(f"no mock set for {name}")
        return mock(*args)

    def enable_volume_replication(
        self, volume_id, replication_id, secret_name, secret_namespace, parameters
    ):
        return self._call(
            self.enable_volume_replication_mock,
            "enable_volume_replication",
            volume_id, replication_id, secret_name, secret_namespace, parameters,
        )

    def disable_volume_replication(
        self, volume_id, replication_id, secret_name, secret_namespace, parameters
    ):
        return self._call(
            self.disable_volume_replication_mock,
            "disable_volume_replication",
            volume_id, replication_id, secret_name, secret_namespace, parameters,
        )

    def promote_volume(
        self, volume_id, replication_id, force, secret_name, secret_namespace, parameters
    ):
        return self._call(
            self.promote_volume_mock,
            "promote_volume",
            volume_id, replication_id, force, secret_name, secret_namespace, parameters,
        )

    def demote_volume(
        self, volume_id, replication_id, secret_name, secret_namespace, parameters
    ):
        return self._call(
            self.demote_volume_mock,
            "demote_volume",
            volume_id, replication_id, secret_name, secret_namespace, parameters,
        )

    def resync_volume(
        self, volume_id, replication_id, force, secret_name, secret_namespace, parameters
    ):
        return self._call(
            self.resync_volume_mock,
            "resync_volume",
            volume_id, replication_id, force, secret_name, secret_namespace, parameters,
        )

    def get_volume_replication_info(
        self, volume_id, replication_id, secret_name, secret_namespace
    ):
        return self._call(
            self.get_volume_replication_info_mock,
            "get_volume_replication_info",
            volume_id, replication_id, secret_name, secret_namespace,
        )