import base64
import json
from concurrent import futures
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import grpc
import pytest

from csiaddons.errors import StatusError
from csiaddons.kube import ApiError
from csiaddons.replication_client import (
    DemoteVolumeRequest,
    DemoteVolumeResponse,
    DisableVolumeReplicationRequest,
    DisableVolumeReplicationResponse,
    EnableVolumeReplicationRequest,
    EnableVolumeReplicationResponse,
    GetVolumeReplicationInfoRequest,
    PromoteVolumeRequest,
    PromoteVolumeResponse,
    ResyncVolumeRequest,
)
from csiaddons.service.replication import ReplicationServer


class FakeKube:
    def __init__(self, data=None, error=None):
        self.data = data or {}
        self.error = error
        self.calls = []

    def read_secret(self, namespace, name):
        self.calls.append((namespace, name))
        if self.error is not None:
            raise self.error
        return {
            "data": {
                key: base64.b64encode(value.encode()).decode()
                for key, value in self.data.items()
            }
        }


class FakeDriver:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def _record(self, name, request, timeout):
        self.calls.append((name, request, timeout))
        if self.error is not None:
            raise self.error
        return self.response

    def enable_volume_replication(self, request, *, timeout):
        return self._record("enable", request, timeout)

    def disable_volume_replication(self, request, *, timeout):
        return self._record("disable", request, timeout)

    def promote_volume(self, request, *, timeout):
        return self._record("promote", request, timeout)

    def demote_volume(self, request, *, timeout):
        return self._record("demote", request, timeout)

    def resync_volume(self, request, *, timeout):
        return self._record("resync", request, timeout)

    def get_volume_replication_info(self, request, *, timeout):
        return self._record("info", request, timeout)


def test_enable_forwards_request_with_secrets():
    kube = FakeKube({"userID": "admin"})
    driver = FakeDriver()
    server = ReplicationServer(driver, kube)
    req = EnableVolumeReplicationRequest(
        volume_id="vol-1",
        replication_id="rep-1",
        parameters={"mode": "snapshot"},
        secret_name="sec",
        secret_namespace="ns",
    )
    resp = server.enable_volume_replication(req, None)
    assert resp == EnableVolumeReplicationResponse()
    assert kube.calls == [("ns", "sec")]
    name, sent, timeout = driver.calls[0]
    assert name == "enable"
    assert sent.volume_id == "vol-1"
    assert sent.replication_id == "rep-1"
    assert sent.parameters == {"mode": "snapshot"}
    assert sent.secrets == {"userID": "admin"}
    assert timeout is None


def test_disable_returns_empty_response():
    driver = FakeDriver()
    server = ReplicationServer(driver, FakeKube())
    resp = server.disable_volume_replication(
        DisableVolumeReplicationRequest(volume_id="vol-1"), None
    )
    assert resp == DisableVolumeReplicationResponse()
    assert driver.calls[0][1].volume_id == "vol-1"


@pytest.mark.parametrize("force", [True, False])
def test_promote_passes_force(force):
    driver = FakeDriver()
    server = ReplicationServer(driver, FakeKube())
    resp = server.promote_volume(PromoteVolumeRequest(volume_id="v", force=force), None)
    assert resp == PromoteVolumeResponse()
    assert driver.calls[0][1].force is force


def test_demote_passes_force():
    driver = FakeDriver()
    server = ReplicationServer(driver, FakeKube())
    resp = server.demote_volume(DemoteVolumeRequest(volume_id="v", force=True), None)
    assert resp == DemoteVolumeResponse()
    assert driver.calls[0][1].force is True


@pytest.mark.parametrize("ready", [True, False])
def test_resync_reports_readiness(ready):
    driver = FakeDriver(response=SimpleNamespace(ready=ready))
    server = ReplicationServer(driver, FakeKube())
    resp = server.resync_volume(ResyncVolumeRequest(volume_id="v", force=True), None)
    assert resp.ready is ready
    assert driver.calls[0][1].force is True


def test_secret_failure_is_internal_error():
    kube = FakeKube(error=ApiError(404, "NotFound", 'secrets "sec" not found'))
    driver = FakeDriver()
    server = ReplicationServer(driver, kube)
    with pytest.raises(StatusError) as info:
        server.enable_volume_replication(
            EnableVolumeReplicationRequest(secret_name="sec", secret_namespace="ns"), None
        )
    assert info.value.code == grpc.StatusCode.INTERNAL
    assert info.value.message == 'secrets "sec" not found'
    assert driver.calls == []


def test_driver_error_is_propagated():
    failure = StatusError(grpc.StatusCode.ABORTED, "busy")
    server = ReplicationServer(FakeDriver(error=failure), FakeKube())
    with pytest.raises(StatusError) as info:
        server.promote_volume(PromoteVolumeRequest(volume_id="v"), None)
    assert info.value is failure


def test_get_info_maps_fields():
    when = datetime(2023, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    driver = FakeDriver(
        response=SimpleNamespace(
            last_sync_time=when,
            last_sync_duration=timedelta(seconds=5),
            last_sync_bytes=1024,
        )
    )
    server = ReplicationServer(driver, FakeKube({"k": "v"}))
    resp = server.get_volume_replication_info(
        GetVolumeReplicationInfoRequest(volume_id="v", replication_id="r"), None
    )
    assert resp.last_sync_time == when
    assert resp.last_sync_duration == timedelta(seconds=5)
    assert resp.last_sync_bytes == 1024
    sent = driver.calls[0][1]
    assert sent.replication_id == "r"
    assert sent.secrets == {"k": "v"}


def test_get_info_without_sync_time():
    driver = FakeDriver(response=SimpleNamespace(last_sync_time=None))
    server = ReplicationServer(driver, FakeKube())
    resp = server.get_volume_replication_info(
        GetVolumeReplicationInfoRequest(volume_id="v"), None
    )
    assert resp.last_sync_time is None
    assert resp.last_sync_bytes == 0


@pytest.fixture
def served():
    servers = []

    def serve(service):
        server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
        service.register_service(server)
        port = server.add_insecure_port("127.0.0.1:0")
        server.start()
        channel = grpc.insecure_channel(f"127.0.0.1:{port}")
        servers.append((server, channel))
        return channel

    yield serve
    for server, channel in servers:
        channel.close()
        server.stop(None)


def _rpc(channel, method):
    return channel.unary_unary(
        f"/proto.Replication/{method}",
        request_serializer=lambda d: json.dumps(d).encode(),
        response_deserializer=json.loads,
    )


def test_enable_over_grpc(served):
    driver = FakeDriver()
    channel = served(ReplicationServer(driver, FakeKube({"a": "b"})))
    result = _rpc(channel, "EnableVolumeReplication")(
        {"volume_id": "vol-1", "replication_id": "rep-1", "secret_name": "s"},
        timeout=10,
    )
    assert result == {}
    sent = driver.calls[0][1]
    assert sent.volume_id == "vol-1"
    assert sent.secrets == {"a": "b"}
    assert driver.calls[0][2] is not None


def test_secret_failure_over_grpc(served):
    kube = FakeKube(error=ApiError(403, "Forbidden", "denied"))
    driver = FakeDriver()
    channel = served(ReplicationServer(driver, kube))
    with pytest.raises(grpc.RpcError) as info:
        _rpc(channel, "DemoteVolume")({"volume_id": "v"}, timeout=10)
    assert info.value.code() == grpc.StatusCode.INTERNAL
    assert info.value.details() == "denied"
    assert len(kube.calls) == 1
    assert driver.calls == []


def test_get_info_over_grpc(served):
    when = datetime(2023, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    driver = FakeDriver(
        response=SimpleNamespace(
            last_sync_time=when,
            last_sync_duration=timedelta(seconds=5),
            last_sync_bytes=1024,
        )
    )
    channel = served(ReplicationServer(driver, FakeKube()))
    result = _rpc(channel, "GetVolumeReplicationInfo")({"volume_id": "v"}, timeout=10)
    assert datetime.fromisoformat(result["last_sync_time"]) == when
    assert result["last_sync_duration"] == timedelta(seconds=5).total_seconds()
    assert result["last_sync_bytes"] == 1024