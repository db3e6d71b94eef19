import base64
import json
from types import SimpleNamespace

import grpc
import pytest

from csiaddons.errors import StatusError
from csiaddons.kube import ApiError
from csiaddons.service.networkfence import (
    CIDR,
    SERVICE_NAME,
    FenceClusterNetworkRequest,
    NetworkFenceRequest,
    NetworkFenceResponse,
    NetworkFenceServer,
    UnfenceClusterNetworkRequest,
)


class Aborted(Exception):
    pass


class FakeContext:
    def __init__(self, remaining=None):
        self.remaining = remaining
        self.aborted = None

    def time_remaining(self):
        return self.remaining

    def abort(self, code, details):
        self.aborted = (code, details)
        raise Aborted(details)


class FakeKube:
    def __init__(self, secrets):
        self.secrets = secrets

    def read_secret(self, namespace, name):
        try:
            data = self.secrets[(namespace, name)]
        except KeyError:
            raise ApiError(404, "NotFound", f'secrets "{name}" not found') from None
        return {
            "data": {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
        }


class FakeFence:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def fence_cluster_network(self, request, *, timeout):
        self.calls.append(("fence", request, timeout))
        if self.error is not None:
            raise self.error

    def unfence_cluster_network(self, request, *, timeout):
        self.calls.append(("unfence", request, timeout))
        if self.error is not None:
            raise self.error


class FakeGrpcServer:
    def __init__(self):
        self.handlers = []

    def add_generic_rpc_handlers(self, handlers):
        self.handlers.extend(handlers)

    def lookup(self, path):
        details = SimpleNamespace(method=path, invocation_metadata=())
        for handler in self.handlers:
            found = handler.service(details)
            if found is not None:
                return found
        return None


SECRET_DATA = {"userKey": "secret"}


def make_request():
    return NetworkFenceRequest(
        parameters={"clusterID": "cluster-1"},
        secret_name="fence-secret",
        secret_namespace="default",
        cidrs=["10.0.0.0/24", "10.1.0.0/24"],
    )


def make_server(error=None):
    fence = FakeFence(error=error)
    kube = FakeKube({("default", "fence-secret"): SECRET_DATA})
    return NetworkFenceServer(fence, kube), fence


def test_fence_builds_driver_request():
    server, fence = make_server()
    result = server.fence_cluster_network(make_request(), FakeContext(remaining=7.0))
    assert result == NetworkFenceResponse()
    assert fence.calls == [
        (
            "fence",
            FenceClusterNetworkRequest(
                parameters={"clusterID": "cluster-1"},
                cidrs=[CIDR("10.0.0.0/24"), CIDR("10.1.0.0/24")],
                secrets=SECRET_DATA,
            ),
            7.0,
        )
    ]


def test_unfence_builds_driver_request():
    server, fence = make_server()
    result = server.unfence_cluster_network(make_request(), None)
    assert result == NetworkFenceResponse()
    kind, request, timeout = fence.calls[0]
    assert kind == "unfence"
    assert isinstance(request, UnfenceClusterNetworkRequest)
    assert [c.cidr for c in request.cidrs] == make_request().cidrs
    assert request.secrets == SECRET_DATA
    assert timeout is None


def test_empty_cidrs_give_empty_list():
    server, fence = make_server()
    request = make_request()
    request.cidrs = []
    server.fence_cluster_network(request, None)
    assert fence.calls[0][1].cidrs == []


@pytest.mark.parametrize("method", ["fence_cluster_network", "unfence_cluster_network"])
def test_missing_secret_is_invalid_argument(method):
    server, fence = make_server()
    request = make_request()
    request.secret_name = "other"
    with pytest.raises(StatusError) as info:
        getattr(server, method)(request, None)
    assert info.value.code == grpc.StatusCode.INVALID_ARGUMENT
    assert "other" in info.value.message
    assert fence.calls == []


@pytest.mark.parametrize("method", ["fence_cluster_network", "unfence_cluster_network"])
def test_driver_error_propagates(method):
    error = StatusError(grpc.StatusCode.INTERNAL, "driver failed")
    server, _ = make_server(error=error)
    with pytest.raises(StatusError) as info:
        getattr(server, method)(make_request(), None)
    assert info.value is error


@pytest.mark.parametrize("rpc", ["FenceClusterNetwork", "UnFenceClusterNetwork"])
def test_registered_handlers_round_trip(rpc):
    server, fence = make_server()
    grpc_server = FakeGrpcServer()
    server.register_service(grpc_server)
    handler = grpc_server.lookup(f"/{SERVICE_NAME}/{rpc}")
    payload = json.dumps(
        {
            "parameters": {"clusterID": "cluster-1"},
            "secret_name": "fence-secret",
            "secret_namespace": "default",
            "cidrs": ["10.0.0.0/24", "10.1.0.0/24"],
        }
    ).encode()
    request = handler.request_deserializer(payload)
    assert request == make_request()
    response = handler.unary_unary(request, FakeContext())
    assert json.loads(handler.response_serializer(response)) == {}
    assert len(fence.calls) == 1


def test_handler_aborts_on_missing_secret():
    server, _ = make_server()
    grpc_server = FakeGrpcServer()
    server.register_service(grpc_server)
    handler = grpc_server.lookup(f"/{SERVICE_NAME}/FenceClusterNetwork")
    context = FakeContext()
    with pytest.raises(Aborted):
        handler.unary_unary(NetworkFenceRequest(secret_name="nope"), context)
    assert context.aborted[0] == grpc.StatusCode.INVALID_ARGUMENT