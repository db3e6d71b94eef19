import base64
import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from csiaddons.kube import ApiError, KubeClient, get_secret


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.server.seen.append((self.path, self.headers.get("Authorization")))
        status, body = self.server.routes.get(
            self.path,
            (404, {"kind": "Status", "reason": "NotFound", "message": "not found"}),
        )
        payload = json.dumps(body).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, *args):
        pass


@pytest.fixture
def api():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    server.routes = {}
    server.seen = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def _b64(text):
    return base64.b64encode(text.encode()).decode()


def _client(server, token=None):
    return KubeClient(f"http://127.0.0.1:{server.server_address[1]}", token=token)


def test_get_secret_decodes_data(api):
    api.routes["/api/v1/namespaces/storage/secrets/creds"] = (
        200,
        {"kind": "Secret", "data": {"userID": _b64("admin"), "userKey": _b64("secret")}},
    )
    data = get_secret(_client(api), "creds", "storage")
    assert data == {"userID": "admin", "userKey": "secret"}


def test_get_secret_without_data(api):
    api.routes["/api/v1/namespaces/storage/secrets/empty"] = (200, {"kind": "Secret"})
    assert get_secret(_client(api), "empty", "storage") == {}


def test_get_secret_not_found(api):
    with pytest.raises(ApiError) as info:
        get_secret(_client(api), "missing", "storage")
    assert info.value.status == 404
    assert info.value.is_not_found
    assert not info.value.is_already_exists


def test_token_is_sent_as_bearer(api):
    api.routes["/version"] = (200, {"major": "1", "minor": "28"})
    client = _client(api, token="token")
    assert client.server_version() == {"major": "1", "minor": "28"}
    assert api.seen == [("/version", "Bearer token")]


def test_read_persistent_volume(api):
    api.routes["/api/v1/persistentvolumes/pv-1"] = (200, {"metadata": {"name": "pv-1"}})
    assert _client(api).read_persistent_volume("pv-1")["metadata"]["name"] == "pv-1"


def test_api_error_already_exists():
    err = ApiError.from_body(409, b'{"reason": "AlreadyExists", "message": "exists"}')
    assert err.is_already_exists
    assert not err.is_not_found
    assert str(err) == "exists"


def test_in_cluster_requires_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_PORT", raising=False)
    with pytest.raises(RuntimeError, match="KUBERNETES_SERVICE_HOST"):
        KubeClient.in_cluster(tmp_path)