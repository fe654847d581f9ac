"""Tests for the patch-management backend client."""

import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import httpx
import pytest

from rebootguard.models import NotifierConfig
from rebootguard.patch_client import ONGOING_PATCH_TASK_PATH, PatchTaskClient
from rebootguard.secrets import xor_encode


class StubBackend:
    """A tiny HTTP server answering the ongoing-patch-task endpoint."""

    def __init__(self):
        self.status = 200
        self.body = b'{"running_patch_status": false}'
        self.requests = []
        stub = self

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self):
                length = int(self.headers.get("Content-Length", 0))
                stub.requests.append(
                    {
                        "path": self.path,
                        "headers": {k.lower(): v for k, v in self.headers.items()},
                        "body": json.loads(self.rfile.read(length) or b"null"),
                    }
                )
                self.send_response(stub.status)
                self.send_header("Content-Type", "application/json")
                self.end_headers()
                self.wfile.write(stub.body)

            def log_message(self, format, *args):
                pass

        self.server = HTTPServer(("127.0.0.1", 0), Handler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        host, port = self.server.server_address
        return f"http://{host}:{port}"

    def start(self):
        self.thread.start()

    def stop(self):
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture
def backend():
    stub = StubBackend()
    stub.start()
    yield stub
    stub.stop()


def make_config(base_url: str, /, **overrides) -> NotifierConfig:
    fields = {"base_url": base_url, "asset": "host-1", "asset_type": "server"}
    fields.update(overrides)
    return NotifierConfig(**fields)


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestAgainstStubServer:
    def test_running_true(self, backend):
        backend.body = b'{"running_patch_status": true}'

        assert PatchTaskClient(timeout=5).is_patch_task_running(make_config(backend.url)) is True

    def test_running_false(self, backend):
        assert PatchTaskClient(timeout=5).is_patch_task_running(make_config(backend.url)) is False

    def test_request_shape(self, backend):
        config = make_config(backend.url + "/", identifier=xor_encode("tok-123"))

        PatchTaskClient(timeout=5).is_patch_task_running(config)

        request = backend.requests[0]
        assert request["path"] == ONGOING_PATCH_TASK_PATH
        assert request["body"] == {"asset": "host-1", "asset_type": "server"}
        assert request["headers"]["authorization"] == "Bearer tok-123"
        assert request["headers"]["content-type"] == "application/json"

    def test_no_identifier_sends_no_auth(self, backend):
        PatchTaskClient(timeout=5).is_patch_task_running(make_config(backend.url))

        assert "authorization" not in backend.requests[0]["headers"]

    def test_non_200_is_not_running(self, backend):
        backend.status = 500
        backend.body = b'{"running_patch_status": true}'

        assert PatchTaskClient(timeout=5).is_patch_task_running(make_config(backend.url)) is False

    def test_malformed_json_is_not_running(self, backend):
        backend.body = b"<html>oops</html>"

        assert PatchTaskClient(timeout=5).is_patch_task_running(make_config(backend.url)) is False

    def test_non_bool_status_is_not_running(self, backend):
        backend.body = b'{"running_patch_status": "yes"}'

        assert PatchTaskClient(timeout=5).is_patch_task_running(make_config(backend.url)) is False


class TestFailOpen:
    def test_unreachable_backend(self):
        config = make_config(f"http://127.0.0.1:{free_port()}")

        assert PatchTaskClient(timeout=2).is_patch_task_running(config) is False

    @pytest.mark.parametrize("missing", ["base_url", "asset", "asset_type"])
    def test_missing_fields_skip_request(self, missing):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"running_patch_status": True})

        config = make_config("http://backend.invalid", **{missing: ""})
        client = PatchTaskClient(transport=httpx.MockTransport(handler))

        assert client.is_patch_task_running(config) is False
        assert calls == []

    def test_bad_identifier(self):
        config = make_config("http://backend.invalid", identifier="%%%not-base64")
        client = PatchTaskClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))

        assert client.is_patch_task_running(config) is False

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = PatchTaskClient(timeout=1, transport=httpx.MockTransport(handler))

        assert client.is_patch_task_running(make_config("http://backend.invalid")) is False

    def test_mock_transport_running(self):
        client = PatchTaskClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"running_patch_status": True}))
        )

        assert client.is_patch_task_running(make_config("http://backend.invalid")) is True
