# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

import json

import httpx
import pytest

from macbind.adapters.base import PassthruEntry
from macbind.adapters.http import HttpControlPlane
from macbind.core.exceptions import (
    CapabilityUnavailableError,
    ControlPlaneError,
    ControlPlaneUnavailableError,
)

BASE_URL = "https://fw.example/macbind/v1"


class Recorder:
    """MockTransport handler serving canned responses by (method, path)"""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"error": "not found"})
        status, body = self.routes[key]
        return httpx.Response(status, json=body) if body is not None else httpx.Response(status)


def _client(routes, api_key="secret"):
    recorder = Recorder(routes)
    client = HttpControlPlane(BASE_URL, api_key=api_key, transport=httpx.MockTransport(recorder))
    return client, recorder


def test_list_zones_sends_api_key():
    client, recorder = _client({
        ("GET", "/macbind/v1/zones"): (200, {"zones": [{"zone": "Guest", "zoneid": 2}]}),
    })
    assert client.list_zones() == ["guest"]
    assert recorder.requests[0].headers["X-API-Key"] == "secret"


def test_list_entries_parses_entries():
    client, _ = _client({
        ("GET", "/macbind/v1/zones/guest/passthrumac"): (200, {"entries": [
            {"mac": "AA:BB:CC:DD:EE:FF", "descr": "AUTO_BIND:abc", "action": "pass"},
            {"mac": "aa:bb:cc:dd:ee:01", "descr": "Auto-added for voucher Q", "logintype": "voucher"},
        ]}),
    })
    entries = client.list_entries("guest")
    assert entries[0] == PassthruEntry("aa:bb:cc:dd:ee:ff", "AUTO_BIND:abc", "pass", "")
    assert entries[1].logintype == "voucher"


def test_add_and_remove_entry():
    client, recorder = _client({
        ("POST", "/macbind/v1/zones/guest/passthrumac"): (201, {"ok": True}),
        ("DELETE", "/macbind/v1/zones/guest/passthrumac/aa:bb:cc:dd:ee:ff"): (204, None),
    })
    entry = PassthruEntry("aa:bb:cc:dd:ee:ff", descr="AUTO_BIND:abc")

    client.add_entry("guest", entry)
    client.remove_entry("guest", entry)

    assert json.loads(recorder.requests[0].content) == {
        "mac": "aa:bb:cc:dd:ee:ff", "action": "pass", "descr": "AUTO_BIND:abc",
    }
    assert recorder.requests[1].method == "DELETE"


@pytest.mark.parametrize("status", [404, 501])
def test_disconnect_unsupported_maps_to_capability_error(status):
    client, _ = _client({("POST", "/macbind/v1/zones/guest/disconnect"): (status, {})})
    with pytest.raises(CapabilityUnavailableError):
        client.disconnect("guest", PassthruEntry("aa:bb:cc:dd:ee:ff"))


def test_disconnect_server_error_is_plain_control_plane_error():
    client, _ = _client({("POST", "/macbind/v1/zones/guest/disconnect"): (500, {})})
    with pytest.raises(ControlPlaneError) as exc_info:
        client.disconnect("guest", PassthruEntry("aa:bb:cc:dd:ee:ff"))
    assert not isinstance(exc_info.value, CapabilityUnavailableError)
    assert exc_info.value.status_code == 500


def test_flush_reload_and_snapshot():
    client, recorder = _client({
        ("POST", "/macbind/v1/zones/guest/flush"): (200, {}),
        ("POST", "/macbind/v1/zones/guest/reload"): (200, {}),
        ("GET", "/macbind/v1/backup/passthrumac"): (200, {"guest": []}),
    })
    client.flush("guest", PassthruEntry("aa:bb:cc:dd:ee:ff"))
    client.reload("guest")

    assert client.backup_snapshot() == {"guest": []}
    assert json.loads(recorder.requests[0].content) == {"mac": "aa:bb:cc:dd:ee:ff"}


def test_http_error_raises_control_plane_error():
    client, _ = _client({("POST", "/macbind/v1/zones/guest/reload"): (503, {"error": "busy"})})
    with pytest.raises(ControlPlaneError) as exc_info:
        client.reload("guest")
    assert exc_info.value.zone == "guest"
    assert exc_info.value.operation == "reload"


def test_transport_error_raises_unavailable():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = HttpControlPlane(BASE_URL, transport=httpx.MockTransport(refuse))
    with pytest.raises(ControlPlaneUnavailableError):
        client.list_zones()


def test_no_api_key_header_when_unset():
    client, recorder = _client({("GET", "/macbind/v1/zones"): (200, {"zones": []})}, api_key=None)
    assert client.list_zones() == []
    assert "X-API-Key" not in recorder.requests[0].headers
