import urllib.error
import urllib.request

import pytest

from nth_handler.probes import init_probes, liveness_response


@pytest.fixture
def probe_server():
    server = init_probes(True, 0, "/healthz")
    yield server
    server.shutdown()
    server.server_close()


def test_liveness_response():
    status, headers, body = liveness_response()
    assert status == 200
    assert headers["Content-Type"] == "application/json"
    assert body == b'{"health":"OK"}'


def test_init_probes_disabled_returns_none():
    assert init_probes(False, 0, "/healthz") is None


def test_liveness_handler_over_http(probe_server):
    port = probe_server.server_address[1]
    with urllib.request.urlopen(f"http://127.0.0.1:{port}/healthz", timeout=5) as response:
        assert response.status == 200
        assert response.headers["Content-Type"] == "application/json"
        assert response.read() == b'{"health":"OK"}'


def test_unknown_path_is_not_found(probe_server):
    port = probe_server.server_address[1]
    with pytest.raises(urllib.error.HTTPError) as info:
        urllib.request.urlopen(f"http://127.0.0.1:{port}/other", timeout=5)
    assert info.value.code == 404


def test_subtree_endpoint_matches_nested_path():
    server = init_probes(True, 0, "/probes/")
    try:
        port = server.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/probes/live", timeout=5) as response:
            assert response.read() == b'{"health":"OK"}'
    finally:
        server.shutdown()
        server.server_close()