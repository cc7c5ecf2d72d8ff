import json
import threading
import time
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from nth_handler import webhook
from nth_handler.models import InterruptionEvent, NodeMetadata
from nth_handler.webhook import (
    WebhookConfig,
    WebhookError,
    post,
    render_webhook,
    validate_webhook_config,
)

TEST_HEADERS = '{"Content-type":"application/json"}'
TEST_TEMPLATE = (
    '{"text":"[NTH][Instance Interruption] EventID: {{ .EventID | trimPrefix "event" }} - '
    "Kind: {{ .Kind | lower }} - Node: {{ .NodeName }} - Description: {{ .Description }} - "
    'Start Time: {{ .StartTime }}"}'
)


class _Handler(BaseHTTPRequestHandler):
    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        self.server.requests.append((self.path, dict(self.headers), body))
        if self.server.delay:
            time.sleep(self.server.delay)
        try:
            self.send_response(self.server.status)
            self.send_header("Content-Length", "2")
            self.end_headers()
            self.wfile.write(b"OK")
        except OSError:
            pass

    def log_message(self, format, *args):  # noqa: A002
        pass


@pytest.fixture
def server():
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    httpd.daemon_threads = True
    httpd.requests = []
    httpd.status = 200
    httpd.delay = 0
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    httpd.url = f"http://127.0.0.1:{httpd.server_address[1]}"
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def _event():
    return InterruptionEvent(
        event_id="instance-event-0d59937288b749b32",
        kind="SCHEDULED_EVENT",
        description="Scheduled event will occur",
        state="active",
        start_time=datetime(2019, 1, 21, 9, 0, 43, tzinfo=timezone.utc),
        end_time=datetime(2019, 1, 21, 9, 17, 23, tzinfo=timezone.utc),
        node_name="e2e-test-abcd",
    )


def test_post_success(server):
    config = WebhookConfig(url=server.url + "/some/path", headers=TEST_HEADERS, template=TEST_TEMPLATE)
    assert post(NodeMetadata(), _event(), config) is True
    assert len(server.requests) == 1
    path, headers, body = server.requests[0]
    assert path == "/some/path"
    assert {k.lower(): v for k, v in headers.items()}["content-type"] == "application/json"
    assert json.loads(body)["text"] == (
        "[NTH][Instance Interruption] EventID: instance-event-0d59937288b749b32 - "
        "Kind: scheduled_event - Node: e2e-test-abcd - Description: Scheduled event will occur - "
        "Start Time: 2019-01-21 09:00:43 +0000 UTC"
    )


@pytest.mark.parametrize("template", ["{{ ", "{{.cat}}"])
def test_post_template_errors_send_nothing(server, template):
    config = WebhookConfig(url=server.url, headers=TEST_HEADERS, template=template)
    assert post(NodeMetadata(), InterruptionEvent(), config) is False
    assert server.requests == []


def test_post_new_request_error(server):
    config = WebhookConfig(url="\t", headers=TEST_HEADERS, template=TEST_TEMPLATE)
    assert post(NodeMetadata(), InterruptionEvent(), config) is False
    assert server.requests == []


def test_post_header_parse_fail(server):
    config = WebhookConfig(url=server.url, template=TEST_TEMPLATE)
    assert post(NodeMetadata(), InterruptionEvent(), config) is False
    assert server.requests == []


def test_post_timeout(server, monkeypatch):
    monkeypatch.setattr(webhook, "REQUEST_TIMEOUT", 0.3)
    server.delay = 1.0
    config = WebhookConfig(url=server.url, headers=TEST_HEADERS, template=TEST_TEMPLATE)
    assert post(NodeMetadata(), InterruptionEvent(), config) is False
    assert len(server.requests) == 1


def test_post_bad_response_code(server):
    server.status = 404
    config = WebhookConfig(url=server.url, headers=TEST_HEADERS, template=TEST_TEMPLATE)
    assert post(NodeMetadata(), InterruptionEvent(), config) is False
    assert len(server.requests) == 1


def test_post_uses_template_file(server, tmp_path):
    template_file = tmp_path / "template.json"
    template_file.write_text('{"node":"{{ .NodeName }}"}')
    config = WebhookConfig(url=server.url, headers=TEST_HEADERS, template_file=str(template_file))
    assert post(NodeMetadata(), _event(), config) is True
    assert json.loads(server.requests[0][2]) == {"node": "e2e-test-abcd"}


def test_validate_webhook_config():
    config = WebhookConfig()
    assert validate_webhook_config(config) is None

    config.url = "http://123.123.123"
    config.template = "{{ "
    with pytest.raises(WebhookError):
        validate_webhook_config(config)

    config.template = "{{.cat}}"
    with pytest.raises(WebhookError):
        validate_webhook_config(config)

    config.template = TEST_TEMPLATE
    assert validate_webhook_config(config) is None


def test_validate_missing_template_file(tmp_path):
    config = WebhookConfig(url="http://localhost", template_file=str(tmp_path / "absent"))
    with pytest.raises(WebhookError):
        validate_webhook_config(config)


def test_render_prefers_event_instance_id():
    metadata = NodeMetadata(instance_id="i-metadata", region="us-east-1")
    template = "{{ .InstanceID }} {{ .Region }} {{ .NodeMetadata.InstanceID }}"
    assert render_webhook(template, metadata, InterruptionEvent(instance_id="i-event")) == (
        "i-event us-east-1 i-metadata"
    )
    assert render_webhook("{{ .InstanceID }}", metadata, InterruptionEvent()) == "i-metadata"