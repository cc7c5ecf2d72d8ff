"""Liveness probe served over HTTP."""

from __future__ import annotations

import logging
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_HEALTH_BODY = b'{"health":"OK"}'


def liveness_response() -> tuple[int, dict[str, str], bytes]:
    """Return the status, headers and body of a healthy liveness response."""
    return HTTPStatus.OK, {"Content-Type": "application/json"}, _HEALTH_BODY


class LivenessHandler(BaseHTTPRequestHandler):
    """Answers the liveness endpoint with a JSON health document."""

    timeout = 1
    server: _ProbeServer

    def _matches(self) -> bool:
        path = urlsplit(self.path).path
        endpoint = self.server.endpoint
        return path == endpoint or (endpoint.endswith("/") and path.startswith(endpoint))

    def _handle(self) -> None:
        if not self._matches():
            self.send_error(HTTPStatus.NOT_FOUND)
            return
        status, headers, body = liveness_response()
        self.send_response(status)
        for name, value in headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command == "HEAD":
            return
        try:
            self.wfile.write(body)
        except OSError:
            logger.warning("Unable to write health response", exc_info=True)

    def do_GET(self) -> None:  # noqa: N802
        self._handle()

    def do_HEAD(self) -> None:  # noqa: N802
        self._handle()

    def do_POST(self) -> None:  # noqa: N802
        self._handle()

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        logger.debug(format, *args)


class _ProbeServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], endpoint: str) -> None:
        super().__init__(address, LivenessHandler)
        self.endpoint = endpoint


def init_probes(enabled: bool, port: int, endpoint: str) -> ThreadingHTTPServer | None:
    """Start serving the liveness endpoint when enabled; return the running server."""
    if not enabled:
        return None
    try:
        server = _ProbeServer(("", port), endpoint)
    except OSError:
        logger.exception("Failed to listen and serve http server")
        return None
    thread = threading.Thread(target=server.serve_forever, name="probe-server", daemon=True)
    thread.start()
    logger.info("Starting to serve handler %s, port %d", endpoint, server.server_address[1])
    return server