"""Action and error counters exposed over HTTP in Prometheus text format."""

from __future__ import annotations

import gc
import logging
import re
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

METRICS_ENDPOINT = "/metrics"
SCOPE_NAME = "aws.node.termination.handler"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

LABEL_EVENT_ERROR_WHERE = "event/error/where"
LABEL_NODE_ACTION = "node/action"
LABEL_NODE_STATUS = "node/status"
LABEL_NODE_NAME = "node/name"
LABEL_EVENT_ID = "node/event-id"

LabelSet = tuple[tuple[str, str], ...]

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def _sanitize(name: str) -> str:
    sanitized = _INVALID_NAME_CHARS.sub("_", name)
    if sanitized[:1].isdigit():
        sanitized = "_" + sanitized
    return sanitized


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class Counter:
    """A monotonically increasing integer counter partitioned by label sets."""

    def __init__(self, name: str, description: str) -> None:
        self.name = name
        self.description = description
        self._values: dict[LabelSet, int] = {}
        self._lock = threading.Lock()

    def add(self, value: int, labels: dict[str, str] | None = None) -> None:
        """Add a non-negative value to the series identified by labels."""
        if value < 0:
            raise ValueError("counter increments must be non-negative")
        key: LabelSet = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value

    def samples(self) -> dict[LabelSet, int]:
        """Return a snapshot of every series and its current value."""
        with self._lock:
            return dict(self._values)

    def _exposition_lines(self, scope_name: str) -> list[str]:
        metric = _sanitize(self.name) + "_total"
        lines = [f"# HELP {metric} {self.description}", f"# TYPE {metric} counter"]
        for labels, value in sorted(self.samples().items()):
            pairs = [(_sanitize(key), val) for key, val in labels]
            pairs += [("otel_scope_name", scope_name), ("otel_scope_version", "")]
            rendered = ",".join(f'{key}="{_escape(val)}"' for key, val in sorted(pairs))
            lines.append(f"{metric}{{{rendered}}} {value}")
        return lines


def _runtime_lines() -> list[str]:
    lines = [
        "# HELP python_gc_collections_total Number of garbage collections per generation.",
        "# TYPE python_gc_collections_total counter",
    ]
    for generation, stats in enumerate(gc.get_stats()):
        lines.append(f'python_gc_collections_total{{generation="{generation}"}} {stats["collections"]}')
    lines += [
        "# HELP python_gc_objects_pending Objects pending collection per generation.",
        "# TYPE python_gc_objects_pending gauge",
    ]
    for generation, count in enumerate(gc.get_count()):
        lines.append(f'python_gc_objects_pending{{generation="{generation}"}} {count}')
    lines += [
        "# HELP python_threads Number of threads that currently exist.",
        "# TYPE python_threads gauge",
        f"python_threads {threading.active_count()}",
    ]
    return lines


@dataclass
class Metrics:
    """The handler's counters; increments are ignored unless enabled."""

    actions_counter: Counter
    actions_counter_v2: Counter
    error_events_counter: Counter
    enabled: bool = False
    scope_name: str = SCOPE_NAME

    def error_events_inc(self, where: str) -> None:
        """Count one event-processing error at the given place."""
        if not self.enabled:
            return
        self.error_events_counter.add(1, {LABEL_EVENT_ERROR_WHERE: where})

    def node_actions_inc(
        self, action: str, node_name: str, event_id: str, err: BaseException | None
    ) -> None:
        """Count one node action, marked as success or error."""
        if not self.enabled:
            return
        status = "error" if err is not None else "success"
        self.actions_counter.add(
            1,
            {
                LABEL_NODE_ACTION: action,
                LABEL_NODE_NAME: node_name,
                LABEL_EVENT_ID: event_id,
                LABEL_NODE_STATUS: status,
            },
        )
        self.actions_counter_v2.add(1, {LABEL_NODE_ACTION: action, LABEL_NODE_STATUS: status})

    def exposition(self) -> str:
        """Render every metric in Prometheus text exposition format."""
        lines: list[str] = []
        for counter in (self.actions_counter, self.actions_counter_v2, self.error_events_counter):
            lines += counter._exposition_lines(self.scope_name)
        lines += _runtime_lines()
        return "\n".join(lines) + "\n"


def register_metrics() -> Metrics:
    """Create the counters, each started with an unlabelled zero series."""
    # The per-node counter has high label cardinality; the plain "actions" counter replaces it.
    actions_counter = Counter("actions.node", "Number of actions per node")
    actions_counter_v2 = Counter("actions", "Number of actions")
    error_events_counter = Counter("events.error", "Number of errors in events processing")
    for counter in (actions_counter, actions_counter_v2, error_events_counter):
        counter.add(0)
    return Metrics(
        actions_counter=actions_counter,
        actions_counter_v2=actions_counter_v2,
        error_events_counter=error_events_counter,
    )


class _MetricsHandler(BaseHTTPRequestHandler):
    server: _MetricsServer

    def do_GET(self) -> None:  # noqa: N802
        if urlsplit(self.path).path != METRICS_ENDPOINT:
            self.send_error(404)
            return
        body = self.server.metrics.exposition().encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", CONTENT_TYPE)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        logger.debug(format, *args)


class _MetricsServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], metrics: Metrics) -> None:
        super().__init__(address, _MetricsHandler)
        self.metrics = metrics


def serve_metrics(metrics: Metrics, port: int) -> ThreadingHTTPServer:
    """Serve the metrics on the given port in a background thread and return the server."""
    server = _MetricsServer(("", port), metrics)
    thread = threading.Thread(target=server.serve_forever, name="metrics-server", daemon=True)
    thread.start()
    logger.info("Starting to serve handler %s, port %d", METRICS_ENDPOINT, server.server_address[1])
    return server


def init_metrics(enabled: bool, port: int) -> Metrics:
    """Register the metrics and, when enabled, expose them over HTTP."""
    metrics = register_metrics()
    metrics.enabled = enabled
    if enabled:
        try:
            serve_metrics(metrics, port)
        except OSError:
            logger.exception("Failed to listen and serve http server")
    return metrics