# nth_handler

Building blocks for reacting to cloud instance interruptions on Kubernetes
nodes: spot interruption notices, scheduled maintenance, rebalance
recommendations and autoscaling lifecycle terminations. When such an event
arrives, a node can be cordoned and drained, labelled and tainted, a webhook
notification sent, a Kubernetes event recorded and a counter incremented.

The package uses only the standard library and needs Python 3.10 or later.
Install the `test` extra to run the test suite with pytest.

## Modules

- **`nth_handler.node`**: `Node` performs the actions on a node.
  `cordon_and_drain`, `cordon`, `uncordon` and `is_unschedulable` handle
  scheduling; `mark_with_event_id`, `get_event_id`,
  `mark_for_uncordon_after_reboot`, `remove_nth_labels`, `get_node_labels`
  and `maybe_mark_for_exclusion_from_load_balancers` handle labels;
  `taint_spot_itn`, `taint_scheduled_maintenance`,
  `taint_rebalance_recommendation`, `taint_asg_lifecycle_termination` and
  `remove_nth_taints` handle taints (only when `NodeConfig.taint_node` is
  set; taint values are cut to 63 characters). `uncordon_if_rebooted`
  uncordons and cleans up a node that was marked for uncordoning and has
  rebooted since. With `NodeConfig.dry_run` set, actions are logged instead of
  carried out. Failures raise `NodeError`. `new_node` builds a `Node` from a
  `NodeConfig` and a client; `get_drain_helper` and `get_uptime_func` build
  its parts.
- **`nth_handler.kube`**: the node and pod records (`KubeNode`, `Pod`,
  `Taint`, `NodeAddress`), `KubeClient`, `DrainHelper` (cordon, uncordon and
  pod eviction), and the helpers `add_taint`, `remove_taint`,
  `add_taint_to_spec`, `taint_effect`, `json_patch_escape` and
  `filter_pod_for_deletion`. Taint updates retry on `ConflictError` for up to
  five seconds. API failures raise `ApiError` or its subclasses
  `NotFoundError` and `ConflictError`.
- **`nth_handler.uptime`**: `uptime_from_file` reads a `/proc/uptime`-style
  file; `system_uptime` returns whole seconds since boot on Linux and Windows.
  Failures, and other platforms, raise `UptimeError`.
- **`nth_handler.webhook`**: `render_webhook` renders a notification body
  from a template, a `NodeMetadata` and an `InterruptionEvent`; `post` sends
  it as configured by `WebhookConfig` (`url`, `headers` as a JSON object
  string, `template` or `template_file`, optional `proxy`), logs any failure
  and returns whether it succeeded; `validate_webhook_config` raises
  `WebhookError` if the template does not parse or execute.
- **`nth_handler.gotemplate`**: the template engine behind webhooks.
  `parse_template` accepts `{{ .Field }}` actions, pipelines with `|`,
  parentheses, `if`/`else if`/`else`/`end`, comments and `{{-`/`-}}` trimming,
  with helpers such as `lower`, `upper`, `trimPrefix`, `replace`, `default`,
  `printf` and `toJson`. `range`, `with`, `define`, `template` and `block` are
  not supported. Errors raise `TemplateError`.
- **`nth_handler.models`**: the `NodeMetadata` and `InterruptionEvent`
  dataclasses and the interruption kind constants.
- **`nth_handler.events`**: `K8sEventRecorder` records annotated events;
  `init_k8s_event_recorder` builds one from node metadata and extra
  `key=value,...` annotations (`parse_extra_annotations`).
  `get_reason_for_kind` maps an interruption kind to an event reason under the
  scheme chosen by `set_reason_for_kind_version` (1 or 2; any other version
  falls back to 1 and raises `ValueError`).
- **`nth_handler.metrics`**: `register_metrics` creates the action and error
  counters; `Metrics.exposition` renders them, with Python runtime figures, in
  Prometheus text format. Increments count only while `Metrics.enabled` is
  true. `init_metrics` also serves `/metrics` over HTTP when enabled.
- **`nth_handler.probes`**: `init_probes` serves a liveness endpoint that
  answers `{"health":"OK"}` and returns the running server.

## Examples

Cordoning a node:

```python
from nth_handler.kube import KubeClient, KubeNode
from nth_handler.node import NodeConfig, new_node

client = KubeClient(nodes=[KubeNode(name="worker-1")])
node = new_node(NodeConfig(node_name="worker-1"), client)
node.cordon("worker-1", "spot interruption")
print(client.get_node("worker-1").unschedulable)  # True
```

Rendering a webhook body:

```python
from nth_handler.models import InterruptionEvent, NodeMetadata
from nth_handler.webhook import render_webhook

event = InterruptionEvent(kind="SPOT_ITN", node_name="worker-1")
print(render_webhook("{{ .Kind | lower }} on {{ .NodeName }}", NodeMetadata(), event))
# spot_itn on worker-1
```

Counting node actions:

```python
from nth_handler.metrics import register_metrics

metrics = register_metrics()
metrics.enabled = True
metrics.node_actions_inc("cordon-and-drain", "node-a", "event-1", None)
metrics.node_actions_inc("cordon-and-drain", "node-b", "event-2", RuntimeError("drain failed"))
print(metrics.exposition())
```

Choosing how interruption kinds map to event reasons:

```python
from nth_handler.events import get_reason_for_kind, set_reason_for_kind_version

set_reason_for_kind_version(2)
print(get_reason_for_kind("SCHEDULED_EVENT", "SQS_TERMINATE"))  # ScheduledEvent
```

## What the package does not do

- It has no command and no long-running service that watches for
  interruptions; it does not poll instance metadata or a message queue.
  Callers decide when to invoke the node actions.
- `KubeClient` is an in-memory store with API-server semantics (resource
  versions, conflicts, JSON patches); it does not connect to a real cluster.
- `K8sEventRecorder` keeps recorded events in its `events` list; it does not
  send them to a cluster.