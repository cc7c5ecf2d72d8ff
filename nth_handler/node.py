"""Cordon, drain, label and taint a Kubernetes node in response to interruption events."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .events import NORMAL, ObjectReference
from .kube import (
    ApiError,
    DrainHelper,
    KubeClient,
    KubeNode,
    Pod,
    add_taint,
    filter_pod_for_deletion,
    json_patch_escape,
    remove_taint,
    taint_effect,
)
from .uptime import system_uptime, uptime_from_file

logger = logging.getLogger(__name__)

UNCORDON_AFTER_REBOOT_LABEL_VAL = "UncordonAfterReboot"
ACTION_LABEL_KEY = "aws-node-termination-handler/action"
ACTION_LABEL_TIME_KEY = "aws-node-termination-handler/action-time"
EVENT_ID_LABEL_KEY = "aws-node-termination-handler/event-id"
EXCLUDE_FROM_LOAD_BALANCERS_LABEL_KEY = "node.kubernetes.io/exclude-from-external-load-balancers"
# A distinctive value lets the handler tell its own exclusion label apart.
EXCLUDE_FROM_LOAD_BALANCERS_LABEL_VALUE = "aws-node-termination-handler"

SPOT_INTERRUPTION_TAINT = "aws-node-termination-handler/spot-itn"
SCHEDULED_MAINTENANCE_TAINT = "aws-node-termination-handler/scheduled-maintenance"
ASG_LIFECYCLE_TERMINATION_TAINT = "aws-node-termination-handler/asg-lifecycle-termination"
REBALANCE_RECOMMENDATION_TAINT = "aws-node-termination-handler/rebalance-recommendation"

NTH_TAINTS = (
    SPOT_INTERRUPTION_TAINT,
    SCHEDULED_MAINTENANCE_TAINT,
    ASG_LIFECYCLE_TERMINATION_TAINT,
    REBALANCE_RECOMMENDATION_TAINT,
)

MAX_TAINT_VALUE_LENGTH = 63

POD_EVICT_REASON = "PodEviction"
POD_EVICT_MSG_FMT = "Pod evicted due to node drain (node %s)"

_PROVIDER_HOSTNAME_LABEL = "kubernetes.io/hostname="
_UNIX_TIME = re.compile(r"[+-]?[0-9]+")

UptimeFunc = Callable[[], int]


class NodeError(Exception):
    """Raised when an operation on the Kubernetes node fails."""


class Recorder(Protocol):
    def annotated_eventf(
        self,
        obj: Any,
        annotations: dict[str, str],
        event_type: str,
        reason: str,
        msg_fmt: str,
        *args: Any,
    ) -> Any: ...


@dataclass
class NodeConfig:
    """Settings that govern how the handler treats its node."""

    node_name: str = ""
    dry_run: bool = False
    exclude_from_load_balancers: bool = False
    use_api_server_cache_to_list_pods: bool = False
    taint_node: bool = False
    taint_effect: str = "NoSchedule"
    pod_name: str = ""
    pod_namespace: str = ""
    delete_local_data: bool = True
    ignore_daemon_sets: bool = True
    pod_termination_grace_period: int = -1
    node_termination_grace_period: int = 120
    uptime_from_file: str = ""


class Node:
    """A Kubernetes node manipulated through the API server."""

    def __init__(self, config: NodeConfig, drain_helper: DrainHelper, uptime: UptimeFunc) -> None:
        self._config = config
        self._drain_helper = drain_helper
        self._uptime = uptime

    # draining and scheduling

    def cordon_and_drain(self, node_name: str, reason: str, recorder: Recorder | None) -> None:
        """Cordon the node and evict its pods, emitting an event per pod when a recorder is given."""
        if self._config.dry_run:
            logger.info(
                "Node %s would have been cordoned and drained (reason: %s), but dry-run flag was set.",
                node_name,
                reason,
            )
            return
        self.maybe_mark_for_exclusion_from_load_balancers(node_name)
        self.cordon(node_name, reason)
        # The node's real name may differ from node_name after the hostname lookup.
        node = self._fetch_kubernetes_node(node_name)
        pods: list[Pod] | None = None
        logger.info("Draining the node")
        if recorder is not None:
            try:
                pods = self._fetch_all_pods(node.name)
            except (ApiError, NodeError):
                pods = None
            for pod in pods or []:
                annotations = {"node": node_name, **pod.labels}
                recorder.annotated_eventf(
                    ObjectReference("Pod", pod.name, pod.namespace),
                    annotations,
                    NORMAL,
                    POD_EVICT_REASON,
                    POD_EVICT_MSG_FMT,
                    node_name,
                )
        try:
            if self._config.use_api_server_cache_to_list_pods:
                if pods is not None:
                    self._drain_helper.delete_or_evict_pods(pods)
            else:
                self._drain_helper.run_node_drain(node.name)
        except ApiError as exc:
            raise NodeError(f"Unable to drain node {node.name}: {exc}") from exc

    def cordon(self, node_name: str, reason: str) -> None:
        """Mark the node unschedulable."""
        if self._config.dry_run:
            logger.info(
                "Node %s would have been cordoned (reason: %s), but dry-run flag was set",
                node_name,
                reason,
            )
            return
        node = self._fetch_kubernetes_node(node_name)
        try:
            self._drain_helper.run_cordon_or_uncordon(node, True)
        except ApiError as exc:
            raise NodeError(f"Unable to cordon node {node.name}: {exc}") from exc

    def uncordon(self, node_name: str) -> None:
        """Mark the node schedulable again."""
        if self._config.dry_run:
            logger.info("Node %s would have been uncordoned, but dry-run flag was set", node_name)
            return
        try:
            node = self._fetch_kubernetes_node(node_name)
        except NodeError as exc:
            raise NodeError(
                f"There was an error fetching the node in preparation for uncordoning: {exc}"
            ) from exc
        try:
            self._drain_helper.run_cordon_or_uncordon(node, False)
        except ApiError as exc:
            raise NodeError(f"Unable to uncordon node {node.name}: {exc}") from exc

    def is_unschedulable(self, node_name: str) -> bool:
        """Return whether the node is cordoned; always False in dry-run mode."""
        if self._config.dry_run:
            logger.info("IsUnschedulable returning false since dry-run is set")
            return False
        return self._fetch_kubernetes_node(node_name).unschedulable

    # labels

    def mark_with_event_id(self, node_name: str, event_id: str) -> None:
        """Label the node with the drain event id so it can be recognised after a restart."""
        try:
            self._add_label(node_name, EVENT_ID_LABEL_KEY, event_id, skip_existing=False)
        except NodeError as exc:
            raise NodeError(
                f"Unable to label node with event ID {EVENT_ID_LABEL_KEY}={event_id}: {exc}"
            ) from exc

    def maybe_mark_for_exclusion_from_load_balancers(self, node_name: str) -> None:
        """Label the node for exclusion from external load balancers, if configured."""
        if not self._config.exclude_from_load_balancers:
            logger.debug(
                "Not marking for exclusion from load balancers because the configuration flag is not set"
            )
            return
        try:
            self._add_label(
                node_name,
                EXCLUDE_FROM_LOAD_BALANCERS_LABEL_KEY,
                EXCLUDE_FROM_LOAD_BALANCERS_LABEL_VALUE,
                skip_existing=True,
            )
        except NodeError as exc:
            raise NodeError(f"Unable to label node for exclusion from load balancers: {exc}") from exc

    def remove_nth_labels(self, node_name: str) -> None:
        """Remove the handler's event id and action labels from the node."""
        for label in (EVENT_ID_LABEL_KEY, ACTION_LABEL_KEY, ACTION_LABEL_TIME_KEY):
            try:
                self._remove_label(node_name, label)
            except NodeError as exc:
                raise NodeError(f"Unable to remove {label} from node: {exc}") from exc
        try:
            self._remove_label_if_value_matches(
                node_name,
                EXCLUDE_FROM_LOAD_BALANCERS_LABEL_KEY,
                EXCLUDE_FROM_LOAD_BALANCERS_LABEL_VALUE,
            )
        except NodeError as exc:
            raise NodeError(
                f"Unable to remove {EXCLUDE_FROM_LOAD_BALANCERS_LABEL_KEY} from node: {exc}"
            ) from exc

    def get_event_id(self, node_name: str) -> str:
        """Return the event id stored in the node's label."""
        try:
            node = self._fetch_kubernetes_node(node_name)
        except NodeError as exc:
            raise NodeError(f"Could not get event ID label from node: {exc}") from exc
        value = node.labels.get(EVENT_ID_LABEL_KEY)
        if value is None:
            if self._config.dry_run:
                logger.warning(
                    "Would have returned Error: 'Event ID Label %s was not found on the node', "
                    "but dry-run flag was set",
                    EVENT_ID_LABEL_KEY,
                )
                return ""
            raise NodeError(f"Event ID Label {EVENT_ID_LABEL_KEY} was not found on the node")
        return value

    def mark_for_uncordon_after_reboot(self, node_name: str) -> None:
        """Label the node so it is uncordoned once it has rebooted."""
        try:
            self._add_label(node_name, ACTION_LABEL_KEY, UNCORDON_AFTER_REBOOT_LABEL_VAL, skip_existing=False)
        except NodeError as exc:
            raise NodeError(
                f"Unable to label node with action to uncordon after system-reboot: {exc}"
            ) from exc
        message = "Unable to label node with action time for uncordon after system-reboot"
        try:
            self._add_label(node_name, ACTION_LABEL_TIME_KEY, str(int(time.time())), skip_existing=False)
        except NodeError as exc:
            try:
                self._remove_label(node_name, ACTION_LABEL_KEY)
            except NodeError as rollback_exc:
                raise NodeError(
                    f'{message} and unable to rollback action label "{ACTION_LABEL_KEY}": {rollback_exc}'
                ) from rollback_exc
            raise NodeError(f"{message}: {exc}") from exc

    def get_node_labels(self, node_name: str) -> dict[str, str]:
        """Return the node's labels; empty in dry-run mode."""
        if self._config.dry_run:
            logger.info("Node %s labels would have been fetched, but dry-run flag was set", node_name)
            return {}
        return dict(self._fetch_kubernetes_node(node_name).labels)

    def get_node_name_from_provider_id(self, provider_id: str) -> str:
        """Return the name of the node with the given provider id."""
        if self._config.dry_run:
            return ""
        try:
            nodes = self._client().list_nodes()
        except ApiError as exc:
            logger.error("Error when trying to list nodes to find node with ProviderID: %s", exc)
            raise NodeError(str(exc)) from exc
        for node in nodes:
            if node.provider_id == provider_id:
                hostname = node.labels.get(_PROVIDER_HOSTNAME_LABEL)
                return hostname if hostname is not None else node.name
        raise NodeError(f"Node with ProviderID '{provider_id}' was not found in the cluster")

    # taints

    def taint_spot_itn(self, node_name: str, event_id: str) -> None:
        """Taint the node for a spot interruption notice."""
        self._taint(node_name, SPOT_INTERRUPTION_TAINT, event_id)

    def taint_asg_lifecycle_termination(self, node_name: str, event_id: str) -> None:
        """Taint the node for an auto scaling group lifecycle termination."""
        self._taint(node_name, ASG_LIFECYCLE_TERMINATION_TAINT, event_id)

    def taint_rebalance_recommendation(self, node_name: str, event_id: str) -> None:
        """Taint the node for a rebalance recommendation."""
        self._taint(node_name, REBALANCE_RECOMMENDATION_TAINT, event_id)

    def taint_scheduled_maintenance(self, node_name: str, event_id: str) -> None:
        """Taint the node for scheduled maintenance."""
        self._taint(node_name, SCHEDULED_MAINTENANCE_TAINT, event_id)

    def remove_nth_taints(self, node_name: str) -> None:
        """Remove every taint the handler may have added."""
        if not self._config.taint_node:
            return
        node = self._fetch_for_taint(node_name)
        client = self._client()
        for taint in NTH_TAINTS:
            try:
                remove_taint(node, client, taint)
            except ApiError as exc:
                raise NodeError(f"Unable to clean taint {taint} from node {node_name}") from exc

    # pods

    def log_pods(self, pod_names: list[str], node_name: str) -> None:
        """Log the names of the pods on the node."""
        logger.info("Pods on node %s: %s", node_name, ", ".join(pod_names))

    def fetch_pod_name_list(self, node_name: str) -> list[str]:
        """Return the names of all pods running on the node."""
        return [pod.name for pod in self._fetch_all_pods(node_name)]

    # reboot handling

    def is_labeled_with_action(self, node_name: str) -> bool:
        """Return whether the node carries both the action and the event id labels."""
        try:
            node = self._fetch_kubernetes_node(node_name)
        except NodeError as exc:
            raise NodeError(f"Unable to fetch kubernetes node from API: {exc}") from exc
        return ACTION_LABEL_KEY in node.labels and EVENT_ID_LABEL_KEY in node.labels

    def uncordon_if_rebooted(self, node_name: str) -> None:
        """Uncordon and clean up the node if it was marked and has rebooted since."""
        try:
            node = self._fetch_kubernetes_node(node_name)
        except NodeError as exc:
            raise NodeError(f"Unable to fetch kubernetes node from API: {exc}") from exc
        time_value = node.labels.get(ACTION_LABEL_TIME_KEY)
        if time_value is None:
            logger.debug("There was no %s label found requiring action label handling", ACTION_LABEL_TIME_KEY)
            return
        if not _UNIX_TIME.fullmatch(time_value):
            raise NodeError(f"Cannot convert unix time: invalid syntax {time_value!r}")
        seconds_since_label = int(time.time()) - int(time_value)
        if node.labels.get(ACTION_LABEL_KEY) != UNCORDON_AFTER_REBOOT_LABEL_VAL:
            logger.debug("There are no label actions to handle.")
            return
        if seconds_since_label < self._uptime():
            logger.debug("The system has not restarted yet.")
            return
        try:
            self.uncordon(node_name)
        except NodeError as exc:
            raise NodeError(f"Unable to uncordon node: {exc}") from exc
        self.remove_nth_labels(node_name)
        self.remove_nth_taints(node_name)
        logger.info("Successfully completed action %s.", UNCORDON_AFTER_REBOOT_LABEL_VAL)

    # internals

    def _client(self) -> KubeClient:
        client = self._drain_helper.client
        if client is None:
            raise NodeError("no Kubernetes client configured")
        return client

    def _fetch_kubernetes_node(self, node_name: str) -> KubeNode:
        if self._config.dry_run:
            return KubeNode(name=node_name)
        client = self._client()
        short_name = node_name.split(".")[0]
        try:
            matching = client.list_nodes(hostnames=[node_name, short_name])
        except ApiError:
            matching = []
        if matching:
            return matching[0]
        logger.warning("Unable to list Nodes w/ label, falling back to direct Get lookup of node")
        try:
            return client.get_node(node_name)
        except ApiError as exc:
            raise NodeError(str(exc)) from exc

    def _fetch_for_taint(self, node_name: str) -> KubeNode:
        try:
            return self._fetch_kubernetes_node(node_name)
        except NodeError as exc:
            raise NodeError(f"Unable to fetch kubernetes node from API: {exc}") from exc

    def _fetch_all_pods(self, node_name: str) -> list[Pod]:
        if self._config.dry_run:
            logger.info("Would have retrieved running pod list on node %s, but dry-run flag was set", node_name)
            return []
        try:
            return self._client().list_pods(node_name=node_name)
        except ApiError as exc:
            raise NodeError(str(exc)) from exc

    def _add_label(self, node_name: str, key: str, value: str, skip_existing: bool) -> None:
        node = self._fetch_kubernetes_node(node_name)
        if skip_existing and key in node.labels:
            return
        if self._config.dry_run:
            logger.info(
                "Would have added label (%s=%s) to node %s, but dry-run flag was set", key, value, node_name
            )
            return
        try:
            self._client().patch_node_labels(node.name, {key: value})
        except ApiError as exc:
            raise NodeError(f"{node.name} node Patch failed when adding a label to the node: {exc}") from exc

    def _remove_patch(self, node: KubeNode, key: str, node_name: str) -> None:
        if self._config.dry_run:
            logger.info(
                "Would have removed label with key %s from node %s, but dry-run flag was set", key, node_name
            )
            return
        operations = [{"op": "remove", "path": f"/metadata/labels/{json_patch_escape(key)}"}]
        try:
            self._client().patch_node_json(node.name, operations)
        except ApiError as exc:
            raise NodeError(
                f"{node.name} node Patch failed when removing a label from the node: {exc}"
            ) from exc

    def _remove_label(self, node_name: str, key: str) -> None:
        node = self._fetch_kubernetes_node(node_name)
        self._remove_patch(node, key, node_name)

    def _remove_label_if_value_matches(self, node_name: str, key: str, match_value: str) -> None:
        """Remove the label unless it is absent or holds exactly match_value."""
        node = self._fetch_kubernetes_node(node_name)
        value = node.labels.get(key)
        if value is None or value == match_value:
            return
        self._remove_patch(node, key, node_name)

    def _taint(self, node_name: str, taint_key: str, event_id: str) -> None:
        if not self._config.taint_node:
            return
        node = self._fetch_for_taint(node_name)
        taint_value = event_id[:MAX_TAINT_VALUE_LENGTH]
        effect = taint_effect(self._config.taint_effect)
        if self._config.dry_run:
            logger.info(
                "Would have added taint (%s=%s:%s) to node %s, but dry-run flag was set",
                taint_key,
                taint_value,
                effect.value,
                self._config.node_name,
            )
            return
        try:
            add_taint(node, self._client(), taint_key, taint_value, effect)
        except ApiError as exc:
            raise NodeError(f"Unable to add taint {taint_key} to node {node.name}: {exc}") from exc


def get_drain_helper(config: NodeConfig, client: KubeClient | None) -> DrainHelper:
    """Build the drain helper for the configuration; dry-run mode gets no client."""
    return DrainHelper(
        client=None if config.dry_run else client,
        force=True,
        grace_period_seconds=config.pod_termination_grace_period,
        ignore_all_daemon_sets=config.ignore_daemon_sets,
        delete_empty_dir_data=config.delete_local_data,
        timeout=float(config.node_termination_grace_period),
        additional_filters=[filter_pod_for_deletion(config.pod_name, config.pod_namespace)],
    )


def get_uptime_func(uptime_file: str) -> UptimeFunc:
    """Return an uptime source reading uptime_file if given, else the system's own."""
    if uptime_file:
        return lambda: uptime_from_file(uptime_file)
    return system_uptime


def new_node(config: NodeConfig, client: KubeClient | None) -> Node:
    """Create a Node with a drain helper and uptime source built from the configuration."""
    return Node(config, get_drain_helper(config, client), get_uptime_func(config.uptime_from_file))