"""In-memory Kubernetes objects, an API client and the drain helper built on it."""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

HOSTNAME_LABEL = "kubernetes.io/hostname"
LABELS_PATH = "/metadata/labels/"

MAX_RETRY_DEADLINE = 5.0
CONFLICT_RETRY_INTERVAL = 0.75


class ApiError(Exception):
    """An error reported by the Kubernetes API."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class ConflictError(ApiError):
    """The object was modified since it was read."""


class TaintEffect(str, Enum):
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


@dataclass
class Taint:
    key: str
    value: str = ""
    effect: TaintEffect = TaintEffect.NO_SCHEDULE


@dataclass
class NodeAddress:
    type: str
    address: str


@dataclass
class KubeNode:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    unschedulable: bool = False
    provider_id: str = ""
    taints: list[Taint] = field(default_factory=list)
    addresses: list[NodeAddress] = field(default_factory=list)
    resource_version: int = 0

    def copy(self) -> KubeNode:
        return copy.deepcopy(self)


@dataclass
class Pod:
    name: str = ""
    namespace: str = "default"
    node_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    generate_name: str = ""
    controller_kind: str = ""
    uses_empty_dir: bool = False


PodFilter = Callable[[Pod], bool]


def json_patch_escape(value: str) -> str:
    """Escape a key for use as a JSON pointer segment."""
    return value.replace("~", "~0").replace("/", "~1")


def _json_patch_unescape(value: str) -> str:
    return value.replace("~1", "/").replace("~0", "~")


class KubeClient:
    """A thread-safe in-memory store of nodes and pods with API-server semantics."""

    def __init__(self, nodes: Iterable[KubeNode] = (), pods: Iterable[Pod] = ()) -> None:
        self._nodes: dict[str, KubeNode] = {}
        self._pods: dict[tuple[str, str], Pod] = {}
        self._lock = threading.RLock()
        self._suffixes = itertools.count(1)
        for node in nodes:
            self.create_node(node)
        for pod in pods:
            self.create_pod(pod)

    # nodes

    def create_node(self, node: KubeNode) -> KubeNode:
        with self._lock:
            if node.name in self._nodes:
                raise ApiError(f'nodes "{node.name}" already exists')
            stored = node.copy()
            stored.resource_version = 1
            self._nodes[node.name] = stored
            return stored.copy()

    def _stored_node(self, name: str) -> KubeNode:
        try:
            return self._nodes[name]
        except KeyError:
            raise NotFoundError(f'nodes "{name}" not found') from None

    def get_node(self, name: str) -> KubeNode:
        with self._lock:
            return self._stored_node(name).copy()

    def list_nodes(self, hostnames: Iterable[str] | None = None) -> list[KubeNode]:
        """List nodes, optionally only those whose hostname label is among hostnames."""
        wanted = None if hostnames is None else set(hostnames)
        with self._lock:
            return [
                node.copy()
                for node in self._nodes.values()
                if wanted is None or node.labels.get(HOSTNAME_LABEL) in wanted
            ]

    def update_node(self, node: KubeNode) -> KubeNode:
        with self._lock:
            stored = self._stored_node(node.name)
            if node.resource_version != stored.resource_version:
                raise ConflictError(
                    f'Operation cannot be fulfilled on nodes "{node.name}": '
                    "the object has been modified; please apply your changes to the latest version"
                )
            updated = node.copy()
            updated.resource_version = stored.resource_version + 1
            self._nodes[node.name] = updated
            return updated.copy()

    def patch_node_labels(self, name: str, labels: dict[str, str | None]) -> KubeNode:
        """Merge labels into the node; a value of None removes the label."""
        with self._lock:
            updated = self._stored_node(name).copy()
            for key, value in labels.items():
                if value is None:
                    updated.labels.pop(key, None)
                else:
                    updated.labels[key] = value
            updated.resource_version += 1
            self._nodes[name] = updated
            return updated.copy()

    def patch_node_json(self, name: str, operations: list[dict[str, str]]) -> KubeNode:
        """Apply JSON patch operations on the node's labels, all or nothing."""
        with self._lock:
            updated = self._stored_node(name).copy()
            for operation in operations:
                op, path = operation.get("op"), operation.get("path", "")
                if not path.startswith(LABELS_PATH):
                    raise ApiError(f"unsupported patch path {path!r}")
                key = _json_patch_unescape(path[len(LABELS_PATH):])
                if op == "remove":
                    if key not in updated.labels:
                        raise ApiError(f"unable to remove nonexistent key: {key}")
                    del updated.labels[key]
                elif op in ("add", "replace"):
                    if op == "replace" and key not in updated.labels:
                        raise ApiError(f"replace operation does not apply: doc is missing key: {key}")
                    updated.labels[key] = str(operation.get("value", ""))
                else:
                    raise ApiError(f"unsupported patch operation {op!r}")
            updated.resource_version += 1
            self._nodes[name] = updated
            return updated.copy()

    # pods

    def create_pod(self, pod: Pod) -> Pod:
        with self._lock:
            stored = copy.deepcopy(pod)
            if not stored.name:
                if not stored.generate_name:
                    raise ApiError("pod name or generateName is required")
                stored.name = f"{stored.generate_name}{next(self._suffixes):05d}"
            key = (stored.namespace, stored.name)
            if key in self._pods:
                raise ApiError(f'pods "{stored.name}" already exists')
            self._pods[key] = stored
            return copy.deepcopy(stored)

    def list_pods(self, node_name: str | None = None, namespace: str | None = None) -> list[Pod]:
        with self._lock:
            return [
                copy.deepcopy(pod)
                for pod in self._pods.values()
                if (node_name is None or pod.node_name == node_name)
                and (namespace is None or pod.namespace == namespace)
            ]

    def delete_pod(self, namespace: str, name: str) -> None:
        with self._lock:
            if self._pods.pop((namespace, name), None) is None:
                raise NotFoundError(f'pods "{name}" not found')

    def evict_pod(self, namespace: str, name: str) -> None:
        self.delete_pod(namespace, name)


@dataclass
class DrainHelper:
    """Cordons nodes and removes their pods."""

    client: KubeClient | None = None
    force: bool = True
    grace_period_seconds: int = -1
    ignore_all_daemon_sets: bool = True
    delete_empty_dir_data: bool = True
    timeout: float = 120.0
    disable_eviction: bool = False
    additional_filters: list[PodFilter] = field(default_factory=list)

    def _client(self) -> KubeClient:
        if self.client is None:
            raise ApiError("no Kubernetes client configured")
        return self.client

    def run_cordon_or_uncordon(self, node: KubeNode, desired: bool) -> bool:
        """Set the node's unschedulable flag; return whether it changed."""
        if node.unschedulable == desired:
            return False
        client = self._client()
        fresh = client.get_node(node.name)
        if fresh.unschedulable == desired:
            return False
        fresh.unschedulable = desired
        client.update_node(fresh)
        return True

    def delete_or_evict_pods(self, pods: Iterable[Pod]) -> list[Pod]:
        """Remove the pods that pass the filters; return the pods removed."""
        client = self._client()
        selected: list[Pod] = []
        problems: list[str] = []
        for pod in pods:
            if not all(keep(pod) for keep in self.additional_filters):
                continue
            if pod.controller_kind == "DaemonSet":
                if not self.ignore_all_daemon_sets:
                    problems.append(f"cannot delete DaemonSet-managed Pods: {pod.namespace}/{pod.name}")
                continue
            if pod.uses_empty_dir and not self.delete_empty_dir_data:
                problems.append(f"cannot delete Pods with local storage: {pod.namespace}/{pod.name}")
                continue
            if not pod.controller_kind and not self.force:
                problems.append(f"cannot delete Pods not managed by a controller: {pod.namespace}/{pod.name}")
                continue
            selected.append(pod)
        if problems:
            raise ApiError("; ".join(problems))
        remove = client.delete_pod if self.disable_eviction else client.evict_pod
        for pod in selected:
            try:
                remove(pod.namespace, pod.name)
            except NotFoundError:
                continue
        return selected

    def run_node_drain(self, node_name: str) -> list[Pod]:
        """Remove every eligible pod scheduled on the node."""
        return self.delete_or_evict_pods(self._client().list_pods(node_name=node_name))


def taint_effect(effect: str) -> TaintEffect:
    """Map a configured effect name to a taint effect, defaulting to NoSchedule."""
    if effect == "PreferNoSchedule":
        return TaintEffect.PREFER_NO_SCHEDULE
    if effect == "NoExecute":
        return TaintEffect.NO_EXECUTE
    if effect != "NoSchedule":
        logger.warning("Unknown taint effect: %s", effect)
    return TaintEffect.NO_SCHEDULE


def add_taint_to_spec(node: KubeNode, taint_key: str, taint_value: str, effect: TaintEffect) -> bool:
    """Append the taint unless one with the same key exists; return whether it was added."""
    if any(taint.key == taint_key for taint in node.taints):
        logger.debug("Taint key %s already present on node %s", taint_key, node.name)
        return False
    node.taints.append(Taint(taint_key, taint_value, effect))
    return True


def _refetch(client: KubeClient, name: str) -> KubeNode:
    try:
        return client.get_node(name)
    except ApiError as exc:
        raise ApiError(f"failed to get node {name}: {exc}") from exc


def add_taint(
    node: KubeNode, client: KubeClient, taint_key: str, taint_value: str, effect: TaintEffect
) -> bool:
    """Add a taint to the node, retrying on conflicts; return whether the node changed."""
    deadline = time.monotonic() + MAX_RETRY_DEADLINE
    fresh = node.copy()
    refresh = False
    while True:
        if refresh:
            try:
                fresh = _refetch(client, node.name)
            except ApiError:
                logger.exception("Error while adding taint %s on node %s", taint_key, node.name)
                raise
        if not add_taint_to_spec(fresh, taint_key, taint_value, effect):
            if not refresh:
                refresh = True
                continue
            return False
        try:
            client.update_node(fresh)
        except ConflictError:
            if time.monotonic() < deadline:
                refresh = True
                time.sleep(CONFLICT_RETRY_INTERVAL)
                continue
            logger.exception("Error while adding taint %s on node %s", taint_key, node.name)
            raise
        except ApiError:
            logger.exception("Error while adding taint %s on node %s", taint_key, node.name)
            raise
        logger.warning("Successfully added taint %s on node %s", taint_key, node.name)
        return True


def remove_taint(node: KubeNode, client: KubeClient, taint_key: str) -> bool:
    """Remove the taint with this key, retrying on conflicts; return whether it was removed."""
    deadline = time.monotonic() + MAX_RETRY_DEADLINE
    fresh = node.copy()
    refresh = False
    while True:
        if refresh:
            fresh = _refetch(client, node.name)
        kept = [taint for taint in fresh.taints if taint.key != taint_key]
        if len(kept) == len(fresh.taints):
            if not refresh:
                refresh = True
                continue
            return False
        logger.info("Releasing taint %s on node %s", taint_key, node.name)
        fresh.taints = kept
        try:
            client.update_node(fresh)
        except ConflictError:
            if time.monotonic() < deadline:
                refresh = True
                time.sleep(CONFLICT_RETRY_INTERVAL)
                continue
            logger.exception("Error while releasing taint %s on node %s", taint_key, node.name)
            raise
        except ApiError:
            logger.exception("Error while releasing taint %s on node %s", taint_key, node.name)
            raise
        logger.info("Successfully released taint %s on node %s", taint_key, node.name)
        return True


def filter_pod_for_deletion(pod_name: str, pod_namespace: str) -> PodFilter:
    """Return a filter that keeps every pod except the named one (any namespace if empty)."""

    def keep(pod: Pod) -> bool:
        return not (pod.name == pod_name and (pod.namespace == pod_namespace or pod_namespace == ""))

    return keep