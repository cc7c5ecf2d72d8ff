"""Kubernetes events describing what the handler did to a node."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from .kube import ApiError, KubeClient, KubeNode, NotFoundError
from .models import (
    ASG_LIFECYCLE_KIND,
    REBALANCE_RECOMMENDATION_KIND,
    SCHEDULED_EVENT_KIND,
    SPOT_ITN_KIND,
    SQS_TERMINATE_KIND,
    STATE_CHANGE_KIND,
    NodeMetadata,
)

logger = logging.getLogger(__name__)

COMPONENT = "aws-node-termination-handler"

# Kubernetes event types, reasons and messages
NORMAL = "Normal"
WARNING = "Warning"
MONITOR_ERR_REASON = "MonitorError"
MONITOR_ERR_MSG_FMT = "There was a problem monitoring for events in monitor '%s'"
UNCORDON_ERR_REASON = "UncordonError"
UNCORDON_ERR_MSG_FMT = "There was a problem while trying to uncordon the node: %s"
UNCORDON_REASON = "Uncordon"
UNCORDON_MSG = "Node successfully uncordoned"
PRE_DRAIN_ERR_REASON = "PreDrainError"
PRE_DRAIN_ERR_MSG_FMT = "There was a problem executing the pre-drain task: %s"
PRE_DRAIN_REASON = "PreDrain"
PRE_DRAIN_MSG = "Pre-drain task successfully executed"
CORDON_ERR_REASON = "CordonError"
CORDON_ERR_MSG_FMT = "There was a problem while trying to cordon the node: %s"
CORDON_REASON = "Cordon"
CORDON_MSG = "Node successfully cordoned"
CORDON_AND_DRAIN_ERR_REASON = "CordonAndDrainError"
CORDON_AND_DRAIN_ERR_MSG_FMT = "There was a problem while trying to cordon and drain the node: %s"
CORDON_AND_DRAIN_REASON = "CordonAndDrain"
CORDON_AND_DRAIN_MSG = "Node successfully cordoned and drained"
POST_DRAIN_ERR_REASON = "PostDrainError"
POST_DRAIN_ERR_MSG_FMT = "There was a problem executing the post-drain task: %s"
POST_DRAIN_REASON = "PostDrain"
POST_DRAIN_MSG = "Post-drain task successfully executed"

# Interruption event reasons
SCHEDULED_EVENT_REASON = "ScheduledEvent"
SPOT_ITN_REASON = "SpotInterruption"
SQS_TERMINATION_REASON = "SQSTermination"
REBALANCE_RECOMMENDATION_REASON = "RebalanceRecommendation"
STATE_CHANGE_REASON = "StateChange"
ASG_LIFECYCLE_REASON = "ASGLifecycle"
UNKNOWN_REASON = "UnknownInterruption"

_REASONS_BY_KIND = {
    SCHEDULED_EVENT_KIND: SCHEDULED_EVENT_REASON,
    SPOT_ITN_KIND: SPOT_ITN_REASON,
    REBALANCE_RECOMMENDATION_KIND: REBALANCE_RECOMMENDATION_REASON,
    STATE_CHANGE_KIND: STATE_CHANGE_REASON,
    ASG_LIFECYCLE_KIND: ASG_LIFECYCLE_REASON,
}

_VERB = re.compile(r"%([-+# 0]*\d*(?:\.\d+)?)([vsdqfx%])")


def _sprintf(fmt: str, *args: Any) -> str:
    remaining = list(args)

    def convert(match: re.Match[str]) -> str:
        flags, verb = match.groups()
        if verb == "%":
            return "%"
        if not remaining:
            return f"%!{verb}(MISSING)"
        arg = remaining.pop(0)
        if verb == "d":
            return format(int(arg), flags + "d") if flags else str(int(arg))
        if verb == "f":
            return format(float(arg), f"{flags}f")
        if verb == "x":
            return format(arg, "x") if isinstance(arg, int) else str(arg).encode().hex()
        if verb == "q":
            return '"' + str(arg).replace("\\", "\\\\").replace('"', '\\"') + '"'
        return str(arg)

    message = _VERB.sub(convert, fmt)
    if remaining:
        extra = ", ".join(f"{type(arg).__name__}={arg}" for arg in remaining)
        message += f"%!(EXTRA {extra})"
    return message


@dataclass(frozen=True)
class ObjectReference:
    """The object an event is about."""

    kind: str
    name: str
    namespace: str = ""


@dataclass(frozen=True)
class RecordedEvent:
    """A Kubernetes event as emitted by the recorder."""

    involved_object: ObjectReference
    annotations: dict[str, str]
    type: str
    reason: str
    message: str
    source_component: str = COMPONENT
    source_host: str = ""

    def __str__(self) -> str:
        return f"{self.type} {self.reason} {self.message}"


def _reference(obj: Any) -> ObjectReference:
    if isinstance(obj, ObjectReference):
        return obj
    if isinstance(obj, KubeNode):
        return ObjectReference("Node", obj.name)
    return ObjectReference(
        getattr(obj, "kind", type(obj).__name__),
        getattr(obj, "name", ""),
        getattr(obj, "namespace", ""),
    )


@dataclass
class K8sEventRecorder:
    """Records annotated Kubernetes events about nodes and pods."""

    annotations: dict[str, str] = field(default_factory=dict)
    client: KubeClient | None = None
    enabled: bool = False
    sqs_mode: bool = False
    host: str = ""
    component: str = COMPONENT
    events: list[RecordedEvent] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def emit(self, node_name: str, event_type: str, reason: str, msg_fmt: str, *args: Any) -> None:
        """Emit an event for the node, if the recorder is enabled."""
        if not self.enabled:
            return
        if self.sqs_mode:
            if self.client is None:
                logger.error("Emitting Kubernetes event failed: no Kubernetes client configured")
                return
            try:
                node = self.client.get_node(node_name)
            except NotFoundError:
                return
            except ApiError:
                logger.exception("Emitting Kubernetes event failed")
                return
            reference = ObjectReference("Node", node.name)
            annotations = generate_node_annotations(node, self.annotations)
        else:
            reference = ObjectReference("Node", node_name, "default")
            annotations = self.annotations
        self.annotated_eventf(reference, annotations, event_type, reason, msg_fmt, *args)

    def annotated_eventf(
        self,
        obj: Any,
        annotations: dict[str, str],
        event_type: str,
        reason: str,
        msg_fmt: str,
        *args: Any,
    ) -> RecordedEvent | None:
        """Record an event about obj with the given annotations; return it, or None if rejected."""
        if event_type not in (NORMAL, WARNING):
            logger.error("Unsupported event type: %r", event_type)
            return None
        event = RecordedEvent(
            involved_object=_reference(obj),
            annotations=dict(annotations),
            type=event_type,
            reason=reason,
            message=_sprintf(msg_fmt, *args),
            source_component=self.component,
            source_host=self.host,
        )
        with self._lock:
            self.events.append(event)
        logger.info(
            "Event(%s): type: '%s' reason: '%s' %s",
            event.involved_object,
            event.type,
            event.reason,
            event.message,
        )
        return event


def init_k8s_event_recorder(
    enabled: bool,
    node_name: str,
    sqs_mode: bool,
    node_metadata: NodeMetadata,
    extra_annotations: str,
    client: KubeClient | None,
) -> K8sEventRecorder:
    """Create an event recorder; a disabled one ignores every emit."""
    if not enabled:
        return K8sEventRecorder()

    annotations = {"account-id": node_metadata.account_id}
    if not sqs_mode:
        annotations.update(
            {
                "availability-zone": node_metadata.availability_zone,
                "instance-id": node_metadata.instance_id,
                "instance-life-cycle": node_metadata.instance_life_cycle,
                "instance-type": node_metadata.instance_type,
                "local-hostname": node_metadata.local_hostname,
                "local-ipv4": node_metadata.local_ip,
                "public-hostname": node_metadata.public_hostname,
                "public-ipv4": node_metadata.public_ip,
                "region": node_metadata.region,
            }
        )
    if extra_annotations:
        annotations = parse_extra_annotations(annotations, extra_annotations)

    return K8sEventRecorder(
        annotations=annotations,
        client=client,
        enabled=True,
        sqs_mode=sqs_mode,
        host=node_name,
    )


def parse_extra_annotations(annotations: dict[str, str], extra_annotations: str) -> dict[str, str]:
    """Merge comma separated key=value pairs into a copy of annotations."""
    merged = dict(annotations)
    for part in extra_annotations.split(","):
        key_value = part.split("=")
        if len(key_value) != 2:
            raise ValueError("error parsing annotations")
        merged[key_value[0]] = key_value[1]
    return merged


def generate_node_annotations(node: KubeNode, annotations: dict[str, str]) -> dict[str, str]:
    """Build the annotations for an event on the given node from its labels and addresses."""
    node_annotations = dict(annotations)
    node_annotations["availability-zone"] = node.labels.get("topology.kubernetes.io/zone", "")
    node_annotations["instance-id"] = node.provider_id[node.provider_id.rfind("/") + 1:]
    node_annotations["instance-type"] = node.labels.get("node.kubernetes.io/instance-type", "")
    node_annotations["local-hostname"] = node.name
    address_keys = {
        "InternalIP": "local-ipv4",
        "ExternalDNS": "public-hostname",
        "ExternalIP": "public-ipv4",
    }
    for address in node.addresses:
        key = address_keys.get(address.type)
        if key is not None and key not in annotations:
            node_annotations[key] = address.address
    node_annotations["region"] = node.labels.get("topology.kubernetes.io/region", "")
    return node_annotations


def reason_for_kind_v1(event_kind: str, monitor_kind: str) -> str:
    """Event reason for an interruption kind; every SQS event shares one reason."""
    if monitor_kind == SQS_TERMINATE_KIND:
        return SQS_TERMINATION_REASON
    return _REASONS_BY_KIND.get(event_kind, UNKNOWN_REASON)


def reason_for_kind_v2(event_kind: str, monitor_kind: str) -> str:
    """Event reason for an interruption kind, for IMDS and SQS events alike."""
    return _REASONS_BY_KIND.get(event_kind, UNKNOWN_REASON)


_reason_for_kind: Callable[[str, str], str] = reason_for_kind_v1


def set_reason_for_kind_version(version: int) -> None:
    """Select the reason scheme; an unknown version falls back to 1 and raises ValueError."""
    global _reason_for_kind
    if version == 1:
        _reason_for_kind = reason_for_kind_v1
    elif version == 2:
        _reason_for_kind = reason_for_kind_v2
    else:
        _reason_for_kind = reason_for_kind_v1
        raise ValueError(f"Unrecognized 'reason for kind' version: {version}, using version 1")


def get_reason_for_kind(event_kind: str, monitor_kind: str) -> str:
    """Event reason for an interruption kind under the selected scheme."""
    return _reason_for_kind(event_kind, monitor_kind)