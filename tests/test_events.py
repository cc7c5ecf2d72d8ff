import pytest

from nth_handler import events
from nth_handler.kube import KubeClient, KubeNode, NodeAddress
from nth_handler.models import (
    ASG_LIFECYCLE_KIND,
    SCHEDULED_EVENT_KIND,
    SPOT_ITN_KIND,
    SQS_TERMINATE_KIND,
    NodeMetadata,
)


@pytest.fixture(autouse=True)
def _reset_reason_version():
    yield
    events.set_reason_for_kind_version(1)


def _metadata():
    return NodeMetadata(
        account_id="123456789012",
        availability_zone="us-east-1a",
        instance_id="i-0abc",
        instance_life_cycle="spot",
        instance_type="m5.large",
        local_hostname="ip-10-0-0-1",
        local_ip="10.0.0.1",
        public_hostname="ec2-public",
        public_ip="203.0.113.5",
        region="us-east-1",
    )


def _cluster_node():
    return KubeNode(
        name="node-a",
        labels={
            "topology.kubernetes.io/zone": "us-west-2b",
            "topology.kubernetes.io/region": "us-west-2",
            "node.kubernetes.io/instance-type": "c5.xlarge",
        },
        provider_id="aws:///us-west-2b/i-0def",
        addresses=[
            NodeAddress("InternalIP", "10.1.1.1"),
            NodeAddress("ExternalDNS", "ec2-dns"),
            NodeAddress("ExternalIP", "198.51.100.7"),
            NodeAddress("Hostname", "ignored-host"),
        ],
    )


def test_parse_extra_annotations_merges_pairs():
    base = {"account-id": "1"}
    result = events.parse_extra_annotations(base, "team=ops,env=prod")
    assert result == {"account-id": "1", "team": "ops", "env": "prod"}
    assert base == {"account-id": "1"}


def test_parse_extra_annotations_overrides_existing():
    result = events.parse_extra_annotations({"team": "old"}, "team=new")
    assert result["team"] == "new"


@pytest.mark.parametrize("bad", ["novalue", "a=b=c", "", "a=b,", "a=b,c"])
def test_parse_extra_annotations_rejects_malformed(bad):
    with pytest.raises(ValueError, match="error parsing annotations"):
        events.parse_extra_annotations({}, bad)


def test_generate_node_annotations_from_node():
    node = _cluster_node()
    result = events.generate_node_annotations(node, {"account-id": "42"})
    assert result["account-id"] == "42"
    assert result["availability-zone"] == "us-west-2b"
    assert result["region"] == "us-west-2"
    assert result["instance-type"] == "c5.xlarge"
    assert result["instance-id"] == "i-0def"
    assert result["local-hostname"] == "node-a"
    assert result["local-ipv4"] == "10.1.1.1"
    assert result["public-hostname"] == "ec2-dns"
    assert result["public-ipv4"] == "198.51.100.7"
    assert "ignored-host" not in result.values()


def test_generate_node_annotations_keeps_configured_addresses():
    node = _cluster_node()
    base = {"local-ipv4": "10.9.9.9", "public-ipv4": "192.0.2.1"}
    result = events.generate_node_annotations(node, base)
    assert result["local-ipv4"] == "10.9.9.9"
    assert result["public-ipv4"] == "192.0.2.1"
    assert result["public-hostname"] == "ec2-dns"


def test_generate_node_annotations_provider_id_without_slash():
    node = KubeNode(name="n", provider_id="i-plain")
    result = events.generate_node_annotations(node, {})
    assert result["instance-id"] == "i-plain"
    assert result["availability-zone"] == ""


def test_reason_v1_groups_sqs_events():
    assert events.reason_for_kind_v1(SPOT_ITN_KIND, SQS_TERMINATE_KIND) == "SQSTermination"
    assert events.reason_for_kind_v1(SPOT_ITN_KIND, "IMDS") == "SpotInterruption"
    assert events.reason_for_kind_v1(SCHEDULED_EVENT_KIND, "IMDS") == "ScheduledEvent"
    assert events.reason_for_kind_v1("bogus", "IMDS") == "UnknownInterruption"


def test_reason_v2_is_specific_for_sqs():
    assert events.reason_for_kind_v2(ASG_LIFECYCLE_KIND, SQS_TERMINATE_KIND) == "ASGLifecycle"
    assert events.reason_for_kind_v2("bogus", SQS_TERMINATE_KIND) == "UnknownInterruption"


def test_set_reason_version_switches_scheme():
    assert events.get_reason_for_kind(SPOT_ITN_KIND, SQS_TERMINATE_KIND) == "SQSTermination"
    events.set_reason_for_kind_version(2)
    assert events.get_reason_for_kind(SPOT_ITN_KIND, SQS_TERMINATE_KIND) == "SpotInterruption"


def test_set_reason_version_unknown_falls_back():
    events.set_reason_for_kind_version(2)
    with pytest.raises(ValueError, match="Unrecognized"):
        events.set_reason_for_kind_version(7)
    assert events.get_reason_for_kind(SPOT_ITN_KIND, SQS_TERMINATE_KIND) == "SQSTermination"


def test_disabled_recorder_emits_nothing():
    recorder = events.init_k8s_event_recorder(False, "node-a", False, _metadata(), "", None)
    assert recorder.enabled is False
    recorder.emit("node-a", events.NORMAL, events.CORDON_REASON, events.CORDON_MSG)
    assert recorder.events == []


def test_init_imds_mode_annotations():
    recorder = events.init_k8s_event_recorder(True, "node-a", False, _metadata(), "team=ops", None)
    assert recorder.enabled is True
    assert recorder.host == "node-a"
    assert recorder.annotations["account-id"] == "123456789012"
    assert recorder.annotations["instance-id"] == "i-0abc"
    assert recorder.annotations["local-ipv4"] == "10.0.0.1"
    assert recorder.annotations["team"] == "ops"


def test_init_sqs_mode_only_account():
    recorder = events.init_k8s_event_recorder(True, "node-a", True, _metadata(), "", KubeClient())
    assert recorder.annotations == {"account-id": "123456789012"}


def test_init_rejects_bad_extra_annotations():
    with pytest.raises(ValueError):
        events.init_k8s_event_recorder(True, "node-a", False, _metadata(), "broken", None)


def test_emit_imds_mode_records_event():
    recorder = events.init_k8s_event_recorder(True, "node-a", False, _metadata(), "", None)
    recorder.emit("node-a", events.NORMAL, events.CORDON_REASON, events.CORDON_MSG)
    assert len(recorder.events) == 1
    event = recorder.events[0]
    assert event.involved_object == events.ObjectReference("Node", "node-a", "default")
    assert event.annotations == recorder.annotations
    assert str(event) == "Normal Cordon Node successfully cordoned"
    assert event.source_component == "aws-node-termination-handler"


def test_emit_formats_message():
    recorder = events.init_k8s_event_recorder(True, "node-a", False, _metadata(), "", None)
    recorder.emit("node-a", events.WARNING, events.UNCORDON_ERR_REASON, events.UNCORDON_ERR_MSG_FMT, "boom")
    assert recorder.events[0].message == "There was a problem while trying to uncordon the node: boom"
    assert recorder.events[0].type == "Warning"


def test_emit_sqs_mode_missing_node_is_silent():
    recorder = events.init_k8s_event_recorder(True, "node-a", True, _metadata(), "", KubeClient())
    recorder.emit("node-a", events.NORMAL, events.CORDON_REASON, events.CORDON_MSG)
    assert recorder.events == []


def test_emit_sqs_mode_uses_node_annotations():
    client = KubeClient(nodes=[_cluster_node()])
    recorder = events.init_k8s_event_recorder(True, "handler", True, _metadata(), "", client)
    recorder.emit("node-a", events.NORMAL, events.CORDON_AND_DRAIN_REASON, events.CORDON_AND_DRAIN_MSG)
    assert len(recorder.events) == 1
    event = recorder.events[0]
    assert event.involved_object.name == "node-a"
    assert event.annotations["instance-id"] == "i-0def"
    assert event.annotations["account-id"] == "123456789012"
    assert event.message == events.CORDON_AND_DRAIN_MSG


def test_annotated_eventf_rejects_unknown_type():
    recorder = events.K8sEventRecorder(enabled=True)
    result = recorder.annotated_eventf(
        events.ObjectReference("Pod", "p", "ns"), {}, "Odd", "PodEviction", "x"
    )
    assert result is None
    assert recorder.events == []


def test_annotated_eventf_records_pod_event():
    recorder = events.K8sEventRecorder()
    ref = events.ObjectReference("Pod", "web-1", "apps")
    result = recorder.annotated_eventf(
        ref, {"node": "node-a"}, events.NORMAL, "PodEviction",
        "Pod evicted due to node drain (node %s)", "node-a",
    )
    assert result is recorder.events[0]
    assert result.involved_object == ref
    assert "Normal PodEviction Pod evicted due to node drain" in str(result)
    assert result.annotations == {"node": "node-a"}