"""Data carried between monitors, node actions and notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

SCHEDULED_EVENT_KIND = "SCHEDULED_EVENT"
SPOT_ITN_KIND = "SPOT_ITN"
REBALANCE_RECOMMENDATION_KIND = "REBALANCE_RECOMMENDATION"
STATE_CHANGE_KIND = "STATE_CHANGE"
ASG_LIFECYCLE_KIND = "ASG_LIFECYCLE"
SQS_TERMINATE_KIND = "SQS_TERMINATE"


@dataclass
class NodeMetadata:
    """Instance metadata describing the node the handler runs for."""

    account_id: str = ""
    availability_zone: str = ""
    instance_id: str = ""
    instance_life_cycle: str = ""
    instance_type: str = ""
    local_hostname: str = ""
    local_ip: str = ""
    public_hostname: str = ""
    public_ip: str = ""
    region: str = ""


@dataclass
class InterruptionEvent:
    """An interruption notice that may lead to draining a node."""

    event_id: str = ""
    kind: str = ""
    monitor: str = ""
    description: str = ""
    state: str = ""
    node_name: str = ""
    instance_id: str = ""
    start_time: datetime = field(default_factory=lambda: ZERO_TIME)
    end_time: datetime = field(default_factory=lambda: ZERO_TIME)