"""Webhook notifications about node drain events."""

from __future__ import annotations

import dataclasses
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .gotemplate import TemplateError, parse_template
from .models import InterruptionEvent, NodeMetadata

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5.0


class WebhookError(Exception):
    """Raised when the webhook template cannot be read, parsed or executed."""


@dataclass
class WebhookConfig:
    url: str = ""
    headers: str = ""
    template: str = ""
    template_file: str = ""
    proxy: str = ""


_METADATA_FIELDS = {
    "AccountId": "account_id",
    "AvailabilityZone": "availability_zone",
    "InstanceLifeCycle": "instance_life_cycle",
    "InstanceType": "instance_type",
    "LocalHostname": "local_hostname",
    "LocalIP": "local_ip",
    "PublicHostname": "public_hostname",
    "PublicIP": "public_ip",
    "Region": "region",
}

_EVENT_FIELDS = {
    "EventID": "event_id",
    "Kind": "kind",
    "Monitor": "monitor",
    "Description": "description",
    "State": "state",
    "NodeName": "node_name",
    "StartTime": "start_time",
    "EndTime": "end_time",
}


def _combined_data(node_metadata: NodeMetadata, event: InterruptionEvent) -> dict[str, Any]:
    metadata = {name: getattr(node_metadata, attr) for name, attr in _METADATA_FIELDS.items()}
    metadata["InstanceID"] = node_metadata.instance_id
    details = {name: getattr(event, attr) for name, attr in _EVENT_FIELDS.items()}
    details["InstanceID"] = event.instance_id
    data: dict[str, Any] = {**metadata, **details}
    data["InstanceID"] = event.instance_id or node_metadata.instance_id
    data["NodeMetadata"] = metadata
    data["InterruptionEvent"] = details
    return data


def _template_text(config: WebhookConfig) -> str:
    if not config.template_file:
        return config.template
    try:
        return Path(config.template_file).read_text()
    except OSError as exc:
        raise WebhookError(f"Webhook Error: Could not read template file {exc}") from exc


def render_webhook(template_text: str, node_metadata: NodeMetadata, event: InterruptionEvent) -> str:
    """Render the webhook body from the template and the event data."""
    try:
        template = parse_template(template_text)
    except TemplateError as exc:
        raise WebhookError(f"Unable to parse webhook template: {exc}") from exc
    try:
        return template.execute(_combined_data(node_metadata, event))
    except TemplateError as exc:
        raise WebhookError(f"Unable to execute webhook template: {exc}") from exc


def post(node_metadata: NodeMetadata, event: InterruptionEvent, config: WebhookConfig) -> bool:
    """Send the rendered notification; log any failure and return whether it succeeded."""
    try:
        body = render_webhook(_template_text(config), node_metadata, event)
    except WebhookError:
        logger.exception("Webhook Error: Template rendering failed")
        return False

    try:
        request = urllib.request.Request(config.url, data=body.encode("utf-8"), method="POST")
    except ValueError:
        logger.exception("Webhook Error: Http NewRequest failed")
        return False

    try:
        headers = json.loads(config.headers)
        if not isinstance(headers, dict) or not all(isinstance(v, str) for v in headers.values()):
            raise ValueError("headers must be a JSON object of strings")
    except ValueError:
        logger.exception("Webhook Error: Header Unmarshal failed")
        return False
    for key, value in headers.items():
        request.add_header(key, value)

    proxies = {"http": config.proxy, "https": config.proxy} if config.proxy else {}
    opener = urllib.request.build_opener(urllib.request.ProxyHandler(proxies))
    try:
        with opener.open(request, timeout=REQUEST_TIMEOUT) as response:
            status = response.status
            response.read()
    except urllib.error.HTTPError as exc:
        status = exc.code
        exc.close()
    except (urllib.error.URLError, OSError, ValueError):
        logger.exception("Webhook Error: Client Do failed")
        return False

    if not 200 <= status <= 299:
        logger.warning("Webhook Error: Received Non-Successful Status Code %d", status)
        return False
    logger.info("Webhook Success: Notification Sent!")
    return True


def validate_webhook_config(config: WebhookConfig) -> None:
    """Check that the configured template parses and executes; raise WebhookError if not."""
    if not config.url:
        return
    render_webhook(_template_text(config), NodeMetadata(), InterruptionEvent())


__all__ = [
    "WebhookConfig",
    "WebhookError",
    "post",
    "render_webhook",
    "validate_webhook_config",
    "dataclasses",
]