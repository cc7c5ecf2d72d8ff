"""Interruption handling for Kubernetes nodes: node actions, an in-memory cluster client, webhooks, events, metrics, probes and uptime."""

__version__ = "0.1.0"