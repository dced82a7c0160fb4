"""
Flowgate Capabilities

Pluggable step handlers and notification sinks.
"""

from flowgate.capabilities.notification import (
    LogNotifier,
    NotificationDispatcher,
    Notifier,
    WebhookNotifier,
)
from flowgate.capabilities.registry import (
    Capability,
    CapabilityInfo,
    CapabilityRegistry,
    CapabilityRequest,
    FunctionCapability,
)

__all__ = [
    "Capability",
    "CapabilityInfo",
    "CapabilityRegistry",
    "CapabilityRequest",
    "FunctionCapability",
    "LogNotifier",
    "NotificationDispatcher",
    "Notifier",
    "WebhookNotifier",
]
