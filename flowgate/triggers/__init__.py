"""
Flowgate Triggers

Scheduled, event and threshold triggers producing run requests.
"""

from flowgate.triggers.manager import BaseTriggerHandler, TriggerManager, utc_now
from flowgate.triggers.event import EventBus, EventTriggerHandler, InMemoryEventBus
from flowgate.triggers.schedule import ScheduleTriggerHandler
from flowgate.triggers.threshold import ThresholdTriggerHandler

__all__ = [
    "BaseTriggerHandler",
    "EventBus",
    "EventTriggerHandler",
    "InMemoryEventBus",
    "ScheduleTriggerHandler",
    "ThresholdTriggerHandler",
    "TriggerManager",
    "utc_now",
]
