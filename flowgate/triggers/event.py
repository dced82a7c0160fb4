"""
Flowgate Event Trigger Handler

Named-topic event triggers over a pub/sub interface.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from flowgate.execution.context import get_path
from flowgate.types import Trigger, WorkflowEvent
from flowgate.triggers.manager import BaseTriggerHandler

logger = structlog.get_logger(__name__)


EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


class EventBus:
    """Pub/sub contract the event triggers depend on."""

    def subscribe(self, topic: str, handler: EventHandler) -> str:
        """Subscribe to a topic; returns a subscription id."""
        raise NotImplementedError

    def unsubscribe(self, subscription_id: str) -> bool:
        raise NotImplementedError

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class InMemoryEventBus(EventBus):
    """
    Process-local event bus.

    Handlers run in subscription order; a failing handler is logged and
    does not stop delivery to the others.
    """

    def __init__(self):
        self._subscriptions: Dict[str, tuple] = {}
        self._counter = 0
        self._published = 0

    def subscribe(self, topic: str, handler: EventHandler) -> str:
        self._counter += 1
        subscription_id = f"sub-{self._counter}"
        self._subscriptions[subscription_id] = (topic, handler)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
    ) -> None:
        event = WorkflowEvent(topic=topic, payload=payload, event_id=event_id)
        self._published += 1

        for sub_topic, handler in list(self._subscriptions.values()):
            if sub_topic != topic and sub_topic != "*":
                continue
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("event_handler_error", topic=topic, error=str(e))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "subscriptions": len(self._subscriptions),
            "published": self._published,
        }


class EventTriggerHandler(BaseTriggerHandler):
    """
    Handler for event triggers.

    Features:
    - One bus subscription per topic
    - Payload filters with dotted keys
    - At most one firing per (trigger, event_id) within the dedupe window
    """

    def __init__(self, manager):
        super().__init__(manager)
        self._by_topic: Dict[str, List[Trigger]] = {}
        self._subscriptions: Dict[str, str] = {}  # topic -> subscription id
        self._seen: Dict[str, "OrderedDict[str, None]"] = {}  # trigger id -> event ids

    async def register(self, trigger: Trigger) -> None:
        """Register an event trigger."""
        topic = trigger.config.topic
        self._by_topic.setdefault(topic, []).append(trigger)
        self._seen[trigger.id] = OrderedDict()

        if topic not in self._subscriptions:
            self._subscriptions[topic] = self.manager.event_bus.subscribe(topic, self.handle)

        logger.info(
            "event_trigger_registered",
            trigger_id=trigger.id,
            topic=topic,
            has_filter=bool(trigger.config.event_filter),
        )

    async def unregister(self, trigger: Trigger) -> None:
        """Unregister an event trigger."""
        topic = trigger.config.topic
        remaining = [t for t in self._by_topic.get(topic, []) if t.id != trigger.id]
        self._by_topic[topic] = remaining
        self._seen.pop(trigger.id, None)

        if not remaining and topic in self._subscriptions:
            self.manager.event_bus.unsubscribe(self._subscriptions.pop(topic))

        logger.info("event_trigger_unregistered", trigger_id=trigger.id)

    async def handle(self, event: WorkflowEvent) -> List[str]:
        """Fire every matching trigger for one delivered event."""
        run_ids = []

        for trigger in list(self._by_topic.get(event.topic, [])):
            if not trigger.config.enabled:
                continue

            if trigger.config.event_filter and not self._matches_filter(
                event.payload, trigger.config.event_filter
            ):
                continue

            dedupe_key = None
            if event.event_id:
                if self._is_seen(trigger, event.event_id):
                    logger.debug(
                        "event_duplicate",
                        trigger_id=trigger.id,
                        event_id=event.event_id,
                    )
                    continue
                dedupe_key = f"{trigger.id}:{event.event_id}"

            run_id = await self.manager.fire(
                trigger,
                {
                    "type": "event",
                    "topic": event.topic,
                    "payload": event.payload,
                    "event_id": event.event_id,
                },
                dedupe_key=dedupe_key,
            )
            if run_id:
                run_ids.append(run_id)
                if event.event_id:
                    # Failed dispatches stay eligible for redelivery
                    self._remember(trigger, event.event_id)

        return run_ids

    def _is_seen(self, trigger: Trigger, event_id: str) -> bool:
        seen = self._seen.get(trigger.id)
        if seen is None or event_id not in seen:
            return False
        seen.move_to_end(event_id)
        return True

    def _remember(self, trigger: Trigger, event_id: str) -> None:
        window = self.manager.config.event_dedupe_window
        if window <= 0:
            return
        seen = self._seen.setdefault(trigger.id, OrderedDict())
        seen[event_id] = None
        while len(seen) > window:
            seen.popitem(last=False)

    def _matches_filter(
        self,
        data: Dict[str, Any],
        filter_spec: Dict[str, Any],
    ) -> bool:
        """Check if data matches a filter specification."""
        for key, expected in filter_spec.items():
            if get_path(data, key) != expected:
                return False
        return True

    def topics(self) -> List[str]:
        return sorted(topic for topic, triggers in self._by_topic.items() if triggers)
