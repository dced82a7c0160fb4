"""
Flowgate Trigger Manager

Manages scheduled, event and threshold triggers and turns firings into
run requests.
"""

from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

import pytz
import structlog

from flowgate.core.config import TriggerSettings
from flowgate.types import (
    MetricSample,
    RunRequest,
    Trigger,
    TriggerType,
    WorkflowDefinition,
)

if TYPE_CHECKING:
    from flowgate.triggers.event import EventBus

logger = structlog.get_logger(__name__)


Dispatcher = Callable[[RunRequest], Awaitable[Optional[str]]]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(pytz.utc)


class TriggerManager:
    """
    Manages workflow triggers.

    Features:
    - Schedule (cron) triggers with catch-up of missed ticks
    - Edge-triggered metric thresholds
    - Event topic subscriptions with de-duplication
    - Persisted schedule state

    Firings become RunRequests handed to the dispatcher; the manager never
    touches runs itself.
    """

    def __init__(
        self,
        config: Optional[TriggerSettings] = None,
        event_bus: Optional["EventBus"] = None,
        clock: Clock = utc_now,
    ):
        from flowgate.triggers.event import EventTriggerHandler, InMemoryEventBus
        from flowgate.triggers.schedule import ScheduleTriggerHandler
        from flowgate.triggers.threshold import ThresholdTriggerHandler

        self.config = config or TriggerSettings()
        self.event_bus = event_bus if event_bus is not None else InMemoryEventBus()
        self.clock = clock

        self._dispatcher: Optional[Dispatcher] = None

        # Registered triggers by workflow key and by id
        self._triggers: Dict[str, List[Trigger]] = {}
        self._trigger_instances: Dict[str, Trigger] = {}

        # Persisted state waiting for its trigger to register
        self._saved_state: Dict[str, Dict[str, Any]] = {}

        # Trigger handlers
        self.schedule = ScheduleTriggerHandler(self)
        self.threshold = ThresholdTriggerHandler(self)
        self.events = EventTriggerHandler(self)
        self._handlers: Dict[TriggerType, "BaseTriggerHandler"] = {
            TriggerType.SCHEDULED: self.schedule,
            TriggerType.THRESHOLD: self.threshold,
            TriggerType.EVENT: self.events,
        }

        # Schedule task
        self._schedule_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        self._initialized = False

    def set_dispatcher(self, dispatcher: Dispatcher) -> None:
        """Set the sink receiving run requests."""
        self._dispatcher = dispatcher

    async def initialize(self, start_loop: bool = True) -> None:
        """Initialize the trigger manager."""
        if self._initialized:
            return

        if self.config.state_path:
            self.load_state_file(self.config.state_path)

        self._shutdown_event.clear()
        if start_loop:
            self._schedule_task = asyncio.create_task(self._schedule_loop())

        self._initialized = True
        logger.info("trigger_manager_initialized", triggers=len(self._trigger_instances))

    async def shutdown(self) -> None:
        """Shutdown the trigger manager."""
        self._shutdown_event.set()

        if self._schedule_task:
            self._schedule_task.cancel()
            try:
                await self._schedule_task
            except asyncio.CancelledError:
                pass
            self._schedule_task = None

        if self.config.state_path:
            self.save_state_file(self.config.state_path)

        self._initialized = False
        logger.info("trigger_manager_shutdown")

    # === Trigger Registration ===

    async def register_definition(self, definition: WorkflowDefinition) -> List[Trigger]:
        """Register every enabled trigger a definition declares."""
        registered = []
        for index, config in enumerate(definition.triggers):
            if not config.enabled:
                continue
            trigger = Trigger(
                config=config,
                workflow_id=definition.use_case_id,
                version=definition.version,
                index=index,
            )
            await self.register(trigger)
            registered.append(trigger)
        return registered

    async def register(self, trigger: Trigger) -> Trigger:
        """Register a trigger instance."""
        if trigger.id in self._trigger_instances:
            return self._trigger_instances[trigger.id]

        saved = self._saved_state.pop(trigger.id, None)
        if saved:
            self._apply_state(trigger, saved)

        workflow_key = f"{trigger.workflow_id}@{trigger.version}"
        self._triggers.setdefault(workflow_key, []).append(trigger)
        self._trigger_instances[trigger.id] = trigger

        await self._handlers[trigger.config.trigger_type].register(trigger)

        logger.info(
            "trigger_registered",
            trigger_id=trigger.id,
            type=trigger.config.trigger_type.value,
            workflow_id=trigger.workflow_id,
            version=trigger.version,
        )

        return trigger

    async def unregister(self, trigger_id: str) -> bool:
        """Unregister a trigger."""
        trigger = self._trigger_instances.pop(trigger_id, None)
        if not trigger:
            return False

        workflow_key = f"{trigger.workflow_id}@{trigger.version}"
        self._triggers[workflow_key] = [
            t for t in self._triggers.get(workflow_key, []) if t.id != trigger_id
        ]

        await self._handlers[trigger.config.trigger_type].unregister(trigger)

        logger.info("trigger_unregistered", trigger_id=trigger_id)
        return True

    async def unregister_definition(self, workflow_id: str, version: str) -> None:
        """Unregister all triggers of one definition version."""
        for trigger in list(self._triggers.pop(f"{workflow_id}@{version}", [])):
            await self.unregister(trigger.id)

    def get_trigger(self, trigger_id: str) -> Optional[Trigger]:
        """Get a trigger by ID."""
        return self._trigger_instances.get(trigger_id)

    def list_triggers(
        self,
        workflow_id: Optional[str] = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> List[Trigger]:
        """List triggers with optional filters."""
        triggers = list(self._trigger_instances.values())

        if workflow_id:
            triggers = [t for t in triggers if t.workflow_id == workflow_id]

        if trigger_type:
            triggers = [t for t in triggers if t.config.trigger_type == trigger_type]

        return triggers

    # === Inputs ===

    async def ingest_metric(self, sample: MetricSample) -> List[str]:
        """Feed a metric sample to threshold triggers."""
        return await self.threshold.ingest(sample)

    async def publish_event(
        self,
        topic: str,
        payload: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> None:
        """Publish an event on the bus the event triggers subscribe to."""
        await self.event_bus.publish(topic, payload or {}, event_id=event_id)

    # === Firing ===

    async def fire(
        self,
        trigger: Trigger,
        trigger_data: Dict[str, Any],
        dedupe_key: Optional[str] = None,
    ) -> Optional[str]:
        """
        Turn a satisfied trigger into a run request.

        Returns:
            The run id, or None when there is no dispatcher or dispatch failed
        """
        if self._dispatcher is None:
            logger.warning("trigger_without_dispatcher", trigger_id=trigger.id)
            return None

        initial_context = copy.deepcopy(trigger.config.initial_context)
        initial_context["trigger"] = trigger_data

        request = RunRequest(
            workflow_id=trigger.workflow_id,
            version=trigger.version,
            initial_context=initial_context,
            trigger_type=trigger.config.trigger_type,
            trigger_id=trigger.id,
            dedupe_key=dedupe_key,
        )

        try:
            run_id = await self._dispatcher(request)
        except Exception as e:
            logger.error(
                "trigger_dispatch_error",
                trigger_id=trigger.id,
                workflow_id=trigger.workflow_id,
                error=str(e),
            )
            return None

        trigger.last_fired_at = self.clock()
        trigger.fire_count += 1

        logger.info(
            "trigger_fired",
            trigger_id=trigger.id,
            type=trigger.config.trigger_type.value,
            workflow_id=trigger.workflow_id,
            run_id=run_id,
        )

        return run_id

    # === Schedule Loop ===

    async def _schedule_loop(self) -> None:
        """Background loop for schedule triggers; checks once immediately."""
        while not self._shutdown_event.is_set():
            try:
                fired = await self.schedule.check_due(self.clock())
                if fired and self.config.state_path:
                    self.save_state_file(self.config.state_path)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("schedule_loop_error", error=str(e))

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.schedule_poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass

    # === State Persistence ===

    def export_state(self) -> Dict[str, Any]:
        """Schedule trigger state for persistence across restarts."""
        state = dict(self._saved_state)
        for trigger in self.list_triggers(trigger_type=TriggerType.SCHEDULED):
            state[trigger.id] = {
                "last_fired_at": trigger.last_fired_at.isoformat() if trigger.last_fired_at else None,
                "fire_count": trigger.fire_count,
            }
        return {"triggers": state, "saved_at": self.clock().isoformat()}

    def load_state(self, data: Dict[str, Any]) -> None:
        """Load state; applied to triggers as they register."""
        for trigger_id, state in data.get("triggers", {}).items():
            trigger = self._trigger_instances.get(trigger_id)
            if trigger is not None:
                self._apply_state(trigger, state)
                self.schedule.reschedule(trigger)
            else:
                self._saved_state[trigger_id] = state

    def _apply_state(self, trigger: Trigger, state: Dict[str, Any]) -> None:
        last = state.get("last_fired_at")
        trigger.last_fired_at = datetime.fromisoformat(last) if last else None
        trigger.fire_count = state.get("fire_count", trigger.fire_count)

    def save_state_file(self, path: Path) -> None:
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(self.export_state(), f, indent=2)
        except OSError as e:
            logger.error("trigger_state_save_error", path=str(path), error=str(e))

    def load_state_file(self, path: Path) -> None:
        path = Path(path)
        if not path.exists():
            return
        try:
            with open(path) as f:
                self.load_state(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("trigger_state_load_error", path=str(path), error=str(e))
            return
        logger.info("trigger_state_loaded", path=str(path))

    # === Statistics ===

    def get_stats(self) -> Dict[str, Any]:
        """Get trigger manager statistics."""
        type_counts = {trigger_type.value: 0 for trigger_type in TriggerType}
        for trigger in self._trigger_instances.values():
            type_counts[trigger.config.trigger_type.value] += 1

        return {
            "total_triggers": len(self._trigger_instances),
            "by_type": type_counts,
            "total_fires": sum(t.fire_count for t in self._trigger_instances.values()),
            "workflows_with_triggers": len([k for k, v in self._triggers.items() if v]),
            "event_topics": self.events.topics(),
        }


class BaseTriggerHandler:
    """Base class for trigger handlers."""

    def __init__(self, manager: TriggerManager):
        self.manager = manager

    async def register(self, trigger: Trigger) -> None:
        """Register a trigger."""
        pass

    async def unregister(self, trigger: Trigger) -> None:
        """Unregister a trigger."""
        pass
