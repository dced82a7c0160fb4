"""
Flowgate Threshold Trigger Handler

Edge-triggered metric thresholds.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List

import structlog

from flowgate.conditions.operators import compare
from flowgate.types import MetricSample, Trigger
from flowgate.triggers.manager import BaseTriggerHandler

logger = structlog.get_logger(__name__)


class ThresholdTriggerHandler(BaseTriggerHandler):
    """
    Handler for metric threshold triggers.

    A trigger fires when ``operator(value, threshold)`` goes from false to
    true. Repeated samples that keep the condition true do not fire again
    until a sample makes it false. The condition starts out false.
    """

    def __init__(self, manager):
        super().__init__(manager)
        self._by_metric: Dict[str, List[Trigger]] = {}
        self._lock = asyncio.Lock()

    async def register(self, trigger: Trigger) -> None:
        """Register a threshold trigger."""
        trigger.condition_active = False
        self._by_metric.setdefault(trigger.config.metric, []).append(trigger)

        logger.info(
            "threshold_registered",
            trigger_id=trigger.id,
            metric=trigger.config.metric,
            operator=trigger.config.operator.value if trigger.config.operator else None,
            threshold=trigger.config.threshold,
        )

    async def unregister(self, trigger: Trigger) -> None:
        """Unregister a threshold trigger."""
        triggers = self._by_metric.get(trigger.config.metric, [])
        self._by_metric[trigger.config.metric] = [t for t in triggers if t.id != trigger.id]

    async def ingest(self, sample: MetricSample) -> List[str]:
        """
        Evaluate one sample against every trigger on its metric.

        Samples are processed one at a time so edge state never races.

        Returns:
            Run ids started by this sample
        """
        run_ids = []

        async with self._lock:
            for trigger in list(self._by_metric.get(sample.metric, [])):
                if not trigger.config.enabled:
                    continue

                active = compare(sample.value, trigger.config.operator, trigger.config.threshold)
                rising = active and not trigger.condition_active
                if not active:
                    trigger.condition_active = False

                if not rising:
                    continue

                run_id = await self.manager.fire(
                    trigger,
                    {
                        "type": "threshold",
                        "metric": sample.metric,
                        "value": sample.value,
                        "operator": trigger.config.operator.value,
                        "threshold": trigger.config.threshold,
                        "timestamp": sample.timestamp.isoformat(),
                    },
                )
                if run_id:
                    trigger.condition_active = True
                    run_ids.append(run_id)

        return run_ids

    def metrics(self) -> List[str]:
        return sorted(metric for metric, triggers in self._by_metric.items() if triggers)
