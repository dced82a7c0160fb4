"""
Flowgate Workflow Monitor

Run and step metrics collected from engine callbacks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog

from flowgate.types import HistoryEntry, RunContext, RunStatus, StepOutcome

if TYPE_CHECKING:
    from flowgate.engine import WorkflowEngine

logger = structlog.get_logger(__name__)


@dataclass
class StepMetrics:
    """Counters for one step of one workflow."""
    successes: int = 0
    failures: int = 0
    skips: int = 0
    total_duration_ms: float = 0.0

    @property
    def executions(self) -> int:
        return self.successes + self.failures

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.successes if self.successes else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executions": self.executions,
            "successes": self.successes,
            "failures": self.failures,
            "skips": self.skips,
            "average_duration_ms": self.average_duration_ms,
        }


@dataclass
class WorkflowMetrics:
    """Counters for one workflow (use case)."""
    started: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    escalated: int = 0
    total_duration_ms: float = 0.0
    finished_runs: int = 0
    error_frequency: Dict[str, int] = field(default_factory=dict)
    steps: Dict[str, StepMetrics] = field(default_factory=dict)

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.finished_runs if self.finished_runs else 0.0

    @property
    def success_rate(self) -> float:
        done = self.completed + self.failed
        return self.completed / done if done else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "escalated": self.escalated,
            "success_rate": self.success_rate,
            "average_duration_ms": self.average_duration_ms,
            "error_frequency": dict(self.error_frequency),
            "steps": {step_id: m.to_dict() for step_id, m in self.steps.items()},
        }


class WorkflowMonitor:
    """
    Collects per-workflow run metrics.

    Features:
    - Started/completed/failed/cancelled/escalated counters
    - Average run duration and success rate
    - Per-step success, failure and skip counts with average duration
    - Error frequency by kind
    """

    def __init__(self):
        self._metrics: Dict[str, WorkflowMetrics] = {}
        self._active: Dict[str, str] = {}  # run id -> workflow id

    def attach(self, engine: "WorkflowEngine") -> None:
        """Subscribe to an engine's callbacks."""
        engine.on_run_started(self.record_run_started)
        engine.on_run_completed(self.record_run_finished)
        engine.on_step_completed(self.record_step)

    def _for(self, workflow_id: str) -> WorkflowMetrics:
        metrics = self._metrics.get(workflow_id)
        if metrics is None:
            metrics = WorkflowMetrics()
            self._metrics[workflow_id] = metrics
        return metrics

    # === Recording ===

    def record_run_started(self, run: RunContext) -> None:
        self._for(run.workflow_id).started += 1
        self._active[run.run_id] = run.workflow_id

    def record_run_finished(self, run: RunContext) -> None:
        metrics = self._for(run.workflow_id)
        self._active.pop(run.run_id, None)

        if run.status == RunStatus.COMPLETED:
            metrics.completed += 1
        elif run.status == RunStatus.FAILED:
            metrics.failed += 1
        elif run.status == RunStatus.CANCELLED:
            metrics.cancelled += 1

        if run.escalated:
            metrics.escalated += 1

        if run.error:
            kind = run.error.kind.value
            metrics.error_frequency[kind] = metrics.error_frequency.get(kind, 0) + 1

        metrics.finished_runs += 1
        metrics.total_duration_ms += run.duration_ms

    def record_step(self, run: RunContext, entry: HistoryEntry) -> None:
        metrics = self._for(run.workflow_id)
        step = metrics.steps.get(entry.step_id)
        if step is None:
            step = StepMetrics()
            metrics.steps[entry.step_id] = step

        if entry.outcome == StepOutcome.SUCCESS:
            step.successes += 1
            step.total_duration_ms += entry.duration_ms
        elif entry.outcome == StepOutcome.SKIPPED:
            step.skips += 1
        elif entry.outcome in (StepOutcome.FAILED, StepOutcome.REJECTED):
            step.failures += 1

    # === Queries ===

    def get_metrics(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        """Metrics for one workflow, or all of them keyed by workflow id."""
        if workflow_id is not None:
            return self._for(workflow_id).to_dict()
        return {wid: m.to_dict() for wid, m in sorted(self._metrics.items())}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across workflows with the most frequent error kinds."""
        errors: Dict[str, int] = {}
        for metrics in self._metrics.values():
            for kind, count in metrics.error_frequency.items():
                errors[kind] = errors.get(kind, 0) + count

        top_errors: List[Dict[str, Any]] = [
            {"kind": kind, "count": count}
            for kind, count in sorted(errors.items(), key=lambda item: item[1], reverse=True)[:5]
        ]

        return {
            "workflows": len(self._metrics),
            "active_runs": len(self._active),
            "started": sum(m.started for m in self._metrics.values()),
            "completed": sum(m.completed for m in self._metrics.values()),
            "failed": sum(m.failed for m in self._metrics.values()),
            "cancelled": sum(m.cancelled for m in self._metrics.values()),
            "escalated": sum(m.escalated for m in self._metrics.values()),
            "top_errors": top_errors,
        }
