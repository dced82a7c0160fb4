"""
Flowgate Orchestration Service

Public entry point wiring definitions, triggers, the engine and monitoring.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog

from flowgate.capabilities.notification import Notifier
from flowgate.capabilities.registry import CapabilityRegistry
from flowgate.core.config import FlowgateConfig
from flowgate.engine import WorkflowEngine
from flowgate.errors import UnknownWorkflow
from flowgate.monitoring import WorkflowMonitor
from flowgate.registry import WorkflowRegistry
from flowgate.triggers.event import EventBus
from flowgate.triggers.manager import Clock, TriggerManager, utc_now
from flowgate.types import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    Criticality,
    EscalationRecord,
    MetricSample,
    RunRequest,
    RunStatus,
    TriggerType,
    WorkflowDefinition,
)

logger = structlog.get_logger(__name__)


class OrchestrationService:
    """
    Facade over the workflow engine.

    Features:
    - Definition registration with trigger wiring
    - Run start, status, cancel and approval resolution
    - Metric and event inputs for triggers
    - Run, approval and escalation queries
    - Per-workflow metrics

    Every collaborator is built from, or injected into, the constructor;
    nothing reads process-wide state.
    """

    def __init__(
        self,
        config: Optional[FlowgateConfig] = None,
        capabilities: Optional[CapabilityRegistry] = None,
        notifier: Optional[Notifier] = None,
        event_bus: Optional[EventBus] = None,
        clock: Clock = utc_now,
        registry: Optional[WorkflowRegistry] = None,
    ):
        self.config = config or FlowgateConfig()
        self.capabilities = capabilities if capabilities is not None else CapabilityRegistry()

        if registry is None:
            registry = WorkflowRegistry(catalogue=self.capabilities.catalogue)
        self.registry = registry
        self.engine = WorkflowEngine(
            self.registry,
            self.capabilities,
            config=self.config,
            notifier=notifier,
        )
        self.triggers = TriggerManager(self.config.triggers, event_bus=event_bus, clock=clock)
        self.triggers.set_dispatcher(self._dispatch)

        self.monitor = WorkflowMonitor()
        self.monitor.attach(self.engine)

        self._initialized = False

    async def initialize(self, start_scheduler: bool = True) -> None:
        """Initialize the service."""
        if self._initialized:
            return

        await self.engine.initialize()

        # Definitions loaded from disk bring their triggers back
        for definition in self.registry.list(limit=max(self.registry.count(), 1)):
            await self.triggers.register_definition(definition)

        await self.triggers.initialize(start_loop=start_scheduler)

        self._initialized = True
        logger.info(
            "orchestration_service_initialized",
            instance_id=self.config.instance_id,
            definitions=self.registry.count(),
            capabilities=len(self.capabilities),
        )

    async def shutdown(self) -> None:
        """Shutdown the service."""
        await self.triggers.shutdown()
        await self.engine.shutdown()
        self._initialized = False
        logger.info("orchestration_service_shutdown")

    # === Definitions ===

    async def register_definition(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
    ) -> Tuple[WorkflowDefinition, bool]:
        """
        Validate and store a definition, then register its triggers.

        Returns:
            The stored definition and whether it was newly created

        Raises:
            InvalidDefinition: listing every violation
            DefinitionConflict: same (use_case_id, version) with other content
        """
        if isinstance(definition, WorkflowDefinition):
            created = await self.registry.register(definition)
        else:
            definition, created = await self.registry.register_dict(definition)

        if created:
            await self.triggers.register_definition(definition)

        return definition, created

    def get_definition(self, use_case_id: str, version: Optional[str] = None) -> WorkflowDefinition:
        return self.registry.get(use_case_id, version)

    def list_definitions(
        self,
        criticality: Optional[Criticality] = None,
        tag: Optional[str] = None,
        industry: Optional[str] = None,
        search: Optional[str] = None,
        latest_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowDefinition]:
        return self.registry.list(
            criticality=criticality,
            tag=tag,
            industry=industry,
            search=search,
            latest_only=latest_only,
            limit=limit,
            offset=offset,
        )

    def list_versions(self, use_case_id: str) -> List[str]:
        return self.registry.list_versions(use_case_id)

    def export_definitions(self, use_case_id: Optional[str] = None) -> Dict[str, Any]:
        return self.registry.export(use_case_id)

    async def import_definitions(self, data: Dict[str, Any]) -> int:
        """Import an exported document; triggers of new definitions are registered."""
        created = 0
        for definition_data in data.get("definitions", []):
            _, is_new = await self.register_definition(definition_data)
            created += int(is_new)
        return created

    # === Runs ===

    async def start(
        self,
        workflow_id: str,
        version: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        initiated_by: str = "api",
    ) -> str:
        """
        Start a run of a registered definition.

        Without a version the latest registered one is used.

        Returns:
            The run id, or the id of the live run already holding dedupe_key

        Raises:
            UnknownWorkflow: no such (workflow_id, version)
        """
        definition = self.registry.get(workflow_id, version)
        run = await self.engine.start(
            definition,
            initial_context=initial_context,
            dedupe_key=dedupe_key,
            initiated_by=initiated_by,
        )
        return run.run_id

    async def _dispatch(self, request: RunRequest) -> str:
        """Trigger sink: start a run for a fired trigger."""
        definition = self.registry.find(request.workflow_id, request.version)
        if definition is None:
            raise UnknownWorkflow(request.workflow_id, request.version)

        run = await self.engine.start(
            definition,
            initial_context=request.initial_context,
            trigger_type=request.trigger_type,
            trigger_id=request.trigger_id,
            dedupe_key=request.dedupe_key,
            initiated_by=f"trigger:{request.trigger_id}",
        )
        return run.run_id

    def get_status(self, run_id: str) -> Dict[str, Any]:
        """
        Read-only snapshot of a run.

        Includes the current step, latest error, attempt count and any
        pending approval so a run that is not progressing can be explained.

        Raises:
            UnknownRun: no such run
        """
        run = self.engine.get_run(run_id)
        snapshot = run.to_dict()

        pending = None
        if run.awaiting_step_id:
            request = self.engine.approvals.get_request(run_id, run.awaiting_step_id)
            if request is not None and request.status == ApprovalStatus.PENDING:
                pending = request.to_dict()
        snapshot["pending_approval"] = pending
        snapshot["active"] = self.engine.is_active(run_id)

        return snapshot

    async def cancel(self, run_id: str) -> Dict[str, Any]:
        """Cancel a non-terminal run; terminal runs are left as they are."""
        run = await self.engine.cancel(run_id)
        return run.to_dict()

    async def resolve_approval(
        self,
        run_id: str,
        step_id: str,
        decision: Union[ApprovalDecision, str],
        actor: str,
        message: str = "",
    ) -> Dict[str, Any]:
        """
        Approve or reject the step a run is waiting on.

        Raises:
            UnknownRun: no such run
            ApprovalNotPending: the run is not waiting on this step
        """
        run = await self.engine.resolve_approval(
            run_id,
            step_id,
            ApprovalDecision(decision),
            actor,
            message,
        )
        return run.to_dict()

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait until a run is terminal or waiting for approval."""
        await self.engine.wait_for_run(run_id, timeout)
        return self.get_status(run_id)

    def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        runs = self.registry.list_runs(
            workflow_id=workflow_id,
            status=status,
            limit=limit,
            offset=offset,
        )
        return [run.to_dict() for run in runs]

    # === Approvals and Escalations ===

    def list_pending_approvals(self) -> List[ApprovalRequest]:
        return self.engine.approvals.list_pending()

    def list_escalations(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[EscalationRecord]:
        return self.engine.list_escalations(workflow_id=workflow_id, status=status)

    # === Trigger Inputs ===

    async def ingest_metric(
        self,
        metric: str,
        value: float,
        timestamp: Optional[datetime] = None,
    ) -> List[str]:
        """Feed a metric sample to threshold triggers; returns started run ids."""
        sample = MetricSample(metric=metric, value=value, timestamp=timestamp or self.triggers.clock())
        return await self.triggers.ingest_metric(sample)

    async def publish_event(
        self,
        topic: str,
        payload: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> None:
        await self.triggers.publish_event(topic, payload, event_id=event_id)

    async def check_schedules(self) -> List[str]:
        """Fire due schedule triggers now; returns the fired trigger ids."""
        fired = await self.triggers.schedule.check_due(self.triggers.clock())
        return [trigger.id for trigger in fired]

    def list_triggers(
        self,
        workflow_id: Optional[str] = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> List[Dict[str, Any]]:
        return [
            trigger.to_dict()
            for trigger in self.triggers.list_triggers(workflow_id, trigger_type)
        ]

    # === Metrics ===

    def get_metrics(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        if workflow_id is not None:
            return self.monitor.get_metrics(workflow_id)
        return {
            "summary": self.monitor.get_summary(),
            "workflows": self.monitor.get_metrics(),
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get service statistics."""
        return {
            "instance_id": self.config.instance_id,
            "registry": self.registry.get_stats(),
            "engine": self.engine.get_stats(),
            "triggers": self.triggers.get_stats(),
            "capabilities": len(self.capabilities),
        }


