"""
Flowgate Workflow Engine

Step executor and state machine for workflow runs.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import structlog

from flowgate.approval.gate import ApprovalGate
from flowgate.capabilities.notification import NotificationDispatcher, Notifier
from flowgate.capabilities.registry import CapabilityRegistry, CapabilityRequest
from flowgate.conditions.evaluator import ConditionEvaluator
from flowgate.core.config import FlowgateConfig
from flowgate.errors import (
    ApprovalNotPending,
    CapabilityNotFound,
    ConfigurationError,
    ErrorKind,
    FlowgateError,
    RejectedByApprover,
    StepTimeout,
    UnknownRun,
)
from flowgate.execution.context import ExecutionContext
from flowgate.execution.retry import RetryHandler
from flowgate.registry import WorkflowRegistry
from flowgate.types import (
    ApprovalDecision,
    EscalationRecord,
    HistoryEntry,
    RunContext,
    RunError,
    RunStatus,
    Step,
    StepOutcome,
    TriggerType,
    WorkflowDefinition,
)

logger = structlog.get_logger(__name__)


class WorkflowEngine:
    """
    Main workflow execution engine.

    Features:
    - Strictly sequential step execution in declaration order
    - Condition-based skipping
    - Capability invocation with timeouts
    - Retry with backoff, escalation and notification
    - Two-phase approval gates
    - Cancellation at every suspension point
    - Bounded worker pool across runs

    Each run is driven by its own task holding one worker slot. A per-run
    lock keeps two tasks from ever advancing the same run. A run waiting
    for approval holds no task and no slot.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        capabilities: CapabilityRegistry,
        config: Optional[FlowgateConfig] = None,
        notifier: Optional[Notifier] = None,
        approvals: Optional[ApprovalGate] = None,
    ):
        self.config = config or FlowgateConfig()
        self.registry = registry
        self.capabilities = capabilities
        self.max_workers = self.config.engine.max_workers

        # Components
        self.evaluator = ConditionEvaluator()
        self.retry = RetryHandler(self.config.retry)
        self.approvals = approvals if approvals is not None else ApprovalGate()
        self.notifications = NotificationDispatcher(notifier)

        # Active runs
        self._tasks: Dict[str, asyncio.Task] = {}
        self._run_locks: Dict[str, asyncio.Lock] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._finished: Set[str] = set()

        # Escalations
        self._escalations: Dict[str, EscalationRecord] = {}

        # Semaphore for concurrency control
        self._semaphore = asyncio.Semaphore(self.max_workers)

        # Event callbacks
        self._on_run_started: List[Callable] = []
        self._on_run_completed: List[Callable] = []
        self._on_run_suspended: List[Callable] = []
        self._on_step_completed: List[Callable] = []
        self._on_escalation: List[Callable] = []

        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the workflow engine."""
        if self._initialized:
            return

        await self.registry.initialize()

        self._initialized = True
        logger.info("workflow_engine_initialized", max_workers=self.max_workers)

    async def shutdown(self) -> None:
        """Shutdown the workflow engine."""
        logger.info("workflow_engine_shutting_down", active_runs=len(self._tasks))

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.notifications.shutdown()
        await self.registry.shutdown()

        self._initialized = False
        logger.info("workflow_engine_shutdown_complete")

    # === Run Lifecycle ===

    async def start(
        self,
        definition: WorkflowDefinition,
        initial_context: Optional[Dict[str, Any]] = None,
        trigger_type: Optional[TriggerType] = None,
        trigger_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        initiated_by: str = "system",
    ) -> RunContext:
        """
        Create a run for a registered definition and queue it.

        A non-terminal run already holding ``dedupe_key`` is returned
        instead of starting a parallel one.
        """
        if dedupe_key:
            existing = self.registry.find_active_run(dedupe_key)
            if existing is not None:
                logger.info(
                    "run_deduplicated",
                    run_id=existing.run_id,
                    workflow_id=existing.workflow_id,
                    dedupe_key=dedupe_key,
                )
                return existing

        run = RunContext(
            workflow_id=definition.use_case_id,
            version=definition.version,
            definition_id=definition.id,
            initial_context=copy.deepcopy(initial_context or {}),
            trigger_type=trigger_type,
            trigger_id=trigger_id,
            dedupe_key=dedupe_key,
            initiated_by=initiated_by,
        )

        self._cancel_events[run.run_id] = asyncio.Event()
        await self.registry.save_run(run)

        logger.info(
            "run_started",
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            version=run.version,
            trigger_type=trigger_type.value if trigger_type else "manual",
        )

        await self._fire_callbacks(self._on_run_started, run)

        self._schedule(run, definition)
        return run

    def _schedule(self, run: RunContext, definition: WorkflowDefinition) -> asyncio.Task:
        task = asyncio.create_task(self._drive(run, definition))
        self._tasks[run.run_id] = task

        def _cleanup(done: asyncio.Task, run_id: str = run.run_id) -> None:
            if self._tasks.get(run_id) is done:
                del self._tasks[run_id]

        task.add_done_callback(_cleanup)
        return task

    async def _drive(self, run: RunContext, definition: WorkflowDefinition) -> None:
        """Advance a run until it finishes, fails, or suspends."""
        try:
            async with self._semaphore:
                async with self._lock_for(run.run_id):
                    if run.is_terminal():
                        return
                    run.start()
                    await self._advance(run, definition)

        except asyncio.CancelledError:
            if not run.is_terminal():
                self._mark_cancelled(run)
            raise

        except Exception as e:
            logger.exception("run_internal_error", run_id=run.run_id, error=str(e))
            if not run.is_terminal():
                run.fail(RunError(
                    kind=ErrorKind.INTERNAL,
                    message=f"{type(e).__name__}: {e}",
                    step_id=run.current_step_id,
                    attempt=run.current_attempt,
                ))

        finally:
            await self.registry.save_run(run)
            if run.is_terminal():
                await self._finish(run)

    async def _advance(self, run: RunContext, definition: WorkflowDefinition) -> None:
        """The executor loop over the step at ``current_step_index``."""
        context = ExecutionContext(run)

        while run.current_step_index < len(definition.steps):
            if run.is_terminal():
                return

            step = definition.steps[run.current_step_index]
            run.current_step_id = step.id
            run.current_attempt = 0

            # Conditions gate on committed outputs only
            if step.conditions and not self.evaluator.evaluate_all(step.conditions, context):
                now = datetime.now()
                entry = HistoryEntry(step.id, StepOutcome.SKIPPED, attempt=0, started_at=now, finished_at=now)
                run.record(entry)
                logger.info("step_skipped", run_id=run.run_id, step_id=step.id)
                await self._fire_callbacks(self._on_step_completed, run, entry)
                run.current_step_index += 1
                continue

            if step.human_approval_required and run.approved_step_id != step.id:
                await self._suspend_for_approval(run, definition, step)
                return

            succeeded = await self._execute_step(run, step, context)
            run.approved_step_id = None
            if not succeeded:
                return

            run.current_step_index += 1

        run.complete()

    async def _suspend_for_approval(
        self,
        run: RunContext,
        definition: WorkflowDefinition,
        step: Step,
    ) -> None:
        run.status = RunStatus.AWAITING_APPROVAL
        run.awaiting_step_id = step.id

        await self.approvals.create_request(
            run_id=run.run_id,
            step_id=step.id,
            workflow_id=definition.use_case_id,
            step_name=step.name,
        )

        logger.info("run_suspended", run_id=run.run_id, step_id=step.id)
        await self._fire_callbacks(self._on_run_suspended, run)

    # === Step Execution ===

    async def _execute_step(
        self,
        run: RunContext,
        step: Step,
        context: ExecutionContext,
    ) -> bool:
        """Run one step under its error-handling policy. Returns success."""
        try:
            handler = self.capabilities.resolve(step.agent, step.service, step.action)
        except CapabilityNotFound as e:
            now = datetime.now()
            run.record(HistoryEntry(
                step.id,
                StepOutcome.FAILED,
                attempt=1,
                started_at=now,
                finished_at=now,
                error=RunError(e.kind, e.message, step.id, 1),
            ))
            await self._fail_step(run, step, e, attempts=1)
            return False

        logger.info(
            "step_started",
            run_id=run.run_id,
            step_id=step.id,
            capability=f"{step.agent}/{step.service}/{step.action}",
        )

        cancel_event = self._cancel_events.setdefault(run.run_id, asyncio.Event())
        started: Dict[int, datetime] = {}

        async def attempt(number: int) -> Dict[str, Any]:
            run.current_attempt = number
            started[number] = datetime.now()

            request = CapabilityRequest(
                agent=step.agent,
                service=step.service,
                action=step.action,
                run_id=run.run_id,
                step_id=step.id,
                attempt=number,
                parameters=context.resolve(copy.deepcopy(step.parameters)),
                outputs=context.outputs_view(),
                inputs=context.inputs_view(),
                cancel_event=cancel_event,
            )

            try:
                if step.timeout_seconds:
                    try:
                        result = await asyncio.wait_for(handler.invoke(request), step.timeout_seconds)
                    except asyncio.TimeoutError:
                        raise StepTimeout(step.id, step.timeout_seconds) from None
                else:
                    result = await handler.invoke(request)
            except asyncio.CancelledError:
                run.record(HistoryEntry(
                    step.id,
                    StepOutcome.CANCELLED,
                    attempt=number,
                    started_at=started[number],
                    finished_at=datetime.now(),
                ))
                raise

            if result is None:
                return {}
            if not isinstance(result, Mapping):
                raise ConfigurationError(
                    f"Handler returned {type(result).__name__}, expected a mapping"
                )
            return dict(result)

        def on_failure(number: int, error: FlowgateError) -> None:
            run.record(HistoryEntry(
                step.id,
                StepOutcome.FAILED,
                attempt=number,
                started_at=started.get(number, datetime.now()),
                finished_at=datetime.now(),
                error=RunError(error.kind, error.message, step.id, number),
            ))
            logger.warning(
                "step_attempt_failed",
                run_id=run.run_id,
                step_id=step.id,
                attempt=number,
                error_kind=error.kind.value,
                error=error.message,
            )

        outcome = await self.retry.run(step.id, step.error_handling, attempt, on_failure)

        # A handler that ignored cancellation may still return
        if run.status == RunStatus.CANCELLED:
            return False

        if not outcome.succeeded:
            await self._fail_step(run, step, outcome.error, outcome.attempts)
            return False

        entry = HistoryEntry(
            step.id,
            StepOutcome.SUCCESS,
            attempt=outcome.attempts,
            started_at=started[outcome.attempts],
            finished_at=datetime.now(),
        )
        run.commit_outputs(step.id, self._select_outputs(run, step, outcome.result or {}))
        run.record(entry)

        logger.info(
            "step_succeeded",
            run_id=run.run_id,
            step_id=step.id,
            attempts=outcome.attempts,
            duration_ms=entry.duration_ms,
        )

        if outcome.attempts > 1:
            self.notifications.dispatch(
                step.error_handling.notification,
                f"Step {step.id} of run {run.run_id} succeeded after {outcome.attempts} attempts",
                run_id=run.run_id,
                step_id=step.id,
                workflow_id=run.workflow_id,
                outcome="recovered",
            )

        await self._fire_callbacks(self._on_step_completed, run, entry)
        return True

    def _select_outputs(
        self,
        run: RunContext,
        step: Step,
        result: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Keep the declared output slots, or everything when none are declared."""
        if not step.outputs:
            return result

        missing = [name for name in step.outputs if name not in result]
        if missing:
            logger.warning(
                "step_outputs_missing",
                run_id=run.run_id,
                step_id=step.id,
                missing=missing,
            )

        return {name: result[name] for name in step.outputs if name in result}

    async def _fail_step(
        self,
        run: RunContext,
        step: Step,
        error: FlowgateError,
        attempts: int,
    ) -> None:
        """Terminal step failure: fail the run, escalate and notify."""
        escalate = step.error_handling.escalate
        run_error = RunError(error.kind, error.message, step.id, attempts)
        run.fail(run_error, escalated=escalate)

        logger.error(
            "step_failed",
            run_id=run.run_id,
            step_id=step.id,
            attempts=attempts,
            error_kind=error.kind.value,
            error=error.message,
            escalated=escalate,
        )
        await self._fire_callbacks(self._on_step_completed, run, run.history[-1])

        if escalate:
            record = EscalationRecord(
                run_id=run.run_id,
                workflow_id=run.workflow_id,
                step_id=step.id,
                error_kind=error.kind,
                message=error.message,
                attempts=attempts,
            )
            self._escalations[record.id] = record
            logger.warning(
                "escalation_raised",
                escalation_id=record.id,
                run_id=run.run_id,
                step_id=step.id,
                error_kind=error.kind.value,
            )
            await self._fire_callbacks(self._on_escalation, record)

        self.notifications.dispatch(
            step.error_handling.notification,
            f"Step {step.id} of run {run.run_id} failed after {attempts} attempt(s): "
            f"[{error.kind.value}] {error.message}",
            run_id=run.run_id,
            step_id=step.id,
            workflow_id=run.workflow_id,
            error_kind=error.kind.value,
            escalated=escalate,
        )

    # === Approval ===

    async def resolve_approval(
        self,
        run_id: str,
        step_id: str,
        decision: ApprovalDecision,
        actor: str,
        message: str = "",
    ) -> RunContext:
        """
        Apply a decision to a suspended run.

        Approve resumes the run at the same step; Reject fails it with
        RejectedByApprover and no retries.
        """
        run = self.get_run(run_id)
        if run.status != RunStatus.AWAITING_APPROVAL or run.awaiting_step_id != step_id:
            raise ApprovalNotPending(run_id, step_id)

        request = await self.approvals.decide(run_id, step_id, decision, actor, message)

        # Cancelled while the decision callbacks ran
        if run.is_terminal():
            return run

        if ApprovalDecision(decision) == ApprovalDecision.APPROVE:
            definition = self.registry.get(run.workflow_id, run.version)
            run.approved_step_id = step_id
            run.awaiting_step_id = None
            run.status = RunStatus.PENDING
            await self.registry.save_run(run)
            self._schedule(run, definition)
            return run

        error = RejectedByApprover(step_id, actor, message)
        entry = HistoryEntry(
            step_id,
            StepOutcome.REJECTED,
            attempt=0,
            started_at=request.created_at,
            finished_at=request.decided_at or datetime.now(),
            error=RunError(error.kind, error.message, step_id, 0),
        )
        run.record(entry)
        run.fail(RunError(error.kind, error.message, step_id, 0))
        await self.registry.save_run(run)
        await self._fire_callbacks(self._on_step_completed, run, entry)
        await self._finish(run)
        return run

    # === Cancellation ===

    async def cancel(self, run_id: str) -> RunContext:
        """
        Cancel a non-terminal run.

        The owning task is cancelled, which interrupts a handler await or a
        backoff wait; the run's cancel event is set for handlers that check
        it cooperatively. Terminal runs are returned unchanged.
        """
        run = self.get_run(run_id)
        if run.is_terminal():
            return run

        awaiting_step = run.awaiting_step_id
        self._mark_cancelled(run)

        if awaiting_step:
            await self.approvals.cancel(run_id, awaiting_step)

        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            task.cancel()
        else:
            await self.registry.save_run(run)
            await self._finish(run)

        return run

    def _mark_cancelled(self, run: RunContext) -> None:
        event = self._cancel_events.get(run.run_id)
        if event is not None:
            event.set()
        run.cancel()

    # === Run Queries ===

    def get_run(self, run_id: str) -> RunContext:
        """Get a run or raise UnknownRun."""
        run = self.registry.get_run(run_id)
        if run is None:
            raise UnknownRun(run_id)
        return run

    def is_active(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> RunContext:
        """
        Wait until a run is terminal or suspended at an approval gate.

        Raises:
            asyncio.TimeoutError: if the run is still progressing at timeout
        """
        run = self.get_run(run_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while True:
            task = self._tasks.get(run_id)
            if task is None or task.done():
                return run

            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait({task}, timeout=remaining)
            if not done:
                raise asyncio.TimeoutError(f"Run {run_id} still {run.status.value}")

    def list_escalations(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[EscalationRecord]:
        """List escalation records, newest first."""
        records = list(self._escalations.values())

        if workflow_id:
            records = [r for r in records if r.workflow_id == workflow_id]

        if status:
            records = [r for r in records if r.status == status]

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    async def _finish(self, run: RunContext) -> None:
        """Log and fire completion callbacks exactly once per run."""
        if run.run_id in self._finished:
            return
        self._finished.add(run.run_id)
        self._run_locks.pop(run.run_id, None)
        self._cancel_events.pop(run.run_id, None)

        event = {
            RunStatus.COMPLETED: "run_completed",
            RunStatus.FAILED: "run_failed",
            RunStatus.CANCELLED: "run_cancelled",
        }.get(run.status, "run_finished")

        logger.info(
            event,
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            status=run.status.value,
            escalated=run.escalated,
            error_kind=run.error.kind.value if run.error else None,
            duration_ms=run.duration_ms,
        )

        await self._fire_callbacks(self._on_run_completed, run)

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._run_locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._run_locks[run_id] = lock
        return lock

    # === Event Callbacks ===

    def on_run_started(self, callback: Callable) -> None:
        """Register callback for run creation."""
        self._on_run_started.append(callback)

    def on_run_completed(self, callback: Callable) -> None:
        """Register callback for terminal runs."""
        self._on_run_completed.append(callback)

    def on_run_suspended(self, callback: Callable) -> None:
        """Register callback for runs waiting on approval."""
        self._on_run_suspended.append(callback)

    def on_step_completed(self, callback: Callable) -> None:
        """Register callback for step outcomes (run, history entry)."""
        self._on_step_completed.append(callback)

    def on_escalation(self, callback: Callable) -> None:
        """Register callback for escalation records."""
        self._on_escalation.append(callback)

    async def _fire_callbacks(
        self,
        callbacks: List[Callable],
        *args,
    ) -> None:
        """Fire callbacks."""
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("callback_error", error=str(e))

    # === Statistics ===

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        status_counts = {status.value: 0 for status in RunStatus}
        for run in self.registry.list_runs(limit=self.registry.count_runs()):
            status_counts[run.status.value] += 1

        return {
            "active_runs": len(self._tasks),
            "runs_by_status": status_counts,
            "max_workers": self.max_workers,
            "escalations": len(self._escalations),
            "approvals": self.approvals.get_stats(),
            "notifications": self.notifications.get_stats(),
        }
