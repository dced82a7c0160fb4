"""
Flowgate Approval Gate

Human-in-the-loop decisions for gated steps.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from flowgate.errors import ApprovalNotPending
from flowgate.types import ApprovalDecision, ApprovalRequest, ApprovalStatus

logger = structlog.get_logger(__name__)


ApprovalKey = Tuple[str, str]


class ApprovalGate:
    """
    Holds pending approval requests keyed by (run_id, step_id).

    Features:
    - Request creation and tracking
    - Approve/reject resolution, each request decided at most once
    - Cancellation when the owning run is cancelled

    The gate never decides on its own; a request stays pending until
    ``decide`` or ``cancel`` is called.
    """

    def __init__(self):
        self._requests: Dict[ApprovalKey, ApprovalRequest] = {}

        # Event callbacks
        self._on_request_created: List[Callable] = []
        self._on_request_resolved: List[Callable] = []

    # === Request Management ===

    async def create_request(
        self,
        run_id: str,
        step_id: str,
        workflow_id: str = "",
        step_name: str = "",
        message: str = "",
    ) -> ApprovalRequest:
        """Create (or return the existing) pending request for a step."""
        key = (run_id, step_id)
        existing = self._requests.get(key)
        if existing and existing.status == ApprovalStatus.PENDING:
            return existing

        request = ApprovalRequest(
            run_id=run_id,
            step_id=step_id,
            workflow_id=workflow_id,
            step_name=step_name,
            message=message or f"Approval required for step {step_name or step_id}",
        )
        self._requests[key] = request

        await self._fire_callbacks(self._on_request_created, request)

        logger.info(
            "approval_requested",
            run_id=run_id,
            step_id=step_id,
            workflow_id=workflow_id,
        )

        return request

    def get_request(self, run_id: str, step_id: str) -> Optional[ApprovalRequest]:
        return self._requests.get((run_id, step_id))

    def list_requests(
        self,
        status: Optional[ApprovalStatus] = None,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ApprovalRequest]:
        """List approval requests with filters, newest first."""
        requests = list(self._requests.values())

        if status:
            requests = [r for r in requests if r.status == status]

        if run_id:
            requests = [r for r in requests if r.run_id == run_id]

        if workflow_id:
            requests = [r for r in requests if r.workflow_id == workflow_id]

        requests.sort(key=lambda r: r.created_at, reverse=True)

        return requests[:limit]

    def list_pending(self) -> List[ApprovalRequest]:
        return self.list_requests(status=ApprovalStatus.PENDING, limit=len(self._requests) or 1)

    # === Resolution ===

    async def decide(
        self,
        run_id: str,
        step_id: str,
        decision: ApprovalDecision,
        actor: str,
        message: str = "",
    ) -> ApprovalRequest:
        """
        Record a decision on a pending request.

        Raises:
            ApprovalNotPending: if there is no pending request for the key
        """
        key = (run_id, step_id)
        request = self._requests.get(key)
        if request is None or request.status != ApprovalStatus.PENDING:
            logger.warning("approval_not_pending", run_id=run_id, step_id=step_id)
            raise ApprovalNotPending(run_id, step_id)

        decision = ApprovalDecision(decision)
        request.status = (
            ApprovalStatus.APPROVED if decision == ApprovalDecision.APPROVE
            else ApprovalStatus.REJECTED
        )
        request.decided_by = actor
        request.decision_message = message
        request.decided_at = datetime.now()

        logger.info(
            "approval_resolved",
            run_id=run_id,
            step_id=step_id,
            decision=decision.value,
            actor=actor,
        )

        await self._fire_callbacks(self._on_request_resolved, request)

        return request

    async def cancel(self, run_id: str, step_id: str) -> bool:
        """Cancel a pending request."""
        key = (run_id, step_id)
        request = self._requests.get(key)
        if request is None or request.status != ApprovalStatus.PENDING:
            return False

        request.status = ApprovalStatus.CANCELLED
        request.decided_at = datetime.now()

        logger.info("approval_cancelled", run_id=run_id, step_id=step_id)
        return True

    # === Event Callbacks ===

    def on_request_created(self, callback: Callable) -> None:
        """Register callback for new requests."""
        self._on_request_created.append(callback)

    def on_request_resolved(self, callback: Callable) -> None:
        """Register callback for decisions."""
        self._on_request_resolved.append(callback)

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
        """Get approval gate statistics."""
        status_counts = {status.value: 0 for status in ApprovalStatus}
        for request in self._requests.values():
            status_counts[request.status.value] += 1

        return {
            "total_requests": len(self._requests),
            **status_counts,
        }
