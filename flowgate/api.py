"""
Flowgate API Routes

FastAPI routes for the admin surface of the orchestration service.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import structlog

from flowgate.errors import ErrorKind, FlowgateError, ValidationError
from flowgate.service import OrchestrationService
from flowgate.types import ApprovalDecision, ApprovalStatus, Criticality, RunStatus

logger = structlog.get_logger(__name__)

E = TypeVar("E", bound=Enum)


# === Request Models ===


class StartRunRequest(BaseModel):
    """Start run request."""
    version: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    dedupe_key: Optional[str] = None
    initiated_by: str = "api"


class ApprovalDecisionRequest(BaseModel):
    """Approval decision request."""
    decision: str = Field(..., description="'approve' or 'reject'")
    actor: str = Field(..., description="Approver identifier")
    message: str = ""


class EventRequest(BaseModel):
    """Event published to event triggers."""
    topic: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = None


class MetricRequest(BaseModel):
    """Metric sample fed to threshold triggers."""
    metric: str
    value: float
    timestamp: Optional[datetime] = None


# === Error Mapping ===


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.DEFINITION_CONFLICT: 409,
    ErrorKind.APPROVAL_NOT_PENDING: 409,
    ErrorKind.UNKNOWN_WORKFLOW: 404,
    ErrorKind.UNKNOWN_RUN: 404,
}


def error_status(error: FlowgateError) -> int:
    return STATUS_BY_KIND.get(error.kind, 500)


async def flowgate_error_handler(request: Request, exc: FlowgateError) -> JSONResponse:
    status_code = error_status(exc)
    if status_code >= 500:
        logger.error("api_error", path=request.url.path, kind=exc.kind.value, error=exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


def _parse_enum(enum_type: Type[E], value: Optional[str], field: str) -> Optional[E]:
    if value is None:
        return None
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationError([f"{field}: '{value}' is not one of {allowed}"])


# === Route Setup ===


def setup_flowgate_routes(app: FastAPI, service: OrchestrationService) -> None:
    """
    Setup orchestration routes.

    Args:
        app: FastAPI application
        service: Orchestration service instance
    """
    router = APIRouter(tags=["Workflows"])
    app.add_exception_handler(FlowgateError, flowgate_error_handler)

    # === Definition Routes ===

    @router.post("/workflows", response_model=Dict[str, Any])
    async def register_workflow(definition: Dict[str, Any] = Body(...)):
        """Register a workflow definition."""
        stored, created = await service.register_definition(definition)
        return {
            "id": stored.id,
            "use_case_id": stored.use_case_id,
            "version": stored.version,
            "created": created,
        }

    @router.get("/workflows", response_model=Dict[str, Any])
    async def list_workflows(
        criticality: Optional[str] = None,
        tag: Optional[str] = None,
        industry: Optional[str] = None,
        search: Optional[str] = None,
        latest_only: bool = False,
        limit: int = Query(default=100, le=1000),
        offset: int = 0,
    ):
        """List registered definitions."""
        definitions = service.list_definitions(
            criticality=_parse_enum(Criticality, criticality, "criticality"),
            tag=tag,
            industry=industry,
            search=search,
            latest_only=latest_only,
            limit=limit,
            offset=offset,
        )
        return {
            "workflows": [d.to_dict() for d in definitions],
            "count": len(definitions),
        }

    @router.get("/workflows/{use_case_id}", response_model=Dict[str, Any])
    async def get_workflow(use_case_id: str, version: Optional[str] = None):
        """Get a definition; the latest version unless one is given."""
        definition = service.get_definition(use_case_id, version)
        result = definition.to_dict()
        result["versions"] = service.list_versions(use_case_id)
        return result

    # === Run Routes ===

    @router.post("/workflows/{use_case_id}/runs", response_model=Dict[str, Any])
    async def start_run(use_case_id: str, request: StartRunRequest):
        """Start a run."""
        run_id = await service.start(
            use_case_id,
            version=request.version,
            initial_context=request.context,
            dedupe_key=request.dedupe_key,
            initiated_by=request.initiated_by,
        )
        return {"run_id": run_id}

    @router.get("/runs", response_model=Dict[str, Any])
    async def list_runs(
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = Query(default=100, le=1000),
        offset: int = 0,
    ):
        """List runs, newest first."""
        runs = service.list_runs(
            workflow_id=workflow_id,
            status=_parse_enum(RunStatus, status, "status"),
            limit=limit,
            offset=offset,
        )
        return {"runs": runs, "count": len(runs)}

    @router.get("/runs/{run_id}", response_model=Dict[str, Any])
    async def get_run(run_id: str):
        """Get a run snapshot."""
        return service.get_status(run_id)

    @router.post("/runs/{run_id}/cancel", response_model=Dict[str, Any])
    async def cancel_run(run_id: str):
        """Cancel a run."""
        return await service.cancel(run_id)

    @router.post("/runs/{run_id}/approvals/{step_id}", response_model=Dict[str, Any])
    async def resolve_approval(run_id: str, step_id: str, request: ApprovalDecisionRequest):
        """Approve or reject the step a run is waiting on."""
        return await service.resolve_approval(
            run_id,
            step_id,
            _parse_enum(ApprovalDecision, request.decision, "decision"),
            request.actor,
            request.message,
        )

    # === Approval and Escalation Routes ===

    @router.get("/approvals", response_model=Dict[str, Any])
    async def list_approvals(
        status: Optional[str] = None,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        limit: int = Query(default=100, le=1000),
    ):
        """List approval requests; pending ones by default."""
        requests = service.engine.approvals.list_requests(
            status=_parse_enum(ApprovalStatus, status, "status") or ApprovalStatus.PENDING,
            run_id=run_id,
            workflow_id=workflow_id,
            limit=limit,
        )
        return {
            "approvals": [r.to_dict() for r in requests],
            "count": len(requests),
        }

    @router.get("/escalations", response_model=Dict[str, Any])
    async def list_escalations(
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
    ):
        """List escalation records."""
        records = service.list_escalations(workflow_id=workflow_id, status=status)
        return {
            "escalations": [r.to_dict() for r in records],
            "count": len(records),
        }

    # === Trigger Input Routes ===

    @router.post("/events", response_model=Dict[str, Any])
    async def publish_event(request: EventRequest):
        """Publish an event to event triggers."""
        await service.publish_event(request.topic, request.payload, event_id=request.event_id)
        return {"published": True, "topic": request.topic}

    @router.post("/metrics", response_model=Dict[str, Any])
    async def ingest_metric(request: MetricRequest):
        """Feed a metric sample to threshold triggers."""
        run_ids = await service.ingest_metric(
            request.metric,
            request.value,
            timestamp=request.timestamp,
        )
        return {"run_ids": run_ids}

    # === Monitoring Routes ===

    @router.get("/metrics", response_model=Dict[str, Any])
    async def get_metrics(workflow_id: Optional[str] = None):
        """Get run metrics."""
        return service.get_metrics(workflow_id)

    @router.get("/stats", response_model=Dict[str, Any])
    async def get_stats():
        """Get service statistics."""
        return service.get_stats()

    @router.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    app.include_router(router)
