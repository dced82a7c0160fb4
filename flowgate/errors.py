"""
Flowgate Errors

Exception hierarchy for definition, lookup and step failures.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Classification of engine errors."""
    VALIDATION = "validation_error"
    DEFINITION_CONFLICT = "definition_conflict"
    UNKNOWN_WORKFLOW = "unknown_workflow"
    UNKNOWN_RUN = "unknown_run"
    APPROVAL_NOT_PENDING = "approval_not_pending"
    CAPABILITY_NOT_FOUND = "capability_not_found"
    HANDLER_RETRYABLE = "handler_retryable"
    HANDLER_CONFIGURATION = "handler_configuration"
    STEP_TIMEOUT = "step_timeout"
    REJECTED_BY_APPROVER = "rejected_by_approver"
    INTERNAL = "internal_error"


class FlowgateError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"kind": self.kind.value, "message": self.message}


# === Definition errors ===


class ValidationError(FlowgateError):
    """A workflow definition is malformed."""

    kind = ErrorKind.VALIDATION

    def __init__(self, violations: List[str], message: Optional[str] = None):
        self.violations = list(violations)
        super().__init__(message or "; ".join(self.violations))

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["violations"] = self.violations
        return result


class InvalidDefinition(ValidationError):
    """Raised by validation with every violation found."""

    def __init__(self, violations: List[str]):
        super().__init__(
            violations,
            f"Invalid definition ({len(violations)} violation(s)): " + "; ".join(violations),
        )


class DefinitionConflict(ValidationError):
    """A different definition is already registered under the same key."""

    kind = ErrorKind.DEFINITION_CONFLICT

    def __init__(self, use_case_id: str, version: str):
        self.use_case_id = use_case_id
        self.version = version
        super().__init__(
            [f"{use_case_id}@{version} is already registered with different content"],
        )


# === Lookup errors ===


class UnknownWorkflow(FlowgateError):
    """No definition is registered under the requested key."""

    kind = ErrorKind.UNKNOWN_WORKFLOW

    def __init__(self, workflow_id: str, version: Optional[str] = None):
        self.workflow_id = workflow_id
        self.version = version
        label = f"{workflow_id}@{version}" if version else workflow_id
        super().__init__(f"Workflow not found: {label}")


class UnknownRun(FlowgateError):
    """No run exists with the requested id."""

    kind = ErrorKind.UNKNOWN_RUN

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class ApprovalNotPending(FlowgateError):
    """No pending approval request for the given run and step."""

    kind = ErrorKind.APPROVAL_NOT_PENDING

    def __init__(self, run_id: str, step_id: str):
        self.run_id = run_id
        self.step_id = step_id
        super().__init__(f"No pending approval for run {run_id} step {step_id}")


# === Step errors ===


class CapabilityNotFound(FlowgateError):
    """No handler is bound to an (agent, service, action) triple."""

    kind = ErrorKind.CAPABILITY_NOT_FOUND

    def __init__(self, agent: str, service: str, action: str):
        self.agent = agent
        self.service = service
        self.action = action
        super().__init__(f"Capability not found: {agent}/{service}/{action}")


class HandlerError(FlowgateError):
    """
    Error raised from a capability handler.

    Handlers raise this (or a subclass) to state whether the failure is
    transient. Any other exception escaping a handler is treated as
    retryable.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
        self.kind = (
            ErrorKind.HANDLER_RETRYABLE if retryable else ErrorKind.HANDLER_CONFIGURATION
        )


class RetryableError(HandlerError):
    """Transient handler failure."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class ConfigurationError(HandlerError):
    """Handler failure caused by configuration; never retried."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class StepTimeout(FlowgateError):
    """A step invocation exceeded its timeout."""

    kind = ErrorKind.STEP_TIMEOUT
    retryable = True

    def __init__(self, step_id: str, timeout_seconds: float):
        self.step_id = step_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Step {step_id} timed out after {timeout_seconds}s")


class RejectedByApprover(FlowgateError):
    """An approver rejected a gated step."""

    kind = ErrorKind.REJECTED_BY_APPROVER

    def __init__(self, step_id: str, actor: str, message: str = ""):
        self.step_id = step_id
        self.actor = actor
        reason = f": {message}" if message else ""
        super().__init__(f"Step {step_id} rejected by {actor}{reason}")


def classify(error: BaseException) -> FlowgateError:
    """Wrap an arbitrary handler exception into the engine taxonomy."""
    if isinstance(error, FlowgateError):
        return error
    return HandlerError(f"{type(error).__name__}: {error}", retryable=True)
