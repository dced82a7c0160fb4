"""
Flowgate Workflow Orchestration Engine

Drives declarative workflow definitions to completion by invoking
pluggable capability handlers.

Core Features:
- Validated, versioned, immutable workflow definitions
- Strictly sequential steps with condition-based skipping
- Retry with backoff, escalation and best-effort notification
- Human approval gates with suspend/resume
- Scheduled, event and threshold triggers
- Bounded worker pool across runs with cooperative cancellation
"""

from flowgate.types import (
    # Enums
    StepType,
    TriggerType,
    RunStatus,
    StepOutcome,
    ConditionOperator,
    CombineWith,
    Criticality,
    ApprovalDecision,
    ApprovalStatus,
    # Definitions
    RetryPolicy,
    NotificationPolicy,
    ErrorHandling,
    Condition,
    Step,
    TriggerConfig,
    WorkflowMetadata,
    WorkflowDefinition,
    # Runs
    Trigger,
    RunError,
    HistoryEntry,
    RunContext,
    RunRequest,
    ApprovalRequest,
    EscalationRecord,
    MetricSample,
    WorkflowEvent,
)
from flowgate.errors import (
    ErrorKind,
    FlowgateError,
    ValidationError,
    InvalidDefinition,
    DefinitionConflict,
    UnknownWorkflow,
    UnknownRun,
    ApprovalNotPending,
    CapabilityNotFound,
    HandlerError,
    RetryableError,
    ConfigurationError,
    StepTimeout,
    RejectedByApprover,
)
from flowgate.capabilities.registry import Capability, CapabilityRegistry, CapabilityRequest
from flowgate.capabilities.notification import LogNotifier, Notifier, WebhookNotifier
from flowgate.core.config import FlowgateConfig
from flowgate.validation import validate
from flowgate.registry import WorkflowRegistry
from flowgate.engine import WorkflowEngine
from flowgate.triggers.manager import TriggerManager
from flowgate.triggers.event import EventBus, InMemoryEventBus
from flowgate.approval.gate import ApprovalGate
from flowgate.monitoring import WorkflowMonitor
from flowgate.service import OrchestrationService

__all__ = [
    # Enums
    "StepType",
    "TriggerType",
    "RunStatus",
    "StepOutcome",
    "ConditionOperator",
    "CombineWith",
    "Criticality",
    "ApprovalDecision",
    "ApprovalStatus",
    # Definitions
    "RetryPolicy",
    "NotificationPolicy",
    "ErrorHandling",
    "Condition",
    "Step",
    "TriggerConfig",
    "WorkflowMetadata",
    "WorkflowDefinition",
    # Runs
    "Trigger",
    "RunError",
    "HistoryEntry",
    "RunContext",
    "RunRequest",
    "ApprovalRequest",
    "EscalationRecord",
    "MetricSample",
    "WorkflowEvent",
    # Errors
    "ErrorKind",
    "FlowgateError",
    "ValidationError",
    "InvalidDefinition",
    "DefinitionConflict",
    "UnknownWorkflow",
    "UnknownRun",
    "ApprovalNotPending",
    "CapabilityNotFound",
    "HandlerError",
    "RetryableError",
    "ConfigurationError",
    "StepTimeout",
    "RejectedByApprover",
    # Components
    "Capability",
    "CapabilityRegistry",
    "CapabilityRequest",
    "LogNotifier",
    "Notifier",
    "WebhookNotifier",
    "FlowgateConfig",
    "validate",
    "WorkflowRegistry",
    "WorkflowEngine",
    "TriggerManager",
    "EventBus",
    "InMemoryEventBus",
    "ApprovalGate",
    "WorkflowMonitor",
    "OrchestrationService",
]

__version__ = "0.1.0"
