"""
Flowgate Types

Core dataclasses for workflow definitions, triggers and runs.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import uuid

from flowgate.errors import ErrorKind, InvalidDefinition


# === Enums ===


class StepType(str, Enum):
    """Kinds of workflow steps."""
    DETECT = "detect"
    ANALYZE = "analyze"
    DECIDE = "decide"
    EXECUTE = "execute"
    VERIFY = "verify"
    REPORT = "report"


class TriggerType(str, Enum):
    """Types of workflow triggers."""
    SCHEDULED = "scheduled"      # Cron-based
    EVENT = "event"              # Named pub/sub topic
    THRESHOLD = "threshold"      # Metric crossing a value


class RunStatus(str, Enum):
    """Status of a workflow run."""
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepOutcome(str, Enum):
    """Outcome recorded for one step attempt."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ConditionOperator(str, Enum):
    """Comparison operators for step conditions and thresholds."""
    EQUALS = "="
    NOT_EQUALS = "!="
    GREATER_THAN = ">"
    GREATER_EQUAL = ">="
    LESS_THAN = "<"
    LESS_EQUAL = "<="
    CONTAINS = "contains"
    EXISTS = "exists"
    IN = "in"
    NOT_IN = "not_in"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ConditionOperator"]:
        aliases = {
            "==": cls.EQUALS,
            "eq": cls.EQUALS,
            "ne": cls.NOT_EQUALS,
            "gt": cls.GREATER_THAN,
            "gte": cls.GREATER_EQUAL,
            "lt": cls.LESS_THAN,
            "lte": cls.LESS_EQUAL,
        }
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None


class CombineWith(str, Enum):
    """How a condition combines with the next one."""
    AND = "and"
    OR = "or"


class Criticality(str, Enum):
    """Criticality level of a workflow."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ApprovalDecision(str, Enum):
    """Decision on an approval request."""
    APPROVE = "approve"
    REJECT = "reject"


class ApprovalStatus(str, Enum):
    """Status of an approval request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# === Error Handling Policy ===


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for a step.

    ``attempts`` counts total tries including the first one.
    """
    attempts: int = 1
    delay_seconds: float = 0.0
    backoff_multiplier: Optional[float] = None
    max_delay_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "delay_seconds": self.delay_seconds,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay_seconds": self.max_delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            attempts=int(data.get("attempts", 1)),
            delay_seconds=float(data.get("delay_seconds", 0.0)),
            backoff_multiplier=(
                float(data["backoff_multiplier"])
                if data.get("backoff_multiplier") is not None else None
            ),
            max_delay_seconds=(
                float(data["max_delay_seconds"])
                if data.get("max_delay_seconds") is not None else None
            ),
        )


@dataclass(frozen=True)
class NotificationPolicy:
    """Where to send step failure notifications."""
    channels: Tuple[str, ...] = ()
    recipients: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"channels": list(self.channels), "recipients": list(self.recipients)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationPolicy":
        return cls(
            channels=tuple(data.get("channels", ())),
            recipients=tuple(data.get("recipients", ())),
        )


@dataclass(frozen=True)
class ErrorHandling:
    """Per-step failure policy."""
    retry: Optional[RetryPolicy] = None
    escalate: bool = False
    notification: Optional[NotificationPolicy] = None

    @property
    def max_attempts(self) -> int:
        """Total tries allowed; absent or zero retry policy means one."""
        if self.retry is None or self.retry.attempts <= 0:
            return 1
        return self.retry.attempts

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"escalate": self.escalate}
        if self.retry:
            result["retry"] = self.retry.to_dict()
        if self.notification:
            result["notification"] = self.notification.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorHandling":
        return cls(
            retry=RetryPolicy.from_dict(data["retry"]) if data.get("retry") else None,
            escalate=bool(data.get("escalate", False)),
            notification=(
                NotificationPolicy.from_dict(data["notification"])
                if data.get("notification") else None
            ),
        )


# === Conditions ===


@dataclass(frozen=True)
class Condition:
    """A predicate over a prior step's outputs."""
    field: str
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    combine_with: CombineWith = CombineWith.AND

    @property
    def step_ref(self) -> str:
        """Step id the field path starts with."""
        return self.field.split(".", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "combine_with": self.combine_with.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            field=data["field"],
            operator=ConditionOperator(data.get("operator", "=")),
            value=data.get("value"),
            combine_with=CombineWith(data.get("combine_with", "and")),
        )


# === Steps ===


@dataclass(frozen=True)
class Step:
    """One unit of work bound to a capability and a failure policy."""
    id: str
    type: StepType
    agent: str
    service: str
    action: str
    name: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ()
    conditions: Tuple[Condition, ...] = ()
    human_approval_required: bool = False
    timeout_seconds: Optional[float] = None
    error_handling: ErrorHandling = field(default_factory=ErrorHandling)

    @property
    def capability_key(self) -> Tuple[str, str, str]:
        return (self.agent, self.service, self.action)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "agent": self.agent,
            "service": self.service,
            "action": self.action,
            "parameters": self.parameters,
            "outputs": list(self.outputs),
            "human_approval_required": self.human_approval_required,
            "timeout_seconds": self.timeout_seconds,
            "error_handling": self.error_handling.to_dict(),
        }
        if self.conditions:
            result["conditions"] = [c.to_dict() for c in self.conditions]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        timeout = data.get("timeout_seconds")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            type=StepType(data["type"]),
            agent=data["agent"],
            service=data["service"],
            action=data["action"],
            parameters=copy.deepcopy(data.get("parameters", {})),
            outputs=tuple(data.get("outputs", ())),
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions", ())),
            human_approval_required=bool(data.get("human_approval_required", False)),
            timeout_seconds=float(timeout) if timeout is not None else None,
            error_handling=ErrorHandling.from_dict(data.get("error_handling") or {}),
        )


# === Trigger Configuration ===


@dataclass(frozen=True)
class TriggerConfig:
    """Declarative trigger owned by a workflow definition."""
    trigger_type: TriggerType

    # Scheduled trigger
    cron_expression: Optional[str] = None
    timezone: str = "UTC"

    # Event trigger
    topic: Optional[str] = None
    event_filter: Optional[Dict[str, Any]] = None

    # Threshold trigger
    metric: Optional[str] = None
    operator: Optional[ConditionOperator] = None
    threshold: Optional[float] = None

    # Common
    initial_context: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.trigger_type.value,
            "enabled": self.enabled,
            "description": self.description,
            "initial_context": self.initial_context,
        }
        if self.trigger_type == TriggerType.SCHEDULED:
            result["cron"] = self.cron_expression
            result["timezone"] = self.timezone
        elif self.trigger_type == TriggerType.EVENT:
            result["topic"] = self.topic
            result["event_filter"] = self.event_filter
        elif self.trigger_type == TriggerType.THRESHOLD:
            result["metric"] = self.metric
            result["operator"] = self.operator.value if self.operator else None
            result["value"] = self.threshold
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerConfig":
        operator = data.get("operator")
        threshold = data.get("value")
        return cls(
            trigger_type=TriggerType(data["type"]),
            cron_expression=data.get("cron"),
            timezone=data.get("timezone", "UTC"),
            topic=data.get("topic"),
            event_filter=data.get("event_filter"),
            metric=data.get("metric"),
            operator=ConditionOperator(operator) if operator is not None else None,
            threshold=float(threshold) if threshold is not None else None,
            initial_context=copy.deepcopy(data.get("initial_context", {})),
            enabled=data.get("enabled", True),
            description=data.get("description", ""),
        )


@dataclass
class Trigger:
    """A registered trigger instance and its firing state."""
    config: TriggerConfig
    workflow_id: str = ""
    version: str = ""
    index: int = 0

    # State
    last_fired_at: Optional[datetime] = None
    next_fire_at: Optional[datetime] = None
    fire_count: int = 0
    condition_active: bool = False  # Threshold edge state

    @property
    def id(self) -> str:
        return f"{self.workflow_id}@{self.version}#{self.index}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "version": self.version,
            "config": self.config.to_dict(),
            "last_fired_at": self.last_fired_at.isoformat() if self.last_fired_at else None,
            "next_fire_at": self.next_fire_at.isoformat() if self.next_fire_at else None,
            "fire_count": self.fire_count,
        }


# === Workflow Definition ===


@dataclass(frozen=True)
class WorkflowMetadata:
    """Descriptive metadata of a workflow definition."""
    required_agents: Tuple[str, ...] = ()
    required_services: Tuple[str, ...] = ()
    estimated_duration_seconds: Optional[float] = None
    criticality: Criticality = Criticality.MEDIUM
    tags: Tuple[str, ...] = ()
    industry: str = ""
    compliance: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required_agents": list(self.required_agents),
            "required_services": list(self.required_services),
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "criticality": self.criticality.value,
            "tags": list(self.tags),
            "industry": self.industry,
            "compliance": list(self.compliance),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowMetadata":
        return cls(
            required_agents=tuple(data.get("required_agents", ())),
            required_services=tuple(data.get("required_services", ())),
            estimated_duration_seconds=data.get("estimated_duration_seconds"),
            criticality=Criticality(data.get("criticality", "medium")),
            tags=tuple(data.get("tags", ())),
            industry=data.get("industry", ""),
            compliance=tuple(data.get("compliance", ())),
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    An immutable, versioned workflow definition.

    Steps execute strictly in declaration order. Definitions are keyed by
    ``(use_case_id, version)``; new behavior requires a new version.
    """
    use_case_id: str
    version: str
    steps: Tuple[Step, ...] = ()
    triggers: Tuple[TriggerConfig, ...] = ()
    metadata: WorkflowMetadata = field(default_factory=WorkflowMetadata)
    id: str = ""
    name: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, "id", f"{self.use_case_id}@{self.version}")
        # Accept lists from callers but store tuples
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "triggers", tuple(self.triggers))

    @property
    def key(self) -> Tuple[str, str]:
        return (self.use_case_id, self.version)

    def fingerprint(self) -> str:
        """Content hash used for idempotent registration."""
        payload = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "use_case_id": self.use_case_id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "triggers": [t.to_dict() for t in self.triggers],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        """
        Create from dictionary.

        Parse errors in steps, triggers and metadata are collected and raised
        together as InvalidDefinition.
        """
        violations: List[str] = []

        for required in ("use_case_id", "version"):
            if not data.get(required):
                violations.append(f"missing required field '{required}'")

        steps: List[Step] = []
        for index, step_data in enumerate(data.get("steps", [])):
            try:
                steps.append(Step.from_dict(step_data))
            except KeyError as e:
                violations.append(f"step[{index}]: missing required field {e}")
            except (ValueError, TypeError) as e:
                violations.append(f"step[{index}]: {e}")

        triggers: List[TriggerConfig] = []
        for index, trigger_data in enumerate(data.get("triggers", [])):
            try:
                triggers.append(TriggerConfig.from_dict(trigger_data))
            except KeyError as e:
                violations.append(f"trigger[{index}]: missing required field {e}")
            except (ValueError, TypeError) as e:
                violations.append(f"trigger[{index}]: {e}")

        metadata = WorkflowMetadata()
        try:
            metadata = WorkflowMetadata.from_dict(data.get("metadata") or {})
        except (ValueError, TypeError) as e:
            violations.append(f"metadata: {e}")

        if violations:
            raise InvalidDefinition(violations)

        return cls(
            use_case_id=data["use_case_id"],
            version=str(data["version"]),
            steps=tuple(steps),
            triggers=tuple(triggers),
            metadata=metadata,
            id=data.get("id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
        )


# === Run Types ===


@dataclass
class RunError:
    """Why a step or run failed."""
    kind: ErrorKind
    message: str
    step_id: Optional[str] = None
    attempt: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "step_id": self.step_id,
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunError":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            step_id=data.get("step_id"),
            attempt=data.get("attempt", 0),
        )


@dataclass
class HistoryEntry:
    """One step attempt (or skip) in a run's history."""
    step_id: str
    outcome: StepOutcome
    attempt: int = 1
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    error: Optional[RunError] = None

    @property
    def duration_ms(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "outcome": self.outcome.value,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            step_id=data["step_id"],
            outcome=StepOutcome(data["outcome"]),
            attempt=data.get("attempt", 1),
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=(
                datetime.fromisoformat(data["finished_at"])
                if data.get("finished_at") else None
            ),
            error=RunError.from_dict(data["error"]) if data.get("error") else None,
        )


@dataclass
class RunContext:
    """
    Mutable state of one execution attempt of a definition.

    ``outputs`` only grows: a step's outputs are committed once, on success,
    and never replaced. Only the engine and the approval path mutate a run.
    """
    workflow_id: str
    version: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    definition_id: str = ""
    initial_context: Dict[str, Any] = field(default_factory=dict)

    # State
    status: RunStatus = RunStatus.PENDING
    current_step_index: int = 0
    current_step_id: Optional[str] = None
    current_attempt: int = 0
    awaiting_step_id: Optional[str] = None
    approved_step_id: Optional[str] = None

    # Results
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    history: List[HistoryEntry] = field(default_factory=list)
    error: Optional[RunError] = None
    escalated: bool = False

    # Origin
    trigger_type: Optional[TriggerType] = None
    trigger_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    initiated_by: str = "system"

    # Timing
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> float:
        if not self.started_at or not self.completed_at:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def start(self) -> None:
        """Mark run as running."""
        self.status = RunStatus.RUNNING
        if not self.started_at:
            self.started_at = datetime.now()

    def commit_outputs(self, step_id: str, outputs: Dict[str, Any]) -> None:
        """Commit a succeeded step's outputs."""
        if step_id in self.outputs:
            raise ValueError(f"Outputs for step {step_id} are already committed")
        self.outputs[step_id] = copy.deepcopy(outputs)

    def record(self, entry: HistoryEntry) -> None:
        self.history.append(entry)

    def complete(self) -> None:
        """Mark run as completed."""
        self.status = RunStatus.COMPLETED
        self.completed_at = datetime.now()
        self.current_step_id = None
        self.awaiting_step_id = None

    def fail(self, error: RunError, escalated: bool = False) -> None:
        """Mark run as failed."""
        self.status = RunStatus.FAILED
        self.error = error
        self.escalated = escalated
        self.completed_at = datetime.now()
        self.awaiting_step_id = None

    def cancel(self) -> None:
        """Mark run as cancelled."""
        self.status = RunStatus.CANCELLED
        self.completed_at = datetime.now()
        self.awaiting_step_id = None

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot as a plain dictionary."""
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "version": self.version,
            "definition_id": self.definition_id,
            "initial_context": copy.deepcopy(self.initial_context),
            "status": self.status.value,
            "awaiting_approval": self.status == RunStatus.AWAITING_APPROVAL,
            "current_step_index": self.current_step_index,
            "current_step_id": self.current_step_id,
            "current_attempt": self.current_attempt,
            "awaiting_step_id": self.awaiting_step_id,
            "approved_step_id": self.approved_step_id,
            "outputs": copy.deepcopy(self.outputs),
            "history": [h.to_dict() for h in self.history],
            "error": self.error.to_dict() if self.error else None,
            "escalated": self.escalated,
            "trigger_type": self.trigger_type.value if self.trigger_type else None,
            "trigger_id": self.trigger_id,
            "dedupe_key": self.dedupe_key,
            "initiated_by": self.initiated_by,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunContext":
        """Rebuild a run from a snapshot."""
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            run_id=data["run_id"],
            workflow_id=data["workflow_id"],
            version=data["version"],
            definition_id=data.get("definition_id", ""),
            initial_context=copy.deepcopy(data.get("initial_context", {})),
            status=RunStatus(data.get("status", "pending")),
            current_step_index=data.get("current_step_index", 0),
            current_step_id=data.get("current_step_id"),
            current_attempt=data.get("current_attempt", 0),
            awaiting_step_id=data.get("awaiting_step_id"),
            approved_step_id=data.get("approved_step_id"),
            outputs=copy.deepcopy(data.get("outputs", {})),
            history=[HistoryEntry.from_dict(h) for h in data.get("history", [])],
            error=RunError.from_dict(data["error"]) if data.get("error") else None,
            escalated=data.get("escalated", False),
            trigger_type=TriggerType(data["trigger_type"]) if data.get("trigger_type") else None,
            trigger_id=data.get("trigger_id"),
            dedupe_key=data.get("dedupe_key"),
            initiated_by=data.get("initiated_by", "system"),
            created_at=_dt(data.get("created_at")) or datetime.now(),
            started_at=_dt(data.get("started_at")),
            completed_at=_dt(data.get("completed_at")),
        )


@dataclass
class RunRequest:
    """Request to start a run, produced by triggers or manual starts."""
    workflow_id: str
    version: Optional[str] = None
    initial_context: Dict[str, Any] = field(default_factory=dict)
    trigger_type: Optional[TriggerType] = None
    trigger_id: Optional[str] = None
    dedupe_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "version": self.version,
            "initial_context": self.initial_context,
            "trigger_type": self.trigger_type.value if self.trigger_type else None,
            "trigger_id": self.trigger_id,
            "dedupe_key": self.dedupe_key,
        }


# === Approvals and Escalations ===


@dataclass
class ApprovalRequest:
    """A pending human decision keyed by (run_id, step_id)."""
    run_id: str
    step_id: str
    workflow_id: str = ""
    step_name: str = ""
    message: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    decided_by: Optional[str] = None
    decision_message: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    decided_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.run_id, self.step_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "step_id": self.step_id,
            "workflow_id": self.workflow_id,
            "step_name": self.step_name,
            "message": self.message,
            "status": self.status.value,
            "decided_by": self.decided_by,
            "decision_message": self.decision_message,
            "created_at": self.created_at.isoformat(),
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }


@dataclass
class EscalationRecord:
    """An exhausted-retry failure flagged for operator attention."""
    run_id: str
    workflow_id: str
    step_id: str
    error_kind: ErrorKind
    message: str
    attempts: int = 1
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = "open"
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "error_kind": self.error_kind.value,
            "message": self.message,
            "attempts": self.attempts,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }


# === Trigger Inputs ===


@dataclass
class MetricSample:
    """A named metric observation."""
    metric: str
    value: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class WorkflowEvent:
    """An event delivered through the pub/sub interface."""
    topic: str
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": self.payload,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
        }
