"""
Flowgate Definition Validator

Validates workflow definitions before registration.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pytz
import structlog
from croniter import croniter

from flowgate.errors import InvalidDefinition
from flowgate.execution.context import INPUTS_ROOT, template_references
from flowgate.types import (
    ConditionOperator,
    Step,
    TriggerConfig,
    TriggerType,
    WorkflowDefinition,
)

logger = structlog.get_logger(__name__)


SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)

# Operators that make sense against a numeric metric
THRESHOLD_OPERATORS = {
    ConditionOperator.EQUALS,
    ConditionOperator.NOT_EQUALS,
    ConditionOperator.GREATER_THAN,
    ConditionOperator.GREATER_EQUAL,
    ConditionOperator.LESS_THAN,
    ConditionOperator.LESS_EQUAL,
}


def version_key(version: str) -> Tuple:
    """
    Sort key implementing semantic version precedence.

    A release sorts after its pre-releases; build metadata is ignored.
    """
    match = SEMVER_PATTERN.match(version)
    if not match:
        return (-1, -1, -1, 0, ())
    major, minor, patch, prerelease = match.groups()
    if prerelease is None:
        return (int(major), int(minor), int(patch), 1, ())
    identifiers = tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in prerelease.split(".")
    )
    return (int(major), int(minor), int(patch), 0, identifiers)


class DefinitionValidator:
    """
    Validates workflow definitions.

    Checks:
    - Identity and semantic version
    - Unique step ids
    - Condition and template references point to strictly earlier steps
    - Capability triples are declared in the catalogue
    - Error handling and timeout bounds
    - Trigger completeness (cron syntax, topic, metric threshold)

    Every violation is collected; nothing stops at the first one.
    """

    def __init__(self, catalogue: Optional[Iterable[Tuple[str, str, str]]] = None):
        self.catalogue: Optional[Set[Tuple[str, str, str]]] = (
            set(catalogue) if catalogue is not None else None
        )

    def validate(self, definition: WorkflowDefinition) -> List[str]:
        """Return every violation found in a definition."""
        violations: List[str] = []

        self._validate_identity(definition, violations)
        self._validate_steps(definition, violations)
        for index, trigger in enumerate(definition.triggers):
            self._validate_trigger(index, trigger, violations)

        return violations

    # === Identity ===

    def _validate_identity(self, definition: WorkflowDefinition, violations: List[str]) -> None:
        if not definition.use_case_id:
            violations.append("use_case_id must not be empty")
        if not SEMVER_PATTERN.match(definition.version or ""):
            violations.append(f"version '{definition.version}' is not a semantic version")
        if not definition.steps:
            violations.append("definition must contain at least one step")

    # === Steps ===

    def _validate_steps(self, definition: WorkflowDefinition, violations: List[str]) -> None:
        seen: Dict[str, int] = {}
        all_ids = {step.id for step in definition.steps}
        required_agents = set(definition.metadata.required_agents)
        required_services = set(definition.metadata.required_services)

        for index, step in enumerate(definition.steps):
            label = f"step '{step.id}'" if step.id else f"step[{index}]"

            if not step.id:
                violations.append(f"{label}: id must not be empty")
            elif step.id in seen:
                violations.append(f"{label}: duplicate step id (first declared at index {seen[step.id]})")
            elif step.id == INPUTS_ROOT:
                violations.append(f"{label}: '{INPUTS_ROOT}' is reserved")

            for attr in ("agent", "service", "action"):
                if not getattr(step, attr):
                    violations.append(f"{label}: {attr} must not be empty")

            if step.agent and step.service and step.action and self.catalogue is not None:
                if step.capability_key not in self.catalogue:
                    violations.append(
                        f"{label}: capability {step.agent}/{step.service}/{step.action} is not declared"
                    )

            if required_agents and step.agent and step.agent not in required_agents:
                violations.append(f"{label}: agent '{step.agent}' is not listed in metadata.required_agents")
            if required_services and step.service and step.service not in required_services:
                violations.append(
                    f"{label}: service '{step.service}' is not listed in metadata.required_services"
                )

            if step.timeout_seconds is not None and step.timeout_seconds <= 0:
                violations.append(f"{label}: timeout_seconds must be positive")

            self._validate_error_handling(label, step, violations)

            earlier = set(seen)
            for condition in step.conditions:
                ref = condition.step_ref
                if not condition.field:
                    violations.append(f"{label}: condition field must not be empty")
                elif ref not in earlier:
                    kind = "later or same" if ref in all_ids else "unknown"
                    violations.append(
                        f"{label}: condition on '{condition.field}' references {kind} step '{ref}'"
                    )

            for ref in sorted(template_references(step.parameters)):
                if ref != INPUTS_ROOT and ref not in earlier:
                    kind = "later or same" if ref in all_ids else "unknown"
                    violations.append(f"{label}: parameter template references {kind} step '{ref}'")

            if step.id and step.id not in seen:
                seen[step.id] = index

    def _validate_error_handling(self, label: str, step: Step, violations: List[str]) -> None:
        retry = step.error_handling.retry
        if retry is None:
            return
        if retry.attempts < 0:
            violations.append(f"{label}: retry.attempts must be >= 0")
        if retry.delay_seconds < 0:
            violations.append(f"{label}: retry.delay_seconds must be >= 0")
        if retry.backoff_multiplier is not None and retry.backoff_multiplier <= 0:
            violations.append(f"{label}: retry.backoff_multiplier must be positive")
        if retry.max_delay_seconds is not None and retry.max_delay_seconds < 0:
            violations.append(f"{label}: retry.max_delay_seconds must be >= 0")

    # === Triggers ===

    def _validate_trigger(self, index: int, trigger: TriggerConfig, violations: List[str]) -> None:
        label = f"trigger[{index}]"

        if trigger.trigger_type == TriggerType.SCHEDULED:
            if not trigger.cron_expression:
                violations.append(f"{label}: scheduled trigger requires a cron expression")
            elif not croniter.is_valid(trigger.cron_expression):
                violations.append(f"{label}: invalid cron expression '{trigger.cron_expression}'")
            if trigger.timezone not in pytz.all_timezones_set:
                violations.append(f"{label}: unknown timezone '{trigger.timezone}'")

        elif trigger.trigger_type == TriggerType.EVENT:
            if not trigger.topic:
                violations.append(f"{label}: event trigger requires a topic")

        elif trigger.trigger_type == TriggerType.THRESHOLD:
            if not trigger.metric:
                violations.append(f"{label}: threshold trigger requires a metric")
            if trigger.operator is None:
                violations.append(f"{label}: threshold trigger requires an operator")
            elif trigger.operator not in THRESHOLD_OPERATORS:
                violations.append(
                    f"{label}: operator '{trigger.operator.value}' is not a comparison operator"
                )
            if trigger.threshold is None:
                violations.append(f"{label}: threshold trigger requires a numeric value")


def validate(
    definition: WorkflowDefinition,
    catalogue: Optional[Iterable[Tuple[str, str, str]]] = None,
) -> None:
    """
    Validate a definition against a capability catalogue.

    Raises:
        InvalidDefinition: listing every violation found
    """
    violations = DefinitionValidator(catalogue).validate(definition)
    if violations:
        logger.info(
            "definition_rejected",
            use_case_id=definition.use_case_id,
            version=definition.version,
            violations=len(violations),
        )
        raise InvalidDefinition(violations)
