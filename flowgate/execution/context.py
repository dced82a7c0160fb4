"""
Flowgate Execution Context

Read-only access to a run's committed outputs for conditions, parameter
templates and capability requests.
"""

from __future__ import annotations

import copy
import re
from types import MappingProxyType
from typing import Any, Mapping, Set, TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from flowgate.types import RunContext

logger = structlog.get_logger(__name__)


# Template root naming the run's initial context
INPUTS_ROOT = "inputs"

_MISSING = object()


def _freeze(value: Any) -> Any:
    """Deep read-only copy of a JSON-like value."""
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path through nested mappings and sequences."""
    current = data
    for part in path.split("."):
        if current is None:
            return default
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return default
            if not 0 <= index < len(current):
                return default
            current = current[index]
        else:
            return default
    return current


class ExecutionContext:
    """
    View over a run used while executing its steps.

    Features:
    - Dotted path lookup where the first segment is a step id
    - Expression resolution with {{ step_id.path }} syntax
    - Read-only snapshots of committed outputs and initial inputs

    Only committed outputs are visible; a step that has not succeeded
    contributes nothing.
    """

    # Expression pattern for {{ step_id.path }}
    EXPRESSION_PATTERN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")

    def __init__(self, run: "RunContext"):
        self.run = run

    # === Data Access ===

    def get(self, path: str, default: Any = None) -> Any:
        """Get a committed output value by dotted path."""
        step_id, _, rest = path.partition(".")
        outputs = self.run.outputs.get(step_id, _MISSING)
        if outputs is _MISSING:
            return default
        if not rest:
            return outputs
        value = get_path(outputs, rest, _MISSING)
        if value is _MISSING and rest.startswith("output."):
            # "step.output.key" addresses the same map as "step.key"
            value = get_path(outputs, rest[len("output."):], _MISSING)
        return default if value is _MISSING else value

    def has(self, path: str) -> bool:
        """Check if a path resolves to a non-null value."""
        return self.get(path) is not None

    def outputs_view(self) -> Mapping[str, Any]:
        """Read-only snapshot of committed outputs keyed by step id."""
        return _freeze(copy.deepcopy(self.run.outputs))

    def inputs_view(self) -> Mapping[str, Any]:
        """Read-only snapshot of the run's initial context."""
        return _freeze(copy.deepcopy(self.run.initial_context))

    # === Expression Resolution ===

    def resolve(self, value: Any) -> Any:
        """
        Resolve templates in a parameter value.

        A string that is exactly one template resolves to the referenced
        value itself; templates embedded in longer strings are interpolated.
        Unresolvable references become None (or "" when interpolated).
        """
        if value is None:
            return None

        if isinstance(value, str):
            return self._resolve_string(value)

        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}

        if isinstance(value, list):
            return [self.resolve(item) for item in value]

        return value

    def _resolve_string(self, value: str) -> Any:
        match = self.EXPRESSION_PATTERN.fullmatch(value.strip())
        if match:
            return copy.deepcopy(self._lookup(match.group(1)))

        def replace(match: "re.Match[str]") -> str:
            resolved = self._lookup(match.group(1))
            return str(resolved) if resolved is not None else ""

        return self.EXPRESSION_PATTERN.sub(replace, value)

    def _lookup(self, expr: str) -> Any:
        expr = expr.strip()
        root, _, rest = expr.partition(".")
        if root == INPUTS_ROOT:
            return get_path(self.run.initial_context, rest) if rest else self.run.initial_context

        value = self.get(expr)
        if value is None:
            logger.debug("template_unresolved", run_id=self.run.run_id, expression=expr)
        return value

    def __repr__(self) -> str:
        return f"ExecutionContext(run={self.run.run_id}, steps={list(self.run.outputs)})"


def template_references(value: Any) -> Set[str]:
    """Collect the root names referenced by templates inside a value."""
    found: Set[str] = set()

    def _walk(item: Any) -> None:
        if isinstance(item, str):
            for expr in ExecutionContext.EXPRESSION_PATTERN.findall(item):
                found.add(expr.strip().split(".", 1)[0])
        elif isinstance(item, dict):
            for v in item.values():
                _walk(v)
        elif isinstance(item, (list, tuple)):
            for v in item:
                _walk(v)

    _walk(value)
    return found
