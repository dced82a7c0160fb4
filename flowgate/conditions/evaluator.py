"""
Flowgate Condition Evaluator

Evaluates step gating conditions against committed outputs.
"""

from __future__ import annotations

from typing import Iterable, TYPE_CHECKING

import structlog

from flowgate.types import CombineWith, Condition
from flowgate.conditions.operators import compare

if TYPE_CHECKING:
    from flowgate.execution.context import ExecutionContext

logger = structlog.get_logger(__name__)


class ConditionEvaluator:
    """
    Evaluates step conditions.

    Features:
    - Dotted field resolution against committed outputs
    - Closed operator set
    - Left-to-right AND/OR chaining via ``combine_with``
    """

    def evaluate(
        self,
        condition: Condition,
        context: "ExecutionContext",
    ) -> bool:
        """Evaluate a single condition."""
        left = context.get(condition.field)
        result = compare(left, condition.operator, condition.value)

        logger.debug(
            "condition_evaluated",
            field=condition.field,
            operator=condition.operator.value,
            value=condition.value,
            actual=left,
            result=result,
        )

        return result

    def evaluate_all(
        self,
        conditions: Iterable[Condition],
        context: "ExecutionContext",
    ) -> bool:
        """
        Evaluate a step's condition list.

        Each condition's ``combine_with`` joins it to the next condition, so
        ``[a(or), b(and), c]`` reads ``(a or b) and c``. An empty list is true.
        """
        result = True
        combine = CombineWith.AND

        for condition in conditions:
            met = self.evaluate(condition, context)

            if combine == CombineWith.AND:
                result = result and met
            else:
                result = result or met

            combine = condition.combine_with

        return result
