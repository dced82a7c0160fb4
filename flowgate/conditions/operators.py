"""
Flowgate Condition Operators

Comparison operators for step conditions and threshold triggers.
"""

from __future__ import annotations

from typing import Any, Callable, Dict

from flowgate.types import ConditionOperator


class OperatorRegistry:
    """
    Registry of comparison operators.

    The operator set is closed: every ConditionOperator member has exactly
    one implementation and unknown operators raise instead of passing.
    """

    def __init__(self):
        self._operators: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
            ConditionOperator.EQUALS: self._equals,
            ConditionOperator.NOT_EQUALS: self._not_equals,
            ConditionOperator.GREATER_THAN: self._greater_than,
            ConditionOperator.GREATER_EQUAL: self._greater_equal,
            ConditionOperator.LESS_THAN: self._less_than,
            ConditionOperator.LESS_EQUAL: self._less_equal,
            ConditionOperator.CONTAINS: self._contains,
            ConditionOperator.EXISTS: self._exists,
            ConditionOperator.IN: self._in,
            ConditionOperator.NOT_IN: self._not_in,
        }
        missing = set(ConditionOperator) - set(self._operators)
        if missing:
            raise RuntimeError(f"Operators without implementation: {sorted(m.value for m in missing)}")

    def evaluate(
        self,
        operator: ConditionOperator,
        left: Any,
        right: Any,
    ) -> bool:
        """Evaluate an operator."""
        func = self._operators.get(ConditionOperator(operator))
        if not func:
            raise ValueError(f"Unknown operator: {operator}")

        return func(left, right)

    # === Operator Implementations ===

    @staticmethod
    def _equals(left: Any, right: Any) -> bool:
        """Equality comparison."""
        return left == right

    @staticmethod
    def _not_equals(left: Any, right: Any) -> bool:
        """Inequality comparison."""
        return left != right

    @staticmethod
    def _ordered(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
        # Missing or incomparable values never satisfy an ordering
        if left is None or right is None:
            return False
        try:
            return bool(op(left, right))
        except TypeError:
            return False

    @staticmethod
    def _greater_than(left: Any, right: Any) -> bool:
        """Greater than comparison."""
        return OperatorRegistry._ordered(left, right, lambda a, b: a > b)

    @staticmethod
    def _greater_equal(left: Any, right: Any) -> bool:
        """Greater than or equal comparison."""
        return OperatorRegistry._ordered(left, right, lambda a, b: a >= b)

    @staticmethod
    def _less_than(left: Any, right: Any) -> bool:
        """Less than comparison."""
        return OperatorRegistry._ordered(left, right, lambda a, b: a < b)

    @staticmethod
    def _less_equal(left: Any, right: Any) -> bool:
        """Less than or equal comparison."""
        return OperatorRegistry._ordered(left, right, lambda a, b: a <= b)

    @staticmethod
    def _contains(left: Any, right: Any) -> bool:
        """Contains check (string or collection)."""
        if left is None:
            return False

        if isinstance(left, str):
            return str(right) in left

        if isinstance(left, (list, tuple, set, frozenset)):
            return right in left

        if isinstance(left, dict):
            return right in left.keys()

        return False

    @staticmethod
    def _exists(left: Any, right: Any) -> bool:
        """Presence check; the right operand is ignored."""
        return left is not None

    @staticmethod
    def _in(left: Any, right: Any) -> bool:
        """Membership in a literal collection."""
        if isinstance(right, (list, tuple, set, frozenset)):
            return left in right
        return False

    @staticmethod
    def _not_in(left: Any, right: Any) -> bool:
        """Non-membership in a literal collection."""
        if isinstance(right, (list, tuple, set, frozenset)):
            return left not in right
        return False


# Global operator registry
_operator_registry = OperatorRegistry()


def compare(
    left: Any,
    operator: ConditionOperator,
    right: Any,
) -> bool:
    """
    Compare two values using an operator.

    Args:
        left: Left operand (the resolved field value)
        operator: Comparison operator
        right: Right operand (the literal from the definition)

    Returns:
        Comparison result
    """
    return _operator_registry.evaluate(operator, left, right)
