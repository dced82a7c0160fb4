"""
Flowgate Conditions

Closed operator set and step condition evaluation.
"""

from flowgate.conditions.evaluator import ConditionEvaluator
from flowgate.conditions.operators import OperatorRegistry, compare

__all__ = [
    "ConditionEvaluator",
    "OperatorRegistry",
    "compare",
]
