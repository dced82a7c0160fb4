"""
Flowgate Execution

Run context views and retry handling for the step executor.
"""

from flowgate.execution.context import ExecutionContext, get_path, template_references
from flowgate.execution.retry import RetryHandler, RetryOutcome

__all__ = [
    "ExecutionContext",
    "RetryHandler",
    "RetryOutcome",
    "get_path",
    "template_references",
]
