"""Plan and apply application updates from email facts."""
from .dispatcher import Dispatcher
from .execution_runner import ExecutionRunner
from .input_builder import DecisionInputBuilder
from .planner import Planner
from .preconditions import PreconditionEvaluator
from .validation import SemanticValidator

__all__ = [
    "DecisionInputBuilder",
    "Planner",
    "SemanticValidator",
    "PreconditionEvaluator",
    "Dispatcher",
    "ExecutionRunner",
]
