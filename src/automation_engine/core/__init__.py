"""Core workflow engine components"""

from .engine import ExecutionEngine
from .evaluator import ConditionEvaluator
from .handlers import NodeDispatcher, NodeHandler, build_default_dispatcher
from .parser import WorkflowParser
from .resolver import ValueResolver
from .scheduler import ExecutionRateLimiter, InMemoryScheduler, Scheduler
from .traversal import GraphTraversal

__all__ = [
    "ExecutionEngine",
    "ConditionEvaluator",
    "NodeDispatcher",
    "NodeHandler",
    "build_default_dispatcher",
    "WorkflowParser",
    "ValueResolver",
    "ExecutionRateLimiter",
    "InMemoryScheduler",
    "Scheduler",
    "GraphTraversal",
]
