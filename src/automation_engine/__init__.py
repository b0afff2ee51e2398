"""
Automation Workflow Engine - 自动化工作流执行引擎
"""

__version__ = "0.1.0"

from .config import EngineConfig
from .core.engine import ExecutionEngine
from .core.evaluator import ConditionEvaluator
from .core.parser import WorkflowParser
from .core.resolver import ValueResolver
from .models.workflow import Workflow, Node, Connection
from .models.execution import WorkflowExecution, NodeResult

__all__ = [
    "EngineConfig",
    "ExecutionEngine",
    "ConditionEvaluator",
    "WorkflowParser",
    "ValueResolver",
    "Workflow",
    "Node",
    "Connection",
    "WorkflowExecution",
    "NodeResult",
]
