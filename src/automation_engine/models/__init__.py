"""Workflow and execution models"""

from .workflow import (
    Workflow, Node, Connection, NodeType, WorkflowStatus, DEFAULT_SETTINGS
)
from .execution import (
    WorkflowExecution, NodeResult, ExecutionStatus, NodeStatus,
    ExecutionEvent, ExecutionEventType
)

__all__ = [
    "Workflow",
    "Node",
    "Connection",
    "NodeType",
    "WorkflowStatus",
    "DEFAULT_SETTINGS",
    "WorkflowExecution",
    "NodeResult",
    "ExecutionStatus",
    "NodeStatus",
    "ExecutionEvent",
    "ExecutionEventType"
]
