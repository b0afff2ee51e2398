from .repository import (
    ExecutionRepository,
    InMemoryExecutionRepository,
    InMemoryWorkflowRepository,
    WorkflowRepository,
)
from .sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyExecutionRepository,
    SQLAlchemyWorkflowRepository,
)

__all__ = [
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "InMemoryWorkflowRepository",
    "WorkflowRepository",
    "DatabaseManager",
    "SQLAlchemyExecutionRepository",
    "SQLAlchemyWorkflowRepository",
]
