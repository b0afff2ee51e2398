"""
存储仓库接口定义
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any

from ..models.workflow import Workflow, WorkflowStatus
from ..models.execution import ExecutionStatus, WorkflowExecution, utcnow


class WorkflowRepository(ABC):
    """工作流存储仓库接口"""

    @abstractmethod
    async def save(self, workflow: Workflow) -> str:
        """保存工作流（存在则覆盖）"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """获取工作流"""
        pass

    @abstractmethod
    async def list(self, status: WorkflowStatus = None, offset: int = 0, limit: int = 100) -> List[Workflow]:
        """列出工作流"""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """删除工作流"""
        pass


class ExecutionRepository(ABC):
    """执行实例存储仓库接口"""

    @abstractmethod
    async def save(self, execution: WorkflowExecution) -> str:
        """保存执行实例（存在则覆盖）"""
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """获取执行实例"""
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        """根据工作流ID列出执行实例"""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        """根据状态列出执行实例"""
        pass

    @abstractmethod
    async def delete(self, execution_id: str) -> bool:
        """删除执行实例"""
        pass

    @abstractmethod
    async def cleanup_old_executions(self, days: int = 30) -> int:
        """清理开始时间早于 days 天前且已结束的执行实例"""
        pass


# 内存实现（用于测试）。保存快照，调用方修改对象后需再次 save
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[str, Dict[str, Any]] = {}

    async def save(self, workflow: Workflow) -> str:
        self.workflows[workflow.id] = workflow.to_dict()
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        data = self.workflows.get(workflow_id)
        return Workflow.from_dict(data) if data else None

    async def list(self, status: WorkflowStatus = None, offset: int = 0, limit: int = 100) -> List[Workflow]:
        workflows = [Workflow.from_dict(data) for data in self.workflows.values()]
        if status:
            workflows = [w for w in workflows if w.status == status]
        return workflows[offset:offset + limit]

    async def delete(self, workflow_id: str) -> bool:
        if workflow_id in self.workflows:
            del self.workflows[workflow_id]
            return True
        return False


class InMemoryExecutionRepository(ExecutionRepository):
    """内存执行仓库实现"""

    def __init__(self):
        self.executions: Dict[str, Dict[str, Any]] = {}

    async def save(self, execution: WorkflowExecution) -> str:
        self.executions[execution.id] = execution.to_dict()
        return execution.id

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        data = self.executions.get(execution_id)
        return WorkflowExecution.from_dict(data) if data else None

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        results = []
        for data in self.executions.values():
            execution = WorkflowExecution.from_dict(data)
            if execution.workflow_id != workflow_id:
                continue
            if status and execution.status != status:
                continue
            results.append(execution)

        results.sort(key=lambda e: e.started_at, reverse=True)
        return results[offset:offset + limit]

    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        results = [
            execution for execution in map(WorkflowExecution.from_dict, self.executions.values())
            if execution.status == status
        ]
        return results[offset:offset + limit]

    async def delete(self, execution_id: str) -> bool:
        if execution_id in self.executions:
            del self.executions[execution_id]
            return True
        return False

    async def cleanup_old_executions(self, days: int = 30, now: datetime = None) -> int:
        cutoff_date = (now or utcnow()) - timedelta(days=days)
        to_delete = []

        for execution_id, data in self.executions.items():
            execution = WorkflowExecution.from_dict(data)
            if execution.started_at < cutoff_date and execution.is_terminal_state():
                to_delete.append(execution_id)

        for execution_id in to_delete:
            del self.executions[execution_id]

        return len(to_delete)
