"""
失败通知集成
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..models.execution import WorkflowExecution
from ..models.workflow import Workflow


logger = logging.getLogger(__name__)


class Notifier(ABC):
    """失败通知接口"""

    @abstractmethod
    async def notify_failure(self, workflow: Workflow, execution: WorkflowExecution):
        """通知执行失败"""
        pass


def build_failure_message(workflow: Workflow, execution: WorkflowExecution) -> Dict[str, Any]:
    """失败通知内容"""
    return {
        "recipient": workflow.setting("notification_email") or None,
        "subject": f'Workflow "{workflow.name or workflow.id}" failed',
        "body": (
            "Workflow execution failed.\n\n"
            f"Workflow: {workflow.name or workflow.id}\n"
            f"Execution ID: {execution.execution_id}\n"
            f"Error: {execution.error_message or 'Unknown error'}\n"
            f"Time: {(execution.completed_at or execution.started_at).isoformat()}"
        ),
    }


class LoggingNotifier(Notifier):
    """将失败通知写入日志，并保留最近的通知"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def notify_failure(self, workflow: Workflow, execution: WorkflowExecution):
        message = build_failure_message(workflow, execution)
        self.sent.append(message)
        logger.warning(
            f"{message['subject']}: {execution.error_message}",
            extra={"workflow_id": workflow.id, "execution_id": execution.execution_id}
        )
