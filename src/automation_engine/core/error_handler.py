"""
执行失败处理：通知与整体重试
"""
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..models.execution import WorkflowExecution
from ..models.workflow import Workflow
from .functions import utc_now


logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """重试策略"""
    FIXED_DELAY = "fixed"
    LINEAR_BACKOFF = "linear"
    EXPONENTIAL_BACKOFF = "exponential"


@dataclass
class RetryPolicy:
    """重试策略"""
    max_retries: int = 3
    initial_delay: float = 60.0  # 秒
    max_delay: Optional[float] = None
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    backoff_factor: float = 2.0
    jitter: bool = False

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "RetryPolicy":
        """从工作流 settings 构建"""
        strategy = settings.get("retry_strategy", RetryStrategy.EXPONENTIAL_BACKOFF.value)
        return cls(
            max_retries=int(settings.get("max_retries", 3)),
            initial_delay=float(settings.get("retry_delay_seconds", 60)),
            max_delay=settings.get("retry_max_delay_seconds"),
            strategy=RetryStrategy(strategy),
            backoff_factor=float(settings.get("retry_backoff_factor", 2.0)),
            jitter=bool(settings.get("retry_jitter", False)),
        )

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def delay_for(self, retry_count: int) -> float:
        """计算重试延迟"""
        if self.strategy == RetryStrategy.FIXED_DELAY:
            delay = self.initial_delay
        elif self.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = self.initial_delay * (retry_count + 1)
        else:
            delay = self.initial_delay * (self.backoff_factor ** retry_count)

        if self.max_delay is not None:
            delay = min(delay, float(self.max_delay))

        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay


class FailureHandler:
    """执行失败后的通知与重试调度"""

    def __init__(self, scheduler, notifier=None, clock=None):
        self.scheduler = scheduler
        self.notifier = notifier
        self.clock = clock or utc_now

    async def handle_failure(self, workflow: Workflow, execution: WorkflowExecution) -> Optional[str]:
        """
        处理失败的执行

        Returns:
            重试任务ID，没有调度重试时为 None
        """
        logger.error(
            f"Workflow {workflow.id} execution {execution.execution_id} failed: {execution.error_message}",
            extra={"workflow_id": workflow.id, "execution_id": execution.execution_id}
        )

        if workflow.setting("notification_on_failure") and self.notifier is not None:
            try:
                await self.notifier.notify_failure(workflow, execution)
            except Exception as e:
                logger.error(f"Failure notification for execution {execution.execution_id} failed: {e}",
                             exc_info=True)

        if workflow.setting("retry_on_failure"):
            try:
                return await self.schedule_retry(workflow, execution)
            except Exception as e:
                logger.error(f"Retry scheduling for execution {execution.execution_id} failed: {e}",
                             exc_info=True)
                execution.log("error", "Retry scheduling failed", {"error": str(e)})
        return None

    async def schedule_retry(self, workflow: Workflow, execution: WorkflowExecution) -> Optional[str]:
        """按指数退避调度整个工作流重新执行"""
        policy = RetryPolicy.from_settings(workflow.settings)
        retry_count = execution.retry_count

        if not policy.should_retry(retry_count):
            execution.log("info", "Retry limit reached", {"retry_count": retry_count})
            return None

        delay = policy.delay_for(retry_count)
        now = self.clock().timestamp()
        job_id = await self.scheduler.schedule_once(now + delay, {
            "action": "execute_workflow",
            "workflow_id": workflow.id,
            "trigger_data": execution.trigger_data,
            "context": {**execution.context, "retry_count": retry_count + 1},
        })
        execution.log("info", f"Retry scheduled in {delay} seconds", {
            "retry_count": retry_count + 1,
            "job_id": job_id
        })
        logger.info(f"Scheduled retry {retry_count + 1} for workflow {workflow.id} in {delay}s")
        return job_id
