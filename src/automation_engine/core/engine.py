"""
工作流执行引擎

ExecutionEngine 是对外入口：检查前置条件（工作流已激活、未超过限流），
创建执行实例，驱动图遍历，并在挂起、完成或失败时落盘执行状态。
"""
import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..config import EngineConfig
from ..exceptions import (
    RateLimitExceededError, WorkflowEngineError, WorkflowInactiveError, WorkflowNotFoundError
)
from ..integrations.actions import ActionDispatcher, LocalActionDispatcher
from ..integrations.event_bus import EXECUTION_EVENTS_TOPIC, EventBus
from ..integrations.notifier import Notifier
from ..integrations.signals import InMemorySignalStore, SignalStore
from ..models.execution import (
    ExecutionEvent, ExecutionEventType, ExecutionStatus, NodeResult, NodeStatus, WorkflowExecution
)
from ..models.workflow import Node, NodeType, Workflow
from ..storage.repository import (
    ExecutionRepository, InMemoryExecutionRepository, InMemoryWorkflowRepository, WorkflowRepository
)
from .error_handler import FailureHandler
from .evaluator import ConditionEvaluator
from .functions import Clock, utc_now
from .handlers import NodeDispatcher, NodeHandler, build_default_dispatcher
from .resolver import ValueResolver
from .scheduler import ExecutionRateLimiter, InMemoryScheduler, Scheduler
from .traversal import GraphTraversal, TraversalOutcome


logger = logging.getLogger(__name__)

# 允许恢复的执行状态
RESUMABLE_STATUSES = (ExecutionStatus.PAUSED, ExecutionStatus.RUNNING)


class ExecutionEngine:
    """工作流执行引擎"""

    def __init__(
        self,
        workflow_repo: WorkflowRepository = None,
        execution_repo: ExecutionRepository = None,
        scheduler: Scheduler = None,
        actions: ActionDispatcher = None,
        notifier: Notifier = None,
        event_bus: EventBus = None,
        signals: SignalStore = None,
        config: EngineConfig = None,
        clock: Clock = None,
        rate_limiter: ExecutionRateLimiter = None,
        evaluator: ConditionEvaluator = None,
        resolver: ValueResolver = None,
        dispatcher: NodeDispatcher = None,
    ):
        self.config = config or EngineConfig()
        self.clock = clock or utc_now
        self.workflow_repo = workflow_repo or InMemoryWorkflowRepository()
        self.execution_repo = execution_repo or InMemoryExecutionRepository()
        self.scheduler = scheduler or InMemoryScheduler(clock=lambda: self.clock().timestamp())
        self.actions = actions or LocalActionDispatcher()
        self.notifier = notifier
        self.event_bus = event_bus
        self.signals = signals or InMemorySignalStore()
        self.rate_limiter = rate_limiter or ExecutionRateLimiter(
            window_seconds=self.config.rate_window_seconds,
            clock=lambda: self.clock().timestamp()
        )

        self.resolver = resolver or ValueResolver()
        self.evaluator = evaluator or ConditionEvaluator(self.resolver, clock=self.clock)
        self.dispatcher = dispatcher or build_default_dispatcher(
            self.evaluator, self.resolver, self.actions, self.signals, clock=self.clock, config=self.config
        )
        self.traversal = GraphTraversal(self.dispatcher, self.evaluator, self.config)
        self.failure_handler = FailureHandler(self.scheduler, self.notifier, clock=self.clock)

        # 运行中的执行实例，仅用于查询和取消
        self.running: Dict[str, WorkflowExecution] = {}

    def register_handler(self, node_type: str, handler: NodeHandler):
        """注册自定义节点处理器"""
        self.dispatcher.register_handler(node_type, handler)

    async def execute(
        self,
        workflow: Workflow,
        trigger_data: Dict[str, Any] = None,
        context: Dict[str, Any] = None
    ) -> WorkflowExecution:
        """
        执行工作流，运行到结束或第一个挂起点

        Raises:
            WorkflowInactiveError: 工作流未激活
            RateLimitExceededError: 超过每小时执行次数上限
        """
        if not workflow.is_active():
            raise WorkflowInactiveError(workflow.id, workflow.status.value)

        limit = int(workflow.setting("max_executions_per_hour"))
        if not self.rate_limiter.try_acquire(workflow.id, limit):
            logger.warning(f"Rate limit exceeded for workflow {workflow.id}")
            raise RateLimitExceededError(workflow.id, limit)

        trigger_data = dict(trigger_data or {})
        context = dict(context or {})
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_uuid=workflow.uuid,
            trigger_type=context.get("trigger_type", "manual"),
            trigger_data=trigger_data,
            context=context,
            variables={**workflow.variables, **trigger_data},
            started_at=self.clock(),
            log_level=workflow.setting("log_level", "info"),
        )

        execution.status = ExecutionStatus.RUNNING
        execution.log("info", "Workflow execution started", {"trigger_type": execution.trigger_type})
        self.running[execution.execution_id] = execution
        await self.execution_repo.save(execution)
        await self._publish(ExecutionEventType.WORKFLOW_STARTED, execution)

        start_nodes = self.traversal.find_start_nodes(workflow)
        await self._run_segment(workflow, execution, start_nodes)
        return execution

    async def execute_workflow_by_id(
        self,
        workflow_id: str,
        trigger_data: Dict[str, Any] = None,
        context: Dict[str, Any] = None
    ) -> WorkflowExecution:
        """按ID加载工作流并执行"""
        workflow = await self.workflow_repo.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return await self.execute(workflow, trigger_data, context)

    async def resume_execution(self, execution_id: str, node_id: str) -> Optional[WorkflowExecution]:
        """
        从指定节点恢复挂起的执行

        只有暂停或运行中的执行、且该节点仍处于等待状态时才会继续，否则返回 None。
        """
        execution = await self.execution_repo.get(execution_id)
        if execution is None:
            logger.warning(f"Cannot resume unknown execution {execution_id}")
            return None

        if execution.status not in RESUMABLE_STATUSES:
            logger.info(f"Execution {execution_id} is {execution.status.value}, skipping resume of {node_id}")
            return None

        if execution.node_status(node_id) != NodeStatus.WAITING.value:
            logger.info(f"Node {node_id} of execution {execution_id} is not waiting, skipping resume")
            return None

        workflow = await self.workflow_repo.get(execution.workflow_id)
        node = workflow.get_node(node_id) if workflow else None
        if node is None:
            execution.status = ExecutionStatus.FAILED
            execution.error_message = (
                f"Workflow not found: {execution.workflow_id}" if workflow is None
                else f"Node not found: {node_id}"
            )
            execution.completed_at = self.clock()
            execution.log("error", "Resume failed", {"error": execution.error_message, "node_id": node_id})
            await self.execution_repo.save(execution)
            await self._publish(ExecutionEventType.WORKFLOW_FAILED, execution)
            return execution

        owner = self._waiting_parallel_owner(workflow, execution, node_id)
        if owner is not None:
            # 分支由其并行节点统一恢复
            logger.info(f"Node {node_id} is a branch of parallel node {owner.id}, resuming {owner.id}")
            node = owner

        execution.log_level = workflow.setting("log_level", "info")
        execution.status = ExecutionStatus.RUNNING
        execution.log("info", "Workflow execution resumed", {"node_id": node_id})
        self.running[execution.execution_id] = execution
        await self._publish(ExecutionEventType.WORKFLOW_RESUMED, execution, node_id=node_id)

        await self._run_segment(workflow, execution, [node])
        return execution

    async def deliver_signal(self, execution_id: str, node_id: str,
                             payload: Dict[str, Any] = None) -> Optional[WorkflowExecution]:
        """投递外部信号并立即恢复等待中的 wait 节点"""
        await self.signals.put(execution_id, node_id, payload or {})
        logger.info(f"Signal delivered to execution {execution_id} node {node_id}")
        return await self.resume_execution(execution_id, node_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        取消执行

        运行中的执行在下一次节点调度前停止；已挂起的执行直接标记为取消。
        """
        running = self.running.get(execution_id)
        if running is not None:
            running.status = ExecutionStatus.CANCELLED
            running.log("info", "Workflow execution cancellation requested")
            return True

        execution = await self.execution_repo.get(execution_id)
        if execution is None or execution.is_terminal_state():
            return False

        execution.status = ExecutionStatus.CANCELLED
        execution.completed_at = self.clock()
        execution.log("info", "Workflow execution cancelled")
        await self.execution_repo.save(execution)
        await self._publish(ExecutionEventType.WORKFLOW_CANCELLED, execution)
        return True

    async def handle_scheduled_job(self, payload: Dict[str, Any]) -> Optional[WorkflowExecution]:
        """处理调度器回调：恢复执行或重试整个工作流"""
        action = payload.get("action")
        if action == "resume_execution":
            return await self.resume_execution(payload["execution_id"], payload["node_id"])
        if action == "execute_workflow":
            return await self.execute_workflow_by_id(
                payload["workflow_id"],
                payload.get("trigger_data"),
                payload.get("context")
            )
        logger.warning(f"Unknown scheduled job action: {action}")
        return None

    def get_running_executions(self) -> List[WorkflowExecution]:
        return list(self.running.values())

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        if execution_id in self.running:
            return self.running[execution_id]
        return await self.execution_repo.get(execution_id)

    async def cleanup_old_executions(self, days: int = None) -> int:
        """清理过期的已结束执行"""
        days = self.config.execution_retention_days if days is None else days
        return await self.execution_repo.cleanup_old_executions(days)

    async def _run_segment(self, workflow: Workflow, execution: WorkflowExecution, start_nodes):
        """运行一个执行片段并收尾"""
        segment_start = time.monotonic()
        outcome = TraversalOutcome()
        error = None
        try:
            outcome = await self.traversal.run(workflow, execution, start_nodes)
        except WorkflowEngineError as e:
            error = e
        except Exception as e:
            logger.error(f"Unexpected error in execution {execution.execution_id}: {e}", exc_info=True)
            error = e

        elapsed_ms = int((time.monotonic() - segment_start) * 1000)
        execution.execution_time_ms += elapsed_ms
        await self._finalize(workflow, execution, outcome, error)

    async def _finalize(self, workflow: Workflow, execution: WorkflowExecution,
                        outcome: TraversalOutcome, error: Optional[Exception]):
        try:
            if execution.status == ExecutionStatus.CANCELLED:
                execution.completed_at = self.clock()
                execution.log("info", "Workflow execution cancelled")
                await self.execution_repo.save(execution)
                await self._publish(ExecutionEventType.WORKFLOW_CANCELLED, execution)
                return

            if error is not None:
                execution.status = ExecutionStatus.FAILED
                execution.error_message = str(error)
                execution.completed_at = self.clock()
                execution.log("error", "Workflow execution failed", {"error": str(error)})
                await self.failure_handler.handle_failure(workflow, execution)
                await self.execution_repo.save(execution)
                await self._publish(ExecutionEventType.WORKFLOW_FAILED, execution)
                return

            await self._schedule_resumes(workflow, execution, outcome.suspended)

            if execution.pending_resumes():
                execution.status = ExecutionStatus.PAUSED
                execution.log("info", "Workflow execution paused", {
                    "waiting_nodes": sorted(execution.pending_resumes())
                })
                await self.execution_repo.save(execution)
                await self._publish(ExecutionEventType.WORKFLOW_PAUSED, execution)
                return

            execution.status = ExecutionStatus.COMPLETED
            execution.completed_at = self.clock()
            execution.log("info", "Workflow execution completed", {
                "execution_time_ms": execution.execution_time_ms
            })
            await self.execution_repo.save(execution)
            await self._publish(ExecutionEventType.WORKFLOW_COMPLETED, execution)
        finally:
            self.running.pop(execution.execution_id, None)

    async def _schedule_resumes(self, workflow: Workflow, execution: WorkflowExecution,
                               suspended: Dict[str, NodeResult]):
        """
        为挂起的节点安排恢复；merge 节点由其它分支推进，不单独调度

        除本片段挂起的节点外，还会补上仍在等待但尚无恢复任务的节点。
        """
        node_ids = list(suspended)
        node_ids += [node_id for node_id in execution.pending_resumes() if node_id not in suspended]
        for node_id in node_ids:
            state = execution.get_node_state(node_id)
            if state is None or state.get("status") != NodeStatus.WAITING.value:
                continue

            output = state.setdefault("output", {})
            if node_id not in suspended and output.get("resume_job_id"):
                continue
            resume_at = output.get("resume_at")
            if resume_at is None:
                node = workflow.get_node(node_id)
                if node is not None and node.is_merge:
                    continue
                resume_at = (self.clock() + timedelta(seconds=self.config.resume_poll_seconds)).timestamp()
                output["resume_at"] = resume_at

            job_id = await self.scheduler.schedule_once(resume_at, {
                "action": "resume_execution",
                "execution_id": execution.execution_id,
                "node_id": node_id,
            })
            output["resume_job_id"] = job_id
            execution.log("info", "Resume scheduled", {
                "node_id": node_id, "resume_at": resume_at, "job_id": job_id
            })

    @staticmethod
    def _waiting_parallel_owner(workflow: Workflow, execution: WorkflowExecution,
                                node_id: str) -> Optional[Node]:
        """查找把该节点作为分支、且自身仍在等待的并行节点"""
        for candidate in workflow.nodes:
            if candidate.type != NodeType.PARALLEL.value:
                continue
            if node_id not in (candidate.config.get("branches") or []):
                continue
            if execution.node_status(candidate.id) == NodeStatus.WAITING.value:
                return candidate
        return None

    async def _publish(self, event_type: ExecutionEventType, execution: WorkflowExecution, node_id: str = None):
        if self.event_bus is None:
            return
        event = ExecutionEvent(
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            event_type=event_type.value,
            node_id=node_id,
            data={"status": execution.status.value, "error_message": execution.error_message},
        )
        await self.event_bus.publish(EXECUTION_EVENTS_TOPIC, event.to_dict())
