"""
图遍历

从起始节点出发按 FIFO 队列遍历工作流图。一次遍历称为一个执行片段：
新执行从起始节点开始，恢复执行只从指定节点开始。
"""
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List

from ..config import EngineConfig
from ..exceptions import MaxIterationsExceededError, NodeExecutionError, WorkflowTimeoutError
from ..models.execution import ExecutionStatus, NodeResult, WorkflowExecution
from ..models.workflow import START_NODE_TYPES, Node, Workflow
from .evaluator import ConditionEvaluator
from .handlers import NodeDispatcher


logger = logging.getLogger(__name__)


@dataclass
class TraversalOutcome:
    """一个执行片段的结果"""
    iterations: int = 0
    visited: List[str] = field(default_factory=list)
    suspended: Dict[str, NodeResult] = field(default_factory=dict)
    cancelled: bool = False


class GraphTraversal:
    """工作流图遍历器"""

    def __init__(self, dispatcher: NodeDispatcher, evaluator: ConditionEvaluator, config: EngineConfig = None,
                 monotonic=time.monotonic):
        self.dispatcher = dispatcher
        self.evaluator = evaluator
        self.config = config or EngineConfig()
        self.monotonic = monotonic

    @staticmethod
    def find_start_nodes(workflow: Workflow) -> List[Node]:
        """类型为 start/trigger 的节点；没有时取没有入边的节点"""
        start_nodes = [node for node in workflow.nodes if node.type in START_NODE_TYPES]
        if start_nodes:
            return start_nodes

        targets = {conn.target for conn in workflow.connections}
        return [node for node in workflow.nodes if node.id not in targets]

    async def run(self, workflow: Workflow, execution: WorkflowExecution, start_nodes: List[Node]) -> TraversalOutcome:
        """
        执行一个片段

        Raises:
            NodeExecutionError: 节点返回失败结果
            WorkflowTimeoutError: 片段运行时间超过 settings.timeout_seconds
            MaxIterationsExceededError: 队列处理次数达到上限
        """
        outcome = TraversalOutcome()
        queue = deque(start_nodes)
        visited = set()
        max_iterations = self.config.max_iterations
        timeout = float(workflow.setting("timeout_seconds", 300))
        segment_start = self.monotonic()

        while queue:
            if outcome.iterations >= max_iterations:
                raise MaxIterationsExceededError(max_iterations)
            outcome.iterations += 1

            node = queue.popleft()
            if node.id in visited and not node.is_merge:
                continue

            if execution.status == ExecutionStatus.CANCELLED:
                outcome.cancelled = True
                break

            elapsed = self.monotonic() - segment_start
            if elapsed > timeout:
                raise WorkflowTimeoutError(timeout)

            result = await self.dispatcher.dispatch(workflow, execution, node)
            visited.add(node.id)
            outcome.visited.append(node.id)
            execution.set_node_state(node.id, result.status, result.output)

            if result.is_failed:
                raise NodeExecutionError(node.id, result.error or "Unknown error")

            if result.is_waiting:
                outcome.suspended[node.id] = result
                continue
            outcome.suspended.pop(node.id, None)

            for conn in workflow.get_next_connections(node.id):
                if conn.condition is not None and not self._connection_passes(conn.condition, execution):
                    continue
                target = workflow.get_node(conn.target)
                if target is not None:
                    queue.append(target)

            if result.next_node:
                jump = workflow.get_node(result.next_node)
                if jump is not None:
                    queue.appendleft(jump)
                else:
                    execution.log("warning", f"Next node not found: {result.next_node}", {"node_id": node.id})

        return outcome

    def _connection_passes(self, condition, execution: WorkflowExecution) -> bool:
        if isinstance(condition, list) or (isinstance(condition, dict) and "conditions" in condition):
            return self.evaluator.evaluate_group(condition, execution.variables)
        return self.evaluator.evaluate(condition, execution.variables)
