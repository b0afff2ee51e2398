"""
节点处理器

每种节点类型对应一个 NodeHandler，由 NodeDispatcher 按类型分发。
处理器返回 NodeResult，异常在分发层被转换为失败结果。
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..config import EngineConfig
from ..exceptions import UnknownNodeTypeError
from ..models.execution import NodeResult, NodeStatus, WorkflowExecution
from ..models.workflow import Node, NodeType, Workflow
from .evaluator import ConditionEvaluator
from .expression import is_numeric, strict_equals, to_number
from .functions import Clock, pluck_values, sort_values, unique_values, utc_now
from .resolver import ValueResolver


logger = logging.getLogger(__name__)


DELAY_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class NodeHandler(ABC):
    """节点处理器基类"""

    def __init__(self, evaluator: ConditionEvaluator, resolver: ValueResolver):
        self.evaluator = evaluator
        self.resolver = resolver

    @abstractmethod
    async def execute(self, workflow: Workflow, execution: WorkflowExecution, node: Node) -> NodeResult:
        """执行节点"""
        pass

    def resolve(self, value: Any, execution: WorkflowExecution) -> Any:
        return self.resolver.resolve_value(value, execution.variables)

    def check(self, condition: Any, execution: WorkflowExecution) -> bool:
        """评估条件：表达式字符串、结构化条件或条件组"""
        if isinstance(condition, dict) and "conditions" in condition:
            return self.evaluator.evaluate_group(condition, execution.variables)
        if isinstance(condition, list):
            return self.evaluator.evaluate_group(condition, execution.variables)
        return self.evaluator.evaluate(condition, execution.variables)


class NodeDispatcher:
    """按节点类型分发到处理器"""

    def __init__(self):
        self.handlers: Dict[str, NodeHandler] = {}

    def register_handler(self, node_type: str, handler: NodeHandler):
        """注册处理器，可覆盖内置类型"""
        if isinstance(node_type, NodeType):
            node_type = node_type.value
        self.handlers[node_type] = handler
        logger.debug(f"Registered handler for node type: {node_type}")

    def get_handler(self, node: Node) -> NodeHandler:
        handler = self.handlers.get(node.type)
        if handler is None and node.action_type:
            handler = self.handlers.get(NodeType.ACTION.value)
        if handler is None:
            raise UnknownNodeTypeError(node.type)
        return handler

    async def dispatch(self, workflow: Workflow, execution: WorkflowExecution, node: Node) -> NodeResult:
        """
        执行单个节点

        Raises:
            UnknownNodeTypeError: 节点类型未注册且没有 action_type
        """
        execution.log("debug", f"Executing node: {node.id}", {"type": node.type, "config": node.config})
        handler = self.get_handler(node)

        try:
            return await handler.execute(workflow, execution, node)
        except Exception as e:
            logger.error(
                f"Node {node.id} execution error: {e}",
                exc_info=True,
                extra={"node_id": node.id, "execution_id": execution.execution_id}
            )
            execution.log("error", f"Node execution error: {node.id}", {"error": str(e)})
            return NodeResult.failure(str(e))


# ==================== 流程控制 ====================

class StartNodeHandler(NodeHandler):
    """开始节点"""

    async def execute(self, workflow, execution, node):
        return NodeResult.ok({"message": "Workflow started"})


class EndNodeHandler(NodeHandler):
    """结束节点：解析声明的输出映射"""

    async def execute(self, workflow, execution, node):
        output = node.config.get("output") or {}
        return NodeResult.ok(self.resolver.resolve_config(output, execution.variables))


class ConditionNodeHandler(NodeHandler):
    """if/else 节点：第一个成立的条件决定下一个节点"""

    async def execute(self, workflow, execution, node):
        for condition in node.config.get("conditions") or []:
            if self.check(condition.get("expression", "false"), execution):
                return NodeResult.ok(
                    {"matched_condition": condition.get("label") or "true"},
                    condition.get("next_node")
                )

        return NodeResult.ok({"matched_condition": "default"}, node.config.get("default_next"))


class SwitchNodeHandler(NodeHandler):
    """多分支节点，按严格相等匹配"""

    async def execute(self, workflow, execution, node):
        value = self.resolve(node.config.get("value", ""), execution)

        for case in node.config.get("cases") or []:
            if strict_equals(case.get("value"), value):
                return NodeResult.ok({"matched_case": case.get("value")}, case.get("next_node"))

        return NodeResult.ok({"matched_case": "default"}, node.config.get("default_next"))


class LoopNodeHandler(NodeHandler):
    """循环节点：foreach / while / times"""

    def __init__(self, evaluator, resolver, dispatcher: NodeDispatcher):
        super().__init__(evaluator, resolver)
        self.dispatcher = dispatcher

    async def execute(self, workflow, execution, node):
        config = node.config
        loop_type = config.get("type", "foreach")
        max_iterations = int(to_number(config.get("max_iterations", 1000)))
        body = workflow.get_node(config["body_node"]) if config.get("body_node") else None
        results: List[Dict[str, Any]] = []

        if loop_type == "foreach":
            items = self.resolve(config.get("items", []), execution)
            if isinstance(items, dict):
                pairs = list(items.items())
            elif isinstance(items, (list, tuple)):
                pairs = list(enumerate(items))
            else:
                return NodeResult.failure("Loop items must be an array")

            item_var = config.get("item_variable", "item")
            index_var = config.get("index_variable", "index")
            key_var = config.get("key_variable", "loop_key")

            for index, (key, item) in enumerate(pairs):
                if index >= max_iterations:
                    break
                execution.set_variable(item_var, item)
                execution.set_variable(index_var, index)
                execution.set_variable(key_var, key)
                failure = await self._run_body(workflow, execution, body, index, results)
                if failure:
                    return failure

        elif loop_type == "while":
            condition = config.get("condition", "false")
            index = 0
            while self.check(condition, execution):
                if index >= max_iterations:
                    break
                execution.set_variable("loop_index", index)
                failure = await self._run_body(workflow, execution, body, index, results)
                if failure:
                    return failure
                index += 1

        elif loop_type == "times":
            times = min(int(to_number(self.resolve(config.get("times", 1), execution))), max_iterations)
            for index in range(times):
                execution.set_variable("loop_index", index)
                failure = await self._run_body(workflow, execution, body, index, results)
                if failure:
                    return failure

        else:
            return NodeResult.failure(f"Unknown loop type: {loop_type}")

        return NodeResult.ok({"iterations": len(results), "results": results})

    async def _run_body(self, workflow, execution, body: Optional[Node], index: int,
                        results: List[Dict[str, Any]]) -> Optional[NodeResult]:
        if body is None:
            results.append({})
            return None
        body_result = await self.dispatcher.dispatch(workflow, execution, body)
        results.append(body_result.output)
        if body_result.is_waiting:
            # 循环状态不跨片段保存，循环体不能挂起
            return NodeResult.failure(f"Loop iteration {index} cannot suspend on node '{body.id}'")
        if not body_result.success:
            return NodeResult.failure(f"Loop iteration {index} failed: {body_result.error}")
        return None


class ParallelNodeHandler(NodeHandler):
    """
    并行节点：在同一执行中依次运行分支节点

    有分支挂起时并行节点本身也挂起，恢复时只重新执行未完成的分支。
    """

    def __init__(self, evaluator, resolver, dispatcher: NodeDispatcher):
        super().__init__(evaluator, resolver)
        self.dispatcher = dispatcher

    async def execute(self, workflow, execution, node):
        branches = node.config.get("branches") or []
        wait_for_all = node.config.get("wait_for_all", True)
        max_branches = int(to_number(workflow.setting("max_parallel_branches", 5)))
        resuming = execution.node_status(node.id) == NodeStatus.WAITING.value

        branch_results: Dict[str, NodeResult] = {}
        for branch_id in branches[:max_branches]:
            branch_node = workflow.get_node(branch_id)
            if branch_node is None:
                continue
            if resuming and execution.is_node_completed(branch_id):
                result = NodeResult.ok(execution.get_node_state(branch_id).get("output", {}))
            else:
                result = await self.dispatcher.dispatch(workflow, execution, branch_node)
                execution.set_node_state(branch_id, result.status, result.output)
            branch_results[branch_id] = result
            if not wait_for_all and result.success and not result.is_waiting:
                break

        finished = [key for key, result in branch_results.items() if result.success and not result.is_waiting]
        waiting = [key for key, result in branch_results.items() if result.is_waiting]
        output = {"branch_results": {key: result.output for key, result in branch_results.items()}}

        if wait_for_all:
            if any(result.is_failed for result in branch_results.values()):
                return self._failed(output, branch_results)
            if waiting:
                return self._waiting(waiting, branch_results, output)
            return NodeResult.ok(output, branch_results=branch_results)

        if not branch_results or finished:
            return NodeResult.ok(output, branch_results=branch_results)
        if waiting:
            return self._waiting(waiting, branch_results, output)
        return self._failed(output, branch_results)

    @staticmethod
    def _waiting(waiting: List[str], branch_results: Dict[str, NodeResult], output: Dict[str, Any]) -> NodeResult:
        resume_times = [
            branch_results[key].output["resume_at"]
            for key in waiting if branch_results[key].output.get("resume_at") is not None
        ]
        return NodeResult.waiting(
            f"Waiting for branches: {', '.join(waiting)}",
            resume_at=min(resume_times) if resume_times else None,
            waiting_branches=waiting,
            **output
        )

    @staticmethod
    def _failed(output: Dict[str, Any], branch_results: Dict[str, NodeResult]) -> NodeResult:
        return NodeResult(
            success=False,
            status=NodeStatus.FAILED,
            output=output,
            error="One or more branches failed",
            branch_results=branch_results
        )


class MergeNodeHandler(NodeHandler):
    """合并节点：等待所有 required_inputs 完成"""

    async def execute(self, workflow, execution, node):
        required_inputs = node.config.get("required_inputs") or []

        for input_id in required_inputs:
            if not execution.is_node_completed(input_id):
                return NodeResult.waiting(f"Waiting for node: {input_id}")

        merged = {
            input_id: execution.get_node_state(input_id).get("output", {})
            for input_id in required_inputs
        }
        return NodeResult.ok({"merged_data": merged})


# ==================== 挂起节点 ====================

class DelayNodeHandler(NodeHandler):
    """延时节点：挂起执行，到期后由调度器恢复"""

    def __init__(self, evaluator, resolver, clock: Clock = None):
        super().__init__(evaluator, resolver)
        self.clock = clock or utc_now

    async def execute(self, workflow, execution, node):
        now = self.clock().timestamp()
        state = execution.get_node_state(node.id)
        if state and state.get("status") == NodeStatus.WAITING.value:
            previous = state.get("output") or {}
            resume_at = previous.get("resume_at")
            if resume_at is not None:
                if now >= resume_at:
                    return NodeResult.ok({"delayed_seconds": previous.get("delay_seconds", 0)})
                return NodeResult.waiting(previous.get("reason", ""), resume_at=resume_at,
                                          delay_seconds=previous.get("delay_seconds", 0))

        unit = node.config.get("type", "seconds")
        value = int(to_number(self.resolve(node.config.get("value", 0), execution) or 0))
        delay_seconds = value * DELAY_UNITS.get(unit, 1)

        if delay_seconds <= 0:
            return NodeResult.ok({"delayed_seconds": 0})

        return NodeResult.waiting(
            f"Waiting for {delay_seconds} seconds",
            resume_at=now + delay_seconds,
            delay_seconds=delay_seconds
        )


class WaitNodeHandler(NodeHandler):
    """等待外部信号的节点"""

    def __init__(self, evaluator, resolver, signals, clock: Clock = None, default_timeout: int = 3600):
        super().__init__(evaluator, resolver)
        self.signals = signals
        self.clock = clock or utc_now
        self.default_timeout = default_timeout

    async def execute(self, workflow, execution, node):
        wait_type = node.config.get("type", "webhook")
        timeout = int(to_number(node.config.get("timeout", self.default_timeout)))
        now = self.clock().timestamp()

        payload = await self.signals.pop(execution.execution_id, node.id)
        if payload is not None:
            return NodeResult.ok(payload if isinstance(payload, dict) else {"signal": payload})

        state = execution.get_node_state(node.id)
        if state and state.get("status") == NodeStatus.WAITING.value:
            timeout_at = (state.get("output") or {}).get("timeout_at")
            if timeout_at is not None:
                if now >= timeout_at:
                    if node.config.get("on_timeout", "fail") == "continue":
                        return NodeResult.ok({"timed_out": True})
                    return NodeResult.failure(f"Wait for {wait_type} event timed out after {timeout} seconds")
                return NodeResult.waiting(f"Waiting for {wait_type} event", resume_at=timeout_at,
                                          timeout_at=timeout_at, wait_type=wait_type)

        timeout_at = now + timeout
        return NodeResult.waiting(
            f"Waiting for {wait_type} event",
            resume_at=timeout_at,
            timeout_at=timeout_at,
            wait_type=wait_type
        )


# ==================== 数据处理 ====================

class SetVariableNodeHandler(NodeHandler):
    """设置变量节点"""

    async def execute(self, workflow, execution, node):
        variables = node.config.get("variables") or []
        if isinstance(variables, dict):
            variables = [{"name": name, "value": value} for name, value in variables.items()]

        assigned = {}
        for variable in variables:
            name = variable.get("name")
            if not name:
                continue
            value = self.resolve(variable.get("value"), execution)
            execution.set_variable(name, value)
            assigned[name] = value

        return NodeResult.ok({"variables_set": assigned})


def flatten(items: List[Any], depth: int) -> List[Any]:
    result = []
    for item in items:
        if isinstance(item, (list, tuple)) and depth > 0:
            result.extend(flatten(list(item), depth - 1))
        elif isinstance(item, dict) and depth > 0:
            result.extend(flatten(list(item.values()), depth - 1))
        else:
            result.append(item)
    return result


def group_by(items: List[Any], key: str) -> Dict[str, List[Any]]:
    groups: Dict[str, List[Any]] = {}
    for item in items:
        group_key = item.get(key) if isinstance(item, dict) else None
        group_key = "undefined" if group_key is None else str(group_key)
        groups.setdefault(group_key, []).append(item)
    return groups


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, dict):
        return list(value.values())
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class TransformNodeHandler(NodeHandler):
    """数据转换节点，按顺序应用转换步骤"""

    def __init__(self, evaluator, resolver):
        super().__init__(evaluator, resolver)
        self.steps: Dict[str, Callable[[Any, Dict[str, Any], WorkflowExecution], Any]] = {
            "map": self._map,
            "filter": self._filter,
            "reduce": self._reduce,
            "sort": lambda data, step, _: sort_values(
                _as_list(data), step.get("key"), str(step.get("direction", "asc")).lower() == "desc"
            ),
            "unique": lambda data, step, _: unique_values(_as_list(data)),
            "flatten": lambda data, step, _: flatten(_as_list(data), int(step.get("depth", 1))),
            "group": lambda data, step, _: group_by(_as_list(data), step.get("key")),
            "pluck": lambda data, step, _: pluck_values(_as_list(data), step.get("key")),
            "json_encode": lambda data, step, _: json.dumps(data, ensure_ascii=False),
            "json_decode": lambda data, step, _: json.loads(data) if isinstance(data, str) else data,
            "uppercase": lambda data, step, _: data.upper() if isinstance(data, str) else data,
            "lowercase": lambda data, step, _: data.lower() if isinstance(data, str) else data,
            "trim": lambda data, step, _: data.strip() if isinstance(data, str) else data,
        }

    def _map(self, data, step, execution):
        mapped = []
        for item in _as_list(data):
            execution.set_variable("item", item)
            mapped.append(self.resolve(step.get("expression"), execution))
        return mapped

    def _filter(self, data, step, execution):
        kept = []
        for item in _as_list(data):
            execution.set_variable("item", item)
            if self.check(step.get("condition", "true"), execution):
                kept.append(item)
        return kept

    def _reduce(self, data, step, execution):
        accumulator = step.get("initial")
        for item in _as_list(data):
            execution.set_variable("accumulator", accumulator)
            execution.set_variable("item", item)
            accumulator = self.resolve(step.get("expression"), execution)
        return accumulator

    async def execute(self, workflow, execution, node):
        result = self.resolve(node.config.get("input", []), execution)

        for step in node.config.get("transformations") or []:
            step_type = step.get("type", "")
            transform = self.steps.get(step_type)
            if transform is None:
                execution.log("warning", f"Unknown transformation type: {step_type}", {"node_id": node.id})
                continue
            result = transform(result, step, execution)

        output_variable = node.config.get("output_variable")
        if output_variable:
            execution.set_variable(output_variable, result)

        return NodeResult.ok({"result": result})


class FilterNodeHandler(NodeHandler):
    """过滤节点"""

    async def execute(self, workflow, execution, node):
        items = self.resolve(node.config.get("input", []), execution)
        conditions = node.config.get("conditions") or []
        match_type = node.config.get("match_type", "all")

        if isinstance(items, dict):
            items = list(items.values())
        if not isinstance(items, (list, tuple)):
            return NodeResult.failure("Filter input must be an array")

        filtered = []
        for item in items:
            execution.set_variable("item", item)
            results = [self.check(condition, execution) for condition in conditions]
            if (all(results) if match_type == "all" else any(results)):
                filtered.append(item)

        output_variable = node.config.get("output_variable")
        if output_variable:
            execution.set_variable(output_variable, filtered)

        return NodeResult.ok({
            "filtered": filtered,
            "count": len(filtered),
            "original_count": len(items),
        })


class AggregateNodeHandler(NodeHandler):
    """聚合节点"""

    async def execute(self, workflow, execution, node):
        items = self.resolve(node.config.get("input", []), execution)
        if isinstance(items, dict):
            items = list(items.values())
        if not isinstance(items, (list, tuple)):
            return NodeResult.failure("Aggregate input must be an array")

        results = {}
        for operation in node.config.get("operations") or []:
            field_name = operation.get("field")
            op_type = operation.get("type", "count")
            alias = operation.get("alias") or op_type

            values = pluck_values(items, field_name) if field_name else list(items)
            numbers = [to_number(value) for value in values if is_numeric(value)]

            if op_type == "count":
                results[alias] = len(values)
            elif op_type == "sum":
                results[alias] = sum(numbers)
            elif op_type == "avg":
                results[alias] = sum(numbers) / len(numbers) if numbers else 0
            elif op_type == "min":
                results[alias] = min(numbers) if numbers else None
            elif op_type == "max":
                results[alias] = max(numbers) if numbers else None
            elif op_type == "first":
                results[alias] = values[0] if values else None
            elif op_type == "last":
                results[alias] = values[-1] if values else None
            elif op_type == "distinct":
                results[alias] = len(unique_values(values))
            else:
                results[alias] = None

        output_variable = node.config.get("output_variable")
        if output_variable:
            execution.set_variable(output_variable, results)

        return NodeResult.ok(results)


# ==================== 动作 ====================

class ActionNodeHandler(NodeHandler):
    """动作节点：解析配置后交给外部动作分发器"""

    def __init__(self, evaluator, resolver, actions):
        super().__init__(evaluator, resolver)
        self.actions = actions

    async def execute(self, workflow, execution, node):
        action_type = node.action_type or node.config.get("action_type")
        if not action_type:
            return NodeResult.failure("Action type not specified")

        resolved = self.resolver.resolve_config(node.config, execution.variables)
        return await self.actions.execute_action(action_type, resolved, execution)


def build_default_dispatcher(
    evaluator: ConditionEvaluator,
    resolver: ValueResolver,
    actions,
    signals,
    clock: Clock = None,
    config: EngineConfig = None
) -> NodeDispatcher:
    """构建注册了全部内置处理器的分发器"""
    config = config or EngineConfig()
    dispatcher = NodeDispatcher()
    handlers = {
        NodeType.START: StartNodeHandler(evaluator, resolver),
        NodeType.END: EndNodeHandler(evaluator, resolver),
        NodeType.CONDITION: ConditionNodeHandler(evaluator, resolver),
        NodeType.SWITCH: SwitchNodeHandler(evaluator, resolver),
        NodeType.LOOP: LoopNodeHandler(evaluator, resolver, dispatcher),
        NodeType.PARALLEL: ParallelNodeHandler(evaluator, resolver, dispatcher),
        NodeType.MERGE: MergeNodeHandler(evaluator, resolver),
        NodeType.DELAY: DelayNodeHandler(evaluator, resolver, clock),
        NodeType.WAIT: WaitNodeHandler(evaluator, resolver, signals, clock, config.default_wait_timeout),
        NodeType.SET_VARIABLE: SetVariableNodeHandler(evaluator, resolver),
        NodeType.TRANSFORM: TransformNodeHandler(evaluator, resolver),
        NodeType.FILTER: FilterNodeHandler(evaluator, resolver),
        NodeType.AGGREGATE: AggregateNodeHandler(evaluator, resolver),
        NodeType.ACTION: ActionNodeHandler(evaluator, resolver, actions),
    }
    for node_type, handler in handlers.items():
        dispatcher.register_handler(node_type, handler)
    # trigger 节点与 start 一样只是入口
    dispatcher.register_handler("trigger", handlers[NodeType.START])
    return dispatcher
