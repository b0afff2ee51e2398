"""
动作分发器集成

引擎本身不实现任何具体副作用（邮件、HTTP、存储），动作节点通过此接口委托给宿主应用。
"""
import inspect
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..models.execution import NodeResult, WorkflowExecution


logger = logging.getLogger(__name__)


@dataclass
class ActionDefinition:
    """动作定义"""
    action_type: str
    name: str = ""
    description: str = ""
    parameters_schema: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class ActionDispatcher(ABC):
    """动作分发器接口"""

    @abstractmethod
    async def execute_action(self, action_type: str, config: Dict[str, Any],
                             execution: WorkflowExecution) -> NodeResult:
        """执行动作"""
        pass


class LocalActionDispatcher(ActionDispatcher):
    """本地动作注册表实现"""

    def __init__(self):
        self.actions: Dict[str, ActionDefinition] = {}
        self.handlers: Dict[str, Callable] = {}

    def register_action(self, action_def: ActionDefinition, handler: Callable):
        """注册动作，处理器签名为 handler(config, execution)"""
        if not callable(handler):
            raise ValueError(f"Handler for action {action_def.action_type} must be callable")

        self.actions[action_def.action_type] = action_def
        self.handlers[action_def.action_type] = handler

        logger.info(f"Registered action: {action_def.action_type}")

    def unregister_action(self, action_type: str):
        """注销动作"""
        if action_type in self.actions:
            del self.actions[action_type]
            del self.handlers[action_type]
            logger.info(f"Unregistered action: {action_type}")

    def get_action(self, action_type: str) -> Optional[ActionDefinition]:
        return self.actions.get(action_type)

    def list_actions(self) -> List[ActionDefinition]:
        return list(self.actions.values())

    async def execute_action(self, action_type: str, config: Dict[str, Any],
                             execution: WorkflowExecution) -> NodeResult:
        handler = self.handlers.get(action_type)
        if handler is None:
            return NodeResult.failure(f"Unknown action type: {action_type}")

        errors = self.validate_parameters(action_type, config)
        if errors:
            return NodeResult.failure(f"Invalid parameters for action {action_type}: {'; '.join(errors)}")

        start_time = time.time()
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(config, execution)
            else:
                result = handler(config, execution)
        except Exception as e:
            logger.error(f"Action {action_type} failed: {e}", exc_info=True)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(f"Action {action_type} executed in {duration_ms:.2f}ms")

        if isinstance(result, NodeResult):
            return result
        if result is None:
            return NodeResult.ok()
        if isinstance(result, dict):
            return NodeResult.ok(result)
        return NodeResult.ok({"result": result})

    def validate_parameters(self, action_type: str, parameters: Dict[str, Any]) -> List[str]:
        """按动作定义的参数 schema 做必填与类型检查"""
        errors = []
        action_def = self.actions.get(action_type)
        if not action_def or not action_def.parameters_schema:
            return errors

        schema = action_def.parameters_schema
        properties = schema.get("properties", {})

        for name in schema.get("required", []):
            if name not in parameters:
                errors.append(f"Missing required parameter: {name}")

        type_checks = {
            "string": str,
            "number": (int, float),
            "boolean": bool,
            "array": list,
            "object": dict,
        }
        for name, value in parameters.items():
            expected = properties.get(name, {}).get("type")
            if expected in type_checks and not isinstance(value, type_checks[expected]):
                errors.append(f"Parameter {name} must be a {expected}")
            elif expected == "number" and isinstance(value, bool):
                errors.append(f"Parameter {name} must be a number")

        return errors


class BuiltinActions:
    """内置动作"""

    @staticmethod
    def create_log_action():
        """写入执行日志"""
        action_def = ActionDefinition(
            action_type="log_message",
            name="Log Message",
            description="Write a message to the execution log",
            parameters_schema={
                "type": "object",
                "properties": {
                    "message": {"type": "string"},
                    "level": {"type": "string"},
                },
                "required": ["message"],
            },
        )

        def handler(config: Dict[str, Any], execution: WorkflowExecution) -> NodeResult:
            level = config.get("level", "info")
            execution.log(level, config["message"])
            return NodeResult.ok({"logged": config["message"], "level": level})

        return action_def, handler

    @classmethod
    def register_all(cls, dispatcher: LocalActionDispatcher):
        dispatcher.register_action(*cls.create_log_action())
