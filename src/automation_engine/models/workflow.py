"""
工作流定义模型
"""
import copy
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from enum import Enum
from uuid import uuid4


class WorkflowStatus(str, Enum):
    """工作流状态"""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class NodeType(str, Enum):
    """内置节点类型"""
    START = "start"
    END = "end"
    CONDITION = "condition"
    SWITCH = "switch"
    LOOP = "loop"
    PARALLEL = "parallel"
    MERGE = "merge"
    DELAY = "delay"
    WAIT = "wait"
    SET_VARIABLE = "set_variable"
    TRANSFORM = "transform"
    FILTER = "filter"
    AGGREGATE = "aggregate"
    ACTION = "action"


# 视为入口的节点类型
START_NODE_TYPES = ("start", "trigger")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "max_executions_per_hour": 1000,
    "timeout_seconds": 300,
    "retry_on_failure": True,
    "max_retries": 3,
    "retry_delay_seconds": 60,
    "log_level": "info",
    "notification_on_failure": True,
    "notification_email": "",
    "parallel_execution": True,
    "max_parallel_branches": 5,
}


@dataclass
class Node:
    """工作流节点"""
    id: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    action_type: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        # 允许直接传入 NodeType
        if isinstance(self.type, NodeType):
            self.type = self.type.value

    @property
    def is_merge(self) -> bool:
        return self.type == NodeType.MERGE.value

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "type": self.type, "config": copy.deepcopy(self.config)}
        if self.action_type:
            data["action_type"] = self.action_type
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            id=str(data.get("id", "")),
            type=str(data.get("type", "")),
            config=copy.deepcopy(data.get("config") or {}),
            action_type=data.get("action_type"),
            name=data.get("name"),
        )


def _optional_condition(condition: Any) -> Any:
    # 空字符串和空条件组等同于无条件；false 保留
    if condition is None or condition == "" or condition == {} or condition == []:
        return None
    return condition


@dataclass
class Connection:
    """节点之间的连线"""
    source: str
    target: str
    condition: Optional[Any] = None  # 表达式字符串或结构化条件
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"source": self.source, "target": self.target}
        if self.condition is not None:
            data["condition"] = copy.deepcopy(self.condition)
        if self.label:
            data["label"] = self.label
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connection":
        return cls(
            source=str(data.get("source", data.get("from", ""))),
            target=str(data.get("target", data.get("to", ""))),
            condition=_optional_condition(data.get("condition")),
            label=data.get("label"),
        )


@dataclass
class Workflow:
    """工作流定义"""
    id: str = field(default_factory=lambda: str(uuid4()))
    uuid: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    triggers: List[Dict[str, Any]] = field(default_factory=list)
    nodes: List[Node] = field(default_factory=list)
    connections: List[Connection] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)  # 变量默认值
    settings: Dict[str, Any] = field(default_factory=dict)
    version: int = 1

    def __post_init__(self):
        if not isinstance(self.status, WorkflowStatus):
            self.status = WorkflowStatus(self.status)
        self.settings = {**DEFAULT_SETTINGS, **(self.settings or {})}

    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE

    def setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, DEFAULT_SETTINGS.get(key, default))

    def get_node(self, node_id: str) -> Optional[Node]:
        """根据ID获取节点"""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_next_connections(self, node_id: str) -> List[Connection]:
        """按声明顺序返回节点的出边"""
        return [conn for conn in self.connections if conn.source == node_id]

    def get_incoming_connections(self, node_id: str) -> List[Connection]:
        return [conn for conn in self.connections if conn.target == node_id]

    def validate(self) -> List[str]:
        """验证工作流定义的合法性（允许存在环）"""
        errors = []

        node_ids = []
        for index, node in enumerate(self.nodes):
            if not node.id:
                errors.append(f"Node at position {index} has no id")
            if not node.type:
                errors.append(f"Node '{node.id}' has no type")
            node_ids.append(node.id)

        seen = set()
        duplicates = set()
        for node_id in node_ids:
            if node_id in seen:
                duplicates.add(node_id)
            seen.add(node_id)
        if duplicates:
            errors.append(f"Duplicate node IDs found: {sorted(duplicates)}")

        for conn in self.connections:
            if conn.source not in seen:
                errors.append(f"Connection source '{conn.source}' not found in nodes")
            if conn.target not in seen:
                errors.append(f"Connection target '{conn.target}' not found in nodes")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """序列化为规范 JSON 结构"""
        data = {
            "id": self.id,
            "uuid": self.uuid,
            "name": self.name,
            "status": self.status.value,
            "triggers": copy.deepcopy(self.triggers),
            "nodes": [node.to_dict() for node in self.nodes],
            "connections": [conn.to_dict() for conn in self.connections],
            "variables": copy.deepcopy(self.variables),
            "settings": copy.deepcopy(self.settings),
            "version": self.version,
        }
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        connections = data.get("connections")
        if connections is None:
            connections = data.get("edges", [])
        kwargs = dict(
            name=data.get("name", ""),
            description=data.get("description"),
            status=data.get("status", WorkflowStatus.DRAFT.value),
            triggers=copy.deepcopy(data.get("triggers") or []),
            nodes=[Node.from_dict(n) for n in data.get("nodes") or []],
            connections=[Connection.from_dict(c) for c in connections or []],
            variables=copy.deepcopy(data.get("variables") or {}),
            settings=copy.deepcopy(data.get("settings") or {}),
            version=data.get("version", 1),
        )
        if data.get("id") not in (None, ""):
            kwargs["id"] = str(data["id"])
        if data.get("uuid"):
            kwargs["uuid"] = str(data["uuid"])
        return cls(**kwargs)
