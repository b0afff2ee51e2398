"""
工作流执行模型
"""
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4


logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    """工作流执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class NodeStatus(str, Enum):
    """节点执行状态"""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING = "waiting"


TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)

# 执行日志级别，数值越大越严重
LOG_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class NodeResult:
    """节点处理结果"""
    success: bool = True
    status: NodeStatus = NodeStatus.COMPLETED
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    next_node: Optional[str] = None
    branch_results: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, output: Dict[str, Any] = None, next_node: str = None, **kwargs) -> "NodeResult":
        return cls(True, NodeStatus.COMPLETED, output or {}, None, next_node, **kwargs)

    @classmethod
    def failure(cls, error: str, output: Dict[str, Any] = None) -> "NodeResult":
        return cls(False, NodeStatus.FAILED, output or {}, error)

    @classmethod
    def skipped(cls, reason: str = "") -> "NodeResult":
        return cls(True, NodeStatus.SKIPPED, {"reason": reason})

    @classmethod
    def waiting(cls, reason: str = "", resume_at: float = None, **extra) -> "NodeResult":
        output = {"reason": reason, **extra}
        if resume_at is not None:
            output["resume_at"] = resume_at
        return cls(True, NodeStatus.WAITING, output)

    @property
    def is_failed(self) -> bool:
        return self.status == NodeStatus.FAILED

    @property
    def is_waiting(self) -> bool:
        return self.status == NodeStatus.WAITING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "next_node": self.next_node,
            "branch_results": {
                key: value.to_dict() if isinstance(value, NodeResult) else value
                for key, value in self.branch_results.items()
            },
        }


@dataclass
class WorkflowExecution:
    """工作流执行实例"""
    execution_id: str = field(default_factory=lambda: str(uuid4()))
    workflow_id: str = ""
    workflow_uuid: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_type: str = "manual"
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    node_states: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    execution_time_ms: int = 0
    # 执行日志的最低级别，来自工作流 settings.log_level，不参与序列化
    log_level: str = field(default="debug", repr=False, compare=False)

    def __post_init__(self):
        if not isinstance(self.status, ExecutionStatus):
            self.status = ExecutionStatus(self.status)

    @property
    def id(self) -> str:
        return self.execution_id

    @property
    def retry_count(self) -> int:
        return int(self.context.get("retry_count", 0) or 0)

    def set_node_state(self, node_id: str, status: NodeStatus, output: Dict[str, Any] = None):
        """记录节点状态；已完成的节点状态不再改变"""
        current = self.node_states.get(node_id)
        if current and current.get("status") == NodeStatus.COMPLETED.value:
            return
        self.node_states[node_id] = {
            "status": NodeStatus(status).value,
            "output": output or {},
            "timestamp": time.time(),
        }

    def get_node_state(self, node_id: str) -> Optional[Dict[str, Any]]:
        return self.node_states.get(node_id)

    def node_status(self, node_id: str) -> Optional[str]:
        state = self.node_states.get(node_id)
        return state.get("status") if state else None

    def is_node_completed(self, node_id: str) -> bool:
        return self.node_status(node_id) == NodeStatus.COMPLETED.value

    def log(self, level: str, message: str, context: Dict[str, Any] = None):
        """记录执行日志，低于 log_level 的日志被忽略"""
        severity = LOG_LEVELS.get(level, logging.INFO)
        if severity < LOG_LEVELS.get(str(self.log_level).lower(), logging.DEBUG):
            return
        logger.log(severity, f"[{self.execution_id}] {message}", extra={"execution_id": self.execution_id})
        self.logs.append({
            "level": level,
            "message": message,
            "context": context or {},
            "timestamp": time.time(),
        })

    def set_variable(self, key: str, value: Any):
        self.variables[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def pending_resumes(self) -> Dict[str, float]:
        """处于等待状态且带有 resume_at 的节点"""
        pending = {}
        for node_id, state in self.node_states.items():
            if state.get("status") != NodeStatus.WAITING.value:
                continue
            resume_at = (state.get("output") or {}).get("resume_at")
            if resume_at is not None:
                pending[node_id] = resume_at
        return pending

    def is_terminal_state(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """序列化为规范 JSON 结构"""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "workflow_uuid": self.workflow_uuid,
            "status": self.status.value,
            "trigger_type": self.trigger_type,
            "trigger_data": copy.deepcopy(self.trigger_data),
            "context": copy.deepcopy(self.context),
            "variables": copy.deepcopy(self.variables),
            "node_states": copy.deepcopy(self.node_states),
            "logs": copy.deepcopy(self.logs),
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "execution_time_ms": self.execution_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowExecution":
        return cls(
            execution_id=data["execution_id"],
            workflow_id=data.get("workflow_id", ""),
            workflow_uuid=data.get("workflow_uuid", ""),
            status=data.get("status", ExecutionStatus.PENDING.value),
            trigger_type=data.get("trigger_type", "manual"),
            trigger_data=copy.deepcopy(data.get("trigger_data") or {}),
            context=copy.deepcopy(data.get("context") or {}),
            variables=copy.deepcopy(data.get("variables") or {}),
            node_states=copy.deepcopy(data.get("node_states") or {}),
            logs=copy.deepcopy(data.get("logs") or []),
            error_message=data.get("error_message"),
            started_at=_parse_datetime(data.get("started_at")) or utcnow(),
            completed_at=_parse_datetime(data.get("completed_at")),
            execution_time_ms=int(data.get("execution_time_ms") or 0),
        )


class ExecutionEventType(Enum):
    """执行事件类型"""
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_CANCELLED = "workflow_cancelled"


@dataclass
class ExecutionEvent:
    """执行事件"""
    id: str = field(default_factory=lambda: str(uuid4()))
    execution_id: str = ""
    workflow_id: str = ""
    event_type: str = ""
    node_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "event_type": self.event_type,
            "node_id": self.node_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }
