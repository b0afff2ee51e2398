"""
Pytest 配置和公共 fixtures
"""
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from automation_engine.config import EngineConfig
from automation_engine.core.engine import ExecutionEngine
from automation_engine.core.evaluator import ConditionEvaluator
from automation_engine.core.resolver import ValueResolver
from automation_engine.core.scheduler import InMemoryScheduler
from automation_engine.integrations.actions import LocalActionDispatcher
from automation_engine.integrations.event_bus import EventBus
from automation_engine.integrations.signals import InMemorySignalStore
from automation_engine.models.execution import WorkflowExecution
from automation_engine.models.workflow import Workflow
from automation_engine.storage.repository import InMemoryExecutionRepository, InMemoryWorkflowRepository
from automation_engine.storage.sqlalchemy_repository import DatabaseManager


class FrozenClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime = None):
        self.now = now or datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)

    def timestamp(self) -> float:
        return self.now.timestamp()


def build_workflow(nodes, connections=None, **kwargs) -> Workflow:
    """构建激活状态的工作流"""
    data = {
        "id": kwargs.pop("id", "wf-test"),
        "name": kwargs.pop("name", "Test Workflow"),
        "status": kwargs.pop("status", "active"),
        "nodes": nodes,
        "connections": connections or [],
    }
    data.update(kwargs)
    return Workflow.from_dict(data)


def chain(*node_ids):
    """按顺序连接节点"""
    return [{"source": a, "target": b} for a, b in zip(node_ids, node_ids[1:])]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def resolver() -> ValueResolver:
    return ValueResolver()


@pytest.fixture
def evaluator(resolver, clock) -> ConditionEvaluator:
    return ConditionEvaluator(resolver, clock=clock)


@pytest.fixture
def execution() -> WorkflowExecution:
    return WorkflowExecution(workflow_id="wf-test", variables={})


@pytest.fixture
def actions() -> LocalActionDispatcher:
    return LocalActionDispatcher()


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.notify_failure = AsyncMock()
    return mock


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def engine(clock, actions, notifier, event_bus) -> ExecutionEngine:
    """使用内存存储和冻结时钟的引擎"""
    return ExecutionEngine(
        workflow_repo=InMemoryWorkflowRepository(),
        execution_repo=InMemoryExecutionRepository(),
        scheduler=InMemoryScheduler(clock=clock.timestamp),
        actions=actions,
        notifier=notifier,
        event_bus=event_bus,
        signals=InMemorySignalStore(),
        config=EngineConfig(max_iterations=200, resume_poll_seconds=60, default_wait_timeout=3600),
        clock=clock,
    )


@pytest_asyncio.fixture
async def test_database(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库"""
    db_manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'automation.db'}")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()
