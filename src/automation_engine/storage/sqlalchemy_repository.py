"""
SQLAlchemy 仓库实现
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..exceptions import PersistenceError
from ..models.execution import TERMINAL_STATUSES, ExecutionStatus, WorkflowExecution, utcnow
from ..models.workflow import Workflow, WorkflowStatus
from .repository import ExecutionRepository, WorkflowRepository
from .sqlalchemy_models import Base, ExecutionRecord, WorkflowRecord


logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite 读回的时间不带时区
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """初始化数据库连接并建表"""
        engine_kwargs = {"echo": False}
        if not self.database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)

        self.engine = create_async_engine(self.database_url, **engine_kwargs)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        if self.async_session_maker is None:
            raise PersistenceError("Database manager is not initialized")
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError(f"Database operation failed: {e}") from e
            except Exception:
                await session.rollback()
                raise


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, workflow: Workflow) -> str:
        async with self.db.get_session() as session:
            await session.merge(WorkflowRecord(
                id=workflow.id,
                uuid=workflow.uuid,
                name=workflow.name,
                description=workflow.description,
                status=workflow.status.value,
                version=workflow.version,
                definition=workflow.to_dict(),
            ))
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        async with self.db.get_session() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            return self._record_to_workflow(record) if record else None

    async def list(self, status: WorkflowStatus = None, offset: int = 0, limit: int = 100) -> List[Workflow]:
        async with self.db.get_session() as session:
            query = select(WorkflowRecord).order_by(WorkflowRecord.id)
            if status:
                query = query.where(WorkflowRecord.status == WorkflowStatus(status).value)
            result = await session.execute(query.offset(offset).limit(limit))
            return [self._record_to_workflow(record) for record in result.scalars().all()]

    async def delete(self, workflow_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(delete(WorkflowRecord).where(WorkflowRecord.id == workflow_id))
            return result.rowcount > 0

    def _record_to_workflow(self, record: WorkflowRecord) -> Workflow:
        data = dict(record.definition or {})
        data.update(id=record.id, uuid=record.uuid, status=record.status)
        return Workflow.from_dict(data)


class SQLAlchemyExecutionRepository(ExecutionRepository):
    """SQLAlchemy 执行实例仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, execution: WorkflowExecution) -> str:
        data = execution.to_dict()
        async with self.db.get_session() as session:
            await session.merge(ExecutionRecord(
                execution_id=execution.execution_id,
                workflow_id=execution.workflow_id,
                workflow_uuid=execution.workflow_uuid,
                status=execution.status.value,
                trigger_type=execution.trigger_type,
                trigger_data=data["trigger_data"],
                context=data["context"],
                variables=data["variables"],
                node_states=data["node_states"],
                logs=data["logs"],
                error_message=execution.error_message,
                started_at=execution.started_at,
                completed_at=execution.completed_at,
                execution_time_ms=execution.execution_time_ms,
            ))
        return execution.execution_id

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.db.get_session() as session:
            record = await session.get(ExecutionRecord, execution_id)
            return self._record_to_execution(record) if record else None

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        async with self.db.get_session() as session:
            query = select(ExecutionRecord).where(ExecutionRecord.workflow_id == workflow_id)
            if status:
                query = query.where(ExecutionRecord.status == ExecutionStatus(status).value)
            query = query.order_by(ExecutionRecord.started_at.desc()).offset(offset).limit(limit)
            result = await session.execute(query)
            return [self._record_to_execution(record) for record in result.scalars().all()]

    async def list_by_status(
        self,
        status: ExecutionStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        async with self.db.get_session() as session:
            query = (
                select(ExecutionRecord)
                .where(ExecutionRecord.status == ExecutionStatus(status).value)
                .order_by(ExecutionRecord.started_at)
                .offset(offset)
                .limit(limit)
            )
            result = await session.execute(query)
            return [self._record_to_execution(record) for record in result.scalars().all()]

    async def delete(self, execution_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ExecutionRecord).where(ExecutionRecord.execution_id == execution_id)
            )
            return result.rowcount > 0

    async def cleanup_old_executions(self, days: int = 30, now: datetime = None) -> int:
        cutoff_date = (now or utcnow()) - timedelta(days=days)
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ExecutionRecord).where(
                    ExecutionRecord.started_at < cutoff_date,
                    ExecutionRecord.status.in_([status.value for status in TERMINAL_STATUSES])
                )
            )
            deleted = result.rowcount
        logger.info(f"Cleaned up {deleted} executions older than {days} days")
        return deleted

    def _record_to_execution(self, record: ExecutionRecord) -> WorkflowExecution:
        return WorkflowExecution(
            execution_id=record.execution_id,
            workflow_id=record.workflow_id,
            workflow_uuid=record.workflow_uuid or "",
            status=record.status,
            trigger_type=record.trigger_type or "manual",
            trigger_data=record.trigger_data or {},
            context=record.context or {},
            variables=record.variables or {},
            node_states=record.node_states or {},
            logs=record.logs or [],
            error_message=record.error_message,
            started_at=_aware(record.started_at),
            completed_at=_aware(record.completed_at),
            execution_time_ms=record.execution_time_ms or 0,
        )
