"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import Column, String, Text, Integer, BigInteger, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class WorkflowRecord(Base):
    """工作流定义模型"""
    __tablename__ = 'automation_workflows'

    id = Column(String(255), primary_key=True)
    uuid = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False, default="")
    description = Column(Text)
    status = Column(String(50), nullable=False)
    version = Column(Integer, default=1)
    definition = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_automation_workflows_status', 'status'),
    )


class ExecutionRecord(Base):
    """工作流执行实例模型"""
    __tablename__ = 'automation_executions'

    execution_id = Column(String(64), primary_key=True)
    workflow_id = Column(String(255), nullable=False)
    workflow_uuid = Column(String(64))
    status = Column(String(50), nullable=False)
    trigger_type = Column(String(50))
    trigger_data = Column(JSON, default=dict)
    context = Column(JSON, default=dict)
    variables = Column(JSON, default=dict)
    node_states = Column(JSON, default=dict)
    logs = Column(JSON, default=list)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    execution_time_ms = Column(BigInteger, default=0)

    __table_args__ = (
        Index('idx_automation_executions_workflow_id', 'workflow_id'),
        Index('idx_automation_executions_status', 'status'),
        Index('idx_automation_executions_started_at', 'started_at'),
    )
