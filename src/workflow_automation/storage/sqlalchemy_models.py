"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime,
    UniqueConstraint, CheckConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base
from datetime import datetime


Base = declarative_base()


class WorkflowRecord(Base):
    """工作流定义"""
    __tablename__ = 'workflows'

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain_id = Column(String(64), nullable=False)
    workflow_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    enabled = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default='inactive')
    owner = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    # 约束
    __table_args__ = (
        UniqueConstraint('domain_id', 'workflow_id', name='unique_domain_workflow'),
        CheckConstraint("status IN ('inactive', 'active')", name='check_workflow_status'),
        Index('idx_workflows_active', 'domain_id', 'enabled', 'status'),
    )


class WorkflowNodeRecord(Base):
    """工作流节点"""
    __tablename__ = 'workflow_nodes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain_id = Column(String(64), nullable=False)
    workflow_id = Column(Integer, nullable=False)
    node_id = Column(Integer, nullable=False)
    node_type = Column(String(50), nullable=False)
    name = Column(String(255), default='')
    config = Column(JSON, nullable=False, default=dict)
    connections = Column(JSON, nullable=False, default=list)
    position = Column(JSON, default=dict)
    owner = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    # 约束
    __table_args__ = (
        UniqueConstraint('domain_id', 'workflow_id', 'node_id', name='unique_workflow_node'),
        Index('idx_workflow_nodes_type', 'domain_id', 'workflow_id', 'node_type'),
    )


class WorkflowTimerRecord(Base):
    """定时触发记录"""
    __tablename__ = 'workflow_timers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain_id = Column(String(64), nullable=False)
    workflow_id = Column(Integer, nullable=False)
    node_id = Column(Integer, nullable=False)
    execute_after = Column(DateTime, nullable=False)
    interval_value = Column(Integer)
    interval_unit = Column(String(10))
    trigger_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)

    # 约束
    __table_args__ = (
        UniqueConstraint('domain_id', 'workflow_id', 'node_id', name='unique_timer_node'),
        CheckConstraint(
            "interval_unit IS NULL OR interval_unit IN ('minute', 'hour', 'day', 'week', 'month')",
            name='check_timer_interval_unit'
        ),
        Index('idx_workflow_timers_execute_after', 'execute_after'),
        Index('idx_workflow_timers_domain_execute', 'domain_id', 'execute_after'),
    )


class SchedulerLeaseRecord(Base):
    """调度器领导权租约"""
    __tablename__ = 'scheduler_leases'

    name = Column(String(64), primary_key=True)
    holder = Column(String(255), nullable=False)
    expires_at = Column(DateTime, nullable=False)
