"""
SQLAlchemy 仓库实现
"""
import logging
from typing import Optional, List, Dict, Any, Callable
from datetime import datetime, timedelta
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy import select, update, delete, and_, or_, func
from sqlalchemy.exc import IntegrityError

from ..models.workflow import Workflow, WorkflowNode, WorkflowStatus, Connection
from ..models.timer import WorkflowTimer, TimerInterval, TimerUnit
from ..core.scheduler import Leadership
from .repository import WorkflowRepository, NodeRepository, TimerRepository
from .sqlalchemy_models import (
    WorkflowRecord,
    WorkflowNodeRecord,
    WorkflowTimerRecord,
    SchedulerLeaseRecord,
    Base
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self, create_tables: bool = True):
        """初始化数据库连接"""
        options: Dict[str, Any] = {"echo": self.echo, "pool_pre_ping": True}
        if self.database_url.startswith("sqlite"):
            options["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.database_url:
                # 内存库需要所有会话共享同一连接
                options["poolclass"] = StaticPool
        else:
            options.update(pool_size=20, max_overflow=10)

        self.engine = create_async_engine(self.database_url, **options)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        if create_tables:
            await self.create_tables()

    async def create_tables(self):
        """创建表（开发环境）"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def next_workflow_id(self, domain_id: str) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(func.max(WorkflowRecord.workflow_id)).where(WorkflowRecord.domain_id == domain_id)
            )
            return (result.scalar() or 0) + 1

    async def save(self, workflow: Workflow) -> int:
        """保存工作流（存在则覆盖）"""
        async with self.db.get_session() as session:
            record = await self._find(session, workflow.domain_id, workflow.workflow_id)
            if record is None:
                record = WorkflowRecord(domain_id=workflow.domain_id, workflow_id=workflow.workflow_id)
                session.add(record)
            record.name = workflow.name
            record.description = workflow.description
            record.enabled = workflow.enabled
            record.status = workflow.status.value
            record.owner = workflow.owner
            record.created_at = workflow.created_at
            record.updated_at = workflow.updated_at
            await session.flush()
            return workflow.workflow_id

    async def get(self, domain_id: str, workflow_id: int) -> Optional[Workflow]:
        async with self.db.get_session() as session:
            record = await self._find(session, domain_id, workflow_id)
            return self._to_workflow(record) if record else None

    async def list(self, domain_id: str, filters: Dict[str, Any] = None) -> List[Workflow]:
        async with self.db.get_session() as session:
            query = select(WorkflowRecord).where(WorkflowRecord.domain_id == domain_id)
            for key, value in (filters or {}).items():
                if isinstance(value, WorkflowStatus):
                    value = value.value
                query = query.where(getattr(WorkflowRecord, key) == value)
            query = query.order_by(WorkflowRecord.workflow_id)
            result = await session.execute(query)
            return [self._to_workflow(r) for r in result.scalars().all()]

    async def list_domains(self) -> List[str]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowRecord.domain_id).distinct().order_by(WorkflowRecord.domain_id)
            )
            return list(result.scalars().all())

    async def set(self, domain_id: str, workflow_id: int, patch: Dict[str, Any]) -> Optional[Workflow]:
        async with self.db.get_session() as session:
            record = await self._find(session, domain_id, workflow_id)
            if record is None:
                return None
            for key, value in patch.items():
                if isinstance(value, WorkflowStatus):
                    value = value.value
                setattr(record, key, value)
            record.updated_at = datetime.now()
            await session.flush()
            return self._to_workflow(record)

    async def delete(self, domain_id: str, workflow_id: int) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkflowRecord).where(
                    and_(
                        WorkflowRecord.domain_id == domain_id,
                        WorkflowRecord.workflow_id == workflow_id
                    )
                )
            )
            return result.rowcount > 0

    async def _find(self, session: AsyncSession, domain_id: str, workflow_id: int) -> Optional[WorkflowRecord]:
        result = await session.execute(
            select(WorkflowRecord).where(
                and_(WorkflowRecord.domain_id == domain_id, WorkflowRecord.workflow_id == workflow_id)
            )
        )
        return result.scalar_one_or_none()

    def _to_workflow(self, record: WorkflowRecord) -> Workflow:
        return Workflow(
            domain_id=record.domain_id,
            workflow_id=record.workflow_id,
            name=record.name,
            description=record.description,
            enabled=bool(record.enabled),
            status=WorkflowStatus(record.status),
            owner=record.owner,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SQLAlchemyNodeRepository(NodeRepository):
    """SQLAlchemy 节点仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def next_node_id(self, domain_id: str, workflow_id: int) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(func.max(WorkflowNodeRecord.node_id)).where(
                    and_(
                        WorkflowNodeRecord.domain_id == domain_id,
                        WorkflowNodeRecord.workflow_id == workflow_id
                    )
                )
            )
            return (result.scalar() or 0) + 1

    async def save(self, node: WorkflowNode) -> int:
        async with self.db.get_session() as session:
            record = await self._find(session, node.domain_id, node.workflow_id, node.node_id)
            if record is None:
                record = WorkflowNodeRecord(
                    domain_id=node.domain_id,
                    workflow_id=node.workflow_id,
                    node_id=node.node_id,
                )
                session.add(record)
            record.node_type = node.node_type
            record.name = node.name
            record.config = node.config
            record.connections = [c.to_dict() for c in node.connections]
            record.position = node.position
            record.owner = node.owner
            record.created_at = node.created_at
            record.updated_at = node.updated_at
            await session.flush()
            return node.node_id

    async def get(self, domain_id: str, workflow_id: int, node_id: int) -> Optional[WorkflowNode]:
        async with self.db.get_session() as session:
            record = await self._find(session, domain_id, workflow_id, node_id)
            return self._to_node(record) if record else None

    async def list_by_workflow(
        self,
        domain_id: str,
        workflow_id: int,
        node_type: Optional[str] = None
    ) -> List[WorkflowNode]:
        async with self.db.get_session() as session:
            query = select(WorkflowNodeRecord).where(
                and_(
                    WorkflowNodeRecord.domain_id == domain_id,
                    WorkflowNodeRecord.workflow_id == workflow_id
                )
            )
            if node_type:
                query = query.where(WorkflowNodeRecord.node_type == node_type)
            result = await session.execute(query.order_by(WorkflowNodeRecord.node_id))
            return [self._to_node(r) for r in result.scalars().all()]

    async def set(
        self,
        domain_id: str,
        workflow_id: int,
        node_id: int,
        patch: Dict[str, Any]
    ) -> Optional[WorkflowNode]:
        async with self.db.get_session() as session:
            record = await self._find(session, domain_id, workflow_id, node_id)
            if record is None:
                return None
            for key, value in patch.items():
                if key == "connections":
                    value = [c.to_dict() if isinstance(c, Connection) else dict(c) for c in value]
                setattr(record, key, value)
            record.updated_at = datetime.now()
            await session.flush()
            return self._to_node(record)

    async def delete(self, domain_id: str, workflow_id: int, node_id: int) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkflowNodeRecord).where(
                    and_(
                        WorkflowNodeRecord.domain_id == domain_id,
                        WorkflowNodeRecord.workflow_id == workflow_id,
                        WorkflowNodeRecord.node_id == node_id
                    )
                )
            )
            return result.rowcount > 0

    async def delete_by_workflow(self, domain_id: str, workflow_id: int) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkflowNodeRecord).where(
                    and_(
                        WorkflowNodeRecord.domain_id == domain_id,
                        WorkflowNodeRecord.workflow_id == workflow_id
                    )
                )
            )
            return result.rowcount

    async def _find(
        self,
        session: AsyncSession,
        domain_id: str,
        workflow_id: int,
        node_id: int
    ) -> Optional[WorkflowNodeRecord]:
        result = await session.execute(
            select(WorkflowNodeRecord).where(
                and_(
                    WorkflowNodeRecord.domain_id == domain_id,
                    WorkflowNodeRecord.workflow_id == workflow_id,
                    WorkflowNodeRecord.node_id == node_id
                )
            )
        )
        return result.scalar_one_or_none()

    def _to_node(self, record: WorkflowNodeRecord) -> WorkflowNode:
        return WorkflowNode(
            domain_id=record.domain_id,
            workflow_id=record.workflow_id,
            node_id=record.node_id,
            node_type=record.node_type,
            name=record.name or "",
            config=dict(record.config or {}),
            connections=[Connection.from_dict(c) for c in record.connections or []],
            position=dict(record.position or {}),
            owner=record.owner,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SQLAlchemyTimerRepository(TimerRepository):
    """SQLAlchemy 定时器仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def add(self, timer: WorkflowTimer) -> WorkflowTimer:
        async with self.db.get_session() as session:
            session.add(self._to_record(timer))
            await session.flush()
        return timer

    async def get_by_node(self, domain_id: str, workflow_id: int, node_id: int) -> Optional[WorkflowTimer]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowTimerRecord).where(
                    and_(
                        WorkflowTimerRecord.domain_id == domain_id,
                        WorkflowTimerRecord.workflow_id == workflow_id,
                        WorkflowTimerRecord.node_id == node_id
                    )
                )
            )
            record = result.scalar_one_or_none()
            return self._to_timer(record) if record else None

    async def list_by_workflow(self, domain_id: str, workflow_id: int) -> List[WorkflowTimer]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowTimerRecord).where(
                    and_(
                        WorkflowTimerRecord.domain_id == domain_id,
                        WorkflowTimerRecord.workflow_id == workflow_id
                    )
                ).order_by(WorkflowTimerRecord.node_id)
            )
            return [self._to_timer(r) for r in result.scalars().all()]

    async def count(self, domain_id: Optional[str] = None) -> int:
        async with self.db.get_session() as session:
            query = select(func.count(WorkflowTimerRecord.id))
            if domain_id is not None:
                query = query.where(WorkflowTimerRecord.domain_id == domain_id)
            result = await session.execute(query)
            return result.scalar() or 0

    async def delete(
        self,
        domain_id: str,
        workflow_id: Optional[int] = None,
        node_id: Optional[int] = None
    ) -> int:
        async with self.db.get_session() as session:
            query = delete(WorkflowTimerRecord).where(WorkflowTimerRecord.domain_id == domain_id)
            if workflow_id is not None:
                query = query.where(WorkflowTimerRecord.workflow_id == workflow_id)
            if node_id is not None:
                query = query.where(WorkflowTimerRecord.node_id == node_id)
            result = await session.execute(query)
            return result.rowcount

    async def claim_due(self, now: datetime) -> Optional[WorkflowTimer]:
        """
        DELETE ... RETURNING 认领最早到期的一条记录，循环定时器在同一事务内重新插入。
        PostgreSQL 下子查询使用 FOR UPDATE SKIP LOCKED，并发认领者互不阻塞。
        """
        due = (
            select(WorkflowTimerRecord.id)
            .where(WorkflowTimerRecord.execute_after < now)
            .order_by(WorkflowTimerRecord.execute_after)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        columns = [
            WorkflowTimerRecord.domain_id,
            WorkflowTimerRecord.workflow_id,
            WorkflowTimerRecord.node_id,
            WorkflowTimerRecord.execute_after,
            WorkflowTimerRecord.interval_value,
            WorkflowTimerRecord.interval_unit,
            WorkflowTimerRecord.trigger_data,
            WorkflowTimerRecord.created_at,
            WorkflowTimerRecord.updated_at,
        ]

        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkflowTimerRecord)
                .where(WorkflowTimerRecord.id == due)
                .returning(*columns)
                .execution_options(synchronize_session=False)
            )
            row = result.first()
            if row is None:
                return None

            timer = WorkflowTimer(
                domain_id=row.domain_id,
                workflow_id=row.workflow_id,
                node_id=row.node_id,
                execute_after=row.execute_after,
                interval=self._interval(row.interval_value, row.interval_unit),
                trigger_data=dict(row.trigger_data or {}),
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
            rearmed = timer.rearmed(now)
            if rearmed:
                session.add(self._to_record(rearmed))
            logger.debug(f"Claimed timer {timer.key}, next run {rearmed.execute_after if rearmed else None}")
            return timer

    @staticmethod
    def _interval(value: Optional[int], unit: Optional[str]) -> Optional[TimerInterval]:
        if value is None or unit is None:
            return None
        return TimerInterval(int(value), TimerUnit(unit))

    def _to_record(self, timer: WorkflowTimer) -> WorkflowTimerRecord:
        return WorkflowTimerRecord(
            domain_id=timer.domain_id,
            workflow_id=timer.workflow_id,
            node_id=timer.node_id,
            execute_after=timer.execute_after,
            interval_value=timer.interval.value if timer.interval else None,
            interval_unit=timer.interval.unit.value if timer.interval else None,
            trigger_data=dict(timer.trigger_data),
            created_at=timer.created_at,
            updated_at=timer.updated_at,
        )

    def _to_timer(self, record: WorkflowTimerRecord) -> WorkflowTimer:
        return WorkflowTimer(
            domain_id=record.domain_id,
            workflow_id=record.workflow_id,
            node_id=record.node_id,
            execute_after=record.execute_after,
            interval=self._interval(record.interval_value, record.interval_unit),
            trigger_data=dict(record.trigger_data or {}),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class DatabaseLeaseLeadership(Leadership):
    """
    基于数据库租约的领导权

    持有者在租约到期前不断续约；租约过期后其他实例可以接管。
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        holder: str,
        ttl: float = 15.0,
        name: str = "workflow-timer",
        clock: Callable[[], datetime] = datetime.now
    ):
        self.db = db_manager
        self.holder = holder
        self.ttl = ttl
        self.name = name
        self.clock = clock
        self._leader = False

    async def is_leader(self) -> bool:
        now = self.clock()
        expires_at = now + timedelta(seconds=self.ttl)

        async with self.db.get_session() as session:
            result = await session.execute(
                update(SchedulerLeaseRecord)
                .where(
                    and_(
                        SchedulerLeaseRecord.name == self.name,
                        or_(
                            SchedulerLeaseRecord.holder == self.holder,
                            SchedulerLeaseRecord.expires_at < now
                        )
                    )
                )
                .values(holder=self.holder, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            acquired = result.rowcount == 1

        if not acquired:
            try:
                async with self.db.get_session() as session:
                    session.add(SchedulerLeaseRecord(name=self.name, holder=self.holder, expires_at=expires_at))
                acquired = True
            except IntegrityError:
                acquired = False

        if acquired != self._leader:
            logger.info(f"Instance {self.holder} {'acquired' if acquired else 'lost'} scheduler lease '{self.name}'")
        self._leader = acquired
        return acquired

    async def release(self):
        async with self.db.get_session() as session:
            await session.execute(
                delete(SchedulerLeaseRecord).where(
                    and_(
                        SchedulerLeaseRecord.name == self.name,
                        SchedulerLeaseRecord.holder == self.holder
                    )
                )
            )
        self._leader = False
