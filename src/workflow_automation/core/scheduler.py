"""
工作流定时调度器
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..models.workflow import NodeType
from ..models.timer import WorkflowTimer, TimerUnit, shift
from ..models.node_config import TimerConfig, parse_node_config
from ..exceptions import TimerClaimError, TimerRegistrationError, WorkflowEngineError
from ..storage.repository import WorkflowRepository, NodeRepository, TimerRepository
from ..integrations.event_bus import EventBus, TOPIC_WORKFLOW_TIMER, TOPIC_TIMER_REGISTERED


logger = logging.getLogger(__name__)


def compute_execute_after(config: TimerConfig, now: datetime) -> datetime:
    """
    计算定时器的首次触发时间（服务器本地时间）

    - minute: 指定秒锚点时取本分钟该秒，否则 now + N 分钟
    - hour: time 的分、秒作为小时内锚点
    - day / week / month: time 的时、分作为锚点
    锚点已过时推进 N 个间隔单位。
    """
    value = config.interval_value
    unit = config.interval

    if unit == TimerUnit.MINUTE:
        if config.second is None:
            return (now + timedelta(minutes=value)).replace(microsecond=0)
        candidate = now.replace(second=config.second, microsecond=0)
        if candidate < now:
            candidate = shift(candidate, value, TimerUnit.MINUTE)
        return candidate

    parts = config.time_parts
    if not parts:
        raise ValueError(f"'{unit.value}' timers require a time")

    if unit == TimerUnit.HOUR:
        minute = parts[1] if len(parts) > 1 else 0
        second = parts[2] if len(parts) > 2 else 0
        candidate = now.replace(minute=minute, second=second, microsecond=0)
        if candidate < now:
            candidate = shift(now, value, unit).replace(minute=minute, second=second, microsecond=0)
        return candidate

    hour = parts[0]
    minute = parts[1] if len(parts) > 1 else 0
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate < now:
        candidate = shift(now, value, unit).replace(hour=hour, minute=minute, second=0, microsecond=0)
    return candidate


class Leadership(ABC):
    """调度器领导权策略，只有 leader 实例运行认领循环"""

    @abstractmethod
    async def is_leader(self) -> bool:
        pass

    async def release(self):
        """释放领导权"""
        pass


class StaticLeadership(Leadership):
    """
    静态领导权

    由配置指定本实例是否为 leader。部署时必须保证恰好一个实例配置为 leader。
    """

    def __init__(self, leader: bool = True):
        self.leader = leader

    async def is_leader(self) -> bool:
        return self.leader


class TimerScheduler:
    """定时调度器：注册定时器节点，并循环认领到期定时器"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        node_repository: NodeRepository,
        timer_repository: TimerRepository,
        event_bus: EventBus,
        leadership: Optional[Leadership] = None,
        poll_interval: float = 1.0,
        error_backoff: float = 5.0,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.workflow_repository = workflow_repository
        self.node_repository = node_repository
        self.timer_repository = timer_repository
        self.event_bus = event_bus
        self.leadership = leadership or StaticLeadership(True)
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.clock = clock

        self._running = False
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def register_timers(self, domain_id: str, workflow_id: int) -> int:
        """
        为工作流的所有定时器节点注册定时器（幂等）

        Returns:
            int: 新写入的定时器数量
        """
        workflow = await self.workflow_repository.get(domain_id, workflow_id)
        if not workflow or not workflow.enabled:
            logger.debug(f"Workflow {workflow_id} is not enabled, skipping timer registration")
            return 0

        nodes = await self.node_repository.list_by_workflow(
            domain_id, workflow_id, node_type=NodeType.TIMER.value
        )
        registered = 0
        for node in nodes:
            try:
                if await self._register_node(domain_id, workflow_id, node):
                    registered += 1
            except Exception as e:
                error = TimerRegistrationError(workflow_id, node.node_id, str(e))
                logger.error(str(error), exc_info=True)

        await self.event_bus.publish(TOPIC_TIMER_REGISTERED, {
            "domainId": domain_id,
            "workflowId": workflow_id,
            "registered": registered,
        })
        return registered

    async def _register_node(self, domain_id: str, workflow_id: int, node) -> bool:
        config: TimerConfig = parse_node_config(node.node_type, node.config)
        if not config.has_schedule:
            logger.info(f"Timer node {node.node_id} of workflow {workflow_id} has no schedule, skipping")
            return False

        now = self.clock()
        interval = config.timer_interval
        existing = await self.timer_repository.get_by_node(domain_id, workflow_id, node.node_id)
        if existing:
            if (
                existing.execute_after > now
                and existing.interval == interval
                and existing.trigger_data == config.trigger_data
            ):
                logger.debug(f"Timer for node {node.node_id} is up to date")
                return False
            await self.timer_repository.delete(domain_id, workflow_id, node.node_id)

        execute_after = compute_execute_after(config, now)
        await self.timer_repository.add(WorkflowTimer(
            domain_id=domain_id,
            workflow_id=workflow_id,
            node_id=node.node_id,
            execute_after=execute_after,
            interval=interval,
            trigger_data=dict(config.trigger_data),
        ))
        logger.info(
            f"Registered timer for workflow {workflow_id}, node {node.node_id} at {execute_after}, "
            f"interval: {interval.value} {interval.unit.value}"
        )
        return True

    async def register_all(self) -> int:
        """为所有域中启用且激活的工作流注册定时器"""
        total = 0
        for domain_id in await self.workflow_repository.list_domains():
            for workflow in await self.workflow_repository.list_active(domain_id):
                total += await self.register_timers(domain_id, workflow.workflow_id)
        logger.info(f"Timer registration pass finished, {total} timers registered")
        return total

    async def unregister_timers(self, domain_id: str, workflow_id: int, node_id: Optional[int] = None) -> int:
        """删除工作流（或单个节点）的定时器"""
        deleted = await self.timer_repository.delete(domain_id, workflow_id, node_id)
        if deleted:
            logger.info(f"Removed {deleted} timers of workflow {workflow_id}")
        return deleted

    async def claim_next(self) -> Optional[WorkflowTimer]:
        """认领一个到期定时器并发出 workflow/timer 事件"""
        try:
            timer = await self.timer_repository.claim_due(self.clock())
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise TimerClaimError(f"Failed to claim due timer: {e}") from e

        if timer is None:
            return None

        logger.info(f"Timer triggered for workflow {timer.workflow_id} in domain {timer.domain_id}")
        self.event_bus.emit(TOPIC_WORKFLOW_TIMER, {
            "domainId": timer.domain_id,
            "workflowId": timer.workflow_id,
            "nodeId": timer.node_id,
            "triggerData": dict(timer.trigger_data),
        })
        return timer

    async def run(self):
        """认领循环，只能由 stop() 结束"""
        self._running = True
        self._stopping.clear()
        logger.info("Timer scheduler started")
        try:
            while not self._stopping.is_set():
                try:
                    if not await self.leadership.is_leader():
                        await self._sleep(self.poll_interval)
                        continue
                    timer = await self.claim_next()
                except Exception as e:
                    logger.error(f"Error consuming workflow timers: {e}", exc_info=True)
                    await self._sleep(self.error_backoff)
                    continue

                if timer is None:
                    await self._sleep(self.poll_interval)
        finally:
            self._running = False
            logger.info("Timer scheduler stopped")

    def start(self) -> asyncio.Task:
        """在后台启动认领循环"""
        if self._task and not self._task.done():
            return self._task
        self._stopping.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        """停止认领循环并释放领导权"""
        self._stopping.set()
        if self._task:
            await self._task
            self._task = None
        await self.leadership.release()

    @property
    def is_running(self) -> bool:
        return self._running

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
