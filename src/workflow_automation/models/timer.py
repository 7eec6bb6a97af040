"""
工作流定时器模型
"""
import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class TimerUnit(Enum):
    """循环间隔单位"""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


def add_months(moment: datetime, months: int) -> datetime:
    """按月推进，日期超出目标月份时取该月最后一天"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def shift(moment: datetime, value: int, unit: TimerUnit) -> datetime:
    """将时间推进 value 个 unit"""
    if unit == TimerUnit.MONTH:
        return add_months(moment, value)
    if unit == TimerUnit.WEEK:
        return moment + timedelta(weeks=value)
    if unit == TimerUnit.DAY:
        return moment + timedelta(days=value)
    if unit == TimerUnit.HOUR:
        return moment + timedelta(hours=value)
    return moment + timedelta(minutes=value)


@dataclass(frozen=True)
class TimerInterval:
    """循环间隔，例如 (1, day)"""
    value: int
    unit: TimerUnit

    def advance(self, moment: datetime) -> datetime:
        return shift(moment, self.value, self.unit)


@dataclass
class WorkflowTimer:
    """定时触发记录，每个定时器节点至多一条"""
    domain_id: str
    workflow_id: int
    node_id: int
    execute_after: datetime
    interval: Optional[TimerInterval] = None
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> Tuple[str, int, int]:
        return self.domain_id, self.workflow_id, self.node_id

    def is_due(self, now: datetime) -> bool:
        return self.execute_after < now

    def rearmed(self, now: Optional[datetime] = None) -> Optional["WorkflowTimer"]:
        """按间隔生成下一次触发记录；非循环定时器返回 None"""
        if not self.interval:
            return None
        return WorkflowTimer(
            domain_id=self.domain_id,
            workflow_id=self.workflow_id,
            node_id=self.node_id,
            execute_after=self.interval.advance(self.execute_after),
            interval=self.interval,
            trigger_data=dict(self.trigger_data),
            created_at=self.created_at,
            updated_at=now or datetime.now(),
        )
