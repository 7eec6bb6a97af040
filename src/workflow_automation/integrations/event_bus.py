"""
事件总线集成
"""
import asyncio
import inspect
from typing import Dict, Any, List, Callable, Set
from dataclasses import dataclass, field
from datetime import datetime
import logging


logger = logging.getLogger(__name__)


# 事件主题
TOPIC_WORKFLOW_TRIGGER = "workflow/trigger"
TOPIC_WORKFLOW_TIMER = "workflow/timer"
TOPIC_TIMER_REGISTERED = "workflow/timer/registered"
TOPIC_AGENT_JOB_STATUS = "agent/job/status"


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=datetime.now)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """进程内事件总线"""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """发布事件并等待所有订阅者处理完成"""
        event = Event(
            topic=topic,
            payload=payload,
            headers=headers or {}
        )

        # 获取订阅者快照
        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))

        tasks = [
            asyncio.create_task(self._notify_subscriber(subscriber, event))
            for subscriber in subscribers
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    def emit(self, topic: str, payload: Any, headers: Dict[str, str] = None) -> asyncio.Task:
        """发布事件但不等待订阅者，返回后台任务"""
        task = asyncio.create_task(self.publish(topic, payload, headers))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self):
        """等待所有后台发布完成（包括处理过程中新发出的事件）"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def subscribe(self, topic: str, handler: Callable):
        """订阅事件"""
        async with self._lock:
            if topic not in self.subscribers:
                self.subscribers[topic] = []
            self.subscribers[topic].append(handler)

        logger.debug(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            handlers = self.subscribers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self.subscribers[topic]

        logger.debug(f"Unsubscribed from topic '{topic}'")

    def subscriber_count(self, topic: str) -> int:
        return len(self.subscribers.get(topic, []))

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        """通知订阅者"""
        try:
            if inspect.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
