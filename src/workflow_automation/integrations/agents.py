"""
智能体集成：智能体注册表、工具目录与异步任务队列
"""
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List, Callable, Tuple
from uuid import uuid4

from .event_bus import EventBus, TOPIC_AGENT_JOB_STATUS


logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """智能体任务错误类别"""
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER = "server"
    SYSTEM = "system"
    TOOL = "tool"
    UNKNOWN = "unknown"


class JobStatus:
    """任务状态，错误状态为 error:<category>"""
    QUEUED = "queued"
    FETCHED = "fetched"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    ERROR_PREFIX = "error:"

    @classmethod
    def error(cls, category: ErrorCategory) -> str:
        return f"{cls.ERROR_PREFIX}{category.value}"

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status == cls.DELIVERED or status.startswith(cls.ERROR_PREFIX)

    @classmethod
    def error_category(cls, status: str) -> Optional[ErrorCategory]:
        if not status.startswith(cls.ERROR_PREFIX):
            return None
        try:
            return ErrorCategory(status[len(cls.ERROR_PREFIX):])
        except ValueError:
            return ErrorCategory.UNKNOWN


# (类别, 消息关键字, 错误码)，按顺序匹配
_ERROR_PATTERNS = [
    (ErrorCategory.NOT_FOUND, ("not found", "找不到"), "TOOL_NOT_FOUND"),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out", "超时"), "TIMEOUT"),
    (ErrorCategory.NETWORK, ("network", "网络"), "NETWORK_ERROR"),
    (ErrorCategory.SERVER, ("server", "服务器"), "SERVER_ERROR"),
    (ErrorCategory.SYSTEM, ("system", "系统"), "SYSTEM_ERROR"),
]


def categorize_error(message: Optional[str], code: Optional[str] = None) -> ErrorCategory:
    """根据错误消息和错误码归类"""
    text = (message or "").lower()
    for category, keywords, error_code in _ERROR_PATTERNS:
        if code == error_code or any(k in text for k in keywords):
            return category
    return ErrorCategory.UNKNOWN


@dataclass
class AgentDefinition:
    """智能体定义"""
    domain_id: str
    agent_id: str
    name: str = ""
    persona: str = ""
    memory: Optional[str] = None
    tool_ids: List[str] = field(default_factory=list)


@dataclass
class ToolInfo:
    """工具描述"""
    tool_id: str
    name: str
    description: str = ""


@dataclass
class AgentJobSpec:
    """智能体任务描述"""
    domain_id: str
    agent_id: str
    system_prompt: str
    user_prompt: str
    tool_ids: List[str] = field(default_factory=list)
    execution_id: Optional[str] = None
    workflow_id: Optional[int] = None
    node_id: Optional[int] = None
    client_id: Optional[int] = None  # 需要语音推送时的客户端


@dataclass
class AgentJob:
    """智能体任务"""
    job_id: str
    spec: AgentJobSpec
    status: str = JobStatus.QUEUED
    content: Optional[str] = None
    error: Optional[str] = None
    audio_streamed: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return JobStatus.is_terminal(self.status)


class AgentRegistry(ABC):
    """智能体注册表接口"""

    @abstractmethod
    async def get(self, domain_id: str, agent_id: str) -> Optional[AgentDefinition]:
        """获取智能体定义"""
        pass


class ToolCatalog(ABC):
    """工具目录接口"""

    @abstractmethod
    async def get_tools(self, domain_id: str, tool_ids: List[str]) -> List[ToolInfo]:
        """按ID获取工具描述，不存在的工具忽略"""
        pass


class AgentTaskQueue(ABC):
    """智能体任务队列接口"""

    @abstractmethod
    async def submit(self, spec: AgentJobSpec) -> AgentJob:
        """提交任务"""
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[AgentJob]:
        """查询任务"""
        pass

    @abstractmethod
    async def update_status(
        self,
        job_id: str,
        status: str,
        content: Optional[str] = None,
        error: Optional[str] = None,
        audio_streamed: Optional[bool] = None
    ) -> Optional[AgentJob]:
        """更新任务状态"""
        pass


class InMemoryAgentRegistry(AgentRegistry):
    """内存智能体注册表"""

    def __init__(self):
        self.agents: Dict[Tuple[str, str], AgentDefinition] = {}

    def register(self, agent: AgentDefinition) -> AgentDefinition:
        self.agents[(agent.domain_id, agent.agent_id)] = agent
        return agent

    async def get(self, domain_id: str, agent_id: str) -> Optional[AgentDefinition]:
        return self.agents.get((domain_id, agent_id))


class InMemoryToolCatalog(ToolCatalog):
    """内存工具目录"""

    def __init__(self, tools: List[ToolInfo] = None):
        self.tools: Dict[str, ToolInfo] = {t.tool_id: t for t in tools or []}

    def register(self, tool: ToolInfo):
        self.tools[tool.tool_id] = tool

    async def get_tools(self, domain_id: str, tool_ids: List[str]) -> List[ToolInfo]:
        return [self.tools[tid] for tid in tool_ids if tid in self.tools]


# responder 接收任务描述，返回文本内容或 (内容, 是否已语音推送)
Responder = Callable[[AgentJobSpec], Any]


class InMemoryAgentTaskQueue(AgentTaskQueue):
    """
    内存任务队列

    状态变更时向事件总线发布 agent/job/status 事件。
    提供 responder 时，提交的任务由后台工作协程自动处理。
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        responder: Optional[Responder] = None,
        publish_events: bool = True
    ):
        self.event_bus = event_bus
        self.responder = responder
        self.publish_events = publish_events
        self.jobs: Dict[str, AgentJob] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    async def submit(self, spec: AgentJobSpec) -> AgentJob:
        job = AgentJob(job_id=uuid4().hex, spec=spec)
        self.jobs[job.job_id] = job
        logger.info(f"Submitted agent job {job.job_id} for agent {spec.agent_id}")

        if self.responder:
            task = asyncio.create_task(self._work(job.job_id))
            self._workers[job.job_id] = task
            task.add_done_callback(lambda _t, jid=job.job_id: self._workers.pop(jid, None))
        return copy.deepcopy(job)

    async def get(self, job_id: str) -> Optional[AgentJob]:
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def update_status(
        self,
        job_id: str,
        status: str,
        content: Optional[str] = None,
        error: Optional[str] = None,
        audio_streamed: Optional[bool] = None
    ) -> Optional[AgentJob]:
        job = self.jobs.get(job_id)
        if not job:
            return None
        job.status = status
        if content is not None:
            job.content = content
        if error is not None:
            job.error = error
        if audio_streamed is not None:
            job.audio_streamed = audio_streamed
        job.updated_at = datetime.now()

        if self.event_bus and self.publish_events:
            await self.event_bus.publish(TOPIC_AGENT_JOB_STATUS, {
                "jobId": job_id,
                "status": status,
                "content": job.content,
                "error": job.error,
                "audioStreamed": job.audio_streamed,
            })
        return copy.deepcopy(job)

    async def remove(self, job_id: str) -> bool:
        return self.jobs.pop(job_id, None) is not None

    async def _work(self, job_id: str):
        """后台处理任务"""
        job = self.jobs[job_id]
        await self.update_status(job_id, JobStatus.FETCHED)
        await self.update_status(job_id, JobStatus.PROCESSING)
        try:
            result = self.responder(job.spec)
            if asyncio.iscoroutine(result):
                result = await result
            content, streamed = result if isinstance(result, tuple) else (result, False)
            await self.update_status(job_id, JobStatus.DELIVERED, content=content, audio_streamed=streamed)
        except Exception as e:
            category = categorize_error(str(e), getattr(e, "code", None))
            logger.error(f"Agent job {job_id} failed: {e}")
            await self.update_status(job_id, JobStatus.error(category), error=str(e))
