"""
智能体任务桥接

将图执行挂起在一个长时间运行的智能体任务上：提交任务后，
轮询与状态事件推送同时等待，先到者胜出，整体受超时约束。
"""
import asyncio
import logging
from typing import Optional

from ..exceptions import AgentJobError
from ..integrations.agents import (
    AgentTaskQueue, AgentJob, AgentJobSpec, JobStatus, ErrorCategory, categorize_error
)
from ..integrations.event_bus import EventBus, Event, TOPIC_AGENT_JOB_STATUS


logger = logging.getLogger(__name__)

BASE_SCORE = 100

# 各类错误的扣分
_PENALTIES = {
    ErrorCategory.TOOL: 20,
    ErrorCategory.NOT_FOUND: 40,
    ErrorCategory.NETWORK: 40,
    ErrorCategory.SERVER: 40,
    ErrorCategory.UNKNOWN: 40,
    ErrorCategory.TIMEOUT: BASE_SCORE,
    ErrorCategory.SYSTEM: BASE_SCORE,
}


def score_penalty(category: ErrorCategory) -> int:
    """错误类别对应的扣分"""
    return _PENALTIES.get(category, _PENALTIES[ErrorCategory.UNKNOWN])


def score_for(*categories: ErrorCategory) -> int:
    """从满分依次扣除各错误的分数，最低为 0"""
    score = BASE_SCORE
    for category in categories:
        score = max(0, score - score_penalty(category))
    return score


class AgentTaskBridge:
    """智能体任务桥接器"""

    def __init__(
        self,
        task_queue: AgentTaskQueue,
        event_bus: Optional[EventBus] = None,
        timeout: float = 300.0,
        poll_interval: float = 2.0
    ):
        self.task_queue = task_queue
        self.event_bus = event_bus
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def run(self, spec: AgentJobSpec, timeout: Optional[float] = None) -> AgentJob:
        """提交任务并等待其结束"""
        job = await self.task_queue.submit(spec)
        logger.info(f"Waiting for agent job {job.job_id} (agent {spec.agent_id})")
        return await self.wait_for_completion(job.job_id, timeout)

    async def wait_for_completion(self, job_id: str, timeout: Optional[float] = None) -> AgentJob:
        """
        等待任务进入终止状态

        Args:
            job_id: 任务ID
            timeout: 超时秒数，默认使用实例配置

        Returns:
            AgentJob: 已投递的任务

        Raises:
            AgentJobError: 任务失败、消失或超时
        """
        timeout = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        pushed: asyncio.Future = loop.create_future()

        async def on_status(event: Event):
            payload = event.payload or {}
            if payload.get("jobId") != job_id or pushed.done():
                return
            if JobStatus.is_terminal(payload.get("status", "")):
                pushed.set_result(payload["status"])

        if self.event_bus:
            await self.event_bus.subscribe(TOPIC_AGENT_JOB_STATUS, on_status)
        poller = asyncio.create_task(self._poll(job_id))

        try:
            done, _ = await asyncio.wait(
                {poller, pushed},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                raise AgentJobError(
                    ErrorCategory.TIMEOUT,
                    f"Agent job {job_id} did not finish within {timeout}s",
                    job_id
                )
            # 轮询任务的异常在这里重新抛出
            for finished in done:
                finished.result()
        finally:
            poller.cancel()
            if not pushed.done():
                pushed.cancel()
            if self.event_bus:
                await self.event_bus.unsubscribe(TOPIC_AGENT_JOB_STATUS, on_status)

        job = await self.task_queue.get(job_id)
        if job is None:
            raise AgentJobError(ErrorCategory.NOT_FOUND, f"Agent job {job_id} not found", job_id)
        return self._finish(job)

    async def _poll(self, job_id: str) -> AgentJob:
        """轮询任务状态直到终止"""
        while True:
            try:
                job = await self.task_queue.get(job_id)
            except Exception as e:
                logger.warning(f"Polling agent job {job_id} failed: {e}")
                job = None
            else:
                if job is None:
                    raise AgentJobError(ErrorCategory.NOT_FOUND, f"Agent job {job_id} not found", job_id)
                if job.is_terminal:
                    return job
            await asyncio.sleep(self.poll_interval)

    def _finish(self, job: AgentJob) -> AgentJob:
        if job.status == JobStatus.DELIVERED:
            logger.info(f"Agent job {job.job_id} delivered")
            return job
        category = JobStatus.error_category(job.status) or ErrorCategory.UNKNOWN
        message = job.error or f"Agent job {job.job_id} ended with status {job.status}"
        logger.error(f"Agent job {job.job_id} failed [{category.value}]: {message}")
        raise AgentJobError(category, message, job.job_id)
