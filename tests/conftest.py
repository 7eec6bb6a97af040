"""
Pytest 配置和公共 fixtures
"""
import pytest
from datetime import datetime
from typing import AsyncGenerator

from workflow_automation.core import (
    WorkflowExecutor, TimerScheduler, AgentTaskBridge, WorkflowService
)
from workflow_automation.models import Workflow, WorkflowNode, WorkflowStatus, Connection
from workflow_automation.storage import (
    InMemoryWorkflowRepository, InMemoryNodeRepository, InMemoryTimerRepository
)
from workflow_automation.storage.sqlalchemy_repository import DatabaseManager
from workflow_automation.integrations import (
    EventBus,
    InMemoryDeviceRegistry,
    RecordingDeviceChannel,
    InMemoryAgentRegistry,
    InMemoryToolCatalog,
    InMemoryAgentTaskQueue,
    InMemoryClientChannel
)


DOMAIN = "home"


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def workflow_repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def node_repo() -> InMemoryNodeRepository:
    return InMemoryNodeRepository()


@pytest.fixture
def timer_repo() -> InMemoryTimerRepository:
    return InMemoryTimerRepository()


@pytest.fixture
def devices() -> InMemoryDeviceRegistry:
    return InMemoryDeviceRegistry()


@pytest.fixture
def device_channel() -> RecordingDeviceChannel:
    return RecordingDeviceChannel()


@pytest.fixture
def agents() -> InMemoryAgentRegistry:
    return InMemoryAgentRegistry()


@pytest.fixture
def tools() -> InMemoryToolCatalog:
    return InMemoryToolCatalog()


@pytest.fixture
def clients() -> InMemoryClientChannel:
    return InMemoryClientChannel()


@pytest.fixture
def agent_responses():
    """智能体回复表：agent_id -> 回复内容、(内容, 是否已语音推送) 或异常"""
    return {}


@pytest.fixture
def task_queue(event_bus, agent_responses) -> InMemoryAgentTaskQueue:
    def responder(spec):
        response = agent_responses.get(spec.agent_id, f"reply from {spec.agent_id}")
        if isinstance(response, Exception):
            raise response
        return response

    return InMemoryAgentTaskQueue(event_bus=event_bus, responder=responder)


@pytest.fixture
def bridge(task_queue, event_bus) -> AgentTaskBridge:
    return AgentTaskBridge(task_queue, event_bus, timeout=5.0, poll_interval=0.05)


@pytest.fixture
def executor(workflow_repo, node_repo, devices, device_channel, agents, tools, bridge, clients) -> WorkflowExecutor:
    return WorkflowExecutor(
        workflow_repository=workflow_repo,
        node_repository=node_repo,
        device_registry=devices,
        device_channel=device_channel,
        agent_registry=agents,
        tool_catalog=tools,
        agent_bridge=bridge,
        client_channel=clients,
        max_execution_steps=50
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 10, 8, 0, 0))


@pytest.fixture
def scheduler(workflow_repo, node_repo, timer_repo, event_bus, clock) -> TimerScheduler:
    return TimerScheduler(
        workflow_repository=workflow_repo,
        node_repository=node_repo,
        timer_repository=timer_repo,
        event_bus=event_bus,
        poll_interval=0.01,
        error_backoff=0.05,
        clock=clock
    )


@pytest.fixture
def service(workflow_repo, node_repo, timer_repo, executor, scheduler, event_bus) -> WorkflowService:
    return WorkflowService(
        workflow_repository=workflow_repo,
        node_repository=node_repo,
        timer_repository=timer_repo,
        executor=executor,
        scheduler=scheduler,
        event_bus=event_bus
    )


@pytest.fixture
def build_graph(workflow_repo, node_repo):
    """
    直接写入仓库构建工作流图

    nodes: [(node_id, node_type, config, [target 或 (target, condition)])]
    """
    async def _build(nodes, workflow_id: int = 1, enabled: bool = True):
        await workflow_repo.save(Workflow(
            domain_id=DOMAIN,
            workflow_id=workflow_id,
            name=f"workflow {workflow_id}",
            enabled=enabled,
            status=WorkflowStatus.ACTIVE if enabled else WorkflowStatus.INACTIVE,
        ))
        for node_id, node_type, config, targets in nodes:
            connections = []
            for target in targets:
                if isinstance(target, tuple):
                    connections.append(Connection(target_node_id=target[0], condition=target[1]))
                else:
                    connections.append(Connection(target_node_id=target))
            await node_repo.save(WorkflowNode(
                domain_id=DOMAIN,
                workflow_id=workflow_id,
                node_id=node_id,
                node_type=node_type,
                config=config,
                connections=connections,
            ))
        return workflow_id

    return _build


@pytest.fixture
async def database() -> AsyncGenerator[DatabaseManager, None]:
    """内存 SQLite 数据库"""
    db = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()
