"""External collaborators: event bus, devices, agents and client channels"""

from .event_bus import (
    EventBus, Event,
    TOPIC_WORKFLOW_TRIGGER, TOPIC_WORKFLOW_TIMER, TOPIC_TIMER_REGISTERED, TOPIC_AGENT_JOB_STATUS
)
from .devices import (
    Device, HostNode, DeviceRegistry, DeviceControlChannel,
    InMemoryDeviceRegistry, RecordingDeviceChannel
)
from .agents import (
    ErrorCategory, JobStatus, categorize_error, AgentDefinition, ToolInfo, AgentJobSpec, AgentJob,
    AgentRegistry, ToolCatalog, AgentTaskQueue,
    InMemoryAgentRegistry, InMemoryToolCatalog, InMemoryAgentTaskQueue
)
from .clients import ClientChannel, InMemoryClientChannel

__all__ = [
    "EventBus",
    "Event",
    "TOPIC_WORKFLOW_TRIGGER",
    "TOPIC_WORKFLOW_TIMER",
    "TOPIC_TIMER_REGISTERED",
    "TOPIC_AGENT_JOB_STATUS",
    "Device",
    "HostNode",
    "DeviceRegistry",
    "DeviceControlChannel",
    "InMemoryDeviceRegistry",
    "RecordingDeviceChannel",
    "ErrorCategory",
    "JobStatus",
    "categorize_error",
    "AgentDefinition",
    "ToolInfo",
    "AgentJobSpec",
    "AgentJob",
    "AgentRegistry",
    "ToolCatalog",
    "AgentTaskQueue",
    "InMemoryAgentRegistry",
    "InMemoryToolCatalog",
    "InMemoryAgentTaskQueue",
    "ClientChannel",
    "InMemoryClientChannel",
]
