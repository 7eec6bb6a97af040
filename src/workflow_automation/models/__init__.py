"""Workflow, node, timer and execution models"""

from .workflow import (
    Workflow, WorkflowNode, Connection, NodeType, WorkflowStatus
)
from .timer import WorkflowTimer, TimerInterval, TimerUnit
from .execution import ExecutionContext, NodeOutcome, FailurePolicy
from .node_config import (
    NodeConfig, TimerConfig, DeviceControlConfig, DeviceAction, AgentConfig,
    ReturnMode, ConditionConfig, DelayConfig, ReceiverConfig, parse_node_config
)

__all__ = [
    "Workflow",
    "WorkflowNode",
    "Connection",
    "NodeType",
    "WorkflowStatus",
    "WorkflowTimer",
    "TimerInterval",
    "TimerUnit",
    "ExecutionContext",
    "NodeOutcome",
    "FailurePolicy",
    "NodeConfig",
    "TimerConfig",
    "DeviceControlConfig",
    "DeviceAction",
    "AgentConfig",
    "ReturnMode",
    "ConditionConfig",
    "DelayConfig",
    "ReceiverConfig",
    "parse_node_config",
]
