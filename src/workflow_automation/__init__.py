"""
Workflow Automation - 工作流自动化引擎
"""

__version__ = "0.1.0"

from .config import EngineSettings
from .core.executor import WorkflowExecutor
from .core.scheduler import TimerScheduler
from .core.agent_bridge import AgentTaskBridge
from .core.service import WorkflowService
from .core.parser import WorkflowParser
from .models.workflow import Workflow, WorkflowNode, Connection, NodeType, WorkflowStatus
from .models.execution import ExecutionContext

__all__ = [
    "EngineSettings",
    "WorkflowExecutor",
    "TimerScheduler",
    "AgentTaskBridge",
    "WorkflowService",
    "WorkflowParser",
    "Workflow",
    "WorkflowNode",
    "Connection",
    "NodeType",
    "WorkflowStatus",
    "ExecutionContext"
]
