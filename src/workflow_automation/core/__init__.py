"""Core workflow automation components"""

from .variables import VariableResolver
from .conditions import ConditionEvaluator
from .agent_bridge import AgentTaskBridge, categorize_error, score_penalty, score_for
from .executor import WorkflowExecutor, NodeExecutor
from .scheduler import TimerScheduler, Leadership, StaticLeadership, compute_execute_after
from .parser import WorkflowParser, WorkflowDefinition
from .service import WorkflowService

__all__ = [
    "VariableResolver",
    "ConditionEvaluator",
    "AgentTaskBridge",
    "categorize_error",
    "score_penalty",
    "score_for",
    "WorkflowExecutor",
    "NodeExecutor",
    "TimerScheduler",
    "Leadership",
    "StaticLeadership",
    "compute_execute_after",
    "WorkflowParser",
    "WorkflowDefinition",
    "WorkflowService"
]
