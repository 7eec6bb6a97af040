"""Storage and repository interfaces"""

from .repository import (
    WorkflowRepository,
    NodeRepository,
    TimerRepository,
    InMemoryWorkflowRepository,
    InMemoryNodeRepository,
    InMemoryTimerRepository
)

__all__ = [
    "WorkflowRepository",
    "NodeRepository",
    "TimerRepository",
    "InMemoryWorkflowRepository",
    "InMemoryNodeRepository",
    "InMemoryTimerRepository"
]
