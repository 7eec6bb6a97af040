"""
工作流定义模型
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from enum import Enum
from datetime import datetime


class WorkflowStatus(Enum):
    """工作流状态"""
    INACTIVE = "inactive"
    ACTIVE = "active"


class NodeType(Enum):
    """节点类型"""
    START = "start"
    END = "end"
    TIMER = "timer"
    BUTTON = "button"
    DEVICE_CONTROL = "device_control"
    OBJECT_ACTION = "object_action"
    AGENT_MESSAGE = "agent_message"
    AGENT_ACTION = "agent_action"
    CONDITION = "condition"
    DELAY = "delay"
    RECEIVER = "receiver"

    @classmethod
    def parse(cls, value: str) -> Optional["NodeType"]:
        """解析节点类型，未知类型返回 None"""
        try:
            return cls(value)
        except ValueError:
            return None



@dataclass
class Connection:
    """节点连接（有向边）"""
    target_node_id: int
    condition: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"targetNodeId": self.target_node_id}
        if self.condition:
            data["condition"] = self.condition
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connection":
        target = data.get("targetNodeId", data.get("target_node_id"))
        if target is None:
            raise ValueError("Connection requires targetNodeId")
        return cls(target_node_id=int(target), condition=data.get("condition") or None)


@dataclass
class WorkflowNode:
    """工作流节点"""
    domain_id: str
    workflow_id: int
    node_id: int
    node_type: str
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    connections: List[Connection] = field(default_factory=list)
    position: Dict[str, float] = field(default_factory=lambda: {"x": 0, "y": 0})
    owner: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def type(self) -> Optional[NodeType]:
        """节点类型枚举，未知类型为 None"""
        return NodeType.parse(self.node_type)


@dataclass
class Workflow:
    """工作流定义"""
    domain_id: str
    workflow_id: int
    name: str
    description: Optional[str] = None
    enabled: bool = False
    status: WorkflowStatus = WorkflowStatus.INACTIVE
    owner: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        """启用且处于 active 状态"""
        return self.enabled and self.status == WorkflowStatus.ACTIVE
