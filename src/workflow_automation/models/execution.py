"""
工作流执行模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime
from uuid import uuid4


class FailurePolicy(Enum):
    """节点失败后的处理策略"""
    ABORT = "abort"          # 中止整个执行
    CONTINUE = "continue"    # 记录失败结果，继续沿连接执行


@dataclass
class NodeOutcome:
    """节点执行结果：Ok(value) | Fail(error)"""
    ok: bool
    value: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    follow: bool = True  # 是否继续沿连接执行

    @classmethod
    def success(cls, value: Dict[str, Any] = None, follow: bool = True) -> "NodeOutcome":
        return cls(ok=True, value=value, follow=follow)

    @classmethod
    def failure(cls, error: str) -> "NodeOutcome":
        return cls(ok=False, value={"success": False, "error": error}, error=error)

    @classmethod
    def halt(cls) -> "NodeOutcome":
        """终止当前分支"""
        return cls(ok=True, value=None, follow=False)


@dataclass
class ExecutionContext:
    """执行上下文，每次 execute 调用独享一份"""
    workflow_id: int
    domain_id: str
    variables: Dict[str, Any] = field(default_factory=dict)
    current_node_id: Optional[int] = None
    execution_id: str = field(default_factory=lambda: uuid4().hex)
    start_time: datetime = field(default_factory=datetime.now)
    history: List[int] = field(default_factory=list)
    steps: int = 0

    def get_variable(self, key: str, default: Any = None) -> Any:
        """获取变量值"""
        return self.variables.get(key, default)

    def set_variable(self, key: str, value: Any):
        """设置变量值"""
        self.variables[key] = value

    def set_node_result(self, node_id: int, result: Any):
        self.variables[f"node_{node_id}_result"] = result

    def get_node_result(self, node_id: int) -> Optional[Any]:
        return self.variables.get(f"node_{node_id}_result")

    @property
    def elapsed(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()
