"""
存储仓库接口定义
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from ..models.workflow import Workflow, WorkflowNode, WorkflowStatus
from ..models.timer import WorkflowTimer


class WorkflowRepository(ABC):
    """工作流存储仓库接口"""

    @abstractmethod
    async def next_workflow_id(self, domain_id: str) -> int:
        """生成域内下一个工作流ID"""
        pass

    @abstractmethod
    async def save(self, workflow: Workflow) -> int:
        """保存工作流"""
        pass

    @abstractmethod
    async def get(self, domain_id: str, workflow_id: int) -> Optional[Workflow]:
        """获取工作流"""
        pass

    @abstractmethod
    async def list(self, domain_id: str, filters: Dict[str, Any] = None) -> List[Workflow]:
        """列出工作流"""
        pass

    @abstractmethod
    async def list_domains(self) -> List[str]:
        """列出所有存在工作流的域"""
        pass

    @abstractmethod
    async def set(self, domain_id: str, workflow_id: int, patch: Dict[str, Any]) -> Optional[Workflow]:
        """更新工作流字段"""
        pass

    @abstractmethod
    async def delete(self, domain_id: str, workflow_id: int) -> bool:
        """删除工作流"""
        pass

    async def list_active(self, domain_id: str) -> List[Workflow]:
        """列出启用且状态为 active 的工作流"""
        return await self.list(domain_id, {"enabled": True, "status": WorkflowStatus.ACTIVE})


class NodeRepository(ABC):
    """工作流节点存储仓库接口"""

    @abstractmethod
    async def next_node_id(self, domain_id: str, workflow_id: int) -> int:
        """生成工作流内下一个节点ID"""
        pass

    @abstractmethod
    async def save(self, node: WorkflowNode) -> int:
        """保存节点"""
        pass

    @abstractmethod
    async def get(self, domain_id: str, workflow_id: int, node_id: int) -> Optional[WorkflowNode]:
        """获取节点"""
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        domain_id: str,
        workflow_id: int,
        node_type: Optional[str] = None
    ) -> List[WorkflowNode]:
        """列出工作流的节点"""
        pass

    @abstractmethod
    async def set(
        self,
        domain_id: str,
        workflow_id: int,
        node_id: int,
        patch: Dict[str, Any]
    ) -> Optional[WorkflowNode]:
        """更新节点字段"""
        pass

    @abstractmethod
    async def delete(self, domain_id: str, workflow_id: int, node_id: int) -> bool:
        """删除节点"""
        pass

    @abstractmethod
    async def delete_by_workflow(self, domain_id: str, workflow_id: int) -> int:
        """删除工作流的全部节点"""
        pass


class TimerRepository(ABC):
    """定时器存储仓库接口"""

    @abstractmethod
    async def add(self, timer: WorkflowTimer) -> WorkflowTimer:
        """添加定时器"""
        pass

    @abstractmethod
    async def get_by_node(self, domain_id: str, workflow_id: int, node_id: int) -> Optional[WorkflowTimer]:
        """获取节点的定时器"""
        pass

    @abstractmethod
    async def list_by_workflow(self, domain_id: str, workflow_id: int) -> List[WorkflowTimer]:
        """列出工作流的定时器"""
        pass

    @abstractmethod
    async def count(self, domain_id: Optional[str] = None) -> int:
        """统计定时器数量"""
        pass

    @abstractmethod
    async def delete(
        self,
        domain_id: str,
        workflow_id: Optional[int] = None,
        node_id: Optional[int] = None
    ) -> int:
        """按域 / 工作流 / 节点删除定时器"""
        pass

    @abstractmethod
    async def claim_due(self, now: datetime) -> Optional[WorkflowTimer]:
        """
        原子地认领一个到期定时器

        删除 execute_after < now 的最早一条记录并返回；若该记录带有循环间隔，
        在同一原子操作内插入 execute_after 推进一个间隔后的新记录。
        并发调用方（包括跨进程）不会认领到同一条记录。
        """
        pass


# 内存实现（用于测试）
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[Tuple[str, int], Workflow] = {}
        self._lock = asyncio.Lock()

    async def next_workflow_id(self, domain_id: str) -> int:
        ids = [wid for (did, wid) in self.workflows if did == domain_id]
        return max(ids, default=0) + 1

    async def save(self, workflow: Workflow) -> int:
        async with self._lock:
            self.workflows[(workflow.domain_id, workflow.workflow_id)] = copy.deepcopy(workflow)
        return workflow.workflow_id

    async def get(self, domain_id: str, workflow_id: int) -> Optional[Workflow]:
        workflow = self.workflows.get((domain_id, workflow_id))
        return copy.deepcopy(workflow) if workflow else None

    async def list(self, domain_id: str, filters: Dict[str, Any] = None) -> List[Workflow]:
        results = []
        for (did, _), workflow in sorted(self.workflows.items()):
            if did != domain_id:
                continue
            if filters and any(getattr(workflow, k) != v for k, v in filters.items()):
                continue
            results.append(copy.deepcopy(workflow))
        return results

    async def list_domains(self) -> List[str]:
        return sorted({did for (did, _) in self.workflows})

    async def set(self, domain_id: str, workflow_id: int, patch: Dict[str, Any]) -> Optional[Workflow]:
        async with self._lock:
            workflow = self.workflows.get((domain_id, workflow_id))
            if not workflow:
                return None
            for key, value in patch.items():
                setattr(workflow, key, value)
            workflow.updated_at = datetime.now()
            return copy.deepcopy(workflow)

    async def delete(self, domain_id: str, workflow_id: int) -> bool:
        async with self._lock:
            return self.workflows.pop((domain_id, workflow_id), None) is not None


class InMemoryNodeRepository(NodeRepository):
    """内存节点仓库实现"""

    def __init__(self):
        self.nodes: Dict[Tuple[str, int, int], WorkflowNode] = {}
        self._lock = asyncio.Lock()

    async def next_node_id(self, domain_id: str, workflow_id: int) -> int:
        ids = [nid for (did, wid, nid) in self.nodes if did == domain_id and wid == workflow_id]
        return max(ids, default=0) + 1

    async def save(self, node: WorkflowNode) -> int:
        async with self._lock:
            self.nodes[(node.domain_id, node.workflow_id, node.node_id)] = copy.deepcopy(node)
        return node.node_id

    async def get(self, domain_id: str, workflow_id: int, node_id: int) -> Optional[WorkflowNode]:
        node = self.nodes.get((domain_id, workflow_id, node_id))
        return copy.deepcopy(node) if node else None

    async def list_by_workflow(
        self,
        domain_id: str,
        workflow_id: int,
        node_type: Optional[str] = None
    ) -> List[WorkflowNode]:
        return [
            copy.deepcopy(node)
            for (did, wid, _), node in sorted(self.nodes.items())
            if did == domain_id and wid == workflow_id
            and (node_type is None or node.node_type == node_type)
        ]

    async def set(
        self,
        domain_id: str,
        workflow_id: int,
        node_id: int,
        patch: Dict[str, Any]
    ) -> Optional[WorkflowNode]:
        async with self._lock:
            node = self.nodes.get((domain_id, workflow_id, node_id))
            if not node:
                return None
            for key, value in patch.items():
                setattr(node, key, copy.deepcopy(value))
            node.updated_at = datetime.now()
            return copy.deepcopy(node)

    async def delete(self, domain_id: str, workflow_id: int, node_id: int) -> bool:
        async with self._lock:
            return self.nodes.pop((domain_id, workflow_id, node_id), None) is not None

    async def delete_by_workflow(self, domain_id: str, workflow_id: int) -> int:
        async with self._lock:
            keys = [k for k in self.nodes if k[0] == domain_id and k[1] == workflow_id]
            for key in keys:
                del self.nodes[key]
            return len(keys)


class InMemoryTimerRepository(TimerRepository):
    """内存定时器仓库实现，认领操作由锁保证原子性"""

    def __init__(self):
        self.timers: Dict[Tuple[str, int, int], WorkflowTimer] = {}
        self._lock = asyncio.Lock()

    async def add(self, timer: WorkflowTimer) -> WorkflowTimer:
        async with self._lock:
            if timer.key in self.timers:
                raise ValueError(f"Timer already exists for node {timer.key}")
            self.timers[timer.key] = copy.deepcopy(timer)
        return timer

    async def get_by_node(self, domain_id: str, workflow_id: int, node_id: int) -> Optional[WorkflowTimer]:
        timer = self.timers.get((domain_id, workflow_id, node_id))
        return copy.deepcopy(timer) if timer else None

    async def list_by_workflow(self, domain_id: str, workflow_id: int) -> List[WorkflowTimer]:
        return [
            copy.deepcopy(t) for k, t in sorted(self.timers.items())
            if k[0] == domain_id and k[1] == workflow_id
        ]

    async def count(self, domain_id: Optional[str] = None) -> int:
        return sum(1 for k in self.timers if domain_id is None or k[0] == domain_id)

    async def delete(
        self,
        domain_id: str,
        workflow_id: Optional[int] = None,
        node_id: Optional[int] = None
    ) -> int:
        async with self._lock:
            keys = [
                k for k in self.timers
                if k[0] == domain_id
                and (workflow_id is None or k[1] == workflow_id)
                and (node_id is None or k[2] == node_id)
            ]
            for key in keys:
                del self.timers[key]
            return len(keys)

    async def claim_due(self, now: datetime) -> Optional[WorkflowTimer]:
        async with self._lock:
            due = [t for t in self.timers.values() if t.is_due(now)]
            if not due:
                return None
            timer = min(due, key=lambda t: t.execute_after)
            del self.timers[timer.key]
            rearmed = timer.rearmed(now)
            if rearmed:
                self.timers[rearmed.key] = rearmed
            return copy.deepcopy(timer)
