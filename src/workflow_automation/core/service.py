"""
工作流服务：生命周期管理、按钮触发与事件绑定
"""
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List, Union

from ..models.workflow import Workflow, WorkflowNode, WorkflowStatus, NodeType, Connection
from ..models.node_config import parse_node_config
from ..exceptions import (
    WorkflowNotFoundError, WorkflowValidationError, NodeExecutionError
)
from ..storage.repository import WorkflowRepository, NodeRepository, TimerRepository
from ..integrations.event_bus import EventBus, Event, TOPIC_WORKFLOW_TRIGGER, TOPIC_WORKFLOW_TIMER
from .executor import WorkflowExecutor
from .scheduler import TimerScheduler
from .parser import WorkflowParser


logger = logging.getLogger(__name__)

_WORKFLOW_FIELDS = {"name", "description", "status", "enabled", "owner"}


class WorkflowService:
    """工作流服务"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        node_repository: NodeRepository,
        timer_repository: TimerRepository,
        executor: WorkflowExecutor,
        scheduler: TimerScheduler,
        event_bus: EventBus,
        parser: Optional[WorkflowParser] = None
    ):
        self.workflow_repository = workflow_repository
        self.node_repository = node_repository
        self.timer_repository = timer_repository
        self.executor = executor
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.parser = parser or WorkflowParser()
        self._bound = False

    # ---- 工作流 ----

    async def create_workflow(
        self,
        domain_id: str,
        name: str,
        owner: Optional[int] = None,
        description: Optional[str] = None,
        enabled: bool = False,
        status: WorkflowStatus = WorkflowStatus.INACTIVE
    ) -> Workflow:
        """创建工作流"""
        if not name:
            raise WorkflowValidationError("Workflow name is required")
        workflow = Workflow(
            domain_id=domain_id,
            workflow_id=await self.workflow_repository.next_workflow_id(domain_id),
            name=name,
            description=description,
            enabled=enabled,
            status=WorkflowStatus(status),
            owner=owner,
        )
        await self.workflow_repository.save(workflow)
        logger.info(f"Created workflow {workflow.workflow_id} '{name}' in domain {domain_id}")
        return workflow

    async def get_workflow(self, domain_id: str, workflow_id: int) -> Workflow:
        """获取工作流，不存在时抛出 WorkflowNotFoundError"""
        workflow = await self.workflow_repository.get(domain_id, workflow_id)
        if not workflow:
            raise WorkflowNotFoundError(domain_id, workflow_id)
        return workflow

    async def update_workflow(self, domain_id: str, workflow_id: int, **fields) -> Workflow:
        """更新工作流字段，启用状态变化时同步定时器"""
        unknown = set(fields) - _WORKFLOW_FIELDS
        if unknown:
            raise WorkflowValidationError(f"Unknown workflow fields: {sorted(unknown)}")
        if "status" in fields:
            fields["status"] = WorkflowStatus(fields["status"])

        before = await self.get_workflow(domain_id, workflow_id)
        workflow = await self.workflow_repository.set(domain_id, workflow_id, fields)
        if workflow.enabled != before.enabled:
            await self._sync_timers(workflow)
        return workflow

    async def set_enabled(self, domain_id: str, workflow_id: int, enabled: bool) -> Workflow:
        """
        启用或停用工作流

        启用时状态置为 active 并注册所有定时器节点；停用时状态置为 inactive 并删除待触发的定时器。
        """
        await self.get_workflow(domain_id, workflow_id)
        status = WorkflowStatus.ACTIVE if enabled else WorkflowStatus.INACTIVE
        workflow = await self.workflow_repository.set(
            domain_id, workflow_id, {"enabled": enabled, "status": status}
        )
        await self._sync_timers(workflow)
        logger.info(f"Workflow {workflow_id} {'enabled' if enabled else 'disabled'}")
        return workflow

    async def delete_workflow(self, domain_id: str, workflow_id: int) -> bool:
        """删除工作流及其节点和定时器"""
        workflow = await self.workflow_repository.get(domain_id, workflow_id)
        if not workflow:
            return False
        await self.scheduler.unregister_timers(domain_id, workflow_id)
        await self.node_repository.delete_by_workflow(domain_id, workflow_id)
        deleted = await self.workflow_repository.delete(domain_id, workflow_id)
        logger.info(f"Deleted workflow {workflow_id} in domain {domain_id}")
        return deleted

    async def delete_domain(self, domain_id: str) -> int:
        """删除域内全部工作流、节点和定时器"""
        workflows = await self.workflow_repository.list(domain_id)
        for workflow in workflows:
            await self.node_repository.delete_by_workflow(domain_id, workflow.workflow_id)
            await self.workflow_repository.delete(domain_id, workflow.workflow_id)
        await self.timer_repository.delete(domain_id)
        logger.info(f"Deleted {len(workflows)} workflows of domain {domain_id}")
        return len(workflows)

    # ---- 节点 ----

    async def add_node(
        self,
        domain_id: str,
        workflow_id: int,
        node_type: str,
        name: str = "",
        config: Optional[Dict[str, Any]] = None,
        connections: Optional[List[Union[Connection, Dict[str, Any]]]] = None,
        position: Optional[Dict[str, float]] = None,
        owner: Optional[int] = None
    ) -> WorkflowNode:
        """添加节点，配置与连接在写入前校验"""
        workflow = await self.get_workflow(domain_id, workflow_id)
        if NodeType.parse(node_type) is None:
            raise WorkflowValidationError(f"Unknown node type: {node_type}")

        node = WorkflowNode(
            domain_id=domain_id,
            workflow_id=workflow_id,
            node_id=await self.node_repository.next_node_id(domain_id, workflow_id),
            node_type=node_type,
            name=name,
            config=parse_node_config(node_type, config).to_dict(),
            connections=self._normalize_connections(connections),
            position=position or {"x": 0, "y": 0},
            owner=owner,
        )
        await self._check_targets(domain_id, workflow_id, node.connections, extra_ids={node.node_id})
        await self.node_repository.save(node)
        logger.info(f"Added {node_type} node {node.node_id} to workflow {workflow_id}")

        if node.type == NodeType.TIMER and workflow.enabled:
            await self.scheduler.register_timers(domain_id, workflow_id)
        return node

    async def update_node(
        self,
        domain_id: str,
        workflow_id: int,
        node_id: int,
        name: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        connections: Optional[List[Union[Connection, Dict[str, Any]]]] = None,
        position: Optional[Dict[str, float]] = None
    ) -> WorkflowNode:
        """更新节点"""
        workflow = await self.get_workflow(domain_id, workflow_id)
        node = await self._get_node(domain_id, workflow_id, node_id)

        patch: Dict[str, Any] = {}
        if name is not None:
            patch["name"] = name
        if config is not None:
            patch["config"] = parse_node_config(node.node_type, config).to_dict()
        if connections is not None:
            patch["connections"] = self._normalize_connections(connections)
            await self._check_targets(domain_id, workflow_id, patch["connections"])
        if position is not None:
            patch["position"] = position

        updated = await self.node_repository.set(domain_id, workflow_id, node_id, patch)
        if updated.type == NodeType.TIMER and "config" in patch and workflow.enabled:
            await self.scheduler.register_timers(domain_id, workflow_id)
        return updated

    async def connect(
        self,
        domain_id: str,
        workflow_id: int,
        source_id: int,
        target_id: int,
        condition: Optional[str] = None
    ) -> WorkflowNode:
        """在两个节点之间添加连接"""
        source = await self._get_node(domain_id, workflow_id, source_id)
        await self._get_node(domain_id, workflow_id, target_id)
        connections = list(source.connections)
        connections.append(Connection(target_node_id=target_id, condition=condition or None))
        return await self.node_repository.set(
            domain_id, workflow_id, source_id, {"connections": connections}
        )

    async def delete_node(self, domain_id: str, workflow_id: int, node_id: int) -> bool:
        """删除节点，同时删除其定时器和指向它的连接"""
        if not await self.node_repository.delete(domain_id, workflow_id, node_id):
            return False
        await self.scheduler.unregister_timers(domain_id, workflow_id, node_id)

        for other in await self.node_repository.list_by_workflow(domain_id, workflow_id):
            kept = [c for c in other.connections if c.target_node_id != node_id]
            if len(kept) != len(other.connections):
                await self.node_repository.set(domain_id, workflow_id, other.node_id, {"connections": kept})
        logger.info(f"Deleted node {node_id} of workflow {workflow_id}")
        return True

    async def import_definition(
        self,
        domain_id: str,
        source: Union[str, Dict[str, Any]],
        owner: Optional[int] = None
    ) -> Workflow:
        """从 YAML / JSON 定义导入工作流"""
        definition = self.parser.parse(source)
        workflow = await self.create_workflow(
            domain_id,
            definition.name,
            owner=owner,
            description=definition.description,
        )

        # 先分配节点ID，再按定义键解析连接
        ids: Dict[str, int] = {}
        for node_def in definition.nodes:
            node = WorkflowNode(
                domain_id=domain_id,
                workflow_id=workflow.workflow_id,
                node_id=await self.node_repository.next_node_id(domain_id, workflow.workflow_id),
                node_type=node_def.node_type,
                name=node_def.name,
                config=node_def.config,
                position=node_def.position,
                owner=owner,
            )
            await self.node_repository.save(node)
            ids[node_def.key] = node.node_id

        for node_def in definition.nodes:
            connections = [
                Connection(target_node_id=ids[edge.target], condition=edge.condition)
                for edge in definition.outgoing(node_def.key)
            ]
            if connections:
                await self.node_repository.set(
                    domain_id, workflow.workflow_id, ids[node_def.key], {"connections": connections}
                )

        logger.info(
            f"Imported workflow {workflow.workflow_id} '{definition.name}' with {len(ids)} nodes"
        )
        if definition.enabled:
            workflow = await self.set_enabled(domain_id, workflow.workflow_id, True)
            if definition.status != WorkflowStatus.ACTIVE:
                workflow = await self.workflow_repository.set(
                    domain_id, workflow.workflow_id, {"status": definition.status}
                )
        return workflow

    # ---- 触发 ----

    async def trigger_workflow(
        self,
        domain_id: str,
        workflow_id: int,
        node_id: Optional[int] = None,
        triggered_by: Optional[int] = None,
        trigger_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        按钮触发工作流

        Raises:
            WorkflowNotFoundError: 工作流不存在
            WorkflowValidationError: 工作流未启用、未激活或没有按钮触发器
        """
        workflow = await self.get_workflow(domain_id, workflow_id)
        if not workflow.enabled:
            raise WorkflowValidationError("Workflow is not enabled")
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowValidationError(
                f"Workflow status is {workflow.status.value}, must be active"
            )

        buttons = await self.node_repository.list_by_workflow(
            domain_id, workflow_id, node_type=NodeType.BUTTON.value
        )
        if not buttons:
            raise WorkflowValidationError("Workflow does not have a button trigger")
        if node_id is not None and node_id not in {b.node_id for b in buttons}:
            logger.warning(f"Button trigger node {node_id} not found in workflow {workflow_id}")

        payload = {
            "triggerType": "button",
            "nodeId": node_id,
            "triggeredBy": triggered_by,
            "triggeredAt": datetime.now().isoformat(),
            **(trigger_data or {}),
        }
        logger.info(f"Triggering workflow {workflow_id} in domain {domain_id} via button trigger")
        self.event_bus.emit(TOPIC_WORKFLOW_TRIGGER, {
            "domainId": domain_id,
            "workflowId": workflow_id,
            "triggerData": payload,
        })
        return {"success": True, "message": "Workflow triggered successfully"}

    async def bind(self):
        """订阅触发事件"""
        if self._bound:
            return
        await self.event_bus.subscribe(TOPIC_WORKFLOW_TRIGGER, self._on_trigger)
        await self.event_bus.subscribe(TOPIC_WORKFLOW_TIMER, self._on_timer)
        self._bound = True

    async def unbind(self):
        if not self._bound:
            return
        await self.event_bus.unsubscribe(TOPIC_WORKFLOW_TRIGGER, self._on_trigger)
        await self.event_bus.unsubscribe(TOPIC_WORKFLOW_TIMER, self._on_timer)
        self._bound = False

    async def _on_trigger(self, event: Event):
        payload = event.payload
        domain_id, workflow_id = payload["domainId"], payload["workflowId"]
        logger.info(f"Workflow trigger event received: workflow {workflow_id} in domain {domain_id}")
        try:
            await self.executor.execute(domain_id, workflow_id, payload.get("triggerData") or {})
        except NodeExecutionError as e:
            logger.error(f"Workflow execution failed: workflow {workflow_id} in domain {domain_id}: {e}")
        except Exception as e:
            logger.error(
                f"Workflow execution failed: workflow {workflow_id} in domain {domain_id}: {e}",
                exc_info=True
            )

    async def _on_timer(self, event: Event):
        payload = event.payload
        domain_id, workflow_id = payload["domainId"], payload["workflowId"]
        logger.info(
            f"Workflow timer event received: workflow {workflow_id}, node {payload.get('nodeId')} "
            f"in domain {domain_id}"
        )
        workflow = await self.workflow_repository.get(domain_id, workflow_id)
        if not workflow:
            logger.warning(f"Workflow {workflow_id} not found in domain {domain_id}")
            return

        trigger_data = {
            **(payload.get("triggerData") or {}),
            "triggerType": "timer",
            "nodeId": payload.get("nodeId"),
        }
        self.event_bus.emit(TOPIC_WORKFLOW_TRIGGER, {
            "domainId": domain_id,
            "workflowId": workflow_id,
            "triggerData": trigger_data,
        })

    # ---- 内部 ----

    async def _sync_timers(self, workflow: Workflow):
        if workflow.enabled:
            await self.scheduler.register_timers(workflow.domain_id, workflow.workflow_id)
        else:
            await self.scheduler.unregister_timers(workflow.domain_id, workflow.workflow_id)

    async def _get_node(self, domain_id: str, workflow_id: int, node_id: int) -> WorkflowNode:
        node = await self.node_repository.get(domain_id, workflow_id, node_id)
        if not node:
            raise WorkflowValidationError(f"Node {node_id} not found in workflow {workflow_id}")
        return node

    @staticmethod
    def _normalize_connections(connections) -> List[Connection]:
        result = []
        for conn in connections or []:
            result.append(conn if isinstance(conn, Connection) else Connection.from_dict(conn))
        return result

    async def _check_targets(
        self,
        domain_id: str,
        workflow_id: int,
        connections: List[Connection],
        extra_ids=frozenset()
    ):
        """连接目标必须是同一工作流中的节点"""
        if not connections:
            return
        existing = {n.node_id for n in await self.node_repository.list_by_workflow(domain_id, workflow_id)}
        existing |= set(extra_ids)
        missing = [c.target_node_id for c in connections if c.target_node_id not in existing]
        if missing:
            raise WorkflowValidationError(
                f"Connection targets {missing} do not exist in workflow {workflow_id}"
            )
