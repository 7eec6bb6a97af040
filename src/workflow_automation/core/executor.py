"""
工作流执行器
"""
import asyncio
import logging
import re
from typing import Dict, Any, Optional, List, Iterator, Tuple

from ..models.workflow import WorkflowNode, NodeType, Connection
from ..models.execution import ExecutionContext, NodeOutcome, FailurePolicy
from ..models.node_config import (
    parse_node_config, DeviceControlConfig, DeviceAction, AgentConfig, ReturnMode,
    ConditionConfig, DelayConfig, ReceiverConfig
)
from ..exceptions import (
    GraphResolutionError, NodeExecutionError, ExecutionBudgetExceededError,
    UnknownNodeTypeError, WorkflowExecutionError
)
from ..storage.repository import WorkflowRepository, NodeRepository
from ..integrations.devices import DeviceRegistry, DeviceControlChannel
from ..integrations.agents import AgentRegistry, ToolCatalog, AgentJobSpec
from ..integrations.clients import ClientChannel
from .variables import VariableResolver
from .conditions import ConditionEvaluator
from .agent_bridge import AgentTaskBridge


logger = logging.getLogger(__name__)

AGENT_CONTENT_KEY = re.compile(r"^agent_(\d+)_content$")
NODE_RESULT_KEY = re.compile(r"^node_(\d+)_result$")

DEFAULT_MAX_EXECUTION_STEPS = 1000


class NodeExecutor:
    """节点执行器基类"""

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        """执行节点"""
        raise NotImplementedError


class StartNodeExecutor(NodeExecutor):
    """开始节点"""

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        return NodeOutcome.success({"success": True, "message": "Workflow started"})


class TriggerNodeExecutor(NodeExecutor):
    """定时器 / 按钮节点，仅作为入口"""

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        return NodeOutcome.success({"success": True})


class EndNodeExecutor(NodeExecutor):
    """结束节点，终止当前分支"""

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        logger.info(f"Workflow {context.workflow_id} reached end node {node.node_id}")
        return NodeOutcome.halt()


class DeviceActionNodeExecutor(NodeExecutor):
    """设备控制 / 对象操作节点"""

    def __init__(
        self,
        device_registry: Optional[DeviceRegistry],
        device_channel: Optional[DeviceControlChannel],
        resolver: VariableResolver
    ):
        self.device_registry = device_registry
        self.device_channel = device_channel
        self.resolver = resolver

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        config: DeviceControlConfig = parse_node_config(node.node_type, node.config)
        if not self.device_registry:
            raise WorkflowExecutionError("Device registry is not configured")

        device_id = str(self.resolver.resolve(config.device_id, context.variables))
        if not device_id:
            raise WorkflowExecutionError("Device ID is required")

        if config.node_id is not None:
            host = await self.device_registry.get_host_node(context.domain_id, config.node_id)
            if not host:
                raise WorkflowExecutionError(f"Node {config.node_id} not found")
            device = await self.device_registry.find_on_host(host, device_id)
        else:
            device = await self.device_registry.find_by_device_id(device_id)

        if not device:
            raise WorkflowExecutionError(f"Device {device_id} not found")

        prop = config.property
        new_state = dict(device.state)
        if config.action == DeviceAction.OFF:
            new_state[prop] = False
        elif config.action == DeviceAction.ON:
            new_state[prop] = True
        elif config.action == DeviceAction.TOGGLE:
            new_state[prop] = not device.state.get(prop)
        elif config.action == DeviceAction.SET and config.value is not None:
            new_state[prop] = self.resolver.resolve(config.value, context.variables)

        command = {prop: new_state.get(prop)}
        if self.device_channel:
            try:
                await self.device_channel.send_command(device.host_ref, device_id, command)
                logger.info(f"Device command sent: host={device.host_ref}, device={device_id}, command={command}")
            except Exception as e:
                logger.error(f"Failed to send device command for {device_id}: {e}")
        else:
            logger.warning("Device control channel not available, only updating stored state")

        await self.device_registry.update_state(device, new_state)
        logger.info(f"Device {device_id} {prop} set to {new_state.get(prop)}")

        return NodeOutcome.success({
            "success": True,
            "deviceId": device_id,
            "action": config.action.value,
            "property": prop,
            "newState": new_state.get(prop),
        })


class AgentNodeExecutor(NodeExecutor):
    """智能体节点"""

    def __init__(
        self,
        agent_registry: Optional[AgentRegistry],
        tool_catalog: Optional[ToolCatalog],
        bridge: Optional[AgentTaskBridge],
        resolver: VariableResolver
    ):
        self.agent_registry = agent_registry
        self.tool_catalog = tool_catalog
        self.bridge = bridge
        self.resolver = resolver

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        config: AgentConfig = parse_node_config(node.node_type, node.config)
        if not self.agent_registry or not self.bridge:
            raise WorkflowExecutionError("Agent integration is not configured")

        agent_id = str(self.resolver.resolve(config.agent_id, context.variables))
        prompt = self.resolver.resolve(config.prompt_template, context.variables)
        if not prompt:
            raise WorkflowExecutionError("Prompt is required for agent node")

        agent = await self.agent_registry.get(context.domain_id, agent_id)
        if not agent:
            raise WorkflowExecutionError(f"Agent {agent_id} not found")

        client_id = None
        if config.return_mode == ReturnMode.AUDIO and config.client_id is not None:
            client_id = int(self.resolver.resolve(config.client_id, context.variables))

        spec = AgentJobSpec(
            domain_id=context.domain_id,
            agent_id=agent_id,
            system_prompt=await self.build_system_prompt(context.domain_id, agent),
            user_prompt=prompt,
            tool_ids=list(agent.tool_ids),
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            node_id=node.node_id,
            client_id=client_id,
        )
        logger.info(f"Using agent {agent_id} for node {node.node_id}")
        job = await self.bridge.run(spec)

        content = job.content or ""
        context.set_variable(f"agent_{node.node_id}_content", content)
        if job.audio_streamed:
            context.set_variable(f"agent_{node.node_id}_tts_streamed", True)

        return NodeOutcome.success({
            "success": True,
            "agentId": agent_id,
            "content": content,
            "jobId": job.job_id,
        })

    async def build_system_prompt(self, domain_id: str, agent) -> str:
        """人设 + 记忆 + 工具目录"""
        system_prompt = agent.persona or ""
        if agent.memory:
            system_prompt += f"\n\nMemory:\n{agent.memory}"
        if agent.tool_ids and self.tool_catalog:
            tools = await self.tool_catalog.get_tools(domain_id, agent.tool_ids)
            if tools:
                lines = "\n".join(f"- {t.name}: {t.description}" for t in tools)
                system_prompt += f"\n\nAvailable tools:\n{lines}"
        return system_prompt


class ConditionNodeExecutor(NodeExecutor):
    """条件节点，出边过滤由执行器负责"""

    def __init__(self, evaluator: ConditionEvaluator):
        self.evaluator = evaluator

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        config: ConditionConfig = parse_node_config(node.node_type, node.config)
        met = self.evaluator.evaluate(config.condition, context.variables)
        return NodeOutcome.success({"success": True, "conditionMet": met})


class DelayNodeExecutor(NodeExecutor):
    """延迟节点"""

    def __init__(self, resolver: VariableResolver):
        self.resolver = resolver

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        config: DelayConfig = parse_node_config(node.node_type, node.config)
        raw = self.resolver.resolve(config.delay_ms, context.variables)
        try:
            delay_ms = float(raw) if raw not in (None, "") else 0
        except (TypeError, ValueError):
            raise WorkflowExecutionError(f"Invalid delay value: {raw!r}")

        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

        delay_ms = int(delay_ms) if float(delay_ms).is_integer() else delay_ms
        return NodeOutcome.success({"success": True, "delayMs": delay_ms})


class ReceiverNodeExecutor(NodeExecutor):
    """接收者节点：将最近的智能体输出投递给客户端"""

    def __init__(self, client_channel: Optional[ClientChannel], resolver: VariableResolver):
        self.client_channel = client_channel
        self.resolver = resolver

    async def execute(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        config: ReceiverConfig = parse_node_config(node.node_type, node.config)
        raw_client = self.resolver.resolve(config.client_id, context.variables)
        try:
            client_id = int(str(raw_client))
        except ValueError:
            raise WorkflowExecutionError(f"Invalid client ID: {raw_client!r}")
        if not client_id:
            raise WorkflowExecutionError("Client ID is required for receiver node")

        source_node, content = self.find_content(context.variables)
        if not content:
            raise WorkflowExecutionError(
                "No content found to send, an agent node must run before the receiver node"
            )

        if source_node is not None and context.get_variable(f"agent_{source_node}_tts_streamed"):
            logger.info(f"Content of agent node {source_node} already streamed, skipping delivery")
            return NodeOutcome.success({
                "success": True,
                "clientId": client_id,
                "content": content,
                "delivered": False,
            })

        if not self.client_channel:
            raise WorkflowExecutionError("Client channel is not configured")
        if not await self.client_channel.has_client(context.domain_id, client_id):
            raise WorkflowExecutionError(f"Client {client_id} not found")

        logger.info(f"Sending text to client {client_id}: {content[:50]}")
        await self.client_channel.deliver(context.domain_id, client_id, {"text": content})

        return NodeOutcome.success({
            "success": True,
            "clientId": client_id,
            "content": content,
            "delivered": True,
        })

    @staticmethod
    def find_content(variables: Dict[str, Any]) -> Tuple[Optional[int], str]:
        """
        查找待投递内容

        优先取编号最大的 agent_<n>_content，否则取第一个带 content 的节点结果。
        返回 (智能体节点编号, 内容)。
        """
        latest, content = 0, ""
        for key, value in variables.items():
            match = AGENT_CONTENT_KEY.match(key)
            if match and int(match.group(1)) > latest:
                latest, content = int(match.group(1)), value
        if content:
            return latest, str(content)

        for key, value in variables.items():
            if NODE_RESULT_KEY.match(key) and isinstance(value, dict) and value.get("content"):
                return None, str(value["content"])
        return None, ""


# 节点失败策略：已知类型中止执行，未知类型记录失败后继续
FAILURE_POLICIES: Dict[NodeType, FailurePolicy] = {t: FailurePolicy.ABORT for t in NodeType}
UNKNOWN_TYPE_POLICY = FailurePolicy.CONTINUE


class WorkflowExecutor:
    """工作流执行器：从入口节点出发，按连接深度优先遍历"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        node_repository: NodeRepository,
        device_registry: Optional[DeviceRegistry] = None,
        device_channel: Optional[DeviceControlChannel] = None,
        agent_registry: Optional[AgentRegistry] = None,
        tool_catalog: Optional[ToolCatalog] = None,
        agent_bridge: Optional[AgentTaskBridge] = None,
        client_channel: Optional[ClientChannel] = None,
        max_execution_steps: int = DEFAULT_MAX_EXECUTION_STEPS
    ):
        self.workflow_repository = workflow_repository
        self.node_repository = node_repository
        self.resolver = VariableResolver()
        self.evaluator = ConditionEvaluator()
        self.max_execution_steps = max_execution_steps

        trigger = TriggerNodeExecutor()
        device = DeviceActionNodeExecutor(device_registry, device_channel, self.resolver)
        agent = AgentNodeExecutor(agent_registry, tool_catalog, agent_bridge, self.resolver)
        self.executors: Dict[NodeType, NodeExecutor] = {
            NodeType.START: StartNodeExecutor(),
            NodeType.END: EndNodeExecutor(),
            NodeType.TIMER: trigger,
            NodeType.BUTTON: trigger,
            NodeType.DEVICE_CONTROL: device,
            NodeType.OBJECT_ACTION: device,
            NodeType.AGENT_MESSAGE: agent,
            NodeType.AGENT_ACTION: agent,
            NodeType.CONDITION: ConditionNodeExecutor(self.evaluator),
            NodeType.DELAY: DelayNodeExecutor(self.resolver),
            NodeType.RECEIVER: ReceiverNodeExecutor(client_channel, self.resolver),
        }

    async def execute(
        self,
        domain_id: str,
        workflow_id: int,
        trigger_data: Optional[Dict[str, Any]] = None
    ) -> Optional[ExecutionContext]:
        """
        执行工作流

        Args:
            domain_id: 域ID
            workflow_id: 工作流ID
            trigger_data: 触发数据，包含 nodeId 时以该节点为入口

        Returns:
            ExecutionContext: 执行上下文；入口无法解析时返回 None

        Raises:
            NodeExecutionError: 节点执行失败，剩余遍历中止
        """
        trigger_data = dict(trigger_data or {})
        try:
            nodes = await self._load_graph(domain_id, workflow_id)
            entry = self._resolve_entry(workflow_id, nodes, trigger_data)
        except GraphResolutionError as e:
            logger.warning(str(e))
            return None

        context = ExecutionContext(
            workflow_id=workflow_id,
            domain_id=domain_id,
            variables=trigger_data,
        )
        logger.info(
            f"Starting workflow execution: {workflow_id}, executionId: {context.execution_id}, "
            f"from node: {entry.node_id} ({entry.node_type})"
        )

        await self._walk(entry, nodes, context)

        logger.info(
            f"Workflow execution {context.execution_id} finished after {context.steps} steps "
            f"in {context.elapsed:.3f}s"
        )
        return context

    async def execute_node(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutcome:
        """执行单个节点并记录结果"""
        context.current_node_id = node.node_id
        logger.info(f"Executing node: {node.node_id} ({node.node_type}) in workflow {context.workflow_id}")

        executor = self.executors.get(node.type)
        if executor is None:
            error = UnknownNodeTypeError(node.node_type)
            logger.warning(str(error))
            outcome = NodeOutcome.failure(str(error))
        else:
            outcome = await executor.execute(node, context)

        if outcome.value is not None:
            context.set_node_result(node.node_id, outcome.value)
        return outcome

    async def _load_graph(self, domain_id: str, workflow_id: int) -> Dict[int, WorkflowNode]:
        workflow = await self.workflow_repository.get(domain_id, workflow_id)
        if not workflow:
            raise GraphResolutionError(f"Workflow {workflow_id} not found in domain {domain_id}")
        nodes = await self.node_repository.list_by_workflow(domain_id, workflow_id)
        return {node.node_id: node for node in nodes}

    def _resolve_entry(
        self,
        workflow_id: int,
        nodes: Dict[int, WorkflowNode],
        trigger_data: Dict[str, Any]
    ) -> WorkflowNode:
        """解析入口节点"""
        if trigger_data.get("nodeId") is not None:
            try:
                node_id = int(trigger_data["nodeId"])
            except (TypeError, ValueError):
                raise GraphResolutionError(f"Invalid trigger node id: {trigger_data['nodeId']!r}")
            node = nodes.get(node_id)
            if not node:
                raise GraphResolutionError(
                    f"Trigger node {node_id} does not belong to workflow {workflow_id}"
                )
            return node

        starts = sorted(
            (n for n in nodes.values() if n.type == NodeType.START),
            key=lambda n: n.node_id
        )
        if not starts:
            raise GraphResolutionError(
                f"Workflow {workflow_id} has no start node and no trigger node specified"
            )
        if len(starts) > 1:
            logger.warning(
                f"Workflow {workflow_id} has {len(starts)} start nodes, using node {starts[0].node_id}"
            )
        return starts[0]

    async def _walk(self, entry: WorkflowNode, nodes: Dict[int, WorkflowNode], context: ExecutionContext):
        """
        深度优先遍历

        使用显式栈保存每个节点尚未处理的出边，访问顺序与递归实现一致。
        条件节点上带条件的出边在访问目标前即时求值。
        """
        stack: List[Tuple[WorkflowNode, Iterator[Connection]]] = []
        if await self._visit(entry, context):
            stack.append((entry, iter(entry.connections)))

        while stack:
            node, edges = stack[-1]
            connection = next(edges, None)
            if connection is None:
                stack.pop()
                continue

            target = nodes.get(connection.target_node_id)
            if target is None:
                logger.warning(
                    f"Node {node.node_id} connects to missing node {connection.target_node_id}, skipping"
                )
                continue

            if node.type == NodeType.CONDITION and connection.condition:
                if not self.evaluator.evaluate(connection.condition, context.variables):
                    logger.debug(f"Edge {node.node_id} -> {target.node_id} not taken")
                    continue

            if await self._visit(target, context):
                stack.append((target, iter(target.connections)))

    async def _visit(self, node: WorkflowNode, context: ExecutionContext) -> bool:
        """执行节点，返回是否继续沿其出边遍历"""
        if context.steps >= self.max_execution_steps:
            raise ExecutionBudgetExceededError(node.node_id, self.max_execution_steps)
        context.steps += 1
        context.history.append(node.node_id)

        policy = FAILURE_POLICIES.get(node.type, UNKNOWN_TYPE_POLICY)
        try:
            outcome = await self.execute_node(node, context)
        except NodeExecutionError:
            raise
        except Exception as e:
            logger.error(f"Error executing node {node.node_id}: {e}", exc_info=True)
            raise NodeExecutionError(node.node_id, str(e), e) from e

        if not outcome.ok and policy == FailurePolicy.ABORT:
            raise NodeExecutionError(node.node_id, outcome.error or "node failed")
        return outcome.follow
