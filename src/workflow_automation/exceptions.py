"""
工作流自动化引擎异常定义
"""
from typing import Optional


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流解析异常"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """工作流验证异常"""
    pass


class WorkflowNotFoundError(WorkflowEngineError):
    """工作流不存在"""
    def __init__(self, domain_id: str, workflow_id: int):
        self.domain_id = domain_id
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found in domain {domain_id}")


class NodeConfigError(WorkflowValidationError):
    """节点配置异常"""
    def __init__(self, node_type: str, message: str):
        self.node_type = node_type
        super().__init__(f"Invalid config for '{node_type}' node: {message}")


class GraphResolutionError(WorkflowEngineError):
    """入口节点解析失败（仅记录日志，不向调用方抛出）"""
    pass


class WorkflowExecutionError(WorkflowEngineError):
    """工作流执行异常"""
    pass


class NodeExecutionError(WorkflowExecutionError):
    """节点执行异常"""
    def __init__(self, node_id: int, message: str, cause: Exception = None):
        self.node_id = node_id
        self.cause = cause
        super().__init__(f"Node {node_id} execution failed: {message}")


class ExecutionBudgetExceededError(NodeExecutionError):
    """执行步数超限"""
    def __init__(self, node_id: int, max_steps: int):
        self.max_steps = max_steps
        super().__init__(node_id, f"execution step budget of {max_steps} exhausted")


class UnknownNodeTypeError(WorkflowExecutionError):
    """未知节点类型"""
    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class AgentJobError(WorkflowExecutionError):
    """智能体任务异常"""
    def __init__(self, category, message: str, job_id: Optional[str] = None):
        self.category = category
        self.job_id = job_id
        self.message = message
        super().__init__(f"Agent job failed [{getattr(category, 'value', category)}]: {message}")


class SchedulingError(WorkflowEngineError):
    """调度异常"""
    pass


class TimerClaimError(SchedulingError):
    """定时器认领异常"""
    pass


class TimerRegistrationError(SchedulingError):
    """定时器注册异常"""
    def __init__(self, workflow_id: int, node_id: int, message: str):
        self.workflow_id = workflow_id
        self.node_id = node_id
        super().__init__(f"Timer registration failed for workflow {workflow_id}, node {node_id}: {message}")
