"""
工作流定义解析器

支持 YAML / JSON 格式的图定义导入：

    workflow:
      name: Morning lights
      enabled: true
      status: active
      nodes:
        - id: wake
          type: timer
          config: {time: "07:00", interval: day}
          connections:
            - target: lamp
        - id: lamp
          type: device_control
          config: {deviceId: lamp-1, action: "on"}
        - id: done
          type: end
      edges:
        - {from: lamp, to: done}
"""
import yaml
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Union
from pathlib import Path
from jsonschema import Draft7Validator

from ..models.workflow import NodeType, WorkflowStatus
from ..models.node_config import parse_node_config
from ..exceptions import WorkflowParseError, WorkflowValidationError


logger = logging.getLogger(__name__)

_ID_SCHEMA = {"type": ["string", "integer"]}

DEFINITION_SCHEMA = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "description": {"type": ["string", "null"]},
        "enabled": {"type": "boolean"},
        "status": {"enum": [s.value for s in WorkflowStatus]},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": _ID_SCHEMA,
                    "type": {"type": "string"},
                    "nodeType": {"type": "string"},
                    "name": {"type": "string"},
                    "config": {"type": ["object", "null"]},
                    "position": {"type": ["object", "null"]},
                    "connections": {
                        "type": ["array", "null"],
                        "items": {"type": ["object", "string", "integer"]}
                    },
                },
                "anyOf": [{"required": ["type"]}, {"required": ["nodeType"]}],
            },
        },
        "edges": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "properties": {
                    "from": _ID_SCHEMA,
                    "to": _ID_SCHEMA,
                    "source": _ID_SCHEMA,
                    "target": _ID_SCHEMA,
                    "condition": {"type": ["string", "null"]},
                },
            },
        },
    },
}


@dataclass
class EdgeDefinition:
    """边定义，端点使用定义内的节点键"""
    source: str
    target: str
    condition: Optional[str] = None


@dataclass
class NodeDefinition:
    """节点定义"""
    key: str
    node_type: str
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    position: Dict[str, float] = field(default_factory=lambda: {"x": 0, "y": 0})


@dataclass
class WorkflowDefinition:
    """解析后的工作流定义"""
    name: str
    description: Optional[str] = None
    enabled: bool = False
    status: WorkflowStatus = WorkflowStatus.INACTIVE
    nodes: List[NodeDefinition] = field(default_factory=list)
    edges: List[EdgeDefinition] = field(default_factory=list)

    def outgoing(self, key: str) -> List[EdgeDefinition]:
        return [e for e in self.edges if e.source == key]


class WorkflowParser:
    """工作流解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.validator = Draft7Validator(DEFINITION_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowDefinition:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串或字典

        Returns:
            WorkflowDefinition: 解析并校验后的定义
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and len(source) < 4096:
                path = Path(source)
                if path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> WorkflowDefinition:
        """解析工作流文件"""
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        data = self.parsers[suffix](content)
        return self._parse_dict(data)

    def parse_string(self, content: str) -> WorkflowDefinition:
        """解析工作流字符串（YAML 是 JSON 的超集，优先按 YAML 解析）"""
        try:
            data = self._parse_yaml(content)
        except WorkflowParseError:
            data = self._parse_json(content)
        return self._parse_dict(data)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _parse_dict(self, data: Any) -> WorkflowDefinition:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        if 'workflow' in data:
            data = data['workflow']
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")

        # 结构校验
        errors = []
        for error in self.validator.iter_errors(data):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")
        if errors:
            logger.warning(f"Workflow definition rejected: {errors}")
            raise WorkflowValidationError(f"Invalid workflow definition: {errors}")

        enabled = bool(data.get('enabled', False))
        default_status = WorkflowStatus.ACTIVE if enabled else WorkflowStatus.INACTIVE
        status = WorkflowStatus(data.get('status', default_status.value))

        definition = WorkflowDefinition(
            name=data['name'],
            description=data.get('description'),
            enabled=enabled,
            status=status,
        )

        # 解析节点
        for index, node_data in enumerate(data.get('nodes') or []):
            node = self._parse_node(node_data, index)
            definition.nodes.append(node)
            for conn in node_data.get('connections') or []:
                definition.edges.append(self._parse_connection(node.key, conn))

        # 解析边
        for edge_data in data.get('edges') or []:
            definition.edges.append(self._parse_edge(edge_data))

        self._validate(definition)
        return definition

    def _parse_node(self, data: Dict[str, Any], index: int) -> NodeDefinition:
        """解析节点"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Node #{index} must be a mapping")
        node_type = data.get('type') or data.get('nodeType')
        if not node_type:
            raise WorkflowValidationError(f"Node #{index} has no type")
        if NodeType.parse(node_type) is None:
            raise WorkflowValidationError(f"Unknown node type: {node_type}")

        config = parse_node_config(node_type, data.get('config') or {})
        return NodeDefinition(
            key=str(data.get('id', index + 1)),
            node_type=node_type,
            name=data.get('name', ''),
            config=config.to_dict(),
            position=data.get('position') or {"x": 0, "y": 0},
        )

    def _parse_connection(self, source: str, data: Union[Dict[str, Any], str, int]) -> EdgeDefinition:
        """解析节点内联连接"""
        if isinstance(data, dict):
            target = data.get('target', data.get('targetNodeId'))
            condition = data.get('condition')
        else:
            target, condition = data, None
        if target is None:
            raise WorkflowParseError(f"Connection of node {source} has no target")
        return EdgeDefinition(source=source, target=str(target), condition=condition or None)

    def _parse_edge(self, data: Dict[str, Any]) -> EdgeDefinition:
        """解析边"""
        source = data.get('from', data.get('source'))
        target = data.get('to', data.get('target'))
        if source is None or target is None:
            raise WorkflowParseError(f"Edge requires from and to: {data}")
        return EdgeDefinition(source=str(source), target=str(target), condition=data.get('condition') or None)

    def _validate(self, definition: WorkflowDefinition):
        """校验节点键唯一且边端点存在"""
        errors = []
        keys = set()
        for node in definition.nodes:
            if node.key in keys:
                errors.append(f"Duplicate node id: {node.key}")
            keys.add(node.key)

        for edge in definition.edges:
            if edge.source not in keys:
                errors.append(f"Edge source {edge.source} not found")
            if edge.target not in keys:
                errors.append(f"Edge target {edge.target} not found")

        if errors:
            raise WorkflowValidationError(f"Workflow validation failed: {errors}")
