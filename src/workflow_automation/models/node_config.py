"""
节点配置模型

每种节点类型对应一个强类型配置，节点创建或更新时校验。
字段名沿用存储中的 camelCase 写法，同时接受 snake_case。
"""
import re
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .timer import TimerUnit, TimerInterval
from .workflow import NodeType
from ..exceptions import NodeConfigError


TIME_PATTERN = re.compile(r"^\d{1,2}:\d{1,2}(:\d{1,2})?$")


class NodeConfig(BaseModel):
    """节点配置基类"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class StartConfig(NodeConfig):
    """开始节点"""
    pass


class EndConfig(NodeConfig):
    """结束节点"""
    pass


class ButtonConfig(NodeConfig):
    """按钮触发器"""
    button_text: str = Field("触发工作流", alias="buttonText")
    button_style: str = Field("primary", alias="buttonStyle")
    require_confirmation: bool = Field(False, alias="requireConfirmation")
    confirmation_message: Optional[str] = Field(None, alias="confirmationMessage")


class TimerConfig(NodeConfig):
    """定时触发器"""
    time: Optional[str] = None
    interval: TimerUnit = TimerUnit.DAY
    interval_value: int = Field(1, alias="intervalValue", ge=1)
    second: Optional[int] = Field(None, ge=0, le=59)
    trigger_data: Dict[str, Any] = Field(default_factory=dict, alias="triggerData")

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not TIME_PATTERN.match(value):
            raise ValueError("time must be HH:mm or HH:mm:ss")
        parts = [int(p) for p in value.split(":")]
        if parts[0] > 23 or parts[1] > 59 or (len(parts) > 2 and parts[2] > 59):
            raise ValueError(f"time out of range: {value}")
        return value

    @property
    def has_schedule(self) -> bool:
        """分钟级间隔可以不指定时间，其余间隔必须指定时间"""
        return self.interval == TimerUnit.MINUTE or self.time is not None

    @property
    def time_parts(self):
        if not self.time:
            return []
        return [int(p) for p in self.time.split(":")]

    @property
    def timer_interval(self) -> TimerInterval:
        return TimerInterval(self.interval_value, self.interval)


class DeviceAction(Enum):
    """设备操作"""
    ON = "on"
    OFF = "off"
    TOGGLE = "toggle"
    SET = "set"


class DeviceControlConfig(NodeConfig):
    """设备控制 / 对象操作"""
    object_type: str = Field("device", alias="objectType")
    node_id: Optional[int] = Field(None, alias="nodeId")
    device_id: str = Field(..., alias="deviceId", min_length=1)
    action: DeviceAction = DeviceAction.OFF
    property: str = "on"
    value: Any = None

    @field_validator("action", mode="before")
    @classmethod
    def _coerce_action(cls, value):
        # YAML 会把未加引号的 on / off 解析为布尔值
        if isinstance(value, bool):
            return "on" if value else "off"
        return value


class ReturnMode(Enum):
    """智能体结果返回方式"""
    TEXT = "text"
    AUDIO = "audio"


class AgentConfig(NodeConfig):
    """智能体节点"""
    agent_id: str = Field(..., alias="agentId", min_length=1)
    prompt: str = ""
    message: Optional[str] = None
    return_mode: ReturnMode = Field(ReturnMode.TEXT, alias="returnMode")
    client_id: Optional[Union[int, str]] = Field(None, alias="clientId")

    @model_validator(mode="after")
    def _check_prompt(self) -> "AgentConfig":
        if not (self.prompt or self.message):
            raise ValueError("prompt is required")
        return self

    @property
    def prompt_template(self) -> str:
        return self.prompt or self.message or ""


class ConditionConfig(NodeConfig):
    """条件节点"""
    condition: str = "true"


class DelayConfig(NodeConfig):
    """延迟节点"""
    delay_ms: Union[int, float, str] = Field(0, alias="delayMs")

    @field_validator("delay_ms")
    @classmethod
    def _check_delay(cls, value):
        if isinstance(value, (int, float)) and value < 0:
            raise ValueError("delayMs must not be negative")
        return value


class ReceiverConfig(NodeConfig):
    """接收者节点"""
    client_id: Union[int, str] = Field(..., alias="clientId")


CONFIG_MODELS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.START: StartConfig,
    NodeType.END: EndConfig,
    NodeType.TIMER: TimerConfig,
    NodeType.BUTTON: ButtonConfig,
    NodeType.DEVICE_CONTROL: DeviceControlConfig,
    NodeType.OBJECT_ACTION: DeviceControlConfig,
    NodeType.AGENT_MESSAGE: AgentConfig,
    NodeType.AGENT_ACTION: AgentConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.RECEIVER: ReceiverConfig,
}


def parse_node_config(node_type: str, raw: Optional[Dict[str, Any]]) -> NodeConfig:
    """
    按节点类型解析配置

    Args:
        node_type: 节点类型字符串
        raw: 原始配置

    Returns:
        NodeConfig: 对应类型的配置对象，未知类型返回通用配置

    Raises:
        NodeConfigError: 配置不合法
    """
    model = CONFIG_MODELS.get(NodeType.parse(node_type), NodeConfig)
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise NodeConfigError(node_type, errors)
