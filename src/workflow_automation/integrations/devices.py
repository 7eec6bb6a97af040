"""
设备集成：设备注册表与设备控制通道
"""
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, List, Tuple


logger = logging.getLogger(__name__)


@dataclass
class HostNode:
    """设备所在的宿主节点"""
    domain_id: str
    node_id: int
    ref: str
    name: str = ""


@dataclass
class Device:
    """设备及其当前状态"""
    device_id: str
    host_ref: str
    state: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.now)


class DeviceRegistry(ABC):
    """设备注册表接口"""

    @abstractmethod
    async def get_host_node(self, domain_id: str, node_id: int) -> Optional[HostNode]:
        """按域内编号获取宿主节点"""
        pass

    @abstractmethod
    async def list_devices(self, host_ref: str) -> List[Device]:
        """列出宿主节点上的设备"""
        pass

    @abstractmethod
    async def find_by_device_id(self, device_id: str) -> Optional[Device]:
        """全局按设备ID查找"""
        pass

    @abstractmethod
    async def update_state(self, device: Device, state: Dict[str, Any]) -> Device:
        """持久化设备状态"""
        pass

    async def find_on_host(self, host: HostNode, device_id: str) -> Optional[Device]:
        """在指定宿主节点上查找设备"""
        for device in await self.list_devices(host.ref):
            if device.device_id == device_id:
                return device
        return None


class DeviceControlChannel(ABC):
    """设备控制通道接口（例如 MQTT）"""

    @abstractmethod
    async def send_command(self, host_ref: str, device_id: str, command: Dict[str, Any]):
        """下发设备控制指令"""
        pass


class InMemoryDeviceRegistry(DeviceRegistry):
    """内存设备注册表"""

    def __init__(self):
        self.hosts: Dict[Tuple[str, int], HostNode] = {}
        self.devices: Dict[Tuple[str, str], Device] = {}

    def add_host(self, domain_id: str, node_id: int, ref: Optional[str] = None, name: str = "") -> HostNode:
        host = HostNode(domain_id=domain_id, node_id=node_id, ref=ref or f"{domain_id}:{node_id}", name=name)
        self.hosts[(domain_id, node_id)] = host
        return host

    def add_device(self, host: HostNode, device_id: str, state: Dict[str, Any] = None) -> Device:
        device = Device(device_id=device_id, host_ref=host.ref, state=dict(state or {}))
        self.devices[(host.ref, device_id)] = device
        return device

    async def get_host_node(self, domain_id: str, node_id: int) -> Optional[HostNode]:
        return self.hosts.get((domain_id, node_id))

    async def list_devices(self, host_ref: str) -> List[Device]:
        return [copy.deepcopy(d) for (ref, _), d in self.devices.items() if ref == host_ref]

    async def find_by_device_id(self, device_id: str) -> Optional[Device]:
        for (_, did), device in self.devices.items():
            if did == device_id:
                return copy.deepcopy(device)
        return None

    async def update_state(self, device: Device, state: Dict[str, Any]) -> Device:
        stored = self.devices[(device.host_ref, device.device_id)]
        stored.state = dict(state)
        stored.updated_at = datetime.now()
        return copy.deepcopy(stored)


class RecordingDeviceChannel(DeviceControlChannel):
    """记录所有下发指令的控制通道"""

    def __init__(self, fail: bool = False):
        self.commands: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail = fail

    async def send_command(self, host_ref: str, device_id: str, command: Dict[str, Any]):
        if self.fail:
            raise ConnectionError(f"Device channel unavailable for {device_id}")
        self.commands.append((host_ref, device_id, dict(command)))
        logger.debug(f"Device command recorded: {host_ref}/{device_id} {command}")
