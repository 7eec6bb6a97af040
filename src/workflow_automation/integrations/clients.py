"""
客户端投递通道
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Tuple, Set


logger = logging.getLogger(__name__)


class ClientChannel(ABC):
    """客户端通道接口（例如语音播报终端）"""

    @abstractmethod
    async def has_client(self, domain_id: str, client_id: int) -> bool:
        """客户端是否存在"""
        pass

    @abstractmethod
    async def deliver(self, domain_id: str, client_id: int, payload: Dict[str, Any]):
        """向客户端投递内容"""
        pass


class InMemoryClientChannel(ClientChannel):
    """记录投递内容的内存通道"""

    def __init__(self, clients: Set[Tuple[str, int]] = None):
        self.clients: Set[Tuple[str, int]] = set(clients or ())
        self.deliveries: List[Tuple[str, int, Dict[str, Any]]] = []

    def add_client(self, domain_id: str, client_id: int):
        self.clients.add((domain_id, client_id))

    async def has_client(self, domain_id: str, client_id: int) -> bool:
        return (domain_id, client_id) in self.clients

    async def deliver(self, domain_id: str, client_id: int, payload: Dict[str, Any]):
        self.deliveries.append((domain_id, client_id, dict(payload)))
        logger.debug(f"Delivered to client {client_id} in domain {domain_id}")
