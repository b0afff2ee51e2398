"""
外部信号存储

wait 节点按 (execution_id, node_id) 等待外部投递的信号。
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple


class SignalStore(ABC):
    """信号存储接口"""

    @abstractmethod
    async def put(self, execution_id: str, node_id: str, payload: Dict[str, Any]):
        """保存信号"""
        pass

    @abstractmethod
    async def pop(self, execution_id: str, node_id: str) -> Optional[Dict[str, Any]]:
        """取出并删除信号，不存在时返回 None"""
        pass


class InMemorySignalStore(SignalStore):
    """内存信号存储"""

    def __init__(self):
        self.signals: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def put(self, execution_id: str, node_id: str, payload: Dict[str, Any]):
        async with self._lock:
            self.signals[(execution_id, node_id)] = copy.deepcopy(payload or {})

    async def pop(self, execution_id: str, node_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            return self.signals.pop((execution_id, node_id), None)
