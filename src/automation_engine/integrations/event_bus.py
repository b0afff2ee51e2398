"""
执行事件总线
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List

from ..models.execution import utcnow


logger = logging.getLogger(__name__)

EXECUTION_EVENTS_TOPIC = "workflow.execution.events"


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """进程内事件总线，订阅者可以是同步或异步函数"""

    def __init__(self, history_size: int = 1000):
        self.subscribers: Dict[str, List[Callable]] = {}
        self.history: Deque[Event] = deque(maxlen=history_size)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """发布事件，订阅者异常只记录日志"""
        event = Event(topic=topic, payload=payload, headers=headers or {})

        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))
            self.history.append(event)

        if subscribers:
            await asyncio.gather(
                *(self._notify_subscriber(subscriber, event) for subscriber in subscribers)
            )

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        """订阅事件"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            if handler in self.subscribers.get(topic, []):
                self.subscribers[topic].remove(handler)
                if not self.subscribers[topic]:
                    del self.subscribers[topic]

        logger.info(f"Unsubscribed from topic '{topic}'")

    def events_for(self, topic: str) -> List[Event]:
        return [event for event in self.history if event.topic == topic]

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
