"""
事件总线

向订阅者推送模型状态变化、下载进度和终态事件。
处理器可以是普通函数或协程函数，处理器出错只记录日志，不影响下载流程。
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


class EventType(Enum):
    """事件类型"""

    STATE_CHANGED = "state_changed"
    PROGRESS = "progress"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DELETED = "deleted"


@dataclass
class ModelEvent:
    """模型事件"""

    type: EventType
    model_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.type.value,
            "model_id": self.model_id,
            "timestamp": self.timestamp,
            **self.data,
        }


EventHandler = Callable[[ModelEvent], Any]


class EventBus:
    """事件总线"""

    def __init__(self):
        self._handlers: Dict[Optional[EventType], List[EventHandler]] = {}

    def subscribe(
        self, handler: EventHandler, event_type: Optional[EventType] = None
    ) -> None:
        """
        订阅事件

        Args:
            handler: 事件处理器
            event_type: 事件类型，None 表示订阅全部事件
        """
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(
        self, handler: EventHandler, event_type: Optional[EventType] = None
    ) -> None:
        """取消订阅"""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: ModelEvent) -> None:
        """发布事件"""
        handlers = self._handlers.get(event.type, []) + self._handlers.get(None, [])
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"[错误] 事件处理器处理 {event.type.value} 失败: {e}")


class ProgressThrottle:
    """
    进度节流

    每前进 ``step`` 个百分点发出一次，第一个和最后一个数据块总是发出。
    """

    def __init__(self, step: float = 1.0):
        self.step = step
        self._last: Optional[float] = None

    def reset(self) -> None:
        self._last = None

    def should_emit(self, downloaded: int, total: int) -> bool:
        if total <= 0:
            return False
        percent = downloaded * 100.0 / total
        if self._last is None or downloaded >= total or percent - self._last >= self.step:
            self._last = percent
            return True
        return False
