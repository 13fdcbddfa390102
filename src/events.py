"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E
事件分为两种：
1. 普通事件：允许多个处理器注册;
2. 独占事件：仅允许一个处理器注册，尝试重复注册会引发运行时错误;

通知流水线中的生产者 (提醒调度器、推送通道) 只负责把类型化事件发到总线上,
声音、弹窗、持久化都由下游订阅者完成。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Any, Awaitable, Callable, Set, Union

from logger import logger

Handler = Callable[..., Union[Awaitable[None], None]]

# 事件名集中定义
class E:
    # 普通事件
    REMINDER_RECEIVED = "reminder.received"
    SCHEDULER_STARTED = "scheduler.started"
    SCHEDULER_STOPPED = "scheduler.stopped"
    SCHEDULER_ERROR = "scheduler.error"
    PUSH_EVENT_RECEIVED = "push.event_received"
    PUSH_CONNECTION_CHANGED = "push.connection_changed"
    NOTIFICATION_DELIVERED = "notification.delivered"
    NOTIFICATION_CLICKED = "notification.clicked"
    NOTIFICATION_RECORDED = "notification.recorded"

# 提醒与推送事件只允许投递队列订阅, 保证所有投递都经过同一条串行通道
EXCLUSIVE_EVENTS = {E.REMINDER_RECEIVED, E.PUSH_EVENT_RECEIVED}


class Bus(AsyncIOEventEmitter):
    def __init__(self, loop: Any = None) -> None:
        super().__init__(loop=loop)
        self._exclusive: Set[str] = set()

    def on(self, event: str, f: Handler | None = None) -> Any:
        """注册事件处理器, 既可作为装饰器使用, 也可直接传入处理器"""
        def decorator(handler: Handler) -> Handler:
            # 检查独占事件
            if event in EXCLUSIVE_EVENTS:
                if event in self._exclusive:
                    raise RuntimeError(f"独占事件的唯一处理器已注册: {event}")
                self._exclusive.add(event)

            # 注册到父类
            logger.debug(f"注册事件处理器: {event} -> {getattr(handler, '__name__', repr(handler))}")
            super(Bus, self).on(event, handler)
            return handler

        if f is not None:
            return decorator(f)
        return decorator

    def remove_listener(self, event: str, f: Handler) -> None:
        super().remove_listener(event, f)
        if event in EXCLUSIVE_EVENTS and not self.listeners(event):
            self._exclusive.discard(event)


bus = Bus()

__all__ = ["bus", "Bus", "E", "EXCLUSIVE_EVENTS"]
