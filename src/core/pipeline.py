"""通知流水线: 把调度器、推送通道、投递队列、通知存储和展示组装到一起

生产者 (各提醒调度器、推送通道) 只往总线上发事件; 投递队列是提醒/推送事件唯一的订阅者。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from channels.push_ws import PushChannel
from core.delivery_queue import DeliveryQueue
from core.presentation import PresentationManager
from datamodel import PushEvent, ReminderEvent
from events import E, Bus, bus
from logger import logger
from storage.notification_store import NotificationStore
from world.worker import ReminderWorker

__all__ = ["NotificationPipeline", "SchedulerBinding", "configure_pipeline", "require_pipeline"]


@dataclass
class SchedulerBinding:
    worker: ReminderWorker
    data_source_url: str
    check_interval: float


class NotificationPipeline:
    def __init__(
        self,
        subject_id: str,
        queue: DeliveryQueue,
        store: NotificationStore,
        presentation: PresentationManager,
        channel: PushChannel | None = None,
        push_server_url: str | None = None,
        schedulers: list[SchedulerBinding] | None = None,
        emitter: Bus = bus,
    ) -> None:
        self.subject_id = subject_id
        self.queue = queue
        self.store = store
        self.presentation = presentation
        self.channel = channel
        self.push_server_url = push_server_url
        self.schedulers = list(schedulers or [])
        self.emitter = emitter
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def _on_reminder(self, event: ReminderEvent) -> None:
        self.queue.enqueue(event)

    def _on_push(self, event: PushEvent) -> None:
        self.queue.enqueue(event)

    def _on_clicked(self, metadata: dict[str, Any]) -> None:
        # 点击推送通知视为已读
        if metadata.get("source") == "push":
            self.store.mark_read(str(metadata.get("correlationId")))

    async def start(self) -> None:
        if self._started:
            return
        self.emitter.on(E.REMINDER_RECEIVED, self._on_reminder)
        self.emitter.on(E.PUSH_EVENT_RECEIVED, self._on_push)
        self.emitter.on(E.NOTIFICATION_CLICKED, self._on_clicked)
        self._started = True

        await self.store.load()
        # 提前加载提示音, 失败不影响启动
        if not await self.presentation.prepare():
            logger.warning("提示音预加载失败, 将在首次投递时重试")
        self.queue.start()

        for binding in self.schedulers:
            binding.worker.start(binding.data_source_url, self.subject_id, binding.check_interval)
        if self.channel is not None and self.push_server_url:
            self.channel.connect(self.push_server_url)
        logger.info(
            f"通知流水线已启动: subject={self.subject_id}, 调度器 {len(self.schedulers)} 个, "
            f"推送通道 {'已启用' if self.channel is not None else '未启用'}"
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        for binding in self.schedulers:
            await binding.worker.stop()
        if self.channel is not None:
            await self.channel.disconnect()
        await self.queue.stop()
        self.emitter.remove_listener(E.REMINDER_RECEIVED, self._on_reminder)
        self.emitter.remove_listener(E.PUSH_EVENT_RECEIVED, self._on_push)
        self.emitter.remove_listener(E.NOTIFICATION_CLICKED, self._on_clicked)
        await self.store.aclose()
        await self.presentation.aclose()
        logger.info("通知流水线已停止")

    async def run_loop(self, shutdown_event: asyncio.Event) -> None:
        await self.start()
        try:
            await shutdown_event.wait()
        finally:
            await self.stop()

    def get_status(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "started": self._started,
            "queue": self.queue.get_status(),
            "schedulers": [binding.worker.get_status() for binding in self.schedulers],
            "push": self.channel.get_status() if self.channel is not None else None,
            "audio_state": self.presentation.state.value,
            "notifications": {
                "total": len(self.store.notifications),
                "unread": self.store.unread_count,
            },
        }


_pipeline: NotificationPipeline | None = None

def configure_pipeline(pipeline: NotificationPipeline | None) -> None:
    global _pipeline
    _pipeline = pipeline


def require_pipeline() -> NotificationPipeline:
    if _pipeline is None:
        raise RuntimeError("通知流水线尚未配置，请先调用 configure_pipeline()")
    return _pipeline
