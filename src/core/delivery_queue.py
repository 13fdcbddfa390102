"""投递队列

所有提醒与推送都经过这里串行投递: 去重 -> 排队 -> 播放提示音 -> 显示通知 -> 记录。
只有一个消费者在工作, 因此同一时刻最多只有一条通知在投递中。
提醒之间至少间隔 reminder_gap 秒, 避免一批提醒同时弹出; 推送默认不需要间隔。
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import date, datetime
from typing import Awaitable, Callable, Union
from zoneinfo import ZoneInfo

from ulid import ULID

from core.messages import event_metadata, render_content, tag_for, to_notification, with_batch_footer
from core.presentation import PresentationManager
from datamodel import DedupKey, PushEvent, QueueEntry, ReminderEvent, ReminderKind
from events import E, Bus, bus
from logger import logger
from metrics import runtime_metrics
from storage.notification_store import NotificationStore
from utils import now_utc

__all__ = ["DeliveryQueue"]

DeliverableEvent = Union[PushEvent, ReminderEvent]


class DeliveryQueue:
    def __init__(
        self,
        presentation: PresentationManager,
        store: NotificationStore | None = None,
        emitter: Bus = bus,
        dedup_ttl: float = 5.0,
        reminder_gap: float = 5.0,
        push_gap: float = 0.0,
        record_reminders: bool = False,
        timezone: str = "Asia/Kolkata",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        wall_clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.presentation = presentation
        self.store = store
        self.emitter = emitter
        self.dedup_ttl = dedup_ttl
        self.reminder_gap = reminder_gap
        self.push_gap = push_gap
        self.record_reminders = record_reminders
        self.timezone = ZoneInfo(timezone)
        self.clock = clock
        self._sleep = sleep
        self.wall_clock = wall_clock

        self._entries: deque[QueueEntry] = deque()
        self._push_seen: dict[DedupKey, float] = {}  # key -> 过期时间 (monotonic)
        self._reminder_seen: set[DedupKey] = set()
        self._reminder_day: date | None = None
        self._drain_task: asyncio.Task | None = None
        self._running = False
        self._burst_delivered = 0
        self.delivered_at: float | None = None

    @property
    def pending(self) -> int:
        return len(self._entries)

    @property
    def running(self) -> bool:
        return self._running

    def get_status(self) -> dict[str, object]:
        return {
            "running": self._running,
            "pending": self.pending,
            "draining": self._drain_task is not None and not self._drain_task.done(),
        }

    # ----------------- 去重 ----------------
    def _dedup_key(self, event: DeliverableEvent) -> DedupKey:
        if isinstance(event, PushEvent):
            return ("push", event.correlation_id)
        kind, subject_id, scheduled = event.identity
        return ("reminder", event.domain, kind, subject_id, scheduled)

    def _is_duplicate(self, key: DedupKey, is_push: bool) -> bool:
        if is_push:
            now = self.clock()
            # 顺便清理过期的推送键
            self._push_seen = {k: exp for k, exp in self._push_seen.items() if exp > now}
            if key in self._push_seen:
                return True
            self._push_seen[key] = now + self.dedup_ttl
            return False

        today = self.wall_clock().astimezone(self.timezone).date()
        if self._reminder_day != today:
            self._reminder_seen.clear()
            self._reminder_day = today
        if key in self._reminder_seen:
            return True
        self._reminder_seen.add(key)
        return False

    # ----------------- 入队 ----------------
    def enqueue(self, event: DeliverableEvent) -> bool:
        """返回 False 表示重复事件已被丢弃"""
        is_push = isinstance(event, PushEvent)
        key = self._dedup_key(event)
        if self._is_duplicate(key, is_push):
            runtime_metrics.record_duplicate()
            logger.debug(f"丢弃重复事件: {key}")
            return False

        entry = QueueEntry(event=event, enqueued_at=self.clock(), dedup_key=key, entry_id=str(ULID()))
        self._entries.append(entry)
        logger.trace(f"事件入队: {key}, 当前排队 {self.pending} 条")
        if self._running:
            self._ensure_drainer()
        return True

    def start(self) -> None:
        self._running = True
        if self._entries:
            self._ensure_drainer()
        logger.info("投递队列已启动")

    async def stop(self) -> None:
        """停止投递并丢弃所有待投递的事件"""
        self._running = False
        discarded = len(self._entries)
        self._entries.clear()
        runtime_metrics.record_discarded(discarded)
        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(f"投递队列已停止, 丢弃 {discarded} 条待投递事件")

    async def join(self) -> None:
        """等待当前排队的事件全部投递完"""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    def _ensure_drainer(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain(), name="delivery-drain")

    # ----------------- 投递 ----------------
    async def _drain(self) -> None:
        self._burst_delivered = 0
        while self._running and self._entries:
            entry = self._entries[0]
            gap = self.push_gap if entry.is_push else self.reminder_gap
            if self.delivered_at is not None:
                wait = self.delivered_at + gap - self.clock()
                if wait > 0:
                    await self._sleep(wait)
            if not self._running or not self._entries or self._entries[0] is not entry:
                continue
            self._entries.popleft()

            position = self._burst_delivered + 1
            batch_size = position + len(self._entries)
            try:
                await self._deliver(entry, position, batch_size)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # 单条失败只丢弃这一条
                logger.opt(exception=e).error(f"投递失败, 已丢弃该条事件: {entry.dedup_key}: {e}")
            self._burst_delivered += 1
            self.delivered_at = self.clock()

    async def _deliver(self, entry: QueueEntry, position: int, batch_size: int) -> None:
        event = entry.event
        title, body = render_content(event)
        metadata = event_metadata(event)
        metadata["position"] = position
        metadata["batchSize"] = batch_size

        require_interaction = entry.is_push or event.kind == ReminderKind.MISSED
        sound_ok = await self.presentation.play()
        presented = await self.presentation.present(
            title,
            with_batch_footer(body, position, batch_size),
            metadata,
            tag=tag_for(event),
            require_interaction=require_interaction,
        )

        if self.store is not None and (entry.is_push or self.record_reminders):
            self.store.record(to_notification(event, title, body))

        runtime_metrics.record_delivered(sound_ok, presented)
        logger.info(f"通知已投递: {title} ({position}/{batch_size}, sound={sound_ok}, shown={presented})")
        self.emitter.emit(E.NOTIFICATION_DELIVERED, entry, presented)
