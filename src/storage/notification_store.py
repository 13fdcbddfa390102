"""通知存储: 后端持久化通知列表在客户端的内存镜像

所有变更先同步作用在内存上, 再在后台任务里同步到后端。后端失败只记录日志, 不回滚;
客户端与后端之间是最终一致, 需要纠正时由用户重新 load()。
内存列表只有本类写入, UI 层只读 notifications / unread_count。
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from datamodel import Notification
from events import E, Bus, bus
from logger import logger
from metrics import runtime_metrics
from storage.backend_api import NotificationBackend, StoreSyncError

__all__ = ["NotificationStore"]


class NotificationStore:
    def __init__(
        self,
        backend: NotificationBackend,
        subject_id: str,
        emitter: Bus = bus,
        load_flush_timeout: float = 5.0,
    ) -> None:
        self.backend = backend
        self.subject_id = subject_id
        self.emitter = emitter
        self._items: list[Notification] = []
        self._sync_lock = asyncio.Lock()
        self._sync_tasks: set[asyncio.Task] = set()
        self._unsaved: set[str] = set()  # 保存请求还没完成的通知 id
        self.load_flush_timeout = load_flush_timeout
        self.is_loading = False
        self.last_error: str | None = None

    @property
    def notifications(self) -> tuple[Notification, ...]:
        return tuple(self._items)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._items if not n.read)

    def get(self, notification_id: str) -> Notification | None:
        for n in self._items:
            if n.id == notification_id:
                return n
        return None

    async def load(self, subject_id: str | None = None) -> bool:
        """从后端替换内存列表; 失败时保留原有内容"""
        subject_id = subject_id or self.subject_id
        self.is_loading = True
        try:
            # 先让在途的同步落到后端; 超时的那部分由 _unsaved 兜底
            if self._sync_tasks:
                await asyncio.wait(list(self._sync_tasks), timeout=self.load_flush_timeout)
            known_before = {n.id for n in self._items}
            raw_items = await self.backend.fetch_all(subject_id)
        except StoreSyncError as e:
            self.last_error = str(e)
            logger.warning(f"加载通知失败, 保留当前 {len(self._items)} 条: {e}")
            return False
        finally:
            self.is_loading = False

        loaded: list[Notification] = []
        for raw in raw_items:
            try:
                loaded.append(Notification.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"忽略无法解析的通知记录: {e}")
        # 还没保存成功的, 以及拉取期间新记录的通知, 后端结果里可能没有; 保留在最前面
        loaded_ids = {n.id for n in loaded}
        recorded_meanwhile = [
            n for n in self._items
            if n.id not in loaded_ids and (n.id in self._unsaved or n.id not in known_before)
        ]
        self.subject_id = subject_id
        self._items = recorded_meanwhile + loaded
        self.last_error = None
        logger.info(f"已加载 {len(loaded)} 条通知, 未读 {self.unread_count} 条")
        return True

    def record(self, notification: Notification) -> bool:
        """插入到列表最前面并异步保存; 同 id 已存在时忽略"""
        if self.get(notification.id) is not None:
            logger.debug(f"通知已存在, 忽略重复记录: id={notification.id}")
            return False
        self._items.insert(0, notification)
        self.emitter.emit(E.NOTIFICATION_RECORDED, notification)
        payload = notification.to_dict()
        self._unsaved.add(notification.id)

        async def save() -> None:
            try:
                await self.backend.save(self.subject_id, payload)
            finally:
                self._unsaved.discard(notification.id)

        self._sync("save", save)
        return True

    def mark_read(self, notification_id: str) -> bool:
        for i, n in enumerate(self._items):
            if n.id == notification_id:
                if not n.read:
                    self._items[i] = n.marked_read()
                self._sync("mark_read", lambda: self.backend.mark_read(self.subject_id, notification_id))
                return True
        logger.debug(f"标记已读时找不到通知: id={notification_id}")
        return False

    def delete(self, notification_id: str) -> bool:
        before = len(self._items)
        self._items = [n for n in self._items if n.id != notification_id]
        removed = len(self._items) != before
        self._sync("delete", lambda: self.backend.delete(self.subject_id, notification_id))
        return removed

    def clear_all(self, subject_id: str | None = None) -> int:
        subject_id = subject_id or self.subject_id
        removed = len(self._items)
        self._items = []
        self._sync("clear_all", lambda: self.backend.clear_all(subject_id))
        return removed

    def _sync(self, operation: str, call: Callable[[], Awaitable[Any]]) -> None:
        task = asyncio.get_running_loop().create_task(self._run_sync(operation, call))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _run_sync(self, operation: str, call: Callable[[], Awaitable[Any]]) -> None:
        # 同一把锁保证后端看到的变更顺序与内存一致
        async with self._sync_lock:
            try:
                await call()
            except StoreSyncError as e:
                runtime_metrics.record_sync_failure()
                logger.error(f"通知同步失败 ({operation}), 内存状态保持不变: {e}")
            except Exception as e:
                runtime_metrics.record_sync_failure()
                logger.opt(exception=e).error(f"通知同步出现预期外的错误 ({operation}): {e}")

    async def flush(self) -> None:
        """等待所有在途的后端同步完成"""
        while self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
        await self.backend.aclose()
