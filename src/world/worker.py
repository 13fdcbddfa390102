"""提醒调度器 (宿主侧)

每个调度器跑在自己的线程和事件循环里, 宿主只拿到一个句柄: start / stop / update_interval。
后台发回的消息通过 call_soon_threadsafe 回到宿主事件循环, 再以事件的形式发到总线上。
stop 之后到达的提醒一律丢弃。
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any, Callable

from datamodel import ReminderEvent, SchedulerSignal
from events import E, Bus, bus
from logger import logger
from metrics import runtime_metrics
from utils import now_utc
from world.rules import ReminderRule
from world.scheduler import Fetch, ReminderScheduler

__all__ = ["ReminderWorker"]


class ReminderWorker:
    def __init__(
        self,
        name: str,
        rule: ReminderRule,
        emitter: Bus = bus,
        fetch_factory: Callable[[], Fetch] | None = None,
        clock: Callable[[], datetime] | None = None,
        max_consecutive_errors: int = 3,
    ) -> None:
        self.name = name
        self.rule = rule
        self.emitter = emitter
        self.fetch_factory = fetch_factory
        self.clock = clock
        self.max_consecutive_errors = max_consecutive_errors

        self._host_loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._task_loop: asyncio.AbstractEventLoop | None = None
        self._inbox: asyncio.Queue | None = None
        self._generation = 0  # 每次 start 递增, 旧代的消息直接丢弃
        self._running = False
        self.last_signal: dict[str, Any] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def get_status(self) -> dict[str, object]:
        return {
            "name": self.name,
            "domain": self.rule.domain,
            "running": self._running,
            "last_signal": (self.last_signal or {}).get("type"),
        }

    # ----------------- 宿主 API ----------------
    def start(self, data_source_url: str, subject_id: str, check_interval: float | None = None) -> None:
        """必须在宿主事件循环中调用; 不等待后台线程就绪, 指令会排在后台循环里"""
        if self._running:
            # 旧线程带着自己的循环和队列退出, 这里不等它
            self._request_stop()
        self._host_loop = asyncio.get_running_loop()
        self._generation += 1
        generation = self._generation
        self._running = True
        # 循环和队列在宿主侧建好, 后台线程启动前发出的指令也不会丢
        self._task_loop = asyncio.new_event_loop()
        self._inbox = asyncio.Queue()
        self._thread = threading.Thread(
            target=self._thread_main,
            args=(generation, self._task_loop, self._inbox),
            name=self.name,
            daemon=True,
        )
        self._thread.start()

        config: dict[str, Any] = {}
        if check_interval is not None:
            config["checkIntervalMs"] = int(check_interval * 1000)
        self._send({"action": "start", "dataSourceUrl": data_source_url, "subjectId": subject_id, "config": config})

    def update_interval(self, seconds: float) -> None:
        if not self._running:
            logger.warning(f"[{self.name}] 调度器未运行, 忽略间隔更新")
            return
        self._send({"action": "updateInterval", "interval": int(seconds * 1000)})

    async def stop(self, timeout: float = 5.0) -> None:
        thread = self._request_stop()
        if thread is None or thread is threading.current_thread():
            return
        # join 放到线程池里, 不阻塞宿主事件循环
        await asyncio.to_thread(thread.join, timeout)
        if thread.is_alive():
            logger.warning(f"[{self.name}] 后台线程未在 {timeout}s 内退出")

    def _request_stop(self) -> threading.Thread | None:
        if not self._running:
            return None
        self._running = False
        self._generation += 1  # 从此刻起, 已在途的提醒都会被丢弃
        self._send({"action": "stop"})
        self._send(None)
        thread, self._thread = self._thread, None
        self._task_loop = None
        self._inbox = None
        return thread

    # ----------------- 后台线程 ----------------
    def _thread_main(self, generation: int, loop: asyncio.AbstractEventLoop, inbox: asyncio.Queue) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._task_main(generation, inbox))
        finally:
            loop.close()

    async def _task_main(self, generation: int, inbox: asyncio.Queue) -> None:
        scheduler = ReminderScheduler(
            self.rule,
            post=lambda message: self._post_to_host(generation, message),
            fetch=self.fetch_factory() if self.fetch_factory else None,
            max_consecutive_errors=self.max_consecutive_errors,
            clock=self.clock or now_utc,
        )
        await scheduler.run(inbox)

    def _send(self, message: dict[str, Any] | None) -> None:
        loop, inbox = self._task_loop, self._inbox
        if loop is None or inbox is None:
            logger.warning(f"[{self.name}] 后台循环未就绪, 指令被丢弃: {message}")
            return
        try:
            loop.call_soon_threadsafe(inbox.put_nowait, message)
        except RuntimeError:
            logger.debug(f"[{self.name}] 后台循环已关闭, 指令被丢弃: {message}")

    def _post_to_host(self, generation: int, message: dict[str, Any]) -> None:
        loop = self._host_loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._on_message, generation, message)
        except RuntimeError:
            # 宿主循环已关闭
            pass

    # ----------------- 宿主侧消息处理 ----------------
    def _on_message(self, generation: int, message: dict[str, Any]) -> None:
        kind = message.get("type")
        stale = generation != self._generation or not self._running
        if stale and kind != SchedulerSignal.STOPPED.value:
            logger.trace(f"[{self.name}] 丢弃 stop 之后到达的消息: {kind}")
            return
        self.last_signal = message

        if kind == SchedulerSignal.REMINDER.value:
            try:
                event = ReminderEvent.from_message(message)
            except (KeyError, TypeError, ValueError) as e:
                runtime_metrics.record_invalid_event()
                logger.warning(f"[{self.name}] 无法解析的提醒消息: {e}")
                return
            runtime_metrics.record_reminder()
            self.emitter.emit(E.REMINDER_RECEIVED, event)
        elif kind == SchedulerSignal.STARTED.value:
            self.emitter.emit(E.SCHEDULER_STARTED, self.name)
        elif kind == SchedulerSignal.STOPPED.value:
            self.emitter.emit(E.SCHEDULER_STOPPED, self.name)
        elif kind == SchedulerSignal.ERROR.value:
            runtime_metrics.record_scheduler_error()
            logger.error(f"[{self.name}] 调度器报告错误: {message.get('error')}")
            self.emitter.emit(E.SCHEDULER_ERROR, self.name, message.get("error"))
        else:
            logger.warning(f"[{self.name}] 未知的调度器消息: {kind}")
