"""提醒调度器 (后台任务侧)

运行在独立线程自己的事件循环里, 只通过纯 dict 消息与宿主通信:
宿主 -> 任务: {"action": "start" | "stop" | "updateInterval", ...}
任务 -> 宿主: {"type": "STARTED" | "STOPPED" | "ERROR" | "REMINDER", ...}

每次 tick 拉取一次数据源, 对每个 Subject 计算已越过的最高阶段, 只有阶段高于该 Subject
已经发出的阶段时才发送 REMINDER。已发送阶段按本地日期记录, 跨天或 stop 后清空。
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

import httpx

from datamodel import ReminderEvent, SchedulerSignal
from logger import logger
from utils import now_utc
from world.rules import ReminderRule

__all__ = ["ReminderScheduler", "HttpFetcher", "SchedulerError"]

Post = Callable[[dict[str, Any]], None]
Fetch = Callable[[str, dict[str, str]], Awaitable[Any]]


class SchedulerError(Exception):
    pass


class HttpFetcher:
    """数据源拉取; AsyncClient 必须在调度器自己的事件循环里创建"""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __call__(self, url: str, params: dict[str, str]) -> Any:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers={"Accept": "application/json"})
        try:
            response = await self._client.get(url, params=params or None)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise SchedulerError(f"数据源返回 HTTP {e.response.status_code}: {url}") from e
        except httpx.HTTPError as e:
            raise SchedulerError(f"数据源请求失败: {url}: {e}") from e
        except ValueError as e:
            raise SchedulerError(f"数据源响应不是 JSON: {url}") from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class ReminderScheduler:
    def __init__(
        self,
        rule: ReminderRule,
        post: Post,
        fetch: Fetch | None = None,
        clock: Callable[[], datetime] = now_utc,
        max_consecutive_errors: int = 3,
    ) -> None:
        self.rule = rule
        self.post = post
        self.fetch: Fetch = fetch or HttpFetcher()
        self.clock = clock
        self.max_consecutive_errors = max_consecutive_errors

        self.data_source_url: str | None = None
        self.subject_id: str | None = None
        self.check_interval = 60.0
        self.consecutive_errors = 0

        self._emitted: dict[tuple[str, str], int] = {}  # (subject_id, scheduled_iso) -> 已发送的最高阶段
        self._emitted_day: date | None = None
        self._records: list[dict[str, Any]] = []  # 最近一次成功拉取的数据
        self._loop_task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # ----------------- 消息处理 ----------------
    async def run(self, inbox: asyncio.Queue) -> None:
        """消费宿主消息直到收到 None"""
        while True:
            message = await inbox.get()
            if message is None:
                break
            await self.handle(message)
        await self._stop(post_signal=False)

    async def handle(self, message: dict[str, Any]) -> None:
        action = message.get("action")
        if action == "start":
            await self._start(message)
        elif action == "stop":
            await self._stop()
        elif action == "updateInterval":
            self._update_interval(message.get("interval"))
        else:
            logger.warning(f"[{self.rule.domain}] 未知的调度器指令: {action}")

    def configure(self, data_source_url: str, subject_id: str, check_interval: float | None = None) -> None:
        self.data_source_url = data_source_url
        self.subject_id = subject_id
        if check_interval is not None:
            self.check_interval = check_interval
        self.consecutive_errors = 0
        self._emitted.clear()
        self._emitted_day = None
        self._records = []

    async def _start(self, message: dict[str, Any]) -> None:
        url = message.get("dataSourceUrl")
        subject_id = message.get("subjectId")
        if not url or not subject_id:
            self._post_error("启动参数缺少 dataSourceUrl 或 subjectId")
            return
        if self.running:
            await self._stop(post_signal=False)

        config = message.get("config") or {}
        interval_ms = config.get("checkIntervalMs")
        self.configure(str(url), str(subject_id), interval_ms / 1000 if interval_ms else None)

        self._stopping = False
        self.post({"type": SchedulerSignal.STARTED.value, "domain": self.rule.domain})
        logger.info(f"[{self.rule.domain}] 调度器已启动: subject={subject_id}, interval={self.check_interval}s")
        self._loop_task = asyncio.get_running_loop().create_task(self._tick_loop())

    async def _stop(self, post_signal: bool = True) -> None:
        task, self._loop_task = self._loop_task, None
        if task is not None:
            # 等待中的循环靠标志位退出; cancel 只负责打断正在进行的拉取
            self._stopping = True
            self._wake.set()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._emitted.clear()
        self._emitted_day = None
        self._records = []
        self.consecutive_errors = 0
        if isinstance(self.fetch, HttpFetcher):
            await self.fetch.aclose()
        if post_signal:
            self.post({"type": SchedulerSignal.STOPPED.value, "domain": self.rule.domain})
            logger.info(f"[{self.rule.domain}] 调度器已停止")

    def _update_interval(self, interval_ms: Any) -> None:
        try:
            seconds = float(interval_ms) / 1000
        except (TypeError, ValueError):
            seconds = 0
        if seconds <= 0:
            logger.warning(f"[{self.rule.domain}] 忽略非法的检查间隔: {interval_ms}")
            return
        self.check_interval = seconds
        self._wake.set()  # 立刻按新间隔重新计时
        logger.info(f"[{self.rule.domain}] 检查间隔已更新为 {seconds}s")

    def _post_error(self, message: str) -> None:
        self.post({"type": SchedulerSignal.ERROR.value, "domain": self.rule.domain, "error": message})

    # ----------------- 检查循环 ----------------
    async def _tick_loop(self) -> None:
        while not self._stopping:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # 单次检查失败不能让整个调度器退出
                logger.opt(exception=e).error(f"[{self.rule.domain}] 提醒检查出现预期外的错误: {e}")
                self._post_error(f"提醒检查出错: {e}")
            if self._stopping:
                break
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> list[ReminderEvent]:
        """执行一次检查, 返回本次发出的提醒"""
        if self.data_source_url is None or self.subject_id is None:
            raise SchedulerError("调度器尚未配置")

        now = self.clock()
        local_day = now.astimezone(ZoneInfo(self.rule.timezone)).date()
        if self._emitted_day != local_day:
            self._emitted.clear()
            self._emitted_day = local_day

        params = self.rule.request_params(self.subject_id, now)
        try:
            raw = await self.fetch(self.data_source_url, params)
        except (SchedulerError, httpx.HTTPError) as e:
            self._on_fetch_failure(e)
        else:
            self.consecutive_errors = 0
            self._records = self.rule.extract_records(raw)

        # 拉取失败时沿用最近一次的数据继续检查
        emitted: list[ReminderEvent] = []
        for subject in self.rule.subjects(self._records, self.subject_id, now):
            kind = subject.reached(now)
            if kind is None:
                continue
            key = (subject.subject_id, subject.scheduled_time.isoformat())
            last_rank = self._emitted.get(key, -1)
            if kind.rank <= last_rank:
                continue
            self._emitted[key] = kind.rank
            event = ReminderEvent(
                kind=kind,
                subject_id=subject.subject_id,
                scheduled_time=subject.scheduled_time,
                payload=subject.payload,
                domain=self.rule.domain,
            )
            emitted.append(event)
            self.post(event.to_message())
            logger.debug(f"[{self.rule.domain}] 发出提醒: {kind.value} {subject.subject_id} @ {key[1]}")
        return emitted

    def _on_fetch_failure(self, e: Exception) -> None:
        self.consecutive_errors += 1
        logger.warning(f"[{self.rule.domain}] 拉取数据失败 ({self.consecutive_errors} 次连续): {e}")
        # 每一段连续失败只上报一次
        if self.consecutive_errors == self.max_consecutive_errors:
            self._post_error(f"连续 {self.consecutive_errors} 次拉取数据失败: {e}")