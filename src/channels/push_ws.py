"""推送通道: 到推送服务器的 WebSocket 长连接

连接成功后立即发送 register 帧声明当前员工, 之后把每个已知事件转换成 PushEvent 发到总线上。
传输失败时按 min(base * attempt, max) 的间隔重连, 连续失败超过上限后停在 DISCONNECTED;
服务端主动关闭时不等待, 立刻重连。
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncContextManager, Awaitable, Callable

import websockets
from websockets.exceptions import WebSocketException

from channels.protocol import InvalidFrame, decode_frame, encode_frame, to_push_event
from datamodel import ConnectionState
from events import E, Bus, bus
from logger import logger
from metrics import runtime_metrics

__all__ = ["PushChannel", "ChannelError"]

Connector = Callable[[str], AsyncContextManager[Any]]


class ChannelError(Exception):
    pass


class PushChannel:
    def __init__(
        self,
        subject_id: str,
        emitter: Bus = bus,
        max_attempts: int = 10,
        base_delay: float = 1.0,
        max_delay: float = 5.0,
        connect_timeout: float = 20.0,
        connector: Connector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.subject_id = subject_id
        self.emitter = emitter
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.connect_timeout = connect_timeout
        self._connector = connector or self._default_connector
        self._sleep = sleep

        self.server_url: str | None = None
        self._state = ConnectionState.DISCONNECTED
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._closing = False
        self.attempts = 0

    def _default_connector(self, url: str) -> AsyncContextManager[Any]:
        return websockets.connect(url, open_timeout=self.connect_timeout)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def get_status(self) -> dict[str, object]:
        return {
            "state": self._state.value,
            "server_url": self.server_url,
            "attempts": self.attempts,
        }

    # ----------------- 生命周期 ----------------
    def connect(self, server_url: str) -> asyncio.Task:
        """启动连接循环; 已在运行时直接返回当前循环"""
        if self._task is not None and not self._task.done():
            return self._task
        self.server_url = server_url
        self._closing = False
        self.attempts = 0
        self._task = asyncio.get_running_loop().create_task(self._run(server_url), name="push-channel")
        return self._task

    async def disconnect(self) -> None:
        self._closing = True
        task, self._task = self._task, None
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except WebSocketException as e:
                logger.debug(f"关闭推送连接时出错: {e}")
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(ConnectionState.DISCONNECTED)

    async def main_loop(self, shutdown_event: asyncio.Event, server_url: str) -> None:
        """随进程运行, shutdown_event 置位后断开"""
        self.connect(server_url)
        await shutdown_event.wait()
        await self.disconnect()

    async def send(self, event: str, data: Any) -> None:
        ws = self._ws
        if ws is None or not self.is_connected:
            raise ChannelError(f"推送通道未连接, 无法发送 {event}")
        await ws.send(encode_frame(event, data))

    # ----------------- 连接循环 ----------------
    async def _run(self, url: str) -> None:
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING if self.attempts == 0 else ConnectionState.RECONNECTING)
            server_closed = False
            try:
                async with self._connector(url) as ws:
                    self._ws = ws
                    self.attempts = 0
                    self._set_state(ConnectionState.CONNECTED)
                    await ws.send(encode_frame("register", self.subject_id))
                    logger.info(f"推送通道已连接并注册: subject={self.subject_id}")

                    async for raw in ws:
                        self._handle_frame(raw)
                    # 迭代正常结束说明收到了服务端的关闭帧
                    server_closed = True
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"推送通道连接失败或中断: {e}")
            except Exception as e:
                logger.opt(exception=e).error(f"推送通道发生未知错误: {e}")
            finally:
                self._ws = None

            if self._closing:
                break

            self.attempts += 1
            runtime_metrics.record_reconnect()
            if self.attempts > self.max_attempts:
                logger.error(f"推送通道重连 {self.max_attempts} 次均失败, 停止重连")
                self._set_state(ConnectionState.DISCONNECTED)
                return

            self._set_state(ConnectionState.RECONNECTING)
            if server_closed:
                logger.info("推送服务器主动关闭连接, 立即重连")
                continue
            delay = min(self.base_delay * self.attempts, self.max_delay)
            logger.info(f"{delay:.1f}s 后进行第 {self.attempts} 次重连")
            await self._sleep(delay)

        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        was_connected = self._state == ConnectionState.CONNECTED
        self._state = state
        logger.debug(f"推送通道状态: {state.value}")
        if state == ConnectionState.CONNECTED:
            self.emitter.emit(E.PUSH_CONNECTION_CHANGED, True)
        elif was_connected or state == ConnectionState.DISCONNECTED:
            self.emitter.emit(E.PUSH_CONNECTION_CHANGED, False)

    def _handle_frame(self, raw: Any) -> None:
        try:
            envelope = decode_frame(raw)
            event = to_push_event(envelope)
        except InvalidFrame as e:
            runtime_metrics.record_invalid_event()
            logger.warning(f"丢弃无法解析的推送帧: {e}")
            return
        if event is None:
            logger.debug(f"忽略未知推送事件: {envelope.event}")
            return
        runtime_metrics.record_push()
        self.emitter.emit(E.PUSH_EVENT_RECEIVED, event)
