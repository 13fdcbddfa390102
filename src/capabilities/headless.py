"""无界面环境下的默认平台实现

可见通知写入日志, 音频只做加载与解码校验不真正出声。桌面/浏览器宿主应注入自己的实现。
"""

from __future__ import annotations

import asyncio
import io
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from capabilities.base import *
from datamodel import Permission
from logger import logger

__all__ = ["StaticPermissionService", "LogNotificationRenderer", "LoggedNotification",
           "WaveAudioOutput", "DecodedSound"]


class StaticPermissionService(PermissionService):
    """权限状态来自配置; 处于 default 时, request() 返回预设的答复"""

    def __init__(self, state: Permission = Permission.DEFAULT, answer: Permission = Permission.GRANTED) -> None:
        self._state = state
        self._answer = answer
        self.request_count = 0

    async def query(self) -> Permission:
        return self._state

    async def request(self) -> Permission:
        self.request_count += 1
        if self._state == Permission.DEFAULT:
            self._state = self._answer
        return self._state


class LoggedNotification(RenderedNotification):
    def __init__(self, renderer: "LogNotificationRenderer", tag: str, title: str, body: str,
                 on_click: Callable[[], None], data: dict[str, Any] | None) -> None:
        self._renderer = renderer
        self.tag = tag
        self.title = title
        self.body = body
        self.data = data or {}
        self.on_click = on_click
        self.require_interaction = False
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._renderer._forget(self)


class LogNotificationRenderer(NotificationRenderer):
    def __init__(self) -> None:
        self.visible: dict[str, LoggedNotification] = {}
        self.focus_count = 0

    def render(
        self,
        title: str,
        body: str,
        *,
        icon: str | None,
        tag: str,
        on_click: Callable[[], None],
        require_interaction: bool = False,
        auto_close_seconds: float | None = None,
        data: Optional[dict[str, Any]] = None,
    ) -> LoggedNotification:
        previous = self.visible.get(tag)
        if previous is not None:
            # 同 tag 的通知被替换而不是叠加
            previous.closed = True
        shown = LoggedNotification(self, tag, title, body, on_click, data)
        shown.require_interaction = require_interaction
        self.visible[tag] = shown
        if auto_close_seconds and not require_interaction:
            try:
                asyncio.get_running_loop().call_later(auto_close_seconds, shown.close)
            except RuntimeError:
                # 没有运行中的事件循环时不自动关闭
                pass
        logger.info(f"[通知] {title} | {body.replace(chr(10), ' / ')} (tag={tag})")
        return shown

    def focus_app(self) -> None:
        self.focus_count += 1

    def click(self, tag: str) -> bool:
        shown = self.visible.get(tag)
        if shown is None:
            return False
        shown.on_click()
        return True

    def _forget(self, shown: LoggedNotification) -> None:
        if self.visible.get(shown.tag) is shown:
            del self.visible[shown.tag]


@dataclass
class DecodedSound:
    channels: int
    sample_rate: int
    frames: int

    @property
    def duration_seconds(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0


class _WaveContext(AudioContextHandle):
    def __init__(self, start_suspended: bool) -> None:
        self._suspended = start_suspended
        self.gesture_seen = False
        self.played = 0

    @property
    def suspended(self) -> bool:
        return self._suspended

    async def resume(self) -> None:
        if not self.gesture_seen:
            raise RuntimeError("音频上下文需要用户手势才能恢复")
        self._suspended = False

    async def decode(self, data: bytes) -> DecodedSound:
        with wave.open(io.BytesIO(data), "rb") as wav:
            return DecodedSound(wav.getnchannels(), wav.getframerate(), wav.getnframes())

    def play(self, buffer: DecodedSound, volume: float) -> None:
        self.played += 1
        logger.trace(f"播放提示音: {buffer.duration_seconds:.2f}s, volume={volume}")

    async def close(self) -> None:
        self._suspended = True


class _WaveElement(AudioElementHandle):
    def __init__(self, location: str, volume: float) -> None:
        self.location = location
        self.volume = volume

    async def play(self) -> None:
        logger.trace(f"播放提示音 (回退元素): {self.location}")


class WaveAudioOutput(AudioOutput):
    """从磁盘或 HTTP 加载 WAV 资源; start_suspended 模拟自动播放限制"""

    def __init__(self, start_suspended: bool = False, http_timeout: float = 10.0) -> None:
        self.start_suspended = start_suspended
        self.http_timeout = http_timeout
        self.contexts: list[_WaveContext] = []

    def create_context(self) -> _WaveContext:
        ctx = _WaveContext(self.start_suspended)
        self.contexts.append(ctx)
        return ctx

    async def fetch(self, location: str) -> bytes:
        if location.startswith(("http://", "https://")):
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                response = await client.get(location)
                response.raise_for_status()
                return response.content
        path = Path(location)
        return await asyncio.to_thread(path.read_bytes)

    def create_element(self, location: str, volume: float) -> _WaveElement:
        return _WaveElement(location, volume)

    def user_gesture(self) -> None:
        for ctx in self.contexts:
            ctx.gesture_seen = True
