"""提示音与可见通知

音频状态机:
    UNINITIALIZED -> LOADING -> READY
                              -> SUSPENDED -> READY (用户手势后恢复)
    LOADING 失败时回到 UNINITIALIZED, 下次 play() 会重新尝试加载。

声音是尽力而为的: play() 永远不抛异常, 失败只返回 False。
可见通知需要权限; 权限处于 default 时只请求一次, 被拒绝后只记录一次日志并跳过。
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

from capabilities.base import *
from datamodel import AudioState, Permission
from events import E, Bus, bus
from logger import log_once, logger

__all__ = ["PresentationManager", "AudioError"]


class AudioError(Exception):
    pass


_ALLOWED_TRANSITIONS: dict[AudioState, set[AudioState]] = {
    AudioState.UNINITIALIZED: {AudioState.LOADING},
    AudioState.LOADING: {AudioState.READY, AudioState.SUSPENDED, AudioState.UNINITIALIZED},
    AudioState.SUSPENDED: {AudioState.READY, AudioState.UNINITIALIZED},
    AudioState.READY: {AudioState.SUSPENDED, AudioState.UNINITIALIZED},
}


class PresentationManager:
    def __init__(
        self,
        audio: AudioOutput,
        renderer: NotificationRenderer,
        permissions: PermissionService,
        emitter: Bus = bus,
        candidate_paths: Iterable[str] = (),
        volume: float = 0.7,
        icon: str | None = None,
        auto_close_seconds: float = 10.0,
        resume_timeout: float = 1.0,
    ) -> None:
        self.audio = audio
        self.renderer = renderer
        self.permissions = permissions
        self.emitter = emitter
        self.candidate_paths = list(candidate_paths)
        self.volume = volume
        self.icon = icon
        self.auto_close_seconds = auto_close_seconds
        self.resume_timeout = resume_timeout

        self._state = AudioState.UNINITIALIZED
        self._context: AudioContextHandle | None = None
        self._buffer: Any = None
        self._element: AudioElementHandle | None = None
        self._prepare_task: asyncio.Task | None = None
        self._gesture_armed = False  # 进入 SUSPENDED 时才等待用户手势
        self._permission_requested = False

    @property
    def state(self) -> AudioState:
        return self._state

    def _transition(self, new_state: AudioState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise AudioError(f"非法的音频状态转换: {self._state.value} -> {new_state.value}")
        logger.trace(f"音频状态: {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._gesture_armed = new_state == AudioState.SUSPENDED

    # ----------------- 音频 ----------------
    async def prepare(self) -> bool:
        """加载提示音; 重复调用是幂等的, 并发调用共享同一次加载"""
        if self._state in (AudioState.READY, AudioState.SUSPENDED):
            return True
        if self._prepare_task is None or self._prepare_task.done():
            self._prepare_task = asyncio.get_running_loop().create_task(self._load())
        try:
            return await asyncio.shield(self._prepare_task)
        except AudioError as e:
            logger.error(f"加载提示音时状态异常: {e}")
            return False

    async def _load(self) -> bool:
        self._transition(AudioState.LOADING)
        try:
            context = self.audio.create_context()
        except Exception as e:
            # 低延迟音频不可用, 退回到简单的播放元素
            logger.info(f"无法创建音频上下文, 使用回退播放方式: {e}")
            return self._load_element()

        for location in self.candidate_paths:
            try:
                data = await self.audio.fetch(location)
                buffer = await context.decode(data)
            except Exception as e:
                logger.debug(f"提示音加载失败, 尝试下一个: {location}: {e}")
                continue
            self._context = context
            self._buffer = buffer
            self._transition(AudioState.SUSPENDED if context.suspended else AudioState.READY)
            logger.info(f"提示音已加载: {location} ({self._state.value})")
            return True

        await context.close()
        log_once("audio-no-asset", "WARNING", f"所有候选提示音都无法加载: {self.candidate_paths}")
        self._transition(AudioState.UNINITIALIZED)
        return False

    def _load_element(self) -> bool:
        if not self.candidate_paths:
            self._transition(AudioState.UNINITIALIZED)
            return False
        try:
            self._element = self.audio.create_element(self.candidate_paths[0], self.volume)
        except Exception as e:
            log_once("audio-element", "WARNING", f"回退播放元素也无法创建, 将静音运行: {e}")
            self._transition(AudioState.UNINITIALIZED)
            return False
        self._transition(AudioState.READY)
        return True

    async def play(self) -> bool:
        try:
            if self._state in (AudioState.UNINITIALIZED, AudioState.LOADING):
                if not await self.prepare():
                    return False

            if self._state == AudioState.SUSPENDED:
                if not await self._resume(self.resume_timeout):
                    return False

            if self._element is not None:
                await self._element.play()
            else:
                self._context.play(self._buffer, self.volume)
            return True
        except Exception as e:
            logger.warning(f"播放提示音失败: {e}")
            return False

    async def _resume(self, timeout: float | None = None) -> bool:
        """恢复被挂起的上下文; 没有用户手势时 resume 可能永远不返回, 所以必须限时"""
        try:
            await asyncio.wait_for(self._context.resume(), timeout=timeout)
        except asyncio.TimeoutError:
            log_once("audio-suspended", "WARNING", "音频被自动播放策略挂起, 等待用户交互后恢复")
            return False
        except Exception as e:
            log_once("audio-suspended", "WARNING", f"音频被自动播放策略挂起, 等待用户交互后恢复: {e}")
            return False
        if self._context.suspended:
            return False
        self._transition(AudioState.READY)
        return True

    async def on_user_gesture(self) -> bool:
        """每次进入 SUSPENDED 后, 第一次用户交互尝试恢复音频; 其余调用不做任何事"""
        if self._state != AudioState.SUSPENDED or not self._gesture_armed:
            return False
        self._gesture_armed = False
        if await self._resume(self.resume_timeout):
            return True
        # 这次交互没能恢复, 等下一次
        self._gesture_armed = self._state == AudioState.SUSPENDED
        return False

    async def aclose(self) -> None:
        if self._prepare_task is not None and not self._prepare_task.done():
            self._prepare_task.cancel()
        if self._context is not None:
            await self._context.close()
        self._context = None
        self._buffer = None
        self._element = None
        self._state = AudioState.UNINITIALIZED
        self._gesture_armed = False

    # ----------------- 可见通知 ----------------
    async def _ensure_permission(self) -> bool:
        permission = await self.permissions.query()
        if permission == Permission.DEFAULT and not self._permission_requested:
            self._permission_requested = True
            permission = await self.permissions.request()
            logger.info(f"通知权限请求结果: {permission.value}")
        if permission != Permission.GRANTED:
            log_once("notification-permission", "WARNING", f"没有通知权限 ({permission.value}), 可见通知将被跳过")
            return False
        return True

    async def present(
        self,
        title: str,
        body: str,
        metadata: dict[str, Any],
        *,
        tag: str,
        require_interaction: bool = False,
    ) -> bool:
        try:
            if not await self._ensure_permission():
                return False
        except Exception as e:
            logger.warning(f"查询通知权限失败: {e}")
            return False

        shown: list[RenderedNotification] = []

        def on_click() -> None:
            self.renderer.focus_app()
            self.emitter.emit(E.NOTIFICATION_CLICKED, metadata)
            if shown:
                shown[0].close()

        try:
            shown.append(self.renderer.render(
                title,
                body,
                icon=self.icon,
                tag=tag,
                on_click=on_click,
                require_interaction=require_interaction,
                auto_close_seconds=None if require_interaction else self.auto_close_seconds,
                data=metadata,
            ))
        except Exception as e:
            logger.warning(f"显示通知失败: {title}: {e}")
            return False
        return True
