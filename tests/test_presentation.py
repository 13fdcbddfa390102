import asyncio

import pytest

from capabilities.headless import LogNotificationRenderer, StaticPermissionService, WaveAudioOutput
from conftest import HangingResumeAudio
from core.presentation import PresentationManager
from datamodel import AudioState, Permission
from events import E


class NoContextAudio(WaveAudioOutput):
    def create_context(self):
        raise RuntimeError("low latency audio unavailable")


def _manager(emitter, audio, paths, permission=Permission.GRANTED, answer=Permission.GRANTED, **kwargs):
    renderer = LogNotificationRenderer()
    permissions = StaticPermissionService(permission, answer)
    manager = PresentationManager(audio, renderer, permissions, emitter=emitter, candidate_paths=paths, **kwargs)
    return manager, renderer, permissions


class TestAudio:
    @pytest.mark.asyncio
    async def test_prepare_is_idempotent(self, emitter, wav_file):
        audio = WaveAudioOutput()
        manager, _, _ = _manager(emitter, audio, ["missing.wav", wav_file])

        assert manager.state == AudioState.UNINITIALIZED
        assert await manager.prepare() is True
        assert manager.state == AudioState.READY
        assert await manager.prepare() is True
        assert len(audio.contexts) == 1

        assert await manager.play() is True
        assert audio.contexts[0].played == 1

    @pytest.mark.asyncio
    async def test_suspended_until_user_gesture(self, emitter, wav_file):
        audio = WaveAudioOutput(start_suspended=True)
        manager, _, _ = _manager(emitter, audio, [wav_file])

        assert await manager.prepare() is True
        assert manager.state == AudioState.SUSPENDED
        assert await manager.play() is False
        assert manager.state == AudioState.SUSPENDED

        audio.user_gesture()
        assert await manager.on_user_gesture() is True
        assert manager.state == AudioState.READY
        assert await manager.play() is True
        # 只响应第一次用户交互
        assert await manager.on_user_gesture() is False

    @pytest.mark.asyncio
    async def test_play_gives_up_when_resume_never_returns(self, emitter, wav_file):
        manager, _, _ = _manager(emitter, HangingResumeAudio(start_suspended=True), [wav_file],
                                 resume_timeout=0.05)
        assert await manager.prepare() is True
        assert manager.state == AudioState.SUSPENDED

        assert await asyncio.wait_for(manager.play(), timeout=2) is False
        assert manager.state == AudioState.SUSPENDED
        # 用户交互同样有时限
        assert await asyncio.wait_for(manager.on_user_gesture(), timeout=2) is False
        assert manager.state == AudioState.SUSPENDED

    @pytest.mark.asyncio
    async def test_gesture_before_suspension_is_not_consumed(self, emitter, wav_file):
        audio = WaveAudioOutput(start_suspended=True)
        manager, _, _ = _manager(emitter, audio, [wav_file])

        # 还没有加载时的交互不算数
        assert await manager.on_user_gesture() is False
        assert await manager.prepare() is True
        assert manager.state == AudioState.SUSPENDED

        audio.user_gesture()
        assert await manager.on_user_gesture() is True
        assert manager.state == AudioState.READY

    @pytest.mark.asyncio
    async def test_falls_back_to_simple_element(self, emitter, wav_file):
        manager, _, _ = _manager(emitter, NoContextAudio(), [wav_file])
        assert await manager.prepare() is True
        assert manager.state == AudioState.READY
        assert await manager.play() is True

    @pytest.mark.asyncio
    async def test_no_asset_leaves_audio_uninitialized(self, emitter, tmp_path):
        manager, _, _ = _manager(emitter, WaveAudioOutput(), [str(tmp_path / "nope.wav")])
        assert await manager.prepare() is False
        assert manager.state == AudioState.UNINITIALIZED
        assert await manager.play() is False


class TestPresent:
    @pytest.mark.asyncio
    async def test_permission_requested_once_and_denial_skips(self, emitter):
        manager, renderer, permissions = _manager(
            emitter, WaveAudioOutput(), [], permission=Permission.DEFAULT, answer=Permission.DENIED
        )
        assert await manager.present("t", "b", {}, tag="a") is False
        assert await manager.present("t", "b", {}, tag="b") is False
        assert permissions.request_count == 1
        assert renderer.visible == {}

    @pytest.mark.asyncio
    async def test_click_focuses_app_and_emits_metadata(self, emitter):
        clicked = []
        emitter.on(E.NOTIFICATION_CLICKED, clicked.append)
        manager, renderer, _ = _manager(emitter, WaveAudioOutput(), [])

        metadata = {"source": "push", "correlationId": "leave_42_approved"}
        assert await manager.present("✅ Request Approved!", "body", metadata, tag="push-1",
                                     require_interaction=True) is True
        shown = renderer.visible["push-1"]
        assert shown.require_interaction is True

        assert renderer.click("push-1") is True
        assert renderer.focus_count == 1
        assert clicked == [metadata]
        assert shown.closed
        assert "push-1" not in renderer.visible

    @pytest.mark.asyncio
    async def test_same_tag_replaces_notification(self, emitter):
        manager, renderer, _ = _manager(emitter, WaveAudioOutput(), [])
        await manager.present("first", "b", {}, tag="same")
        await manager.present("second", "b", {}, tag="same")
        assert list(renderer.visible) == ["same"]
        assert renderer.visible["same"].title == "second"
