"""端到端场景: 调度器 / 推送通道 -> 投递队列 -> 展示 + 通知存储"""

import asyncio
import json

import pytest

from capabilities.headless import LogNotificationRenderer, StaticPermissionService, WaveAudioOutput
from channels.push_ws import PushChannel
from conftest import TZ, FakeBackend, FakeConnector, FakeSocket, WallClock, at
from core.delivery_queue import DeliveryQueue
from core.pipeline import NotificationPipeline
from core.presentation import PresentationManager
from datamodel import Permission, ReminderEvent, ReminderKind, SchedulerSignal
from events import E
from metrics import runtime_metrics
from storage.notification_store import NotificationStore
from world.rules import AttendanceRule, AttendanceWindow
from world.scheduler import ReminderScheduler

APPROVED = json.dumps({
    "event": "request-approved",
    "data": {
        "type": "leave",
        "requestId": 42,
        "timestamp": "2026-03-05T04:30:00Z",
        "data": {"leaveType": "Casual Leave", "numberOfDays": 2, "approvedBy": "HR"},
    },
})


def _presentation(emitter, renderer, permission=Permission.GRANTED, paths=()):
    return PresentationManager(
        WaveAudioOutput(), renderer, StaticPermissionService(permission), emitter=emitter, candidate_paths=paths
    )


@pytest.mark.asyncio
async def test_burst_of_reminders_is_spaced_and_numbered(emitter, fake_clock, wav_file):
    renderer = LogNotificationRenderer()
    queue = DeliveryQueue(
        _presentation(emitter, renderer, paths=[wav_file]),
        emitter=emitter,
        clock=fake_clock,
        sleep=fake_clock.sleep,
        wall_clock=WallClock(at(10, 0)),
        timezone=TZ,
    )

    def post(message):
        if message["type"] == SchedulerSignal.REMINDER.value:
            queue.enqueue(ReminderEvent.from_message(message))

    # 三个考勤窗口在同一次检查中到期
    windows = [
        AttendanceWindow(f"SHIFT_{i}", f"shift_{i}", "10:00", "MORNING", f"Shift {i}", "⏰", "Please mark attendance")
        for i in (1, 2, 3)
    ]

    async def fetch(url, params):
        return {"status": True, "data": None}

    scheduler = ReminderScheduler(AttendanceRule(TZ, windows), post, fetch=fetch, clock=WallClock(at(10, 0)))
    scheduler.configure("http://crm/api/attendance", "E1")
    emitted = await scheduler.tick()
    assert [e.kind for e in emitted] == [ReminderKind.DUE] * 3

    queue.start()
    await queue.join()

    assert fake_clock.sleeps == [5.0, 5.0]
    bodies = [shown.body for shown in renderer.visible.values()]
    assert len(bodies) == 3
    for position, body in enumerate(bodies, start=1):
        assert body.endswith(f"Notification {position} of 3")
    assert runtime_metrics.delivered_count == 3


@pytest.mark.asyncio
async def test_duplicate_push_across_reconnect_is_delivered_once(emitter):
    backend = FakeBackend()
    renderer = LogNotificationRenderer()
    store = NotificationStore(backend, "E1", emitter=emitter)
    presentation = _presentation(emitter, renderer)

    async def no_wait(seconds):
        return None

    channel = PushChannel(
        "E1",
        emitter=emitter,
        max_attempts=1,
        connector=FakeConnector([FakeSocket([APPROVED]), FakeSocket([APPROVED])]),
        sleep=no_wait,
    )
    pipeline = NotificationPipeline(
        "E1",
        queue=DeliveryQueue(presentation, store, emitter=emitter, sleep=no_wait),
        store=store,
        presentation=presentation,
        channel=channel,
        push_server_url="ws://crm/ws",
        emitter=emitter,
    )

    await pipeline.start()
    # 通道已经在运行, connect 返回同一个任务
    await asyncio.wait_for(channel.connect("ws://crm/ws"), timeout=5)
    await pipeline.queue.join()
    await store.flush()

    assert runtime_metrics.push_received_count == 2
    assert runtime_metrics.duplicate_dropped_count == 1
    assert [c for c in backend.calls if c[0] == "save"] == [("save", "E1", "leave_42_approved")]
    assert list(renderer.visible) == ["push-leave_42_approved"]

    # 点击通知即标记已读
    assert renderer.click("push-leave_42_approved") is True
    assert store.unread_count == 0
    await store.flush()
    assert ("mark_read", "E1", "leave_42_approved") in backend.calls

    await pipeline.stop()
    assert backend.closed


@pytest.mark.asyncio
async def test_denied_permission_still_records_push(emitter):
    backend = FakeBackend()
    renderer = LogNotificationRenderer()
    store = NotificationStore(backend, "E1", emitter=emitter)
    queue = DeliveryQueue(_presentation(emitter, renderer, Permission.DENIED), store, emitter=emitter)

    received = []
    emitter.on(E.NOTIFICATION_DELIVERED, lambda entry, presented: received.append(presented))

    channel = PushChannel("E1", emitter=emitter, max_attempts=0, connector=FakeConnector([FakeSocket([APPROVED])]))
    emitter.on(E.PUSH_EVENT_RECEIVED, queue.enqueue)

    queue.start()
    await asyncio.wait_for(channel.connect("ws://crm/ws"), timeout=5)
    await queue.join()
    await store.flush()

    assert renderer.visible == {}
    assert received == [False]
    assert [n.id for n in store.notifications] == ["leave_42_approved"]
    assert store.unread_count == 1
    assert runtime_metrics.presentation_skipped_count == 1
