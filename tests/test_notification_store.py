import asyncio

import pytest

from conftest import FakeBackend
from datamodel import Notification
from events import E
from metrics import runtime_metrics
from storage.notification_store import NotificationStore


def _n(notification_id, read=False):
    return Notification(id=notification_id, type="leave", title="t", body="b", read=read)


@pytest.mark.asyncio
async def test_mark_read_is_optimistic(fake_backend, emitter):
    store = NotificationStore(fake_backend, "E1", emitter=emitter)
    store.record(_n("n1"))
    store.record(_n("n2"))
    assert store.unread_count == 2

    assert store.mark_read("n1") is True
    # 内存先变, 后端调用还没发生
    assert store.unread_count == 1
    assert store.get("n1").read is True

    await store.flush()
    assert ("mark_read", "E1", "n1") in fake_backend.calls
    assert [c[0] for c in fake_backend.calls] == ["save", "save", "mark_read"]


@pytest.mark.asyncio
async def test_backend_failure_is_not_rolled_back(fake_backend, emitter):
    store = NotificationStore(fake_backend, "E1", emitter=emitter)
    store.record(_n("n1"))
    fake_backend.fail_ops = {"mark_read", "delete"}

    store.mark_read("n1")
    await store.flush()
    assert store.unread_count == 0

    store.record(_n("n2"))
    store.delete("n2")
    await store.flush()
    assert store.get("n2") is None
    assert runtime_metrics.sync_failure_count == 2


@pytest.mark.asyncio
async def test_record_ignores_duplicate_ids(fake_backend, emitter):
    recorded = []
    emitter.on(E.NOTIFICATION_RECORDED, recorded.append)
    store = NotificationStore(fake_backend, "E1", emitter=emitter)

    assert store.record(_n("leave_42_approved")) is True
    assert store.record(_n("leave_42_approved")) is False
    await store.flush()

    assert len(store.notifications) == 1
    assert len(recorded) == 1
    assert fake_backend.calls == [("save", "E1", "leave_42_approved")]


@pytest.mark.asyncio
async def test_newest_first_and_clear_all(fake_backend, emitter):
    store = NotificationStore(fake_backend, "E1", emitter=emitter)
    store.record(_n("a"))
    store.record(_n("b"))
    assert [n.id for n in store.notifications] == ["b", "a"]

    assert store.clear_all() == 2
    assert store.notifications == ()
    assert store.unread_count == 0
    await store.aclose()
    assert ("clear_all", "E1") in fake_backend.calls
    assert fake_backend.closed


@pytest.mark.asyncio
async def test_load_replaces_and_keeps_state_on_failure(fake_backend, emitter):
    fake_backend.notifications = [
        {"id": "x1", "type": "leave", "title": "Approved", "read": True},
        {"id": "x2", "type": "task", "title": "New task", "data": "not-a-dict"},
        {"title": "no id"},
    ]
    store = NotificationStore(fake_backend, "E1", emitter=emitter)

    assert await store.load() is True
    assert [n.id for n in store.notifications] == ["x1", "x2"]
    assert store.unread_count == 1
    assert store.get("x2").data == {}

    fake_backend.fail_ops = {"fetch_all"}
    assert await store.load() is False
    assert [n.id for n in store.notifications] == ["x1", "x2"]
    assert store.last_error


class SlowSaveBackend(FakeBackend):
    """save 卡在 gate 上, 直到测试放行"""

    def __init__(self, notifications=None):
        super().__init__(notifications)
        self.gate = asyncio.Event()

    async def save(self, subject_id, notification):
        await self.gate.wait()
        await super().save(subject_id, notification)


@pytest.mark.asyncio
async def test_load_keeps_notification_whose_save_is_in_flight(emitter):
    backend = SlowSaveBackend([{"id": "x1", "type": "leave", "title": "Approved"}])
    store = NotificationStore(backend, "E1", emitter=emitter, load_flush_timeout=0.05)

    store.record(_n("n1"))
    assert await asyncio.wait_for(store.load(), timeout=2) is True
    # 后端还没有 n1, 但它不能被重新加载冲掉
    assert [n.id for n in store.notifications] == ["n1", "x1"]

    backend.gate.set()
    await store.flush()
    assert ("save", "E1", "n1") in backend.calls


@pytest.mark.asyncio
async def test_load_waits_for_pending_saves(fake_backend, emitter):
    store = NotificationStore(fake_backend, "E1", emitter=emitter)
    store.record(_n("n1"))

    assert await store.load() is True
    assert [c[0] for c in fake_backend.calls] == ["save", "fetch_all"]
