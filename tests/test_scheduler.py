import asyncio

import pytest

from conftest import TZ, WallClock, at
from datamodel import ReminderKind, SchedulerSignal
from world.rules import CalendarRule, TaskDeadlineRule
from world.scheduler import ReminderScheduler, SchedulerError

EVENT = {"id": 7, "title": "Standup", "date": "2026-03-05", "startTime": "10:00", "employeeID": "E1"}


class FakeSource:
    def __init__(self, payload=None):
        self.payload = payload if payload is not None else {"data": [EVENT]}
        self.fail = False
        self.requests: list[tuple] = []

    async def __call__(self, url, params):
        self.requests.append((url, params))
        if self.fail:
            raise SchedulerError("connection refused")
        return self.payload


def _scheduler(clock, source, posted):
    scheduler = ReminderScheduler(CalendarRule(TZ), posted.append, fetch=source, clock=clock)
    scheduler.configure("http://crm/api/calendar", "E1")
    return scheduler


def _reminders(posted):
    return [m for m in posted if m["type"] == SchedulerSignal.REMINDER.value]


@pytest.mark.asyncio
async def test_stages_are_emitted_once_in_order():
    clock = WallClock(at(9, 49))
    posted = []
    scheduler = _scheduler(clock, FakeSource(), posted)

    kinds = []
    for minute in [(9, 49), (9, 50), (9, 55), (10, 0), (10, 5), (10, 10), (10, 11)]:
        clock.now = at(*minute)
        kinds.append([e.kind for e in await scheduler.tick()])

    assert kinds == [
        [],
        [ReminderKind.UPCOMING],
        [],
        [ReminderKind.DUE],
        [],
        [ReminderKind.MISSED],
        [],
    ]
    messages = _reminders(posted)
    assert [m["kind"] for m in messages] == ["UPCOMING", "DUE", "MISSED"]
    assert messages[0]["subjectId"] == "7"
    assert messages[0]["domain"] == "calendar"


@pytest.mark.asyncio
async def test_late_start_emits_only_highest_stage():
    clock = WallClock(at(10, 12))
    posted = []
    scheduler = _scheduler(clock, FakeSource(), posted)

    events = await scheduler.tick()
    assert [e.kind for e in events] == [ReminderKind.MISSED]
    assert await scheduler.tick() == []


@pytest.mark.asyncio
async def test_emitted_stages_reset_on_new_day():
    # 逾期任务的 scheduled_time 不变, 每天重新提醒一次
    task = {"taskId": 11, "taskName": "Ship report", "endDate": "2026-03-02", "assignedTo": {"employeeId": "E1"}}
    clock = WallClock(at(9, 0))
    posted = []
    scheduler = ReminderScheduler(TaskDeadlineRule(TZ), posted.append, fetch=FakeSource({"success": True, "data": [task]}), clock=clock)
    scheduler.configure("http://crm/api/tasks", "E1")

    assert [e.kind for e in await scheduler.tick()] == [ReminderKind.MISSED]
    assert await scheduler.tick() == []

    clock.now = at(9, 0, day=6)
    events = await scheduler.tick()
    assert [e.kind for e in events] == [ReminderKind.MISSED]
    assert events[0].payload["daysOverdue"] == 4


@pytest.mark.asyncio
async def test_consecutive_failures_escalate_once_and_keep_cached_data():
    clock = WallClock(at(9, 0))
    source = FakeSource()
    posted = []
    scheduler = _scheduler(clock, source, posted)
    await scheduler.tick()

    source.fail = True
    for _ in range(4):
        await scheduler.tick()
    errors = [m for m in posted if m["type"] == SchedulerSignal.ERROR.value]
    assert len(errors) == 1
    assert scheduler.consecutive_errors == 4

    # 拉取失败时仍然按缓存的数据提醒
    clock.now = at(10, 0)
    events = await scheduler.tick()
    assert [e.kind for e in events] == [ReminderKind.DUE]

    source.fail = False
    await scheduler.tick()
    assert scheduler.consecutive_errors == 0


@pytest.mark.asyncio
async def test_start_and_stop_messages():
    clock = WallClock(at(10, 0))
    source = FakeSource()
    posted = []
    scheduler = ReminderScheduler(CalendarRule(TZ), posted.append, fetch=source, clock=clock)

    await scheduler.handle({
        "action": "start",
        "dataSourceUrl": "http://crm/api/calendar",
        "subjectId": "E1",
        "config": {"checkIntervalMs": 60000},
    })
    assert posted[0]["type"] == "STARTED"
    assert scheduler.running
    assert scheduler.check_interval == 60.0

    for _ in range(5):
        await asyncio.sleep(0)
    assert [m["kind"] for m in _reminders(posted)] == ["DUE"]

    await scheduler.handle({"action": "updateInterval", "interval": 30000})
    assert scheduler.check_interval == 30.0

    await scheduler.handle({"action": "stop"})
    assert posted[-1]["type"] == "STOPPED"
    assert not scheduler.running


@pytest.mark.asyncio
async def test_start_without_subject_reports_error():
    posted = []
    scheduler = ReminderScheduler(CalendarRule(TZ), posted.append, fetch=FakeSource())

    await scheduler.handle({"action": "start", "dataSourceUrl": "http://crm/api/calendar"})

    assert [m["type"] for m in posted] == ["ERROR"]
    assert not scheduler.running


@pytest.mark.asyncio
async def test_tick_requires_configuration():
    scheduler = ReminderScheduler(CalendarRule(TZ), lambda m: None, fetch=FakeSource())
    with pytest.raises(SchedulerError):
        await scheduler.tick()


@pytest.mark.asyncio
async def test_stop_right_after_interval_update_ends_the_loop():
    clock = WallClock(at(8, 0))
    source = FakeSource()
    posted = []
    scheduler = ReminderScheduler(CalendarRule(TZ), posted.append, fetch=source, clock=clock)

    await scheduler.handle({
        "action": "start",
        "dataSourceUrl": "http://crm/api/calendar",
        "subjectId": "E1",
        "config": {"checkIntervalMs": 60000},
    })
    for _ in range(3):
        await asyncio.sleep(0)

    # 间隔更新会唤醒等待中的循环, stop 紧随其后也必须能结束
    await scheduler.handle({"action": "updateInterval", "interval": 30000})
    await asyncio.wait_for(scheduler.handle({"action": "stop"}), timeout=2)

    assert not scheduler.running
    assert posted[-1]["type"] == "STOPPED"
    fetched = len(source.requests)
    for _ in range(5):
        await asyncio.sleep(0)
    assert len(source.requests) == fetched
