"""提醒规则

每条规则把数据源返回的原始记录转换成若干 Subject。一个 Subject 带有按顺序排列的阈值
(UPCOMING -> DUE -> MISSED), 调度器每次检查时只关心"当前已经越过的最高阶段"。
截止时间、提前量、考勤窗口都是注入的配置, 不写死在规则里。
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo

from datamodel import ReminderKind
from logger import logger
from utils import combine_local, parse_date, parse_hhmm

__all__ = [
    "Subject", "ReminderRule",
    "CalendarRule", "AttendanceRule", "AttendanceWindow", "DEFAULT_ATTENDANCE_WINDOWS",
    "TaskDeadlineRule",
]


@dataclass
class Subject:
    subject_id: str
    scheduled_time: datetime
    thresholds: list[tuple[ReminderKind, datetime]]  # 按阶段顺序排列
    payload: dict[str, Any] = field(default_factory=dict)
    valid_until: datetime | None = None  # 超过该时间后不再产生任何提醒

    def reached(self, now: datetime) -> ReminderKind | None:
        """返回 now 时刻已越过的最高阶段"""
        if self.valid_until is not None and now >= self.valid_until:
            return None
        reached: ReminderKind | None = None
        for kind, at in self.thresholds:
            if now >= at:
                reached = kind
        return reached


def _end_of_day(day: date, tz: str) -> datetime:
    return combine_local(day + timedelta(days=1), time(0, 0), tz)


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


class ReminderRule(ABC):
    domain: str = ""

    def __init__(self, timezone: str) -> None:
        self.timezone = timezone
        ZoneInfo(timezone)  # 非法时区尽早失败

    def request_params(self, subject_id: str, now: datetime) -> dict[str, str]:
        """附加在数据源 URL 上的查询参数"""
        return {}

    def extract_records(self, raw: Any) -> list[dict[str, Any]]:
        """从响应信封中取出记录列表, 兼容 [..] / {data: [..]} / {events: [..]}"""
        if isinstance(raw, list):
            items = raw
        elif isinstance(raw, dict):
            items = raw.get("data")
            if not isinstance(items, list):
                items = raw.get("events")
            if not isinstance(items, list):
                items = []
        else:
            items = []
        return [item for item in items if isinstance(item, dict)]

    @abstractmethod
    def subjects(self, records: list[dict[str, Any]], subject_id: str, now: datetime) -> list[Subject]:
        pass


# ----------------- 日历事件 ----------------
class CalendarRule(ReminderRule):
    """日历事件: 开始前 lead 分钟 UPCOMING, 开始时 DUE, 开始后 grace 分钟 MISSED"""

    domain = "calendar"
    _CLOSED_STATUSES = ("Completed", "Cancelled")

    def __init__(self, timezone: str, lead_minutes: int = 10, grace_minutes: int = 10) -> None:
        super().__init__(timezone)
        self.lead = timedelta(minutes=lead_minutes)
        self.grace = timedelta(minutes=grace_minutes)

    def _is_for_subject(self, event: Mapping[str, Any], subject_id: str) -> bool:
        creator = _first(event, "employeeID", "employeeid", "employee_id")
        if creator is not None and str(creator) == subject_id:
            return True

        attendees = _first(event, "attendees", "employees") or []
        if isinstance(attendees, str):
            try:
                attendees = json.loads(attendees)
            except json.JSONDecodeError:
                return False
        if not isinstance(attendees, list):
            return False

        for attendee in attendees:
            if isinstance(attendee, (str, int)) and str(attendee) == subject_id:
                return True
            if isinstance(attendee, dict):
                attendee_id = _first(attendee, "employee_id", "employeeId")
                if attendee_id is not None and str(attendee_id) == subject_id:
                    return True
        return False

    def subjects(self, records: list[dict[str, Any]], subject_id: str, now: datetime) -> list[Subject]:
        today = now.astimezone(ZoneInfo(self.timezone)).date()
        result: list[Subject] = []
        for event in records:
            start_raw = _first(event, "startTime", "starttime", "start_time")
            if start_raw is None:
                continue
            if _first(event, "eventStatus", "eventstatus", "event_status") in self._CLOSED_STATUSES:
                continue
            if not self._is_for_subject(event, subject_id):
                continue

            start_at = parse_hhmm(str(start_raw))
            if start_at is None:
                logger.debug(f"日历事件开始时间无法解析, 已跳过: id={event.get('id')}, startTime={start_raw}")
                continue
            # 日期无法解析时按今天处理
            event_day = parse_date(event.get("date"), self.timezone) or today
            if event_day < today:
                continue

            start = combine_local(event_day, start_at, self.timezone)
            result.append(Subject(
                subject_id=str(event.get("id")),
                scheduled_time=start,
                thresholds=[
                    (ReminderKind.UPCOMING, start - self.lead),
                    (ReminderKind.DUE, start),
                    (ReminderKind.MISSED, start + self.grace),
                ],
                payload={
                    "id": event.get("id"),
                    "title": event.get("title") or "Event",
                    "startTime": str(start_raw),
                    "date": event_day.isoformat(),
                },
                valid_until=_end_of_day(event_day, self.timezone),
            ))
        return result


# ----------------- 考勤窗口 ----------------
@dataclass(frozen=True)
class AttendanceWindow:
    name: str  # MORNING_IN ...
    field: str  # 考勤记录中对应的字段, 例如 morning_in
    at: str  # 提醒时间 "HH:MM"
    category: str  # 决定截止时间的类别: MORNING / AFTERNOON
    label: str
    emoji: str
    message: str


DEFAULT_ATTENDANCE_WINDOWS: tuple[AttendanceWindow, ...] = (
    AttendanceWindow("MORNING_IN", "morning_in", "09:40", "MORNING", "Morning In", "🌅",
                     "Please mark Morning In attendance"),
    AttendanceWindow("MORNING_OUT", "morning_out", "13:35", "MORNING", "Morning Out", "🍽️",
                     "Please mark Morning Out attendance"),
    AttendanceWindow("AFTERNOON_IN", "afternoon_in", "14:35", "AFTERNOON", "Afternoon In", "☀️",
                     "Please mark Afternoon In attendance"),
    AttendanceWindow("AFTERNOON_OUT", "afternoon_out", "18:40", "AFTERNOON", "Afternoon Out", "🌆",
                     "Please mark Afternoon Out attendance"),
)


class AttendanceRule(ReminderRule):
    """每天固定的考勤窗口; 已打卡的窗口不再提醒, 超过类别截止时间仍未打卡则 MISSED"""

    domain = "attendance"

    def __init__(
        self,
        timezone: str,
        windows: Iterable[AttendanceWindow] = DEFAULT_ATTENDANCE_WINDOWS,
        lead_minutes: int = 5,
        cutoffs: Mapping[str, int] | None = None,
        default_cutoff_minutes: int = 30,
    ) -> None:
        super().__init__(timezone)
        self.windows = tuple(windows)
        self.lead = timedelta(minutes=lead_minutes)
        self.cutoffs = dict(cutoffs or {})
        self.default_cutoff_minutes = default_cutoff_minutes
        for window in self.windows:
            if parse_hhmm(window.at) is None:
                raise ValueError(f"考勤窗口时间非法: {window.name}={window.at}")

    def request_params(self, subject_id: str, now: datetime) -> dict[str, str]:
        today = now.astimezone(ZoneInfo(self.timezone)).date()
        return {"employee_id": subject_id, "date": today.isoformat()}

    def extract_records(self, raw: Any) -> list[dict[str, Any]]:
        # {status: true, data: {...} | null}
        if isinstance(raw, dict):
            data = raw.get("data")
            if isinstance(data, dict):
                return [data]
            return []
        return super().extract_records(raw)

    def subjects(self, records: list[dict[str, Any]], subject_id: str, now: datetime) -> list[Subject]:
        today = now.astimezone(ZoneInfo(self.timezone)).date()
        # 没有数据时按"尚未打卡"处理, 提醒不能因为拿不到数据而静默
        today_record: dict[str, Any] = {}
        for record in records:
            record_day = parse_date(record.get("login_date"), self.timezone)
            if record_day is None or record_day == today:
                today_record = record
                break

        result: list[Subject] = []
        for window in self.windows:
            if today_record.get(window.field):
                continue
            at = combine_local(today, parse_hhmm(window.at), self.timezone)
            cutoff_minutes = self.cutoffs.get(window.category, self.default_cutoff_minutes)
            cutoff = at + timedelta(minutes=cutoff_minutes)
            result.append(Subject(
                subject_id=window.name,
                scheduled_time=at,
                thresholds=[
                    (ReminderKind.UPCOMING, at - self.lead),
                    (ReminderKind.DUE, at),
                    (ReminderKind.MISSED, cutoff),
                ],
                payload={
                    "attendanceType": window.name,
                    "category": window.category,
                    "label": window.label,
                    "emoji": window.emoji,
                    "message": window.message,
                    "scheduledTime": window.at,
                    "cutoff": cutoff.strftime("%H:%M"),
                    "employeeId": subject_id,
                },
                valid_until=_end_of_day(today, self.timezone),
            ))
        return result


# ----------------- 任务截止 ----------------
class TaskDeadlineRule(ReminderRule):
    """任务在截止当天 DUE, 截止日之后 MISSED (逾期)"""

    domain = "task"
    _DONE_STATUSES = ("Complete", "Completed")

    def __init__(self, timezone: str, include_team: bool = False) -> None:
        super().__init__(timezone)
        self.include_team = include_team

    def _is_for_subject(self, task: Mapping[str, Any], subject_id: str) -> bool:
        assigned = task.get("assignedTo")
        if not isinstance(assigned, dict):
            return False
        assigned_id = _first(assigned, "employeeId", "employee_id", "id")
        if assigned_id is None:
            return False
        return self.include_team or str(assigned_id) == subject_id

    def subjects(self, records: list[dict[str, Any]], subject_id: str, now: datetime) -> list[Subject]:
        today = now.astimezone(ZoneInfo(self.timezone)).date()
        result: list[Subject] = []
        for task in records:
            if task.get("status") in self._DONE_STATUSES:
                continue
            if not self._is_for_subject(task, subject_id):
                continue
            end_day = parse_date(task.get("endDate"), self.timezone)
            if end_day is None:
                continue

            due_at = combine_local(end_day, time(0, 0), self.timezone)
            assigned = task.get("assignedTo") or {}
            result.append(Subject(
                subject_id=str(_first(task, "taskId", "id")),
                scheduled_time=due_at,
                thresholds=[
                    (ReminderKind.DUE, due_at),
                    (ReminderKind.MISSED, _end_of_day(end_day, self.timezone)),
                ],
                payload={
                    "taskId": _first(task, "taskId", "id"),
                    "taskName": task.get("taskName") or "Task",
                    "companyName": task.get("companyName") or "",
                    "projectName": _first(task, "projectName", "project_name") or "",
                    "endDate": end_day.isoformat(),
                    "assignedTo": assigned.get("employeeName") or "Unknown",
                    "progress": task.get("progress") or 0,
                    "daysOverdue": max(0, (today - end_day).days),
                },
            ))
        return result
