from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

__all__ = [
    "ReminderKind", "ReminderEvent", "SchedulerSignal",
    "PushEvent",
    "Notification",
    "QueueEntry", "DedupKey",
    "ConnectionState", "AudioState", "Permission",
]


# ----------------- Reminder 数据模型 ----------------
class ReminderKind(str, Enum):
    UPCOMING = "UPCOMING"
    DUE = "DUE"
    MISSED = "MISSED"

    @property
    def rank(self) -> int:
        return _KIND_RANK[self]

_KIND_RANK = {ReminderKind.UPCOMING: 0, ReminderKind.DUE: 1, ReminderKind.MISSED: 2}


class SchedulerSignal(str, Enum):
    """后台任务 -> 宿主 的消息类型"""
    STARTED = "STARTED"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    REMINDER = "REMINDER"


@dataclass(frozen=True)
class ReminderEvent:
    kind: ReminderKind
    subject_id: str
    scheduled_time: datetime  # 带时区的本地时间
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    domain: str = "calendar"  # calendar / attendance / task

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.kind.value, self.subject_id, self.scheduled_time.isoformat())

    def to_message(self) -> dict[str, Any]:
        """序列化为跨执行上下文传递的纯 dict"""
        return {
            "type": SchedulerSignal.REMINDER.value,
            "kind": self.kind.value,
            "subjectId": self.subject_id,
            "scheduledTime": self.scheduled_time.isoformat(),
            "domain": self.domain,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "ReminderEvent":
        return cls(
            kind=ReminderKind(message["kind"]),
            subject_id=str(message["subjectId"]),
            scheduled_time=datetime.fromisoformat(message["scheduledTime"]),
            payload=dict(message.get("payload") or {}),
            domain=str(message.get("domain", "calendar")),
        )


# ----------------- Push 数据模型 ----------------
@dataclass(frozen=True)
class PushEvent:
    event_type: str  # 服务端事件名, 例如 "request-approved"
    correlation_id: str  # 去重键, 例如 "leave_42_approved"
    timestamp: datetime
    body: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


# ----------------- Notification 数据模型 ----------------
@dataclass
class Notification:
    id: str
    type: str
    title: str
    body: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None  # ISO 8601
    read: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "timestamp": self.timestamp,
            "read": self.read,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Notification":
        # 后端把整条通知当作 JSON 存储, 字段可能不完整
        data = raw.get("data")
        return cls(
            id=str(raw["id"]),
            type=str(raw.get("type") or ""),
            title=str(raw.get("title") or ""),
            body=str(raw.get("body") or ""),
            data=data if isinstance(data, dict) else {},
            timestamp=raw.get("timestamp"),
            read=bool(raw.get("read", False)),
        )

    def marked_read(self) -> "Notification":
        return replace(self, read=True)


# ----------------- Queue 数据模型 ----------------
DedupKey = tuple


@dataclass
class QueueEntry:
    event: Union[ReminderEvent, PushEvent]
    enqueued_at: float  # monotonic 秒
    dedup_key: DedupKey
    entry_id: str = ""

    @property
    def is_push(self) -> bool:
        return isinstance(self.event, PushEvent)


# ----------------- 状态机 ----------------
class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"


class AudioState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    LOADING = "LOADING"
    SUSPENDED = "SUSPENDED"  # 需要用户手势才能恢复
    READY = "READY"


class Permission(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    DEFAULT = "default"
