from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field

from datamodel import Notification


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    started_at: float


class ShutdownRequest(BaseModel):
    reason: str = Field(default="manual")


class IntervalUpdate(BaseModel):
    seconds: float = Field(gt=0)


class NotificationOut(BaseModel):
    id: str
    type: str
    title: str
    body: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None
    read: bool = False

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationOut":
        return cls(**notification.to_dict())


class NotificationListOut(BaseModel):
    notifications: list[NotificationOut]
    unread_count: int
