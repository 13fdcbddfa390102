"""
一个简单的运行时指标收集类，用于统计提醒、推送、投递、同步失败等信息，方便后续扩展和监控。
"""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class RuntimeMetrics:
    reminder_received_count: int = 0
    push_received_count: int = 0
    duplicate_dropped_count: int = 0
    invalid_event_count: int = 0
    delivered_count: int = 0
    discarded_count: int = 0
    sound_failure_count: int = 0
    presentation_skipped_count: int = 0
    reconnect_count: int = 0
    sync_failure_count: int = 0
    scheduler_error_count: int = 0
    last_delivered_at: float | None = None

    def record_reminder(self) -> None:
        self.reminder_received_count += 1

    def record_push(self) -> None:
        self.push_received_count += 1

    def record_duplicate(self) -> None:
        self.duplicate_dropped_count += 1

    def record_invalid_event(self) -> None:
        self.invalid_event_count += 1

    def record_delivered(self, sound_ok: bool, presented: bool) -> None:
        self.delivered_count += 1
        self.last_delivered_at = time.time()
        if not sound_ok:
            self.sound_failure_count += 1
        if not presented:
            self.presentation_skipped_count += 1

    def record_discarded(self, count: int) -> None:
        self.discarded_count += max(0, count)

    def record_reconnect(self) -> None:
        self.reconnect_count += 1

    def record_sync_failure(self) -> None:
        self.sync_failure_count += 1

    def record_scheduler_error(self) -> None:
        self.scheduler_error_count += 1

    def reset(self) -> None:
        for name, default in RuntimeMetrics.__dataclass_fields__.items():
            setattr(self, name, default.default)

    def snapshot(self) -> dict:
        return {
            "reminder_received_count": self.reminder_received_count,
            "push_received_count": self.push_received_count,
            "duplicate_dropped_count": self.duplicate_dropped_count,
            "invalid_event_count": self.invalid_event_count,
            "delivered_count": self.delivered_count,
            "discarded_count": self.discarded_count,
            "sound_failure_count": self.sound_failure_count,
            "presentation_skipped_count": self.presentation_skipped_count,
            "reconnect_count": self.reconnect_count,
            "sync_failure_count": self.sync_failure_count,
            "scheduler_error_count": self.scheduler_error_count,
            "last_delivered_at_epoch": self.last_delivered_at,
            "last_delivered_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_delivered_at))
                if self.last_delivered_at is not None
                else None
            ),
        }


runtime_metrics = RuntimeMetrics()


__all__ = ["RuntimeMetrics", "runtime_metrics"]
