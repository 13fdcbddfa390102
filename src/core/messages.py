"""把 PushEvent / ReminderEvent 渲染成通知标题、正文和持久化记录"""

from __future__ import annotations

from typing import Any, Union

from config.templates import *
from datamodel import Notification, PushEvent, ReminderEvent
from utils import render_template

__all__ = ["render_content", "with_batch_footer", "to_notification", "tag_for", "event_metadata"]

DeliverableEvent = Union[PushEvent, ReminderEvent]


def _push_context(event: PushEvent) -> dict[str, Any]:
    # 业务字段有时嵌套在 data 里, 有时平铺在事件体上
    inner = event.body.get("data")
    data = dict(event.body)
    if isinstance(inner, dict):
        data.update(inner)
    return {"data": data, "event": event.body}


def _render_push(event: PushEvent) -> tuple[str, str]:
    template = PUSH_TEMPLATES.get(event.event_type)
    if template is None:
        template = PUSH_FALLBACK_TEMPLATE
        title_template = event.body.get("title") or template["title"]
    else:
        title_template = template["title"]

    variant = "default"
    variant_field = template.get("variant_field")
    if variant_field:
        variant = str(event.body.get(variant_field) or "default")

    title_template = template.get("titles", {}).get(variant, title_template)
    bodies = template["body"]
    body_template = bodies.get(variant) or bodies["default"]

    context = _push_context(event)
    return render_template(title_template, context), render_template(body_template, context).strip()


def _render_reminder(event: ReminderEvent) -> tuple[str, str]:
    template = REMINDER_TEMPLATES.get((event.domain, event.kind.value), REMINDER_FALLBACK_TEMPLATE)
    context = {
        "payload": event.payload,
        "kind": event.kind.value,
        "scheduled": event.scheduled_time.strftime("%H:%M"),
    }
    return render_template(template["title"], context), render_template(template["body"], context).strip()


def render_content(event: DeliverableEvent) -> tuple[str, str]:
    if isinstance(event, PushEvent):
        return _render_push(event)
    return _render_reminder(event)


def with_batch_footer(body: str, position: int, batch_size: int) -> str:
    """一批多于一条时在正文末尾附加队列位置"""
    if batch_size <= 1:
        return body
    return body + render_template(BATCH_FOOTER, {"position": position, "batch_size": batch_size})


def tag_for(event: DeliverableEvent) -> str:
    """同一个业务对象的通知使用相同的 tag, 平台会替换而不是叠加"""
    if isinstance(event, PushEvent):
        return f"push-{event.correlation_id}"
    kind, subject_id, scheduled = event.identity
    return f"{event.domain}-{subject_id}-{scheduled}-{kind}"


def event_metadata(event: DeliverableEvent) -> dict[str, Any]:
    """点击通知时随 notification.clicked 一起发出的原始数据"""
    if isinstance(event, PushEvent):
        return {
            "source": "push",
            "event": event.event_type,
            "correlationId": event.correlation_id,
            "data": event.body,
        }
    return {
        "source": "reminder",
        "domain": event.domain,
        "kind": event.kind.value,
        "subjectId": event.subject_id,
        "scheduledTime": event.scheduled_time.isoformat(),
        "data": dict(event.payload),
    }


def to_notification(event: DeliverableEvent, title: str, body: str) -> Notification:
    if isinstance(event, PushEvent):
        inner = event.body.get("data")
        return Notification(
            id=event.correlation_id,
            type=str(event.body.get("type") or event.event_type),
            title=title,
            body=body,
            data=inner if isinstance(inner, dict) else dict(event.body),
            timestamp=event.timestamp.isoformat(),
        )
    kind, subject_id, scheduled = event.identity
    return Notification(
        id=f"{event.domain}_{kind}_{subject_id}_{scheduled}",
        type=f"{event.domain}-reminder",
        title=title,
        body=body,
        data=dict(event.payload),
        timestamp=event.scheduled_time.isoformat(),
    )
