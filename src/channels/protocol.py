"""推送通道的线路格式

每一帧都是 JSON: {"event": <事件名>, "data": <事件体>}。
这里负责校验帧结构并把已知事件转换成 PushEvent, 无法识别的帧交给调用方丢弃。
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from datamodel import PushEvent
from utils import now_utc, stable_hash

__all__ = ["PushEnvelope", "KNOWN_PUSH_EVENTS", "InvalidFrame",
           "decode_frame", "encode_frame", "correlation_id_for", "to_push_event"]

KNOWN_PUSH_EVENTS = frozenset({
    "new-request-notification",
    "new-meeting-notification",
    "new-task-notification",
    "task-updated-notification",
    "request-approved",
    "request-rejected",
    "request-status-updated",
    "missed-attendance-notification",
})

# 事件名本身就隐含了审批结果
_IMPLIED_ACTIONS = {
    "request-approved": "approved",
    "request-rejected": "rejected",
}


class InvalidFrame(ValueError):
    pass


class PushEnvelope(BaseModel):
    event: str
    data: Any = None


def encode_frame(event: str, data: Any) -> str:
    return PushEnvelope(event=event, data=data).model_dump_json()


def decode_frame(raw: str | bytes) -> PushEnvelope:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidFrame(f"帧不是合法 JSON: {e}") from e
    try:
        return PushEnvelope.model_validate(payload)
    except ValidationError as e:
        raise InvalidFrame(f"帧结构不正确: {e.error_count()} 处错误") from e


def _nested(body: dict[str, Any], key: str) -> Any:
    value = body.get(key)
    if value in (None, ""):
        inner = body.get("data")
        if isinstance(inner, dict):
            value = inner.get(key)
    return value


def correlation_id_for(event: str, body: dict[str, Any]) -> str:
    """{type}_{requestId}_{action}, 其次是事件体自带的 id, 最后是内容哈希"""
    kind = body.get("type")
    request_id = _nested(body, "requestId")
    action = _nested(body, "action") or _IMPLIED_ACTIONS.get(event)
    if kind and request_id not in (None, "") and action:
        return f"{kind}_{request_id}_{action}"

    explicit_id = body.get("id")
    if explicit_id not in (None, ""):
        return str(explicit_id)
    return f"{event}_{stable_hash(body)}"


def _timestamp(body: dict[str, Any]) -> datetime:
    raw = body.get("timestamp")
    if isinstance(raw, str) and raw:
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            pass
    return now_utc()


def to_push_event(envelope: PushEnvelope) -> PushEvent | None:
    """未知事件返回 None; 已知事件但事件体不是对象时抛出 InvalidFrame"""
    if envelope.event not in KNOWN_PUSH_EVENTS:
        return None
    if not isinstance(envelope.data, dict):
        raise InvalidFrame(f"{envelope.event} 的事件体不是对象: {type(envelope.data).__name__}")
    body = envelope.data
    return PushEvent(
        event_type=envelope.event,
        correlation_id=correlation_id_for(envelope.event, body),
        timestamp=_timestamp(body),
        body=body,
    )
