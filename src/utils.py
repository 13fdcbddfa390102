import hashlib
import json
import string
from datetime import date, datetime, time, timezone
from typing import Any, Mapping
from zoneinfo import ZoneInfo

__all__ = ["now_utc", "now_local", "now_iso", "parse_hhmm", "parse_date", "combine_local",
           "format_time_12h", "format_date", "render_template", "stable_hash"]

def now_utc() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)

def now_local(tz: str) -> datetime:
    """获取指定 IANA 时区的当前时间"""
    return now_utc().astimezone(ZoneInfo(tz))

def now_iso() -> str:
    return now_utc().isoformat()

def parse_hhmm(value: str) -> time | None:
    # value: "HH:MM" 或 "HH:MM:SS"
    if not value:
        return None
    parts = str(value).strip().split(":")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except (ValueError, IndexError):
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return time(hours, minutes)

def parse_date(value: Any, tz: str) -> date | None:
    """解析后端返回的日期, 支持 "YYYY-MM-DD" 与完整的 ISO 时间戳"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return value
    else:
        raw = str(value).strip()
        try:
            if len(raw) == 10:
                return date.fromisoformat(raw)
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(ZoneInfo(tz))
    return dt.date()

def combine_local(day: date, at: time, tz: str) -> datetime:
    return datetime.combine(day, at, tzinfo=ZoneInfo(tz))

def format_time_12h(time24: Any) -> str:
    """ "14:05" -> "2:05 PM" """
    parsed = parse_hhmm(str(time24)) if time24 else None
    if parsed is None:
        return str(time24 or "")
    period = "PM" if parsed.hour >= 12 else "AM"
    hours12 = parsed.hour % 12 or 12
    return f"{hours12}:{parsed.minute:02d} {period}"

def format_date(value: Any) -> str:
    """ "2026-03-05" -> "05 Mar 2026" """
    if not value:
        return ""
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return str(value)
    return parsed.strftime("%d %b %Y")


class _LenientFormatter(string.Formatter):
    """缺失字段渲染为空字符串, 额外支持 :date / :time 两种格式说明"""

    def get_field(self, field_name, args, kwargs):
        try:
            return super().get_field(field_name, args, kwargs)
        except (KeyError, IndexError, AttributeError, TypeError):
            return "", field_name

    def format_field(self, value, format_spec):
        if format_spec == "date":
            return format_date(value)
        if format_spec == "time":
            return format_time_12h(value)
        try:
            return super().format_field(value, format_spec)
        except (ValueError, TypeError):
            return str(value)

_formatter = _LenientFormatter()

def render_template(template: str, context: Mapping[str, Any]) -> str:
    return _formatter.vformat(template, (), dict(context))

def stable_hash(payload: Any) -> str:
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]
