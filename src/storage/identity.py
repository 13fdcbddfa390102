"""当前登录员工的身份解析

身份只在启动时解析一次, 然后作为普通值注入调度器、推送通道和通知存储。
"""

import json

from capabilities.base import KeyValueStorage
from logger import logger

__all__ = ["USER_KEY", "resolve_subject_id", "remember_user"]

USER_KEY = "user"
# 不同登录入口写入的用户记录字段不一致, 按顺序取第一个非空值
_ID_FIELDS = ("userName", "employeeId", "employee_id", "_id", "id")


async def resolve_subject_id(storage: KeyValueStorage, override: str | None = None) -> str | None:
    if override:
        return override

    raw = await storage.get(USER_KEY)
    if not raw:
        logger.warning("本地存储中没有登录用户, 通知功能将不会启动")
        return None

    try:
        user = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("本地存储中的用户记录无法解析")
        return None
    if not isinstance(user, dict):
        logger.error(f"本地存储中的用户记录格式错误: {type(user).__name__}")
        return None

    for field in _ID_FIELDS:
        value = user.get(field)
        if value not in (None, ""):
            return str(value)

    logger.error("用户记录中找不到员工 ID")
    return None


async def remember_user(storage: KeyValueStorage, user: dict) -> None:
    await storage.set(USER_KEY, json.dumps(user, ensure_ascii=False))
