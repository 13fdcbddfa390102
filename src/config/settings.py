import os
from dotenv import load_dotenv
from logger import logger
load_dotenv()

__all__ = [
    "API_BASE_URL", "PUSH_SERVER_URL", "SUBJECT_ID",
    "CALENDAR_DATA_URL", "ATTENDANCE_DATA_URL", "TASK_DATA_URL",
    "ENABLE_CALENDAR_REMINDERS", "ENABLE_ATTENDANCE_REMINDERS", "ENABLE_TASK_REMINDERS",
    "REMINDER_CHECK_INTERVAL_SECONDS", "REMINDER_TIMEZONE", "REMINDER_MAX_CONSECUTIVE_ERRORS",
    "CALENDAR_LEAD_MINUTES", "CALENDAR_GRACE_MINUTES",
    "ATTENDANCE_LEAD_MINUTES", "ATTENDANCE_CUTOFF_MINUTES",
    "PUSH_RECONNECT_ATTEMPTS", "PUSH_RECONNECT_DELAY_SECONDS", "PUSH_RECONNECT_DELAY_MAX_SECONDS",
    "PUSH_CONNECT_TIMEOUT_SECONDS",
    "DEDUP_TTL_SECONDS", "REMINDER_GAP_SECONDS", "PUSH_GAP_SECONDS", "RECORD_REMINDERS",
    "SOUND_CANDIDATE_PATHS", "SOUND_VOLUME", "SOUND_RESUME_TIMEOUT_SECONDS", "NOTIFICATION_ICON", "NOTIFICATION_PERMISSION",
    "HTTP_TIMEOUT_SECONDS",
    "ADMIN_HTTP_HOST", "ADMIN_HTTP_PORT", "ADMIN_AUTH_TOKEN", "ENABLE_ADMIN_HTTP",
    "APP_LOG_FILE", "LOG_LEVEL", "CONSOLE_LOG_LEVEL", "STORAGE_DB_PATH",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"{name} 非法, 已回退到 {default}")
        return default


def _parse_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"{name} 非法, 已回退到 {default}")
        return default


def _parse_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return [item.strip() for item in raw.split(",") if item.strip()]


# 后端
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:5000/api").rstrip("/")
# 推送通道默认与 REST 同源, 去掉结尾的 /api
_default_push_url = API_BASE_URL[:-4] if API_BASE_URL.endswith("/api") else API_BASE_URL
PUSH_SERVER_URL = os.getenv("PUSH_SERVER_URL", _default_push_url.replace("http", "ws", 1) + "/ws")
HTTP_TIMEOUT_SECONDS = _parse_float("HTTP_TIMEOUT_SECONDS", 10.0)

# 当前登录员工, 为空时从本地存储中解析
SUBJECT_ID = os.getenv("SUBJECT_ID", "").strip()

# 提醒调度器
CALENDAR_DATA_URL = os.getenv("CALENDAR_DATA_URL", f"{API_BASE_URL}/calendar")
ATTENDANCE_DATA_URL = os.getenv("ATTENDANCE_DATA_URL", f"{API_BASE_URL}/attendance")
TASK_DATA_URL = os.getenv("TASK_DATA_URL", f"{API_BASE_URL}/employee-tasks/all-tasks")
ENABLE_CALENDAR_REMINDERS = _parse_bool("ENABLE_CALENDAR_REMINDERS", True)
ENABLE_ATTENDANCE_REMINDERS = _parse_bool("ENABLE_ATTENDANCE_REMINDERS", True)
ENABLE_TASK_REMINDERS = _parse_bool("ENABLE_TASK_REMINDERS", False)

REMINDER_CHECK_INTERVAL_SECONDS = _parse_float("REMINDER_CHECK_INTERVAL_SECONDS", 60.0)
if REMINDER_CHECK_INTERVAL_SECONDS <= 0:
    logger.warning("REMINDER_CHECK_INTERVAL_SECONDS 必须大于 0, 已回退到 60 秒")
    REMINDER_CHECK_INTERVAL_SECONDS = 60.0
REMINDER_TIMEZONE = os.getenv("REMINDER_TIMEZONE", "Asia/Kolkata")
REMINDER_MAX_CONSECUTIVE_ERRORS = _parse_int("REMINDER_MAX_CONSECUTIVE_ERRORS", 3)

CALENDAR_LEAD_MINUTES = _parse_int("CALENDAR_LEAD_MINUTES", 10)
CALENDAR_GRACE_MINUTES = _parse_int("CALENDAR_GRACE_MINUTES", 10)
ATTENDANCE_LEAD_MINUTES = _parse_int("ATTENDANCE_LEAD_MINUTES", 5)
# 按考勤类别设置截止时间 (提醒时间之后多少分钟视为错过)
ATTENDANCE_CUTOFF_MINUTES = {
    "MORNING": _parse_int("ATTENDANCE_MORNING_CUTOFF_MINUTES", 30),
    "AFTERNOON": _parse_int("ATTENDANCE_AFTERNOON_CUTOFF_MINUTES", 30),
}

# 推送通道
PUSH_RECONNECT_ATTEMPTS = _parse_int("PUSH_RECONNECT_ATTEMPTS", 10)
PUSH_RECONNECT_DELAY_SECONDS = _parse_float("PUSH_RECONNECT_DELAY_SECONDS", 1.0)
PUSH_RECONNECT_DELAY_MAX_SECONDS = _parse_float("PUSH_RECONNECT_DELAY_MAX_SECONDS", 5.0)
PUSH_CONNECT_TIMEOUT_SECONDS = _parse_float("PUSH_CONNECT_TIMEOUT_SECONDS", 20.0)

# 投递队列
DEDUP_TTL_SECONDS = _parse_float("DEDUP_TTL_SECONDS", 5.0)
REMINDER_GAP_SECONDS = _parse_float("REMINDER_GAP_SECONDS", 5.0)
PUSH_GAP_SECONDS = _parse_float("PUSH_GAP_SECONDS", 0.0)
RECORD_REMINDERS = _parse_bool("RECORD_REMINDERS", False)

# 声音与展示
SOUND_CANDIDATE_PATHS = _parse_list(
    "SOUND_CANDIDATE_PATHS",
    ["assets/notificationAudio.wav", "notificationAudio.wav"],
)
SOUND_VOLUME = _parse_float("SOUND_VOLUME", 0.7)
SOUND_RESUME_TIMEOUT_SECONDS = _parse_float("SOUND_RESUME_TIMEOUT_SECONDS", 1.0)
NOTIFICATION_ICON = os.getenv("NOTIFICATION_ICON", "assets/NotificationLogo.png")
NOTIFICATION_PERMISSION = os.getenv("NOTIFICATION_PERMISSION", "default").strip().lower()
if NOTIFICATION_PERMISSION not in ("granted", "denied", "default"):
    logger.warning(f"NOTIFICATION_PERMISSION 非法: {NOTIFICATION_PERMISSION}, 已回退到 default")
    NOTIFICATION_PERMISSION = "default"

# Admin API
ENABLE_ADMIN_HTTP = _parse_bool("ENABLE_ADMIN_HTTP", False)
ADMIN_HTTP_HOST = os.getenv("ADMIN_HTTP_HOST", "127.0.0.1")
ADMIN_HTTP_PORT = _parse_int("ADMIN_HTTP_PORT", 18080)
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN", "")

APP_LOG_FILE = os.getenv("APP_LOG_FILE", "logs/crm_notify.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").strip().upper()
CONSOLE_LOG_LEVEL = os.getenv("CONSOLE_LOG_LEVEL", "INFO").strip().upper()
STORAGE_DB_PATH = os.getenv("STORAGE_DB_PATH", "data/crm_notify.db")
