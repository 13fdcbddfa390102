from logger import setup_logging, logger
from config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=APP_LOG_FILE,
    console_level=CONSOLE_LOG_LEVEL,
)

import asyncio
import signal

from admin.http_server import main_loop as admin_http_main
from capabilities.headless import LogNotificationRenderer, StaticPermissionService, WaveAudioOutput
from channels.push_ws import PushChannel
from core.delivery_queue import DeliveryQueue
from core.pipeline import NotificationPipeline, SchedulerBinding, configure_pipeline
from core.presentation import PresentationManager
from datamodel import Permission
from storage.backend_api import NotificationBackend
from storage.identity import resolve_subject_id
from storage.kv import SqliteKeyValueStorage
from storage.notification_store import NotificationStore
from world.rules import AttendanceRule, CalendarRule, TaskDeadlineRule
from world.scheduler import HttpFetcher
from world.worker import ReminderWorker
import storage.db_config as db_config

shutdown_event = asyncio.Event()

def signal_handler(sig, frame):
    """处理 SIGINT (Ctrl+C) 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


def _worker(name: str, rule) -> ReminderWorker:
    return ReminderWorker(
        name,
        rule,
        fetch_factory=lambda: HttpFetcher(timeout=HTTP_TIMEOUT_SECONDS),
        max_consecutive_errors=REMINDER_MAX_CONSECUTIVE_ERRORS,
    )


def _create_schedulers() -> list[SchedulerBinding]:
    bindings: list[SchedulerBinding] = []
    if ENABLE_CALENDAR_REMINDERS:
        rule = CalendarRule(REMINDER_TIMEZONE, CALENDAR_LEAD_MINUTES, CALENDAR_GRACE_MINUTES)
        bindings.append(SchedulerBinding(
            _worker("CalendarNotificationWorker", rule), CALENDAR_DATA_URL, REMINDER_CHECK_INTERVAL_SECONDS))
    else:
        logger.warning("日历提醒已禁用")

    if ENABLE_ATTENDANCE_REMINDERS:
        rule = AttendanceRule(
            REMINDER_TIMEZONE,
            lead_minutes=ATTENDANCE_LEAD_MINUTES,
            cutoffs=ATTENDANCE_CUTOFF_MINUTES,
        )
        bindings.append(SchedulerBinding(
            _worker("AttendanceNotificationWorker", rule), ATTENDANCE_DATA_URL, REMINDER_CHECK_INTERVAL_SECONDS))
    else:
        logger.warning("考勤提醒已禁用")

    if ENABLE_TASK_REMINDERS:
        rule = TaskDeadlineRule(REMINDER_TIMEZONE)
        bindings.append(SchedulerBinding(
            _worker("TaskNotificationWorker", rule), TASK_DATA_URL, REMINDER_CHECK_INTERVAL_SECONDS))
    return bindings


def _create_pipeline(subject_id: str) -> NotificationPipeline:
    presentation = PresentationManager(
        audio=WaveAudioOutput(),
        renderer=LogNotificationRenderer(),
        permissions=StaticPermissionService(Permission(NOTIFICATION_PERMISSION)),
        candidate_paths=SOUND_CANDIDATE_PATHS,
        volume=SOUND_VOLUME,
        resume_timeout=SOUND_RESUME_TIMEOUT_SECONDS,
        icon=NOTIFICATION_ICON,
    )
    store = NotificationStore(NotificationBackend(API_BASE_URL, timeout=HTTP_TIMEOUT_SECONDS), subject_id)
    queue = DeliveryQueue(
        presentation,
        store,
        dedup_ttl=DEDUP_TTL_SECONDS,
        reminder_gap=REMINDER_GAP_SECONDS,
        push_gap=PUSH_GAP_SECONDS,
        record_reminders=RECORD_REMINDERS,
        timezone=REMINDER_TIMEZONE,
    )
    channel = PushChannel(
        subject_id,
        max_attempts=PUSH_RECONNECT_ATTEMPTS,
        base_delay=PUSH_RECONNECT_DELAY_SECONDS,
        max_delay=PUSH_RECONNECT_DELAY_MAX_SECONDS,
        connect_timeout=PUSH_CONNECT_TIMEOUT_SECONDS,
    )
    return NotificationPipeline(
        subject_id,
        queue=queue,
        store=store,
        presentation=presentation,
        channel=channel,
        push_server_url=PUSH_SERVER_URL,
        schedulers=_create_schedulers(),
    )


async def main():
    # 注册信号处理器
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await db_config.init_db(STORAGE_DB_PATH)

    try:
        tasks = []
        subject_id = await resolve_subject_id(SqliteKeyValueStorage(), SUBJECT_ID or None)
        if subject_id is None:
            logger.error("无法确定当前员工, 通知流水线不会启动")
        else:
            pipeline = _create_pipeline(subject_id)
            configure_pipeline(pipeline)
            tasks.append(pipeline.run_loop(shutdown_event))

        if ENABLE_ADMIN_HTTP:
            if not ADMIN_AUTH_TOKEN:
                logger.warning("未配置 ADMIN_AUTH_TOKEN, 管理 API 只开放健康检查")
            tasks.append(admin_http_main(shutdown_event))
        else:
            logger.warning("Admin HTTP 服务已禁用")

        if not tasks:
            logger.error("没有可运行的组件, 退出")
            return
        await asyncio.gather(*tasks)
    finally:
        configure_pipeline(None)
        logger.info("关闭数据库连接...")
        await db_config.close_db()
        logger.info("CRM Notify 已关闭")


if __name__ == "__main__":
    logger.info("启动 CRM Notify...")
    asyncio.run(main())
