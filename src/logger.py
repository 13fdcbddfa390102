"""日志模块

使用：main.py 启动时调用一次 setup_logging，其余模块 `from logger import logger` 直接写日志。

- 控制台 + 滚动文件 + 单独的错误文件三个输出
- uvicorn / websockets / httpx 走标准库 logging，这里统一转接到 loguru
- 权限被拒、自动播放受限这类会反复出现的问题用 log_once，每个会话只记一次
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Literal, Union

from loguru import logger

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "FATAL"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"

# 第三方库默认太啰嗦
_NOISY_LOGGERS = {
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "websockets": "INFO",
    "uvicorn.access": "WARNING",
    "aiosqlite": "INFO",
}

_logged_once: set[str] = set()


def _normalize_level(level: Union[str, LogLevel]) -> str:
    name = str(level).upper()
    return "CRITICAL" if name == "FATAL" else name


class _InterceptHandler(logging.Handler):
    """把标准库 logging 的记录转给 loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: Union[str, int] = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # 跳过 logging 模块自己的栈帧, 让 loguru 记录真正的调用位置
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _intercept_stdlib(level: str) -> None:
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name, noisy_level in _NOISY_LOGGERS.items():
        std_logger = logging.getLogger(name)
        std_logger.handlers = []
        std_logger.propagate = True
        # 只会调高, 不会把第三方日志调得比全局级别还低
        std_logger.setLevel(max(logging.getLevelName(noisy_level), logging.getLevelName(level)))


def setup_logging(
    log_level: LogLevel,
    log_file: Union[str, Path],
    console_level: LogLevel = "INFO",
) -> None:
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    error_log_file = log_file.with_name(f"{log_file.stem}_error{log_file.suffix}")
    file_level = _normalize_level(log_level)

    logger.configure(
        handlers=[
            {
                "sink": sys.stderr,
                "level": _normalize_level(console_level),
                "format": CONSOLE_FORMAT,
                "colorize": True,
            },
            {
                "sink": log_file,
                "level": file_level,
                "format": FILE_FORMAT,
                "rotation": "10 MB",
                "retention": "14 days",
                "compression": "zip",
                "encoding": "utf-8",
                "enqueue": True,  # 调度器线程也会写日志
            },
            {
                "sink": error_log_file,
                "level": "ERROR",
                "format": FILE_FORMAT,
                "rotation": "10 MB",
                "retention": "60 days",
                "encoding": "utf-8",
                "enqueue": True,
                "backtrace": True,
            },
        ]
    )
    _intercept_stdlib("INFO" if file_level in ("TRACE", "DEBUG") else file_level)


def log_once(key: str, level: LogLevel, message: str) -> bool:
    """同一个 key 在进程内只记录一次，返回本次是否真正写了日志"""
    if key in _logged_once:
        return False
    _logged_once.add(key)
    logger.opt(depth=1).log(_normalize_level(level), message)
    return True


def reset_log_once() -> None:
    _logged_once.clear()


__all__ = ["setup_logging", "log_once", "reset_log_once", "logger"]
