from __future__ import annotations

import asyncio
import time

import uvicorn
from config.settings import ADMIN_AUTH_TOKEN, ADMIN_HTTP_HOST, ADMIN_HTTP_PORT
from logger import logger

from .app import create_app
from .schemas import RuntimeControl


def build_server(control: RuntimeControl, host: str = ADMIN_HTTP_HOST, port: int = ADMIN_HTTP_PORT) -> uvicorn.Server:
    config = uvicorn.Config(
        create_app(control, auth_token=ADMIN_AUTH_TOKEN),
        host=host,
        port=port,
        log_config=None,  # uvicorn 的日志已经由 logger 转接
        access_log=False,
        lifespan="off",
    )
    server = uvicorn.Server(config)
    # 信号统一由 main.py 处理
    server.install_signal_handlers = lambda: None
    return server


async def main_loop(shutdown_event: asyncio.Event) -> None:
    control = RuntimeControl(shutdown_event=shutdown_event, started_at=time.time())
    server = build_server(control)

    async def stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(stop_on_shutdown(), name="admin-shutdown-watcher")
    logger.info(f"管理 API 监听于 http://{ADMIN_HTTP_HOST}:{ADMIN_HTTP_PORT}")
    try:
        await server.serve()
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        logger.info("管理 API 已停止")
