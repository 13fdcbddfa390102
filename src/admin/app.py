from __future__ import annotations

import asyncio
import time
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

import storage.db_config as db_config
from core.pipeline import NotificationPipeline, require_pipeline
from logger import logger
from metrics import runtime_metrics

from .auth import require_admin_auth
from .schemas import (
    IntervalUpdate,
    NotificationListOut,
    NotificationOut,
    RuntimeControl,
    ShutdownRequest,
)


def _pipeline_or_503() -> NotificationPipeline:
    try:
        return require_pipeline()
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e


def create_app(control: RuntimeControl, auth_token: str | None = None) -> FastAPI:
    app = FastAPI(title="CRM Notify Admin API", version="1.0.0")

    async def auth(request: Request) -> None:
        await require_admin_auth(request, auth_token)

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "db_connected": db_config.conn is not None,
            "shutdown_requested": control.shutdown_event.is_set(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/status")
    async def get_status(request: Request) -> dict[str, Any]:
        await auth(request)
        pipeline_status: dict[str, Any] = {"configured": False}
        try:
            pipeline = require_pipeline()
            pipeline_status["configured"] = True
            pipeline_status.update(pipeline.get_status())
        except RuntimeError:
            pass
        return {
            "runtime": runtime_metrics.snapshot(),
            "pipeline": pipeline_status,
            "health": health_payload(),
            "active_tasks": len(asyncio.all_tasks()),
        }

    @app.get("/api/v1/notifications")
    async def list_notifications(request: Request, unread_only: bool = False, limit: int = 100) -> NotificationListOut:
        await auth(request)
        store = _pipeline_or_503().store
        items = [n for n in store.notifications if not (unread_only and n.read)]
        limit = max(1, min(limit, 500))
        return NotificationListOut(
            notifications=[NotificationOut.from_notification(n) for n in items[:limit]],
            unread_count=store.unread_count,
        )

    @app.post("/api/v1/notifications/reload")
    async def reload_notifications(request: Request) -> dict[str, Any]:
        await auth(request)
        store = _pipeline_or_503().store
        ok = await store.load()
        if not ok:
            raise HTTPException(status_code=502, detail=f"加载通知失败: {store.last_error}")
        return {"ok": True, "total": len(store.notifications), "unread_count": store.unread_count}

    @app.post("/api/v1/notifications/{notification_id}/read")
    async def mark_read(notification_id: str, request: Request) -> dict[str, Any]:
        await auth(request)
        store = _pipeline_or_503().store
        if not store.mark_read(notification_id):
            raise HTTPException(status_code=404, detail="通知不存在")
        return {"ok": True, "unread_count": store.unread_count}

    @app.delete("/api/v1/notifications/{notification_id}")
    async def delete_notification(notification_id: str, request: Request) -> dict[str, Any]:
        await auth(request)
        store = _pipeline_or_503().store
        removed = store.delete(notification_id)
        return {"ok": True, "removed": removed, "unread_count": store.unread_count}

    @app.delete("/api/v1/notifications")
    async def clear_notifications(request: Request) -> dict[str, Any]:
        await auth(request)
        store = _pipeline_or_503().store
        removed = store.clear_all()
        return {"ok": True, "removed": removed}

    @app.post("/api/v1/schedulers/{domain}/interval")
    async def update_scheduler_interval(domain: str, payload: IntervalUpdate, request: Request) -> dict[str, Any]:
        await auth(request)
        pipeline = _pipeline_or_503()
        for binding in pipeline.schedulers:
            if binding.worker.rule.domain == domain:
                binding.worker.update_interval(payload.seconds)
                binding.check_interval = payload.seconds
                return {"ok": True, "domain": domain, "seconds": payload.seconds}
        raise HTTPException(status_code=404, detail=f"调度器不存在: {domain}")

    @app.post("/api/v1/audio/gesture")
    async def user_gesture(request: Request) -> dict[str, Any]:
        await auth(request)
        presentation = _pipeline_or_503().presentation
        resumed = await presentation.on_user_gesture()
        return {"ok": True, "resumed": resumed, "audio_state": presentation.state.value}

    @app.post("/api/v1/admin/shutdown")
    async def admin_shutdown(payload: ShutdownRequest, request: Request) -> dict[str, Any]:
        await auth(request)
        logger.warning(f"收到管理端关闭请求: reason={payload.reason}")
        control.shutdown_event.set()
        return {"ok": True, "action": "shutdown", "reason": payload.reason}

    return app
