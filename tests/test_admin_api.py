import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from admin.app import create_app
from admin.schemas import RuntimeControl
from capabilities.headless import LogNotificationRenderer, StaticPermissionService, WaveAudioOutput
from conftest import FakeBackend
from core.delivery_queue import DeliveryQueue
from core.pipeline import NotificationPipeline, configure_pipeline
from core.presentation import PresentationManager
from events import Bus
from storage.notification_store import NotificationStore

TOKEN = "secret-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def control():
    return RuntimeControl(shutdown_event=asyncio.Event(), started_at=time.time())


@pytest.fixture
def pipeline():
    emitter = Bus()
    backend = FakeBackend([
        {"id": "leave_42_approved", "type": "leave", "title": "✅ Request Approved!"},
        {"id": "task_5", "type": "task", "title": "🎯 New Task Assigned", "read": True},
    ])
    store = NotificationStore(backend, "E1", emitter=emitter)
    presentation = PresentationManager(
        WaveAudioOutput(), LogNotificationRenderer(), StaticPermissionService(), emitter=emitter
    )
    pipeline = NotificationPipeline(
        "E1",
        queue=DeliveryQueue(presentation, store, emitter=emitter),
        store=store,
        presentation=presentation,
        emitter=emitter,
    )
    configure_pipeline(pipeline)
    yield pipeline
    configure_pipeline(None)


def test_healthz_is_public(control):
    with TestClient(create_app(control, auth_token=TOKEN)) as client:
        assert client.get("/healthz").text == "ok"
        assert client.get("/api/v1/health").json()["status"] == "ok"


def test_status_requires_token(control, pipeline):
    with TestClient(create_app(control, auth_token=TOKEN)) as client:
        assert client.get("/api/v1/status").status_code == 401
        assert client.get("/api/v1/status", headers={"Authorization": "Bearer wrong"}).status_code == 401

        response = client.get("/api/v1/status", headers={"X-Notify-Token": TOKEN})
        assert response.status_code == 200
        body = response.json()
        assert body["pipeline"]["configured"] is True
        assert body["pipeline"]["subject_id"] == "E1"
        assert "delivered_count" in body["runtime"]


def test_missing_token_config_disables_api(control, pipeline):
    with TestClient(create_app(control, auth_token="")) as client:
        assert client.get("/api/v1/status", headers=AUTH).status_code == 503


def test_notification_inbox(control, pipeline):
    with TestClient(create_app(control, auth_token=TOKEN)) as client:
        reload = client.post("/api/v1/notifications/reload", headers=AUTH)
        assert reload.status_code == 200
        assert reload.json()["unread_count"] == 1

        listing = client.get("/api/v1/notifications", headers=AUTH).json()
        assert [n["id"] for n in listing["notifications"]] == ["leave_42_approved", "task_5"]

        unread = client.get("/api/v1/notifications", params={"unread_only": True}, headers=AUTH).json()
        assert [n["id"] for n in unread["notifications"]] == ["leave_42_approved"]

        marked = client.post("/api/v1/notifications/leave_42_approved/read", headers=AUTH)
        assert marked.json() == {"ok": True, "unread_count": 0}
        assert client.post("/api/v1/notifications/nope/read", headers=AUTH).status_code == 404

        cleared = client.delete("/api/v1/notifications", headers=AUTH).json()
        assert cleared["removed"] == 2
        assert pipeline.store.notifications == ()


def test_unknown_scheduler_and_shutdown(control, pipeline):
    with TestClient(create_app(control, auth_token=TOKEN)) as client:
        response = client.post("/api/v1/schedulers/calendar/interval", json={"seconds": 30}, headers=AUTH)
        assert response.status_code == 404
        assert client.post("/api/v1/schedulers/calendar/interval", json={"seconds": 0}, headers=AUTH).status_code == 422

        assert client.post("/api/v1/admin/shutdown", json={"reason": "test"}, headers=AUTH).json()["ok"] is True
    assert control.shutdown_event.is_set()


def test_inbox_unavailable_without_pipeline(control):
    with TestClient(create_app(control, auth_token=TOKEN)) as client:
        assert client.get("/api/v1/notifications", headers=AUTH).status_code == 503
