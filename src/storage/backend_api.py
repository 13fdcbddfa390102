"""通知持久化后端 (REST) 客户端"""

from __future__ import annotations

from typing import Any

import httpx

from logger import logger

__all__ = ["NotificationBackend", "StoreSyncError"]


class StoreSyncError(Exception):
    def __init__(self, message: str, operation: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class NotificationBackend:
    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    async def _call(self, operation: str, method: str, path: str, json: Any = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.HTTPError as e:
            raise StoreSyncError(f"{method} {path} 请求失败: {e}", operation=operation) from e

        if response.status_code >= 400:
            raise StoreSyncError(
                f"{method} {path} 返回 HTTP {response.status_code}: {response.text[:200]}",
                operation=operation,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise StoreSyncError(f"{method} {path} 响应不是 JSON", operation=operation) from e

        if not isinstance(payload, dict) or payload.get("success") is False:
            raise StoreSyncError(f"{method} {path} 返回失败: {payload}", operation=operation)
        return payload

    async def fetch_all(self, subject_id: str) -> list[dict[str, Any]]:
        payload = await self._call("fetch_all", "GET", f"/notifications/{subject_id}")
        items = payload.get("notifications")
        if not isinstance(items, list):
            raise StoreSyncError("响应中缺少 notifications 列表", operation="fetch_all")
        return [item for item in items if isinstance(item, dict)]

    async def save(self, subject_id: str, notification: dict[str, Any]) -> None:
        await self._call("save", "POST", "/notifications", json={"employeeId": subject_id, "notification": notification})
        logger.trace(f"通知已保存到后端: id={notification.get('id')}")

    async def mark_read(self, subject_id: str, notification_id: str) -> None:
        await self._call("mark_read", "PATCH", f"/notifications/{notification_id}/read", json={"employeeId": subject_id})

    async def delete(self, subject_id: str, notification_id: str) -> None:
        await self._call("delete", "DELETE", f"/notifications/{notification_id}", json={"employeeId": subject_id})

    async def clear_all(self, subject_id: str) -> None:
        await self._call("clear_all", "DELETE", f"/notifications/clear/{subject_id}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
