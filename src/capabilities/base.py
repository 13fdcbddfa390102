"""平台能力接口

权限、可见通知、音频输出、持久化键值存储都是外部协作者。流水线核心只依赖这里的
窄接口, 具体实现通过构造参数注入, 这样调度器/队列/存储都可以在无界面环境下测试。
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from datamodel import Permission

__all__ = ["PermissionService", "NotificationRenderer", "RenderedNotification",
           "AudioOutput", "AudioContextHandle", "AudioElementHandle", "KeyValueStorage"]


class PermissionService(ABC):
    @abstractmethod
    async def query(self) -> Permission:
        pass

    @abstractmethod
    async def request(self) -> Permission:
        """弹出权限请求, 返回用户的决定"""
        pass


class RenderedNotification(ABC):
    @abstractmethod
    def close(self) -> None:
        pass


class NotificationRenderer(ABC):
    @abstractmethod
    def render(
        self,
        title: str,
        body: str,
        *,
        icon: str | None,
        tag: str,
        on_click: Callable[[], None],
        require_interaction: bool = False,
        auto_close_seconds: float | None = None,
        data: Optional[dict[str, Any]] = None,
    ) -> RenderedNotification:
        """渲染一条可见通知; 相同 tag 的通知由平台自行合并"""
        pass

    @abstractmethod
    def focus_app(self) -> None:
        pass


class AudioContextHandle(ABC):
    @property
    @abstractmethod
    def suspended(self) -> bool:
        pass

    @abstractmethod
    async def resume(self) -> None:
        """没有用户手势时可能一直挂起或抛出异常"""
        pass

    @abstractmethod
    async def decode(self, data: bytes) -> Any:
        pass

    @abstractmethod
    def play(self, buffer: Any, volume: float) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class AudioElementHandle(ABC):
    @abstractmethod
    async def play(self) -> None:
        pass


class AudioOutput(ABC):
    @abstractmethod
    def create_context(self) -> AudioContextHandle:
        """创建低延迟音频上下文, 平台不支持时抛出异常"""
        pass

    @abstractmethod
    async def fetch(self, location: str) -> bytes:
        pass

    @abstractmethod
    def create_element(self, location: str, volume: float) -> AudioElementHandle:
        """简单可播放元素, 作为低延迟路径不可用时的回退"""
        pass


class KeyValueStorage(ABC):
    @abstractmethod
    async def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass
