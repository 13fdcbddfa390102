import asyncio
import io
import wave
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from capabilities.headless import WaveAudioOutput
from events import Bus
from logger import reset_log_once
from metrics import runtime_metrics
from storage.backend_api import StoreSyncError

TZ = "Asia/Kolkata"

def at(hour: int, minute: int = 0, day: int = 5) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=ZoneInfo(TZ))

def make_wav_bytes(frames: int = 800) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(8000)
        wav.writeframes(b"\x00\x00" * frames)
    return buffer.getvalue()

class FakeClock:
    """monotonic 时钟; sleep 直接推进时间"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)

class WallClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

class FakeBackend:
    def __init__(self, notifications=None):
        self.notifications = list(notifications or [])
        self.calls: list[tuple] = []
        self.fail_ops: set[str] = set()
        self.closed = False

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_ops:
            raise StoreSyncError(f"{operation} failed", operation=operation, status_code=500)

    async def fetch_all(self, subject_id):
        self.calls.append(("fetch_all", subject_id))
        self._maybe_fail("fetch_all")
        return list(self.notifications)

    async def save(self, subject_id, notification):
        self.calls.append(("save", subject_id, notification["id"]))
        self._maybe_fail("save")

    async def mark_read(self, subject_id, notification_id):
        self.calls.append(("mark_read", subject_id, notification_id))
        self._maybe_fail("mark_read")

    async def delete(self, subject_id, notification_id):
        self.calls.append(("delete", subject_id, notification_id))
        self._maybe_fail("delete")

    async def clear_all(self, subject_id):
        self.calls.append(("clear_all", subject_id))
        self._maybe_fail("clear_all")

    async def aclose(self):
        self.closed = True


class FakeSocket:
    def __init__(self, frames=(), error=None):
        self.frames = list(frames)
        self.error = error
        self.sent: list[str] = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for item in self.frames:
            yield item
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


class _Connect:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, *exc_info):
        return False


class FakeConnector:
    def __init__(self, plan):
        self.plan = list(plan)
        self.urls: list[str] = []

    def __call__(self, url):
        self.urls.append(url)
        outcome = self.plan.pop(0) if self.plan else OSError("connection refused")
        return _Connect(outcome)


class HangingResumeAudio(WaveAudioOutput):
    """resume() 永远不返回, 和没有用户手势时的浏览器一样"""

    def create_context(self):
        ctx = super().create_context()

        async def resume():
            await asyncio.Event().wait()

        ctx.resume = resume
        return ctx


@pytest.fixture(autouse=True)
def _reset_process_state():
    runtime_metrics.reset()
    reset_log_once()
    yield

@pytest.fixture
def emitter():
    return Bus()

@pytest.fixture
def fake_clock():
    return FakeClock()

@pytest.fixture
def fake_backend():
    return FakeBackend()

@pytest.fixture
def wav_file(tmp_path):
    path = tmp_path / "notificationAudio.wav"
    path.write_bytes(make_wav_bytes())
    return str(path)
