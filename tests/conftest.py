import asyncio
from typing import Any, Callable, Optional

import pytest

from display_link.config import DisplayConfig


class ManualHandle:
    def __init__(self, delay: float, callback: Callable[[], Any]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fired = True
        self.callback()


class ManualScheduler:
    """Scheduler that only runs callbacks when a test fires them."""

    def __init__(self) -> None:
        self.handles: list[ManualHandle] = []

    def call_later(self, delay: float, callback: Callable[[], Any]) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[ManualHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def fire_next(self) -> None:
        self.pending[0].fire()


class FakeLink:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self._frames: asyncio.Queue[Optional[str]] = asyncio.Queue()

    def feed(self, raw: str) -> None:
        self._frames.put_nowait(raw)

    def drop(self) -> None:
        self._frames.put_nowait(None)

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def __aiter__(self):
        while True:
            raw = await self._frames.get()
            if raw is None:
                return
            yield raw


class FakeAttempt:
    """One pending open; the test decides whether it succeeds."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.link = FakeLink()
        self.exited = False
        self._outcome: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    def accept(self) -> None:
        if not self._outcome.done():
            self._outcome.set_result(None)

    def fail(self, exc: Optional[BaseException] = None) -> None:
        if not self._outcome.done():
            self._outcome.set_exception(exc or ConnectionRefusedError("refused"))

    async def __aenter__(self) -> FakeLink:
        await self._outcome
        return self.link

    async def __aexit__(self, *exc_info: Any) -> bool:
        self.exited = True
        return False


class FakeTransport:
    def __init__(self) -> None:
        self.attempts: list[FakeAttempt] = []
        self.closed = False

    def open(self, url: str) -> FakeAttempt:
        attempt = FakeAttempt(url)
        self.attempts.append(attempt)
        return attempt

    async def aclose(self) -> None:
        self.closed = True

    @property
    def last(self) -> FakeAttempt:
        return self.attempts[-1]


class RecordingSoundPlayer:
    def __init__(self) -> None:
        self.played: list[str] = []

    def play(self, sound: str) -> None:
        self.played.append(sound)


class MemoryConfigStore:
    def __init__(self, config: Optional[DisplayConfig] = None) -> None:
        self.config = config or DisplayConfig()
        self.saved: list[DisplayConfig] = []

    def load(self) -> DisplayConfig:
        return self.config

    def save(self, config: DisplayConfig) -> None:
        self.config = config
        self.saved.append(config)


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sound_player() -> RecordingSoundPlayer:
    return RecordingSoundPlayer()


@pytest.fixture
def memory_store() -> MemoryConfigStore:
    return MemoryConfigStore()


@pytest.fixture
def settle():
    """Let pending tasks run without advancing any timers."""
    return _settle


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def make_transport():
    return FakeTransport
