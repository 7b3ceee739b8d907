"""Event-loop backed implementation of the scheduler port."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional


class LoopScheduler:
    """Schedules callbacks on an asyncio event loop.

    The loop is resolved lazily so instances can be created before the
    loop starts running.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(
        self, delay: float, callback: Callable[[], Any]
    ) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)
