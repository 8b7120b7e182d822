from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol


class FrameScheduler(Protocol):
    async def next_tick(self) -> None:
        ...


@dataclass
class FrameSchedulerConfig:
    name: str = "frame-scheduler"
    fps: float = 30.0


class IntervalFrameScheduler:
    """Suspends the calling loop until the next frame slot at a fixed rate."""

    def __init__(self, config: FrameSchedulerConfig | None = None) -> None:
        self._config = config or FrameSchedulerConfig()
        self._last_tick: float | None = None
        self.ticks = 0

    @property
    def interval(self) -> float:
        if self._config.fps <= 0:
            return 0.0
        return 1.0 / self._config.fps

    async def next_tick(self) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._last_tick is None:
            delay = 0.0
        else:
            delay = max(0.0, self._last_tick + self.interval - now)
        await asyncio.sleep(delay)
        self._last_tick = loop.time()
        self.ticks += 1


__all__ = ["FrameScheduler", "FrameSchedulerConfig", "IntervalFrameScheduler"]
