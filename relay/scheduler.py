"""Periodic and manual generation triggers.

Both paths call ``GenerationEngine.start_generation``; the engine refuses a
trigger while a generation is running, so the scheduler keeps no state beyond
its interval task.
"""

from __future__ import annotations

import asyncio
import contextlib

from relay.config import SchedulerConfig
from relay.engine import GenerationEngine


class TriggerScheduler:
    def __init__(self, engine: GenerationEngine, config: SchedulerConfig | None = None) -> None:
        self.engine = engine
        self.config = config or SchedulerConfig()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> str | None:
        """Manual start; returns the new generation id if one was started."""
        return self.engine.start_generation()

    def start(self) -> None:
        """Begin periodic triggering on the running loop (no-op if interval is 0)."""
        if self.running or self.config.interval_s <= 0:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.interval_s)
            try:
                self.engine.start_generation()
            except Exception as exc:  # noqa: BLE001
                print(f"[relay] ERROR in scheduled trigger: {exc}")
