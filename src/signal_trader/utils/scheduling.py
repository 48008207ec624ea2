"""Periodic asyncio tasks sharing one event loop."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from signal_trader.utils.logging import get_logger


class PeriodicTask:
    """Run ``action`` every ``interval`` seconds until stopped.

    The first run happens one interval after ``start``. A failing run is logged
    and the loop keeps going; runs never overlap. ``stop`` cancels the timer
    while it sleeps and waits for a run that is already in progress.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        action: Callable[[], Awaitable[object]],
    ) -> None:
        if interval <= 0:
            raise ValueError("interval_must_be_positive")
        self.name = name
        self.interval = interval
        self._action = action
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._in_action = False
        self._logger = get_logger("signal_trader.utils.scheduling")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        self._logger.debug("periodic_task_started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stopping = True
        if task is asyncio.current_task():
            # Called from inside a run: the loop ends once that run returns.
            return
        if self._in_action:
            self._logger.info("periodic_task_draining", task=self.name)
        else:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._logger.debug("periodic_task_stopped", task=self.name)

    async def _loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.interval)
            self._in_action = True
            try:
                await self._action()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - keep the timer alive.
                self._logger.exception("periodic_task_failed", task=self.name, error=str(exc))
            finally:
                self._in_action = False
