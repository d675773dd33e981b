from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

ALARM_COOLDOWN_KEY = "alarm_cooldown"


def recording_key(camera_id: str) -> str:
    return f"recording_{camera_id}"


def reset_key(camera_id: str) -> str:
    return f"reset_{camera_id}"


def alarm_key(camera_id: str) -> str:
    return f"alarm_{camera_id}"


@dataclass
class _Timer:
    key: str
    deadline: float
    handle: asyncio.TimerHandle


class TimerService:
    """Single-shot delayed callbacks keyed by an identifier.

    Starting a timer under a key that is already in use cancels the old one
    first, so a key never has more than one pending callback. Callbacks may
    be plain functions or coroutine functions; the latter run as tasks that
    :meth:`drain` can wait for.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._timers: dict[str, _Timer] = {}
        self._tasks: set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def start(self, key: str, delay_seconds: float, callback: Callable[[], Any]) -> str:
        self.cancel(key)
        loop = self._get_loop()
        delay = max(0.0, float(delay_seconds))
        handle = loop.call_later(delay, self._fire, key, callback)
        self._timers[key] = _Timer(key=key, deadline=loop.time() + delay, handle=handle)
        return key

    def _fire(self, key: str, callback: Callable[[], Any]) -> None:
        self._timers.pop(key, None)
        try:
            if inspect.iscoroutinefunction(callback):
                task = self._get_loop().create_task(callback())
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
            else:
                callback()
        except Exception:
            logger.exception("Timer callback %s failed", key)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Timer task failed", exc_info=task.exception())

    def cancel(self, key: str) -> bool:
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.handle.cancel()
        return True

    def remaining(self, key: str) -> float:
        """Seconds until ``key`` fires, or -1 when no such timer is pending."""
        timer = self._timers.get(key)
        if timer is None:
            return -1.0
        return max(0.0, timer.deadline - self._get_loop().time())

    def is_active(self, key: str) -> bool:
        return key in self._timers

    def active_keys(self) -> list[str]:
        return list(self._timers)

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.handle.cancel()
        self._timers.clear()

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
