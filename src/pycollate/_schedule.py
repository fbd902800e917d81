"""Completion schedules for live records.

A :class:`CompletionSchedule` is the handle the engine keeps next to each
live record.  It owns at most one asyncio task on the engine loop.  The
task either sleeps once and reports completion, or polls a readiness check
on a fixed interval until it passes.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING


class CompletionReason(StrEnum):
    QUIESCENT = "quiescent"
    READY = "ready"
    EXPIRED = "expired"
    FORCED = "forced"
    SHUTDOWN = "shutdown"


if TYPE_CHECKING:
    from pycollate.models.record import AggregateRecord

    ReadyPredicate = Callable[[AggregateRecord], bool | Awaitable[bool]]


def running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class CompletionSchedule:
    """Single-use timer/poll handle.

    ``start()`` and ``cancel()`` may be called from any thread.  A schedule
    cancelled before its task has been created never runs.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        interval: float,
        on_complete: Callable[[CompletionReason], None],
        on_error: Callable[[BaseException], None],
        snapshot: Callable[[], AggregateRecord] | None = None,
        predicate: ReadyPredicate | None = None,
        max_retention: float | None = None,
    ) -> None:
        self._loop = loop
        self._interval = interval
        self._on_complete = on_complete
        self._on_error = on_error
        self._snapshot = snapshot
        self._predicate = predicate
        self._max_retention = max_retention
        self._lock = threading.Lock()
        self._task: asyncio.Task[None] | None = None
        self._started = False
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        with self._lock:
            if self._started or self._cancelled:
                return
            self._started = True
        if running_loop() is self._loop:
            self._spawn()
        else:
            self._loop.call_soon_threadsafe(self._spawn)

    def _spawn(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._task = self._loop.create_task(self._run())

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            task = self._task
        if task is None or task.done():
            return
        if running_loop() is self._loop:
            # Completion callbacks run inside the task; it finishes on its own.
            if asyncio.current_task() is task:
                return
            task.cancel()
        else:
            self._loop.call_soon_threadsafe(task.cancel)

    async def _run(self) -> None:
        if self._snapshot is None or self._predicate is None:
            await asyncio.sleep(self._interval)
            self._complete(CompletionReason.QUIESCENT)
            return

        started = time.monotonic()
        while True:
            await asyncio.sleep(self._interval)
            if self._cancelled:
                return
            state = self._snapshot()
            try:
                result = self._predicate(state)
                if inspect.isawaitable(result):
                    result = await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._on_error(exc)
                return
            if result:
                self._complete(CompletionReason.READY)
                return
            if self._max_retention is not None and time.monotonic() - started >= self._max_retention:
                self._complete(CompletionReason.EXPIRED)
                return

    def _complete(self, reason: CompletionReason) -> None:
        if self._cancelled:
            return
        self._on_complete(reason)
