from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from .window import WindowClosed

ClosureListener = Callable[[WindowClosed], Awaitable[None] | None]


class EventHub:
    """Host-side fan-out for window closures.

    The vote window knows exactly one callback (this hub). Listeners are
    independent: a failing listener is logged and does not affect the others.
    Coroutine listeners run as tracked tasks so slow consumers (input
    injection, network publishers) never block the window.
    """

    def __init__(self, *, logger) -> None:
        self._logger = logger
        self._listeners: list[tuple[str, ClosureListener]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, listener: ClosureListener, *, name: str | None = None) -> None:
        self._listeners.append((name or getattr(listener, "__name__", repr(listener)), listener))

    def listener_names(self) -> list[str]:
        return [name for name, _ in self._listeners]

    def pending_tasks(self) -> int:
        return len(self._tasks)

    def __call__(self, event: WindowClosed) -> None:
        for name, listener in self._listeners:
            try:
                r = listener(event)
            except Exception as e:  # noqa: BLE001
                self._logger.exception("hub.listener_failed", listener=name, window_id=event.result.window_id, error=str(e))
                continue
            if asyncio.iscoroutine(r):
                self.spawn(r, name=name)

    def spawn(self, coro, *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=f"crowdplay-{name}")
        self._tasks.add(task)
        task.add_done_callback(lambda t, n=name: self._on_task_done(t, n))
        return task

    def _on_task_done(self, task: asyncio.Task[Any], name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("hub.task_failed", listener=name, error=str(exc), error_type=type(exc).__name__)

    async def drain(self, *, timeout_s: float = 2.0) -> None:
        """Best-effort wait for in-flight listener tasks."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout_s)

    async def aclose(self) -> None:
        tasks = set(self._tasks)
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
            except Exception:  # noqa: BLE001
                # Already reported by _on_task_done.
                pass
        self._tasks.clear()
