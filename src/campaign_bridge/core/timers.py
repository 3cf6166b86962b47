"""Cancellable delayed tasks.

Every deferred action in the service (cleanup after a call ends, audio
reconnects, the next campaign batch, hold-agent goodbye) is scheduled
through a TaskScheduler so it can be cancelled by key instead of
leaking bare ``asyncio.sleep`` chains.

Usage:
    scheduler = TaskScheduler()
    scheduler.schedule("cleanup:call-1", 300, evict_call, "call-1")
    scheduler.cancel("cleanup:call-1")
    await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from bridge_shared import get_logger

log = get_logger(__name__)

Callback = Callable[..., Awaitable[Any] | Any]


@dataclass
class ScheduledTask:
    """Handle for a delayed callback."""

    key: str
    delay: float
    fire_at: float
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.task is not None and self.task.cancelled()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def cancel(self) -> bool:
        """Cancel the pending callback. Returns False if it already ran."""
        if self.task is None or self.task.done():
            return False
        return self.task.cancel()

    def remaining(self) -> float:
        """Seconds until the callback fires (0 if overdue)."""
        return max(0.0, self.fire_at - time.monotonic())


class TaskScheduler:
    """Keyed registry of delayed asyncio callbacks.

    Scheduling a key that is already pending replaces the earlier timer.
    Callbacks may be plain functions or coroutine functions; exceptions
    raised by a callback are logged and do not escape into the loop.
    """

    def __init__(self, name: str = "scheduler") -> None:
        self.name = name
        self._tasks: dict[str, ScheduledTask] = {}
        self._closed = False

    def schedule(
        self,
        key: str,
        delay: float,
        callback: Callback,
        *args: Any,
        **kwargs: Any,
    ) -> ScheduledTask:
        """Run ``callback(*args, **kwargs)`` after ``delay`` seconds.

        Args:
            key: Identity of the timer; re-using a key replaces the old timer
            delay: Seconds to wait (negative values run on the next loop turn)
            callback: Function or coroutine function to invoke

        Returns:
            Handle that can be cancelled
        """
        if self._closed:
            raise RuntimeError(f"TaskScheduler '{self.name}' is shut down")

        self.cancel(key)

        delay = max(0.0, delay)
        handle = ScheduledTask(key=key, delay=delay, fire_at=time.monotonic() + delay)
        handle.task = asyncio.create_task(
            self._run(handle, callback, args, kwargs),
            name=f"{self.name}:{key}",
        )
        self._tasks[key] = handle

        log.debug("Timer scheduled", scheduler=self.name, key=key, delay=delay)
        return handle

    async def _run(
        self,
        handle: ScheduledTask,
        callback: Callback,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        try:
            await asyncio.sleep(handle.delay)
            # Drop the entry before running so the callback can reschedule itself
            if self._tasks.get(handle.key) is handle:
                del self._tasks[handle.key]
            result = callback(*args, **kwargs)
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(
                "Scheduled callback failed",
                scheduler=self.name,
                key=handle.key,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            if self._tasks.get(handle.key) is handle:
                del self._tasks[handle.key]

    def cancel(self, key: str) -> bool:
        """Cancel a pending timer by key.

        Returns:
            True if a pending timer was cancelled
        """
        handle = self._tasks.pop(key, None)
        if handle is None:
            return False
        cancelled = handle.cancel()
        if cancelled:
            log.debug("Timer cancelled", scheduler=self.name, key=key)
        return cancelled

    def cancel_prefix(self, prefix: str) -> int:
        """Cancel every pending timer whose key starts with ``prefix``."""
        keys = [key for key in self._tasks if key.startswith(prefix)]
        return sum(1 for key in keys if self.cancel(key))

    def pending(self, key: str) -> bool:
        """Whether a timer with this key is waiting to fire."""
        handle = self._tasks.get(key)
        return handle is not None and not handle.done

    def get(self, key: str) -> ScheduledTask | None:
        return self._tasks.get(key)

    @property
    def pending_keys(self) -> list[str]:
        return [key for key, handle in self._tasks.items() if not handle.done]

    async def shutdown(self) -> None:
        """Cancel all timers and wait for them to unwind."""
        self._closed = True
        handles = list(self._tasks.values())
        self._tasks.clear()

        for handle in handles:
            handle.cancel()

        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        log.info("Task scheduler stopped", scheduler=self.name, cancelled=len(tasks))
