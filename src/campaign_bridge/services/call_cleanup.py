"""Delayed removal of finished calls from the registry.

Terminal calls stay visible for a grace period so late webhooks and
dashboard listeners can read their final state. Removal is blocked while
anyone is listening and re-checked later; once the last listener leaves a
blocked call is removed immediately.
"""

from __future__ import annotations

from bridge_shared import get_logger

from campaign_bridge.core.broadcast import EventBroadcaster
from campaign_bridge.core.call_registry import CallRecord, CallRegistry
from campaign_bridge.core.phone_dedup import PhoneDedupIndex
from campaign_bridge.core.timers import TaskScheduler

log = get_logger(__name__)


class CallCleanup:
    """Schedules and performs registry eviction for finished calls."""

    def __init__(
        self,
        registry: CallRegistry,
        dedup: PhoneDedupIndex,
        broadcaster: EventBroadcaster,
        scheduler: TaskScheduler,
        listener_recheck_delay: float = 300.0,
    ) -> None:
        self._registry = registry
        self._dedup = dedup
        self._broadcaster = broadcaster
        self._scheduler = scheduler
        self.listener_recheck_delay = listener_recheck_delay

        # Calls whose removal was blocked by listeners, with the removal reason
        self._blocked: dict[str, str] = {}
        self._sweep_settings: tuple[float, float, float] = (300.0, 3600.0, 300.0)

        registry.add_eviction_hook(self._on_evicted)

    @staticmethod
    def timer_key(call_id: str, purpose: str) -> str:
        return f"call:{call_id}:{purpose}"

    def schedule_removal(
        self,
        call_id: str,
        delay: float,
        reason: str,
        *,
        force: bool = True,
    ) -> None:
        """Remove ``call_id`` after ``delay`` seconds.

        Args:
            call_id: Call to remove
            delay: Grace period in seconds
            reason: Reported in the removal broadcast
            force: Override the transcript guard (listeners always block)
        """
        self._scheduler.schedule(
            self.timer_key(call_id, "remove"),
            delay,
            self.remove,
            call_id,
            reason,
            force,
        )
        log.info("Call removal scheduled", call_id=call_id, delay=delay, reason=reason)

    def remove(self, call_id: str, reason: str, force: bool = True) -> bool:
        """Evict now unless listeners are attached.

        Returns:
            True if the call left the registry
        """
        call = self._registry.get(call_id)
        if call is None:
            return False

        if call.listener_count > 0:
            log.warning(
                "Preventing removal, call has active listeners",
                call_id=call_id,
                listeners=call.listener_count,
                recheck_in=self.listener_recheck_delay,
            )
            self._blocked[call_id] = reason
            self._scheduler.schedule(
                self.timer_key(call_id, "remove"),
                self.listener_recheck_delay,
                self.remove,
                call_id,
                f"{reason}_delayed",
                force,
            )
            return False

        removed = self._registry.evict(call_id, force=force)
        if removed:
            self._broadcaster.publish(
                "call_removed_from_monitor",
                {"callId": call_id, "reason": reason},
                call_id=call_id,
            )
        else:
            log.warning("Call removal blocked by safety checks", call_id=call_id, reason=reason)
        return removed

    def release_listener(self, call_id: str) -> int:
        """Detach one listener, removing a blocked finished call at zero.

        Returns:
            Remaining listener count
        """
        remaining = self._registry.remove_listener(call_id)
        call = self._registry.get(call_id)

        if remaining == 0 and call is not None and call_id in self._blocked:
            if call.status.is_terminal:
                reason = self._blocked.pop(call_id)
                self._scheduler.cancel(self.timer_key(call_id, "remove"))
                log.info("Last listener left, removing finished call", call_id=call_id)
                self.remove(call_id, f"{reason}_listeners_released", force=True)
        return remaining

    def start_sweeper(
        self,
        interval: float = 300.0,
        max_age: float = 3600.0,
        queued_max_age: float = 300.0,
    ) -> None:
        """Run ``sweep`` every ``interval`` seconds."""
        self._sweep_settings = (interval, max_age, queued_max_age)
        self._scheduler.schedule("registry:sweep", interval, self._sweep_and_reschedule)
        log.info("Registry sweeper started", interval=interval, max_age=max_age)

    def sweep(self, max_age: float = 3600.0, queued_max_age: float = 300.0) -> list[tuple[str, str]]:
        """Evict stale calls and announce each removal."""
        removed = self._registry.sweep(max_age=max_age, queued_max_age=queued_max_age)
        for call_id, reason in removed:
            self._broadcaster.publish(
                "call_removed_from_monitor",
                {"callId": call_id, "reason": reason},
                call_id=call_id,
            )
        return removed

    def _sweep_and_reschedule(self) -> None:
        interval, max_age, queued_max_age = self._sweep_settings
        try:
            self.sweep(max_age=max_age, queued_max_age=queued_max_age)
        finally:
            self._scheduler.schedule("registry:sweep", interval, self._sweep_and_reschedule)

    def cancel(self, call_id: str) -> int:
        """Cancel every pending timer for a call."""
        self._blocked.pop(call_id, None)
        return self._scheduler.cancel_prefix(f"call:{call_id}:")

    def _on_evicted(self, call: CallRecord) -> None:
        self.cancel(call.call_id)
        self._dedup.release(call.call_id, call.phone)
