"""Campaign Batch Executor.

Drains a campaign's contact queue from the shared store in bounded
batches, dispatching each contact as an independent call.

Features:
- At most one active campaign system-wide
- Deferred start for scheduled campaigns
- Cooperative cancellation, checked once per batch
- Per-contact failure isolation
- Idempotent call outcome accounting
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from bridge_shared import get_logger

from campaign_bridge.core.broadcast import EventBroadcaster
from campaign_bridge.core.call_registry import CallRecord
from campaign_bridge.core.exceptions import (
    CampaignAlreadyActiveError,
    CampaignStateError,
    ValidationError,
)
from campaign_bridge.core.timers import TaskScheduler
from campaign_bridge.integrations.voice_ai import OutboundCallRequest
from campaign_bridge.store.repositories.campaigns import (
    STAT_FIELDS,
    CampaignRepository,
    new_campaign_record,
)

log = get_logger(__name__)

Dispatcher = Callable[[OutboundCallRequest], Awaitable[CallRecord]]


class CampaignStatus(str, Enum):
    """Campaign states."""

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    STOPPED = "stopped"
    COMPLETED = "completed"


# Call outcome -> stat counter it increments
OUTCOME_COUNTERS: dict[str, str] = {
    "completed": "completed",
    "failed": "failed",
    "no-answer": "failed",
    "busy": "failed",
}


def contact_to_request(contact: dict[str, Any], campaign_id: str) -> OutboundCallRequest:
    """Build a call request from a queued contact.

    Accepts the upload format (``firstName``, ``phoneE164``, ...) as well
    as the legacy snake_case CSV columns.
    """
    phone = (
        contact.get("phoneE164")
        or contact.get("phone")
        or contact.get("phone_number")
        or ""
    )
    lead_id = str(contact.get("leadId") or contact.get("leadid") or "")
    case_type = contact.get("caseType") or contact.get("case_type") or ""

    return OutboundCallRequest(
        phone=phone,
        first_name=contact.get("firstName") or contact.get("first_name") or "",
        last_name=contact.get("lastName") or contact.get("last_name") or "",
        assistant_type=contact.get("assistantType"),
        lead_id=lead_id,
        organization_id=str(contact.get("orgId") or contact.get("organizationid") or "1"),
        lead_source=contact.get("leadSource") or contact.get("lead_source") or "",
        lead_type=case_type,
        campaign_id=campaign_id,
        metadata={"campaignId": campaign_id, "caseType": case_type, "leadId": lead_id},
    )


@dataclass
class ExecutorMetrics:
    """Batch executor counters."""

    batches_dispatched: int = 0
    calls_dispatched: int = 0
    dispatch_failures: int = 0
    outcomes_recorded: int = 0
    errors: int = 0
    last_batch_at: datetime | None = None
    last_error: str | None = None
    batch_sizes: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batches_dispatched": self.batches_dispatched,
            "calls_dispatched": self.calls_dispatched,
            "dispatch_failures": self.dispatch_failures,
            "outcomes_recorded": self.outcomes_recorded,
            "errors": self.errors,
            "last_batch_at": self.last_batch_at.isoformat() if self.last_batch_at else None,
            "last_error": self.last_error,
        }


class CampaignExecutor:
    """Runs outbound campaigns against the shared contact queue.

    Usage:
        executor = CampaignExecutor(repository, broadcaster, scheduler, call_service.create_call)

        campaign = await executor.start("c-1", "Spring leads", contacts, call_delay=5, max_concurrent=3)
        ...
        await executor.stop()
    """

    def __init__(
        self,
        repository: CampaignRepository,
        broadcaster: EventBroadcaster,
        scheduler: TaskScheduler,
        dispatcher: Dispatcher,
    ) -> None:
        """Initialize executor.

        Args:
            repository: Campaign persistence
            broadcaster: Channel for campaign events
            scheduler: Timer owner for deferred starts and batch continuation
            dispatcher: Coroutine function placing one call
        """
        self._repository = repository
        self._broadcaster = broadcaster
        self._scheduler = scheduler
        self._dispatcher = dispatcher

        self._start_lock = asyncio.Lock()
        self._stat_locks: dict[str, asyncio.Lock] = {}

        # call id -> campaign id for calls dispatched by this process
        self._call_campaigns: dict[str, str] = {}

        self._metrics = ExecutorMetrics()

    @property
    def metrics(self) -> ExecutorMetrics:
        return self._metrics

    @staticmethod
    def _timer_key(campaign_id: str, purpose: str) -> str:
        return f"campaign:{campaign_id}:{purpose}"

    def _stat_lock(self, campaign_id: str) -> asyncio.Lock:
        lock = self._stat_locks.get(campaign_id)
        if lock is None:
            lock = self._stat_locks[campaign_id] = asyncio.Lock()
        return lock

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(
        self,
        campaign_id: str,
        name: str,
        contacts: list[dict[str, Any]],
        call_delay: float = 5.0,
        max_concurrent: int = 3,
        schedule_time: datetime | None = None,
    ) -> dict[str, Any]:
        """Create a campaign and start (or schedule) draining it.

        Args:
            campaign_id: Campaign identifier
            name: Display name
            contacts: Ordered contacts to call
            call_delay: Seconds between batches
            max_concurrent: Contacts dispatched per batch
            schedule_time: Defer the start until this time

        Returns:
            Stored campaign record

        Raises:
            CampaignAlreadyActiveError: If another campaign is active
            CampaignStateError: If a campaign with this id already exists
            ValidationError: On invalid limits or an empty contact list
        """
        if max_concurrent < 1:
            raise ValidationError(
                "maxConcurrent must be at least 1",
                details={"max_concurrent": max_concurrent},
            )
        if call_delay < 0:
            raise ValidationError(
                "callDelay cannot be negative",
                details={"call_delay": call_delay},
            )
        if not contacts:
            raise ValidationError("Campaign has no contacts", details={"campaign_id": campaign_id})

        async with self._start_lock:
            active = await self._repository.find_active()
            if active is not None:
                log.warning(
                    "Campaign start rejected, another campaign is active",
                    campaign_id=campaign_id,
                    active_campaign_id=active["id"],
                )
                raise CampaignAlreadyActiveError(active["id"])

            # Ids are never reused; a finished campaign keeps its call results
            existing = await self._repository.get(campaign_id)
            if existing is not None:
                raise CampaignStateError(
                    f"Campaign {campaign_id} is already {existing.get('status')}",
                    details={"campaign_id": campaign_id, "status": existing.get("status")},
                )

            delay = 0.0
            if schedule_time is not None:
                delay = (schedule_time - datetime.now(timezone.utc)).total_seconds()

            status = CampaignStatus.SCHEDULED if delay > 0 else CampaignStatus.ACTIVE
            campaign = new_campaign_record(
                campaign_id=campaign_id,
                name=name,
                total_contacts=len(contacts),
                call_delay=call_delay,
                max_concurrent=max_concurrent,
                schedule_time=schedule_time.isoformat() if schedule_time else None,
                status=status.value,
            )
            await self._repository.save(campaign)
            await self._repository.save_queue(campaign_id, contacts)

        if status == CampaignStatus.SCHEDULED:
            self._scheduler.schedule(
                self._timer_key(campaign_id, "start"),
                delay,
                self._activate_scheduled,
                campaign_id,
            )
            self._broadcaster.publish(
                "campaign_scheduled",
                {"campaignId": campaign_id, "campaign": campaign},
            )
            log.info(
                "Campaign scheduled",
                campaign_id=campaign_id,
                schedule_time=campaign["scheduleTime"],
                contacts=len(contacts),
            )
            return campaign

        self._broadcaster.publish("campaign_started", {"campaignId": campaign_id, "campaign": campaign})
        log.info(
            "Campaign started",
            campaign_id=campaign_id,
            contacts=len(contacts),
            max_concurrent=max_concurrent,
            call_delay=call_delay,
        )
        self._schedule_batch(campaign_id, 0.0)
        return campaign

    async def schedule(
        self,
        campaign_id: str,
        name: str,
        contacts: list[dict[str, Any]],
        schedule_time: datetime,
        call_delay: float = 5.0,
        max_concurrent: int = 3,
    ) -> dict[str, Any]:
        """Create a campaign that starts at ``schedule_time``.

        Raises:
            ValidationError: If the time is not in the future
        """
        if schedule_time.tzinfo is None:
            schedule_time = schedule_time.replace(tzinfo=timezone.utc)
        if schedule_time <= datetime.now(timezone.utc):
            raise ValidationError(
                "Schedule time must be in the future",
                details={"schedule_time": schedule_time.isoformat()},
            )
        return await self.start(
            campaign_id,
            name,
            contacts,
            call_delay=call_delay,
            max_concurrent=max_concurrent,
            schedule_time=schedule_time,
        )

    async def _activate_scheduled(self, campaign_id: str) -> None:
        async with self._start_lock:
            campaign = await self._repository.get(campaign_id)
            if campaign is None or campaign.get("status") != CampaignStatus.SCHEDULED.value:
                log.info("Scheduled campaign no longer pending", campaign_id=campaign_id)
                return

            active = await self._repository.find_active()
            if active is not None:
                log.error(
                    "Scheduled campaign could not start, another campaign is active",
                    campaign_id=campaign_id,
                    active_campaign_id=active["id"],
                )
                stopped = await self._repository.update(
                    campaign_id,
                    {"status": CampaignStatus.STOPPED.value, "endTime": _now()},
                )
                await self._repository.clear_queue(campaign_id)
                self._broadcaster.publish(
                    "campaign_stopped",
                    {
                        "campaignId": campaign_id,
                        "campaign": stopped,
                        "reason": "another_campaign_active",
                    },
                )
                return

            campaign = await self._repository.update(
                campaign_id,
                {"status": CampaignStatus.ACTIVE.value, "startTime": _now()},
            )

        self._broadcaster.publish("campaign_started", {"campaignId": campaign_id, "campaign": campaign})
        log.info("Scheduled campaign started", campaign_id=campaign_id)
        await self.run_batch(campaign_id)

    async def stop(self, campaign_id: str | None = None) -> dict[str, Any]:
        """Stop the active campaign (or a specific scheduled/active one).

        The queue is cleared and pending timers are cancelled. Calls already
        dispatched keep running.

        Raises:
            CampaignStateError: If there is nothing to stop
        """
        if campaign_id is None:
            campaign = await self._repository.find_active()
            if campaign is None:
                raise CampaignStateError("No active campaign to stop")
        else:
            campaign = await self._repository.get_or_raise(campaign_id)
            if campaign.get("status") not in (
                CampaignStatus.ACTIVE.value,
                CampaignStatus.SCHEDULED.value,
            ):
                raise CampaignStateError(
                    f"Campaign {campaign_id} is not running",
                    details={"campaign_id": campaign_id, "status": campaign.get("status")},
                )

        campaign_id = campaign["id"]
        cancelled = self._scheduler.cancel_prefix(f"campaign:{campaign_id}:")
        updated = await self._repository.update(
            campaign_id,
            {"status": CampaignStatus.STOPPED.value, "endTime": _now()},
        )
        await self._repository.clear_queue(campaign_id)

        self._broadcaster.publish("campaign_stopped", {"campaignId": campaign_id, "campaign": updated})
        log.info("Campaign stopped", campaign_id=campaign_id, cancelled_timers=cancelled)
        return updated

    # ========================================================================
    # Batch loop
    # ========================================================================

    def _schedule_batch(self, campaign_id: str, delay: float) -> None:
        self._scheduler.schedule(
            self._timer_key(campaign_id, "batch"),
            delay,
            self.run_batch,
            campaign_id,
        )

    async def run_batch(self, campaign_id: str) -> int | None:
        """Dispatch one batch and schedule the next.

        Returns:
            Contacts dispatched in this batch, 0 when the campaign completed,
            None when the campaign is no longer active
        """
        try:
            return await self._process_batch(campaign_id)
        except Exception as e:
            self._metrics.errors += 1
            self._metrics.last_error = str(e)
            log.error(
                "Campaign batch error",
                campaign_id=campaign_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            campaign = await self._safe_get(campaign_id)
            if campaign is not None and campaign.get("status") == CampaignStatus.ACTIVE.value:
                self._schedule_batch(campaign_id, float(campaign.get("callDelay", 5.0)))
            return None

    async def _process_batch(self, campaign_id: str) -> int | None:
        campaign = await self._repository.get(campaign_id)
        if campaign is None or campaign.get("status") != CampaignStatus.ACTIVE.value:
            log.info(
                "Campaign no longer active, halting",
                campaign_id=campaign_id,
                status=campaign.get("status") if campaign else None,
            )
            return None

        max_concurrent = int(campaign.get("maxConcurrent", 1))
        call_delay = float(campaign.get("callDelay", 5.0))

        queue_length = await self._repository.queue_length(campaign_id)
        if queue_length == 0:
            await self._complete(campaign_id)
            return 0

        batch: list[dict[str, Any]] = []
        for _ in range(min(max_concurrent, queue_length)):
            contact = await self._repository.pop_contact(campaign_id)
            if contact is None:
                break
            batch.append(contact)

        if not batch:
            await self._complete(campaign_id)
            return 0

        remaining = await self._repository.queue_length(campaign_id)
        async with self._stat_lock(campaign_id):
            current = await self._repository.get_or_raise(campaign_id)
            stats = dict(current["stats"])
            stats["queued"] = remaining
            stats["inProgress"] = stats.get("inProgress", 0) + len(batch)
            updated = await self._repository.update(
                campaign_id,
                {"stats": stats, "currentBatch": int(current.get("currentBatch", 0)) + 1},
            )

        self._broadcaster.publish("campaign_update", {"campaignId": campaign_id, "campaign": updated})
        log.info(
            "Dispatching campaign batch",
            campaign_id=campaign_id,
            batch=updated["currentBatch"],
            size=len(batch),
            remaining=remaining,
        )

        results = await asyncio.gather(*(self._dispatch(campaign_id, c) for c in batch))

        self._metrics.batches_dispatched += 1
        self._metrics.batch_sizes.append(len(batch))
        self._metrics.last_batch_at = datetime.now(timezone.utc)

        log.info(
            "Campaign batch dispatched",
            campaign_id=campaign_id,
            succeeded=sum(results),
            failed=len(results) - sum(results),
        )

        self._schedule_batch(campaign_id, call_delay)
        return len(batch)

    async def _dispatch(self, campaign_id: str, contact: dict[str, Any]) -> bool:
        """Place one call; failures are counted, never raised."""
        self._metrics.calls_dispatched += 1

        try:
            call = await self._dispatcher(contact_to_request(contact, campaign_id))
        except Exception as e:
            self._metrics.dispatch_failures += 1
            log.error(
                "Campaign call failed",
                campaign_id=campaign_id,
                lead_id=contact.get("leadId") or contact.get("leadid"),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._adjust_stats(campaign_id, failed=1, inProgress=-1)
            self._broadcaster.publish(
                "call_failed",
                {"campaignId": campaign_id, "contact": contact, "error": str(e)},
            )
            return False

        dispatched = {
            "contactId": contact.get("leadId") or contact.get("leadid"),
            "callId": call.call_id,
            "status": "initiated",
            "startTime": _now(),
        }
        async with self._stat_lock(campaign_id):
            existing = await self._repository.get_call_result(campaign_id, call.call_id)
            if existing is not None and existing.get("status") in OUTCOME_COUNTERS:
                # Already counted by record_call_outcome
                dispatched = {**dispatched, **existing}
            else:
                self._call_campaigns[call.call_id] = campaign_id
            await self._repository.save_call_result(campaign_id, call.call_id, dispatched)
        self._broadcaster.publish(
            "call_initiated",
            {
                "campaignId": campaign_id,
                "call": call.to_dict(include_transcript=False),
                "contact": contact,
            },
            call_id=call.call_id,
        )
        return True

    async def _complete(self, campaign_id: str) -> None:
        updated = await self._repository.update(
            campaign_id,
            {"status": CampaignStatus.COMPLETED.value, "endTime": _now()},
        )
        self._scheduler.cancel_prefix(f"campaign:{campaign_id}:")
        self._broadcaster.publish("campaign_completed", {"campaignId": campaign_id, "campaign": updated})
        log.info("Campaign completed", campaign_id=campaign_id, stats=updated.get("stats"))

    # ========================================================================
    # Outcomes
    # ========================================================================

    async def _adjust_stats(self, campaign_id: str, **deltas: int) -> dict[str, Any] | None:
        async with self._stat_lock(campaign_id):
            return await self._apply_stat_deltas(campaign_id, deltas)

    async def _apply_stat_deltas(
        self, campaign_id: str, deltas: dict[str, int]
    ) -> dict[str, Any] | None:
        campaign = await self._repository.get(campaign_id)
        if campaign is None:
            return None
        stats = dict(campaign["stats"])
        for name, delta in deltas.items():
            if name in STAT_FIELDS:
                stats[name] = max(0, stats.get(name, 0) + delta)
        return await self._repository.update(campaign_id, {"stats": stats})

    async def _find_campaign_for_call(self, call_id: str) -> str | None:
        campaign_id = self._call_campaigns.get(call_id)
        if campaign_id is not None:
            return campaign_id
        for campaign in await self._repository.list_all():
            if await self._repository.get_call_result(campaign["id"], call_id) is not None:
                return campaign["id"]
        return None

    async def record_call_outcome(
        self,
        call_id: str,
        status: str,
        details: dict[str, Any] | None = None,
        campaign_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Apply a call's final outcome to its campaign stats.

        Idempotent per call id: an outcome already recorded as final is not
        counted again.

        Args:
            call_id: Provider call id
            status: ``completed``, ``failed``, ``no-answer`` or ``busy``
            details: Extra context stored with the call result
            campaign_id: Owning campaign, looked up when omitted

        Returns:
            Updated campaign record, or None when nothing was counted
        """
        campaign_id = campaign_id or await self._find_campaign_for_call(call_id)
        if campaign_id is None:
            return None

        async with self._stat_lock(campaign_id):
            result = await self._repository.get_call_result(campaign_id, call_id)
            if result is None:
                if await self._repository.get(campaign_id) is None:
                    log.debug("Call not part of campaign", call_id=call_id, campaign_id=campaign_id)
                    return None
                # Webhook beat the dispatch bookkeeping; _dispatch keeps this outcome
                log.info("Call outcome before dispatch recorded", call_id=call_id, campaign_id=campaign_id)
                result = {"callId": call_id}

            if result.get("status") in OUTCOME_COUNTERS:
                log.info(
                    "Call outcome already recorded",
                    call_id=call_id,
                    campaign_id=campaign_id,
                    recorded=result.get("status"),
                    reported=status,
                )
                return None

            result = {**result, "status": status, "endTime": _now()}
            if details:
                result["details"] = details
            await self._repository.save_call_result(campaign_id, call_id, result)

            counter = OUTCOME_COUNTERS.get(status)
            if counter is None:
                return None

            updated = await self._apply_stat_deltas(campaign_id, {counter: 1, "inProgress": -1})

        self._metrics.outcomes_recorded += 1
        self._call_campaigns.pop(call_id, None)
        if updated is not None:
            self._broadcaster.publish("campaign_update", {"campaignId": campaign_id, "campaign": updated})
        log.info("Campaign call outcome recorded", call_id=call_id, campaign_id=campaign_id, status=status)
        return updated

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_status(self, campaign_id: str) -> dict[str, Any]:
        campaign = await self._repository.get_or_raise(campaign_id)
        results = await self._repository.get_call_results(campaign_id)
        return {
            **campaign,
            "queueLength": await self._repository.queue_length(campaign_id),
            "callResults": list(results.values()),
        }

    async def list_campaigns(self) -> list[dict[str, Any]]:
        return await self._repository.list_all()

    async def _safe_get(self, campaign_id: str) -> dict[str, Any] | None:
        try:
            return await self._repository.get(campaign_id)
        except Exception as e:
            log.error("Campaign lookup failed", campaign_id=campaign_id, error=str(e))
            return None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
