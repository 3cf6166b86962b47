"""Campaign persistence in the shared state store.

Key layout:
    campaign:{id}         JSON campaign record
    campaign_queue:{id}   FIFO list of contacts
    campaign_calls:{id}   hash of call id -> call result
    active_campaigns      set index of known campaign ids
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from bridge_shared import get_logger

from campaign_bridge.core.exceptions import CampaignNotFoundError
from campaign_bridge.store.base import StateStore

log = get_logger(__name__)

CAMPAIGN_INDEX_KEY = "active_campaigns"

# Allowed campaign status transitions; stopped and completed are terminal
CAMPAIGN_TRANSITIONS: dict[str, frozenset[str]] = {
    "scheduled": frozenset({"active", "stopped"}),
    "active": frozenset({"stopped", "completed"}),
    "stopped": frozenset(),
    "completed": frozenset(),
}

STAT_FIELDS = ("total", "queued", "inProgress", "completed", "failed")


def campaign_key(campaign_id: str) -> str:
    return f"campaign:{campaign_id}"


def queue_key(campaign_id: str) -> str:
    return f"campaign_queue:{campaign_id}"


def calls_key(campaign_id: str) -> str:
    return f"campaign_calls:{campaign_id}"


def merge_campaign(current: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Merge a partial update onto a campaign record.

    Field rules:
        status: only moves along CAMPAIGN_TRANSITIONS; stopped and
            completed never revert
        stats: replaced as a whole, each counter clamped at zero
        everything else: overwritten

    Args:
        current: Stored record
        updates: Partial update

    Returns:
        New merged record (inputs are not mutated)
    """
    merged = dict(current)

    for name, value in updates.items():
        if name == "status":
            old = current.get("status")
            if old is None or value == old or value in CAMPAIGN_TRANSITIONS.get(old, frozenset()):
                merged["status"] = value
            else:
                log.warning(
                    "Rejected campaign status change",
                    campaign_id=current.get("id"),
                    current=old,
                    requested=value,
                )
        elif name == "stats":
            merged["stats"] = {
                field: max(0, int(value.get(field, 0))) for field in STAT_FIELDS
            }
        else:
            merged[name] = value

    merged["updatedAt"] = datetime.now(timezone.utc).isoformat()
    return merged


def new_campaign_record(
    campaign_id: str,
    name: str,
    total_contacts: int,
    call_delay: float,
    max_concurrent: int,
    schedule_time: str | None = None,
    status: str = "active",
) -> dict[str, Any]:
    """Build the initial stored representation of a campaign."""
    now = datetime.now(timezone.utc).isoformat()
    return {
        "id": campaign_id,
        "name": name,
        "totalContacts": total_contacts,
        "callDelay": call_delay,
        "maxConcurrent": max_concurrent,
        "scheduleTime": schedule_time,
        "startTime": now,
        "endTime": None,
        "status": status,
        "currentBatch": 0,
        "stats": {
            "total": total_contacts,
            "queued": total_contacts,
            "inProgress": 0,
            "completed": 0,
            "failed": 0,
        },
        "createdAt": now,
        "updatedAt": now,
    }


class CampaignRepository:
    """Reads and writes campaign records, queues and call results."""

    def __init__(
        self,
        store: StateStore,
        campaign_ttl: int = 7 * 24 * 3600,
        queue_ttl: int = 24 * 3600,
        calls_ttl: int = 7 * 24 * 3600,
    ) -> None:
        self._store = store
        self.campaign_ttl = campaign_ttl
        self.queue_ttl = queue_ttl
        self.calls_ttl = calls_ttl

    # ========================================================================
    # Records
    # ========================================================================

    async def save(self, campaign: dict[str, Any]) -> dict[str, Any]:
        """Store a full record and index it."""
        await self._store.set_json(campaign_key(campaign["id"]), campaign, ttl=self.campaign_ttl)
        await self._store.sadd(CAMPAIGN_INDEX_KEY, campaign["id"])
        return campaign

    async def get(self, campaign_id: str) -> dict[str, Any] | None:
        return await self._store.get_json(campaign_key(campaign_id))

    async def get_or_raise(self, campaign_id: str) -> dict[str, Any]:
        campaign = await self.get(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(
                f"Campaign {campaign_id} not found",
                details={"campaign_id": campaign_id},
            )
        return campaign

    async def update(self, campaign_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Read, merge and write a campaign record.

        Raises:
            CampaignNotFoundError: If the record has expired or never existed
        """
        current = await self.get_or_raise(campaign_id)
        merged = merge_campaign(current, updates)
        await self._store.set_json(campaign_key(campaign_id), merged, ttl=self.campaign_ttl)
        return merged

    async def list_all(self) -> list[dict[str, Any]]:
        """Return every indexed campaign that still exists.

        Ids whose record expired are pruned from the index.
        """
        campaigns: list[dict[str, Any]] = []
        for campaign_id in sorted(await self._store.smembers(CAMPAIGN_INDEX_KEY)):
            campaign = await self.get(campaign_id)
            if campaign is None:
                await self._store.srem(CAMPAIGN_INDEX_KEY, campaign_id)
                continue
            campaigns.append(campaign)
        return campaigns

    async def find_active(self) -> dict[str, Any] | None:
        for campaign in await self.list_all():
            if campaign.get("status") == "active":
                return campaign
        return None

    # ========================================================================
    # Contact queue
    # ========================================================================

    async def save_queue(self, campaign_id: str, contacts: list[dict[str, Any]]) -> int:
        """Replace the contact queue."""
        key = queue_key(campaign_id)
        await self._store.delete(key)
        if not contacts:
            return 0
        length = await self._store.rpush_json(key, *contacts)
        await self._store.expire(key, self.queue_ttl)
        return length

    async def pop_contact(self, campaign_id: str) -> dict[str, Any] | None:
        return await self._store.lpop_json(queue_key(campaign_id))

    async def queue_length(self, campaign_id: str) -> int:
        return await self._store.llen(queue_key(campaign_id))

    async def clear_queue(self, campaign_id: str) -> None:
        await self._store.delete(queue_key(campaign_id))

    # ========================================================================
    # Call results
    # ========================================================================

    async def save_call_result(self, campaign_id: str, call_id: str, result: dict[str, Any]) -> None:
        key = calls_key(campaign_id)
        await self._store.hset_json(key, call_id, result)
        await self._store.expire(key, self.calls_ttl)

    async def get_call_result(self, campaign_id: str, call_id: str) -> dict[str, Any] | None:
        return await self._store.hget_json(calls_key(campaign_id), call_id)

    async def get_call_results(self, campaign_id: str) -> dict[str, dict[str, Any]]:
        return await self._store.hgetall_json(calls_key(campaign_id))
