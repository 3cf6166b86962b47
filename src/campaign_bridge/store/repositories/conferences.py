"""Conference record persistence.

Records live at ``conference:{id}`` and expire by TTL; they are never
deleted explicitly.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from bridge_shared import get_logger

from campaign_bridge.core.exceptions import ConferenceNotFoundError
from campaign_bridge.store.base import StateStore

log = get_logger(__name__)

CONFERENCE_STATUS_RANK: dict[str, int] = {
    "initializing": 0,
    "hold_agent_joining": 1,
    "waiting_for_agent": 2,
    "customer_joining": 3,
    "customer_connected": 4,
    "agent_connected": 5,
    "agent_and_customer_connected": 6,
    "ended": 7,
}

# Once set these identifiers are never cleared or replaced
WRITE_ONCE_FIELDS = (
    "holdAssistantCallId",
    "queueCallSid",
    "customerCallSid",
    "twilioConferenceSid",
    "transferMethod",
    "endedAt",
)


def conference_key(conference_id: str) -> str:
    return f"conference:{conference_id}"


def merge_conference(current: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Merge a partial update onto a conference record.

    Field rules:
        status: rank is monotonic; ``ended`` is absorbing
        participants: union only, first-seen order preserved
        call ids, transfer method, endedAt: write-once
        everything else: overwritten

    Args:
        current: Stored record
        updates: Partial update

    Returns:
        New merged record (inputs are not mutated)
    """
    merged = dict(current)
    conference_id = current.get("conferenceId")

    for name, value in updates.items():
        if name == "status":
            old = current.get("status", "initializing")
            if CONFERENCE_STATUS_RANK.get(value, -1) >= CONFERENCE_STATUS_RANK.get(old, 0):
                merged["status"] = value
            else:
                log.info(
                    "Ignoring conference status regression",
                    conference_id=conference_id,
                    current=old,
                    requested=value,
                )
        elif name == "participants":
            participants = list(current.get("participants", []))
            for role in value:
                if role not in participants:
                    participants.append(role)
            merged["participants"] = participants
        elif name in WRITE_ONCE_FIELDS:
            if current.get(name) in (None, ""):
                merged[name] = value
            elif current.get(name) != value:
                log.warning(
                    "Ignoring overwrite of conference field",
                    conference_id=conference_id,
                    field=name,
                    current=current.get(name),
                    requested=value,
                )
        else:
            merged[name] = value

    merged["updatedAt"] = datetime.now(timezone.utc).isoformat()
    return merged


class ConferenceRepository:
    """Reads and writes conference records."""

    def __init__(self, store: StateStore, ttl: int = 1800) -> None:
        self._store = store
        self.ttl = ttl

    async def create(self, record: dict[str, Any]) -> dict[str, Any]:
        record.setdefault("participants", [])
        record.setdefault("status", "initializing")
        await self._store.set_json(conference_key(record["conferenceId"]), record, ttl=self.ttl)
        return record

    async def get(self, conference_id: str) -> dict[str, Any] | None:
        return await self._store.get_json(conference_key(conference_id))

    async def get_or_raise(self, conference_id: str) -> dict[str, Any]:
        record = await self.get(conference_id)
        if record is None:
            raise ConferenceNotFoundError(
                f"Conference {conference_id} not found",
                details={"conference_id": conference_id},
            )
        return record

    async def update(self, conference_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Read, merge and write a conference record; the TTL is refreshed.

        Raises:
            ConferenceNotFoundError: If the record has expired or never existed
        """
        current = await self.get_or_raise(conference_id)
        merged = merge_conference(current, updates)
        await self._store.set_json(conference_key(conference_id), merged, ttl=self.ttl)
        return merged
