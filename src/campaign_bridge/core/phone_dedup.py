"""Guard against concurrent outbound calls to the same phone number."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bridge_shared import get_logger

from campaign_bridge.core.call_registry import CallRegistry, utcnow
from campaign_bridge.core.exceptions import DuplicateCallError

log = get_logger(__name__)


@dataclass
class PhoneEntry:
    """Active outbound call for one phone number."""

    phone: str
    call_id: str
    customer: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phone": self.phone,
            "callId": self.call_id,
            "customer": self.customer,
            "createdAt": self.created_at.isoformat(),
        }


class PhoneDedupIndex:
    """Maps E.164 numbers to their currently active call id.

    An entry only blocks a new dial while its call is known to the
    registry and not terminal. Stale entries are dropped on lookup.
    """

    def __init__(self, registry: CallRegistry) -> None:
        self._registry = registry
        self._entries: dict[str, PhoneEntry] = {}

    def check(self, phone: str) -> None:
        """Raise if a non-terminal call to ``phone`` exists.

        Raises:
            DuplicateCallError: With the existing call id and status
        """
        entry = self._entries.get(phone)
        if entry is None:
            return

        call = self._registry.get(entry.call_id)
        if call is not None and not call.status.is_terminal:
            log.warning(
                "Duplicate call blocked",
                phone=phone,
                existing_call_id=entry.call_id,
                existing_status=call.status.value,
            )
            raise DuplicateCallError(phone, entry.call_id, call.status.value)

        log.info(
            "Cleaning stale phone tracking",
            phone=phone,
            call_id=entry.call_id,
            status=call.status.value if call else None,
        )
        del self._entries[phone]

    def track(self, phone: str, call_id: str, customer: dict[str, Any] | None = None) -> PhoneEntry:
        entry = PhoneEntry(phone=phone, call_id=call_id, customer=customer or {})
        self._entries[phone] = entry
        log.info("Tracking phone", phone=phone, call_id=call_id)
        return entry

    def release(self, call_id: str, phone: str | None) -> bool:
        """Drop the entry for ``phone`` if it still points at ``call_id``."""
        if not phone:
            return False
        entry = self._entries.get(phone)
        if entry is None or entry.call_id != call_id:
            return False
        del self._entries[phone]
        log.info("Released phone tracking", phone=phone, call_id=call_id)
        return True

    def cleanup_phone(self, phone: str) -> PhoneEntry | None:
        """Manually clear the entry for a number."""
        entry = self._entries.pop(phone, None)
        if entry is not None:
            log.info("Manually cleared phone tracking", phone=phone, call_id=entry.call_id)
        return entry

    def force_cleanup(self) -> list[dict[str, Any]]:
        """Remove every entry whose call is unknown or terminal.

        Returns:
            One report per removed entry with the reason
        """
        cleaned: list[dict[str, Any]] = []

        for phone, entry in list(self._entries.items()):
            call = self._registry.get(entry.call_id)
            if call is None:
                reason = "call_not_found"
            elif call.status.is_terminal:
                reason = f"call_{call.status.value}"
            else:
                continue

            del self._entries[phone]
            cleaned.append({"phone": phone, "callId": entry.call_id, "reason": reason})

        if cleaned:
            log.info("Force cleanup of phone tracking", cleaned=len(cleaned))
        return cleaned

    def get(self, phone: str) -> PhoneEntry | None:
        return self._entries.get(phone)

    def entries(self) -> list[PhoneEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)
