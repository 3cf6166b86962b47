"""Call registry with a rank-ordered status state machine.

The registry is the process-local, authoritative view of every call
being monitored. Provider webhooks arrive duplicated and out of order,
so every status change goes through ``transition`` which only moves a
call forward in rank, except for evidence-forced promotion to
in-progress when conversational activity has been observed.

States:
    queued -> ringing -> in-progress -> transferring -> ending
           -> {ended | failed | no-answer}

Terminal states are absorbing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from bridge_shared import get_logger

from campaign_bridge.core.exceptions import CallNotFoundError

log = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallStatus(str, Enum):
    """Lifecycle states of a monitored call."""

    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    TRANSFERRING = "transferring"
    ENDING = "ending"
    ENDED = "ended"
    FAILED = "failed"
    NO_ANSWER = "no-answer"

    @property
    def rank(self) -> int:
        return STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


STATUS_RANK: dict[CallStatus, int] = {
    CallStatus.QUEUED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.TRANSFERRING: 3,
    CallStatus.ENDING: 4,
    CallStatus.ENDED: 5,
    CallStatus.FAILED: 5,
    CallStatus.NO_ANSWER: 5,
}

TERMINAL_STATUSES = frozenset({CallStatus.ENDED, CallStatus.FAILED, CallStatus.NO_ANSWER})

# Reported statuses that contradict observed conversation
_CONTRADICTS_ANSWER = frozenset({CallStatus.QUEUED, CallStatus.RINGING, CallStatus.NO_ANSWER})


class Evidence(str, Enum):
    """Signals proving a call was answered."""

    TRANSCRIPT = "transcript"
    SPEECH = "speech"
    ANSWERED_AT = "answered_at"


@dataclass
class TranscriptEntry:
    """A single utterance in the call transcript."""

    speaker: str
    text: str
    final: bool
    timestamp: datetime = field(default_factory=utcnow)
    source_timestamp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "speaker": self.speaker,
            "text": self.text,
            "transcriptType": "final" if self.final else "partial",
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StatusTransition:
    """Append-only status history entry."""

    previous: CallStatus | None
    status: CallStatus
    reported: str
    source: str
    applied: bool
    forced: bool = False
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.previous.value if self.previous else None,
            "to": self.status.value,
            "reported": self.reported,
            "source": self.source,
            "applied": self.applied,
            "forced": self.forced,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CallRecord:
    """Live state of one monitored call."""

    call_id: str
    status: CallStatus = CallStatus.QUEUED
    phone: str | None = None
    campaign_id: str | None = None
    customer_name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    # Provider handles
    control_url: str | None = None
    listen_url: str | None = None

    # Timestamps
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    ringing_at: datetime | None = None
    answered_at: datetime | None = None
    ended_at: datetime | None = None
    duration: int | None = None
    end_reason: str | None = None

    transcript: list[TranscriptEntry] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    status_history: list[StatusTransition] = field(default_factory=list)
    listener_count: int = 0

    # Audio stream bookkeeping
    audio_connected: bool = False
    audio_retry_count: int = 0
    audio_last_error: str | None = None
    audio_next_retry_at: datetime | None = None

    @property
    def has_activity(self) -> bool:
        """Whether the call shows signs of having been answered."""
        return self.answered_at is not None or bool(self.transcript)

    @property
    def was_answered(self) -> bool:
        return self.answered_at is not None

    def to_dict(self, include_transcript: bool = True) -> dict[str, Any]:
        """Convert to API-friendly dictionary."""
        result: dict[str, Any] = {
            "id": self.call_id,
            "status": self.status.value,
            "phone": self.phone,
            "campaignId": self.campaign_id,
            "customerName": self.customer_name,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "ringingAt": self.ringing_at.isoformat() if self.ringing_at else None,
            "answeredAt": self.answered_at.isoformat() if self.answered_at else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "duration": self.duration,
            "endReason": self.end_reason,
            "wasAnswered": self.was_answered,
            "listenerCount": self.listener_count,
            "hasAudioStream": bool(self.listen_url),
            "audioConnected": self.audio_connected,
            "statusHistory": [t.to_dict() for t in self.status_history],
        }
        if include_transcript:
            result["transcript"] = [e.to_dict() for e in self.transcript]
            result["events"] = self.events
        return result


@dataclass
class TransitionResult:
    """Outcome of a requested status change."""

    call_id: str
    previous: CallStatus
    status: CallStatus
    applied: bool
    forced: bool = False
    created: bool = False

    @property
    def changed(self) -> bool:
        return self.applied and self.previous != self.status


EvictionHook = Callable[[CallRecord], None]


class CallRegistry:
    """Authoritative in-memory view of monitored calls.

    All methods are synchronous, so every mutation for a call id happens
    within one event loop turn.
    """

    def __init__(
        self,
        transcript_limit: int = 100,
        evidence_promotion: bool = True,
    ) -> None:
        """Initialize registry.

        Args:
            transcript_limit: Keep only this many most recent transcript entries
            evidence_promotion: Promote calls to in-progress on conversation evidence
        """
        self.transcript_limit = transcript_limit
        self.evidence_promotion = evidence_promotion
        self._calls: dict[str, CallRecord] = {}
        self._eviction_hooks: list[EvictionHook] = []

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, call_id: str) -> CallRecord | None:
        return self._calls.get(call_id)

    def require(self, call_id: str) -> CallRecord:
        """Get a call or raise CallNotFoundError."""
        call = self._calls.get(call_id)
        if call is None:
            raise CallNotFoundError(f"Call {call_id} not found", details={"call_id": call_id})
        return call

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    def all(self) -> list[CallRecord]:
        return list(self._calls.values())

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, call: CallRecord, source: str = "dispatch") -> bool:
        """Insert a call, or upsert one seen earlier at a lower rank.

        Registration never regresses status: if the call id is already known
        with an equal or later rank the request is logged and ignored.

        Returns:
            True if the registry changed
        """
        existing = self._calls.get(call.call_id)

        if existing is None:
            call.status_history.append(
                StatusTransition(
                    previous=None,
                    status=call.status,
                    reported=call.status.value,
                    source=source,
                    applied=True,
                )
            )
            self._stamp(call, call.status)
            self._calls[call.call_id] = call
            log.info(
                "Call registered",
                call_id=call.call_id,
                status=call.status.value,
                phone=call.phone,
                campaign_id=call.campaign_id,
            )
            return True

        if existing.status.rank >= call.status.rank:
            log.info(
                "Ignoring registration, call already tracked",
                call_id=call.call_id,
                current=existing.status.value,
                requested=call.status.value,
            )
            self._fill_missing(existing, call)
            return False

        self._fill_missing(existing, call)
        self.transition(call.call_id, call.status, source=source)
        return True

    def _fill_missing(self, existing: CallRecord, incoming: CallRecord) -> None:
        """Copy identity fields the first sighting did not carry."""
        for name in ("phone", "campaign_id", "control_url", "listen_url"):
            if getattr(existing, name) is None and getattr(incoming, name) is not None:
                setattr(existing, name, getattr(incoming, name))
        if not existing.customer_name and incoming.customer_name:
            existing.customer_name = incoming.customer_name
        for key, value in incoming.metadata.items():
            existing.metadata.setdefault(key, value)

    def ensure(self, call_id: str, source: str = "webhook", **fields: Any) -> tuple[CallRecord, bool]:
        """Return a call, creating a minimal queued entry for unknown ids.

        Webhooks can race ahead of local dispatch bookkeeping, so events for
        unknown calls are kept rather than dropped.

        Returns:
            (call, created)
        """
        call = self._calls.get(call_id)
        if call is not None:
            for name, value in fields.items():
                if value is not None and getattr(call, name, None) in (None, ""):
                    setattr(call, name, value)
            return call, False

        call = CallRecord(call_id=call_id, **{k: v for k, v in fields.items() if v is not None})
        call.status = CallStatus.QUEUED
        self.register(call, source=source)
        log.warning("Auto-created entry for unknown call", call_id=call_id, source=source)
        return call, True

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(
        self,
        call_id: str,
        status: CallStatus | str,
        *,
        evidence: Evidence | None = None,
        source: str = "webhook",
        end_reason: str | None = None,
    ) -> TransitionResult:
        """Apply a reported status if it does not regress the call.

        A transition is applied when ``rank(new) >= rank(current)``. When
        the call shows conversational activity (an explicit ``evidence``
        signal, a transcript or an answered timestamp) and the reported
        status contradicts that, the call is force-promoted to in-progress
        instead.

        Args:
            call_id: Provider call id (auto-created if unknown)
            status: Reported status
            evidence: Activity signal carried by the triggering event
            source: Where the report came from, kept in status history
            end_reason: Provider end reason for terminal statuses

        Returns:
            Transition outcome
        """
        target = CallStatus(status)
        call, created = self.ensure(call_id, source=source)
        previous = call.status

        has_evidence = self.evidence_promotion and (evidence is not None or call.has_activity)
        forced = False

        if has_evidence and target in _CONTRADICTS_ANSWER:
            if previous.rank < CallStatus.IN_PROGRESS.rank:
                target = CallStatus.IN_PROGRESS
                forced = True
            else:
                if target == CallStatus.NO_ANSWER:
                    log.error(
                        "Potential status mismatch",
                        call_id=call_id,
                        reported=target.value,
                        current=previous.value,
                        answered_at=call.answered_at.isoformat() if call.answered_at else None,
                        transcript_entries=len(call.transcript),
                    )
                return self._reject(call, target, status, source, created)
        elif has_evidence and evidence is not None and previous.rank < CallStatus.IN_PROGRESS.rank:
            # Activity alongside a forward status still implies the answer happened
            if target.rank > CallStatus.IN_PROGRESS.rank and call.answered_at is None:
                call.answered_at = utcnow()

        if previous.is_terminal and target != previous:
            return self._reject(call, target, status, source, created)

        if target.rank < previous.rank:
            return self._reject(call, target, status, source, created)

        if target == previous:
            return TransitionResult(call_id, previous, previous, applied=True, created=created)

        call.status = target
        call.updated_at = utcnow()
        self._stamp(call, target, end_reason=end_reason)
        call.status_history.append(
            StatusTransition(
                previous=previous,
                status=target,
                reported=str(status.value if isinstance(status, CallStatus) else status),
                source=source,
                applied=True,
                forced=forced,
            )
        )

        log.info(
            "Call status change",
            call_id=call_id,
            previous=previous.value,
            status=target.value,
            forced=forced,
            source=source,
        )
        return TransitionResult(call_id, previous, target, applied=True, forced=forced, created=created)

    def _reject(
        self,
        call: CallRecord,
        target: CallStatus,
        reported: CallStatus | str,
        source: str,
        created: bool,
    ) -> TransitionResult:
        rejected = StatusTransition(
            previous=call.status,
            status=target,
            reported=str(reported.value if isinstance(reported, CallStatus) else reported),
            source=source,
            applied=False,
        )
        last = call.status_history[-1] if call.status_history else None
        # A redelivered rejection is recorded once
        if last is None or (last.previous, last.status, last.reported, last.source, last.applied) != (
            rejected.previous,
            rejected.status,
            rejected.reported,
            rejected.source,
            rejected.applied,
        ):
            call.status_history.append(rejected)
        log.warning(
            "Ignoring status regression",
            call_id=call.call_id,
            current=call.status.value,
            reported=target.value,
            source=source,
        )
        return TransitionResult(call.call_id, call.status, call.status, applied=False, created=created)

    def _stamp(self, call: CallRecord, status: CallStatus, end_reason: str | None = None) -> None:
        now = utcnow()
        if status == CallStatus.RINGING and call.ringing_at is None:
            call.ringing_at = now
        elif status == CallStatus.IN_PROGRESS and call.answered_at is None:
            call.answered_at = now
        elif status.is_terminal:
            if call.ended_at is None:
                call.ended_at = now
            if call.answered_at is not None and call.duration is None:
                call.duration = max(0, int((call.ended_at - call.answered_at).total_seconds()))
            if end_reason:
                call.end_reason = end_reason
            elif call.end_reason is None:
                call.end_reason = status.value

    # ------------------------------------------------------------------
    # Transcript and stream events
    # ------------------------------------------------------------------

    def append_transcript(
        self,
        call_id: str,
        speaker: str,
        text: str,
        *,
        final: bool,
        source_timestamp: str | None = None,
    ) -> tuple[TranscriptEntry, bool]:
        """Record an utterance.

        Partial entries replace a trailing partial from the same speaker.
        Final entries append, unless the same final line was already
        delivered (same speaker, text and provider timestamp). A final line
        without a provider timestamp is keyed by its arrival and always
        appends, so a genuinely repeated utterance is kept.

        Returns:
            (entry, changed) where ``changed`` is False for a duplicate delivery
        """
        call, _ = self.ensure(call_id)
        entry = TranscriptEntry(
            speaker=speaker,
            text=text,
            final=final,
            source_timestamp=source_timestamp,
        )
        transcript = call.transcript
        last = transcript[-1] if transcript else None

        if not final:
            if last is not None and last.speaker == speaker and not last.final:
                if last.text == text:
                    return last, False
                transcript[-1] = entry
            else:
                transcript.append(entry)
        else:
            duplicate = self._find_final_duplicate(transcript, entry)
            if duplicate is not None:
                return duplicate, False
            transcript.append(entry)

        if len(transcript) > self.transcript_limit:
            del transcript[: len(transcript) - self.transcript_limit]

        call.updated_at = utcnow()
        return entry, True

    @staticmethod
    def _find_final_duplicate(
        transcript: list[TranscriptEntry], entry: TranscriptEntry
    ) -> TranscriptEntry | None:
        if not entry.source_timestamp:
            return None
        for existing in reversed(transcript):
            if (
                existing.final
                and existing.source_timestamp == entry.source_timestamp
                and existing.speaker == entry.speaker
                and existing.text == entry.text
            ):
                return existing
        return None

    def record_event(self, call_id: str, event_type: str, data: dict[str, Any]) -> None:
        """Append a control message received on the call's stream."""
        call = self._calls.get(call_id)
        if call is None:
            return
        call.events.append(
            {"type": event_type, "data": data, "timestamp": utcnow().isoformat()}
        )

    # ------------------------------------------------------------------
    # Provider handles and audio bookkeeping
    # ------------------------------------------------------------------

    def update_handles(
        self,
        call_id: str,
        control_url: str | None = None,
        listen_url: str | None = None,
    ) -> CallRecord | None:
        call = self._calls.get(call_id)
        if call is None:
            return None
        if control_url:
            call.control_url = control_url
        if listen_url:
            call.listen_url = listen_url
        return call

    def update_audio(
        self,
        call_id: str,
        *,
        connected: bool | None = None,
        retry_count: int | None = None,
        last_error: str | None = None,
        next_retry_at: datetime | None = None,
    ) -> None:
        call = self._calls.get(call_id)
        if call is None:
            return
        if connected is not None:
            call.audio_connected = connected
        if retry_count is not None:
            call.audio_retry_count = retry_count
        if last_error is not None:
            call.audio_last_error = last_error
        call.audio_next_retry_at = next_retry_at

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, call_id: str) -> int:
        call = self._calls.get(call_id)
        if call is None:
            return 0
        call.listener_count += 1
        log.info("Listener added", call_id=call_id, listeners=call.listener_count)
        return call.listener_count

    def remove_listener(self, call_id: str) -> int:
        call = self._calls.get(call_id)
        if call is None:
            return 0
        call.listener_count = max(0, call.listener_count - 1)
        log.info("Listener removed", call_id=call_id, listeners=call.listener_count)
        return call.listener_count

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def add_eviction_hook(self, hook: EvictionHook) -> None:
        """Register a callback run after a call leaves the registry."""
        self._eviction_hooks.append(hook)

    def evict(self, call_id: str, force: bool = False) -> bool:
        """Remove a call from the registry.

        Without ``force`` the call must have no listeners and an empty
        transcript.

        Returns:
            True if the call was removed
        """
        call = self._calls.get(call_id)
        if call is None:
            return False

        if not force:
            if call.listener_count > 0:
                log.warning(
                    "Blocked removal, call has listeners",
                    call_id=call_id,
                    listeners=call.listener_count,
                )
                return False
            if call.transcript:
                log.warning(
                    "Blocked removal, call has transcript",
                    call_id=call_id,
                    transcript_entries=len(call.transcript),
                )
                return False

        del self._calls[call_id]

        lifetime = int((utcnow() - call.created_at).total_seconds())
        log.info(
            "Call removed from registry",
            call_id=call_id,
            forced=force,
            status=call.status.value,
            answered=call.was_answered,
            transcript_entries=len(call.transcript),
            lifetime_seconds=lifetime,
            history=[t.to_dict() for t in call.status_history],
        )

        for hook in self._eviction_hooks:
            try:
                hook(call)
            except Exception as e:
                log.error("Eviction hook failed", call_id=call_id, error=str(e))

        return True

    def sweep(
        self,
        max_age: float = 3600.0,
        queued_max_age: float = 300.0,
        now: datetime | None = None,
    ) -> list[tuple[str, str]]:
        """Evict stale calls.

        Ended calls older than ``max_age``, failed calls older than half
        of it, calls in no known state older than a quarter of it and queued
        calls older than ``queued_max_age``. Eviction safety checks apply.

        Returns:
            List of (call_id, reason) that were removed
        """
        now = now or utcnow()
        candidates: list[tuple[str, str]] = []

        for call_id, call in self._calls.items():
            reference = call.ended_at or call.created_at
            age = (now - reference).total_seconds()

            if call.status in (CallStatus.ENDED, CallStatus.NO_ANSWER) and age > max_age:
                candidates.append((call_id, "ended_timeout"))
            elif call.status == CallStatus.FAILED and age > max_age / 2:
                candidates.append((call_id, "failed_timeout"))
            elif call.status in (CallStatus.ENDING, CallStatus.TRANSFERRING) and age > max_age / 4:
                candidates.append((call_id, "unsettled_status_timeout"))
            elif call.status == CallStatus.QUEUED and age > queued_max_age:
                candidates.append((call_id, "queued_timeout"))

        removed = [(call_id, reason) for call_id, reason in candidates if self.evict(call_id)]

        if removed:
            log.info("Registry sweep removed calls", count=len(removed), calls=removed)
        return removed

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Aggregate view used by the debug endpoint."""
        by_status: dict[str, int] = {}
        durations: list[int] = []
        retry_details: list[dict[str, Any]] = []
        audio_active = 0

        for call in self._calls.values():
            by_status[call.status.value] = by_status.get(call.status.value, 0) + 1
            if call.duration:
                durations.append(call.duration)
            if call.audio_connected:
                audio_active += 1
            if call.audio_retry_count:
                retry_details.append(
                    {
                        "callId": call.call_id,
                        "count": call.audio_retry_count,
                        "lastError": call.audio_last_error,
                        "nextRetryAt": (
                            call.audio_next_retry_at.isoformat()
                            if call.audio_next_retry_at
                            else None
                        ),
                    }
                )

        return {
            "total": len(self._calls),
            "byStatus": by_status,
            "avgDuration": round(sum(durations) / len(durations)) if durations else 0,
            "retryAttempts": len(retry_details),
            "retryDetails": retry_details,
            "audioStreamsActive": audio_active,
        }
