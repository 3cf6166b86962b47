"""Normalized provider events.

Provider adapters translate raw webhook payloads into these types before
any business logic runs, so the reconciler never inspects nesting levels
or provider-specific field names.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CallEventKind(str, Enum):
    """Categories of voice-AI call events."""

    CALL_STARTED = "call_started"
    RINGING = "ringing"
    ANSWERED = "answered"
    SPEECH = "speech"
    TRANSCRIPT = "transcript"
    CONVERSATION_UPDATE = "conversation_update"
    STATUS_UPDATE = "status_update"
    ENDED = "ended"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    FUNCTION_CALL = "function_call"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class TranscriptLine:
    speaker: str
    text: str
    timestamp: str | None = None


@dataclass
class CallEvent:
    """A voice-AI webhook event after normalization."""

    kind: CallEventKind
    raw_type: str
    call_id: str | None = None

    # Status as reported by the provider, before alias mapping
    reported_status: str | None = None
    phone: str | None = None
    campaign_id: str | None = None
    customer_name: str | None = None

    # Transcript payload
    speaker: str | None = None
    # Speech activity that proves someone picked up
    speech_activity: bool = False
    text: str | None = None
    final: bool = True
    source_timestamp: str | None = None
    lines: list[TranscriptLine] = field(default_factory=list)

    # Provider handles
    control_url: str | None = None
    listen_url: str | None = None

    end_reason: str | None = None
    function_call: dict[str, Any] | None = None
    call: dict[str, Any] = field(default_factory=dict)

    @property
    def has_call(self) -> bool:
        return bool(self.call_id)


class ConferenceEventKind(str, Enum):
    """Categories of telephony conference status callbacks."""

    PARTICIPANT_JOIN = "participant-join"
    PARTICIPANT_LEAVE = "participant-leave"
    CONFERENCE_START = "conference-start"
    CONFERENCE_END = "conference-end"
    UNRECOGNIZED = "unrecognized"


@dataclass
class ConferenceEvent:
    """A telephony conference callback after normalization."""

    kind: ConferenceEventKind
    raw_type: str
    conference_id: str | None = None
    conference_sid: str | None = None
    call_sid: str | None = None
    from_number: str | None = None
    to_number: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class QualificationSignal:
    """A qualified lead ready to be bridged into a conference."""

    lead_id: str
    customer_phone: str
    customer_name: str = "Customer"
    original_call_id: str | None = None
    tool_call_id: str | None = None
    lead_type: str = ""
    organization_id: str = "1"
    qualification_data: dict[str, Any] = field(default_factory=dict)
