"""Core building blocks: call state machine, timers, broadcast and errors."""

from campaign_bridge.core.broadcast import BroadcastEvent, EventBroadcaster, Subscription
from campaign_bridge.core.call_registry import (
    CallRecord,
    CallRegistry,
    CallStatus,
    Evidence,
    TranscriptEntry,
    TransitionResult,
)
from campaign_bridge.core.events import (
    CallEvent,
    CallEventKind,
    ConferenceEvent,
    ConferenceEventKind,
    QualificationSignal,
    TranscriptLine,
)
from campaign_bridge.core.phone_dedup import PhoneDedupIndex, PhoneEntry
from campaign_bridge.core.timers import ScheduledTask, TaskScheduler

__all__ = [
    "BroadcastEvent",
    "CallEvent",
    "CallEventKind",
    "CallRecord",
    "CallRegistry",
    "CallStatus",
    "ConferenceEvent",
    "ConferenceEventKind",
    "EventBroadcaster",
    "Evidence",
    "PhoneDedupIndex",
    "PhoneEntry",
    "QualificationSignal",
    "ScheduledTask",
    "Subscription",
    "TaskScheduler",
    "TranscriptEntry",
    "TranscriptLine",
    "TransitionResult",
]
