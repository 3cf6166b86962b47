"""Provider payload adapters.

Vapi delivers the same event with data at different nesting levels
(``{"message": {...}}`` or flat), and Twilio posts form-encoded
callbacks. Everything provider-specific about those shapes lives here.
"""
from __future__ import annotations

from typing import Any, Mapping

from bridge_shared import get_logger

from campaign_bridge.core.call_registry import CallStatus
from campaign_bridge.core.events import (
    CallEvent,
    CallEventKind,
    ConferenceEvent,
    ConferenceEventKind,
    QualificationSignal,
    TranscriptLine,
)
from campaign_bridge.core.phone import format_e164

log = get_logger(__name__)


# Vapi event type -> normalized kind
VAPI_EVENT_KINDS: dict[str, CallEventKind] = {
    "transcript": CallEventKind.TRANSCRIPT,
    "speech-update": CallEventKind.SPEECH,
    "status-update": CallEventKind.STATUS_UPDATE,
    "call-started": CallEventKind.CALL_STARTED,
    "call-ended": CallEventKind.ENDED,
    "end-of-call-report": CallEventKind.ENDED,
    "hang": CallEventKind.ENDED,
    "conversation-update": CallEventKind.CONVERSATION_UPDATE,
    "function-call": CallEventKind.FUNCTION_CALL,
    "call-no-answer": CallEventKind.NO_ANSWER,
    "no-answer": CallEventKind.NO_ANSWER,
    "phone-call-connected": CallEventKind.RINGING,
    "phone-call-started": CallEventKind.RINGING,
    "call-answered": CallEventKind.ANSWERED,
    "phone-answered": CallEventKind.ANSWERED,
    "answered": CallEventKind.ANSWERED,
    "speech-started": CallEventKind.SPEECH,
    "speech-ended": CallEventKind.SPEECH,
    "conversation-started": CallEventKind.SPEECH,
    "assistant-speaking": CallEventKind.SPEECH,
    "user-speaking": CallEventKind.SPEECH,
}

# Speaker implied by the event type itself
_IMPLIED_SPEAKERS: dict[str, str] = {
    "assistant-speaking": "assistant",
    "user-speaking": "customer",
    "conversation-started": "conversation",
}

# Only the end of speech carries no proof on its own
_SPEECH_WITHOUT_ACTIVITY = frozenset({"speech-ended"})

# Provider status strings -> call status
STATUS_ALIASES: dict[str, CallStatus] = {
    "queued": CallStatus.QUEUED,
    "scheduled": CallStatus.QUEUED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "answered": CallStatus.IN_PROGRESS,
    "active": CallStatus.IN_PROGRESS,
    "connected": CallStatus.IN_PROGRESS,
    "conversation-started": CallStatus.IN_PROGRESS,
    "forwarding": CallStatus.TRANSFERRING,
    "transferring": CallStatus.TRANSFERRING,
    "ending": CallStatus.ENDING,
    "ended": CallStatus.ENDED,
    "completed": CallStatus.ENDED,
    "failed": CallStatus.FAILED,
    "canceled": CallStatus.FAILED,
    "no-answer": CallStatus.NO_ANSWER,
    "busy": CallStatus.NO_ANSWER,
}


def map_status(reported: str | None) -> CallStatus | None:
    """Map a provider status string onto a call status.

    Unknown non-empty statuses are assumed to mean the call is live.
    """
    if not reported:
        return None
    status = STATUS_ALIASES.get(reported.lower())
    if status is None:
        log.warning("Unknown call status, assuming answered", reported=reported)
        return CallStatus.IN_PROGRESS
    return status


def _speaker(role: str | None) -> str:
    return "assistant" if role in ("assistant", "bot") else "customer"


class VoiceAIEventAdapter:
    """Normalizes Vapi server messages into CallEvent."""

    def parse(self, body: Mapping[str, Any]) -> CallEvent:
        data: Mapping[str, Any] = body.get("message") or body
        raw_type = str(data.get("type") or "")
        call: dict[str, Any] = dict(data.get("call") or {})
        kind = VAPI_EVENT_KINDS.get(raw_type)
        if kind is None and raw_type.startswith("transcript"):
            # Vapi also sends 'transcript[transcriptType="final"]'
            kind = CallEventKind.TRANSCRIPT
        if kind is None:
            kind = CallEventKind.UNRECOGNIZED

        customer = call.get("customer") or {}
        metadata = customer.get("metadata") or call.get("metadata") or {}
        monitor = call.get("monitor") or {}

        event = CallEvent(
            kind=kind,
            raw_type=raw_type,
            call_id=call.get("id") or data.get("callId"),
            reported_status=data.get("status") if kind == CallEventKind.STATUS_UPDATE else None,
            phone=format_e164(customer.get("number")),
            campaign_id=metadata.get("campaignId"),
            customer_name=customer.get("name"),
            control_url=monitor.get("controlUrl"),
            listen_url=monitor.get("listenUrl"),
            end_reason=data.get("endedReason") or call.get("endedReason"),
            call=call,
        )

        if not event.reported_status:
            event.reported_status = call.get("status")

        if kind == CallEventKind.TRANSCRIPT:
            self._parse_transcript(event, data)
        elif kind == CallEventKind.SPEECH:
            self._parse_speech(event, data, raw_type)
        elif kind == CallEventKind.CONVERSATION_UPDATE:
            self._parse_conversation(event, data)
        elif kind == CallEventKind.FUNCTION_CALL:
            event.function_call = data.get("functionCall") or {}

        return event

    @staticmethod
    def _parse_transcript(event: CallEvent, data: Mapping[str, Any]) -> None:
        transcript = data.get("transcript")
        event.speaker = _speaker(data.get("role"))
        event.text = transcript if isinstance(transcript, str) else None
        event.final = data.get("transcriptType", "final") != "partial"
        timestamp = data.get("timestamp")
        event.source_timestamp = str(timestamp) if timestamp is not None else None

    @staticmethod
    def _parse_speech(event: CallEvent, data: Mapping[str, Any], raw_type: str) -> None:
        role = data.get("role") or _IMPLIED_SPEAKERS.get(raw_type)
        event.speaker = role
        event.speech_activity = bool(role) or raw_type not in _SPEECH_WITHOUT_ACTIVITY
        # Older payloads carry a final transcript line on speech-update
        transcript = data.get("transcript")
        if isinstance(transcript, Mapping) and transcript.get("content"):
            event.kind = CallEventKind.TRANSCRIPT
            event.speaker = _speaker(transcript.get("role") or role)
            event.text = transcript["content"]
            event.final = True

    @staticmethod
    def _parse_conversation(event: CallEvent, data: Mapping[str, Any]) -> None:
        messages = data.get("messages") or data.get("conversation") or []
        for index, message in enumerate(messages):
            role = message.get("role")
            text = message.get("content") or message.get("message")
            if role not in ("assistant", "bot", "user") or not text:
                continue
            stamp = message.get("time") or message.get("timestamp")
            event.lines.append(
                TranscriptLine(
                    speaker=_speaker(role),
                    text=text,
                    # Position in the cumulative conversation identifies the line
                    timestamp=str(stamp) if stamp is not None else f"#{index}",
                )
            )

    def parse_qualification(self, body: Mapping[str, Any]) -> QualificationSignal | None:
        """Extract a qualification signal from a transfer-to-conference tool call.

        Tool arguments take precedence over the call's variable values.

        Returns:
            Signal, or None when no lead id or phone number can be found
        """
        message: Mapping[str, Any] = body.get("message") or body
        call: Mapping[str, Any] = message.get("call") or {}
        tool_calls = message.get("toolCallList") or message.get("toolCalls") or []
        tool_call = tool_calls[0] if tool_calls else {}
        args: Mapping[str, Any] = tool_call.get("arguments") or (
            (tool_call.get("function") or {}).get("arguments") or {}
        )
        if isinstance(args, str):
            args = {}
        variables: Mapping[str, Any] = (
            (call.get("assistantOverrides") or {}).get("variableValues")
            or (call.get("assistant") or {}).get("variableValues")
            or {}
        )
        customer: Mapping[str, Any] = call.get("customer") or {}
        qualification = dict(args.get("qualificationData") or {})

        lead_id = (
            args.get("leadId")
            or args.get("qualified_lead_id")
            or variables.get("leadId")
            or customer.get("id")
            or call.get("id")
        )
        phone = format_e164(
            args.get("customerPhone")
            or args.get("phone")
            or variables.get("phoneNumber")
            or customer.get("number")
        )
        name = (
            args.get("customerName")
            or variables.get("fullName")
            or f"{variables.get('firstName', '')} {variables.get('lastName', '')}".strip()
            or customer.get("name")
            or "Customer"
        )

        if not lead_id or not phone:
            log.error(
                "Qualification signal missing lead or phone",
                lead_id=lead_id,
                phone=phone,
                call_id=call.get("id"),
            )
            return None

        return QualificationSignal(
            lead_id=str(lead_id),
            customer_phone=phone,
            customer_name=name,
            original_call_id=call.get("id"),
            tool_call_id=tool_call.get("id"),
            lead_type=str(qualification.get("leadType") or variables.get("leadType") or ""),
            organization_id=str(
                qualification.get("organizationId") or variables.get("organizationId") or "1"
            ),
            qualification_data=qualification,
        )


class TwilioConferenceAdapter:
    """Normalizes Twilio conference status callbacks into ConferenceEvent."""

    def parse(self, form: Mapping[str, Any]) -> ConferenceEvent:
        raw_type = str(form.get("StatusCallbackEvent") or "")
        try:
            kind = ConferenceEventKind(raw_type)
        except ValueError:
            kind = ConferenceEventKind.UNRECOGNIZED

        return ConferenceEvent(
            kind=kind,
            raw_type=raw_type,
            conference_id=form.get("FriendlyName") or None,
            conference_sid=form.get("ConferenceSid") or None,
            call_sid=form.get("CallSid") or None,
            from_number=form.get("From") or None,
            to_number=form.get("To") or None,
            payload=dict(form),
        )
