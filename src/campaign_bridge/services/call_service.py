"""Call Service.

User-initiated call operations: dispatch with duplicate protection, live
control through the provider's control URL, transfer, manual end and
manual status overrides.
"""

from __future__ import annotations

from typing import Any

from bridge_shared import get_logger

from campaign_bridge.core.broadcast import EventBroadcaster
from campaign_bridge.core.call_registry import (
    CallRecord,
    CallRegistry,
    CallStatus,
    TransitionResult,
)
from campaign_bridge.core.exceptions import (
    CallNotFoundError,
    DuplicateCallError,
    InvalidControlActionError,
    InvalidPhoneNumberError,
    ValidationError,
    VoiceAIError,
)
from campaign_bridge.core.phone import format_e164
from campaign_bridge.core.phone_dedup import PhoneDedupIndex
from campaign_bridge.integrations.voice_ai import OutboundCallRequest, VapiClient
from campaign_bridge.services.call_cleanup import CallCleanup
from campaign_bridge.services.webhook_adapters import map_status
from campaign_bridge.telephony.audio_monitor import AudioStreamMonitor

log = get_logger(__name__)

CONTROL_ACTIONS = ("mute", "unmute", "say")
DEFAULT_TRANSFER_MESSAGE = "Transferring your call now."


def build_control_payload(action: str, message: str | None = None) -> dict[str, Any]:
    """Translate a control action into the provider's control message.

    Raises:
        InvalidControlActionError: For unknown actions or ``say`` without text
    """
    if action == "mute":
        return {"type": "control", "control": "mute-assistant"}
    if action == "unmute":
        return {"type": "control", "control": "unmute-assistant"}
    if action == "say":
        if not message:
            raise InvalidControlActionError(
                "The say action requires a message",
                details={"action": action},
            )
        return {"type": "say", "content": message, "endCallAfterSpoken": False}

    raise InvalidControlActionError(
        f"Invalid control action: {action}",
        details={"action": action, "allowed": list(CONTROL_ACTIONS)},
    )


class CallService:
    """Coordinates user actions on individual calls."""

    def __init__(
        self,
        registry: CallRegistry,
        dedup: PhoneDedupIndex,
        broadcaster: EventBroadcaster,
        cleanup: CallCleanup,
        voice_ai: VapiClient,
        audio: AudioStreamMonitor | None = None,
        manual_end_removal_delay: float = 5.0,
    ) -> None:
        self._registry = registry
        self._dedup = dedup
        self._broadcaster = broadcaster
        self._cleanup = cleanup
        self._voice_ai = voice_ai
        self._audio = audio
        self.manual_end_removal_delay = manual_end_removal_delay

        # Phones with a dispatch in flight (between dedup check and tracking)
        self._dispatching: set[str] = set()

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def create_call(self, request: OutboundCallRequest) -> CallRecord:
        """Dispatch an outbound call.

        Args:
            request: Contact and routing details

        Returns:
            Registered call record

        Raises:
            ValidationError: If no assistant is available
            InvalidPhoneNumberError: If the number cannot be normalized
            DuplicateCallError: If the number already has a live call
            VoiceAIError: If the provider rejects the call
        """
        if not self._voice_ai.resolve_assistant(request.assistant_type):
            raise ValidationError(
                "Assistant ID is required",
                details={"assistant_type": request.assistant_type},
            )

        phone = format_e164(request.phone)
        if phone is None:
            raise InvalidPhoneNumberError(
                "Invalid phone number format",
                details={"phone": request.phone},
            )
        request.phone = phone

        self._dedup.check(phone)
        if phone in self._dispatching:
            raise DuplicateCallError(phone, "pending", "dispatching")

        self._dispatching.add(phone)
        try:
            provider_call = await self._voice_ai.create_call(request)
        finally:
            self._dispatching.discard(phone)

        self._dedup.track(
            phone,
            provider_call.id,
            {
                "firstName": request.first_name,
                "lastName": request.last_name,
                "leadId": request.lead_id,
            },
        )

        call = CallRecord(
            call_id=provider_call.id,
            status=map_status(provider_call.status) or CallStatus.QUEUED,
            phone=phone,
            campaign_id=request.campaign_id,
            customer_name=request.full_name,
            metadata={
                "leadId": request.lead_id,
                "leadType": request.lead_type,
                "assistantType": request.assistant_type,
                **request.metadata,
            },
            control_url=provider_call.control_url,
            listen_url=provider_call.listen_url,
        )
        self._registry.register(call)
        call = self._registry.require(provider_call.id)

        self._broadcaster.publish(
            "call_created",
            {"call": call.to_dict(include_transcript=False)},
            call_id=call.call_id,
        )

        if self._audio is not None and call.listen_url:
            self._audio.start(call.call_id, call.listen_url)

        log.info(
            "Call created",
            call_id=call.call_id,
            phone=phone,
            campaign_id=request.campaign_id,
            has_control=bool(call.control_url),
            has_audio=bool(call.listen_url),
        )
        return call

    # ========================================================================
    # Live control
    # ========================================================================

    def _controllable(self, call_id: str) -> CallRecord:
        call = self._registry.get(call_id)
        if call is None or not call.control_url:
            raise CallNotFoundError(
                "Call not found or not controllable",
                details={"call_id": call_id},
            )
        return call

    async def control_call(
        self,
        call_id: str,
        action: str,
        message: str | None = None,
    ) -> dict[str, Any]:
        """Mute, unmute or make the assistant say something."""
        call = self._controllable(call_id)
        payload = build_control_payload(action, message)

        result = await self._voice_ai.control_call(call.control_url, payload)

        self._broadcaster.publish(
            "call_control",
            {"callId": call_id, "action": action, "controlType": payload["type"]},
            call_id=call_id,
        )
        return {"callId": call_id, "action": action, "controlType": payload["type"], "result": result}

    async def transfer_call(
        self,
        call_id: str,
        destination: str,
        message: str | None = None,
    ) -> dict[str, Any]:
        """Transfer a live call to another number."""
        call = self._controllable(call_id)

        number = format_e164(destination)
        if number is None:
            raise InvalidPhoneNumberError(
                "Invalid phone number format for transfer destination",
                details={"destination": destination},
            )
        content = message or DEFAULT_TRANSFER_MESSAGE

        await self._voice_ai.control_call(
            call.control_url,
            {
                "type": "transfer",
                "destination": {"type": "number", "number": number},
                "content": content,
            },
        )

        self._registry.transition(call_id, CallStatus.TRANSFERRING, source="manual")
        call.metadata["transferDestination"] = number

        self._broadcaster.publish(
            "call_transferring",
            {"callId": call_id, "destination": number, "message": content},
            call_id=call_id,
        )
        log.info("Call transfer initiated", call_id=call_id, destination=number)
        return {"callId": call_id, "destination": number, "message": content}

    async def end_call(self, call_id: str) -> CallRecord:
        """End a call on behalf of the user.

        The call is marked ``ending`` before the provider is asked to hang up
        and ``ended`` afterwards, even if the provider request fails (the call
        may already be over on its side).
        """
        call = self._registry.require(call_id)
        if call.status.is_terminal:
            log.info("Call already finished", call_id=call_id, status=call.status.value)
            return call

        self._registry.transition(call_id, CallStatus.ENDING, source="manual")
        self._broadcaster.publish(
            "call_ending",
            {"callId": call_id, "endedBy": "user"},
            call_id=call_id,
        )

        try:
            if call.control_url:
                await self._voice_ai.control_call(call.control_url, {"type": "end-call"})
            else:
                await self._voice_ai.end_call(call_id)
        except VoiceAIError as e:
            log.warning("Provider end-call request failed", call_id=call_id, error=e.message)

        self._registry.transition(call_id, CallStatus.ENDED, source="manual", end_reason="manual")
        self._dedup.release(call_id, call.phone)

        self._broadcaster.publish(
            "call_ended",
            {"callId": call_id, "endedBy": "user", "call": call.to_dict(include_transcript=False)},
            call_id=call_id,
        )
        self._cleanup.schedule_removal(call_id, self.manual_end_removal_delay, "manual_end")
        return call

    def update_status(
        self,
        call_id: str,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Apply an operator-reported status.

        The override goes through the state machine, so it cannot regress
        the call.
        """
        call = self._registry.require(call_id)
        try:
            target = CallStatus(status)
        except ValueError as e:
            raise ValidationError(
                f"Unknown call status: {status}",
                details={"status": status, "allowed": [s.value for s in CallStatus]},
            ) from e

        if metadata:
            call.metadata.update(metadata)

        result = self._registry.transition(call_id, target, source="manual")
        if result.changed and target.is_terminal:
            self._dedup.release(call_id, call.phone)

        self._broadcaster.publish(
            "call_status_updated",
            {
                "callId": call_id,
                "status": result.status.value,
                "requested": target.value,
                "applied": result.applied,
                "metadata": metadata or {},
            },
            call_id=call_id,
        )
        return result

    # ========================================================================
    # Listeners
    # ========================================================================

    def add_listener(self, call_id: str) -> int:
        """Attach a live listener; listened calls are never evicted."""
        self._registry.require(call_id)
        return self._registry.add_listener(call_id)

    def remove_listener(self, call_id: str) -> int:
        self._registry.require(call_id)
        return self._cleanup.release_listener(call_id)

    # ========================================================================
    # Reads and maintenance
    # ========================================================================

    def get_call(self, call_id: str) -> CallRecord:
        return self._registry.require(call_id)

    def list_active_calls(self) -> list[CallRecord]:
        return sorted(self._registry.all(), key=lambda c: c.created_at, reverse=True)

    def debug_info(self) -> dict[str, Any]:
        return {
            "phoneTracking": [entry.to_dict() for entry in self._dedup.entries()],
            "registry": self._registry.get_stats(),
            "audio": self._audio.get_stats() if self._audio is not None else None,
        }

    def cleanup_phone(self, phone: str) -> dict[str, Any]:
        """Manually clear the duplicate guard for a number."""
        normalized = format_e164(phone) or phone
        entry = self._dedup.cleanup_phone(normalized)
        return {
            "phone": normalized,
            "cleared": entry is not None,
            "callId": entry.call_id if entry else None,
        }

    def force_cleanup(self) -> list[dict[str, Any]]:
        return self._dedup.force_cleanup()
