"""Conference Bridging Orchestrator.

Builds three-way bridges for qualified leads: an AI hold-agent keeps the
customer company while the human agent queue is dialed, and the
customer's live call is moved into the room in place when it can be
found. When it cannot, the caller gets a SIP transfer instruction
instead.

Flow:
    1. Persist the conference record
    2. Hold-agent call into the room
    3. Queue dial-out into the room
    4. Seamless join of the customer's live call, or SIP fallback

Steps 2 and 3 are independent of how the customer joins; a failure in one
step is logged and reported, never fatal to the others.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from bridge_shared import get_logger

from campaign_bridge.core.broadcast import EventBroadcaster
from campaign_bridge.core.events import ConferenceEvent, ConferenceEventKind, QualificationSignal
from campaign_bridge.core.exceptions import (
    CampaignBridgeError,
    ConferenceNotFoundError,
    ConfigurationError,
    InvalidPhoneNumberError,
    ProviderError,
    TelephonyError,
    VoiceAIError,
)
from campaign_bridge.core.phone import format_e164, normalize_for_match
from campaign_bridge.core.timers import TaskScheduler
from campaign_bridge.integrations.twilio import TwilioVoiceClient
from campaign_bridge.integrations.voice_ai import VapiClient
from campaign_bridge.store.repositories.conferences import ConferenceRepository

log = get_logger(__name__)

# Participant roles
HOLD_AGENT = "hold-agent"
QUEUE_DIAL = "queue-dial"
CUSTOMER = "customer"
HUMAN_AGENT = "human-agent"

# Transfer methods
CALL_MODIFICATION = "call_modification"
SIP_TRANSFER_FALLBACK = "sip_transfer_fallback"

JOIN_FAILURE_MESSAGE = (
    "I apologize, but I'm having trouble connecting you to the conference. "
    "Let me transfer you directly to our senior consultant."
)
QUEUE_FALLBACK_MESSAGE = "Let me transfer you directly to our senior consultant queue"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_conference_id(lead_id: str) -> str:
    """Conference ids combine creation time (ms) and lead id."""
    return f"conf_{int(time.time() * 1000)}_{lead_id}"


def format_wait_time(seconds: int) -> str:
    return f"{seconds // 60}m {seconds % 60}s"


def tool_response(tool_call_id: str | None, result: dict[str, Any]) -> dict[str, Any]:
    """Wrap a result in the voice-AI tool-call response envelope."""
    return {"results": [{"toolCallId": tool_call_id or "unknown", "result": result}]}


class ConferenceOrchestrator:
    """Creates and tracks conference bridges.

    Usage:
        orchestrator = ConferenceOrchestrator(
            repository, broadcaster, scheduler, vapi, twilio,
            agent_queue_number="+18005550100",
        )

        result = await orchestrator.bridge(signal)
        ...
        await orchestrator.handle_twilio_event(event)
    """

    def __init__(
        self,
        repository: ConferenceRepository,
        broadcaster: EventBroadcaster,
        scheduler: TaskScheduler,
        voice_ai: VapiClient,
        twilio: TwilioVoiceClient,
        *,
        agent_queue_number: str = "",
        goodbye_seconds: float = 5.0,
        welcome_message: str | None = None,
        handoff_message: str = "Senior consultant has joined. Please say goodbye and disconnect.",
        agent_whisper: str = "Connecting you to {customer}.",
    ) -> None:
        """Initialize orchestrator.

        Args:
            repository: Conference record persistence
            broadcaster: Channel for conference events
            scheduler: Timer owner for the hold-agent goodbye window
            voice_ai: Voice-AI client (hold-agent calls)
            twilio: Telephony client (dial-out, call search and modification)
            agent_queue_number: Human agent queue, dialed into every room
            goodbye_seconds: Grace period between handoff and hold-agent hangup
            welcome_message: Spoken to the customer when their call is moved
            handoff_message: Sent to the hold-agent when an agent joins
            agent_whisper: Spoken to the agent leg; ``{customer}`` is replaced
        """
        self._repository = repository
        self._broadcaster = broadcaster
        self._scheduler = scheduler
        self._voice_ai = voice_ai
        self._twilio = twilio

        self.agent_queue_number = agent_queue_number
        self.goodbye_seconds = goodbye_seconds
        self.welcome_message = welcome_message
        self.handoff_message = handoff_message
        self.agent_whisper = agent_whisper

    @staticmethod
    def goodbye_timer_key(conference_id: str) -> str:
        return f"conference:{conference_id}:hold-goodbye"

    def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        self._broadcaster.publish(event_type, data)

    # ========================================================================
    # Bridge creation
    # ========================================================================

    async def bridge(self, signal: QualificationSignal) -> dict[str, Any]:
        """Create a conference bridge for a qualified lead.

        Args:
            signal: Lead identity, phone number and qualification payload

        Returns:
            Result for the caller. ``method`` is ``call_modification`` when
            the customer's call was moved in place; otherwise a SIP
            ``transferDestination`` is included.

        Raises:
            InvalidPhoneNumberError: If the customer number is unusable
            StoreError: If the conference record cannot be created
        """
        customer_phone = format_e164(signal.customer_phone)
        if customer_phone is None:
            raise InvalidPhoneNumberError(
                "Invalid customer phone number",
                details={"phone": signal.customer_phone},
            )

        conference_id = generate_conference_id(signal.lead_id)
        log.info(
            "Creating conference bridge",
            conference_id=conference_id,
            lead_id=signal.lead_id,
            original_call_id=signal.original_call_id,
        )

        await self._repository.create(
            {
                "conferenceId": conference_id,
                "leadId": signal.lead_id,
                "customerPhone": customer_phone,
                "customerName": signal.customer_name,
                "originalCallId": signal.original_call_id,
                "assistantType": signal.lead_type,
                "qualificationData": {
                    "qualifyStatus": True,
                    "leadType": signal.lead_type,
                    "organizationId": signal.organization_id,
                    **signal.qualification_data,
                },
                "createdAt": _now_iso(),
                "status": "initializing",
                "participants": [],
            }
        )

        unsaved: list[str] = []
        hold_connected = await self._start_hold_agent(conference_id, customer_phone, signal, unsaved)
        queue_dialing = await self._dial_queue(conference_id, signal, unsaved)
        customer_call_sid = await self._join_customer(conference_id, customer_phone)

        details: dict[str, Any] = {
            "holdAssistantConnected": hold_connected,
            "queueDialing": queue_dialing,
            "conferenceReady": True,
        }

        if customer_call_sid is not None:
            await self._save_step(
                conference_id,
                "customerJoin",
                unsaved,
                {
                    "customerCallSid": customer_call_sid,
                    "status": "customer_joining",
                    "participants": [CUSTOMER],
                    "transferMethod": CALL_MODIFICATION,
                },
            )
            self._publish(
                "qualified_lead_conference",
                {
                    "conferenceId": conference_id,
                    "leadId": signal.lead_id,
                    "customerName": signal.customer_name,
                    "status": "customer_joined_seamlessly",
                    "transferMethod": CALL_MODIFICATION,
                },
            )
            log.info(
                "Seamless conference join",
                conference_id=conference_id,
                customer_call_sid=customer_call_sid,
            )
            if unsaved:
                details["unsavedSteps"] = unsaved
            return {
                "success": True,
                "conferenceId": conference_id,
                "message": "Conference created and customer joined seamlessly",
                "method": CALL_MODIFICATION,
                "details": {**details, "customerJoined": True, "seamlessTransfer": True},
            }

        await self._save_step(
            conference_id, "transferMethod", unsaved, {"transferMethod": SIP_TRANSFER_FALLBACK}
        )
        if unsaved:
            details["unsavedSteps"] = unsaved
        self._publish(
            "qualified_lead_conference",
            {
                "conferenceId": conference_id,
                "leadId": signal.lead_id,
                "customerName": signal.customer_name,
                "status": "sip_transfer_pending",
                "transferMethod": SIP_TRANSFER_FALLBACK,
            },
        )
        log.warning("Customer call not found, using SIP transfer", conference_id=conference_id)
        return {
            "success": True,
            "conferenceId": conference_id,
            "message": "Conference created - using SIP transfer fallback",
            "method": SIP_TRANSFER_FALLBACK,
            "transferDestination": {
                "type": "sip",
                "sipUri": f"sip:{conference_id}@conference.twilio.com",
                "headers": {
                    "X-Conference-Id": conference_id,
                    "X-Customer-Id": signal.lead_id,
                },
            },
            "details": {**details, "conferenceMethod": SIP_TRANSFER_FALLBACK},
        }

    async def _start_hold_agent(
        self,
        conference_id: str,
        customer_phone: str,
        signal: QualificationSignal,
        unsaved: list[str],
    ) -> bool:
        try:
            call = await self._voice_ai.create_hold_agent_call(
                conference_id,
                customer_phone,
                {
                    "customerName": signal.customer_name,
                    "caseType": signal.lead_type,
                    "leadId": signal.lead_id,
                    "organizationId": signal.organization_id,
                },
            )
        except (ProviderError, ConfigurationError) as e:
            log.error("Hold-agent call failed", conference_id=conference_id, error=e.message)
            return False

        await self._save_step(
            conference_id,
            "holdAgent",
            unsaved,
            {
                "holdAssistantCallId": call.id,
                "participants": [HOLD_AGENT],
                "status": "hold_agent_joining",
            },
        )
        return True

    async def _dial_queue(
        self, conference_id: str, signal: QualificationSignal, unsaved: list[str]
    ) -> bool:
        if not self.agent_queue_number:
            log.error("Agent queue number not configured", conference_id=conference_id)
            return False

        whisper = (
            f"Connecting qualified {signal.lead_type or 'new'} lead. "
            f"Conference ID: {conference_id[-6:]}."
        )
        try:
            call = await self._twilio.dial_into_conference(
                self.agent_queue_number, conference_id, whisper
            )
        except TelephonyError as e:
            log.error("Queue dial-out failed", conference_id=conference_id, error=e.message)
            return False

        await self._save_step(
            conference_id,
            "queueDial",
            unsaved,
            {
                "queueCallSid": call.get("sid"),
                "participants": [QUEUE_DIAL],
                "status": "waiting_for_agent",
            },
        )
        return True

    async def _join_customer(self, conference_id: str, customer_phone: str) -> str | None:
        """Move the customer's live call into the room.

        Returns:
            The customer's call sid, or None when the seamless path failed
        """
        active_call = await self._twilio.find_active_call_by_phone(customer_phone)
        if not active_call or not active_call.get("sid"):
            return None

        call_sid = active_call["sid"]
        try:
            await self._twilio.modify_call_to_join_conference(
                call_sid, conference_id, self.welcome_message
            )
        except TelephonyError as e:
            log.error(
                "Customer call modification failed",
                conference_id=conference_id,
                call_sid=call_sid,
                error=e.message,
            )
            return None
        return call_sid

    async def _save_step(
        self,
        conference_id: str,
        step: str,
        unsaved: list[str],
        updates: dict[str, Any],
    ) -> None:
        """Persist one bridge step; a failed write is recorded in ``unsaved``."""
        try:
            await self._repository.update(conference_id, updates)
        except CampaignBridgeError as e:
            log.error(
                "Conference step not saved",
                conference_id=conference_id,
                step=step,
                error=e.message,
                error_code=e.error_code,
            )
            unsaved.append(step)

    def failure_result(self, error: str, *, transfer_to_queue: bool = True) -> dict[str, Any]:
        """Result for a bridge that could not be created."""
        result: dict[str, Any] = {
            "success": False,
            "error": error,
            "message": (
                "Conference creation failed - transferring directly to queue"
                if transfer_to_queue
                else "Conference creation failed - please try again"
            ),
        }
        if transfer_to_queue and self.agent_queue_number:
            result["fallbackTransfer"] = {
                "destination": self.agent_queue_number,
                "message": QUEUE_FALLBACK_MESSAGE,
            }
        return result

    # ========================================================================
    # Inbound legs
    # ========================================================================

    async def join_twiml(self, conference_id: str, call_sid: str | None = None) -> str:
        """TwiML for a leg arriving at the join endpoint.

        Unknown or expired conferences are sent to the agent queue instead.
        """
        record = await self._repository.get(conference_id)
        if record is None:
            log.warning("Join requested for unknown conference", conference_id=conference_id)
            if self.agent_queue_number:
                return self._twilio.dial_number_twiml(self.agent_queue_number, JOIN_FAILURE_MESSAGE)
            return self._twilio.hangup_twiml(JOIN_FAILURE_MESSAGE)

        updates: dict[str, Any] = {
            "customerJoinedAt": _now_iso(),
            "status": "customer_joining",
            "participants": [CUSTOMER],
        }
        if call_sid:
            updates["customerCallSid"] = call_sid
        await self._repository.update(conference_id, updates)

        self._publish(
            "customer_joining_conference",
            {
                "conferenceId": conference_id,
                "customerName": record.get("customerName"),
                "customerCallSid": call_sid,
            },
        )
        return self._twilio.conference_twiml(conference_id, self.welcome_message)

    # ========================================================================
    # Agent handling
    # ========================================================================

    async def add_agent(
        self,
        conference_id: str,
        agent_phone: str,
        agent_name: str | None = None,
        agent_id: str | None = None,
    ) -> dict[str, Any]:
        """Dial a specific agent into a conference.

        Raises:
            ConferenceNotFoundError: If the conference is unknown
            InvalidPhoneNumberError: If the agent number is unusable
            TelephonyError: If the dial-out fails
        """
        record = await self._repository.get_or_raise(conference_id)
        phone = format_e164(agent_phone)
        if phone is None:
            raise InvalidPhoneNumberError(
                "Invalid agent phone number",
                details={"phone": agent_phone},
            )

        whisper = self.agent_whisper.format(customer=record.get("customerName") or "the customer")
        call = await self._twilio.dial_into_conference(phone, conference_id, whisper)

        record = await self._repository.update(
            conference_id,
            {
                "status": "agent_connected",
                "agentId": agent_id,
                "agentName": agent_name,
                "agentCallSid": call.get("sid"),
                "agentJoinedAt": _now_iso(),
                "handoffAt": _now_iso(),
                "participants": [HUMAN_AGENT],
            },
        )
        await self._hand_off(record, agent_name)

        self._publish(
            "agent_joined_conference",
            {
                "conferenceId": conference_id,
                "agentId": agent_id,
                "agentName": agent_name,
                "participants": len(record.get("participants", [])),
            },
        )
        log.info("Agent added to conference", conference_id=conference_id, agent_id=agent_id)
        return {
            "conferenceId": conference_id,
            "agentCallSid": call.get("sid"),
            "message": "Agent successfully added to conference",
        }

    async def _hand_off(self, record: dict[str, Any], agent_name: str | None = None) -> None:
        """Tell the hold-agent to say goodbye, then end it after the goodbye window."""
        hold_call_id = record.get("holdAssistantCallId")
        if not hold_call_id:
            return

        message: dict[str, Any] = {"type": "agent-joined", "message": self.handoff_message}
        if agent_name:
            message["agentName"] = agent_name
        try:
            await self._voice_ai.send_message(hold_call_id, message)
        except VoiceAIError as e:
            log.warning(
                "Hold-agent handoff message failed",
                conference_id=record.get("conferenceId"),
                error=e.message,
            )

        self._scheduler.schedule(
            self.goodbye_timer_key(record["conferenceId"]),
            self.goodbye_seconds,
            self._release_hold_agent,
            record["conferenceId"],
            hold_call_id,
        )

    async def _handle_agent_join(self, record: dict[str, Any], call_sid: str | None) -> None:
        conference_id = record["conferenceId"]
        if record.get("handoffAt"):
            log.info("Agent join already handled", conference_id=conference_id, call_sid=call_sid)
            return

        record = await self._repository.update(
            conference_id,
            {
                "status": "agent_connected",
                "agentJoinedAt": record.get("agentJoinedAt") or _now_iso(),
                "handoffAt": _now_iso(),
                "participants": [HUMAN_AGENT],
            },
        )

        await self._hand_off(record)

        self._publish(
            "agent_connected",
            {
                "conferenceId": conference_id,
                "agentCallSid": call_sid,
                "participants": record.get("participants", []),
            },
        )
        log.info("Queue agent joined conference", conference_id=conference_id, call_sid=call_sid)

    async def _release_hold_agent(self, conference_id: str, hold_call_id: str) -> None:
        """End the hold-agent call once the goodbye window has passed."""
        try:
            await self._voice_ai.end_call(hold_call_id)
        except VoiceAIError as e:
            log.warning("Failed to end hold-agent call", conference_id=conference_id, error=e.message)

        try:
            await self._repository.update(conference_id, {"holdAgentEndedAt": _now_iso()})
        except ConferenceNotFoundError:
            log.info("Conference expired before hold-agent release", conference_id=conference_id)
            return

        self._publish(
            "hold_agent_released",
            {"conferenceId": conference_id, "holdAssistantCallId": hold_call_id},
        )

    # ========================================================================
    # Telephony webhooks
    # ========================================================================

    def _is_agent_leg(self, record: dict[str, Any], event: ConferenceEvent) -> bool:
        if event.call_sid and event.call_sid in (record.get("queueCallSid"), record.get("agentCallSid")):
            return True
        queue = normalize_for_match(self.agent_queue_number)
        return bool(queue) and queue in (
            normalize_for_match(event.from_number),
            normalize_for_match(event.to_number),
        )

    async def handle_twilio_event(self, event: ConferenceEvent) -> dict[str, Any]:
        """Apply a conference status callback.

        Returns:
            Summary with ``handled`` and, for joins, the participant type
        """
        conference_id = event.conference_id
        log.info(
            "Conference webhook",
            event_type=event.raw_type,
            conference_id=conference_id,
            call_sid=event.call_sid,
        )
        if not conference_id:
            return {"handled": False, "event": event.raw_type, "reason": "missing_conference"}

        record = await self._repository.get(conference_id)
        if record is None:
            log.info("Conference webhook for unknown conference", conference_id=conference_id)
            return {"handled": False, "event": event.raw_type, "reason": "unknown_conference"}

        summary: dict[str, Any] = {
            "handled": True,
            "event": event.raw_type,
            "conferenceId": conference_id,
        }

        if event.kind == ConferenceEventKind.PARTICIPANT_JOIN:
            summary["participantType"] = await self._on_participant_join(record, event)
        elif event.kind == ConferenceEventKind.PARTICIPANT_LEAVE:
            summary["participantType"] = await self._on_participant_leave(record, event)
        elif event.kind == ConferenceEventKind.CONFERENCE_START:
            await self._repository.update(
                conference_id,
                {
                    "conferenceStartedAt": _now_iso(),
                    "twilioConferenceSid": event.conference_sid,
                },
            )
            self._publish("conference_started", {"conferenceId": conference_id})
        elif event.kind == ConferenceEventKind.CONFERENCE_END:
            await self._mark_ended(record, conference_sid=event.conference_sid, final_status="completed")
        else:
            log.info("Unhandled conference event", event_type=event.raw_type)
            summary["handled"] = False

        return summary

    async def _on_participant_join(self, record: dict[str, Any], event: ConferenceEvent) -> str:
        conference_id = record["conferenceId"]

        if self._is_agent_leg(record, event):
            await self._handle_agent_join(record, event.call_sid)
            return HUMAN_AGENT

        participant_type = "other"
        if event.call_sid and event.call_sid == record.get("holdAssistantCallId"):
            participant_type = HOLD_AGENT
        elif (
            event.call_sid and event.call_sid == record.get("customerCallSid")
        ) or normalize_for_match(event.from_number) == normalize_for_match(record.get("customerPhone")):
            participant_type = CUSTOMER
            record = await self._repository.update(
                conference_id,
                {
                    "customerCallSid": event.call_sid,
                    "customerJoinedAt": _now_iso(),
                    "status": "customer_connected",
                    "participants": [CUSTOMER],
                },
            )

        self._publish(
            "conference_participant_joined",
            {
                "conferenceId": conference_id,
                "participantType": participant_type,
                "callSid": event.call_sid,
                "participants": record.get("participants", []),
            },
        )
        return participant_type

    async def _on_participant_leave(self, record: dict[str, Any], event: ConferenceEvent) -> str:
        conference_id = record["conferenceId"]
        known_legs = {
            record.get("queueCallSid"),
            record.get("agentCallSid"),
            record.get("customerCallSid"),
        }

        participant_type = "other"
        if event.call_sid and event.call_sid == record.get("holdAssistantCallId"):
            participant_type = HOLD_AGENT
        elif record.get("holdAgentEndedAt") and event.call_sid not in known_legs:
            # The hold-agent leg has no telephony sid of its own
            participant_type = HOLD_AGENT
        elif event.call_sid == record.get("customerCallSid"):
            participant_type = CUSTOMER
        elif event.call_sid in (record.get("queueCallSid"), record.get("agentCallSid")):
            participant_type = HUMAN_AGENT

        if participant_type == HOLD_AGENT:
            await self._repository.update(
                conference_id,
                {
                    "status": "agent_and_customer_connected",
                    "holdAssistantLeftAt": _now_iso(),
                },
            )

        self._publish(
            "conference_participant_left",
            {
                "conferenceId": conference_id,
                "participantType": participant_type,
                "callSid": event.call_sid,
            },
        )
        return participant_type

    async def _mark_ended(
        self,
        record: dict[str, Any],
        *,
        conference_sid: str | None = None,
        final_status: str = "completed",
    ) -> dict[str, Any]:
        conference_id = record["conferenceId"]
        self._scheduler.cancel(self.goodbye_timer_key(conference_id))

        if record.get("status") == "ended":
            log.info("Conference already ended", conference_id=conference_id)
            return record

        updates: dict[str, Any] = {"status": "ended", "endedAt": _now_iso()}
        if conference_sid:
            updates["twilioConferenceSid"] = conference_sid
        record = await self._repository.update(conference_id, updates)

        self._publish(
            "conference_ended",
            {
                "conferenceId": conference_id,
                "endedAt": record.get("endedAt"),
                "finalStatus": final_status,
            },
        )
        log.info("Conference ended", conference_id=conference_id, final_status=final_status)
        return record

    # ========================================================================
    # Status and teardown
    # ========================================================================

    async def get_status(self, conference_id: str) -> dict[str, Any]:
        """Stored record enriched with live provider state and wait time.

        Raises:
            ConferenceNotFoundError: If the conference is unknown
        """
        record = await self._repository.get_or_raise(conference_id)

        try:
            twilio_status = await self._twilio.get_conference_status(conference_id)
        except TelephonyError as e:
            log.warning("Conference status lookup failed", conference_id=conference_id, error=e.message)
            twilio_status = {"status": "unavailable", "error": e.message}

        wait_seconds = 0
        created_at = record.get("createdAt")
        if created_at:
            started = datetime.fromisoformat(created_at)
            wait_seconds = max(0, int((datetime.now(timezone.utc) - started).total_seconds()))

        return {
            **record,
            "twilioStatus": twilio_status,
            "waitTime": wait_seconds,
            "waitTimeFormatted": format_wait_time(wait_seconds),
        }

    async def end_conference(self, conference_id: str) -> dict[str, Any]:
        """Tear down a conference.

        Raises:
            ConferenceNotFoundError: If the conference is unknown
            TelephonyError: If the provider conference cannot be ended
        """
        record = await self._repository.get_or_raise(conference_id)
        log.info("Ending conference", conference_id=conference_id)

        hold_call_id = record.get("holdAssistantCallId")
        if hold_call_id and not record.get("holdAgentEndedAt"):
            try:
                await self._voice_ai.end_call(hold_call_id)
            except VoiceAIError as e:
                log.error("Error ending hold-agent call", conference_id=conference_id, error=e.message)

        await self._twilio.end_conference(conference_id)
        return await self._mark_ended(record, final_status="ended_by_user")
