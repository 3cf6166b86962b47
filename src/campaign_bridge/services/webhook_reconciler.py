"""Webhook Reconciler.

Applies normalized voice-AI events to the call registry. Providers deliver
events at least once, frequently duplicated and sometimes out of order, so
every handler is idempotent and the registry's state machine arbitrates
conflicting statuses.

Conversational activity always wins: a transcript or speech event for a
call that is not yet in progress promotes it and emits ``call_answered``.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping

from bridge_shared import call_context, get_logger

from campaign_bridge.core.broadcast import EventBroadcaster
from campaign_bridge.core.call_registry import (
    CallRegistry,
    CallStatus,
    Evidence,
    TransitionResult,
)
from campaign_bridge.core.events import CallEvent, CallEventKind
from campaign_bridge.core.phone_dedup import PhoneDedupIndex
from campaign_bridge.core.timers import TaskScheduler
from campaign_bridge.services.call_cleanup import CallCleanup
from campaign_bridge.services.campaign_executor import CampaignExecutor
from campaign_bridge.services.webhook_adapters import VoiceAIEventAdapter, map_status
from campaign_bridge.telephony.audio_monitor import AudioStreamMonitor

log = get_logger(__name__)

# Terminal call status -> campaign outcome
CAMPAIGN_OUTCOMES: dict[CallStatus, str] = {
    CallStatus.ENDED: "completed",
    CallStatus.FAILED: "failed",
    CallStatus.NO_ANSWER: "no-answer",
}


class WebhookReconciler:
    """Single entry point for voice-AI call events."""

    def __init__(
        self,
        registry: CallRegistry,
        dedup: PhoneDedupIndex,
        broadcaster: EventBroadcaster,
        scheduler: TaskScheduler,
        cleanup: CallCleanup,
        *,
        campaigns: CampaignExecutor | None = None,
        audio: AudioStreamMonitor | None = None,
        adapter: VoiceAIEventAdapter | None = None,
        end_broadcast_delay: float = 300.0,
        removal_delay: float = 600.0,
        failed_removal_delay: float = 2.0,
        no_answer_removal_delay: float = 180.0,
    ) -> None:
        """Initialize reconciler.

        Args:
            registry: Call registry
            dedup: Phone-dedup index, released when calls finish
            broadcaster: Channel for call events
            scheduler: Timer owner for delayed end handling
            cleanup: Delayed eviction
            campaigns: Receives terminal outcomes of campaign calls
            audio: Audio monitor, started once a call is answered
            adapter: Payload normalizer
            end_broadcast_delay: Seconds before ``call_ended`` is announced
            removal_delay: Seconds after that before the call is evicted
            failed_removal_delay: Eviction delay for failed calls
            no_answer_removal_delay: Eviction delay for unanswered calls
        """
        self._registry = registry
        self._dedup = dedup
        self._broadcaster = broadcaster
        self._scheduler = scheduler
        self._cleanup = cleanup
        self._campaigns = campaigns
        self._audio = audio
        self._adapter = adapter or VoiceAIEventAdapter()

        self.end_broadcast_delay = end_broadcast_delay
        self.removal_delay = removal_delay
        self.failed_removal_delay = failed_removal_delay
        self.no_answer_removal_delay = no_answer_removal_delay

        self._handlers: dict[CallEventKind, Callable[[CallEvent], Awaitable[None]]] = {
            CallEventKind.CALL_STARTED: self._on_call_started,
            CallEventKind.RINGING: self._on_ringing,
            CallEventKind.ANSWERED: self._on_answered,
            CallEventKind.SPEECH: self._on_speech,
            CallEventKind.TRANSCRIPT: self._on_transcript,
            CallEventKind.CONVERSATION_UPDATE: self._on_conversation_update,
            CallEventKind.STATUS_UPDATE: self._on_status_update,
            CallEventKind.ENDED: self._on_ended,
            CallEventKind.FAILED: self._on_failed,
            CallEventKind.NO_ANSWER: self._on_no_answer,
            CallEventKind.FUNCTION_CALL: self._on_function_call,
            CallEventKind.UNRECOGNIZED: self._on_unrecognized,
        }

    # ========================================================================
    # Entry points
    # ========================================================================

    async def handle(self, body: Mapping[str, Any]) -> dict[str, Any]:
        """Normalize and apply a raw provider payload."""
        event = self._adapter.parse(body)
        with call_context(call_id=event.call_id, campaign_id=event.campaign_id):
            return await self.apply(event)

    async def apply(self, event: CallEvent) -> dict[str, Any]:
        """Apply a normalized event.

        Returns:
            Summary of what was handled
        """
        if not event.has_call:
            log.warning("Webhook event without call id", type=event.raw_type)
            return {"handled": False, "type": event.raw_type, "reason": "missing_call_id"}

        call_id = event.call_id
        _, created = self._registry.ensure(
            call_id,
            source=event.raw_type or event.kind.value,
            phone=event.phone,
            campaign_id=event.campaign_id,
            customer_name=event.customer_name,
        )
        self._registry.update_handles(call_id, event.control_url, event.listen_url)

        log.info(
            "Voice-AI webhook",
            type=event.raw_type,
            kind=event.kind.value,
            call_id=call_id,
            reported_status=event.reported_status,
            auto_created=created,
        )

        await self._handlers[event.kind](event)
        self._ensure_audio(call_id)

        call = self._registry.get(call_id)
        return {
            "handled": True,
            "type": event.raw_type,
            "kind": event.kind.value,
            "callId": call_id,
            "status": call.status.value if call else None,
        }

    # ========================================================================
    # Lifecycle events
    # ========================================================================

    async def _on_call_started(self, event: CallEvent) -> None:
        status = map_status(event.reported_status)
        if status is not None:
            await self._apply_status(event, status)
        call = self._registry.require(event.call_id)
        self._publish("call_started", event.call_id, {"call": call.to_dict(include_transcript=False)})

    async def _on_ringing(self, event: CallEvent) -> None:
        result = self._registry.transition(event.call_id, CallStatus.RINGING, source=event.raw_type)
        if result.changed:
            self._publish("call_ringing", event.call_id, {"status": result.status.value})

    async def _on_answered(self, event: CallEvent) -> None:
        self._mark_answered(event.call_id, source=event.raw_type)

    def _mark_answered(
        self,
        call_id: str,
        source: str,
        evidence: Evidence | None = None,
    ) -> TransitionResult:
        result = self._registry.transition(
            call_id,
            CallStatus.IN_PROGRESS,
            evidence=evidence,
            source=source,
        )
        if result.changed:
            call = self._registry.require(call_id)
            self._publish(
                "call_answered",
                call_id,
                {
                    "call": call.to_dict(include_transcript=False),
                    "evidence": evidence.value if evidence else None,
                },
            )
        return result

    def _promote_on_evidence(self, call_id: str, evidence: Evidence, source: str) -> None:
        """Conversation proves an answer even if the provider never said so."""
        if not self._registry.evidence_promotion:
            return
        call = self._registry.require(call_id)
        if call.status.is_terminal or call.status.rank >= CallStatus.IN_PROGRESS.rank:
            return
        log.info(
            "Conversation detected, marking call answered",
            call_id=call_id,
            evidence=evidence.value,
            previous=call.status.value,
        )
        self._mark_answered(call_id, source=f"{source}:evidence", evidence=evidence)

    # ========================================================================
    # Conversation events
    # ========================================================================

    async def _on_speech(self, event: CallEvent) -> None:
        if not event.speech_activity:
            return
        self._promote_on_evidence(event.call_id, Evidence.SPEECH, event.raw_type)
        self._publish("speech_update", event.call_id, {"speaker": event.speaker, "type": event.raw_type})

    async def _on_transcript(self, event: CallEvent) -> None:
        if not event.text:
            log.debug("Transcript event without text", call_id=event.call_id)
            return

        self._promote_on_evidence(event.call_id, Evidence.TRANSCRIPT, event.raw_type)
        self._append_line(
            event.call_id,
            event.speaker or "customer",
            event.text,
            final=event.final,
            source_timestamp=event.source_timestamp,
        )

    async def _on_conversation_update(self, event: CallEvent) -> None:
        if not event.lines:
            return

        self._promote_on_evidence(event.call_id, Evidence.TRANSCRIPT, event.raw_type)
        for line in event.lines:
            self._append_line(
                event.call_id,
                line.speaker,
                line.text,
                final=True,
                source_timestamp=line.timestamp,
            )

    def _append_line(
        self,
        call_id: str,
        speaker: str,
        text: str,
        *,
        final: bool,
        source_timestamp: str | None,
    ) -> None:
        entry, changed = self._registry.append_transcript(
            call_id,
            speaker,
            text,
            final=final,
            source_timestamp=source_timestamp,
        )
        if changed:
            self._publish("transcript_update", call_id, {"transcript": entry.to_dict()})

    # ========================================================================
    # Status events
    # ========================================================================

    async def _on_status_update(self, event: CallEvent) -> None:
        status = map_status(event.reported_status)
        if status is None:
            log.debug("Status update without status", call_id=event.call_id)
            return
        await self._apply_status(event, status)

    async def _apply_status(self, event: CallEvent, status: CallStatus) -> None:
        call_id = event.call_id
        previous = self._registry.require(call_id).status

        if status == CallStatus.IN_PROGRESS:
            result = self._mark_answered(call_id, source=event.raw_type)
        elif status == CallStatus.ENDED:
            result = await self._handle_ended(event)
        elif status == CallStatus.FAILED:
            result = await self._handle_failed(event)
        elif status == CallStatus.NO_ANSWER:
            result = await self._handle_no_answer(event)
        else:
            result = self._registry.transition(call_id, status, source=event.raw_type)
            if result.changed and status == CallStatus.RINGING:
                self._publish("call_ringing", call_id, {"status": status.value})

        call = self._registry.require(call_id)
        self._publish(
            "call_status_update",
            call_id,
            {
                "status": call.status.value,
                "reportedStatus": event.reported_status,
                "previousStatus": previous.value,
                "applied": result.applied,
                "statusHistory": [t.to_dict() for t in call.status_history],
            },
        )

    async def _on_ended(self, event: CallEvent) -> None:
        await self._handle_ended(event)

    async def _on_failed(self, event: CallEvent) -> None:
        await self._handle_failed(event)

    async def _on_no_answer(self, event: CallEvent) -> None:
        await self._handle_no_answer(event)

    async def _handle_ended(self, event: CallEvent) -> TransitionResult:
        call_id = event.call_id
        result = self._registry.transition(
            call_id,
            CallStatus.ENDED,
            source=event.raw_type,
            end_reason=event.end_reason,
        )
        if not result.changed:
            return result

        call = self._registry.require(call_id)
        log.info(
            "Call ended",
            call_id=call_id,
            duration=call.duration,
            end_reason=call.end_reason,
            answered=call.was_answered,
        )
        await self._record_outcome(call_id, CallStatus.ENDED)

        self._scheduler.schedule(
            CallCleanup.timer_key(call_id, "ended"),
            self.end_broadcast_delay,
            self._finish_ended,
            call_id,
        )
        return result

    async def _finish_ended(self, call_id: str) -> None:
        """Announce the end after the grace period, then queue removal."""
        call = self._registry.get(call_id)
        if call is None:
            return

        self._publish("call_ended", call_id, {"call": call.to_dict(include_transcript=False)})
        self._dedup.release(call_id, call.phone)
        if self._audio is not None:
            await self._audio.stop(call_id, reason="call_ended")

        self._cleanup.schedule_removal(call_id, self.removal_delay, "cleanup_complete")

    async def _handle_failed(self, event: CallEvent) -> TransitionResult:
        call_id = event.call_id
        result = self._registry.transition(
            call_id,
            CallStatus.FAILED,
            source=event.raw_type,
            end_reason=event.end_reason,
        )
        if not result.changed:
            return result

        call = self._registry.require(call_id)
        log.error("Call failed", call_id=call_id, reason=call.end_reason)
        await self._record_outcome(call_id, CallStatus.FAILED)

        self._publish("call_failed", call_id, {"call": call.to_dict(include_transcript=False)})
        self._dedup.release(call_id, call.phone)
        if self._audio is not None:
            await self._audio.stop(call_id, reason="call_failed")

        self._cleanup.schedule_removal(call_id, self.failed_removal_delay, "failed_cleanup")
        return result

    async def _handle_no_answer(self, event: CallEvent) -> TransitionResult:
        call_id = event.call_id
        # The registry rejects no-answer for calls with conversation evidence
        result = self._registry.transition(
            call_id,
            CallStatus.NO_ANSWER,
            source=event.raw_type,
            end_reason=event.end_reason or "no-answer",
        )
        if not result.changed:
            return result

        call = self._registry.require(call_id)
        log.info("Call was not answered", call_id=call_id)
        await self._record_outcome(call_id, CallStatus.NO_ANSWER)

        self._publish("call_no_answer", call_id, {"call": call.to_dict(include_transcript=False)})
        self._dedup.release(call_id, call.phone)

        self._cleanup.schedule_removal(
            call_id,
            self.no_answer_removal_delay,
            "no_answer_cleanup",
            force=False,
        )
        return result

    async def _record_outcome(self, call_id: str, status: CallStatus) -> None:
        if self._campaigns is None:
            return
        call = self._registry.require(call_id)
        try:
            await self._campaigns.record_call_outcome(
                call_id,
                CAMPAIGN_OUTCOMES[status],
                {"duration": call.duration, "endReason": call.end_reason},
                campaign_id=call.campaign_id,
            )
        except Exception as e:
            log.error(
                "Failed to record campaign outcome",
                call_id=call_id,
                campaign_id=call.campaign_id,
                error=str(e),
            )

    # ========================================================================
    # Other events
    # ========================================================================

    async def _on_function_call(self, event: CallEvent) -> None:
        self._publish("function_call", event.call_id, {"functionCall": event.function_call or {}})

    async def _on_unrecognized(self, event: CallEvent) -> None:
        log.info("Unhandled webhook type", type=event.raw_type, call_id=event.call_id)
        status = map_status(event.reported_status)
        if status is not None:
            log.info(
                "Detected status in unhandled webhook",
                call_id=event.call_id,
                status=event.reported_status,
            )
            await self._apply_status(event, status)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _ensure_audio(self, call_id: str) -> None:
        if self._audio is None:
            return
        call = self._registry.get(call_id)
        if call is None or not call.listen_url or self._audio.is_active(call_id):
            return
        if call.status == CallStatus.IN_PROGRESS:
            self._audio.start(call_id, call.listen_url)

    def _publish(self, event_type: str, call_id: str, data: dict[str, Any]) -> None:
        self._broadcaster.publish(event_type, {"callId": call_id, **data}, call_id=call_id)
