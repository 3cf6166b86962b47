"""Tests for voice-AI webhook normalization and reconciliation."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from campaign_bridge.core.call_registry import CallRecord, CallStatus
from campaign_bridge.core.events import CallEventKind, ConferenceEventKind
from campaign_bridge.services.call_cleanup import CallCleanup
from campaign_bridge.services.webhook_adapters import (
    TwilioConferenceAdapter,
    VoiceAIEventAdapter,
    map_status,
)
from campaign_bridge.services.webhook_reconciler import WebhookReconciler

PHONE = "+15551234567"


def vapi_message(event_type: str, call_id: str | None = "call-1", **fields: Any) -> dict[str, Any]:
    """Build a Vapi server message in the nested shape."""
    message: dict[str, Any] = {"type": event_type, **fields}
    if call_id is not None:
        message.setdefault("call", {"id": call_id, "customer": {"number": PHONE}})
    return {"message": message}


def transcript(text: str, role: str = "user", **fields: Any) -> dict[str, Any]:
    return vapi_message("transcript", role=role, transcript=text, transcriptType="final", **fields)


@pytest.fixture
def campaigns() -> MagicMock:
    executor = MagicMock()
    executor.record_call_outcome = AsyncMock(return_value=None)
    return executor


@pytest.fixture
def cleanup(registry, dedup, broadcaster, scheduler) -> CallCleanup:
    return CallCleanup(registry, dedup, broadcaster, scheduler, listener_recheck_delay=10)


@pytest.fixture
def reconciler(registry, dedup, broadcaster, scheduler, cleanup, campaigns) -> WebhookReconciler:
    return WebhookReconciler(
        registry,
        dedup,
        broadcaster,
        scheduler,
        cleanup,
        campaigns=campaigns,
        end_broadcast_delay=0.01,
        removal_delay=0.01,
        failed_removal_delay=0.01,
        no_answer_removal_delay=0.01,
    )


class TestVoiceAIEventAdapter:
    """Test payload normalization."""

    def test_nested_and_flat_shapes_agree(self):
        adapter = VoiceAIEventAdapter()
        nested = adapter.parse(vapi_message("status-update", status="ringing"))
        flat = adapter.parse(vapi_message("status-update", status="ringing")["message"])

        for event in (nested, flat):
            assert event.kind == CallEventKind.STATUS_UPDATE
            assert event.call_id == "call-1"
            assert event.reported_status == "ringing"
            assert event.phone == PHONE

    def test_call_id_fallback(self):
        event = VoiceAIEventAdapter().parse({"type": "hang", "callId": "call-9"})

        assert event.kind == CallEventKind.ENDED
        assert event.call_id == "call-9"

    def test_transcript_type_variant(self):
        event = VoiceAIEventAdapter().parse(
            vapi_message(
                'transcript[transcriptType="partial"]',
                role="assistant",
                transcript="Hi there",
                transcriptType="partial",
            )
        )

        assert event.kind == CallEventKind.TRANSCRIPT
        assert event.speaker == "assistant"
        assert event.final is False

    def test_monitor_urls_and_metadata(self):
        body = vapi_message(
            "call-started",
            call={
                "id": "call-1",
                "status": "queued",
                "customer": {"number": "5551234567", "name": "Ada", "metadata": {"campaignId": "c-1"}},
                "monitor": {"controlUrl": "https://ctl", "listenUrl": "wss://listen"},
            },
        )

        event = VoiceAIEventAdapter().parse(body)

        assert event.phone == PHONE
        assert event.campaign_id == "c-1"
        assert event.customer_name == "Ada"
        assert event.control_url == "https://ctl"
        assert event.listen_url == "wss://listen"
        assert event.reported_status == "queued"

    def test_conversation_update_lines(self):
        event = VoiceAIEventAdapter().parse(
            vapi_message(
                "conversation-update",
                messages=[
                    {"role": "system", "message": "prompt"},
                    {"role": "bot", "message": "Hello"},
                    {"role": "user", "message": "Hi"},
                ],
            )
        )

        assert [(line.speaker, line.text) for line in event.lines] == [
            ("assistant", "Hello"),
            ("customer", "Hi"),
        ]

    def test_unknown_type(self):
        event = VoiceAIEventAdapter().parse(vapi_message("model-output"))

        assert event.kind == CallEventKind.UNRECOGNIZED

    @pytest.mark.parametrize(
        "reported,expected",
        [
            ("busy", CallStatus.NO_ANSWER),
            ("completed", CallStatus.ENDED),
            ("forwarding", CallStatus.TRANSFERRING),
            ("something-new", CallStatus.IN_PROGRESS),
            (None, None),
        ],
    )
    def test_map_status(self, reported, expected):
        assert map_status(reported) == expected

    def test_parse_qualification(self):
        body = {
            "message": {
                "type": "tool-calls",
                "toolCallList": [
                    {
                        "id": "tool-1",
                        "arguments": {
                            "leadId": "lead-7",
                            "customerPhone": "(555) 123-4567",
                            "customerName": "Ada Lovelace",
                            "qualificationData": {"leadType": "refinance"},
                        },
                    }
                ],
                "call": {"id": "call-1"},
            }
        }

        signal = VoiceAIEventAdapter().parse_qualification(body)

        assert signal.lead_id == "lead-7"
        assert signal.customer_phone == PHONE
        assert signal.customer_name == "Ada Lovelace"
        assert signal.tool_call_id == "tool-1"
        assert signal.original_call_id == "call-1"
        assert signal.lead_type == "refinance"

    def test_parse_qualification_from_variables(self):
        body = {
            "message": {
                "toolCallList": [{"id": "tool-1", "arguments": {}}],
                "call": {
                    "id": "call-1",
                    "assistantOverrides": {
                        "variableValues": {
                            "leadId": "lead-8",
                            "phoneNumber": PHONE,
                            "firstName": "Grace",
                            "lastName": "Hopper",
                        }
                    },
                },
            }
        }

        signal = VoiceAIEventAdapter().parse_qualification(body)

        assert signal.lead_id == "lead-8"
        assert signal.customer_name == "Grace Hopper"

    def test_parse_qualification_without_phone(self):
        body = {"message": {"toolCallList": [{"id": "t", "arguments": {"leadId": "lead-1"}}]}}

        assert VoiceAIEventAdapter().parse_qualification(body) is None


class TestTwilioConferenceAdapter:
    def test_parse(self):
        event = TwilioConferenceAdapter().parse(
            {
                "StatusCallbackEvent": "participant-join",
                "FriendlyName": "conf-1",
                "ConferenceSid": "CF123",
                "CallSid": "CA123",
                "From": "+15550001111",
            }
        )

        assert event.kind == ConferenceEventKind.PARTICIPANT_JOIN
        assert event.conference_id == "conf-1"
        assert event.conference_sid == "CF123"
        assert event.call_sid == "CA123"
        assert event.to_number is None

    def test_unknown_event(self):
        event = TwilioConferenceAdapter().parse({"StatusCallbackEvent": "participant-mute"})

        assert event.kind == ConferenceEventKind.UNRECOGNIZED


class TestWebhookReconciler:
    """Test reconciliation of duplicated and out-of-order events."""

    @pytest.mark.asyncio
    async def test_missing_call_id(self, reconciler):
        result = await reconciler.handle({"message": {"type": "status-update", "status": "ended"}})

        assert result == {"handled": False, "type": "status-update", "reason": "missing_call_id"}

    @pytest.mark.asyncio
    async def test_unknown_call_is_auto_created(self, reconciler, registry):
        result = await reconciler.handle(vapi_message("status-update", status="ringing"))

        assert result["handled"] is True
        assert result["status"] == "ringing"
        assert registry.require("call-1").phone == PHONE

    @pytest.mark.asyncio
    async def test_late_no_answer_after_conversation(self, reconciler, registry, recorder, campaigns):
        """An answered call with a transcript is never downgraded to no-answer."""
        registry.register(CallRecord(call_id="call-1", phone=PHONE, status=CallStatus.IN_PROGRESS))

        await reconciler.handle(transcript("hello"))
        result = await reconciler.handle(vapi_message("call-no-answer"))

        assert result["status"] == "in-progress"
        call = registry.require("call-1")
        assert call.status == CallStatus.IN_PROGRESS
        assert [entry.text for entry in call.transcript] == ["hello"]
        assert call.status_history[-1].applied is False
        assert "call_no_answer" not in recorder.types()
        campaigns.record_call_outcome.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_late_no_answer_status_update(self, reconciler, registry, recorder):
        registry.register(CallRecord(call_id="call-1", phone=PHONE, status=CallStatus.IN_PROGRESS))
        await reconciler.handle(transcript("hello"))

        await reconciler.handle(vapi_message("status-update", status="no-answer"))

        assert registry.require("call-1").status == CallStatus.IN_PROGRESS
        update = recorder.of_type("call_status_update")[-1]
        assert update.data["applied"] is False
        assert update.data["status"] == "in-progress"
        assert update.data["reportedStatus"] == "no-answer"

    @pytest.mark.asyncio
    async def test_transcript_promotes_ringing_call(self, reconciler, registry, recorder):
        await reconciler.handle(vapi_message("status-update", status="ringing"))

        await reconciler.handle(transcript("hello?"))

        assert registry.require("call-1").status == CallStatus.IN_PROGRESS
        answered = recorder.of_type("call_answered")
        assert len(answered) == 1
        assert answered[0].data["evidence"] == "transcript"
        assert "call_ringing" in recorder.types()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type",
        ["speech-started", "conversation-started", "assistant-speaking", "user-speaking"],
    )
    async def test_speech_event_without_role_promotes(self, reconciler, registry, recorder, event_type):
        await reconciler.handle(vapi_message("status-update", status="ringing"))

        await reconciler.handle(vapi_message(event_type))

        assert registry.require("call-1").status == CallStatus.IN_PROGRESS
        assert recorder.of_type("call_answered")[0].data["evidence"] == "speech"

    @pytest.mark.asyncio
    async def test_speech_ended_without_role_is_not_evidence(self, reconciler, registry):
        await reconciler.handle(vapi_message("status-update", status="ringing"))

        await reconciler.handle(vapi_message("speech-ended"))

        assert registry.require("call-1").status == CallStatus.RINGING

    @pytest.mark.asyncio
    async def test_speech_promotion_can_be_disabled(self, reconciler, registry):
        registry.evidence_promotion = False
        await reconciler.handle(vapi_message("status-update", status="ringing"))

        await reconciler.handle(vapi_message("speech-started"))

        assert registry.require("call-1").status == CallStatus.RINGING

    @pytest.mark.asyncio
    async def test_speech_with_role_promotes(self, reconciler, registry, recorder):
        await reconciler.handle(vapi_message("status-update", status="ringing"))

        await reconciler.handle(vapi_message("speech-update", role="user", status="started"))

        assert registry.require("call-1").status == CallStatus.IN_PROGRESS
        assert recorder.of_type("call_answered")[0].data["evidence"] == "speech"

    @pytest.mark.asyncio
    async def test_redelivered_transcript_is_idempotent(self, reconciler, registry, recorder):
        body = transcript("I'm interested", timestamp=1700000000)

        await reconciler.handle(body)
        await reconciler.handle(body)

        assert len(registry.require("call-1").transcript) == 1
        assert len(recorder.of_type("transcript_update")) == 1

    @pytest.mark.asyncio
    async def test_repeated_utterance_without_timestamp_is_kept(self, reconciler, registry, recorder):
        await reconciler.handle(transcript("yes"))
        await reconciler.handle(transcript("yes"))

        assert [e.text for e in registry.require("call-1").transcript] == ["yes", "yes"]
        assert len(recorder.of_type("transcript_update")) == 2

    @pytest.mark.asyncio
    async def test_conversation_update_is_idempotent(self, reconciler, registry):
        body = vapi_message(
            "conversation-update",
            messages=[{"role": "bot", "message": "Hello"}, {"role": "user", "message": "Hi"}],
        )

        await reconciler.handle(body)
        await reconciler.handle(body)

        assert [entry.text for entry in registry.require("call-1").transcript] == ["Hello", "Hi"]

    @pytest.mark.asyncio
    async def test_stale_status_rejected(self, reconciler, registry, recorder):
        await reconciler.handle(vapi_message("status-update", status="in-progress"))

        await reconciler.handle(vapi_message("status-update", status="ringing"))

        assert registry.require("call-1").status == CallStatus.IN_PROGRESS
        assert len(recorder.of_type("call_ringing")) == 0

    @pytest.mark.asyncio
    async def test_ended_call_lifecycle(
        self, reconciler, registry, dedup, recorder, campaigns, eventually
    ):
        registry.register(
            CallRecord(call_id="call-1", phone=PHONE, campaign_id="c-1", status=CallStatus.IN_PROGRESS)
        )
        dedup.track(PHONE, "call-1")

        await reconciler.handle(vapi_message("end-of-call-report", endedReason="customer-ended-call"))

        call = registry.require("call-1")
        assert call.status == CallStatus.ENDED
        assert call.end_reason == "customer-ended-call"
        campaigns.record_call_outcome.assert_awaited_once()
        assert campaigns.record_call_outcome.await_args.args[:2] == ("call-1", "completed")

        await eventually(lambda: "call-1" not in registry)
        types = recorder.types()
        assert types.index("call_ended") < types.index("call_removed_from_monitor")
        assert dedup.get(PHONE) is None

    @pytest.mark.asyncio
    async def test_redelivered_end_counts_once(self, reconciler, registry, campaigns, scheduler):
        registry.register(CallRecord(call_id="call-1", status=CallStatus.IN_PROGRESS))
        reconciler.end_broadcast_delay = 10

        await reconciler.handle(vapi_message("call-ended"))
        await reconciler.handle(vapi_message("call-ended"))
        await reconciler.handle(vapi_message("status-update", status="completed"))

        campaigns.record_call_outcome.assert_awaited_once()
        assert scheduler.pending("call:call-1:ended")

    @pytest.mark.asyncio
    async def test_failed_call(self, reconciler, registry, dedup, recorder, campaigns, eventually):
        registry.register(CallRecord(call_id="call-1", phone=PHONE))
        dedup.track(PHONE, "call-1")

        await reconciler.handle(vapi_message("status-update", status="failed", endedReason="pipeline-error"))

        assert recorder.of_type("call_failed")[0].call_id == "call-1"
        assert dedup.get(PHONE) is None
        assert campaigns.record_call_outcome.await_args.args[:2] == ("call-1", "failed")
        await eventually(lambda: "call-1" not in registry)

    @pytest.mark.asyncio
    async def test_no_answer_call(self, reconciler, registry, recorder, campaigns, eventually):
        registry.register(CallRecord(call_id="call-1", phone=PHONE))
        await reconciler.handle(vapi_message("status-update", status="ringing"))

        await reconciler.handle(vapi_message("call-no-answer"))

        assert registry.require("call-1").end_reason == "no-answer"
        assert len(recorder.of_type("call_no_answer")) == 1
        assert campaigns.record_call_outcome.await_args.args[:2] == ("call-1", "no-answer")
        await eventually(lambda: "call-1" not in registry)

    @pytest.mark.asyncio
    async def test_busy_maps_to_no_answer(self, reconciler, registry):
        await reconciler.handle(vapi_message("status-update", status="busy"))

        assert registry.require("call-1").status == CallStatus.NO_ANSWER

    @pytest.mark.asyncio
    async def test_outcome_failure_does_not_break_handling(self, reconciler, registry, campaigns):
        campaigns.record_call_outcome.side_effect = RuntimeError("store down")
        registry.register(CallRecord(call_id="call-1", status=CallStatus.IN_PROGRESS))

        result = await reconciler.handle(vapi_message("call-ended"))

        assert result["status"] == "ended"

    @pytest.mark.asyncio
    async def test_status_in_unrecognized_event(self, reconciler, registry):
        await reconciler.handle(
            vapi_message("model-output", call={"id": "call-1", "status": "in-progress"})
        )

        assert registry.require("call-1").status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_function_call_is_relayed(self, reconciler, recorder):
        await reconciler.handle(
            vapi_message("function-call", functionCall={"name": "bookAppointment"})
        )

        event = recorder.of_type("function_call")[0]
        assert event.data["functionCall"] == {"name": "bookAppointment"}


class TestCallCleanup:
    """Test listener-aware removal."""

    @pytest.mark.asyncio
    async def test_listener_blocks_timed_removal(self, cleanup, registry, scheduler):
        registry.register(CallRecord(call_id="call-1", status=CallStatus.ENDED))
        registry.add_listener("call-1")

        cleanup.schedule_removal("call-1", 0, "cleanup_complete")
        await asyncio.sleep(0.02)

        assert "call-1" in registry
        assert scheduler.pending("call:call-1:remove")

    @pytest.mark.asyncio
    async def test_last_listener_releases_removal(self, cleanup, registry, recorder, scheduler):
        registry.register(CallRecord(call_id="call-1", status=CallStatus.IN_PROGRESS))
        registry.append_transcript("call-1", "customer", "hello", final=True)
        registry.transition("call-1", CallStatus.ENDED)
        registry.add_listener("call-1")
        registry.add_listener("call-1")

        assert cleanup.remove("call-1", "cleanup_complete") is False
        assert cleanup.release_listener("call-1") == 1
        assert "call-1" in registry

        assert cleanup.release_listener("call-1") == 0

        assert "call-1" not in registry
        removed = recorder.of_type("call_removed_from_monitor")
        assert removed[0].data["reason"] == "cleanup_complete_listeners_released"
        assert not scheduler.pending("call:call-1:remove")

    @pytest.mark.asyncio
    async def test_live_call_stays_when_listener_leaves(self, cleanup, registry):
        registry.register(CallRecord(call_id="call-1", status=CallStatus.IN_PROGRESS))
        registry.add_listener("call-1")

        cleanup.release_listener("call-1")

        assert "call-1" in registry

    @pytest.mark.asyncio
    async def test_unforced_removal_keeps_transcript(self, cleanup, registry):
        registry.register(CallRecord(call_id="call-1"))
        registry.append_transcript("call-1", "customer", "hello", final=True)

        assert cleanup.remove("call-1", "no_answer_cleanup", force=False) is False
        assert "call-1" in registry

    @pytest.mark.asyncio
    async def test_eviction_cancels_timers_and_releases_phone(self, cleanup, registry, dedup, scheduler):
        registry.register(CallRecord(call_id="call-1", phone=PHONE))
        dedup.track(PHONE, "call-1")
        scheduler.schedule("call:call-1:ended", 10, lambda: None)

        registry.evict("call-1", force=True)

        assert not scheduler.pending("call:call-1:ended")
        assert dedup.get(PHONE) is None

    @pytest.mark.asyncio
    async def test_sweeper(self, cleanup, registry, recorder, eventually):
        registry.register(CallRecord(call_id="stale"))
        registry.transition("stale", CallStatus.ENDED)

        cleanup.start_sweeper(interval=0.01, max_age=0, queued_max_age=300)

        await eventually(lambda: "stale" not in registry)
        assert recorder.of_type("call_removed_from_monitor")[0].data["reason"] == "ended_timeout"
