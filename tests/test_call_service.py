"""Tests for user-initiated call operations."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from campaign_bridge.core.call_registry import CallRecord, CallStatus
from campaign_bridge.core.exceptions import (
    CallNotFoundError,
    DuplicateCallError,
    InvalidControlActionError,
    InvalidPhoneNumberError,
    ValidationError,
    VoiceAIError,
)
from campaign_bridge.integrations.voice_ai import OutboundCallRequest, ProviderCall
from campaign_bridge.services.call_cleanup import CallCleanup
from campaign_bridge.services.call_service import CallService, build_control_payload
from campaign_bridge.telephony.audio_monitor import AudioStreamMonitor


@pytest.fixture
def cleanup(registry, dedup, broadcaster, scheduler) -> CallCleanup:
    return CallCleanup(registry, dedup, broadcaster, scheduler, listener_recheck_delay=10)


@pytest.fixture
def audio() -> MagicMock:
    monitor = MagicMock(spec=AudioStreamMonitor)
    monitor.get_stats.return_value = {"streams": 0, "connected": 0, "retrying": []}
    return monitor


@pytest.fixture
def service(registry, dedup, broadcaster, cleanup, mock_voice_ai, audio) -> CallService:
    return CallService(
        registry,
        dedup,
        broadcaster,
        cleanup,
        mock_voice_ai,
        audio=audio,
        manual_end_removal_delay=10,
    )


def make_request(phone: str = "(555) 123-4567", **kwargs) -> OutboundCallRequest:
    return OutboundCallRequest(phone=phone, first_name="Ada", last_name="Lovelace", lead_id="lead-1", **kwargs)


class TestControlPayload:
    def test_mute(self):
        assert build_control_payload("mute") == {"type": "control", "control": "mute-assistant"}
        assert build_control_payload("unmute") == {"type": "control", "control": "unmute-assistant"}

    def test_say(self):
        assert build_control_payload("say", "Hello") == {
            "type": "say",
            "content": "Hello",
            "endCallAfterSpoken": False,
        }

    @pytest.mark.parametrize("action,message", [("say", None), ("say", ""), ("hangup", "x")])
    def test_invalid(self, action, message):
        with pytest.raises(InvalidControlActionError):
            build_control_payload(action, message)


class TestCreateCall:
    """Test dispatch and duplicate protection."""

    @pytest.mark.asyncio
    async def test_create(self, service, registry, dedup, mock_voice_ai, recorder):
        call = await service.create_call(make_request(campaign_id="c-1"))

        assert call.call_id == "call-1"
        assert call.phone == "+15551234567"
        assert call.status == CallStatus.QUEUED
        assert call.customer_name == "Ada Lovelace"
        assert call.campaign_id == "c-1"
        assert registry.get("call-1") is call
        assert dedup.get("+15551234567").call_id == "call-1"
        assert mock_voice_ai.create_call.call_args.args[0].phone == "+15551234567"

        created = recorder.of_type("call_created")[0]
        assert created.call_id == "call-1"
        assert created.data["call"]["phone"] == "+15551234567"

    @pytest.mark.asyncio
    async def test_duplicate_blocked(self, service, mock_voice_ai):
        await service.create_call(make_request())

        with pytest.raises(DuplicateCallError) as exc_info:
            await service.create_call(make_request("+1 555 123 4567"))

        assert exc_info.value.details["existingCallId"] == "call-1"
        assert exc_info.value.details["existingCallStatus"] == "queued"
        assert mock_voice_ai.create_call.call_count == 1

    @pytest.mark.asyncio
    async def test_redial_after_terminal(self, service, registry):
        await service.create_call(make_request())
        registry.transition("call-1", CallStatus.FAILED)

        call = await service.create_call(make_request())

        assert call.call_id == "call-2"

    @pytest.mark.asyncio
    async def test_concurrent_dispatch_to_same_phone(self, service, mock_voice_ai):
        async def slow_create(request):
            await asyncio.sleep(0.01)
            return ProviderCall(id="call-slow", status="queued", control_url="https://c/control")

        mock_voice_ai.create_call.side_effect = slow_create

        results = await asyncio.gather(
            service.create_call(make_request()),
            service.create_call(make_request()),
            return_exceptions=True,
        )

        assert isinstance(results[0], CallRecord)
        assert isinstance(results[1], DuplicateCallError)
        assert results[1].details["existingCallId"] == "pending"
        assert mock_voice_ai.create_call.await_count == 1

    @pytest.mark.asyncio
    async def test_provider_failure_releases_pending(self, service, mock_voice_ai, dedup):
        mock_voice_ai.create_call.side_effect = VoiceAIError("rejected")

        with pytest.raises(VoiceAIError):
            await service.create_call(make_request())

        assert dedup.get("+15551234567") is None
        mock_voice_ai.create_call.side_effect = None
        mock_voice_ai.create_call.return_value = ProviderCall(id="call-9")
        assert (await service.create_call(make_request())).call_id == "call-9"

    @pytest.mark.asyncio
    async def test_invalid_phone(self, service, mock_voice_ai):
        with pytest.raises(InvalidPhoneNumberError):
            await service.create_call(make_request("12"))

        mock_voice_ai.create_call.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_assistant(self, service, mock_voice_ai):
        mock_voice_ai.resolve_assistant.return_value = None

        with pytest.raises(ValidationError):
            await service.create_call(make_request())

    @pytest.mark.asyncio
    async def test_audio_started_with_listen_url(self, service, mock_voice_ai, audio):
        mock_voice_ai.create_call.side_effect = None
        mock_voice_ai.create_call.return_value = ProviderCall(
            id="call-7", status="in-progress", listen_url="wss://audio.example.com/call-7"
        )

        call = await service.create_call(make_request())

        assert call.status == CallStatus.IN_PROGRESS
        audio.start.assert_called_once_with("call-7", "wss://audio.example.com/call-7")


class TestLiveControl:
    """Test control, transfer and end."""

    @pytest.mark.asyncio
    async def test_control(self, service, mock_voice_ai, recorder):
        call = await service.create_call(make_request())

        result = await service.control_call(call.call_id, "mute")

        mock_voice_ai.control_call.assert_awaited_once_with(
            "https://control.example.com/call-1/control",
            {"type": "control", "control": "mute-assistant"},
        )
        assert result["controlType"] == "control"
        assert recorder.of_type("call_control")[0].data["action"] == "mute"

    @pytest.mark.asyncio
    async def test_control_requires_control_url(self, service, registry):
        registry.register(CallRecord(call_id="call-x", status=CallStatus.IN_PROGRESS))

        with pytest.raises(CallNotFoundError):
            await service.control_call("call-x", "mute")
        with pytest.raises(CallNotFoundError):
            await service.control_call("ghost", "mute")

    @pytest.mark.asyncio
    async def test_say_without_message(self, service, mock_voice_ai):
        call = await service.create_call(make_request())

        with pytest.raises(InvalidControlActionError):
            await service.control_call(call.call_id, "say")

        mock_voice_ai.control_call.assert_not_called()

    @pytest.mark.asyncio
    async def test_transfer(self, service, mock_voice_ai, recorder):
        call = await service.create_call(make_request())

        result = await service.transfer_call(call.call_id, "555-987-6543")

        payload = mock_voice_ai.control_call.await_args.args[1]
        assert payload == {
            "type": "transfer",
            "destination": {"type": "number", "number": "+15559876543"},
            "content": "Transferring your call now.",
        }
        assert result["destination"] == "+15559876543"
        assert call.status == CallStatus.TRANSFERRING
        assert call.metadata["transferDestination"] == "+15559876543"
        assert "call_transferring" in recorder.types()

    @pytest.mark.asyncio
    async def test_transfer_invalid_destination(self, service):
        call = await service.create_call(make_request())

        with pytest.raises(InvalidPhoneNumberError):
            await service.transfer_call(call.call_id, "911")

    @pytest.mark.asyncio
    async def test_end_call(self, service, mock_voice_ai, dedup, scheduler, recorder):
        call = await service.create_call(make_request())

        ended = await service.end_call(call.call_id)

        mock_voice_ai.control_call.assert_awaited_once_with(
            "https://control.example.com/call-1/control", {"type": "end-call"}
        )
        assert ended.status == CallStatus.ENDED
        assert ended.end_reason == "manual"
        assert dedup.get("+15551234567") is None
        assert scheduler.pending("call:call-1:remove")
        types = recorder.types()
        assert types.index("call_ending") < types.index("call_ended")

    @pytest.mark.asyncio
    async def test_end_call_tolerates_provider_error(self, service, registry, mock_voice_ai):
        registry.register(CallRecord(call_id="call-9", status=CallStatus.IN_PROGRESS, phone="+15550000009"))
        mock_voice_ai.end_call.side_effect = VoiceAIError("call already over")

        ended = await service.end_call("call-9")

        mock_voice_ai.end_call.assert_awaited_once_with("call-9")
        assert ended.status == CallStatus.ENDED

    @pytest.mark.asyncio
    async def test_end_finished_call_is_noop(self, service, registry, mock_voice_ai, recorder):
        registry.register(CallRecord(call_id="call-9", status=CallStatus.FAILED))

        call = await service.end_call("call-9")

        assert call.status == CallStatus.FAILED
        mock_voice_ai.control_call.assert_not_called()
        mock_voice_ai.end_call.assert_not_called()
        assert recorder.types() == []


class TestStatusAndMaintenance:
    @pytest.mark.asyncio
    async def test_manual_status_cannot_regress(self, service, registry, recorder):
        registry.register(CallRecord(call_id="call-1", status=CallStatus.IN_PROGRESS))

        result = service.update_status("call-1", "ringing", {"note": "operator"})

        assert result.applied is False
        assert registry.get("call-1").status == CallStatus.IN_PROGRESS
        assert registry.get("call-1").metadata["note"] == "operator"
        event = recorder.of_type("call_status_updated")[0]
        assert event.data["status"] == "in-progress"
        assert event.data["requested"] == "ringing"

    @pytest.mark.asyncio
    async def test_manual_terminal_status_releases_phone(self, service, dedup):
        call = await service.create_call(make_request())

        service.update_status(call.call_id, "ended")

        assert dedup.get("+15551234567") is None

    def test_unknown_status(self, service, registry):
        registry.register(CallRecord(call_id="call-1"))

        with pytest.raises(ValidationError):
            service.update_status("call-1", "on-hold")

    def test_listeners(self, service, registry):
        registry.register(CallRecord(call_id="call-1"))

        assert service.add_listener("call-1") == 1
        assert service.add_listener("call-1") == 2
        assert service.remove_listener("call-1") == 1
        with pytest.raises(CallNotFoundError):
            service.add_listener("ghost")

    @pytest.mark.asyncio
    async def test_list_newest_first(self, service):
        await service.create_call(make_request("+15550000001"))
        await asyncio.sleep(0.001)
        await service.create_call(make_request("+15550000002"))

        assert [c.call_id for c in service.list_active_calls()] == ["call-2", "call-1"]

    @pytest.mark.asyncio
    async def test_cleanup_phone(self, service):
        await service.create_call(make_request())

        assert service.cleanup_phone("5551234567") == {
            "phone": "+15551234567",
            "cleared": True,
            "callId": "call-1",
        }
        assert service.cleanup_phone("5551234567")["cleared"] is False

    @pytest.mark.asyncio
    async def test_force_cleanup(self, service, registry, dedup):
        await service.create_call(make_request("+15550000001"))
        await service.create_call(make_request("+15550000002"))
        registry.transition("call-1", CallStatus.FAILED)
        dedup.track("+15550000003", "ghost")

        cleaned = service.force_cleanup()

        assert sorted((c["callId"], c["reason"]) for c in cleaned) == [
            ("call-1", "call_failed"),
            ("ghost", "call_not_found"),
        ]
        assert dedup.get("+15550000002") is not None

    @pytest.mark.asyncio
    async def test_debug_info(self, service):
        await service.create_call(make_request())

        info = service.debug_info()

        assert info["phoneTracking"][0]["callId"] == "call-1"
        assert info["audio"]["streams"] == 0
