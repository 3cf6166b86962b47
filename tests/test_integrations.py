"""Tests for the voice-AI and telephony REST clients."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from campaign_bridge.core.exceptions import ConfigurationError, TelephonyError, VoiceAIError
from campaign_bridge.integrations.twilio import TwilioVoiceClient
from campaign_bridge.integrations.voice_ai import OutboundCallRequest, ProviderCall, VapiClient

from conftest import CONFERENCE_CALLBACK_URL, FROM_NUMBER


def stub_http(client, *responses: httpx.Response | Exception) -> AsyncMock:
    """Replace the client's transport-level request method."""
    request = AsyncMock(side_effect=list(responses))
    client._client.request = request
    return request


@pytest.fixture
def vapi() -> VapiClient:
    return VapiClient(
        api_key="test-key",
        assistant_id="asst-default",
        assistants={"mortgage": "asst-mortgage"},
        phone_number_id="pn-1",
        hold_assistant_id="asst-hold",
        webhook_url="https://bridge.example.com/api/v1/webhooks/voice-ai",
    )


@pytest.fixture
def twilio() -> TwilioVoiceClient:
    return TwilioVoiceClient(
        account_sid="AC123",
        auth_token="token",
        from_number=FROM_NUMBER,
        conference_callback_url=CONFERENCE_CALLBACK_URL,
    )


class TestProviderCall:
    def test_monitor_urls(self):
        call = ProviderCall.from_response(
            {
                "id": "call-1",
                "status": "queued",
                "monitor": {"controlUrl": "https://c/control", "listenUrl": "wss://a/listen"},
            }
        )

        assert call.control_url == "https://c/control"
        assert call.listen_url == "wss://a/listen"

    def test_without_monitor(self):
        call = ProviderCall.from_response({"id": "call-1"})

        assert call.status == "queued"
        assert call.control_url is None


class TestVapiClient:
    """Test request building and error mapping."""

    def test_resolve_assistant(self, vapi):
        assert vapi.resolve_assistant("mortgage") == "asst-mortgage"
        assert vapi.resolve_assistant("unknown") == "asst-default"
        assert vapi.resolve_assistant(None) == "asst-default"

    def test_call_payload(self, vapi):
        request = OutboundCallRequest(
            phone="+15551234567",
            first_name="Ada",
            last_name="Lovelace",
            assistant_type="mortgage",
            lead_id="42",
            campaign_id="c-1",
            metadata={"notes": "call after 5"},
        )

        payload = vapi.build_call_payload(request)

        assert payload["assistantId"] == "asst-mortgage"
        assert payload["phoneNumberId"] == "pn-1"
        assert payload["customer"]["number"] == "+15551234567"
        assert payload["customer"]["metadata"] == {"campaignId": "c-1", "notes": "call after 5"}
        variables = payload["assistantOverrides"]["variableValues"]
        assert variables["fullName"] == "Ada Lovelace"
        assert variables["batchCall"] == "true"
        assert variables["notes"] == "call after 5"

    @pytest.mark.asyncio
    async def test_create_call(self, vapi):
        request = stub_http(
            vapi,
            httpx.Response(201, json={"id": "call-1", "status": "queued", "monitor": {"listenUrl": "wss://x"}}),
        )

        call = await vapi.create_call(OutboundCallRequest(phone="+15551234567"))

        assert call.id == "call-1"
        assert call.listen_url == "wss://x"
        method, url = request.await_args.args
        assert (method, url) == ("POST", "/call")

    @pytest.mark.asyncio
    async def test_create_call_without_assistant(self, vapi):
        vapi.assistant_id = ""
        request = stub_http(vapi)

        with pytest.raises(ConfigurationError):
            await vapi.create_call(OutboundCallRequest(phone="+15551234567"))

        request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_api_error(self, vapi):
        stub_http(vapi, httpx.Response(400, json={"message": "Invalid phone number"}))

        with pytest.raises(VoiceAIError) as exc_info:
            await vapi.get_call("call-1")

        assert exc_info.value.details["status_code"] == 400
        assert exc_info.value.details["body"] == {"message": "Invalid phone number"}
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_timeout(self, vapi):
        stub_http(vapi, httpx.ReadTimeout("timed out"))

        with pytest.raises(VoiceAIError) as exc_info:
            await vapi.get_call("call-1")

        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_end_call(self, vapi):
        request = stub_http(vapi, httpx.Response(200, json={"id": "call-1", "status": "ended"}))

        await vapi.end_call("call-1")

        assert request.await_args.args == ("PATCH", "/call/call-1")
        assert request.await_args.kwargs == {"json": {"status": "ended"}}

    @pytest.mark.asyncio
    async def test_empty_body(self, vapi):
        stub_http(vapi, httpx.Response(204))

        assert await vapi.control_call("https://c/control", {"type": "end-call"}) == {}

    @pytest.mark.asyncio
    async def test_hold_agent_requires_assistant(self, vapi):
        vapi.hold_assistant_id = ""

        with pytest.raises(ConfigurationError):
            await vapi.create_hold_agent_call("conf_1_lead", "+15551234567")

    @pytest.mark.asyncio
    async def test_get_assistant(self, vapi):
        request = stub_http(vapi, httpx.Response(200, json={"id": "asst-mortgage", "name": "Mortgage"}))

        assistant = await vapi.get_assistant("asst-mortgage")

        assert assistant["name"] == "Mortgage"
        assert request.await_args.args == ("GET", "/assistant/asst-mortgage")

    @pytest.mark.asyncio
    async def test_update_assistant_webhook(self, vapi):
        request = stub_http(vapi, httpx.Response(200, json={"id": "asst-default"}))

        await vapi.update_assistant_webhook()

        assert request.await_args.args == ("PATCH", "/assistant/asst-default")
        assert request.await_args.kwargs["json"] == {
            "serverUrl": "https://bridge.example.com/api/v1/webhooks/voice-ai"
        }

        vapi.webhook_url = ""
        with pytest.raises(ConfigurationError):
            await vapi.update_assistant_webhook()


class TestTwilioTwiml:
    def test_conference_twiml(self, twilio):
        twiml = twilio.conference_twiml("conf_1_lead", "Welcome & thanks")

        assert twiml.startswith("<Response><Say voice=\"alice\">Welcome &amp; thanks</Say>")
        assert f'statusCallback="{CONFERENCE_CALLBACK_URL}"' in twiml
        assert 'beep="false"' in twiml
        assert ">conf_1_lead</Conference>" in twiml

    def test_conference_twiml_without_callback(self, twilio):
        twilio.conference_callback_url = ""

        assert "statusCallback" not in twilio.conference_twiml("conf_1_lead")

    def test_static_twiml(self):
        assert TwilioVoiceClient.dial_number_twiml("+15559990000") == (
            "<Response><Dial><Number>+15559990000</Number></Dial></Response>"
        )
        assert TwilioVoiceClient.hangup_twiml("Bye") == "<Response><Say>Bye</Say><Hangup/></Response>"


class TestTwilioVoiceClient:
    """Test REST calls against stubbed responses."""

    @pytest.mark.asyncio
    async def test_dial_into_conference(self, twilio):
        request = stub_http(twilio, httpx.Response(201, json={"sid": "CA1", "status": "queued"}))

        call = await twilio.dial_into_conference("+15559990000", "conf_1_lead", "Hi agent")

        assert call["sid"] == "CA1"
        data = request.await_args.kwargs["data"]
        assert data["To"] == "+15559990000"
        assert data["From"] == FROM_NUMBER
        assert "<Say voice=\"alice\">Hi agent</Say>" in data["Twiml"]
        assert data["StatusCallback"] == CONFERENCE_CALLBACK_URL

    @pytest.mark.asyncio
    async def test_error_format(self, twilio):
        stub_http(twilio, httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"}))

        with pytest.raises(TelephonyError) as exc_info:
            await twilio.modify_call_to_join_conference("CA1", "conf_1_lead")

        assert exc_info.value.message == "[21211] Invalid 'To' Phone Number"
        assert exc_info.value.details["twilio_code"] == "21211"

    @pytest.mark.asyncio
    async def test_find_active_call(self, twilio):
        request = stub_http(
            twilio,
            httpx.Response(200, json={"calls": [{"sid": "CA9", "start_time": "now"}, {"sid": "CA8"}]}),
        )

        call = await twilio.find_active_call_by_phone("+15551234567")

        assert call["sid"] == "CA9"
        params = request.await_args.kwargs["params"]
        assert params["Status"] == "in-progress"
        assert params["To"] == "+15551234567"
        assert "StartTime>" in params

    @pytest.mark.asyncio
    async def test_find_active_call_errors_are_not_found(self, twilio):
        stub_http(twilio, httpx.ConnectError("connection refused"))

        assert await twilio.find_active_call_by_phone("+15551234567") is None

    @pytest.mark.asyncio
    async def test_find_active_call_none(self, twilio):
        stub_http(twilio, httpx.Response(200, json={"calls": []}))

        assert await twilio.find_active_call_by_phone("+15551234567") is None

    @pytest.mark.asyncio
    async def test_conference_status(self, twilio):
        stub_http(
            twilio,
            httpx.Response(200, json={"conferences": [{"sid": "CF1", "status": "in-progress"}]}),
            httpx.Response(200, json={"participants": [{"call_sid": "CA1", "muted": False}]}),
        )

        status = await twilio.get_conference_status("conf_1_lead")

        assert status["sid"] == "CF1"
        assert status["participantCount"] == 1
        assert status["participants"][0]["callSid"] == "CA1"

    @pytest.mark.asyncio
    async def test_remove_participant(self, twilio):
        request = stub_http(twilio, httpx.Response(200, json={"sid": "CA1", "status": "completed"}))

        await twilio.remove_participant("CA1")

        assert request.await_args.args == ("POST", "/Calls/CA1.json")
        assert request.await_args.kwargs == {"data": {"Status": "completed"}}

    @pytest.mark.asyncio
    async def test_end_missing_conference(self, twilio):
        request = stub_http(twilio, httpx.Response(200, json={"conferences": []}))

        assert await twilio.end_conference("conf_1_lead") is False
        assert request.await_count == 1

    @pytest.mark.asyncio
    async def test_validate_configuration(self, twilio):
        stub_http(twilio, httpx.Response(401, json={"code": 20003, "message": "Authenticate"}))

        report = await twilio.validate_configuration()

        assert report["valid"] is False
        assert report["apiError"] == "[20003] Authenticate"
