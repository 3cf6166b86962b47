"""Tests for the audio stream monitor."""

from __future__ import annotations

import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from campaign_bridge.core.call_registry import CallRecord, CallStatus
from campaign_bridge.telephony.audio_monitor import AudioStreamMonitor

LISTEN_URL = "wss://audio.example.com/call-1/listen"


class FakeWebSocket:
    """Async-iterable stand-in for a websocket client connection."""

    def __init__(self, messages: list[bytes | str], close_code: int = 1000) -> None:
        self._messages = list(messages)
        self.close_code = close_code
        self.closed = False

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> bytes | str:
        if not self._messages:
            raise StopAsyncIteration
        await asyncio.sleep(0)
        return self._messages.pop(0)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def answered_call(registry) -> CallRecord:
    call = CallRecord(call_id="call-1", status=CallStatus.IN_PROGRESS, phone="+15551234567")
    registry.register(call)
    return call


def make_monitor(registry, broadcaster, scheduler, connector, **kwargs) -> AudioStreamMonitor:
    options = {"max_retries": 3, "base_delay": 0.01, "connect_timeout": 0.5}
    options.update(kwargs)
    return AudioStreamMonitor(registry, broadcaster, scheduler, connector=connector, **options)


class TestStartConditions:
    def test_disabled(self, registry, broadcaster, scheduler, answered_call):
        connector = AsyncMock()
        monitor = make_monitor(registry, broadcaster, scheduler, connector, enabled=False)

        assert monitor.start("call-1", LISTEN_URL) is False
        connector.assert_not_called()

    def test_requires_url(self, registry, broadcaster, scheduler, answered_call):
        monitor = make_monitor(registry, broadcaster, scheduler, AsyncMock())

        assert monitor.start("call-1", None) is False

    def test_deferred_until_answered(self, registry, broadcaster, scheduler):
        registry.register(CallRecord(call_id="call-2", status=CallStatus.RINGING))
        monitor = make_monitor(registry, broadcaster, scheduler, AsyncMock())

        assert monitor.start("call-2", LISTEN_URL) is False
        assert monitor.is_active("call-2") is False

    def test_unknown_call(self, registry, broadcaster, scheduler):
        monitor = make_monitor(registry, broadcaster, scheduler, AsyncMock())

        assert monitor.start("ghost", LISTEN_URL) is False


class TestStreaming:
    """Test frame handling on a healthy stream."""

    @pytest.mark.asyncio
    async def test_binary_and_control_frames(
        self, registry, broadcaster, scheduler, recorder, answered_call, eventually
    ):
        websocket = FakeWebSocket(
            [
                b"\x01\x02",
                json.dumps({"type": "speech-update", "status": "started"}),
                b"\x03\x04",
                json.dumps({"type": "error", "error": "codec mismatch"}),
                "not json",
            ]
        )
        buffer_handler = MagicMock()
        monitor = make_monitor(
            registry,
            broadcaster,
            scheduler,
            AsyncMock(return_value=websocket),
            buffer_handler=buffer_handler,
        )

        assert monitor.start("call-1", LISTEN_URL) is True
        assert monitor.start("call-1", LISTEN_URL) is False

        await eventually(lambda: "audio_disconnected" in recorder.types())

        assert recorder.types() == [
            "audio_connected",
            "audio_data",
            "audio_control",
            "audio_data",
            "audio_control",
            "audio_error",
            "audio_disconnected",
        ]
        chunks = recorder.of_type("audio_data")
        assert base64.b64decode(chunks[0].data["chunk"]) == b"\x01\x02"
        assert chunks[1].data["bufferSize"] == 4
        assert recorder.of_type("audio_error")[0].data == {
            "callId": "call-1",
            "error": "codec mismatch",
            "source": "stream",
        }
        assert recorder.of_type("audio_disconnected")[0].data["code"] == 1000

        buffer_handler.assert_called_once_with("call-1", b"\x01\x02\x03\x04")
        assert monitor.is_active("call-1") is False
        assert answered_call.audio_connected is False
        assert answered_call.audio_last_error == "codec mismatch"
        assert [e["type"] for e in answered_call.events] == ["speech-update", "error"]

    @pytest.mark.asyncio
    async def test_full_buffer_is_handed_off_mid_stream(
        self, registry, broadcaster, scheduler, recorder, answered_call, eventually
    ):
        websocket = FakeWebSocket([b"\x01\x02", b"\x03\x04", b"\x05\x06\x07", b"\x08"])
        buffer_handler = MagicMock()
        monitor = make_monitor(
            registry,
            broadcaster,
            scheduler,
            AsyncMock(return_value=websocket),
            buffer_handler=buffer_handler,
            buffer_limit_bytes=4,
        )

        monitor.start("call-1", LISTEN_URL)
        await eventually(lambda: "audio_disconnected" in recorder.types())

        assert [c.args for c in buffer_handler.call_args_list] == [
            ("call-1", b"\x01\x02\x03\x04"),
            ("call-1", b"\x05\x06\x07\x08"),
        ]
        assert [e.data["bufferSize"] for e in recorder.of_type("audio_data")] == [2, 4, 3, 4]

    @pytest.mark.asyncio
    async def test_abnormal_close_reconnects(
        self, registry, broadcaster, scheduler, recorder, answered_call, eventually
    ):
        connector = AsyncMock(
            side_effect=[
                FakeWebSocket([b"\x00"], close_code=1006),
                FakeWebSocket([], close_code=1000),
            ]
        )
        monitor = make_monitor(registry, broadcaster, scheduler, connector)

        monitor.start("call-1", LISTEN_URL)
        await eventually(lambda: recorder.types().count("audio_disconnected") == 2)

        scheduled = recorder.of_type("audio_retry_scheduled")
        assert len(scheduled) == 1
        assert scheduled[0].data["reason"] == "close_code_1006"
        assert [e.data["attempt"] for e in recorder.of_type("audio_connected")] == [1, 2]
        assert connector.await_count == 2
        assert monitor.is_active("call-1") is False


class TestRetries:
    """Test the reconnect schedule."""

    @pytest.mark.asyncio
    async def test_backoff_then_give_up(
        self, registry, broadcaster, scheduler, recorder, answered_call, eventually
    ):
        connector = AsyncMock(side_effect=OSError("connection refused"))
        monitor = make_monitor(registry, broadcaster, scheduler, connector)

        monitor.start("call-1", LISTEN_URL)
        await eventually(lambda: "audio_retry_failed" in recorder.types())

        scheduled = recorder.of_type("audio_retry_scheduled")
        assert [e.data["retryDelay"] for e in scheduled] == pytest.approx([0.01, 0.02, 0.04])
        assert [e.data["retryCount"] for e in scheduled] == [1, 2, 3]
        assert connector.await_count == 4
        assert len(recorder.of_type("audio_error")) == 4

        failed = recorder.of_type("audio_retry_failed")[0]
        assert failed.data["maxRetries"] == 3
        assert failed.data["finalError"] == "connection refused"
        assert monitor.is_active("call-1") is False
        assert answered_call.audio_last_error == "connection refused"
        assert registry.get("call-1").status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_connection_timeout(
        self, registry, broadcaster, scheduler, recorder, answered_call, eventually
    ):
        async def hang(url: str) -> FakeWebSocket:
            await asyncio.sleep(1)
            return FakeWebSocket([])

        monitor = make_monitor(
            registry, broadcaster, scheduler, hang, max_retries=0, connect_timeout=0.01
        )

        monitor.start("call-1", LISTEN_URL)
        await eventually(lambda: "audio_retry_failed" in recorder.types())

        assert recorder.of_type("audio_retry_failed")[0].data["finalError"] == "connection_timeout"

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_retry(
        self, registry, broadcaster, scheduler, recorder, answered_call, eventually
    ):
        connector = AsyncMock(side_effect=OSError("connection refused"))
        monitor = make_monitor(registry, broadcaster, scheduler, connector, base_delay=10)

        monitor.start("call-1", LISTEN_URL)
        await eventually(lambda: "audio_retry_scheduled" in recorder.types())
        assert scheduler.pending("audio-retry:call-1")
        assert monitor.get_stats()["retrying"][0]["retryCount"] == 1

        assert await monitor.stop("call-1") is True

        assert not scheduler.pending("audio-retry:call-1")
        assert monitor.is_active("call-1") is False
        assert await monitor.stop("call-1") is False

    @pytest.mark.asyncio
    async def test_eviction_stops_stream(
        self, registry, broadcaster, scheduler, recorder, answered_call, eventually
    ):
        connector = AsyncMock(side_effect=OSError("connection refused"))
        monitor = make_monitor(registry, broadcaster, scheduler, connector, base_delay=10)

        monitor.start("call-1", LISTEN_URL)
        await eventually(lambda: "audio_retry_scheduled" in recorder.types())

        registry.evict("call-1", force=True)

        assert monitor.is_active("call-1") is False
        assert not scheduler.pending("audio-retry:call-1")
