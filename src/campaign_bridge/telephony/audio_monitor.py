"""Live audio stream monitor.

Opens one websocket per answered call against the provider's listen URL,
relays binary audio to subscribers, and parses JSON control frames
separately. Failed or abnormally closed streams are retried with
exponential backoff up to a fixed attempt count. Audio is best-effort:
exhausting retries is reported to subscribers and never ends the call.
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from bridge_shared import get_logger

from campaign_bridge.core.broadcast import EventBroadcaster
from campaign_bridge.core.call_registry import CallRecord, CallRegistry, CallStatus
from campaign_bridge.core.retry import RetryConfig
from campaign_bridge.core.timers import TaskScheduler

log = get_logger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

Connector = Callable[[str], Awaitable[Any]]
BufferHandler = Callable[[str, bytes], Any]


@dataclass
class AudioStream:
    """Connection state for one call's audio stream."""

    call_id: str
    url: str
    retry_count: int = 0
    connected: bool = False
    stopping: bool = False
    task: asyncio.Task | None = None
    websocket: Any = None
    buffer: bytearray = field(default_factory=bytearray)
    frames: int = 0
    last_error: str | None = None


class AudioStreamMonitor:
    """Manages audio websockets for monitored calls."""

    def __init__(
        self,
        registry: CallRegistry,
        broadcaster: EventBroadcaster,
        scheduler: TaskScheduler,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        connect_timeout: float = 10.0,
        buffer_limit_bytes: int = 1_048_576,
        enabled: bool = True,
        connector: Connector | None = None,
        buffer_handler: BufferHandler | None = None,
    ) -> None:
        """Initialize monitor.

        Args:
            registry: Call registry (audio state is mirrored onto call records)
            broadcaster: Channel for audio events
            scheduler: Timer owner for retries
            max_retries: Retries after the first attempt
            base_delay: First retry delay, doubled per retry
            connect_timeout: Upper bound on opening a stream
            buffer_limit_bytes: Captured audio is handed off once the buffer reaches this size
            enabled: Disable to never open streams
            connector: Coroutine function opening a websocket (defaults to websockets.connect)
            buffer_handler: Receives captured audio when the buffer fills or a stream closes
        """
        self._registry = registry
        self._broadcaster = broadcaster
        self._scheduler = scheduler
        self.max_retries = max_retries
        self.connect_timeout = connect_timeout
        self.buffer_limit_bytes = max(1, buffer_limit_bytes)
        self.enabled = enabled
        self.retry_config = RetryConfig(
            max_attempts=max_retries,
            base_delay=base_delay,
            max_delay=base_delay * 2 ** max(0, max_retries),
            jitter=0.0,
        )
        self._connector: Connector = connector or websockets.connect
        self._buffer_handler = buffer_handler
        self._streams: dict[str, AudioStream] = {}

        registry.add_eviction_hook(self._on_call_evicted)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_active(self, call_id: str) -> bool:
        """Whether a stream is open, opening, or waiting to retry."""
        return call_id in self._streams

    def start(self, call_id: str, url: str | None) -> bool:
        """Open the audio stream for an answered call.

        Returns:
            True if a connection attempt was started
        """
        if not self.enabled:
            return False
        if not url:
            log.info("No audio stream URL yet", call_id=call_id)
            return False
        if call_id in self._streams:
            return False

        call = self._registry.get(call_id)
        if call is None or call.status.is_terminal:
            return False
        if call.status.rank < CallStatus.IN_PROGRESS.rank:
            log.info("Deferring audio stream until answered", call_id=call_id, status=call.status.value)
            return False

        stream = AudioStream(call_id=call_id, url=url)
        self._streams[call_id] = stream
        self._launch(stream)
        return True

    async def stop(self, call_id: str, reason: str = "stopped") -> bool:
        """Close a stream and cancel any pending retry."""
        stream = self._streams.pop(call_id, None)
        if stream is None:
            return False

        stream.stopping = True
        self._scheduler.cancel(self._retry_key(call_id))

        if stream.websocket is not None:
            try:
                await stream.websocket.close()
            except (OSError, WebSocketException) as e:
                log.debug("Error closing audio stream", call_id=call_id, error=str(e))

        if stream.task is not None and not stream.task.done():
            stream.task.cancel()
            await asyncio.gather(stream.task, return_exceptions=True)

        log.info("Audio stream stopped", call_id=call_id, reason=reason)
        return True

    async def shutdown(self) -> None:
        for call_id in list(self._streams):
            await self.stop(call_id, reason="shutdown")

    def get_stats(self) -> dict[str, Any]:
        return {
            "streams": len(self._streams),
            "connected": sum(1 for s in self._streams.values() if s.connected),
            "retrying": [
                {"callId": s.call_id, "retryCount": s.retry_count, "lastError": s.last_error}
                for s in self._streams.values()
                if s.retry_count and not s.connected
            ],
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _retry_key(call_id: str) -> str:
        return f"audio-retry:{call_id}"

    def _launch(self, stream: AudioStream) -> None:
        stream.task = asyncio.create_task(self._run(stream), name=f"audio:{stream.call_id}")

    async def _run(self, stream: AudioStream) -> None:
        call_id = stream.call_id
        attempt = stream.retry_count + 1
        log.info(
            "Opening audio stream",
            call_id=call_id,
            attempt=attempt,
            max_attempts=self.max_retries + 1,
        )

        try:
            websocket = await asyncio.wait_for(
                self._connector(stream.url),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            log.warning("Audio stream connection timeout", call_id=call_id, timeout=self.connect_timeout)
            self._handle_failure(stream, "connection_timeout")
            return
        except (OSError, WebSocketException) as e:
            self._publish(
                "audio_error",
                call_id,
                {"error": str(e), "attempt": attempt},
            )
            self._handle_failure(stream, str(e))
            return

        if stream.stopping:
            await websocket.close()
            return

        stream.websocket = websocket
        stream.connected = True
        stream.retry_count = 0
        stream.last_error = None
        self._registry.update_audio(call_id, connected=True, retry_count=0)
        self._publish("audio_connected", call_id, {"attempt": attempt})
        log.info("Audio stream connected", call_id=call_id, attempt=attempt)

        close_code = NORMAL_CLOSURE
        error: str | None = None
        try:
            async for message in websocket:
                await self._handle_frame(stream, message)
            close_code = getattr(websocket, "close_code", None) or NORMAL_CLOSURE
        except ConnectionClosed as e:
            close_code = e.rcvd.code if e.rcvd is not None else ABNORMAL_CLOSURE
        except (OSError, WebSocketException) as e:
            close_code = ABNORMAL_CLOSURE
            error = str(e)
        finally:
            stream.connected = False
            stream.websocket = None
            self._registry.update_audio(call_id, connected=False)
            await self._hand_off_buffer(stream)

        log.info("Audio stream closed", call_id=call_id, code=close_code, frames=stream.frames)
        self._publish("audio_disconnected", call_id, {"code": close_code})

        if error is not None:
            self._publish("audio_error", call_id, {"error": error, "attempt": attempt})

        if stream.stopping:
            return
        if close_code != NORMAL_CLOSURE:
            self._handle_failure(stream, error or f"close_code_{close_code}")
        elif self._streams.get(call_id) is stream:
            del self._streams[call_id]

    def _handle_failure(self, stream: AudioStream, reason: str) -> None:
        """Schedule the next attempt or give up for good."""
        call_id = stream.call_id
        stream.last_error = reason

        if stream.stopping:
            return

        if stream.retry_count >= self.max_retries:
            log.error(
                "Audio stream retries exhausted",
                call_id=call_id,
                max_retries=self.max_retries,
                final_error=reason,
            )
            if self._streams.get(call_id) is stream:
                del self._streams[call_id]
            self._registry.update_audio(call_id, last_error=reason)
            self._publish(
                "audio_retry_failed",
                call_id,
                {"maxRetries": self.max_retries, "finalError": reason},
            )
            return

        stream.retry_count += 1
        delay = self.retry_config.calculate_delay(stream.retry_count)
        next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=delay)

        self._registry.update_audio(
            call_id,
            retry_count=stream.retry_count,
            last_error=reason,
            next_retry_at=next_retry_at,
        )
        self._scheduler.schedule(self._retry_key(call_id), delay, self._retry, call_id)
        self._publish(
            "audio_retry_scheduled",
            call_id,
            {
                "retryCount": stream.retry_count,
                "maxRetries": self.max_retries,
                "retryDelay": delay,
                "reason": reason,
            },
        )
        log.info(
            "Audio stream retry scheduled",
            call_id=call_id,
            retry=stream.retry_count,
            max_retries=self.max_retries,
            delay=delay,
            reason=reason,
        )

    def _retry(self, call_id: str) -> None:
        stream = self._streams.get(call_id)
        call = self._registry.get(call_id)
        if stream is None or call is None or stream.connected or stream.stopping:
            log.info("Skipping audio retry, call removed or stream connected", call_id=call_id)
            if call is None:
                self._streams.pop(call_id, None)
            return
        self._launch(stream)

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    async def _handle_frame(self, stream: AudioStream, message: bytes | str) -> None:
        call_id = stream.call_id

        if isinstance(message, (bytes, bytearray)):
            stream.buffer.extend(message)
            stream.frames += 1
            self._publish(
                "audio_data",
                call_id,
                {
                    "chunk": base64.b64encode(message).decode("ascii"),
                    "bytes": len(message),
                    "bufferSize": len(stream.buffer),
                },
            )
            if len(stream.buffer) >= self.buffer_limit_bytes:
                await self._hand_off_buffer(stream)
            return

        try:
            control = json.loads(message)
        except json.JSONDecodeError:
            log.warning("Unparseable audio stream message", call_id=call_id)
            return
        if not isinstance(control, dict):
            return

        control_type = str(control.get("type") or "message")
        self._registry.record_event(call_id, control_type, control)
        self._publish("audio_control", call_id, {"controlType": control_type, "message": control})

        if control_type == "error":
            error = str(control.get("error") or control.get("message") or "stream error")
            stream.last_error = error
            self._registry.update_audio(call_id, last_error=error)
            self._publish("audio_error", call_id, {"error": error, "source": "stream"})
            log.warning("Audio stream reported error", call_id=call_id, error=error)

    async def _hand_off_buffer(self, stream: AudioStream) -> None:
        if not stream.buffer:
            return
        data = bytes(stream.buffer)
        stream.buffer.clear()

        if self._buffer_handler is None:
            log.info("Audio buffer captured", call_id=stream.call_id, bytes=len(data))
            return

        try:
            result = self._buffer_handler(stream.call_id, data)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            log.error("Audio buffer hand-off failed", call_id=stream.call_id, error=str(e))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _publish(self, event_type: str, call_id: str, data: dict[str, Any]) -> None:
        self._broadcaster.publish(event_type, {"callId": call_id, **data}, call_id=call_id)

    def _on_call_evicted(self, call: CallRecord) -> None:
        stream = self._streams.pop(call.call_id, None)
        if stream is None:
            return
        stream.stopping = True
        self._scheduler.cancel(self._retry_key(call.call_id))
        if stream.task is not None and not stream.task.done():
            stream.task.cancel()
