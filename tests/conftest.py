"""Pytest configuration and fixtures for Campaign Bridge tests."""

from __future__ import annotations

import asyncio
import itertools
import os
import sys
from pathlib import Path
from typing import Any, AsyncGenerator, Callable
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

# Set test environment
os.environ["CB_ENV"] = "development"
os.environ["CB_DEBUG"] = "true"
os.environ["CB_REDIS__BACKEND"] = "memory"

from campaign_bridge.config import Settings  # noqa: E402
from campaign_bridge.core.broadcast import BroadcastEvent, EventBroadcaster  # noqa: E402
from campaign_bridge.core.call_registry import CallRegistry  # noqa: E402
from campaign_bridge.core.phone_dedup import PhoneDedupIndex  # noqa: E402
from campaign_bridge.core.timers import TaskScheduler  # noqa: E402
from campaign_bridge.integrations.twilio import TwilioVoiceClient  # noqa: E402
from campaign_bridge.integrations.voice_ai import ProviderCall, VapiClient  # noqa: E402
from campaign_bridge.store.memory_store import InMemoryStateStore  # noqa: E402

AGENT_QUEUE_NUMBER = "+15559990000"
FROM_NUMBER = "+15550001111"
CONFERENCE_CALLBACK_URL = "https://bridge.example.com/api/v1/conference/webhook/twilio"


def make_settings(**overrides: Any) -> Settings:
    """Settings for tests; nested sections are merged key by key."""
    values: dict[str, Any] = {
        "instance_id": "test-instance",
        "environment": "test",
        "debug": True,
        "voice_ai": {
            "api_key": "test-vapi-key",
            "assistant_id": "asst-default",
            "assistants": {"mortgage": "asst-mortgage"},
            "phone_number_id": "pn-outbound",
            "hold_assistant_id": "asst-hold",
            "webhook_url": "https://bridge.example.com/api/v1/webhooks/voice-ai",
            "webhook_secret": "",
        },
        "twilio": {
            "account_sid": "AC123",
            "auth_token": "twilio-token",
            "from_number": FROM_NUMBER,
            "server_base_url": "https://bridge.example.com",
            "agent_queue_number": AGENT_QUEUE_NUMBER,
        },
        "redis": {"backend": "memory"},
        "audio": {"enabled": False, "base_delay": 0.01, "connect_timeout": 0.5},
        "conference": {"hold_agent_goodbye_seconds": 0.01},
        "webhooks": {"validate_signatures": False},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(values.get(key), dict):
            values[key] = {**values[key], **value}
        else:
            values[key] = value
    return Settings(**values)


class EventRecorder:
    """Collects everything published on a broadcaster."""

    def __init__(self, broadcaster: EventBroadcaster) -> None:
        self._subscription = broadcaster.subscribe()
        self.events: list[BroadcastEvent] = []

    def drain(self) -> list[BroadcastEvent]:
        while True:
            event = self._subscription.get_nowait()
            if event is None:
                break
            self.events.append(event)
        return self.events

    def types(self) -> list[str]:
        return [event.type for event in self.drain()]

    def of_type(self, event_type: str) -> list[BroadcastEvent]:
        return [event for event in self.drain() if event.type == event_type]


# ============ CORE FIXTURES ============


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def recorder(broadcaster: EventBroadcaster) -> EventRecorder:
    return EventRecorder(broadcaster)


@pytest_asyncio.fixture
async def scheduler() -> AsyncGenerator[TaskScheduler, None]:
    """Scheduler whose pending timers are cancelled after each test."""
    task_scheduler = TaskScheduler("test")
    yield task_scheduler
    await task_scheduler.shutdown()


@pytest.fixture
def registry() -> CallRegistry:
    return CallRegistry()


@pytest.fixture
def dedup(registry: CallRegistry) -> PhoneDedupIndex:
    return PhoneDedupIndex(registry)


@pytest.fixture
def eventually() -> Callable[..., Any]:
    """Wait until a predicate holds, failing after ``timeout`` seconds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within timeout")
            await asyncio.sleep(0.005)

    return _wait


# ============ PROVIDER MOCKS ============


@pytest.fixture
def mock_voice_ai() -> MagicMock:
    """Voice-AI client whose calls get sequential ids (call-1, call-2, ...)."""
    client = MagicMock(spec=VapiClient)
    client.webhook_url = "https://bridge.example.com/api/v1/webhooks/voice-ai"
    client.resolve_assistant.return_value = "asst-default"

    counter = itertools.count(1)

    def create_call(request: Any) -> ProviderCall:
        n = next(counter)
        return ProviderCall(
            id=f"call-{n}",
            status="queued",
            control_url=f"https://control.example.com/call-{n}/control",
        )

    client.create_call.side_effect = create_call
    client.create_hold_agent_call.return_value = ProviderCall(id="hold-call-1", status="queued")
    client.control_call.return_value = {}
    client.end_call.return_value = {}
    client.send_message.return_value = {}
    client.update_assistant_webhook.return_value = {
        "id": "asst-default",
        "serverUrl": "https://bridge.example.com/api/v1/webhooks/voice-ai",
    }
    return client


@pytest.fixture
def mock_twilio() -> MagicMock:
    """Telephony client with real TwiML rendering and mocked REST calls."""
    client = MagicMock(spec=TwilioVoiceClient)
    client.from_number = FROM_NUMBER
    client.conference_callback_url = CONFERENCE_CALLBACK_URL

    client.conference_twiml.side_effect = (
        lambda conference_id, welcome_message=None: TwilioVoiceClient.conference_twiml(
            client, conference_id, welcome_message
        )
    )
    client.dial_number_twiml.side_effect = TwilioVoiceClient.dial_number_twiml
    client.hangup_twiml.side_effect = TwilioVoiceClient.hangup_twiml

    client.dial_into_conference.return_value = {"sid": "CA-queue-1", "status": "queued"}
    client.find_active_call_by_phone.return_value = None
    client.modify_call_to_join_conference.return_value = {"sid": "CA-customer-1", "status": "in-progress"}
    client.get_conference_status.return_value = {"status": "not_found"}
    client.end_conference.return_value = True
    return client


# ============ APPLICATION ============


@pytest.fixture
def container(settings: Settings, mock_voice_ai: MagicMock, mock_twilio: MagicMock):
    """Fully wired services with mocked providers and an in-memory store."""
    from campaign_bridge.dependencies import build_container

    with patch("campaign_bridge.dependencies.VapiClient", return_value=mock_voice_ai), patch(
        "campaign_bridge.dependencies.TwilioVoiceClient", return_value=mock_twilio
    ):
        return build_container(settings, store=InMemoryStateStore())


@pytest.fixture
def client(container):
    """TestClient running the application lifespan around each test."""
    from fastapi.testclient import TestClient

    from campaign_bridge.main import create_app

    with TestClient(create_app(container)) as test_client:
        yield test_client
