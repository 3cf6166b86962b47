"""Dependency Injection for Campaign Bridge.

All stateful components are built once per application by
``build_container`` and stored on ``app.state.container``. Routers reach
them only through the dependency functions below, so tests can swap the
container (or any single component) without touching module globals.

Usage:
    from campaign_bridge.dependencies import CallServiceDep

    @router.get("/endpoint")
    async def handler(calls: CallServiceDep):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from starlette.requests import HTTPConnection

from bridge_shared import get_logger

from campaign_bridge.config import Settings, get_settings
from campaign_bridge.core.broadcast import EventBroadcaster
from campaign_bridge.core.call_registry import CallRegistry
from campaign_bridge.core.phone_dedup import PhoneDedupIndex
from campaign_bridge.core.timers import TaskScheduler
from campaign_bridge.integrations.twilio import TwilioVoiceClient
from campaign_bridge.integrations.voice_ai import VapiClient
from campaign_bridge.services.call_cleanup import CallCleanup
from campaign_bridge.services.call_service import CallService
from campaign_bridge.services.campaign_executor import CampaignExecutor
from campaign_bridge.services.conference_orchestrator import ConferenceOrchestrator
from campaign_bridge.services.webhook_adapters import TwilioConferenceAdapter, VoiceAIEventAdapter
from campaign_bridge.services.webhook_reconciler import WebhookReconciler
from campaign_bridge.store import StateStore, create_store
from campaign_bridge.store.repositories.campaigns import CampaignRepository
from campaign_bridge.store.repositories.conferences import ConferenceRepository
from campaign_bridge.telephony.audio_monitor import AudioStreamMonitor

log = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived component of a running application."""

    settings: Settings
    store: StateStore
    broadcaster: EventBroadcaster
    scheduler: TaskScheduler
    registry: CallRegistry
    dedup: PhoneDedupIndex
    voice_ai: VapiClient
    twilio: TwilioVoiceClient
    audio: AudioStreamMonitor
    cleanup: CallCleanup
    calls: CallService
    campaigns: CampaignExecutor
    conferences: ConferenceOrchestrator
    reconciler: WebhookReconciler
    voice_ai_adapter: VoiceAIEventAdapter
    conference_adapter: TwilioConferenceAdapter

    async def start(self) -> None:
        await self.store.connect()
        self.cleanup.start_sweeper(
            self.settings.registry.cleanup_interval,
            self.settings.registry.max_age,
            self.settings.registry.queued_max_age,
        )

    async def close(self) -> None:
        await self.audio.shutdown()
        await self.scheduler.shutdown()
        self.broadcaster.close()
        await self.voice_ai.close()
        await self.twilio.close()
        await self.store.close()


def build_container(settings: Settings, store: StateStore | None = None) -> ServiceContainer:
    """Wire up all components from settings.

    Args:
        settings: Application settings
        store: Pre-built state store (defaults to the configured backend)
    """
    store = store or create_store(settings.redis)
    broadcaster = EventBroadcaster()
    scheduler = TaskScheduler("campaign-bridge")

    registry = CallRegistry(
        transcript_limit=settings.registry.transcript_limit,
        evidence_promotion=settings.registry.evidence_promotion,
    )
    dedup = PhoneDedupIndex(registry)

    voice_ai = VapiClient(
        api_key=settings.voice_ai.api_key,
        base_url=settings.voice_ai.base_url,
        assistant_id=settings.voice_ai.assistant_id,
        assistants=settings.voice_ai.assistants,
        phone_number_id=settings.voice_ai.phone_number_id,
        hold_assistant_id=settings.voice_ai.hold_assistant_id,
        hold_phone_number_id=settings.voice_ai.hold_phone_number_id,
        webhook_url=settings.voice_ai.webhook_url,
        max_duration_seconds=settings.voice_ai.max_duration_seconds,
        timeout=settings.voice_ai.timeout,
    )
    twilio = TwilioVoiceClient(
        account_sid=settings.twilio.account_sid,
        auth_token=settings.twilio.auth_token,
        from_number=settings.twilio.from_number,
        conference_callback_url=settings.conference_webhook_url,
        active_call_window_minutes=settings.twilio.active_call_window_minutes,
        timeout=settings.twilio.timeout,
    )

    audio = AudioStreamMonitor(
        registry,
        broadcaster,
        scheduler,
        max_retries=settings.audio.max_retries,
        base_delay=settings.audio.base_delay,
        connect_timeout=settings.audio.connect_timeout,
        buffer_limit_bytes=settings.audio.buffer_limit_bytes,
        enabled=settings.audio.enabled,
    )
    cleanup = CallCleanup(
        registry,
        dedup,
        broadcaster,
        scheduler,
        listener_recheck_delay=settings.registry.listener_recheck_delay,
    )
    calls = CallService(
        registry,
        dedup,
        broadcaster,
        cleanup,
        voice_ai,
        audio=audio,
        manual_end_removal_delay=settings.registry.manual_end_removal_delay,
    )
    campaigns = CampaignExecutor(
        CampaignRepository(
            store,
            campaign_ttl=settings.redis.campaign_ttl_seconds,
            queue_ttl=settings.redis.queue_ttl_seconds,
            calls_ttl=settings.redis.campaign_calls_ttl_seconds,
        ),
        broadcaster,
        scheduler,
        calls.create_call,
    )
    conferences = ConferenceOrchestrator(
        ConferenceRepository(store, ttl=settings.redis.conference_ttl_seconds),
        broadcaster,
        scheduler,
        voice_ai,
        twilio,
        agent_queue_number=settings.twilio.agent_queue_number,
        goodbye_seconds=settings.conference.hold_agent_goodbye_seconds,
        welcome_message=settings.conference.welcome_message,
        handoff_message=settings.conference.handoff_message,
        agent_whisper=settings.conference.agent_whisper,
    )
    voice_ai_adapter = VoiceAIEventAdapter()
    reconciler = WebhookReconciler(
        registry,
        dedup,
        broadcaster,
        scheduler,
        cleanup,
        campaigns=campaigns,
        audio=audio,
        adapter=voice_ai_adapter,
        end_broadcast_delay=settings.registry.end_broadcast_delay,
        removal_delay=settings.registry.removal_delay,
        failed_removal_delay=settings.registry.failed_removal_delay,
        no_answer_removal_delay=settings.registry.no_answer_removal_delay,
    )

    if not settings.voice_ai.hold_assistant_id:
        log.warning("Hold assistant not configured, conference bridges run without a hold-agent")
    if not settings.twilio.server_base_url:
        log.warning("Server base URL not configured, conference callbacks are disabled")

    return ServiceContainer(
        settings=settings,
        store=store,
        broadcaster=broadcaster,
        scheduler=scheduler,
        registry=registry,
        dedup=dedup,
        voice_ai=voice_ai,
        twilio=twilio,
        audio=audio,
        cleanup=cleanup,
        calls=calls,
        campaigns=campaigns,
        conferences=conferences,
        reconciler=reconciler,
        voice_ai_adapter=voice_ai_adapter,
        conference_adapter=TwilioConferenceAdapter(),
    )


# =============================================================================
# Request Dependencies
# =============================================================================


def get_app_settings() -> Settings:
    """Get application settings.

    Returns cached settings instance.
    """
    return get_settings()


def get_container(connection: HTTPConnection) -> ServiceContainer:
    """Container of the application serving this request or websocket."""
    return connection.app.state.container


def get_call_service(request: Request) -> CallService:
    return get_container(request).calls


def get_campaign_executor(request: Request) -> CampaignExecutor:
    return get_container(request).campaigns


def get_conference_orchestrator(request: Request) -> ConferenceOrchestrator:
    return get_container(request).conferences


def get_webhook_reconciler(request: Request) -> WebhookReconciler:
    return get_container(request).reconciler


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
ContainerDep = Annotated[ServiceContainer, Depends(get_container)]
CallServiceDep = Annotated[CallService, Depends(get_call_service)]
CampaignExecutorDep = Annotated[CampaignExecutor, Depends(get_campaign_executor)]
ConferenceDep = Annotated[ConferenceOrchestrator, Depends(get_conference_orchestrator)]
ReconcilerDep = Annotated[WebhookReconciler, Depends(get_webhook_reconciler)]
