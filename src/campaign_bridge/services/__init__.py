"""Campaign, call and conference services."""

from campaign_bridge.services.call_cleanup import CallCleanup
from campaign_bridge.services.call_service import CallService
from campaign_bridge.services.campaign_executor import CampaignExecutor, CampaignStatus
from campaign_bridge.services.conference_orchestrator import ConferenceOrchestrator
from campaign_bridge.services.webhook_adapters import TwilioConferenceAdapter, VoiceAIEventAdapter
from campaign_bridge.services.webhook_reconciler import WebhookReconciler

__all__ = [
    "CallCleanup",
    "CallService",
    "CampaignExecutor",
    "CampaignStatus",
    "ConferenceOrchestrator",
    "TwilioConferenceAdapter",
    "VoiceAIEventAdapter",
    "WebhookReconciler",
]
