"""External provider clients."""

from campaign_bridge.integrations.twilio import TwilioVoiceClient
from campaign_bridge.integrations.voice_ai import OutboundCallRequest, ProviderCall, VapiClient

__all__ = [
    "OutboundCallRequest",
    "ProviderCall",
    "TwilioVoiceClient",
    "VapiClient",
]
