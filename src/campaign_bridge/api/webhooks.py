"""Voice-AI webhook endpoints.

The provider posts call lifecycle, transcript and status events here.
Once the signature is valid the request is always acknowledged; failures
while applying an event are logged, never bounced back to the provider.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from bridge_shared import get_logger

from campaign_bridge.api.webhook_security import voice_ai_validator
from campaign_bridge.core.exceptions import CampaignBridgeError
from campaign_bridge.dependencies import ContainerDep, ReconcilerDep

log = get_logger(__name__)

router = APIRouter(prefix="/webhooks")


class ConfigureWebhookRequest(BaseModel):
    """Request model for pointing an assistant at this service."""

    assistant_id: str | None = None


@router.post("/voice-ai")
async def voice_ai_webhook(
    request: Request,
    container: ContainerDep,
    reconciler: ReconcilerDep,
) -> dict[str, Any]:
    """Receive a voice-AI provider event."""
    body = await voice_ai_validator(container.settings).validate_request(request)

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        log.warning("Voice-AI webhook with invalid JSON body")
        return {"received": True, "handled": False, "reason": "invalid_json"}

    if not isinstance(payload, dict):
        return {"received": True, "handled": False, "reason": "invalid_payload"}

    try:
        result = await reconciler.handle(payload)
    except CampaignBridgeError as e:
        log.error("Voice-AI webhook processing failed", error=e.message, error_code=e.error_code)
        return {"received": True, "handled": False, "reason": e.error_code}
    except Exception as e:
        log.error(
            "Voice-AI webhook processing failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        return {"received": True, "handled": False, "reason": "processing_error"}

    return {"received": True, **result}


@router.post("/voice-ai/configure")
async def configure_voice_ai_webhook(
    request: ConfigureWebhookRequest,
    container: ContainerDep,
) -> dict[str, Any]:
    """Point the assistant's server URL at this service's webhook."""
    assistant = await container.voice_ai.update_assistant_webhook(request.assistant_id)
    return {
        "success": True,
        "assistantId": assistant.get("id"),
        "serverUrl": assistant.get("serverUrl") or container.voice_ai.webhook_url,
    }
