"""Vapi voice-AI provider client.

Creates outbound assistant calls, drives live call control and keeps the
assistant webhook pointed at this service.

API Documentation: https://docs.vapi.ai/api-reference
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from bridge_shared import get_logger

from campaign_bridge.core.exceptions import ConfigurationError, VoiceAIError

log = get_logger(__name__)

DEFAULT_HOLD_FIRST_MESSAGE = (
    "Thanks for your patience! While we connect you with a specialist, "
    "I'll stay on the line with you. This typically takes 2-3 minutes."
)


@dataclass
class OutboundCallRequest:
    """Contact details for an outbound assistant call."""

    phone: str
    first_name: str = ""
    last_name: str = ""
    assistant_type: str | None = None
    lead_id: str = ""
    organization_id: str = "1"
    lead_source: str = ""
    lead_type: str = ""
    campaign_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class ProviderCall:
    """Call handle returned by the provider."""

    id: str
    status: str = "queued"
    control_url: str | None = None
    listen_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> ProviderCall:
        monitor = data.get("monitor") or {}
        return cls(
            id=data["id"],
            status=data.get("status") or "queued",
            control_url=monitor.get("controlUrl"),
            listen_url=monitor.get("listenUrl"),
            raw=data,
        )


class VapiClient:
    """Async client for the Vapi REST API.

    Attributes:
        base_url: API base URL
        assistant_id: Default assistant
        assistants: Named assistants selectable per call
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.vapi.ai",
        assistant_id: str = "",
        assistants: dict[str, str] | None = None,
        phone_number_id: str = "",
        hold_assistant_id: str = "",
        hold_phone_number_id: str = "",
        webhook_url: str = "",
        max_duration_seconds: int = 1800,
        timeout: float = 30.0,
    ):
        """Initialize Vapi client.

        Args:
            api_key: Private API key (sent as bearer token)
            base_url: API base URL
            assistant_id: Default assistant for outbound calls
            assistants: Mapping of assistant type to assistant id
            phone_number_id: Provider phone number used for outbound calls
            hold_assistant_id: Assistant that keeps conference customers company
            hold_phone_number_id: Phone number used for hold-agent calls
            webhook_url: Public URL for provider events
            max_duration_seconds: Hard cap on call length
            timeout: HTTP request timeout
        """
        self.base_url = base_url
        self.assistant_id = assistant_id
        self.assistants = assistants or {}
        self.phone_number_id = phone_number_id
        self.hold_assistant_id = hold_assistant_id
        self.hold_phone_number_id = hold_phone_number_id
        self.webhook_url = webhook_url
        self.max_duration_seconds = max_duration_seconds

        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and decode the JSON body.

        Raises:
            VoiceAIError: On transport errors and non-2xx responses
        """
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            log.error("Vapi request timeout", method=method, url=url)
            raise VoiceAIError(
                "Voice-AI request timed out",
                details={"method": method, "url": url},
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            log.error("Vapi HTTP error", method=method, url=url, error=str(e))
            raise VoiceAIError(
                f"Voice-AI request failed: {e}",
                details={"method": method, "url": url},
                cause=e,
            ) from e

        if response.status_code >= 400:
            try:
                body: Any = response.json() if response.content else {}
            except ValueError:
                body = response.text
            log.error(
                "Vapi API error",
                method=method,
                url=url,
                status_code=response.status_code,
                body=body,
            )
            raise VoiceAIError(
                f"Voice-AI API returned HTTP {response.status_code}",
                details={"status_code": response.status_code, "body": body, "url": url},
            )

        if not response.content:
            return {}
        return response.json()

    # ========================================================================
    # Calls
    # ========================================================================

    def resolve_assistant(self, assistant_type: str | None) -> str:
        """Pick the assistant for a call type, falling back to the default."""
        if assistant_type and assistant_type in self.assistants:
            return self.assistants[assistant_type]
        if assistant_type:
            log.info(
                "Unknown assistant type, using default",
                assistant_type=assistant_type,
                available=list(self.assistants),
            )
        return self.assistant_id

    def build_call_payload(self, request: OutboundCallRequest) -> dict[str, Any]:
        """Build the outbound call request body."""
        metadata = request.metadata
        variables = {
            "firstName": request.first_name,
            "lastName": request.last_name,
            "fullName": request.full_name,
            "phoneNumber": request.phone,
            "leadSource": request.lead_source,
            "leadType": request.lead_type,
            "organizationId": str(request.organization_id or "1"),
            "leadId": str(request.lead_id or ""),
            "campaignId": request.campaign_id or "",
            "notes": str(metadata.get("notes", "")),
            "batchCall": str(bool(request.campaign_id)).lower(),
        }

        return {
            "assistantId": self.resolve_assistant(request.assistant_type),
            "phoneNumberId": self.phone_number_id,
            "customer": {
                "number": request.phone,
                "numberE164CheckEnabled": True,
                "metadata": {"campaignId": request.campaign_id, **metadata},
            },
            "maxDurationSeconds": self.max_duration_seconds,
            "assistantOverrides": {"variableValues": variables},
        }

    async def create_call(self, request: OutboundCallRequest) -> ProviderCall:
        """Create an outbound assistant call.

        Args:
            request: Contact and routing details

        Returns:
            Provider call handle with monitor URLs when available
        """
        payload = self.build_call_payload(request)
        if not payload["assistantId"]:
            raise ConfigurationError("No voice-AI assistant configured")

        data = await self._request("POST", "/call", json=payload)
        call = ProviderCall.from_response(data)

        log.info(
            "Voice-AI call created",
            call_id=call.id,
            phone=request.phone,
            assistant_id=payload["assistantId"],
            campaign_id=request.campaign_id,
            has_listen_url=bool(call.listen_url),
        )
        return call

    async def create_hold_agent_call(
        self,
        conference_id: str,
        customer_phone: str,
        metadata: dict[str, Any] | None = None,
        first_message: str = DEFAULT_HOLD_FIRST_MESSAGE,
    ) -> ProviderCall:
        """Create the hold-agent call that keeps a customer company in a conference.

        Raises:
            ConfigurationError: If no hold assistant is configured
        """
        if not self.hold_assistant_id:
            raise ConfigurationError("Hold assistant ID not configured")

        metadata = metadata or {}
        variables = {
            "conferenceId": conference_id,
            "isConferenceCall": "true",
            "customerName": str(metadata.get("customerName", "")),
            "customerPhone": customer_phone,
            "caseType": str(metadata.get("caseType", "")),
            "estimatedWaitTime": "2-3 minutes",
            "leadId": str(metadata.get("leadId", "")),
            "organizationId": str(metadata.get("organizationId", "1")),
        }

        payload = {
            "assistantId": self.hold_assistant_id,
            "phoneNumberId": self.hold_phone_number_id or self.phone_number_id,
            "customer": {"number": customer_phone, "numberE164CheckEnabled": True},
            "maxDurationSeconds": self.max_duration_seconds,
            "assistantOverrides": {
                "variableValues": variables,
                "firstMessage": first_message,
            },
        }

        data = await self._request("POST", "/call", json=payload)
        call = ProviderCall.from_response(data)
        log.info("Hold-agent call created", call_id=call.id, conference_id=conference_id)
        return call

    async def control_call(self, control_url: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Send a live control message to a call's control URL."""
        result = await self._request("POST", control_url, json=payload)
        log.info("Call control sent", control_url=control_url, action=payload.get("type"))
        return result

    async def get_call(self, call_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/call/{call_id}")

    async def update_call(self, call_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/call/{call_id}", json=updates)

    async def end_call(self, call_id: str) -> dict[str, Any]:
        result = await self.update_call(call_id, {"status": "ended"})
        log.info("Voice-AI call ended", call_id=call_id)
        return result

    async def send_message(self, call_id: str, message: dict[str, Any]) -> dict[str, Any]:
        """Send a message to the assistant during a call."""
        return await self._request("POST", f"/call/{call_id}/say", json={"message": message})

    # ========================================================================
    # Assistants
    # ========================================================================

    async def get_assistant(self, assistant_id: str | None = None) -> dict[str, Any]:
        assistant_id = assistant_id or self.assistant_id
        if not assistant_id:
            raise ConfigurationError("Default assistant ID not configured")
        return await self._request("GET", f"/assistant/{assistant_id}")

    async def update_assistant_webhook(self, assistant_id: str | None = None) -> dict[str, Any]:
        """Point the assistant's server URL at this service.

        Raises:
            ConfigurationError: If the assistant or webhook URL is missing
        """
        assistant_id = assistant_id or self.assistant_id
        if not assistant_id:
            raise ConfigurationError("Default assistant ID not configured")
        if not self.webhook_url:
            raise ConfigurationError("Voice-AI webhook URL not configured")

        result = await self._request(
            "PATCH",
            f"/assistant/{assistant_id}",
            json={"serverUrl": self.webhook_url},
        )
        log.info(
            "Assistant webhook updated",
            assistant_id=assistant_id,
            webhook_url=self.webhook_url,
        )
        return result
