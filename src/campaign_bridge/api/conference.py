"""Conference bridging endpoints.

Endpoints for:
- Bridging a qualified lead (directly or as a voice-AI tool call)
- Adding a specific agent, status and teardown
- Twilio conference status callbacks and the TwiML join endpoint
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, Field

from bridge_shared import call_context, get_logger

from campaign_bridge.api.webhook_security import twilio_validator, voice_ai_validator
from campaign_bridge.core.events import QualificationSignal
from campaign_bridge.core.exceptions import (
    CampaignBridgeError,
    InvalidPhoneNumberError,
    ValidationError,
)
from campaign_bridge.dependencies import ConferenceDep, ContainerDep
from campaign_bridge.services.conference_orchestrator import tool_response

log = get_logger(__name__)

router = APIRouter(prefix="/conference")


class BridgeRequest(BaseModel):
    """Request model for bridging a qualified lead."""

    lead_id: str = Field(..., min_length=1)
    customer_phone: str = Field(..., min_length=1)
    customer_name: str = "Customer"
    original_call_id: str | None = None
    lead_type: str = ""
    organization_id: str = "1"
    qualification_data: dict[str, Any] = Field(default_factory=dict)


class AddAgentRequest(BaseModel):
    conference_id: str
    agent_phone: str
    agent_name: str | None = None
    agent_id: str | None = None


@router.post("/bridge")
async def bridge(request: BridgeRequest, conferences: ConferenceDep) -> dict[str, Any]:
    """Create a conference bridge for a qualified lead."""
    return await conferences.bridge(
        QualificationSignal(
            lead_id=request.lead_id,
            customer_phone=request.customer_phone,
            customer_name=request.customer_name,
            original_call_id=request.original_call_id,
            lead_type=request.lead_type,
            organization_id=request.organization_id,
            qualification_data=request.qualification_data,
        )
    )


@router.post("/tools/transfer-conference")
async def transfer_conference_tool(
    request: Request,
    container: ContainerDep,
    conferences: ConferenceDep,
) -> dict[str, Any]:
    """Voice-AI tool call fired when the assistant qualifies a lead.

    Always answers with the tool-call envelope. Failures carry
    ``success: false`` and, where useful, a direct queue transfer.
    """
    body = await voice_ai_validator(container.settings).validate_request(request)
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    message = payload.get("message") or {}
    tool_calls = message.get("toolCallList") or message.get("toolCalls") or []
    tool_call_id = tool_calls[0].get("id") if tool_calls else None

    log.info(
        "Conference trigger received",
        tool_call_id=tool_call_id,
        call_id=(message.get("call") or {}).get("id"),
    )

    signal = container.voice_ai_adapter.parse_qualification(payload)
    if signal is None:
        return tool_response(
            tool_call_id,
            conferences.failure_result("Missing lead id or customer phone", transfer_to_queue=True),
        )

    try:
        result = await conferences.bridge(signal)
    except (InvalidPhoneNumberError, ValidationError) as e:
        log.error("Conference creation rejected", error=e.message)
        result = conferences.failure_result(e.message, transfer_to_queue=False)
    except CampaignBridgeError as e:
        log.error("Conference creation failed", error=e.message, error_code=e.error_code)
        result = conferences.failure_result("Conference creation failed")

    return tool_response(signal.tool_call_id or tool_call_id, result)


@router.post("/add-agent")
async def add_agent(request: AddAgentRequest, conferences: ConferenceDep) -> dict[str, Any]:
    result = await conferences.add_agent(
        request.conference_id,
        request.agent_phone,
        agent_name=request.agent_name,
        agent_id=request.agent_id,
    )
    return {"success": True, **result}


@router.post("/webhook/twilio")
async def twilio_conference_webhook(
    request: Request,
    container: ContainerDep,
    conferences: ConferenceDep,
) -> Response:
    """Twilio conference status callback.

    Always answers 200 once the signature is valid.
    """
    form = await twilio_validator(container.settings).validate_request(request)
    event = container.conference_adapter.parse(form)

    try:
        with call_context(conference_id=event.conference_id):
            await conferences.handle_twilio_event(event)
    except CampaignBridgeError as e:
        log.error(
            "Conference webhook processing failed",
            conference_id=event.conference_id,
            event_type=event.raw_type,
            error=e.message,
        )
    except Exception as e:
        log.error(
            "Conference webhook processing failed",
            conference_id=event.conference_id,
            event_type=event.raw_type,
            error=str(e),
            error_type=type(e).__name__,
        )

    return Response(content="OK", media_type="text/plain")


@router.post("/join/{conference_id}")
async def join_conference(
    conference_id: str,
    request: Request,
    conferences: ConferenceDep,
) -> Response:
    """TwiML placing an inbound leg into the conference."""
    form = await request.form()
    twiml = await conferences.join_twiml(conference_id, call_sid=form.get("CallSid") or None)
    return Response(content=twiml, media_type="application/xml")


@router.get("/{conference_id}")
async def get_conference(conference_id: str, conferences: ConferenceDep) -> dict[str, Any]:
    return {"success": True, "conference": await conferences.get_status(conference_id)}


@router.post("/{conference_id}/end")
async def end_conference(conference_id: str, conferences: ConferenceDep) -> dict[str, Any]:
    record = await conferences.end_conference(conference_id)
    return {
        "success": True,
        "conferenceId": conference_id,
        "status": record.get("status"),
        "message": "Conference ended successfully",
    }
