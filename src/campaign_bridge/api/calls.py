"""Call management endpoints.

Endpoints for:
- Outbound call dispatch with duplicate protection
- Live control (mute, unmute, say), transfer and manual end
- Manual status overrides and listener tracking
- Phone tracking maintenance and debugging
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from campaign_bridge.dependencies import CallServiceDep, ContainerDep
from campaign_bridge.integrations.voice_ai import OutboundCallRequest

router = APIRouter(prefix="/calls")


# ============ REQUEST MODELS ============


class CreateCallRequest(BaseModel):
    """Request model for dispatching a call."""

    phone_number: str = Field(..., min_length=1, description="Customer number")
    first_name: str = ""
    last_name: str = ""
    assistant_type: str | None = Field(
        default=None,
        description="Named assistant; the default assistant is used when omitted",
    )
    lead_id: str = ""
    organization_id: str = "1"
    lead_source: str = ""
    lead_type: str = ""
    campaign_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ControlRequest(BaseModel):
    """Request model for live call control."""

    action: str = Field(..., description="mute, unmute or say")
    message: str | None = None


class TransferRequest(BaseModel):
    destination: str = Field(..., min_length=1)
    message: str | None = None


class StatusUpdateRequest(BaseModel):
    status: str
    metadata: dict[str, Any] | None = None


# ============ DISPATCH ============


@router.post("", status_code=201)
async def create_call(request: CreateCallRequest, calls: CallServiceDep) -> dict[str, Any]:
    """Dispatch an outbound call."""
    call = await calls.create_call(
        OutboundCallRequest(
            phone=request.phone_number,
            first_name=request.first_name,
            last_name=request.last_name,
            assistant_type=request.assistant_type,
            lead_id=request.lead_id,
            organization_id=request.organization_id,
            lead_source=request.lead_source,
            lead_type=request.lead_type,
            campaign_id=request.campaign_id,
            metadata=request.metadata,
        )
    )
    return {"success": True, "call": call.to_dict(include_transcript=False)}


# ============ READS ============


@router.get("")
async def list_calls(calls: CallServiceDep) -> dict[str, Any]:
    active = calls.list_active_calls()
    return {
        "success": True,
        "count": len(active),
        "calls": [call.to_dict(include_transcript=False) for call in active],
    }


@router.get("/debug")
async def debug_calls(calls: CallServiceDep) -> dict[str, Any]:
    """Phone tracking entries, registry stats and audio stream state."""
    return {"success": True, **calls.debug_info()}


@router.get("/stats")
async def call_stats(container: ContainerDep) -> dict[str, Any]:
    return {
        "success": True,
        "registry": container.registry.get_stats(),
        "audio": container.audio.get_stats(),
        "broadcast": container.broadcaster.get_stats(),
        "campaigns": container.campaigns.metrics.to_dict(),
    }


@router.get("/{call_id}")
async def get_call(call_id: str, calls: CallServiceDep) -> dict[str, Any]:
    return {"success": True, "call": calls.get_call(call_id).to_dict()}


# ============ LIVE CONTROL ============


@router.post("/{call_id}/control")
async def control_call(call_id: str, request: ControlRequest, calls: CallServiceDep) -> dict[str, Any]:
    result = await calls.control_call(call_id, request.action, request.message)
    return {"success": True, **result}


@router.post("/{call_id}/transfer")
async def transfer_call(call_id: str, request: TransferRequest, calls: CallServiceDep) -> dict[str, Any]:
    result = await calls.transfer_call(call_id, request.destination, request.message)
    return {"success": True, **result}


@router.post("/{call_id}/end")
async def end_call(call_id: str, calls: CallServiceDep) -> dict[str, Any]:
    call = await calls.end_call(call_id)
    return {"success": True, "call": call.to_dict(include_transcript=False)}


@router.patch("/{call_id}/status")
async def update_status(
    call_id: str,
    request: StatusUpdateRequest,
    calls: CallServiceDep,
) -> dict[str, Any]:
    """Apply a manual status override (regressions are refused)."""
    result = calls.update_status(call_id, request.status, request.metadata)
    return {
        "success": True,
        "callId": call_id,
        "status": result.status.value,
        "previousStatus": result.previous.value,
        "applied": result.applied,
    }


# ============ LISTENERS ============


@router.post("/{call_id}/listeners")
async def add_listener(call_id: str, calls: CallServiceDep) -> dict[str, Any]:
    return {"success": True, "callId": call_id, "listeners": calls.add_listener(call_id)}


@router.delete("/{call_id}/listeners")
async def remove_listener(call_id: str, calls: CallServiceDep) -> dict[str, Any]:
    return {"success": True, "callId": call_id, "listeners": calls.remove_listener(call_id)}


# ============ PHONE TRACKING ============


@router.delete("/phone-tracking/{phone}")
async def cleanup_phone(phone: str, calls: CallServiceDep) -> dict[str, Any]:
    """Clear the duplicate-call guard for one number."""
    return {"success": True, **calls.cleanup_phone(phone)}


@router.post("/phone-tracking/cleanup")
async def force_cleanup(calls: CallServiceDep) -> dict[str, Any]:
    """Drop tracking entries whose calls are unknown or finished."""
    removed = calls.force_cleanup()
    return {"success": True, "removed": removed, "count": len(removed)}
