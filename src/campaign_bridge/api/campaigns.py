"""Campaign endpoints.

Endpoints for:
- Starting a campaign from an uploaded contact list
- Scheduling a campaign for later
- Stopping the active campaign
- Campaign status and call results
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from fastapi import APIRouter
from pydantic import BaseModel, Field

from campaign_bridge.dependencies import CampaignExecutorDep

router = APIRouter(prefix="/campaigns")


class CampaignRequest(BaseModel):
    """Request model for starting a campaign."""

    name: str = Field(default="Campaign", description="Display name")
    campaign_id: str | None = Field(default=None, description="Generated when omitted")
    contacts: list[dict[str, Any]] = Field(..., min_length=1)
    call_delay: float = Field(default=5.0, ge=0, description="Seconds between batches")
    max_concurrent: int = Field(default=3, ge=1, le=50, description="Calls per batch")


class ScheduleCampaignRequest(CampaignRequest):
    schedule_time: datetime


class StopCampaignRequest(BaseModel):
    campaign_id: str | None = None


def _new_campaign_id() -> str:
    return f"campaign_{uuid4().hex[:12]}"


@router.post("", status_code=201)
async def start_campaign(request: CampaignRequest, campaigns: CampaignExecutorDep) -> dict[str, Any]:
    """Start a campaign immediately.

    Fails with 409 while another campaign is active.
    """
    campaign = await campaigns.start(
        request.campaign_id or _new_campaign_id(),
        request.name,
        request.contacts,
        call_delay=request.call_delay,
        max_concurrent=request.max_concurrent,
    )
    return {"success": True, "campaign": campaign}


@router.post("/schedule", status_code=201)
async def schedule_campaign(
    request: ScheduleCampaignRequest,
    campaigns: CampaignExecutorDep,
) -> dict[str, Any]:
    campaign = await campaigns.schedule(
        request.campaign_id or _new_campaign_id(),
        request.name,
        request.contacts,
        request.schedule_time,
        call_delay=request.call_delay,
        max_concurrent=request.max_concurrent,
    )
    return {"success": True, "campaign": campaign}


@router.post("/stop")
async def stop_campaign(campaigns: CampaignExecutorDep, request: StopCampaignRequest | None = None) -> dict[str, Any]:
    campaign = await campaigns.stop(request.campaign_id if request else None)
    return {"success": True, "campaign": campaign}


@router.get("")
async def list_campaigns(campaigns: CampaignExecutorDep) -> dict[str, Any]:
    records = await campaigns.list_campaigns()
    return {"success": True, "count": len(records), "campaigns": records}


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: str, campaigns: CampaignExecutorDep) -> dict[str, Any]:
    return {"success": True, "campaign": await campaigns.get_status(campaign_id)}
