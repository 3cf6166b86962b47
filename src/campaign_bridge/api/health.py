"""Health check endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from campaign_bridge import __version__
from campaign_bridge.core.exceptions import StoreError
from campaign_bridge.dependencies import ContainerDep, ServiceContainer

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    instance_id: str
    environment: str
    checks: dict[str, Any]


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: str
    checks: dict[str, str]


@router.get("/health")
async def health_check(container: ContainerDep) -> HealthResponse:
    """Perform health check.

    Components checked:
    - API: Always ok if reachable
    - Store: Connectivity via PING
    - Providers: Whether credentials are configured
    - Registry: Calls currently monitored
    """
    settings = container.settings
    checks: dict[str, Any] = {
        "api": "ok",
        "store": await _check_store(container),
        "voice_ai": "ok" if settings.voice_ai.api_key else "not_configured",
        "telephony": (
            "ok" if settings.twilio.account_sid and settings.twilio.auth_token else "not_configured"
        ),
        "registry": {
            "status": "ok",
            "active_calls": len(container.registry),
            "audio_streams": container.audio.get_stats()["connected"],
            "subscribers": container.broadcaster.subscriber_count,
        },
    }

    return HealthResponse(
        status=_determine_overall_status(checks),
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        instance_id=settings.instance_id,
        environment=settings.environment,
        checks=checks,
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(container: ContainerDep) -> Any:
    """Ready means the shared store answers."""
    store_status = await _check_store(container)
    checks = {"store": store_status if isinstance(store_status, str) else store_status["status"]}

    if checks["store"] == "ok":
        return ReadinessResponse(status="ready", checks=checks)
    return JSONResponse(
        status_code=503,
        content=ReadinessResponse(status="not_ready", checks=checks).model_dump(),
    )


async def _check_store(container: ServiceContainer) -> str | dict[str, Any]:
    try:
        if await container.store.ping():
            return "ok"
        return {"status": "error", "message": "ping failed"}
    except StoreError as e:
        return {"status": "error", "message": e.message}


def _determine_overall_status(checks: dict[str, Any]) -> str:
    store = checks.get("store")
    if store != "ok":
        return "unhealthy"
    if "not_configured" in (checks.get("voice_ai"), checks.get("telephony")):
        return "degraded"
    return "healthy"
