"""HTTP and WebSocket routers."""

from campaign_bridge.api import calls, campaigns, conference, events, health, webhooks

__all__ = ["calls", "campaigns", "conference", "events", "health", "webhooks"]
