"""Repositories over the shared state store."""

from campaign_bridge.store.repositories.campaigns import (
    CampaignRepository,
    merge_campaign,
    new_campaign_record,
)
from campaign_bridge.store.repositories.conferences import (
    CONFERENCE_STATUS_RANK,
    ConferenceRepository,
    merge_conference,
)

__all__ = [
    "CONFERENCE_STATUS_RANK",
    "CampaignRepository",
    "ConferenceRepository",
    "merge_campaign",
    "merge_conference",
    "new_campaign_record",
]
