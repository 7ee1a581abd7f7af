from pydantic import BaseModel
from typing import Optional, Literal
from datetime import datetime

from models.campaign_data import CampaignGuestFilter


class CreateCampaignRequest(BaseModel):
    """
    Request model for creating a campaign. Campaigns always start as draft or ready.
    """
    name: str
    description: Optional[str] = None
    chatflow_id: str
    guest_filter: CampaignGuestFilter = CampaignGuestFilter()
    trigger_type: str = "manual"
    scheduled_at: Optional[datetime] = None
    status: Literal["draft", "ready"] = "draft"

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Wedding RSVP",
                "chatflow_id": "chatflow:project-1:1b4e28ba-2fa1-11d2-883f-0016d3cca427",
                "guest_filter": {"categories": ["family"], "rsvp_statuses": ["pending"]},
                "trigger_type": "manual"
            }
        }


class UpdateCampaignRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    chatflow_id: Optional[str] = None
    guest_filter: Optional[CampaignGuestFilter] = None
    trigger_type: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    status: Optional[Literal["draft", "ready"]] = None


class PreviewGuestsRequest(BaseModel):
    guest_filter: CampaignGuestFilter = CampaignGuestFilter()

