from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal
from datetime import datetime, timezone

from utils.time_utils import utc_now
from models.campaign_data import CampaignGuestFilter

ReminderType = Literal["one_time", "recurring"]
ReminderStatus = Literal["scheduled", "triggered", "cancelled", "failed"]
ReminderAction = Literal["resend_to_non_responders", "send_follow_up", "manual_notification"]

class ReminderTargetFilter(BaseModel):
    only_pending_rsvp: Optional[bool] = None
    only_non_responders: Optional[bool] = None
    custom_filter: Optional[CampaignGuestFilter] = None

class ReminderData(BaseModel):
    """
    Follow-up scheduled against a campaign. The scheduler triggers it once
    trigger_at has passed; it can also be triggered by hand while scheduled.
    """
    id: str
    campaign_id: str
    name: str
    description: Optional[str] = None
    type: ReminderType = "one_time"
    trigger_at: datetime
    triggered_at: Optional[datetime] = None
    action: ReminderAction
    target_filter: Optional[ReminderTargetFilter] = None
    target_guest_ids: List[str] = []  # Resolved when triggered
    status: ReminderStatus = "scheduled"
    error_message: Optional[str] = None
    project_id: str
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("trigger_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
