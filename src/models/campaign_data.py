from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime

from utils.time_utils import utc_now

CampaignStatus = Literal["draft", "ready", "running", "paused", "completed", "archived"]

class CampaignGuestFilter(BaseModel):
    categories: Optional[List[str]] = None
    invitation_types: Optional[List[str]] = None
    rsvp_statuses: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    has_plus_one: Optional[bool] = None
    checked_in: Optional[bool] = None
    custom_guest_ids: Optional[List[str]] = None  # Manual selection, overrides every other field

class CampaignStats(BaseModel):
    """
    Derived snapshot, recomputed from the execution set on every read. Never persisted.
    """
    total_guests: int = 0
    executions_pending: int = 0
    executions_pending_session: int = 0
    executions_queued: int = 0
    executions_running: int = 0
    executions_paused: int = 0
    executions_completed: int = 0
    executions_failed: int = 0
    executions_cancelled: int = 0
    messages_sent: int = 0
    messages_failed: int = 0
    rsvp_confirmed: int = 0
    rsvp_declined: int = 0
    rsvp_maybe: int = 0
    last_updated: datetime = Field(default_factory=utc_now)

class CampaignData(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    chatflow_id: str
    chatflow_name: Optional[str] = None
    guest_filter: CampaignGuestFilter = Field(default_factory=CampaignGuestFilter)
    trigger_type: Literal["manual", "scheduled"] = "manual"
    scheduled_at: Optional[datetime] = None
    status: CampaignStatus = "draft"
    project_id: str
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    stats: Optional[CampaignStats] = None
