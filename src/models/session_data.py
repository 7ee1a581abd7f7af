from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime

from utils.time_utils import utc_now

class GuestSession(BaseModel):
    """
    The messaging window a guest shares with exactly one campaign.
    Stored under the per-guest session key so one guest holds at most one record.
    """
    id: str
    guest_id: str
    guest_phone: Optional[str] = None
    campaign_id: str
    execution_id: str
    session_opened_at: datetime = Field(default_factory=utc_now)
    session_expires_at: datetime
    last_activity_at: datetime = Field(default_factory=utc_now)
    current_node_id: Optional[str] = None
    waiting_for_reply: bool = False
    has_pending_invitations: bool = False
    pending_invitation_ids: List[str] = []
    project_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return utc_now() < self.session_expires_at

InvitationStatus = Literal["pending_piggybacking", "sent", "cancelled"]

class PendingInvitation(BaseModel):
    id: str
    guest_id: str
    campaign_id: str
    campaign_name: Optional[str] = None
    execution_id: Optional[str] = None
    reason: str = "active_session_exists"
    blocked_by_campaign_id: str
    waiting_for_session_open: bool = True
    status: InvitationStatus = "pending_piggybacking"
    piggyback_message: Optional[str] = None
    project_id: str
    sent_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
