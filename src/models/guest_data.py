from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Literal
from datetime import datetime

from utils.time_utils import utc_now

RSVPStatus = Literal["pending", "confirmed", "declined", "maybe"]

class GuestData(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    name: str
    phone: str  # WhatsApp number including country code
    email: Optional[str] = None
    category: str = "other"  # "family", "friend", "colleague", "vip", "other"
    invitation_type: str = "both"  # "ceremony_only", "reception_only", "both"
    rsvp_status: RSVPStatus = "pending"
    plus_one: bool = False
    plus_one_name: Optional[str] = None
    plus_one_confirmed: Optional[bool] = None
    tags: List[str] = []
    rsvp_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    project_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
