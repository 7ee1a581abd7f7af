from pydantic import BaseModel, Field
from typing import Optional, Dict, Literal
from datetime import datetime

from utils.time_utils import utc_now

MessageType = Literal["template", "text", "form_question", "service"]
MessageStatus = Literal["queued", "sent", "delivered", "read", "failed"]

class MessageLog(BaseModel):
    id: str
    campaign_id: str
    execution_id: str
    guest_id: str
    node_id: str
    type: MessageType
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    content: str
    variables: Optional[Dict[str, str]] = None
    status: MessageStatus = "queued"
    queued_at: datetime = Field(default_factory=utc_now)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    project_id: str
    created_at: datetime = Field(default_factory=utc_now)
