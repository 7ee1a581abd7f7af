from pydantic import BaseModel
from typing import Optional, Literal
from datetime import datetime

from models.reminder_data import ReminderType, ReminderAction, ReminderTargetFilter


class CreateReminderRequest(BaseModel):
    name: str
    description: Optional[str] = None
    type: ReminderType = "one_time"
    trigger_at: datetime
    action: ReminderAction
    target_filter: Optional[ReminderTargetFilter] = None

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Nudge non responders",
                "trigger_at": "2026-11-01T09:00:00Z",
                "action": "resend_to_non_responders",
                "target_filter": {"only_non_responders": True}
            }
        }


class UpdateReminderRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger_at: Optional[datetime] = None
    action: Optional[ReminderAction] = None
    target_filter: Optional[ReminderTargetFilter] = None
    status: Optional[Literal["cancelled"]] = None
