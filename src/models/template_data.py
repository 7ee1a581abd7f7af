from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime

from utils.time_utils import utc_now

class TemplateData(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    name: str
    content: str  # Body text with {{placeholders}}
    variables: List[str] = []
    status: Optional[str] = None
    project_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
