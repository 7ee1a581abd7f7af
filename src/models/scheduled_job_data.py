from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

from utils.time_utils import utc_now


class ScheduledJobData(BaseModel):
    """
    Time-ordered work item written when a node suspends until an absolute time.
    Used by the background scheduler to resume delay nodes and fire reply timeouts.
    """
    id: str = Field(..., description="Store key of the job")
    job_type: Literal["delay_complete", "reply_timeout"] = Field(..., description="What to do when the job is due")
    execution_id: str = Field(..., description="Execution to resume")
    node_id: str = Field(..., description="Node the execution is suspended on")
    chatflow_id: str = Field(..., description="Chatflow the execution runs")
    run_at: datetime = Field(..., description="Absolute time when the job becomes due")
    attempts: int = Field(default=0, description="Failed handling attempts so far")
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
