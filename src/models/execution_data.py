from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime

from utils.time_utils import utc_now

ExecutionStatus = Literal[
    "pending",
    "pending_session",
    "queued",
    "running",
    "paused",
    "completed",
    "failed",
    "cancelled",
]

TERMINAL_EXECUTION_STATUSES = ("completed", "failed", "cancelled")

NodeExecutionStatus = Literal["pending", "running", "completed", "failed", "skipped", "waiting"]

class NodeExecution(BaseModel):
    """
    One entry of an execution's node_history. Entries are appended, never removed.
    """
    node_id: str
    node_type: str
    node_label: Optional[str] = None
    status: NodeExecutionStatus = "running"
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    # wait_reply / guest_form / delay
    waiting_since: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    resume_at: Optional[datetime] = None
    reply_received: Optional[str] = None
    retry_count: int = 0

    # condition
    condition_result: Optional[bool] = None

    # guest_form
    form_responses: Optional[Dict[str, Any]] = None

class ChatflowExecution(BaseModel):
    id: str
    campaign_id: str
    guest_id: str
    guest_name: str
    guest_phone: str
    chatflow_id: str
    status: ExecutionStatus = "pending"
    current_node_id: Optional[str] = None
    current_phase: Optional[str] = None
    variables: Dict[str, Any] = {}
    error_message: Optional[str] = None
    node_history: List[NodeExecution] = []
    project_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def latest_node_execution(self, node_id: str) -> Optional[NodeExecution]:
        for node_execution in reversed(self.node_history):
            if node_execution.node_id == node_id:
                return node_execution
        return None

class BulkExecutionFailure(BaseModel):
    execution_id: str
    error: str
    reason: str

class BulkExecutionResult(BaseModel):
    succeeded: List[str] = []
    failed: List[BulkExecutionFailure] = []
