from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime

from utils.time_utils import utc_now

NodeType = Literal[
    "trigger",
    "send_template",
    "wait_reply",
    "condition",
    "delay",
    "guest_form",
    "update_guest",
    "end",
]

# Per-type node configuration
class TriggerConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    type: Optional[str] = "manual"  # "keyword", "welcome", "manual"
    keyword: Optional[str] = None
    description: Optional[str] = None

class SendTemplateConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    templateId: Optional[str] = None
    templateName: Optional[str] = None
    variables: Optional[Dict[str, str]] = None

class WaitReplyConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    timeout: Optional[float] = None  # Seconds before timeout
    timeoutAction: Optional[Literal["continue", "end"]] = None
    saveAs: Optional[str] = None
    expectedValues: Optional[List[str]] = None
    retryMessage: Optional[str] = None
    maxRetries: int = 3
    caseSensitive: bool = False
    fallbackAction: Literal["continue", "end", "wait_again"] = "end"
    fallbackMessage: Optional[str] = None

class ConditionConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    variable: str = ""
    operator: Literal["equals", "not_equals", "contains", "matches"] = "equals"
    value: str = ""
    caseSensitive: bool = True

class DelayConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    duration: float = 0
    unit: Literal["seconds", "minutes", "hours", "days"] = "minutes"

class FormQuestion(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    question: str = ""
    type: Literal["text", "number", "choice"] = "text"
    variableName: str = ""
    required: bool = True
    min: Optional[float] = None
    max: Optional[float] = None
    options: Optional[List[str]] = None

class GuestFormConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    questions: List[FormQuestion] = []
    enableConfirmation: bool = False
    confirmationMessage: Optional[str] = None

class UpdateGuestConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    rsvp_status: Optional[Literal["pending", "confirmed", "declined", "maybe"]] = None
    tags: Optional[List[str]] = None
    plus_one_confirmed: Optional[bool] = None

class ChatflowNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: Optional[str] = None
    config: Optional[Dict[str, Any]] = None

class ChatflowNode(BaseModel):
    model_config = ConfigDict(extra='allow')  # Editor fields like 'position'

    id: str
    type: NodeType
    data: ChatflowNodeData = Field(default_factory=ChatflowNodeData)

    @property
    def label(self) -> str:
        return self.data.label or self.type

    @property
    def config(self) -> Dict[str, Any]:
        return self.data.config or {}

class ChatflowEdge(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: Optional[str] = None
    source: str
    target: str
    sourceHandle: Optional[str] = None

class ChatflowData(BaseModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    nodes: List[ChatflowNode] = []
    edges: List[ChatflowEdge] = []
    status: Literal["draft", "published"] = "draft"
    project_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def get_node(self, node_id: str) -> Optional[ChatflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_trigger_node(self) -> Optional[ChatflowNode]:
        for node in self.nodes:
            if node.type == "trigger":
                return node
        return None

    def get_next_node(self, node: ChatflowNode, source_handle: Optional[str] = None) -> Optional[ChatflowNode]:
        """
        First outgoing edge wins. When a handle is given only edges carrying
        that handle are considered.
        """
        for edge in self.edges:
            if edge.source != node.id:
                continue
            if source_handle is not None and edge.sourceHandle != source_handle:
                continue
            return self.get_node(edge.target)
        return None
