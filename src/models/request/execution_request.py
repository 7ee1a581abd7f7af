from pydantic import BaseModel
from typing import Dict, Any, List


class BulkExecutionRequest(BaseModel):
    """
    Request model for bulk retry / pause / resume / cancel.
    Every id is processed on its own; the response lists both outcomes.
    """
    execution_ids: List[str]

    class Config:
        json_schema_extra = {
            "example": {
                "execution_ids": [
                    "execution:project-1:9b2f5c4e-8c1d-4f1a-9d63-2b8a1f0c7e11",
                    "execution:project-1:0c6e2a71-5d4b-4b7e-a1f3-7e9d2c4b8a55"
                ]
            }
        }


class GuestReplyRequest(BaseModel):
    guest_id: str
    text: str


class ExecutionReplyRequest(BaseModel):
    text: str


class GuestFormSubmissionRequest(BaseModel):
    responses: Dict[str, Any]
