from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.execution_service import ExecutionService

# Models
from models.request.execution_request import (
    BulkExecutionRequest,
    GuestReplyRequest,
    ExecutionReplyRequest,
    GuestFormSubmissionRequest,
)

# Exceptions
from exceptions.campaign_exception import CampaignEngineException


def create_execution_api(
    log_util: LogUtil,
    execution_service: ExecutionService
) -> APIRouter:
    router = APIRouter(
        prefix="/execution",
        tags=["execution"],
    )

    @router.get("/detail/{execution_id}")
    async def get_execution(execution_id: str):
        try:
            return await execution_service.get_execution(execution_id)
        except CampaignEngineException as e:
            log_util.error(service_name="ExecutionService", message=f"Error getting execution {execution_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/messages/{execution_id}")
    async def get_execution_messages(execution_id: str):
        try:
            return await execution_service.get_messages(execution_id)
        except CampaignEngineException as e:
            log_util.error(service_name="ExecutionService", message=f"Error getting messages for {execution_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    # Bulk actions always answer 200 with both partitions
    @router.post("/bulk/retry")
    async def bulk_retry(bulk_request: BulkExecutionRequest):
        return await execution_service.bulk_retry(bulk_request.execution_ids)

    @router.post("/bulk/pause")
    async def bulk_pause(bulk_request: BulkExecutionRequest):
        return await execution_service.bulk_pause(bulk_request.execution_ids)

    @router.post("/bulk/resume")
    async def bulk_resume(bulk_request: BulkExecutionRequest):
        return await execution_service.bulk_resume(bulk_request.execution_ids)

    @router.post("/bulk/cancel")
    async def bulk_cancel(bulk_request: BulkExecutionRequest):
        return await execution_service.bulk_cancel(bulk_request.execution_ids)

    @router.post("/reply")
    async def handle_guest_reply(reply_request: GuestReplyRequest):
        """
        Inbound guest message, routed to the execution that owns the guest's session.
        """
        try:
            return await execution_service.handle_guest_reply(reply_request.guest_id, reply_request.text)
        except CampaignEngineException as e:
            log_util.error(service_name="ExecutionService", message=f"Error handling reply from {reply_request.guest_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/reply/{execution_id}")
    async def continue_after_reply(execution_id: str, reply_request: ExecutionReplyRequest):
        try:
            return await execution_service.continue_after_reply(execution_id, reply_request.text)
        except CampaignEngineException as e:
            log_util.error(service_name="ExecutionService", message=f"Error applying reply to {execution_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/form/{execution_id}")
    async def submit_guest_form(execution_id: str, form_request: GuestFormSubmissionRequest):
        try:
            return await execution_service.submit_guest_form(execution_id, form_request.responses)
        except CampaignEngineException as e:
            log_util.error(service_name="ExecutionService", message=f"Error submitting form for {execution_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
