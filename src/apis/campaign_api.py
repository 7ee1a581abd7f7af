from typing import Optional

from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.campaign_service import CampaignService
from services.execution_service import ExecutionService

# Models
from models.request.campaign_request import CreateCampaignRequest, UpdateCampaignRequest, PreviewGuestsRequest

# Exceptions
from exceptions.campaign_exception import CampaignEngineException


def _project_id(request: Request) -> str:
    project_id = request.headers.get("x-project-id")
    if not project_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return project_id


def create_campaign_api(
    log_util: LogUtil,
    campaign_service: CampaignService,
    execution_service: ExecutionService
) -> APIRouter:
    router = APIRouter(
        prefix="/campaign",
        tags=["campaign"],
    )

    @router.post("/create")
    async def create_campaign(request: Request, campaign_request: CreateCampaignRequest):
        project_id = _project_id(request)
        try:
            return await campaign_service.create_campaign(
                project_id=project_id,
                campaign_data=campaign_request.model_dump(),
                created_by=request.headers.get("x-user-id")
            )
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error creating campaign: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/list")
    async def list_campaigns(request: Request):
        project_id = _project_id(request)
        try:
            return await campaign_service.list_campaigns(project_id=project_id)
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error listing campaigns: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/preview-guests")
    async def preview_guests(request: Request, preview_request: PreviewGuestsRequest):
        project_id = _project_id(request)
        try:
            guests = await campaign_service.preview_guests(project_id, preview_request.guest_filter)
            return {"total": len(guests), "guests": guests}
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error previewing guests: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/detail/{campaign_id}")
    async def get_campaign(campaign_id: str):
        """
        Campaign with stats recomputed from its executions.
        """
        try:
            return await campaign_service.get_campaign(campaign_id)
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error getting campaign {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/stats/{campaign_id}")
    async def get_campaign_stats(campaign_id: str):
        try:
            await campaign_service.get_campaign(campaign_id)
            return await campaign_service.compute_stats(campaign_id)
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error getting stats for {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.put("/update/{campaign_id}")
    async def update_campaign(campaign_id: str, campaign_request: UpdateCampaignRequest):
        try:
            return await campaign_service.update_campaign(
                campaign_id, campaign_request.model_dump(exclude_unset=True)
            )
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error updating campaign {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.delete("/delete/{campaign_id}")
    async def delete_campaign(campaign_id: str):
        try:
            await campaign_service.delete_campaign(campaign_id)
            return {"id": campaign_id, "deleted": True}
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error deleting campaign {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/start/{campaign_id}")
    async def start_campaign(campaign_id: str):
        try:
            return await campaign_service.start_campaign(campaign_id)
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error starting campaign {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/pause/{campaign_id}")
    async def pause_campaign(campaign_id: str):
        try:
            return await campaign_service.pause_campaign(campaign_id)
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error pausing campaign {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/resume/{campaign_id}")
    async def resume_campaign(campaign_id: str):
        try:
            return await campaign_service.resume_campaign(campaign_id)
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error resuming campaign {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/cancel/{campaign_id}")
    async def cancel_campaign(campaign_id: str):
        try:
            return await campaign_service.cancel_campaign(campaign_id)
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error cancelling campaign {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/{campaign_id}/executions")
    async def list_executions(campaign_id: str, status: Optional[str] = None):
        try:
            await campaign_service.get_campaign(campaign_id)
            return await execution_service.list_executions(campaign_id, status)
        except CampaignEngineException as e:
            log_util.error(service_name="CampaignService", message=f"Error listing executions for {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
