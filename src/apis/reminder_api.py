from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.reminder_service import ReminderService

# Models
from models.request.reminder_request import CreateReminderRequest, UpdateReminderRequest

# Exceptions
from exceptions.campaign_exception import CampaignEngineException


def create_reminder_api(log_util: LogUtil, reminder_service: ReminderService) -> APIRouter:
    router = APIRouter(
        prefix="/reminder",
        tags=["reminder"],
    )

    @router.post("/create/{campaign_id}")
    async def create_reminder(request: Request, campaign_id: str, reminder_request: CreateReminderRequest):
        try:
            return await reminder_service.create_reminder(
                campaign_id=campaign_id,
                reminder_data=reminder_request.model_dump(),
                created_by=request.headers.get("x-user-id")
            )
        except CampaignEngineException as e:
            log_util.error(service_name="ReminderService", message=f"Error creating reminder for {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/campaign/{campaign_id}")
    async def list_reminders(campaign_id: str):
        """
        Reminders of a campaign, soonest first.
        """
        try:
            return await reminder_service.list_reminders(campaign_id)
        except CampaignEngineException as e:
            log_util.error(service_name="ReminderService", message=f"Error listing reminders for {campaign_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/detail/{reminder_id}")
    async def get_reminder(reminder_id: str):
        try:
            return await reminder_service.get_reminder(reminder_id)
        except CampaignEngineException as e:
            log_util.error(service_name="ReminderService", message=f"Error getting reminder {reminder_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.put("/update/{reminder_id}")
    async def update_reminder(reminder_id: str, reminder_request: UpdateReminderRequest):
        try:
            return await reminder_service.update_reminder(
                reminder_id, reminder_request.model_dump(exclude_unset=True)
            )
        except CampaignEngineException as e:
            log_util.error(service_name="ReminderService", message=f"Error updating reminder {reminder_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.delete("/delete/{reminder_id}")
    async def delete_reminder(reminder_id: str):
        try:
            await reminder_service.delete_reminder(reminder_id)
            return {"id": reminder_id, "deleted": True}
        except CampaignEngineException as e:
            log_util.error(service_name="ReminderService", message=f"Error deleting reminder {reminder_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/trigger/{reminder_id}")
    async def trigger_reminder(reminder_id: str):
        try:
            return await reminder_service.trigger_reminder(reminder_id)
        except CampaignEngineException as e:
            log_util.error(service_name="ReminderService", message=f"Error triggering reminder {reminder_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
