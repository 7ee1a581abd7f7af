from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.chatflow_service import ChatflowService, validate_chatflow

# Exceptions
from exceptions.campaign_exception import CampaignEngineException, ChatflowValidationException

def create_chatflow_api(
    log_util: LogUtil,
    chatflow_service: ChatflowService
) -> APIRouter:
    router = APIRouter(
        prefix="/chatflow",
        tags=["chatflow"],
    )

    @router.post("/create")
    async def create_chatflow(request: Request, chatflow_data: dict):
        project_id = request.headers.get("x-project-id")
        if not project_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        try:
            return await chatflow_service.create_chatflow(project_id=project_id, chatflow_data=chatflow_data)
        except CampaignEngineException as e:
            log_util.error(service_name="ChatflowService", message=f"Error creating chatflow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except ValueError as e:
            log_util.error(service_name="ChatflowService", message=f"Invalid chatflow payload: {e}")
            raise HTTPException(status_code=400, detail=str(e))

    @router.get("/list")
    async def list_chatflows(request: Request):
        project_id = request.headers.get("x-project-id")
        if not project_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return await chatflow_service.list_chatflows(project_id=project_id)

    @router.get("/detail/{chatflow_id}")
    async def get_chatflow(chatflow_id: str):
        try:
            return await chatflow_service.get_chatflow(chatflow_id)
        except CampaignEngineException as e:
            log_util.error(service_name="ChatflowService", message=f"Error getting chatflow {chatflow_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.put("/update/{chatflow_id}")
    async def update_chatflow(chatflow_id: str, chatflow_data: dict):
        try:
            return await chatflow_service.update_chatflow(chatflow_id, chatflow_data)
        except CampaignEngineException as e:
            log_util.error(service_name="ChatflowService", message=f"Error updating chatflow {chatflow_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/validate/{chatflow_id}")
    async def validate(chatflow_id: str):
        try:
            chatflow = await chatflow_service.get_chatflow(chatflow_id)
            return validate_chatflow(chatflow)
        except CampaignEngineException as e:
            log_util.error(service_name="ChatflowService", message=f"Error validating chatflow {chatflow_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/publish/{chatflow_id}")
    async def publish_chatflow(chatflow_id: str):
        try:
            return await chatflow_service.publish_chatflow(chatflow_id)
        except ChatflowValidationException as e:
            log_util.warning(service_name="ChatflowService", message=f"Chatflow {chatflow_id} not published: {e}")
            raise HTTPException(status_code=e.status_code, detail={"message": e.message, "errors": e.errors})
        except CampaignEngineException as e:
            log_util.error(service_name="ChatflowService", message=f"Error publishing chatflow {chatflow_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
