import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.kv_store import MongoKVStore, InMemoryKVStore
from database.campaign_db import CampaignDB

# Services
from services.template_service import TemplateService
from services.message_service import MessageService
from services.guest_service import GuestService
from services.guest_session_service import GuestSessionService
from services.chatflow_service import ChatflowService
from services.node_executor_service import NodeExecutorService
from services.execution_service import ExecutionService
from services.campaign_service import CampaignService
from services.reminder_service import ReminderService
from services.scheduler_service import SchedulerService

# APIs
from apis.campaign_api import create_campaign_api
from apis.execution_api import create_execution_api
from apis.chatflow_api import create_chatflow_api
from apis.reminder_api import create_reminder_api

# Exceptions
from exceptions.campaign_exception import CampaignEngineException

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
if environment_utils.get_env_variable("STORE_BACKEND") == "memory":
    store = InMemoryKVStore(log_util=log_util)
else:
    store = MongoKVStore(log_util=log_util, environment_utils=environment_utils)
campaign_db = CampaignDB(log_util=log_util, store=store)

# Services
template_service = TemplateService(log_util=log_util, campaign_db=campaign_db)
message_service = MessageService(
    log_util=log_util,
    campaign_db=campaign_db,
    delivery_delay_seconds=environment_utils.get_env_variable("DELIVERY_DELAY_SECONDS")
)
guest_service = GuestService(log_util=log_util, campaign_db=campaign_db)
guest_session_service = GuestSessionService(
    log_util=log_util,
    campaign_db=campaign_db,
    session_window_hours=environment_utils.get_env_variable("SESSION_WINDOW_HOURS")
)
chatflow_service = ChatflowService(log_util=log_util, campaign_db=campaign_db)
reminder_service = ReminderService(log_util=log_util, campaign_db=campaign_db, guest_service=guest_service)

node_executor_service = NodeExecutorService(
    log_util=log_util,
    campaign_db=campaign_db,
    template_service=template_service,
    message_service=message_service,
    guest_service=guest_service,
    guest_session_service=guest_session_service
)

execution_service = ExecutionService(
    log_util=log_util,
    campaign_db=campaign_db,
    guest_service=guest_service,
    guest_session_service=guest_session_service,
    message_service=message_service,
    node_executor_service=node_executor_service
)

campaign_service = CampaignService(
    log_util=log_util,
    campaign_db=campaign_db,
    guest_service=guest_service,
    guest_session_service=guest_session_service,
    execution_service=execution_service,
    message_service=message_service,
    reminder_service=reminder_service
)

scheduler_service = SchedulerService(
    log_util=log_util,
    campaign_db=campaign_db,
    execution_service=execution_service,
    campaign_service=campaign_service,
    reminder_service=reminder_service,
    check_interval_seconds=environment_utils.get_env_variable("SCHEDULER_INTERVAL_SECONDS")
)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await scheduler_service.start()
    log_util.info(service_name="CampaignService", message="Application startup complete")

    yield

    # Shutdown
    await scheduler_service.stop()
    await campaign_service.wait_for_background_tasks()
    await message_service.wait_for_deliveries()
    campaign_db.close()
    log_util.info(service_name="CampaignService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="kabar campaign service",
    description="Campaign chatflow execution engine for guest messaging",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(create_chatflow_api(log_util=log_util, chatflow_service=chatflow_service))
app.include_router(create_campaign_api(
    log_util=log_util,
    campaign_service=campaign_service,
    execution_service=execution_service
))
app.include_router(create_execution_api(log_util=log_util, execution_service=execution_service))
app.include_router(create_reminder_api(log_util=log_util, reminder_service=reminder_service))

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "campaign_service"}

# Engine errors raised outside a router's own handling
@app.exception_handler(CampaignEngineException)
async def campaign_engine_exception_handler(request: Request, exc: CampaignEngineException):
    log_util.error(service_name="CampaignService", message=f"{exc.error_code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "error": exc.error_code,
            "status_code": exc.status_code
        }
    )

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="CampaignService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc),
            "status_code": exc.status_code
        }
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="CampaignService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        }
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
