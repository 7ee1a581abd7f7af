"""
Fixtures wiring the whole engine over the in-memory store.
"""
from typing import Optional

import pytest
import pytest_asyncio

from utils.log_utils import LogUtil
from database.kv_store import InMemoryKVStore
from database.campaign_db import CampaignDB
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
from models.chatflow_data import ChatflowData
from models.guest_data import GuestData
from models.template_data import TemplateData

PROJECT_ID = "project-1"


def node(node_id: str, node_type: str, **config) -> dict:
    return {"id": node_id, "type": node_type, "data": {"label": node_id, "config": config}}


def edge(source: str, target: str, handle: Optional[str] = None) -> dict:
    return {"id": f"{source}-{target}", "source": source, "target": target, "sourceHandle": handle}


class Engine:
    def __init__(self):
        self.log_util = LogUtil(logger_name="kabar_campaign_service_test")
        self.store = InMemoryKVStore(log_util=self.log_util)
        self.campaign_db = CampaignDB(log_util=self.log_util, store=self.store)
        self.template_service = TemplateService(self.log_util, self.campaign_db)
        self.message_service = MessageService(self.log_util, self.campaign_db, delivery_delay_seconds=0)
        self.guest_service = GuestService(self.log_util, self.campaign_db)
        self.guest_session_service = GuestSessionService(self.log_util, self.campaign_db, session_window_hours=24)
        self.chatflow_service = ChatflowService(self.log_util, self.campaign_db)
        self.reminder_service = ReminderService(self.log_util, self.campaign_db, self.guest_service)
        self.node_executor_service = NodeExecutorService(
            self.log_util,
            self.campaign_db,
            self.template_service,
            self.message_service,
            self.guest_service,
            self.guest_session_service,
        )
        self.execution_service = ExecutionService(
            self.log_util,
            self.campaign_db,
            self.guest_service,
            self.guest_session_service,
            self.message_service,
            self.node_executor_service,
        )
        self.campaign_service = CampaignService(
            self.log_util,
            self.campaign_db,
            self.guest_service,
            self.guest_session_service,
            self.execution_service,
            self.message_service,
            self.reminder_service,
        )
        self.scheduler_service = SchedulerService(
            self.log_util,
            self.campaign_db,
            self.execution_service,
            self.campaign_service,
            self.reminder_service,
            check_interval_seconds=0.05,
        )

    async def save_chatflow(self, nodes, edges, name: str = "RSVP flow") -> ChatflowData:
        chatflow = ChatflowData.model_validate({
            "name": name,
            "nodes": nodes,
            "edges": edges,
            "project_id": PROJECT_ID,
        })
        return await self.campaign_db.create_chatflow(chatflow)

    async def create_campaign(self, chatflow: ChatflowData, guest_filter: Optional[dict] = None, name: str = "Wedding"):
        return await self.campaign_service.create_campaign(
            PROJECT_ID,
            {"name": name, "chatflow_id": chatflow.id, "guest_filter": guest_filter or {}},
        )

    async def settle(self):
        await self.campaign_service.wait_for_background_tasks()
        await self.message_service.wait_for_deliveries()


@pytest_asyncio.fixture
async def engine():
    engine = Engine()
    guests = [
        GuestData(id="g1", name="Alice", phone="+6281100001", category="family", tags=["vip"], project_id=PROJECT_ID),
        GuestData(id="g2", name="Bob", phone="+6281100002", category="friend", invitation_type="reception_only",
                  project_id=PROJECT_ID),
        GuestData(id="g3", name="Citra", phone="+6281100003", category="family", plus_one=True,
                  tags=["bridesmaid"], project_id=PROJECT_ID),
    ]
    for guest in guests:
        await engine.campaign_db.save_guest(guest)
    await engine.campaign_db.save_template(TemplateData(
        id="tpl-invite",
        name="invitation",
        content="Hi {{name}}, you are invited to {{event}}",
        variables=["name", "event"],
        project_id=PROJECT_ID,
    ))
    yield engine
    await engine.settle()
    await engine.scheduler_service.stop()


@pytest.fixture
def invite_flow_nodes():
    """
    trigger -> send_template -> wait_reply(timeout 60s, end) -> end
    """
    nodes = [
        node("trigger", "trigger"),
        node("send", "send_template", templateId="tpl-invite",
             variables={"name": "{{guest_name}}", "event": "the wedding"}),
        node("wait", "wait_reply", timeout=60, timeoutAction="end", saveAs="answer"),
        node("end", "end"),
    ]
    edges = [edge("trigger", "send"), edge("send", "wait"), edge("wait", "end")]
    return nodes, edges
