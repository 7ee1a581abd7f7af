"""
Message Service
Message log bookkeeping and the delivery-status simulator that stands in for
a real WhatsApp transport.
"""
import asyncio
from typing import Optional, Dict, List, Set

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now
from utils import key_utils

# Database
from database.campaign_db import CampaignDB

# Exceptions
from exceptions.campaign_exception import NotFoundException

# Models
from models.message_data import MessageLog

STATUS_TIMESTAMP_FIELDS = {
    "sent": "sent_at",
    "delivered": "delivered_at",
    "read": "read_at",
    "failed": "failed_at",
}


class MessageService:
    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB, delivery_delay_seconds: float = 1.0):
        self.log_util = log_util
        self.campaign_db = campaign_db
        self.delivery_delay_seconds = delivery_delay_seconds
        self._delivery_tasks: Set[asyncio.Task] = set()

    async def create_message_log(
        self,
        campaign_id: str,
        execution_id: str,
        guest_id: str,
        node_id: str,
        content: str,
        message_type: str = "template",
        template_id: Optional[str] = None,
        template_name: Optional[str] = None,
        variables: Optional[Dict[str, str]] = None
    ) -> MessageLog:
        project_id = key_utils.project_id_from_key(campaign_id)
        message = MessageLog(
            id=key_utils.new_key("message", project_id),
            campaign_id=campaign_id,
            execution_id=execution_id,
            guest_id=guest_id,
            node_id=node_id,
            type=message_type,
            template_id=template_id,
            template_name=template_name,
            content=content,
            variables=variables,
            status="queued",
            project_id=project_id,
        )
        return await self.campaign_db.create_message(message)

    async def get_message(self, message_id: str) -> MessageLog:
        message = await self.campaign_db.get_message(message_id)
        if message is None:
            raise NotFoundException(message=f"Message {message_id} not found")
        return message

    async def update_message_status(self, message_id: str, status: str, error_message: Optional[str] = None) -> MessageLog:
        updates = {"status": status, STATUS_TIMESTAMP_FIELDS[status]: utc_now()}
        if status == "failed":
            updates["error_message"] = error_message
        return await self.campaign_db.update_message(message_id, updates)

    async def get_messages_by_campaign(self, campaign_id: str) -> List[MessageLog]:
        return await self.campaign_db.list_messages_by_campaign(campaign_id)

    async def get_messages_by_execution(self, execution_id: str) -> List[MessageLog]:
        return await self.campaign_db.list_messages_by_execution(execution_id)

    async def simulate_send(self, message_id: str) -> None:
        """
        Mark the message sent now and delivered after a short delay.
        The delivery update runs on a background task so the caller is never held.
        """
        await self.update_message_status(message_id, "sent")
        task = asyncio.create_task(self._mark_delivered_later(message_id))
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

    async def _mark_delivered_later(self, message_id: str) -> None:
        try:
            await asyncio.sleep(self.delivery_delay_seconds)
            await self.update_message_status(message_id, "delivered")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="MessageService",
                message=f"Failed to update message {message_id} status to delivered: {str(e)}"
            )

    async def wait_for_deliveries(self) -> None:
        if self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)
