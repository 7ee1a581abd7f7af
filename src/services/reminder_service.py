"""
Reminder Service
Follow-ups scheduled against a campaign: creation and editing while
scheduled, manual and scheduler-driven triggering, and target resolution.
"""
from typing import Optional, List, Dict

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now
from utils.guest_filter_utils import filter_guests
from utils import key_utils

# Database
from database.campaign_db import CampaignDB

# Services
from services.guest_service import GuestService

# Models
from models.execution_data import ChatflowExecution
from models.reminder_data import ReminderData, ReminderTargetFilter

# Exceptions
from exceptions.campaign_exception import (
    NotFoundException,
    InvalidStateTransitionException,
    InvalidInputException,
)

EDITABLE_FIELDS = ("name", "description", "trigger_at", "action", "target_filter", "status")


def _has_responded(execution: ChatflowExecution) -> bool:
    if "last_reply" in execution.variables:
        return True
    return any(entry.form_responses for entry in execution.node_history)


class ReminderService:
    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB, guest_service: GuestService):
        self.log_util = log_util
        self.campaign_db = campaign_db
        self.guest_service = guest_service

    async def create_reminder(self, campaign_id: str, reminder_data: dict, created_by: Optional[str] = None) -> ReminderData:
        campaign = await self.campaign_db.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundException(message=f"Campaign {campaign_id} not found")
        if campaign.status in ("completed", "archived"):
            raise InvalidStateTransitionException(
                message=f"Campaign {campaign_id} is {campaign.status}, reminders can no longer be added"
            )
        for field in ("name", "trigger_at", "action"):
            if not reminder_data.get(field):
                raise InvalidInputException(message=f"Reminder {field} is required")

        reminder = ReminderData(
            id=key_utils.new_key("reminder", campaign.project_id),
            campaign_id=campaign.id,
            name=reminder_data["name"],
            description=reminder_data.get("description"),
            type=reminder_data.get("type") or "one_time",
            trigger_at=reminder_data["trigger_at"],
            action=reminder_data["action"],
            target_filter=reminder_data.get("target_filter"),
            project_id=campaign.project_id,
            created_by=created_by,
        )
        await self.campaign_db.create_reminder(reminder)
        self.log_util.info(
            service_name="ReminderService",
            message=f"Reminder {reminder.id} scheduled for campaign {campaign_id} at {reminder.trigger_at.isoformat()}"
        )
        return reminder

    async def get_reminder(self, reminder_id: str) -> ReminderData:
        reminder = await self.campaign_db.get_reminder(reminder_id)
        if reminder is None:
            raise NotFoundException(message=f"Reminder {reminder_id} not found")
        return reminder

    async def list_reminders(self, campaign_id: str) -> List[ReminderData]:
        return await self.campaign_db.list_reminders_by_campaign(campaign_id)

    async def update_reminder(self, reminder_id: str, reminder_data: dict) -> ReminderData:
        """
        Only scheduled reminders can be edited. Status may only be set to
        cancelled; triggering goes through trigger_reminder.
        """
        updates = {key: value for key, value in reminder_data.items() if key in EDITABLE_FIELDS}
        if "status" in updates and updates["status"] != "cancelled":
            raise InvalidInputException(message="A reminder's status can only be changed to cancelled")
        if updates.get("target_filter") is not None:
            updates["target_filter"] = ReminderTargetFilter.model_validate(updates["target_filter"])
        return await self.campaign_db.transition_reminder(reminder_id, ("scheduled",), updates)

    async def delete_reminder(self, reminder_id: str) -> None:
        reminder = await self.get_reminder(reminder_id)
        await self.campaign_db.delete_reminder(reminder)
        self.log_util.info(service_name="ReminderService", message=f"Reminder {reminder_id} deleted")

    async def resolve_targets(self, reminder: ReminderData) -> List[str]:
        """
        Guests of the campaign the reminder applies to, narrowed by its target_filter.
        """
        executions: Dict[str, ChatflowExecution] = {}
        for execution in await self.campaign_db.list_executions_by_campaign(reminder.campaign_id):
            if execution.status == "cancelled":
                continue
            executions.setdefault(execution.guest_id, execution)

        guests = []
        for guest_id in executions:
            guest = await self.guest_service.find_guest(reminder.project_id, guest_id)
            if guest is not None:
                guests.append(guest)

        target_filter = reminder.target_filter or ReminderTargetFilter()
        if target_filter.only_pending_rsvp:
            guests = [guest for guest in guests if guest.rsvp_status == "pending"]
        if target_filter.only_non_responders:
            guests = [guest for guest in guests if not _has_responded(executions[guest.id])]
        if target_filter.custom_filter is not None:
            guests = filter_guests(guests, target_filter.custom_filter)
        return [guest.id for guest in guests]

    async def trigger_reminder(self, reminder_id: str) -> ReminderData:
        reminder = await self.get_reminder(reminder_id)
        if reminder.status != "scheduled":
            raise InvalidStateTransitionException(
                message=f"Only scheduled reminders can be triggered, {reminder_id} is {reminder.status}"
            )
        target_guest_ids = await self.resolve_targets(reminder)
        reminder = await self.campaign_db.transition_reminder(reminder_id, ("scheduled",), {
            "status": "triggered",
            "triggered_at": utc_now(),
            "target_guest_ids": target_guest_ids,
        })
        self.log_util.info(
            service_name="ReminderService",
            message=f"Reminder {reminder_id} triggered: {reminder.action} for {len(target_guest_ids)} guest(s)"
        )
        return reminder

    async def trigger_due_reminders(self) -> int:
        triggered = 0
        for reminder in await self.campaign_db.get_due_reminders():
            try:
                await self.trigger_reminder(reminder.id)
                triggered += 1
            except InvalidStateTransitionException:
                # Triggered or cancelled by hand since the scan
                continue
            except Exception as e:
                self.log_util.error(
                    service_name="ReminderService",
                    message=f"Error triggering reminder {reminder.id}: {str(e)}"
                )
                await self.campaign_db.transition_reminder(reminder.id, ("scheduled",), {
                    "status": "failed",
                    "error_message": str(e),
                })
        return triggered

    async def cancel_reminders_for_campaign(self, campaign_id: str) -> int:
        cancelled = 0
        for reminder in await self.campaign_db.list_reminders_by_campaign(campaign_id):
            if reminder.status != "scheduled":
                continue
            try:
                await self.campaign_db.transition_reminder(reminder.id, ("scheduled",), {"status": "cancelled"})
                cancelled += 1
            except InvalidStateTransitionException:
                continue
        return cancelled
