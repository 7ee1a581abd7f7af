"""
Campaign Service
Campaign lifecycle and the fan-out of one chatflow to every guest in the
campaign's audience.
"""
import asyncio
from typing import Optional, Dict, List, Set

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now
from utils import key_utils

# Database
from database.campaign_db import CampaignDB

# Services
from services.guest_service import GuestService
from services.guest_session_service import GuestSessionService
from services.execution_service import ExecutionService
from services.message_service import MessageService
from services.reminder_service import ReminderService

# Models
from models.campaign_data import CampaignData, CampaignStats, CampaignGuestFilter
from models.chatflow_data import ChatflowData
from models.execution_data import TERMINAL_EXECUTION_STATUSES
from models.guest_data import GuestData

# Exceptions
from exceptions.campaign_exception import (
    NotFoundException,
    InvalidStateTransitionException,
    EmptyAudienceException,
    InvalidInputException,
)

EDITABLE_FIELDS = ("name", "description", "chatflow_id", "guest_filter", "trigger_type", "scheduled_at", "status")
CANCELLED_CHILD_STATUSES = ("running", "pending", "paused", "pending_session", "queued")
PAUSED_CHILD_STATUSES = ("pending", "running")


class CampaignService:
    def __init__(
        self,
        log_util: LogUtil,
        campaign_db: CampaignDB,
        guest_service: GuestService,
        guest_session_service: GuestSessionService,
        execution_service: ExecutionService,
        message_service: MessageService,
        reminder_service: Optional[ReminderService] = None
    ):
        self.log_util = log_util
        self.campaign_db = campaign_db
        self.guest_service = guest_service
        self.guest_session_service = guest_session_service
        self.execution_service = execution_service
        self.message_service = message_service
        self.reminder_service = reminder_service
        self._locks: Dict[str, asyncio.Lock] = {}
        self._background_tasks: Set[asyncio.Task] = set()

    def _lock_for(self, campaign_id: str) -> asyncio.Lock:
        lock = self._locks.get(campaign_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[campaign_id] = lock
        return lock

    def _run_in_background(self, coroutine, description: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coroutine, description))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _guard(self, coroutine, description: str) -> None:
        try:
            await coroutine
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log_util.error(service_name="CampaignService", message=f"Background {description} failed: {str(e)}")

    async def wait_for_background_tasks(self) -> None:
        """
        Wait until every fan-out start and resume task, including ones spawned meanwhile, has finished.
        """
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # CRUD
    async def create_campaign(self, project_id: str, campaign_data: dict, created_by: Optional[str] = None) -> CampaignData:
        if not campaign_data.get("name"):
            raise InvalidInputException(message="Campaign name is required")
        chatflow_id = campaign_data.get("chatflow_id")
        if not chatflow_id:
            raise InvalidInputException(message="Campaign chatflow_id is required")
        status = campaign_data.get("status") or "draft"
        if status not in ("draft", "ready"):
            raise InvalidInputException(message=f"Campaigns are created as draft or ready, not {status}")
        chatflow = await self.campaign_db.get_chatflow(chatflow_id)
        if chatflow is None:
            raise NotFoundException(message=f"Chatflow {chatflow_id} not found")

        campaign = CampaignData(
            id=key_utils.new_key("campaign", project_id),
            name=campaign_data["name"],
            description=campaign_data.get("description"),
            chatflow_id=chatflow.id,
            chatflow_name=chatflow.name,
            guest_filter=CampaignGuestFilter.model_validate(campaign_data.get("guest_filter") or {}),
            trigger_type=campaign_data.get("trigger_type", "manual"),
            scheduled_at=campaign_data.get("scheduled_at"),
            status=status,
            project_id=project_id,
            created_by=created_by,
        )
        await self.campaign_db.create_campaign(campaign)
        self.log_util.info(service_name="CampaignService", message=f"Campaign {campaign.id} created")
        return campaign

    async def _get_campaign(self, campaign_id: str) -> CampaignData:
        campaign = await self.campaign_db.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundException(message=f"Campaign {campaign_id} not found")
        return campaign

    async def get_campaign(self, campaign_id: str) -> CampaignData:
        campaign = await self._get_campaign(campaign_id)
        campaign.stats = await self.compute_stats(campaign_id)
        return campaign

    async def list_campaigns(self, project_id: str) -> List[CampaignData]:
        return await self.campaign_db.list_campaigns(project_id)

    async def update_campaign(self, campaign_id: str, campaign_data: dict) -> CampaignData:
        campaign = await self._get_campaign(campaign_id)
        updates = {key: value for key, value in campaign_data.items() if key in EDITABLE_FIELDS}

        if "status" in updates and updates["status"] not in ("draft", "ready"):
            raise InvalidInputException(message="Use the lifecycle actions to change a campaign's status")
        if campaign.status not in ("draft", "ready"):
            if "guest_filter" in updates or "chatflow_id" in updates:
                raise InvalidStateTransitionException(
                    message=f"Audience and chatflow of campaign {campaign_id} are fixed once it has started"
                )
            if "status" in updates:
                raise InvalidStateTransitionException(
                    message=f"Campaign {campaign_id} is {campaign.status} and cannot go back to {updates['status']}"
                )

        if "guest_filter" in updates:
            updates["guest_filter"] = CampaignGuestFilter.model_validate(updates["guest_filter"] or {})
        if "chatflow_id" in updates:
            chatflow = await self.campaign_db.get_chatflow(updates["chatflow_id"])
            if chatflow is None:
                raise NotFoundException(message=f"Chatflow {updates['chatflow_id']} not found")
            updates["chatflow_name"] = chatflow.name

        return await self.campaign_db.update_campaign(campaign_id, updates)

    async def delete_campaign(self, campaign_id: str) -> None:
        campaign = await self._get_campaign(campaign_id)
        if campaign.status in ("running", "paused"):
            raise InvalidStateTransitionException(
                message=f"Campaign {campaign_id} is {campaign.status}; cancel it before deleting"
            )
        if self.reminder_service is not None:
            for reminder in await self.reminder_service.list_reminders(campaign_id):
                await self.reminder_service.delete_reminder(reminder.id)
        await self.campaign_db.delete_campaign(campaign)
        self._locks.pop(campaign_id, None)
        self.log_util.info(service_name="CampaignService", message=f"Campaign {campaign_id} deleted")

    async def preview_guests(self, project_id: str, guest_filter: CampaignGuestFilter) -> List[GuestData]:
        return await self.guest_service.select_audience(project_id, guest_filter)

    # Lifecycle
    async def start_campaign(self, campaign_id: str, chatflow: Optional[ChatflowData] = None) -> CampaignData:
        """
        Fan the chatflow out to the campaign's audience.

        Guests already in another campaign's session get a pending invitation
        and a pending_session execution; everyone else gets an execution that
        starts on a background task. One guest's failure never stops the rest.
        """
        async with self._lock_for(campaign_id):
            campaign = await self._get_campaign(campaign_id)
            if campaign.status not in ("draft", "ready"):
                raise InvalidStateTransitionException(
                    message=f"Campaign {campaign_id} can only be started from draft or ready, not {campaign.status}"
                )
            if chatflow is None:
                chatflow = await self.campaign_db.get_chatflow(campaign.chatflow_id)
                if chatflow is None:
                    raise NotFoundException(message=f"Chatflow {campaign.chatflow_id} not found")

            guests = await self.guest_service.select_audience(campaign.project_id, campaign.guest_filter)
            if not guests:
                raise EmptyAudienceException()

            campaign = await self.campaign_db.transition_campaign(campaign_id, ("draft", "ready"), {
                "status": "running",
                "started_at": utc_now(),
            })
            self.log_util.info(
                service_name="CampaignService",
                message=f"Campaign {campaign_id} started for {len(guests)} guest(s)"
            )

            trigger = chatflow.get_trigger_node()
            for guest in guests:
                try:
                    await self._fan_out_guest(campaign, chatflow, guest, trigger.id if trigger else None)
                except Exception as e:
                    self.log_util.error(
                        service_name="CampaignService",
                        message=f"Could not create execution for guest {guest.id} in campaign {campaign_id}: {str(e)}"
                    )
            return campaign

    async def _fan_out_guest(self, campaign: CampaignData, chatflow: ChatflowData, guest: GuestData, trigger_id: Optional[str]) -> None:
        execution_id = key_utils.new_key("execution", campaign.project_id)
        claimed, session = await self.guest_session_service.claim_session(
            guest.id, campaign.id, execution_id, trigger_id, guest.phone
        )
        if not claimed:
            # TODO: start pending_session executions once the blocking session ends (resolve pending invitations)
            await self.execution_service.create(
                campaign.id, guest.id, chatflow.id, status="pending_session", execution_id=execution_id
            )
            await self.guest_session_service.create_pending_invitation(
                guest_id=guest.id,
                campaign_id=campaign.id,
                blocked_by_campaign_id=session.campaign_id,
                campaign_name=campaign.name,
                execution_id=execution_id,
                piggyback_message=f"You also have an invitation from {campaign.name}",
            )
            return

        try:
            await self.execution_service.create(campaign.id, guest.id, chatflow.id, execution_id=execution_id)
        except Exception:
            await self.guest_session_service.release_session_for_execution(guest.id, execution_id)
            raise
        self._run_in_background(
            self.execution_service.start(execution_id, chatflow),
            f"start of execution {execution_id}"
        )

    async def pause_campaign(self, campaign_id: str) -> CampaignData:
        # Waits for an in-flight start so every created execution is seen
        async with self._lock_for(campaign_id):
            campaign = await self.campaign_db.transition_campaign(campaign_id, ("running",), {
                "status": "paused",
                "paused_at": utc_now(),
            })
            paused = 0
            for execution in await self.campaign_db.list_executions_by_campaign(campaign_id):
                if execution.status not in PAUSED_CHILD_STATUSES:
                    continue
                try:
                    # Pending children are parked before their background start runs
                    await self.campaign_db.transition_execution(execution.id, PAUSED_CHILD_STATUSES, {
                        "status": "paused",
                        "paused_at": utc_now(),
                    })
                    paused += 1
                except InvalidStateTransitionException:
                    # Finished between the listing and the pause
                    continue
            self.log_util.info(
                service_name="CampaignService",
                message=f"Campaign {campaign_id} paused with {paused} execution(s)"
            )
            return campaign

    async def resume_campaign(self, campaign_id: str) -> CampaignData:
        async with self._lock_for(campaign_id):
            campaign = await self.campaign_db.transition_campaign(campaign_id, ("paused",), {
                "status": "running",
                "paused_at": None,
            })
            resumed = 0
            for execution in await self.campaign_db.list_executions_by_campaign(campaign_id):
                if execution.status != "paused":
                    continue
                try:
                    execution = await self.execution_service.unpause_execution(execution.id)
                except InvalidStateTransitionException:
                    continue
                self._run_in_background(
                    self.execution_service.continue_execution(execution),
                    f"resume of execution {execution.id}"
                )
                resumed += 1
            self.log_util.info(
                service_name="CampaignService",
                message=f"Campaign {campaign_id} resumed with {resumed} execution(s)"
            )
            return campaign

    async def cancel_campaign(self, campaign_id: str) -> CampaignData:
        async with self._lock_for(campaign_id):
            campaign = await self.campaign_db.transition_campaign(
                campaign_id, ("draft", "ready", "running", "paused"), {
                    "status": "archived",
                    "archived_at": utc_now(),
                }
            )
            cancelled = 0
            for execution in await self.campaign_db.list_executions_by_campaign(campaign_id):
                if execution.status not in CANCELLED_CHILD_STATUSES:
                    continue
                try:
                    await self.execution_service.cancel_execution(execution.id)
                    cancelled += 1
                except InvalidStateTransitionException:
                    continue
            invitations = await self.guest_session_service.cancel_pending_invitations_for_campaign(campaign_id)
            if self.reminder_service is not None:
                await self.reminder_service.cancel_reminders_for_campaign(campaign_id)
            self.log_util.info(
                service_name="CampaignService",
                message=f"Campaign {campaign_id} archived, {cancelled} execution(s) and {invitations} invitation(s) cancelled"
            )
            return campaign

    async def compute_stats(self, campaign_id: str) -> CampaignStats:
        """
        Always derived from the current executions and message log.
        """
        executions = await self.campaign_db.list_executions_by_campaign(campaign_id)
        messages = await self.message_service.get_messages_by_campaign(campaign_id)

        stats = CampaignStats(total_guests=len(executions))
        for execution in executions:
            field = f"executions_{execution.status}"
            setattr(stats, field, getattr(stats, field) + 1)
            rsvp_status = execution.variables.get("rsvp_status")
            if rsvp_status == "confirmed":
                stats.rsvp_confirmed += 1
            elif rsvp_status == "declined":
                stats.rsvp_declined += 1
            elif rsvp_status == "maybe":
                stats.rsvp_maybe += 1

        for message in messages:
            if message.status == "failed":
                stats.messages_failed += 1
            elif message.status in ("sent", "delivered", "read"):
                stats.messages_sent += 1
        return stats

    async def complete_finished_campaigns(self) -> List[str]:
        """
        Mark running campaigns completed once every execution is terminal.
        """
        completed = []
        for campaign in await self.campaign_db.list_campaigns_by_status("running"):
            executions = await self.campaign_db.list_executions_by_campaign(campaign.id)
            if not executions:
                continue
            if any(execution.status not in TERMINAL_EXECUTION_STATUSES for execution in executions):
                continue
            try:
                await self.campaign_db.transition_campaign(campaign.id, ("running",), {
                    "status": "completed",
                    "completed_at": utc_now(),
                })
            except InvalidStateTransitionException:
                continue
            self.log_util.info(service_name="CampaignService", message=f"Campaign {campaign.id} completed")
            completed.append(campaign.id)
        return completed
