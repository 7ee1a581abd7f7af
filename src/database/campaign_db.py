from typing import Optional, List, Dict, Any, Tuple, Callable
from pydantic import TypeAdapter

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now
from utils import key_utils

# Exceptions
from exceptions.campaign_exception import (
    NotFoundException,
    NodeExecutionNotFoundException,
    InvalidStateTransitionException,
    StoreException,
)

# Models
from models.campaign_data import CampaignData
from models.chatflow_data import ChatflowData
from models.execution_data import ChatflowExecution, NodeExecution
from models.guest_data import GuestData
from models.message_data import MessageLog
from models.reminder_data import ReminderData
from models.scheduled_job_data import ScheduledJobData
from models.session_data import GuestSession, PendingInvitation
from models.template_data import TemplateData

MAX_CAS_ATTEMPTS = 20

_json_adapter = TypeAdapter(Any)


def to_json(value: Any) -> Any:
    return _json_adapter.dump_python(value, mode="json")


"""
Database class for campaign engine records.

Every update goes through an optimistic read-merge-compare_and_set loop so that
two writers touching different fields of the same record never lose each
other's changes. List indexes are plain keys holding ordered id arrays.
"""
class CampaignDB:
    def __init__(self, log_util: LogUtil, store):
        self.log_util = log_util
        self.store = store

    def close(self):
        self.store.close()

    # Generic helpers
    async def _mutate(self, key: str, mutator: Callable[[Optional[Any]], Optional[Any]]) -> Optional[Any]:
        """
        Apply mutator to the current value of key and write the result atomically.
        Returning None from the mutator aborts the write.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            current, version = await self.store.get_versioned(key)
            updated = mutator(current)
            if updated is None:
                return None
            if await self.store.compare_and_set(key, updated, version):
                return updated
        self.log_util.error(service_name="CampaignDB", message=f"Too much contention updating {key}")
        raise StoreException(message=f"Could not update {key}: too many concurrent writers", status_code=503)

    async def _update_record(self, key: str, updates: Dict[str, Any], entity: str) -> Dict[str, Any]:
        patch = to_json(updates)

        def merge(current):
            if current is None:
                raise NotFoundException(message=f"{entity} {key} not found")
            current.update(patch)
            current["updated_at"] = to_json(utc_now())
            return current

        return await self._mutate(key, merge)

    async def _transition(self, key: str, allowed_statuses, updates: Dict[str, Any], entity: str) -> Dict[str, Any]:
        patch = to_json(updates)

        def merge(current):
            if current is None:
                raise NotFoundException(message=f"{entity} {key} not found")
            status = current.get("status")
            if status not in allowed_statuses:
                target = patch.get("status", "updated")
                raise InvalidStateTransitionException(
                    message=f"{entity} {key} cannot move from {status} to {target}"
                )
            current.update(patch)
            current["updated_at"] = to_json(utc_now())
            return current

        return await self._mutate(key, merge)

    async def _append_to_index(self, list_key: str, item: str) -> None:
        def append(current):
            ids = list(current or [])
            if item in ids:
                return None
            ids.append(item)
            return ids

        await self._mutate(list_key, append)

    async def _remove_from_index(self, list_key: str, item: str) -> None:
        def remove(current):
            ids = list(current or [])
            if item not in ids:
                return None
            return [existing for existing in ids if existing != item]

        await self._mutate(list_key, remove)

    async def _get_index(self, list_key: str) -> List[str]:
        return await self.store.get(list_key) or []

    # Guest operations
    async def save_guest(self, guest: GuestData) -> GuestData:
        await self.store.set(key_utils.guest_key(guest.project_id, guest.id), guest.model_dump(mode="json"))
        await self._append_to_index(key_utils.guests_list_key(guest.project_id), guest.id)
        return guest

    async def get_guest(self, project_id: str, guest_id: str) -> Optional[GuestData]:
        record = await self.store.get(key_utils.guest_key(project_id, guest_id))
        if record is None:
            return None
        return GuestData.model_validate(record)

    async def list_guests(self, project_id: str) -> List[GuestData]:
        guests = []
        for guest_id in await self._get_index(key_utils.guests_list_key(project_id)):
            guest = await self.get_guest(project_id, guest_id)
            if guest:
                guests.append(guest)
        return guests

    async def update_guest(self, project_id: str, guest_id: str, updates: Dict[str, Any]) -> GuestData:
        record = await self._update_record(key_utils.guest_key(project_id, guest_id), updates, "Guest")
        return GuestData.model_validate(record)

    async def merge_guest_fields(self, project_id: str, guest_id: str, updates: Dict[str, Any],
                                 add_tags: Optional[List[str]] = None) -> Optional[GuestData]:
        """
        Apply updates and union add_tags into the guest's tags in one
        compare_and_set. Returns None when the guest does not exist.
        """
        patch = to_json(updates)

        def merge(current):
            if current is None:
                return None
            current.update(patch)
            if add_tags:
                tags = list(current.get("tags") or [])
                tags.extend(tag for tag in add_tags if tag not in tags)
                current["tags"] = tags
            current["updated_at"] = to_json(utc_now())
            return current

        record = await self._mutate(key_utils.guest_key(project_id, guest_id), merge)
        return GuestData.model_validate(record) if record else None

    # Template operations
    async def save_template(self, template: TemplateData) -> TemplateData:
        await self.store.set(key_utils.template_key(template.project_id, template.id), template.model_dump(mode="json"))
        return template

    async def get_template(self, project_id: str, template_id: str) -> Optional[TemplateData]:
        record = await self.store.get(key_utils.template_key(project_id, template_id))
        if record is None:
            return None
        return TemplateData.model_validate(record)

    # Chatflow operations
    async def create_chatflow(self, chatflow: ChatflowData) -> ChatflowData:
        if not chatflow.id:
            chatflow.id = key_utils.new_key("chatflow", chatflow.project_id)
        await self.store.set(chatflow.id, chatflow.model_dump(mode="json"))
        await self._append_to_index(key_utils.chatflows_list_key(chatflow.project_id), chatflow.id)
        return chatflow

    async def get_chatflow(self, chatflow_id: str) -> Optional[ChatflowData]:
        record = await self.store.get(chatflow_id)
        if record is None:
            return None
        return ChatflowData.model_validate(record)

    async def update_chatflow(self, chatflow_id: str, updates: Dict[str, Any]) -> ChatflowData:
        record = await self._update_record(chatflow_id, updates, "Chatflow")
        return ChatflowData.model_validate(record)

    async def list_chatflows(self, project_id: str) -> List[ChatflowData]:
        chatflows = []
        for chatflow_id in await self._get_index(key_utils.chatflows_list_key(project_id)):
            chatflow = await self.get_chatflow(chatflow_id)
            if chatflow:
                chatflows.append(chatflow)
        return chatflows

    # Campaign operations
    async def create_campaign(self, campaign: CampaignData) -> CampaignData:
        record = campaign.model_dump(mode="json", exclude={"stats"})
        await self.store.set(campaign.id, record)
        await self._append_to_index(key_utils.campaigns_list_key(campaign.project_id), campaign.id)
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[CampaignData]:
        record = await self.store.get(campaign_id)
        if record is None:
            return None
        return CampaignData.model_validate(record)

    async def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> CampaignData:
        updates = {key: value for key, value in updates.items() if key != "stats"}
        record = await self._update_record(campaign_id, updates, "Campaign")
        return CampaignData.model_validate(record)

    async def transition_campaign(self, campaign_id: str, allowed_statuses, updates: Dict[str, Any]) -> CampaignData:
        updates = {key: value for key, value in updates.items() if key != "stats"}
        record = await self._transition(campaign_id, allowed_statuses, updates, "Campaign")
        return CampaignData.model_validate(record)

    async def delete_campaign(self, campaign: CampaignData) -> None:
        await self.store.delete(campaign.id)
        await self._remove_from_index(key_utils.campaigns_list_key(campaign.project_id), campaign.id)

    async def list_campaigns(self, project_id: str) -> List[CampaignData]:
        campaigns = []
        for campaign_id in await self._get_index(key_utils.campaigns_list_key(project_id)):
            campaign = await self.get_campaign(campaign_id)
            if campaign:
                campaigns.append(campaign)
        campaigns.sort(key=lambda c: c.created_at, reverse=True)
        return campaigns

    async def list_campaigns_by_status(self, status: str) -> List[CampaignData]:
        records = await self.store.scan_by_prefix("campaign:")
        return [
            CampaignData.model_validate(record)
            for record in records
            if isinstance(record, dict) and record.get("status") == status
        ]

    # Execution operations
    async def create_execution(self, execution: ChatflowExecution) -> ChatflowExecution:
        await self.store.set(execution.id, execution.model_dump(mode="json"))
        await self._append_to_index(key_utils.executions_list_key(execution.campaign_id), execution.id)
        return execution

    async def get_execution(self, execution_id: str) -> Optional[ChatflowExecution]:
        record = await self.store.get(execution_id)
        if record is None:
            return None
        return ChatflowExecution.model_validate(record)

    async def update_execution(self, execution_id: str, updates: Dict[str, Any]) -> ChatflowExecution:
        record = await self._update_record(execution_id, updates, "Execution")
        return ChatflowExecution.model_validate(record)

    async def transition_execution(self, execution_id: str, allowed_statuses, updates: Dict[str, Any]) -> ChatflowExecution:
        """
        Apply updates only if the execution's current status is one of allowed_statuses.
        The status check and the write happen in the same compare_and_set.
        """
        record = await self._transition(execution_id, allowed_statuses, updates, "Execution")
        return ChatflowExecution.model_validate(record)

    async def resolve_waiting_node(self, execution_id: str, node_id: str, updates: Dict[str, Any]) -> Optional[ChatflowExecution]:
        """
        Close the waiting history entry for node_id. Returns None when the
        execution is not running at that node or the entry is no longer
        waiting, so a reply and a timeout racing for the same node resume it once.
        """
        patch = to_json(updates)

        def merge(current):
            if current is None:
                return None
            if current.get("status") != "running" or current.get("current_node_id") != node_id:
                return None
            for entry in reversed(current.get("node_history", [])):
                if entry.get("node_id") == node_id:
                    if entry.get("status") != "waiting":
                        return None
                    entry.update(patch)
                    current["updated_at"] = to_json(utc_now())
                    return current
            return None

        record = await self._mutate(execution_id, merge)
        if record is None:
            return None
        return ChatflowExecution.model_validate(record)

    async def merge_execution_variables(self, execution_id: str, values: Dict[str, Any]) -> ChatflowExecution:
        patch = to_json(values)

        def merge(current):
            if current is None:
                raise NotFoundException(message=f"Execution {execution_id} not found")
            current["variables"] = {**current.get("variables", {}), **patch}
            current["updated_at"] = to_json(utc_now())
            return current

        record = await self._mutate(execution_id, merge)
        return ChatflowExecution.model_validate(record)

    async def add_node_execution(self, execution_id: str, node_execution: NodeExecution) -> ChatflowExecution:
        entry = node_execution.model_dump(mode="json")

        def append(current):
            if current is None:
                raise NotFoundException(message=f"Execution {execution_id} not found")
            current.setdefault("node_history", []).append(entry)
            current["updated_at"] = to_json(utc_now())
            return current

        record = await self._mutate(execution_id, append)
        return ChatflowExecution.model_validate(record)

    async def update_node_execution(self, execution_id: str, node_id: str, updates: Dict[str, Any]) -> ChatflowExecution:
        """
        Update the most recent history entry for node_id in place.
        """
        patch = to_json(updates)

        def merge(current):
            if current is None:
                raise NotFoundException(message=f"Execution {execution_id} not found")
            history = current.get("node_history", [])
            for entry in reversed(history):
                if entry.get("node_id") == node_id:
                    entry.update(patch)
                    current["updated_at"] = to_json(utc_now())
                    return current
            raise NodeExecutionNotFoundException(
                message=f"Node execution {node_id} not found in execution {execution_id}"
            )

        record = await self._mutate(execution_id, merge)
        return ChatflowExecution.model_validate(record)

    async def list_executions_by_campaign(self, campaign_id: str) -> List[ChatflowExecution]:
        executions = []
        for execution_id in await self._get_index(key_utils.executions_list_key(campaign_id)):
            execution = await self.get_execution(execution_id)
            if execution:
                executions.append(execution)
        # Newest first
        executions.sort(key=lambda e: e.created_at, reverse=True)
        return executions

    # Message operations
    async def create_message(self, message: MessageLog) -> MessageLog:
        await self.store.set(message.id, message.model_dump(mode="json"))
        await self._append_to_index(key_utils.campaign_messages_list_key(message.campaign_id), message.id)
        await self._append_to_index(key_utils.execution_messages_list_key(message.execution_id), message.id)
        return message

    async def get_message(self, message_id: str) -> Optional[MessageLog]:
        record = await self.store.get(message_id)
        if record is None:
            return None
        return MessageLog.model_validate(record)

    async def update_message(self, message_id: str, updates: Dict[str, Any]) -> MessageLog:
        record = await self._update_record(message_id, updates, "Message")
        record.pop("updated_at", None)
        return MessageLog.model_validate(record)

    async def _list_messages(self, list_key: str) -> List[MessageLog]:
        messages = []
        for message_id in await self._get_index(list_key):
            message = await self.get_message(message_id)
            if message:
                messages.append(message)
        return messages

    async def list_messages_by_campaign(self, campaign_id: str) -> List[MessageLog]:
        return await self._list_messages(key_utils.campaign_messages_list_key(campaign_id))

    async def list_messages_by_execution(self, execution_id: str) -> List[MessageLog]:
        messages = await self._list_messages(key_utils.execution_messages_list_key(execution_id))
        messages.sort(key=lambda m: m.created_at)
        return messages

    # Dispatch guard operations
    async def claim_dispatch(self, execution_id: str, node_id: str) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """
        Insert-if-absent claim on (execution, node). Returns (claimed, existing_record).
        """
        key = key_utils.dispatch_key(execution_id, node_id)
        record = {"execution_id": execution_id, "node_id": node_id, "message_id": None,
                  "claimed_at": to_json(utc_now())}
        if await self.store.compare_and_set(key, record, 0):
            return True, None
        return False, await self.store.get(key)

    async def record_dispatch(self, execution_id: str, node_id: str, message_id: str) -> None:
        key = key_utils.dispatch_key(execution_id, node_id)
        await self._mutate(key, lambda current: {**(current or {}), "message_id": message_id})

    async def release_dispatch(self, execution_id: str, node_id: str) -> None:
        await self.store.delete(key_utils.dispatch_key(execution_id, node_id))

    # Session operations
    async def get_session_versioned(self, guest_id: str) -> Tuple[Optional[GuestSession], int]:
        record, version = await self.store.get_versioned(key_utils.guest_session_key(guest_id))
        if record is None:
            return None, version
        return GuestSession.model_validate(record), version

    async def compare_and_set_session(self, session: GuestSession, expected_version: int) -> bool:
        return await self.store.compare_and_set(
            key_utils.guest_session_key(session.guest_id),
            session.model_dump(mode="json"),
            expected_version
        )

    async def mutate_session(self, guest_id: str, mutator: Callable[[GuestSession], Optional[GuestSession]]) -> Optional[GuestSession]:
        def apply(current):
            if current is None:
                return None
            updated = mutator(GuestSession.model_validate(current))
            if updated is None:
                return None
            updated.updated_at = utc_now()
            return updated.model_dump(mode="json")

        record = await self._mutate(key_utils.guest_session_key(guest_id), apply)
        return GuestSession.model_validate(record) if record else None

    async def index_session(self, session: GuestSession) -> None:
        # Session id key resolves back to the guest key
        await self.store.set(session.id, {"id": session.id, "guest_id": session.guest_id, "project_id": session.project_id})
        await self._append_to_index(key_utils.active_sessions_key(session.project_id), session.id)

    async def get_session_pointer(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(session_id)

    async def delete_session(self, session: GuestSession, expected_version: Optional[int] = None) -> bool:
        """
        Remove a session. With expected_version the delete only happens if nobody
        re-claimed the guest in the meantime.
        """
        guest_key = key_utils.guest_session_key(session.guest_id)
        if expected_version is not None:
            if not await self.store.compare_and_delete(guest_key, expected_version):
                return False
        else:
            await self.store.delete(guest_key)
        await self.drop_session_index(session)
        return True

    async def drop_session_index(self, session: GuestSession) -> None:
        await self.store.delete(session.id)
        await self._remove_from_index(key_utils.active_sessions_key(session.project_id), session.id)

    async def list_active_session_ids(self, project_id: str) -> List[str]:
        return await self._get_index(key_utils.active_sessions_key(project_id))

    # Pending invitation operations
    async def create_invitation(self, invitation: PendingInvitation) -> PendingInvitation:
        await self.store.set(invitation.id, invitation.model_dump(mode="json"))
        await self._append_to_index(key_utils.guest_invitations_key(invitation.guest_id), invitation.id)
        await self._append_to_index(key_utils.campaign_invitations_key(invitation.campaign_id), invitation.id)
        return invitation

    async def get_invitation(self, invitation_id: str) -> Optional[PendingInvitation]:
        record = await self.store.get(invitation_id)
        if record is None:
            return None
        return PendingInvitation.model_validate(record)

    async def update_invitation(self, invitation_id: str, updates: Dict[str, Any]) -> PendingInvitation:
        record = await self._update_record(invitation_id, updates, "Pending invitation")
        return PendingInvitation.model_validate(record)

    async def _list_invitations(self, list_key: str) -> List[PendingInvitation]:
        invitations = []
        for invitation_id in await self._get_index(list_key):
            invitation = await self.get_invitation(invitation_id)
            if invitation:
                invitations.append(invitation)
        return invitations

    async def list_invitations_by_guest(self, guest_id: str) -> List[PendingInvitation]:
        return await self._list_invitations(key_utils.guest_invitations_key(guest_id))

    async def list_invitations_by_campaign(self, campaign_id: str) -> List[PendingInvitation]:
        return await self._list_invitations(key_utils.campaign_invitations_key(campaign_id))

    # Reminder operations
    async def create_reminder(self, reminder: ReminderData) -> ReminderData:
        await self.store.set(reminder.id, reminder.model_dump(mode="json"))
        await self._append_to_index(key_utils.reminders_list_key(reminder.campaign_id), reminder.id)
        return reminder

    async def get_reminder(self, reminder_id: str) -> Optional[ReminderData]:
        record = await self.store.get(reminder_id)
        if record is None:
            return None
        return ReminderData.model_validate(record)

    async def transition_reminder(self, reminder_id: str, allowed_statuses, updates: Dict[str, Any]) -> ReminderData:
        record = await self._transition(reminder_id, allowed_statuses, updates, "Reminder")
        return ReminderData.model_validate(record)

    async def delete_reminder(self, reminder: ReminderData) -> None:
        await self.store.delete(reminder.id)
        await self._remove_from_index(key_utils.reminders_list_key(reminder.campaign_id), reminder.id)

    async def list_reminders_by_campaign(self, campaign_id: str) -> List[ReminderData]:
        reminders = []
        for reminder_id in await self._get_index(key_utils.reminders_list_key(campaign_id)):
            reminder = await self.get_reminder(reminder_id)
            if reminder:
                reminders.append(reminder)
        # Soonest first
        reminders.sort(key=lambda r: r.trigger_at)
        return reminders

    async def get_due_reminders(self, now=None) -> List[ReminderData]:
        now = now or utc_now()
        records = await self.store.scan_by_prefix(key_utils.REMINDER_PREFIX)
        reminders = [ReminderData.model_validate(record) for record in records]
        due = [reminder for reminder in reminders if reminder.status == "scheduled" and reminder.trigger_at <= now]
        due.sort(key=lambda r: r.trigger_at)
        return due

    # Scheduled job operations
    async def save_job(self, job: ScheduledJobData) -> ScheduledJobData:
        await self.store.set(job.id, job.model_dump(mode="json"))
        return job

    async def get_due_jobs(self, now=None) -> List[ScheduledJobData]:
        now = now or utc_now()
        jobs = [ScheduledJobData.model_validate(record) for record in await self.store.scan_by_prefix(key_utils.JOB_PREFIX)]
        due = [job for job in jobs if job.run_at <= now]
        due.sort(key=lambda job: job.run_at)
        return due

    async def delete_job(self, job: ScheduledJobData) -> bool:
        """
        Remove a handled job. A job re-scheduled under the same key since it
        was read has a different run_at and is left alone.
        """
        run_at = to_json(job.run_at)
        for _ in range(MAX_CAS_ATTEMPTS):
            current, version = await self.store.get_versioned(job.id)
            if current is None or current.get("run_at") != run_at:
                return False
            if await self.store.compare_and_delete(job.id, version):
                return True
        raise StoreException(message=f"Could not delete job {job.id}: too many concurrent writers", status_code=503)

    async def record_job_failure(self, job: ScheduledJobData, error_message: str) -> Optional[ScheduledJobData]:
        run_at = to_json(job.run_at)

        def record(current):
            if current is None or current.get("run_at") != run_at:
                return None
            current["attempts"] = current.get("attempts", 0) + 1
            current["last_error"] = error_message
            return current

        updated = await self._mutate(job.id, record)
        return ScheduledJobData.model_validate(updated) if updated else None
