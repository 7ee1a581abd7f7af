"""
Execution Service
Lifecycle of a single guest's chatflow execution: creation, start, resume,
bulk administrative actions and the inbound events (replies, form answers,
scheduled jobs) that release a suspended execution.
"""
from typing import Optional, Dict, Any, List, Callable, Awaitable

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now
from utils import key_utils

# Database
from database.campaign_db import CampaignDB

# Services
from services.guest_service import GuestService
from services.guest_session_service import GuestSessionService
from services.message_service import MessageService
from services.node_executor_service import NodeExecutorService

# Models
from models.chatflow_data import ChatflowData, ChatflowNode, WaitReplyConfig, GuestFormConfig
from models.execution_data import (
    ChatflowExecution,
    BulkExecutionResult,
    BulkExecutionFailure,
    TERMINAL_EXECUTION_STATUSES,
)
from models.message_data import MessageLog
from models.scheduled_job_data import ScheduledJobData

# Exceptions
from exceptions.campaign_exception import (
    NotFoundException,
    InvalidStateTransitionException,
    InvalidInputException,
)

CANCELLABLE_STATUSES = ("pending", "pending_session", "queued", "running", "paused", "failed")


class ExecutionService:
    def __init__(
        self,
        log_util: LogUtil,
        campaign_db: CampaignDB,
        guest_service: GuestService,
        guest_session_service: GuestSessionService,
        message_service: MessageService,
        node_executor_service: NodeExecutorService
    ):
        self.log_util = log_util
        self.campaign_db = campaign_db
        self.guest_service = guest_service
        self.guest_session_service = guest_session_service
        self.message_service = message_service
        self.node_executor_service = node_executor_service

    async def _load_chatflow(self, chatflow_id: str, chatflow: Optional[ChatflowData] = None) -> ChatflowData:
        if chatflow is not None:
            return chatflow
        loaded = await self.campaign_db.get_chatflow(chatflow_id)
        if loaded is None:
            raise NotFoundException(message=f"Chatflow {chatflow_id} not found")
        return loaded

    async def get_execution(self, execution_id: str) -> ChatflowExecution:
        execution = await self.campaign_db.get_execution(execution_id)
        if execution is None:
            raise NotFoundException(message=f"Execution {execution_id} not found")
        return execution

    async def list_executions(self, campaign_id: str, status: Optional[str] = None) -> List[ChatflowExecution]:
        executions = await self.campaign_db.list_executions_by_campaign(campaign_id)
        if status:
            executions = [execution for execution in executions if execution.status == status]
        return executions

    async def get_messages(self, execution_id: str) -> List[MessageLog]:
        await self.get_execution(execution_id)
        return await self.message_service.get_messages_by_execution(execution_id)

    async def create(
        self,
        campaign_id: str,
        guest_id: str,
        chatflow_id: str,
        status: str = "pending",
        execution_id: Optional[str] = None
    ) -> ChatflowExecution:
        """
        Create an execution for one guest. Guest name and phone are copied now
        and never refreshed from later guest edits.
        """
        project_id = key_utils.project_id_from_key(campaign_id)
        guest = await self.guest_service.get_guest(project_id, guest_id)

        execution = ChatflowExecution(
            id=execution_id or key_utils.new_key("execution", project_id),
            campaign_id=campaign_id,
            guest_id=guest.id,
            guest_name=guest.name,
            guest_phone=guest.phone,
            chatflow_id=chatflow_id,
            status=status,
            variables={
                "guest_name": guest.name,
                "guest_phone": guest.phone,
                "guest_category": guest.category,
                "guest_invitation_type": guest.invitation_type,
            },
            project_id=project_id,
        )
        await self.campaign_db.create_execution(execution)
        self.log_util.info(
            service_name="ExecutionService",
            message=f"Execution {execution.id} created for guest {guest_id} with status {status}"
        )
        return execution

    async def start(self, execution_id: str, chatflow: Optional[ChatflowData] = None) -> ChatflowExecution:
        execution = await self.get_execution(execution_id)
        if execution.status == "paused":
            # Paused before it ever ran; resume starts it from the trigger
            self.log_util.info(service_name="ExecutionService", message=f"Execution {execution_id} is paused, start deferred")
            return execution
        if execution.status != "pending":
            raise InvalidStateTransitionException(
                message=f"Execution {execution_id} can only be started from pending, not {execution.status}"
            )
        campaign = await self.campaign_db.get_campaign(execution.campaign_id)
        if campaign is not None and campaign.status == "paused":
            self.log_util.info(
                service_name="ExecutionService",
                message=f"Campaign {campaign.id} is paused, parking execution {execution_id}"
            )
            return await self.campaign_db.transition_execution(execution_id, ("pending",), {
                "status": "paused",
                "paused_at": utc_now(),
            })
        chatflow = await self._load_chatflow(execution.chatflow_id, chatflow)

        trigger = chatflow.get_trigger_node()
        if trigger is None:
            return await self.node_executor_service.fail_execution(
                execution_id, f"Chatflow {chatflow.id} has no trigger node"
            )

        try:
            execution = await self.campaign_db.transition_execution(execution_id, ("pending",), {
                "status": "running",
                "started_at": utc_now(),
            })
        except InvalidStateTransitionException:
            execution = await self.get_execution(execution_id)
            if execution.status == "paused":
                self.log_util.info(service_name="ExecutionService", message=f"Execution {execution_id} paused before it started")
                return execution
            raise
        await self.guest_session_service.create_or_refresh(
            execution.guest_id, execution.campaign_id, execution.id, trigger.id, execution.guest_phone
        )
        self.log_util.info(service_name="ExecutionService", message=f"Execution {execution_id} started")
        return await self.node_executor_service.execute_node(execution_id, chatflow, trigger)

    async def resume(self, execution_id: str, chatflow: Optional[ChatflowData] = None) -> ChatflowExecution:
        """
        Re-enter the executor at current_node_id. The node is interpreted again.
        """
        execution = await self.get_execution(execution_id)
        if execution.status != "running" or not execution.current_node_id:
            raise InvalidStateTransitionException(
                message=f"Execution {execution_id} can only be resumed while running at a node"
            )
        chatflow = await self._load_chatflow(execution.chatflow_id, chatflow)
        node = chatflow.get_node(execution.current_node_id)
        if node is None:
            return await self.node_executor_service.fail_execution(
                execution_id, f"Node {execution.current_node_id} no longer exists in chatflow {chatflow.id}"
            )
        self.log_util.info(
            service_name="ExecutionService",
            message=f"Resuming execution {execution_id} at node {node.id}"
        )
        return await self.node_executor_service.execute_node(execution_id, chatflow, node)

    # Single execution actions
    async def retry_execution(self, execution_id: str) -> ChatflowExecution:
        await self.campaign_db.transition_execution(execution_id, ("failed",), {
            "status": "pending",
            "error_message": None,
            "failed_at": None,
        })
        return await self.start(execution_id)

    async def pause_execution(self, execution_id: str) -> ChatflowExecution:
        execution = await self.campaign_db.transition_execution(execution_id, ("running",), {
            "status": "paused",
            "paused_at": utc_now(),
        })
        self.log_util.info(service_name="ExecutionService", message=f"Execution {execution_id} paused")
        return execution

    async def unpause_execution(self, execution_id: str) -> ChatflowExecution:
        """
        Move a paused execution back to where it stopped: running at its
        current node, or pending when it was paused before reaching the trigger.
        """
        execution = await self.get_execution(execution_id)
        status = "running" if execution.current_node_id else "pending"
        return await self.campaign_db.transition_execution(execution_id, ("paused",), {
            "status": status,
            "paused_at": None,
        })

    async def continue_execution(self, execution: ChatflowExecution) -> ChatflowExecution:
        if execution.status == "pending":
            return await self.start(execution.id)
        return await self.resume(execution.id)

    async def resume_execution(self, execution_id: str) -> ChatflowExecution:
        execution = await self.unpause_execution(execution_id)
        return await self.continue_execution(execution)

    async def cancel_execution(self, execution_id: str) -> ChatflowExecution:
        execution = await self.campaign_db.transition_execution(execution_id, CANCELLABLE_STATUSES, {
            "status": "cancelled",
            "cancelled_at": utc_now(),
        })
        await self.guest_session_service.release_session_for_execution(execution.guest_id, execution.id)
        self.log_util.info(service_name="ExecutionService", message=f"Execution {execution_id} cancelled")
        return execution

    # Bulk actions
    async def _run_bulk(
        self,
        execution_ids: List[str],
        action: Callable[[str], Awaitable[ChatflowExecution]],
        action_name: str
    ) -> BulkExecutionResult:
        """
        Apply action to every id independently. A failing id is reported and never stops the rest.
        """
        result = BulkExecutionResult()
        for execution_id in execution_ids:
            try:
                await action(execution_id)
                result.succeeded.append(execution_id)
            except Exception as e:
                reason = getattr(e, "error_code", "unexpected_error")
                self.log_util.warning(
                    service_name="ExecutionService",
                    message=f"Bulk {action_name} failed for execution {execution_id}: {str(e)}"
                )
                result.failed.append(BulkExecutionFailure(execution_id=execution_id, error=str(e), reason=reason))
        self.log_util.info(
            service_name="ExecutionService",
            message=f"Bulk {action_name}: {len(result.succeeded)} succeeded, {len(result.failed)} failed"
        )
        return result

    async def bulk_retry(self, execution_ids: List[str]) -> BulkExecutionResult:
        return await self._run_bulk(execution_ids, self.retry_execution, "retry")

    async def bulk_pause(self, execution_ids: List[str]) -> BulkExecutionResult:
        return await self._run_bulk(execution_ids, self.pause_execution, "pause")

    async def bulk_resume(self, execution_ids: List[str]) -> BulkExecutionResult:
        return await self._run_bulk(execution_ids, self.resume_execution, "resume")

    async def bulk_cancel(self, execution_ids: List[str]) -> BulkExecutionResult:
        return await self._run_bulk(execution_ids, self.cancel_execution, "cancel")

    # Inbound guest activity
    async def _get_waiting_node(self, execution: ChatflowExecution, chatflow: ChatflowData, node_type: str) -> ChatflowNode:
        if execution.status != "running":
            raise InvalidStateTransitionException(
                message=f"Execution {execution.id} is {execution.status} and cannot accept guest input"
            )
        node = chatflow.get_node(execution.current_node_id) if execution.current_node_id else None
        entry = execution.latest_node_execution(node.id) if node else None
        if node is None or node.type != node_type or entry is None or entry.status != "waiting":
            raise InvalidStateTransitionException(
                message=f"Execution {execution.id} is not waiting at a {node_type} node"
            )
        return node

    async def _send_text(self, execution: ChatflowExecution, node: ChatflowNode, content: str) -> None:
        message = await self.message_service.create_message_log(
            campaign_id=execution.campaign_id,
            execution_id=execution.id,
            guest_id=execution.guest_id,
            node_id=node.id,
            content=content,
            message_type="text",
        )
        await self.message_service.simulate_send(message.id)

    async def handle_guest_reply(self, guest_id: str, text: str) -> ChatflowExecution:
        session = await self.guest_session_service.get_active(guest_id)
        if session is None:
            raise NotFoundException(message=f"No active session for guest {guest_id}")
        await self.guest_session_service.refresh_activity(guest_id)
        return await self.continue_after_reply(session.execution_id, text)

    async def continue_after_reply(self, execution_id: str, text: str, chatflow: Optional[ChatflowData] = None) -> ChatflowExecution:
        execution = await self.get_execution(execution_id)
        chatflow = await self._load_chatflow(execution.chatflow_id, chatflow)
        node = await self._get_waiting_node(execution, chatflow, "wait_reply")
        config = WaitReplyConfig.model_validate(node.config)
        reply = text.strip()

        if config.expectedValues and not self._is_expected(reply, config):
            return await self._handle_unexpected_reply(execution, chatflow, node, config, reply)

        return await self._accept_reply(execution, chatflow, node, config, reply, {"reply": reply, "valid": True})

    @staticmethod
    def _is_expected(reply: str, config: WaitReplyConfig) -> bool:
        if config.caseSensitive:
            return reply in config.expectedValues
        return reply.lower() in [value.lower() for value in config.expectedValues]

    async def _accept_reply(
        self,
        execution: ChatflowExecution,
        chatflow: ChatflowData,
        node: ChatflowNode,
        config: WaitReplyConfig,
        reply: str,
        output: Dict[str, Any]
    ) -> ChatflowExecution:
        resolved = await self.campaign_db.resolve_waiting_node(execution.id, node.id, {
            "status": "completed",
            "completed_at": utc_now(),
            "reply_received": reply,
            "output": output,
        })
        if resolved is None:
            raise InvalidStateTransitionException(
                message=f"Execution {execution.id} already moved past node {node.id}"
            )
        await self.campaign_db.merge_execution_variables(execution.id, {
            config.saveAs or "reply": reply,
            "last_reply": reply,
        })
        self.log_util.info(
            service_name="ExecutionService",
            message=f"Reply accepted for execution {execution.id} at node {node.id}"
        )
        return await self.node_executor_service.continue_after(execution.id, chatflow, node)

    async def _handle_unexpected_reply(
        self,
        execution: ChatflowExecution,
        chatflow: ChatflowData,
        node: ChatflowNode,
        config: WaitReplyConfig,
        reply: str
    ) -> ChatflowExecution:
        entry = execution.latest_node_execution(node.id)
        if entry.retry_count < config.maxRetries:
            self.log_util.info(
                service_name="ExecutionService",
                message=f"Unexpected reply '{reply}' for execution {execution.id}, retry {entry.retry_count + 1}/{config.maxRetries}"
            )
            if config.retryMessage:
                await self._send_text(execution, node, config.retryMessage)
            await self.guest_session_service.mark_waiting(execution.guest_id, execution.id, node.id)
            return await self.campaign_db.update_node_execution(execution.id, node.id, {
                "retry_count": entry.retry_count + 1,
                "reply_received": reply,
            })

        self.log_util.warning(
            service_name="ExecutionService",
            message=f"Retries exhausted for execution {execution.id} at node {node.id}, applying {config.fallbackAction}"
        )
        if config.fallbackMessage:
            await self._send_text(execution, node, config.fallbackMessage)

        if config.fallbackAction == "wait_again":
            await self.guest_session_service.mark_waiting(execution.guest_id, execution.id, node.id)
            return await self.campaign_db.update_node_execution(execution.id, node.id, {
                "retry_count": 0,
                "reply_received": reply,
            })

        output = {"reply": reply, "valid": False, "fallback": config.fallbackAction}
        if config.fallbackAction == "continue":
            return await self._accept_reply(execution, chatflow, node, config, reply, output)

        resolved = await self.campaign_db.resolve_waiting_node(execution.id, node.id, {
            "status": "completed",
            "completed_at": utc_now(),
            "reply_received": reply,
            "output": output,
        })
        if resolved is None:
            raise InvalidStateTransitionException(
                message=f"Execution {execution.id} already moved past node {node.id}"
            )
        return await self.node_executor_service.finish_execution(execution.id)

    async def submit_guest_form(self, execution_id: str, responses: Dict[str, Any], chatflow: Optional[ChatflowData] = None) -> ChatflowExecution:
        """
        Answers may be keyed by question id or by variable name.
        """
        execution = await self.get_execution(execution_id)
        chatflow = await self._load_chatflow(execution.chatflow_id, chatflow)
        node = await self._get_waiting_node(execution, chatflow, "guest_form")
        config = GuestFormConfig.model_validate(node.config)

        answers = {}
        missing = []
        for question in config.questions:
            variable_name = question.variableName or question.id
            value = responses.get(question.id, responses.get(variable_name))
            if value is None or (isinstance(value, str) and not value.strip()):
                if question.required:
                    missing.append(question.question or question.id)
                continue
            answers[variable_name] = value.strip() if isinstance(value, str) else value
        if missing:
            raise InvalidInputException(message=f"Missing answers for required questions: {', '.join(missing)}")

        resolved = await self.campaign_db.resolve_waiting_node(execution_id, node.id, {
            "status": "completed",
            "completed_at": utc_now(),
            "form_responses": answers,
            "output": {"form_responses": answers},
        })
        if resolved is None:
            raise InvalidStateTransitionException(
                message=f"Execution {execution_id} already moved past node {node.id}"
            )
        if answers:
            await self.campaign_db.merge_execution_variables(execution_id, answers)
        await self.guest_session_service.refresh_activity(execution.guest_id)
        self.log_util.info(
            service_name="ExecutionService",
            message=f"Guest form submitted for execution {execution_id} at node {node.id}"
        )
        return await self.node_executor_service.continue_after(execution_id, chatflow, node)

    # Scheduled jobs
    async def handle_scheduled_job(self, job: ScheduledJobData) -> bool:
        """
        Release the node a delay or reply timeout was holding. Returns False
        for a stale job whose execution has moved on or stopped.
        """
        execution = await self.campaign_db.get_execution(job.execution_id)
        if execution is None or execution.status in TERMINAL_EXECUTION_STATUSES:
            self.log_util.info(service_name="ExecutionService", message=f"Dropping job {job.id}: execution finished or gone")
            return False

        chatflow = await self._load_chatflow(execution.chatflow_id)
        node = chatflow.get_node(job.node_id)
        if node is None:
            self.log_util.warning(service_name="ExecutionService", message=f"Dropping job {job.id}: node {job.node_id} not in chatflow")
            return False

        if job.job_type == "delay_complete":
            updates = {"status": "completed", "completed_at": utc_now()}
        else:
            updates = {"status": "completed", "completed_at": utc_now(), "output": {"timed_out": True}}

        resolved = await self.campaign_db.resolve_waiting_node(execution.id, node.id, updates)
        if resolved is None:
            self.log_util.info(
                service_name="ExecutionService",
                message=f"Dropping stale job {job.id}: execution {execution.id} is {execution.status} at {execution.current_node_id}"
            )
            return False

        if job.job_type == "reply_timeout":
            config = WaitReplyConfig.model_validate(node.config)
            action = config.timeoutAction or "end"
            self.log_util.info(
                service_name="ExecutionService",
                message=f"Reply timeout for execution {execution.id} at node {node.id}, action {action}"
            )
            if action == "end":
                return bool(await self.node_executor_service.finish_execution(execution.id))
        else:
            self.log_util.info(
                service_name="ExecutionService",
                message=f"Delay complete for execution {execution.id} at node {node.id}"
            )

        await self.node_executor_service.continue_after(execution.id, chatflow, node)
        return True

    async def abandon_job(self, job: ScheduledJobData, reason: str) -> Optional[ChatflowExecution]:
        """
        Fail the execution held by a job that can no longer be handled.
        Finished executions are left as they are.
        """
        execution = await self.campaign_db.get_execution(job.execution_id)
        if execution is None or execution.status in TERMINAL_EXECUTION_STATUSES:
            return None
        return await self.node_executor_service.fail_execution(
            execution.id, f"Scheduled {job.job_type} at node {job.node_id} could not run: {reason}"
        )
