"""
Node handlers
One handler per chatflow node type. Each interprets a node against an
execution snapshot and reports what the executor should do next.
"""
import re
from typing import Optional, Dict, Any, Literal

from pydantic import BaseModel, ConfigDict

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now, duration_to_seconds, seconds_from_now
from utils import key_utils

# Database
from database.campaign_db import CampaignDB

# Services
from services.template_service import TemplateService
from services.message_service import MessageService
from services.guest_service import GuestService
from services.guest_session_service import GuestSessionService

# Models
from models.chatflow_data import (
    ChatflowData,
    ChatflowNode,
    SendTemplateConfig,
    WaitReplyConfig,
    ConditionConfig,
    DelayConfig,
    UpdateGuestConfig,
)
from models.execution_data import ChatflowExecution
from models.scheduled_job_data import ScheduledJobData

# Exceptions
from exceptions.campaign_exception import NodeExecutionFailure


class NodeContext(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    execution: ChatflowExecution
    chatflow: ChatflowData
    node: ChatflowNode


class NodeOutcome(BaseModel):
    """
    continue: mark the node completed and run next_node_id (None ends the flow)
    suspend:  mark the node waiting and stop until an external event resumes it
    complete: the handler finished the execution itself
    """
    action: Literal["continue", "suspend", "complete"]
    next_node_id: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    node_updates: Dict[str, Any] = {}


def evaluate_condition(actual: Any, operator: str, expected: str, case_sensitive: bool = True) -> bool:
    actual_str = "" if actual is None else str(actual)
    expected_str = "" if expected is None else str(expected)

    if operator == "matches":
        try:
            return re.search(expected_str, actual_str, 0 if case_sensitive else re.IGNORECASE) is not None
        except re.error as e:
            raise NodeExecutionFailure(message=f"Invalid pattern '{expected_str}': {e}")

    if not case_sensitive:
        actual_str = actual_str.lower()
        expected_str = expected_str.lower()

    if operator == "equals":
        return actual_str == expected_str
    if operator == "not_equals":
        return actual_str != expected_str
    if operator == "contains":
        return expected_str in actual_str
    raise NodeExecutionFailure(message=f"Unknown condition operator: {operator}")


class BaseNodeHandler:
    node_type = ""

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        raise NotImplementedError

    def _continue(self, context: NodeContext, source_handle: Optional[str] = None, **fields) -> NodeOutcome:
        next_node = context.chatflow.get_next_node(context.node, source_handle)
        return NodeOutcome(action="continue", next_node_id=next_node.id if next_node else None, **fields)


class TriggerNodeHandler(BaseNodeHandler):
    node_type = "trigger"

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        return self._continue(context)


class SendTemplateNodeHandler(BaseNodeHandler):
    node_type = "send_template"

    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB,
                 template_service: TemplateService, message_service: MessageService):
        super().__init__(log_util)
        self.campaign_db = campaign_db
        self.template_service = template_service
        self.message_service = message_service

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        execution = context.execution
        node = context.node
        config = SendTemplateConfig.model_validate(node.config)
        if not config.templateId:
            raise NodeExecutionFailure(message=f"Send template node {node.id} has no template selected")

        template = await self.template_service.render(config.templateId, execution.project_id)
        content = self.template_service.substitute(template.content, config.variables, execution.variables)

        # At most one dispatch per (execution, node), replays reuse the first message
        claimed, existing = await self.campaign_db.claim_dispatch(execution.id, node.id)
        if not claimed:
            message_id = existing.get("message_id") if existing else None
            self.log_util.info(
                service_name="SendTemplateNodeHandler",
                message=f"Node {node.id} already dispatched for execution {execution.id} (message {message_id}), not re-sending"
            )
            return self._continue(context, output={"message_id": message_id, "sent": True, "deduplicated": True})

        try:
            message = await self.message_service.create_message_log(
                campaign_id=execution.campaign_id,
                execution_id=execution.id,
                guest_id=execution.guest_id,
                node_id=node.id,
                content=content,
                message_type="template",
                template_id=template.id,
                template_name=template.name,
                variables=config.variables,
            )
            await self.campaign_db.record_dispatch(execution.id, node.id, message.id)
            await self.message_service.simulate_send(message.id)
        except Exception:
            await self.campaign_db.release_dispatch(execution.id, node.id)
            raise

        return self._continue(context, output={"message_id": message.id, "sent": True})


async def schedule_job(campaign_db: CampaignDB, context: NodeContext, job_type: str, run_at) -> ScheduledJobData:
    job = ScheduledJobData(
        id=key_utils.job_key(context.execution.id, context.node.id, job_type),
        job_type=job_type,
        execution_id=context.execution.id,
        node_id=context.node.id,
        chatflow_id=context.chatflow.id or context.execution.chatflow_id,
        run_at=run_at,
    )
    return await campaign_db.save_job(job)


class WaitReplyNodeHandler(BaseNodeHandler):
    node_type = "wait_reply"

    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB, guest_session_service: GuestSessionService):
        super().__init__(log_util)
        self.campaign_db = campaign_db
        self.guest_session_service = guest_session_service

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        config = WaitReplyConfig.model_validate(context.node.config)
        now = utc_now()
        timeout_at = seconds_from_now(config.timeout) if config.timeout else None

        await self.guest_session_service.mark_waiting(
            context.execution.guest_id, context.execution.id, context.node.id
        )
        if timeout_at is not None:
            await schedule_job(self.campaign_db, context, "reply_timeout", timeout_at)

        self.log_util.info(
            service_name="WaitReplyNodeHandler",
            message=f"Execution {context.execution.id} waiting for reply at node {context.node.id}"
                    + (f" until {timeout_at.isoformat()} ({config.timeoutAction or 'end'})" if timeout_at else "")
        )
        return NodeOutcome(
            action="suspend",
            node_updates={"waiting_since": now, "timeout_at": timeout_at, "retry_count": 0},
        )


class ConditionNodeHandler(BaseNodeHandler):
    node_type = "condition"

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        config = ConditionConfig.model_validate(context.node.config)
        actual = context.execution.variables.get(config.variable)
        result = evaluate_condition(actual, config.operator, config.value, config.caseSensitive)

        self.log_util.info(
            service_name="ConditionNodeHandler",
            message=f"Condition {context.node.id}: {config.variable}='{actual}' {config.operator} '{config.value}' = {result}"
        )
        return self._continue(
            context,
            source_handle="true" if result else "false",
            output={"condition_result": result},
            node_updates={"condition_result": result},
        )


class DelayNodeHandler(BaseNodeHandler):
    node_type = "delay"

    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB):
        super().__init__(log_util)
        self.campaign_db = campaign_db

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        config = DelayConfig.model_validate(context.node.config)
        wait_seconds = duration_to_seconds(config.duration, config.unit)
        if wait_seconds <= 0:
            return self._continue(context, output={"wait_time_seconds": 0})

        resume_at = seconds_from_now(wait_seconds)
        await schedule_job(self.campaign_db, context, "delay_complete", resume_at)
        self.log_util.info(
            service_name="DelayNodeHandler",
            message=f"Execution {context.execution.id} delayed {wait_seconds}s until {resume_at.isoformat()}"
        )
        return NodeOutcome(
            action="suspend",
            output={"wait_time_seconds": wait_seconds},
            node_updates={"waiting_since": utc_now(), "resume_at": resume_at},
        )


class GuestFormNodeHandler(BaseNodeHandler):
    node_type = "guest_form"

    def __init__(self, log_util: LogUtil, guest_session_service: GuestSessionService):
        super().__init__(log_util)
        self.guest_session_service = guest_session_service

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        await self.guest_session_service.mark_waiting(
            context.execution.guest_id, context.execution.id, context.node.id
        )
        self.log_util.info(
            service_name="GuestFormNodeHandler",
            message=f"Execution {context.execution.id} collecting guest form at node {context.node.id}"
        )
        return NodeOutcome(action="suspend", node_updates={"waiting_since": utc_now()})


class UpdateGuestNodeHandler(BaseNodeHandler):
    node_type = "update_guest"

    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB, guest_service: GuestService):
        super().__init__(log_util)
        self.campaign_db = campaign_db
        self.guest_service = guest_service

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        config = UpdateGuestConfig.model_validate(context.node.config)
        execution = context.execution
        applied = await self.guest_service.apply_flow_updates(
            project_id=execution.project_id,
            guest_id=execution.guest_id,
            rsvp_status=config.rsvp_status,
            tags=config.tags,
            plus_one_confirmed=config.plus_one_confirmed,
        )
        if applied:
            await self.campaign_db.merge_execution_variables(execution.id, applied)
        return self._continue(context, output={"updated_fields": sorted(applied or {})})


class EndNodeHandler(BaseNodeHandler):
    node_type = "end"

    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB, guest_session_service: GuestSessionService):
        super().__init__(log_util)
        self.campaign_db = campaign_db
        self.guest_session_service = guest_session_service

    async def interpret(self, context: NodeContext) -> NodeOutcome:
        await self.finish_execution(context.execution)
        return NodeOutcome(action="complete")

    async def finish_execution(self, execution: ChatflowExecution) -> ChatflowExecution:
        finished = await self.campaign_db.update_execution(execution.id, {
            "status": "completed",
            "completed_at": utc_now(),
            "current_phase": "Completion",
        })
        await self.guest_session_service.release_session_for_execution(execution.guest_id, execution.id)
        self.log_util.info(service_name="EndNodeHandler", message=f"Execution {execution.id} completed")
        return finished
