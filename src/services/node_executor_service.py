"""
Node Executor Service
Walks one execution through a chatflow, one node at a time, recording
progress after every node so the run can be resumed from current_node_id.
"""
from typing import Optional, Dict

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now

# Database
from database.campaign_db import CampaignDB

# Services
from services.template_service import TemplateService
from services.message_service import MessageService
from services.guest_service import GuestService
from services.guest_session_service import GuestSessionService
from services.node_handlers import (
    BaseNodeHandler,
    NodeContext,
    TriggerNodeHandler,
    SendTemplateNodeHandler,
    WaitReplyNodeHandler,
    ConditionNodeHandler,
    DelayNodeHandler,
    GuestFormNodeHandler,
    UpdateGuestNodeHandler,
    EndNodeHandler,
)

# Models
from models.chatflow_data import ChatflowData, ChatflowNode
from models.execution_data import ChatflowExecution, NodeExecution

# Exceptions
from exceptions.campaign_exception import NotFoundException, NodeExecutionFailure

NODE_PHASES: Dict[str, str] = {
    "trigger": "Blasting Phase",
    "send_template": "Blasting Phase",
    "wait_reply": "Response Phase",
    "guest_form": "Response Phase",
    "condition": "Processing Phase",
    "delay": "Follow-up Phase",
    "update_guest": "Follow-up Phase",
    "end": "Completion",
}


def get_node_phase(node_type: str) -> str:
    return NODE_PHASES.get(node_type, "Unknown Phase")


class NodeExecutorService:
    def __init__(
        self,
        log_util: LogUtil,
        campaign_db: CampaignDB,
        template_service: TemplateService,
        message_service: MessageService,
        guest_service: GuestService,
        guest_session_service: GuestSessionService
    ):
        self.log_util = log_util
        self.campaign_db = campaign_db
        self.guest_session_service = guest_session_service
        self.end_handler = EndNodeHandler(log_util, campaign_db, guest_session_service)
        self.handlers: Dict[str, BaseNodeHandler] = {}
        for handler in (
            TriggerNodeHandler(log_util),
            SendTemplateNodeHandler(log_util, campaign_db, template_service, message_service),
            WaitReplyNodeHandler(log_util, campaign_db, guest_session_service),
            ConditionNodeHandler(log_util),
            DelayNodeHandler(log_util, campaign_db),
            GuestFormNodeHandler(log_util, guest_session_service),
            UpdateGuestNodeHandler(log_util, campaign_db, guest_service),
            self.end_handler,
        ):
            self.register_handler(handler)

    def register_handler(self, handler: BaseNodeHandler) -> None:
        self.handlers[handler.node_type] = handler

    async def _get_execution(self, execution_id: str) -> ChatflowExecution:
        execution = await self.campaign_db.get_execution(execution_id)
        if execution is None:
            raise NotFoundException(message=f"Execution {execution_id} not found")
        return execution

    async def execute_node(self, execution_id: str, chatflow: ChatflowData, node: Optional[ChatflowNode]) -> ChatflowExecution:
        """
        Interpret node and keep going until the flow suspends, completes or fails.
        A node whose successor is missing ends the execution.
        """
        current = node
        while True:
            execution = await self._get_execution(execution_id)

            # Pause never interrupts a node, it only stops the next one from starting
            if execution.status == "paused":
                self.log_util.info(service_name="NodeExecutorService", message=f"Execution {execution_id} paused, stopping")
                return execution
            if execution.status != "running":
                self.log_util.info(
                    service_name="NodeExecutorService",
                    message=f"Execution {execution_id} is {execution.status}, not advancing"
                )
                return execution

            if current is None:
                return await self.end_handler.finish_execution(execution)

            await self.campaign_db.update_execution(execution_id, {
                "current_node_id": current.id,
                "current_phase": get_node_phase(current.type),
            })
            execution = await self.campaign_db.add_node_execution(execution_id, NodeExecution(
                node_id=current.id,
                node_type=current.type,
                node_label=current.label,
                status="running",
                input=current.config or None,
            ))

            try:
                handler = self.handlers.get(current.type)
                if handler is None:
                    raise NodeExecutionFailure(message=f"Unknown node type: {current.type}")
                outcome = await handler.interpret(NodeContext(execution=execution, chatflow=chatflow, node=current))
            except Exception as e:
                return await self._fail(execution_id, current, e)

            updates = dict(outcome.node_updates)
            if outcome.output is not None:
                updates["output"] = outcome.output

            if outcome.action == "suspend":
                updates["status"] = "waiting"
                return await self.campaign_db.update_node_execution(execution_id, current.id, updates)

            updates["status"] = "completed"
            updates["completed_at"] = utc_now()
            execution = await self.campaign_db.update_node_execution(execution_id, current.id, updates)
            if outcome.action == "complete":
                return execution

            current = chatflow.get_node(outcome.next_node_id) if outcome.next_node_id else None
            if current is None:
                self.log_util.info(
                    service_name="NodeExecutorService",
                    message=f"No successor after node {execution.current_node_id} in execution {execution_id}, ending"
                )

    async def continue_after(self, execution_id: str, chatflow: ChatflowData, node: ChatflowNode) -> ChatflowExecution:
        """
        Move past a node whose suspension has been resolved.
        """
        next_node = chatflow.get_next_node(node)
        return await self.execute_node(execution_id, chatflow, next_node)

    async def finish_execution(self, execution_id: str) -> ChatflowExecution:
        return await self.end_handler.finish_execution(await self._get_execution(execution_id))

    async def fail_execution(self, execution_id: str, error_message: str) -> ChatflowExecution:
        self.log_util.error(service_name="NodeExecutorService", message=f"Execution {execution_id} failed: {error_message}")
        execution = await self.campaign_db.update_execution(execution_id, {
            "status": "failed",
            "failed_at": utc_now(),
            "error_message": error_message,
        })
        await self.guest_session_service.release_session_for_execution(execution.guest_id, execution_id)
        return execution

    async def _fail(self, execution_id: str, node: ChatflowNode, error: Exception) -> ChatflowExecution:
        error_message = str(error) or error.__class__.__name__
        self.log_util.error(
            service_name="NodeExecutorService",
            message=f"Node {node.id} ({node.type}) failed in execution {execution_id}: {error_message}"
        )
        await self.campaign_db.update_node_execution(execution_id, node.id, {
            "status": "failed",
            "error": error_message,
            "completed_at": utc_now(),
        })
        return await self.fail_execution(execution_id, error_message)
