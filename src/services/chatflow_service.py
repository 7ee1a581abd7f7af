from typing import List, Dict, Any

# Utils
from utils.log_utils import LogUtil

# Database
from database.campaign_db import CampaignDB

# Models
from models.chatflow_data import ChatflowData

# Exceptions
from exceptions.campaign_exception import NotFoundException, ChatflowValidationException


def _has_cycle(chatflow: ChatflowData) -> bool:
    adjacency: Dict[str, List[str]] = {node.id: [] for node in chatflow.nodes}
    for edge in chatflow.edges:
        adjacency.setdefault(edge.source, []).append(edge.target)

    visiting, done = set(), set()

    def visit(node_id: str) -> bool:
        if node_id in visiting:
            return True
        if node_id in done:
            return False
        visiting.add(node_id)
        for target in adjacency.get(node_id, []):
            if visit(target):
                return True
        visiting.discard(node_id)
        done.add(node_id)
        return False

    return any(visit(node_id) for node_id in adjacency)


def validate_chatflow(chatflow: ChatflowData) -> Dict[str, Any]:
    """
    Publish-time graph checks. Returns {"valid", "errors", "warnings"}.
    """
    errors: List[str] = []
    warnings: List[str] = []
    nodes = chatflow.nodes
    edges = chatflow.edges

    if not nodes:
        return {"valid": False, "errors": ["Flow must have at least one node"], "warnings": warnings}

    node_ids = {node.id for node in nodes}
    for edge in edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            errors.append(f"Edge {edge.id or edge.source + '->' + edge.target} references a missing node")

    triggers = [n for n in nodes if n.type == "trigger"]
    if not triggers:
        errors.append("Flow must have a trigger node")
    elif len(triggers) > 1:
        errors.append("Flow can only have one trigger node")

    ends = [n for n in nodes if n.type == "end"]
    if not ends:
        errors.append("Flow must have at least one end node")

    connected = {e.source for e in edges} | {e.target for e in edges}
    orphans = [n for n in nodes if n.id not in connected and n.type != "trigger" and len(nodes) > 1]
    if orphans:
        errors.append(f"{len(orphans)} disconnected node(s): {', '.join(n.label for n in orphans)}")

    if len(triggers) == 1 and len(nodes) > 1 and not any(e.source == triggers[0].id for e in edges):
        errors.append("Trigger node must connect to another node")

    for end_node in ends:
        if len(nodes) > 1 and not any(e.target == end_node.id for e in edges):
            errors.append(f'End node "{end_node.label}" is not connected')

    for node in nodes:
        outputs = [e for e in edges if e.source == node.id]
        config = node.config

        if node.type == "condition":
            if not outputs:
                errors.append(f'Condition "{node.label}" has no outputs')
            elif len(outputs) > 2:
                errors.append(f'Condition "{node.label}" has too many outputs (max 2)')
            else:
                handles = [e.sourceHandle for e in outputs]
                if any(handle not in ("true", "false") for handle in handles):
                    errors.append(f'Condition "{node.label}" outputs must use the "true"/"false" handles')
                elif len(set(handles)) != len(handles):
                    errors.append(f'Condition "{node.label}" has two outputs on the same handle')
                elif len(outputs) == 1:
                    warnings.append(f'Condition "{node.label}" should have 2 outputs (true/false paths)')
            if not config.get("variable"):
                errors.append(f'Condition "{node.label}" needs a variable to check')
            if not config.get("value"):
                errors.append(f'Condition "{node.label}" needs a value to compare')
        elif len(outputs) > 1:
            errors.append(f'Node "{node.label}" has {len(outputs)} outgoing edges, only one is allowed')

        if node.type == "end" and outputs:
            warnings.append(f'End node "{node.label}" has outgoing edges that will never run')

        if node.type == "send_template" and not config.get("templateId"):
            errors.append(f'Send Template "{node.label}" has no template selected')

        if node.type == "trigger" and config.get("type") == "keyword" and not config.get("keyword"):
            errors.append(f'Trigger "{node.label}" needs a keyword')

        if node.type == "wait_reply":
            timeout = config.get("timeout")
            if timeout is not None and timeout < 0:
                errors.append(f'Wait Reply "{node.label}" has invalid timeout value')

        if node.type == "delay":
            duration = config.get("duration")
            if not duration or duration <= 0:
                errors.append(f'Delay "{node.label}" needs a valid duration')

        if node.type == "guest_form":
            questions = config.get("questions") or []
            if not questions:
                errors.append(f'Guest Form "{node.label}" needs at least one question')
            for index, question in enumerate(questions, start=1):
                if not question.get("variableName"):
                    errors.append(f'Guest Form "{node.label}" question {index} needs a variable name')
                if not question.get("question"):
                    errors.append(f'Guest Form "{node.label}" question {index} needs question text')
                if question.get("type") == "choice" and not question.get("options"):
                    errors.append(f'Guest Form "{node.label}" question {index} (choice type) needs options')

    if _has_cycle(chatflow):
        errors.append("Flow contains circular dependency (infinite loop)")

    return {"valid": not errors, "errors": errors, "warnings": warnings}


class ChatflowService:
    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB):
        self.log_util = log_util
        self.campaign_db = campaign_db

    async def create_chatflow(self, project_id: str, chatflow_data: dict) -> ChatflowData:
        chatflow = ChatflowData.model_validate({**chatflow_data, "project_id": project_id, "status": "draft"})
        chatflow.id = None
        saved = await self.campaign_db.create_chatflow(chatflow)
        self.log_util.info(service_name="ChatflowService", message=f"Chatflow {saved.id} created")
        return saved

    async def get_chatflow(self, chatflow_id: str) -> ChatflowData:
        chatflow = await self.campaign_db.get_chatflow(chatflow_id)
        if chatflow is None:
            raise NotFoundException(message=f"Chatflow {chatflow_id} not found")
        return chatflow

    async def list_chatflows(self, project_id: str) -> List[ChatflowData]:
        return await self.campaign_db.list_chatflows(project_id)

    async def update_chatflow(self, chatflow_id: str, chatflow_data: dict) -> ChatflowData:
        await self.get_chatflow(chatflow_id)
        allowed = {key: chatflow_data[key] for key in ("name", "description", "nodes", "edges") if key in chatflow_data}
        # Editing a published flow sends it back to draft until re-validated
        allowed["status"] = "draft"
        return await self.campaign_db.update_chatflow(chatflow_id, allowed)

    async def publish_chatflow(self, chatflow_id: str) -> ChatflowData:
        chatflow = await self.get_chatflow(chatflow_id)
        result = validate_chatflow(chatflow)
        if not result["valid"]:
            self.log_util.warning(
                service_name="ChatflowService",
                message=f"Chatflow {chatflow_id} failed validation: {result['errors']}"
            )
            raise ChatflowValidationException(
                message=f"Chatflow is invalid: {'; '.join(result['errors'])}",
                errors=result["errors"]
            )
        return await self.campaign_db.update_chatflow(chatflow_id, {"status": "published"})
