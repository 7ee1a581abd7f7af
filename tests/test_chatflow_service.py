import pytest

from conftest import node, edge, PROJECT_ID
from exceptions.campaign_exception import ChatflowValidationException, NotFoundException
from models.chatflow_data import ChatflowData
from services.chatflow_service import validate_chatflow


def _chatflow(nodes, edges) -> ChatflowData:
    return ChatflowData.model_validate({"name": "flow", "nodes": nodes, "edges": edges})


def test_valid_invite_flow(invite_flow_nodes):
    result = validate_chatflow(_chatflow(*invite_flow_nodes))
    assert result == {"valid": True, "errors": [], "warnings": []}


def test_trigger_and_end_are_required():
    result = validate_chatflow(_chatflow(
        [node("a", "trigger"), node("b", "trigger"), node("c", "update_guest", tags=["x"])],
        [edge("a", "c"), edge("b", "c")],
    ))
    assert not result["valid"]
    assert "Flow can only have one trigger node" in result["errors"]
    assert "Flow must have at least one end node" in result["errors"]


def test_non_condition_fan_out_is_rejected():
    result = validate_chatflow(_chatflow(
        [node("t", "trigger"), node("e1", "end"), node("e2", "end")],
        [edge("t", "e1"), edge("t", "e2")],
    ))
    assert result["errors"] == ['Node "t" has 2 outgoing edges, only one is allowed']


def test_condition_handles():
    nodes = [
        node("t", "trigger"),
        node("c", "condition", variable="reply", operator="equals", value="yes"),
        node("e1", "end"),
        node("e2", "end"),
    ]
    same_handle = validate_chatflow(_chatflow(nodes, [edge("t", "c"), edge("c", "e1", "true"), edge("c", "e2", "true")]))
    assert 'Condition "c" has two outputs on the same handle' in same_handle["errors"]

    one_branch = validate_chatflow(_chatflow(nodes[:3], [edge("t", "c"), edge("c", "e1", "false")]))
    assert one_branch["valid"]
    assert one_branch["warnings"] == ['Condition "c" should have 2 outputs (true/false paths)']


def test_cycle_and_node_config_errors():
    result = validate_chatflow(_chatflow(
        [
            node("t", "trigger"),
            node("s", "send_template"),
            node("d", "delay", duration=0),
            node("w", "wait_reply", timeout=-5),
            node("end", "end"),
        ],
        [edge("t", "s"), edge("s", "d"), edge("d", "w"), edge("w", "s"), edge("d", "end")],
    ))
    errors = result["errors"]
    assert 'Send Template "s" has no template selected' in errors
    assert 'Delay "d" needs a valid duration' in errors
    assert 'Wait Reply "w" has invalid timeout value' in errors
    assert "Flow contains circular dependency (infinite loop)" in errors


async def test_publish_and_edit(engine, invite_flow_nodes):
    nodes, edges = invite_flow_nodes
    service = engine.chatflow_service
    chatflow = await service.create_chatflow(PROJECT_ID, {"name": "Invite", "nodes": nodes, "edges": edges})
    assert chatflow.id.startswith(f"chatflow:{PROJECT_ID}:")
    assert chatflow.status == "draft"

    published = await service.publish_chatflow(chatflow.id)
    assert published.status == "published"

    edited = await service.update_chatflow(chatflow.id, {"name": "Invite v2", "edges": edges[:1]})
    assert edited.status == "draft"
    assert edited.name == "Invite v2"

    with pytest.raises(ChatflowValidationException) as error:
        await service.publish_chatflow(chatflow.id)
    assert error.value.errors
    assert [c.id for c in await service.list_chatflows(PROJECT_ID)] == [chatflow.id]

    with pytest.raises(NotFoundException):
        await service.get_chatflow("chatflow:project-1:missing")
