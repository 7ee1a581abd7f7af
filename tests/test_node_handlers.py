import asyncio

import pytest

from exceptions.campaign_exception import NodeExecutionFailure
from services.node_handlers import evaluate_condition
from services.node_executor_service import get_node_phase


def test_equals_case_insensitive():
    assert evaluate_condition("YES", "equals", "yes", case_sensitive=False) is True
    assert evaluate_condition("YES", "equals", "yes", case_sensitive=True) is False


def test_not_equals_and_contains():
    assert evaluate_condition("maybe", "not_equals", "yes") is True
    assert evaluate_condition("Yes, with my wife", "contains", "wife") is True
    assert evaluate_condition("Yes, with my WIFE", "contains", "wife") is False


def test_matches_uses_regex_search():
    assert evaluate_condition("I will come", "matches", r"^i\s+will", case_sensitive=False) is True
    assert evaluate_condition("nope", "matches", r"^(yes|ya)$") is False


def test_missing_variable_compares_as_empty_string():
    assert evaluate_condition(None, "equals", "") is True
    assert evaluate_condition(None, "contains", "yes") is False


def test_unknown_operator_and_bad_pattern_fail_the_node():
    with pytest.raises(NodeExecutionFailure):
        evaluate_condition("a", "greater_than", "b")
    with pytest.raises(NodeExecutionFailure):
        evaluate_condition("a", "matches", "(")


def test_node_phases():
    assert get_node_phase("send_template") == "Blasting Phase"
    assert get_node_phase("wait_reply") == "Response Phase"
    assert get_node_phase("condition") == "Processing Phase"
    assert get_node_phase("delay") == "Follow-up Phase"
    assert get_node_phase("end") == "Completion"


async def test_concurrent_tag_updates_keep_every_tag(engine, monkeypatch):
    read_versioned = engine.store.get_versioned

    async def interleaving_read(key):
        result = await read_versioned(key)
        await asyncio.sleep(0)
        return result

    monkeypatch.setattr(engine.store, "get_versioned", interleaving_read)

    await asyncio.gather(
        engine.guest_service.apply_flow_updates("project-1", "g1", tags=["ceremony"]),
        engine.guest_service.apply_flow_updates("project-1", "g1", tags=["reception"], rsvp_status="confirmed"),
    )

    guest = await engine.guest_service.get_guest("project-1", "g1")
    assert sorted(guest.tags) == ["ceremony", "reception", "vip"]
    assert guest.rsvp_status == "confirmed"


async def test_flow_update_for_missing_guest_is_skipped(engine):
    assert await engine.guest_service.apply_flow_updates("project-1", "nobody", tags=["vip"]) is None
