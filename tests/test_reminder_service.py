from datetime import timedelta

import pytest

from exceptions.campaign_exception import (
    InvalidInputException,
    InvalidStateTransitionException,
    NotFoundException,
)
from utils.time_utils import utc_now


async def _running_campaign(engine, invite_flow_nodes):
    chatflow = await engine.save_chatflow(*invite_flow_nodes)
    campaign = await engine.create_campaign(chatflow)
    await engine.campaign_service.start_campaign(campaign.id)
    await engine.settle()
    return campaign


def _reminder(minutes_from_now, **fields):
    return {
        "name": "Nudge",
        "trigger_at": utc_now() + timedelta(minutes=minutes_from_now),
        "action": "resend_to_non_responders",
        **fields,
    }


async def test_create_and_list_soonest_first(engine, invite_flow_nodes):
    campaign = await _running_campaign(engine, invite_flow_nodes)
    service = engine.reminder_service

    later = await service.create_reminder(campaign.id, _reminder(120, name="Last call"))
    sooner = await service.create_reminder(campaign.id, _reminder(30))

    assert sooner.status == "scheduled"
    assert sooner.project_id == "project-1"
    assert [r.id for r in await service.list_reminders(campaign.id)] == [sooner.id, later.id]

    with pytest.raises(NotFoundException):
        await service.create_reminder("campaign:project-1:missing", _reminder(30))
    with pytest.raises(InvalidInputException):
        await service.create_reminder(campaign.id, {"name": "No time", "action": "send_follow_up"})


async def test_trigger_targets_non_responders_with_pending_rsvp(engine, invite_flow_nodes):
    campaign = await _running_campaign(engine, invite_flow_nodes)
    await engine.execution_service.handle_guest_reply("g2", "yes")
    await engine.campaign_db.update_guest("project-1", "g3", {"rsvp_status": "confirmed"})

    non_responders = await engine.reminder_service.create_reminder(
        campaign.id, _reminder(30, target_filter={"only_non_responders": True})
    )
    pending_family = await engine.reminder_service.create_reminder(
        campaign.id,
        _reminder(30, action="send_follow_up", target_filter={
            "only_pending_rsvp": True,
            "custom_filter": {"categories": ["family"]},
        }),
    )

    triggered = await engine.reminder_service.trigger_reminder(non_responders.id)
    assert triggered.status == "triggered"
    assert triggered.triggered_at is not None
    assert sorted(triggered.target_guest_ids) == ["g1", "g3"]

    triggered = await engine.reminder_service.trigger_reminder(pending_family.id)
    assert triggered.target_guest_ids == ["g1"]

    with pytest.raises(InvalidStateTransitionException):
        await engine.reminder_service.trigger_reminder(non_responders.id)


async def test_scheduler_triggers_due_reminders_only(engine, invite_flow_nodes):
    campaign = await _running_campaign(engine, invite_flow_nodes)
    due = await engine.reminder_service.create_reminder(campaign.id, _reminder(-1))
    future = await engine.reminder_service.create_reminder(campaign.id, _reminder(60))

    await engine.scheduler_service.run_once()

    assert (await engine.reminder_service.get_reminder(due.id)).status == "triggered"
    assert (await engine.reminder_service.get_reminder(future.id)).status == "scheduled"


async def test_update_only_while_scheduled(engine, invite_flow_nodes):
    campaign = await _running_campaign(engine, invite_flow_nodes)
    reminder = await engine.reminder_service.create_reminder(campaign.id, _reminder(30))

    updated = await engine.reminder_service.update_reminder(
        reminder.id, {"name": "Second nudge", "target_filter": {"only_pending_rsvp": True}}
    )
    assert updated.name == "Second nudge"
    assert updated.target_filter.only_pending_rsvp is True

    with pytest.raises(InvalidInputException):
        await engine.reminder_service.update_reminder(reminder.id, {"status": "triggered"})

    cancelled = await engine.reminder_service.update_reminder(reminder.id, {"status": "cancelled"})
    assert cancelled.status == "cancelled"
    with pytest.raises(InvalidStateTransitionException):
        await engine.reminder_service.trigger_reminder(reminder.id)
    with pytest.raises(InvalidStateTransitionException):
        await engine.reminder_service.update_reminder(reminder.id, {"name": "Too late"})


async def test_campaign_cancel_and_delete_cover_reminders(engine, invite_flow_nodes):
    campaign = await _running_campaign(engine, invite_flow_nodes)
    reminder = await engine.reminder_service.create_reminder(campaign.id, _reminder(30))

    await engine.campaign_service.cancel_campaign(campaign.id)
    assert (await engine.reminder_service.get_reminder(reminder.id)).status == "cancelled"
    with pytest.raises(InvalidStateTransitionException):
        await engine.reminder_service.create_reminder(campaign.id, _reminder(30))

    await engine.campaign_service.delete_campaign(campaign.id)
    with pytest.raises(NotFoundException):
        await engine.reminder_service.get_reminder(reminder.id)
    assert await engine.reminder_service.list_reminders(campaign.id) == []
