import asyncio

from conftest import node, edge
from models.scheduled_job_data import ScheduledJobData
from utils.time_utils import utc_now


async def _start_invite(engine, invite_flow_nodes, guest_id):
    chatflow = await engine.save_chatflow(*invite_flow_nodes)
    campaign = await engine.create_campaign(chatflow, guest_filter={"custom_guest_ids": [guest_id]})
    await engine.campaign_service.start_campaign(campaign.id)
    await engine.settle()
    [execution] = await engine.execution_service.list_executions(campaign.id)
    return chatflow, campaign, execution


async def _make_jobs_due(engine):
    for record in await engine.store.scan_by_prefix("job:"):
        await engine.campaign_db.save_job(_due(record))


async def test_run_once_releases_due_delay(engine):
    chatflow = await engine.save_chatflow(
        [node("t", "trigger"), node("pause", "delay", duration=0.05, unit="seconds"), node("end", "end")],
        [edge("t", "pause"), edge("pause", "end")],
    )
    campaign = await engine.create_campaign(chatflow, guest_filter={"custom_guest_ids": ["g1"]})
    await engine.campaign_service.start_campaign(campaign.id)
    await engine.settle()

    [execution] = await engine.execution_service.list_executions(campaign.id)
    assert execution.status == "running"

    await asyncio.sleep(0.1)
    assert await engine.scheduler_service.run_once() == 1

    execution = await engine.execution_service.get_execution(execution.id)
    assert execution.status == "completed"
    assert (await engine.campaign_service.get_campaign(campaign.id)).status == "completed"
    assert await engine.store.scan_by_prefix("job:") == []


async def test_fired_timeout_job_is_deleted(engine, invite_flow_nodes):
    _, _, execution = await _start_invite(engine, invite_flow_nodes, "g1")
    await _make_jobs_due(engine)

    assert await engine.scheduler_service.process_due_jobs() == 1

    assert await engine.store.scan_by_prefix("job:") == []
    stored = await engine.execution_service.get_execution(execution.id)
    assert stored.status == "completed"
    assert stored.latest_node_execution("wait").output == {"timed_out": True}


async def test_stale_job_is_dropped(engine, invite_flow_nodes):
    _, _, execution = await _start_invite(engine, invite_flow_nodes, "g2")

    # Guest answers before the timeout, the timeout job then finds nothing waiting
    await engine.execution_service.handle_guest_reply("g2", "yes")
    await _make_jobs_due(engine)

    assert await engine.scheduler_service.process_due_jobs() == 0
    assert await engine.store.scan_by_prefix("job:") == []
    assert (await engine.execution_service.get_execution(execution.id)).status == "completed"


async def test_job_for_deleted_chatflow_fails_execution_once(engine, invite_flow_nodes):
    chatflow, _, execution = await _start_invite(engine, invite_flow_nodes, "g1")
    await engine.store.delete(chatflow.id)
    await _make_jobs_due(engine)

    assert await engine.scheduler_service.process_due_jobs() == 0

    assert await engine.store.scan_by_prefix("job:") == []
    stored = await engine.execution_service.get_execution(execution.id)
    assert stored.status == "failed"
    assert "not found" in stored.error_message
    assert await engine.guest_session_service.get_active("g1") is None
    assert await engine.scheduler_service.process_due_jobs() == 0


async def test_failing_job_is_given_up_after_max_attempts(engine, invite_flow_nodes, monkeypatch):
    _, _, execution = await _start_invite(engine, invite_flow_nodes, "g1")
    await _make_jobs_due(engine)

    async def broken_handler(job):
        raise RuntimeError("store hiccup")

    monkeypatch.setattr(engine.execution_service, "handle_scheduled_job", broken_handler)
    engine.scheduler_service.max_job_attempts = 2

    await engine.scheduler_service.process_due_jobs()
    [job] = await engine.campaign_db.get_due_jobs()
    assert job.attempts == 1
    assert job.last_error == "store hiccup"
    assert (await engine.execution_service.get_execution(execution.id)).status == "running"

    await engine.scheduler_service.process_due_jobs()
    assert await engine.store.scan_by_prefix("job:") == []
    stored = await engine.execution_service.get_execution(execution.id)
    assert stored.status == "failed"
    assert "store hiccup" in stored.error_message


async def test_start_and_stop_loop(engine):
    await engine.scheduler_service.start()
    await engine.scheduler_service.start()
    await asyncio.sleep(0.06)
    await engine.scheduler_service.stop()
    assert engine.scheduler_service._task is None


def _due(record):
    job = ScheduledJobData.model_validate(record)
    return job.model_copy(update={"run_at": utc_now()})
