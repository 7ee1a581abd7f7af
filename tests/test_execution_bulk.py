from conftest import node, edge


async def _running_execution(engine, chatflow, campaign, guest_id):
    execution = await engine.execution_service.create(campaign.id, guest_id, chatflow.id)
    return await engine.execution_service.start(execution.id, chatflow)


async def test_bulk_cancel_partitions_results(engine, invite_flow_nodes):
    chatflow = await engine.save_chatflow(*invite_flow_nodes)
    campaign = await engine.create_campaign(chatflow)
    running = await _running_execution(engine, chatflow, campaign, "g1")
    done_flow = await engine.save_chatflow([node("trigger", "trigger"), node("end", "end")], [edge("trigger", "end")])
    completed = await _running_execution(engine, done_flow, campaign, "g2")
    assert completed.status == "completed"
    missing_id = "execution:project-1:does-not-exist"

    result = await engine.execution_service.bulk_cancel([running.id, missing_id, completed.id])

    assert result.succeeded == [running.id]
    reasons = {failure.execution_id: failure.reason for failure in result.failed}
    assert reasons == {missing_id: "not_found", completed.id: "invalid_state_transition"}

    cancelled = await engine.execution_service.get_execution(running.id)
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at is not None
    assert await engine.guest_session_service.get_active("g1") is None


async def test_bulk_pause_and_resume(engine, invite_flow_nodes):
    chatflow = await engine.save_chatflow(*invite_flow_nodes)
    campaign = await engine.create_campaign(chatflow)
    first = await _running_execution(engine, chatflow, campaign, "g1")
    second = await _running_execution(engine, chatflow, campaign, "g2")

    paused = await engine.execution_service.bulk_pause([first.id, second.id])
    assert paused.succeeded == [first.id, second.id]
    again = await engine.execution_service.bulk_pause([first.id])
    assert again.failed[0].reason == "invalid_state_transition"

    resumed = await engine.execution_service.bulk_resume([first.id, second.id])
    assert resumed.succeeded == [first.id, second.id]

    execution = await engine.execution_service.get_execution(first.id)
    assert execution.status == "running"
    assert execution.paused_at is None
    assert execution.current_node_id == "wait"
    assert [n.node_id for n in execution.node_history].count("trigger") == 1
    assert len(await engine.execution_service.get_messages(first.id)) == 1


async def test_bulk_retry_only_from_failed(engine, invite_flow_nodes):
    broken = await engine.save_chatflow(
        [node("trigger", "trigger"), node("send", "send_template", templateId="tpl-missing"), node("end", "end")],
        [edge("trigger", "send"), edge("send", "end")],
    )
    campaign = await engine.create_campaign(broken)
    failed = await _running_execution(engine, broken, campaign, "g1")
    assert failed.status == "failed"

    chatflow = await engine.save_chatflow(*invite_flow_nodes)
    running = await _running_execution(engine, chatflow, campaign, "g2")

    result = await engine.execution_service.bulk_retry([failed.id, running.id])

    assert result.succeeded == [failed.id]
    assert result.failed[0].execution_id == running.id
    retried = await engine.execution_service.get_execution(failed.id)
    # The template is still missing, so the retry fails again with a fresh error
    assert retried.status == "failed"
    assert len(retried.node_history) > len(failed.node_history)
