import asyncio
from datetime import timedelta

from utils.time_utils import utc_now
from utils import key_utils


async def test_concurrent_claims_leave_one_owner(engine):
    service = engine.guest_session_service
    results = await asyncio.gather(*[
        service.claim_session("g1", f"campaign:project-1:c{i}", f"execution:project-1:e{i}")
        for i in range(5)
    ])

    winners = [session for claimed, session in results if claimed]
    assert len(winners) == 1
    active = await service.get_active("g1")
    assert active.execution_id == winners[0].execution_id
    for claimed, session in results:
        if not claimed:
            assert session.execution_id == winners[0].execution_id

    sessions = await service.list_active_sessions("project-1")
    assert [session.guest_id for session in sessions] == ["g1"]


async def test_expired_session_is_taken_over(engine):
    service = engine.guest_session_service
    await service.claim_session("g1", "campaign:project-1:old", "execution:project-1:old")
    await service.update_session("g1", session_expires_at=utc_now() - timedelta(minutes=1))

    claimed, session = await service.claim_session("g1", "campaign:project-1:new", "execution:project-1:new")

    assert claimed is True
    assert session.campaign_id == "campaign:project-1:new"
    sessions = await service.list_active_sessions("project-1")
    assert [s.execution_id for s in sessions] == ["execution:project-1:new"]


async def test_get_active_deletes_expired_session(engine):
    service = engine.guest_session_service
    _, session = await service.claim_session("g2", "campaign:project-1:c", "execution:project-1:e")
    await service.update_session("g2", session_expires_at=utc_now() - timedelta(seconds=1))

    assert await service.get_active("g2") is None
    assert await engine.store.get(key_utils.guest_session_key("g2")) is None
    assert await service.list_active_sessions("project-1") == []


async def test_create_or_refresh_overwrites_owner(engine):
    service = engine.guest_session_service
    await service.claim_session("g1", "campaign:project-1:a", "execution:project-1:a")

    session = await service.create_or_refresh("g1", "campaign:project-1:b", "execution:project-1:b", "trigger")

    assert session.execution_id == "execution:project-1:b"
    assert session.current_node_id == "trigger"
    assert session.session_expires_at > utc_now() + timedelta(hours=23)


async def test_release_only_by_owner(engine):
    service = engine.guest_session_service
    await service.claim_session("g1", "campaign:project-1:a", "execution:project-1:a")

    assert await service.release_session_for_execution("g1", "execution:project-1:other") is False
    assert await service.get_active("g1") is not None
    assert await service.release_session_for_execution("g1", "execution:project-1:a") is True
    assert await service.get_active("g1") is None


async def test_delete_by_session_id(engine):
    service = engine.guest_session_service
    _, session = await service.claim_session("g3", "campaign:project-1:a", "execution:project-1:a")

    await service.delete(session.id)

    assert await service.get_active("g3") is None
    assert await service.list_active_sessions("project-1") == []


async def test_pending_invitation_flags_session(engine):
    service = engine.guest_session_service
    await service.claim_session("g1", "campaign:project-1:a", "execution:project-1:a")

    invitation = await service.create_pending_invitation(
        guest_id="g1",
        campaign_id="campaign:project-1:b",
        blocked_by_campaign_id="campaign:project-1:a",
        campaign_name="Reception",
    )

    session = await service.get_active("g1")
    assert session.has_pending_invitations is True
    assert session.pending_invitation_ids == [invitation.id]
    pending = await service.get_pending_invitations_for_guest("g1")
    assert [i.id for i in pending] == [invitation.id]

    assert await service.cancel_pending_invitations_for_campaign("campaign:project-1:b") == 1
    assert await service.get_pending_invitations_for_guest("g1") == []


async def test_conditional_delete_keeps_session_claimed_in_between(engine):
    service = engine.guest_session_service
    await service.claim_session("g1", "campaign:project-1:a", "execution:project-1:a")
    stale, version = await engine.campaign_db.get_session_versioned("g1")

    # Another campaign takes the guest over between the read and the delete
    fresh = stale.model_copy(update={
        "id": "session:project-1:b",
        "campaign_id": "campaign:project-1:b",
        "execution_id": "execution:project-1:b",
    })
    assert await engine.campaign_db.compare_and_set_session(fresh, version) is True

    assert await engine.campaign_db.delete_session(stale, expected_version=version) is False
    assert (await service.get_active("g1")).execution_id == "execution:project-1:b"


async def test_store_compare_and_delete_checks_version(engine):
    store = engine.store
    await store.set("session:guest:gx", {"id": "s1"})
    _, version = await store.get_versioned("session:guest:gx")
    await store.set("session:guest:gx", {"id": "s2"})

    assert await store.compare_and_delete("session:guest:gx", version) is False
    assert await store.get("session:guest:gx") == {"id": "s2"}
    assert await store.compare_and_delete("session:guest:gx", version + 1) is True
    assert await store.get("session:guest:gx") is None
    assert await store.compare_and_delete("session:guest:gx", 0) is False
