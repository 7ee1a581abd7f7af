"""
Guest Session Service
Owns the "at most one active messaging session per guest" rule and the
queue of invitations deferred because another campaign holds the session.
"""
from typing import Optional, List, Tuple
from datetime import timedelta

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now
from utils import key_utils

# Database
from database.campaign_db import CampaignDB

# Exceptions
from exceptions.campaign_exception import NotFoundException, StoreException

# Models
from models.session_data import GuestSession, PendingInvitation

MAX_CLAIM_ATTEMPTS = 20


class GuestSessionService:
    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB, session_window_hours: int = 24):
        self.log_util = log_util
        self.campaign_db = campaign_db
        self.session_window = timedelta(hours=session_window_hours)

    async def get_active(self, guest_id: str) -> Optional[GuestSession]:
        """
        Return the guest's session if it is still inside its window.
        Expired sessions are deleted lazily here, there is no background sweep.
        """
        session, version = await self.campaign_db.get_session_versioned(guest_id)
        if session is None:
            return None
        if session.is_active:
            return session
        if not await self.campaign_db.delete_session(session, expected_version=version):
            # Re-claimed between the read and the delete
            session, _ = await self.campaign_db.get_session_versioned(guest_id)
            return session if session is not None and session.is_active else None
        self.log_util.info(
            service_name="GuestSessionService",
            message=f"Session {session.id} for guest {guest_id} expired, removed"
        )
        return None

    def _new_session(self, guest_id: str, guest_phone: Optional[str], campaign_id: str,
                     execution_id: str, node_id: Optional[str]) -> GuestSession:
        now = utc_now()
        return GuestSession(
            id=key_utils.new_key("session", key_utils.project_id_from_key(campaign_id)),
            guest_id=guest_id,
            guest_phone=guest_phone,
            campaign_id=campaign_id,
            execution_id=execution_id,
            session_opened_at=now,
            session_expires_at=now + self.session_window,
            last_activity_at=now,
            current_node_id=node_id,
            project_id=key_utils.project_id_from_key(campaign_id),
            created_at=now,
            updated_at=now,
        )

    def _takeover(self, existing: GuestSession, campaign_id: str, execution_id: str,
                  node_id: Optional[str]) -> GuestSession:
        now = utc_now()
        return existing.model_copy(update={
            "campaign_id": campaign_id,
            "execution_id": execution_id,
            "current_node_id": node_id,
            "session_opened_at": now,
            "session_expires_at": now + self.session_window,
            "last_activity_at": now,
            "waiting_for_reply": False,
            "updated_at": now,
        })

    async def _write_session(self, guest_id: str, guest_phone: Optional[str], campaign_id: str,
                             execution_id: str, node_id: Optional[str],
                             allow_takeover: bool) -> Tuple[bool, GuestSession]:
        for _ in range(MAX_CLAIM_ATTEMPTS):
            existing, version = await self.campaign_db.get_session_versioned(guest_id)

            if existing is not None and existing.is_active:
                if existing.execution_id != execution_id and not allow_takeover:
                    return False, existing
                candidate = self._takeover(existing, campaign_id, execution_id, node_id)
            else:
                # Absent or expired, a fresh session replaces whatever is there
                candidate = self._new_session(guest_id, guest_phone, campaign_id, execution_id, node_id)

            if await self.campaign_db.compare_and_set_session(candidate, version):
                if existing is not None and existing.id != candidate.id:
                    await self.campaign_db.drop_session_index(existing)
                if existing is None or existing.id != candidate.id:
                    await self.campaign_db.index_session(candidate)
                return True, candidate

        raise StoreException(message=f"Could not claim session for guest {guest_id}", status_code=503)

    async def claim_session(self, guest_id: str, campaign_id: str, execution_id: str,
                            node_id: Optional[str] = None,
                            guest_phone: Optional[str] = None) -> Tuple[bool, GuestSession]:
        """
        Atomically claim the guest for an execution unless another execution
        holds an active session. Returns (claimed, session); when not claimed
        the session is the blocking one.
        """
        claimed, session = await self._write_session(
            guest_id, guest_phone, campaign_id, execution_id, node_id, allow_takeover=False
        )
        if claimed:
            self.log_util.info(
                service_name="GuestSessionService",
                message=f"Guest {guest_id} claimed by execution {execution_id}"
            )
        else:
            self.log_util.info(
                service_name="GuestSessionService",
                message=f"Guest {guest_id} already in session with campaign {session.campaign_id}"
            )
        return claimed, session

    async def create_or_refresh(self, guest_id: str, campaign_id: str, execution_id: str,
                                node_id: Optional[str] = None,
                                guest_phone: Optional[str] = None) -> GuestSession:
        """
        Point the guest's session at this execution and reset the window.
        An active session owned by someone else is overwritten; callers that
        must not disturb it use claim_session instead.
        """
        _, session = await self._write_session(
            guest_id, guest_phone, campaign_id, execution_id, node_id, allow_takeover=True
        )
        return session

    async def update_session(self, guest_id: str, **updates) -> Optional[GuestSession]:
        return await self.campaign_db.mutate_session(
            guest_id, lambda session: session.model_copy(update=updates)
        )

    async def mark_waiting(self, guest_id: str, execution_id: str, node_id: str) -> Optional[GuestSession]:
        """
        Flag the session as waiting for a reply at node_id, only if this execution owns it.
        """
        def mark(session: GuestSession):
            if session.execution_id != execution_id:
                return None
            return session.model_copy(update={"waiting_for_reply": True, "current_node_id": node_id})

        return await self.campaign_db.mutate_session(guest_id, mark)

    async def refresh_activity(self, guest_id: str) -> Optional[GuestSession]:
        """
        Inbound guest activity extends the window from now.
        """
        session = await self.get_active(guest_id)
        if session is None:
            return None
        now = utc_now()
        return await self.update_session(
            guest_id,
            last_activity_at=now,
            session_expires_at=now + self.session_window,
            waiting_for_reply=False,
        )

    async def delete(self, session_id: str) -> None:
        pointer = await self.campaign_db.get_session_pointer(session_id)
        if pointer is None:
            return
        session, version = await self.campaign_db.get_session_versioned(pointer["guest_id"])
        if session is None or session.id != session_id:
            return
        await self.campaign_db.delete_session(session, expected_version=version)
        self.log_util.info(service_name="GuestSessionService", message=f"Session {session_id} closed")

    async def release_session_for_execution(self, guest_id: str, execution_id: str) -> bool:
        """
        Delete the guest's session if, and only if, it belongs to execution_id.
        """
        session, version = await self.campaign_db.get_session_versioned(guest_id)
        if session is None or session.execution_id != execution_id:
            return False
        released = await self.campaign_db.delete_session(session, expected_version=version)
        if released:
            self.log_util.info(
                service_name="GuestSessionService",
                message=f"Session {session.id} for guest {guest_id} released by execution {execution_id}"
            )
        return released

    async def list_active_sessions(self, project_id: str) -> List[GuestSession]:
        sessions = []
        for session_id in await self.campaign_db.list_active_session_ids(project_id):
            pointer = await self.campaign_db.get_session_pointer(session_id)
            if pointer is None:
                continue
            session = await self.get_active(pointer["guest_id"])
            if session is not None and session.id == session_id:
                sessions.append(session)
        return sessions

    async def create_pending_invitation(
        self,
        guest_id: str,
        campaign_id: str,
        blocked_by_campaign_id: str,
        campaign_name: Optional[str] = None,
        execution_id: Optional[str] = None,
        piggyback_message: Optional[str] = None,
        reason: str = "active_session_exists"
    ) -> PendingInvitation:
        invitation = PendingInvitation(
            id=key_utils.new_key("pending_invitation", key_utils.project_id_from_key(campaign_id)),
            guest_id=guest_id,
            campaign_id=campaign_id,
            campaign_name=campaign_name,
            execution_id=execution_id,
            reason=reason,
            blocked_by_campaign_id=blocked_by_campaign_id,
            piggyback_message=piggyback_message,
            project_id=key_utils.project_id_from_key(campaign_id),
        )
        await self.campaign_db.create_invitation(invitation)

        def attach(session: GuestSession):
            if invitation.id in session.pending_invitation_ids:
                return None
            return session.model_copy(update={
                "has_pending_invitations": True,
                "pending_invitation_ids": [*session.pending_invitation_ids, invitation.id],
            })

        await self.campaign_db.mutate_session(guest_id, attach)
        self.log_util.info(
            service_name="GuestSessionService",
            message=f"Pending invitation {invitation.id} created for guest {guest_id}, blocked by campaign {blocked_by_campaign_id}"
        )
        return invitation

    async def get_pending_invitations_for_guest(self, guest_id: str) -> List[PendingInvitation]:
        invitations = await self.campaign_db.list_invitations_by_guest(guest_id)
        return [invitation for invitation in invitations if invitation.status == "pending_piggybacking"]

    async def cancel_pending_invitation(self, invitation_id: str) -> PendingInvitation:
        invitation = await self.campaign_db.get_invitation(invitation_id)
        if invitation is None:
            raise NotFoundException(message=f"Pending invitation {invitation_id} not found")
        return await self.campaign_db.update_invitation(invitation_id, {
            "status": "cancelled",
            "waiting_for_session_open": False,
            "cancelled_at": utc_now(),
        })

    async def cancel_pending_invitations_for_campaign(self, campaign_id: str) -> int:
        cancelled = 0
        for invitation in await self.campaign_db.list_invitations_by_campaign(campaign_id):
            if invitation.status != "pending_piggybacking":
                continue
            await self.cancel_pending_invitation(invitation.id)
            cancelled += 1
        return cancelled
