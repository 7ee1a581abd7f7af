from typing import List, Optional, Dict, Any

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now
from utils.guest_filter_utils import filter_guests

# Database
from database.campaign_db import CampaignDB

# Exceptions
from exceptions.campaign_exception import NotFoundException

# Models
from models.campaign_data import CampaignGuestFilter
from models.guest_data import GuestData


class GuestService:
    """Guest lookups and the field merges chatflow nodes are allowed to make."""
    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB):
        self.log_util = log_util
        self.campaign_db = campaign_db

    async def get_guest(self, project_id: str, guest_id: str) -> GuestData:
        guest = await self.campaign_db.get_guest(project_id, guest_id)
        if guest is None:
            raise NotFoundException(message=f"Guest {guest_id} not found")
        return guest

    async def find_guest(self, project_id: str, guest_id: str) -> Optional[GuestData]:
        return await self.campaign_db.get_guest(project_id, guest_id)

    async def select_audience(self, project_id: str, guest_filter: CampaignGuestFilter) -> List[GuestData]:
        guests = await self.campaign_db.list_guests(project_id)
        audience = filter_guests(guests, guest_filter)
        self.log_util.info(
            service_name="GuestService",
            message=f"Audience for project {project_id}: {len(audience)} of {len(guests)} guests matched"
        )
        return audience

    async def apply_flow_updates(
        self,
        project_id: str,
        guest_id: str,
        rsvp_status: Optional[str] = None,
        tags: Optional[List[str]] = None,
        plus_one_confirmed: Optional[bool] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Merge chatflow-driven updates into the guest record. Tags are unioned,
        never replaced. Returns the applied updates, or None when the guest is gone.
        """
        updates: Dict[str, Any] = {}
        if rsvp_status:
            updates["rsvp_status"] = rsvp_status
            updates["rsvp_at"] = utc_now()
        if plus_one_confirmed is not None:
            updates["plus_one_confirmed"] = plus_one_confirmed

        guest = await self.campaign_db.merge_guest_fields(project_id, guest_id, updates, add_tags=tags)
        if guest is None:
            self.log_util.warning(service_name="GuestService", message=f"Guest {guest_id} not found, skipping update")
            return None
        if tags:
            updates["tags"] = guest.tags
        return updates
