from typing import List

from models.campaign_data import CampaignGuestFilter
from models.guest_data import GuestData


def filter_guests(guests: List[GuestData], guest_filter: CampaignGuestFilter) -> List[GuestData]:
    """
    Select a campaign audience.

    A non-empty custom_guest_ids list is the only criterion. Otherwise every
    configured predicate must hold: category, invitation type and RSVP status
    set membership, any-tag intersection, has_plus_one equality and
    checked_in presence.
    """
    if guest_filter.custom_guest_ids:
        wanted = set(guest_filter.custom_guest_ids)
        return [guest for guest in guests if guest.id in wanted]

    filtered = guests

    if guest_filter.categories:
        filtered = [g for g in filtered if g.category in guest_filter.categories]

    if guest_filter.invitation_types:
        filtered = [g for g in filtered if g.invitation_type in guest_filter.invitation_types]

    if guest_filter.rsvp_statuses:
        filtered = [g for g in filtered if g.rsvp_status in guest_filter.rsvp_statuses]

    if guest_filter.tags:
        filtered = [g for g in filtered if any(tag in g.tags for tag in guest_filter.tags)]

    if guest_filter.has_plus_one is not None:
        filtered = [g for g in filtered if g.plus_one == guest_filter.has_plus_one]

    if guest_filter.checked_in is not None:
        filtered = [g for g in filtered if (g.checked_in_at is not None) == guest_filter.checked_in]

    return filtered
