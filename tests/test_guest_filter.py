from models.campaign_data import CampaignGuestFilter
from models.guest_data import GuestData
from utils.guest_filter_utils import filter_guests
from utils.time_utils import utc_now


def _guests():
    return [
        GuestData(id="a", name="A", phone="1", category="family", invitation_type="both",
                  rsvp_status="pending", tags=["vip"], project_id="p"),
        GuestData(id="b", name="B", phone="2", category="friend", invitation_type="reception_only",
                  rsvp_status="confirmed", plus_one=True, project_id="p"),
        GuestData(id="c", name="C", phone="3", category="family", invitation_type="ceremony_only",
                  rsvp_status="declined", tags=["choir", "vip"], checked_in_at=utc_now(), project_id="p"),
    ]


def _ids(guests):
    return [guest.id for guest in guests]


def test_empty_filter_selects_everyone():
    assert _ids(filter_guests(_guests(), CampaignGuestFilter())) == ["a", "b", "c"]


def test_custom_guest_ids_override_other_fields():
    guest_filter = CampaignGuestFilter(custom_guest_ids=["b"], categories=["family"])
    assert _ids(filter_guests(_guests(), guest_filter)) == ["b"]


def test_predicates_are_anded():
    guest_filter = CampaignGuestFilter(categories=["family"], rsvp_statuses=["pending", "declined"],
                                       invitation_types=["ceremony_only"])
    assert _ids(filter_guests(_guests(), guest_filter)) == ["c"]


def test_tags_match_any():
    assert _ids(filter_guests(_guests(), CampaignGuestFilter(tags=["choir", "nobody"]))) == ["c"]
    assert _ids(filter_guests(_guests(), CampaignGuestFilter(tags=["vip"]))) == ["a", "c"]


def test_plus_one_and_checked_in():
    assert _ids(filter_guests(_guests(), CampaignGuestFilter(has_plus_one=True))) == ["b"]
    assert _ids(filter_guests(_guests(), CampaignGuestFilter(checked_in=True))) == ["c"]
    assert _ids(filter_guests(_guests(), CampaignGuestFilter(checked_in=False))) == ["a", "b"]
