import itertools

import pytest

from errors import AlreadyClaimed, InvalidTransition, NotPermitted, ValidationError
from lifecycle import PASABUYER, REQUESTER, TRANSITIONS, allowed_actions, can_transition, is_valid_transition
from schemas import CreateRequestPayload, EditRequestPayload
from status import ACCEPTED, ACTIVE, CANCELLED, CANONICAL_STATUSES, COMPLETED, DELIVERED, is_claimed, status_of

LISTED = {
    (None, ACTIVE),
    (ACTIVE, ACCEPTED),
    (ACTIVE, CANCELLED),
    (ACCEPTED, DELIVERED),
    (ACCEPTED, CANCELLED),
    (DELIVERED, COMPLETED),
    (DELIVERED, CANCELLED),
}


def test_only_listed_transitions_are_valid():
    for src, dst in itertools.product((None,) + CANONICAL_STATUSES, CANONICAL_STATUSES):
        assert is_valid_transition(src, dst) == ((src, dst) in LISTED)
    assert set(TRANSITIONS) == LISTED


def test_roles_per_transition():
    assert can_transition(ACTIVE, ACCEPTED, PASABUYER)
    assert not can_transition(ACTIVE, ACCEPTED, REQUESTER)
    assert can_transition(ACCEPTED, CANCELLED, PASABUYER)
    assert not can_transition(DELIVERED, CANCELLED, PASABUYER)
    assert not can_transition(DELIVERED, COMPLETED, PASABUYER)
    assert not can_transition(ACCEPTED, DELIVERED, None)


def _claimed(status):
    return "pb1" if status != ACTIVE else None


@pytest.mark.parametrize("status", CANONICAL_STATUSES)
def test_requester_cancel(services, seed, status):
    rid = seed(status, _claimed(status))
    result = services.requests.cancel_request(rid, "req1")
    assert result.ok == (status in (ACTIVE, ACCEPTED, DELIVERED))
    if not result.ok:
        assert isinstance(result.error, InvalidTransition)


@pytest.mark.parametrize("status", CANONICAL_STATUSES)
def test_pasabuyer_cancel(services, seed, status):
    rid = seed(status, _claimed(status))
    result = services.requests.cancel_request(rid, "pb1")
    assert result.ok == (status == ACCEPTED)


@pytest.mark.parametrize("status", CANONICAL_STATUSES)
def test_mark_delivered(services, seed, status):
    rid = seed(status, _claimed(status))
    assert services.requests.mark_delivered(rid, "pb1").ok == (status == ACCEPTED)


@pytest.mark.parametrize("status", CANONICAL_STATUSES)
def test_confirm_receipt(services, seed, status):
    rid = seed(status, _claimed(status))
    assert services.requests.confirm_receipt(rid, "req1").ok == (status == DELIVERED)


@pytest.mark.parametrize("status", CANONICAL_STATUSES)
def test_accept_from_each_state(services, seed, status):
    rid = seed(status, _claimed(status))
    result = services.matching.accept_request(rid, "pb2")
    assert result.ok == (status == ACTIVE)
    if not result.ok:
        assert isinstance(result.error, AlreadyClaimed)


def test_create_validates_fields(services):
    result = services.requests.create_request(CreateRequestPayload(
        user_id="req1", title="  ", store_location="", quantity=0,
    ))
    assert not result.ok
    assert isinstance(result.error, ValidationError)
    assert set(result.error.fields) == {"title", "store_location", "pickup_date", "quantity"}
    assert services.store.query("request") == []


def test_create_sets_fees_and_owner(make_request):
    doc = make_request(item_price=1000)
    assert doc["status"] == ACTIVE
    assert doc["accepted_by"] is None
    assert doc["price"] == 1000 + 50 + 25
    assert doc["requester"]["user_id"] == "req1"
    assert doc["requester"]["display_name"] == "Requester"


def test_mark_delivered_only_by_acceptor(services, make_request):
    doc = make_request()
    services.matching.accept_request(doc["id"], "pb1").unwrap()

    denied = services.requests.mark_delivered(doc["id"], "req1")
    assert isinstance(denied.error, NotPermitted)
    other = services.requests.mark_delivered(doc["id"], "pb2")
    assert isinstance(other.error, NotPermitted)

    delivered = services.requests.mark_delivered(doc["id"], "pb1").unwrap()
    assert delivered["status"] == DELIVERED
    assert delivered["delivered_at"] is not None


def test_confirm_twice_is_rejected(services, make_request):
    doc = make_request()
    services.matching.accept_request(doc["id"], "pb1").unwrap()
    services.requests.mark_delivered(doc["id"], "pb1").unwrap()

    done = services.requests.confirm_receipt(doc["id"], "req1").unwrap()
    assert done["status"] == COMPLETED
    assert done["confirmed_by"] == "req1"

    again = services.requests.confirm_receipt(doc["id"], "req1")
    assert isinstance(again.error, InvalidTransition)
    assert services.requests.get_request(doc["id"]).value["status"] == COMPLETED


def test_cancel_keeps_claim_and_reason(services, make_request):
    doc = make_request()
    services.matching.accept_request(doc["id"], "pb1").unwrap()
    cancelled = services.requests.cancel_request(doc["id"], "pb1").unwrap()
    assert cancelled["status"] == CANCELLED
    assert cancelled["accepted_by"] == "pb1"
    assert cancelled["cancelled_by"] == "pb1"
    assert cancelled["cancellation_reason"] == "Cancelled by pasabuyer"
    assert cancelled["cancelled_at"] is not None


def test_report_issue_only_after_delivery(services, make_request):
    doc = make_request()
    services.matching.accept_request(doc["id"], "pb1").unwrap()
    early = services.requests.report_issue(doc["id"], "req1", "late")
    assert isinstance(early.error, InvalidTransition)

    services.requests.mark_delivered(doc["id"], "pb1").unwrap()
    reported = services.requests.report_issue(doc["id"], "req1", "wrong flavor ").unwrap()
    assert reported["status"] == CANCELLED
    assert reported["reported_by"] == "req1"
    assert reported["cancellation_reason"] == "Issue reported by requester: wrong flavor"


def test_edit_only_while_active(services, make_request):
    doc = make_request()
    edited = services.requests.edit_request(doc["id"], EditRequestPayload(
        user_id="req1", title="Taro Milk Tea", item_price=2000,
    )).unwrap()
    assert edited["title"] == "Taro Milk Tea"
    assert edited["price"] == 2000 + 100 + 40

    stranger = services.requests.edit_request(doc["id"], EditRequestPayload(user_id="pb1", title="x"))
    assert isinstance(stranger.error, NotPermitted)

    services.matching.accept_request(doc["id"], "pb1").unwrap()
    late = services.requests.edit_request(doc["id"], EditRequestPayload(user_id="req1", title="x"))
    assert isinstance(late.error, InvalidTransition)


def test_delete_only_while_active(services, make_request):
    doc = make_request()
    assert isinstance(services.requests.delete_request(doc["id"], "pb1").error, NotPermitted)
    assert services.requests.delete_request(doc["id"], "req1").ok
    assert services.requests.get_request(doc["id"]).error.code == "not_found"

    other = make_request()
    services.matching.accept_request(other["id"], "pb1").unwrap()
    assert isinstance(services.requests.delete_request(other["id"], "req1").error, InvalidTransition)


def test_listings_use_normalized_status(services, seed):
    seed("Pending")
    seed("In Progress", "pb1")
    seed("shipped", "pb1")
    seed("accepted", "pb9", requester="someone-else")

    mine = services.requests.list_requester_requests("req1").unwrap()
    assert len(mine) == 3
    assert len(services.requests.list_requester_requests("req1", "active").unwrap()) == 1

    to_deliver = services.requests.list_pasabuyer_orders("pb1", "accepted").unwrap()
    assert len(to_deliver) == 1
    assert len(services.requests.list_pasabuyer_orders("pb1").unwrap()) == 2


def test_allowed_actions(services, make_request):
    doc = make_request()
    assert allowed_actions(doc, "req1") == ["edit", "delete", "cancel"]
    assert allowed_actions(doc, "pb1") == ["accept"]

    accepted = services.matching.accept_request(doc["id"], "pb1").unwrap()["request"]
    assert allowed_actions(accepted, "pb1") == ["cancel", "mark_delivered", "message"]
    assert allowed_actions(accepted, "req1") == ["cancel", "message"]
    assert allowed_actions(accepted, "pb2") == []

    delivered = services.requests.mark_delivered(doc["id"], "pb1").unwrap()
    assert allowed_actions(delivered, "req1") == ["cancel", "confirm_receipt", "report_issue", "message"]


@pytest.mark.parametrize("raw,action,expected", [
    ("Ready-For-Pickup", "confirm", COMPLETED),
    ("out_for_delivery ", "confirm", COMPLETED),
    ("In_Progress", "deliver", DELIVERED),
    (" Taken", "cancel", CANCELLED),
])
def test_transitions_from_legacy_spellings(services, seed, raw, action, expected):
    rid = seed(raw, "pb1")
    steps = {
        "confirm": lambda: services.requests.confirm_receipt(rid, "req1"),
        "deliver": lambda: services.requests.mark_delivered(rid, "pb1"),
        "cancel": lambda: services.requests.cancel_request(rid, "pb1"),
    }
    assert steps[action]().unwrap()["status"] == expected


def test_edit_accepts_padded_active_status(services, seed):
    rid = seed("Active ")
    edited = services.requests.edit_request(rid, EditRequestPayload(user_id="req1", quantity=2)).unwrap()
    assert edited["quantity"] == 2


def _assert_claim_invariant(doc, claimed_by):
    if status_of(doc) == CANCELLED:
        # cancellation keeps whoever held the claim
        assert doc["accepted_by"] == claimed_by
    else:
        assert bool(doc["accepted_by"]) == is_claimed(doc)


@pytest.mark.parametrize("path", [
    ("accept", "deliver", "confirm"),
    ("requester_cancel",),
    ("accept", "pasabuyer_cancel"),
    ("accept", "requester_cancel"),
    ("accept", "deliver", "requester_cancel"),
    ("accept", "deliver", "report"),
])
def test_accepted_by_tracks_claim_through_lifecycle(services, make_request, path):
    doc = make_request()
    rid = doc["id"]
    steps = {
        "accept": lambda: services.matching.accept_request(rid, "pb1").unwrap()["request"],
        "deliver": lambda: services.requests.mark_delivered(rid, "pb1").unwrap(),
        "confirm": lambda: services.requests.confirm_receipt(rid, "req1").unwrap(),
        "requester_cancel": lambda: services.requests.cancel_request(rid, "req1").unwrap(),
        "pasabuyer_cancel": lambda: services.requests.cancel_request(rid, "pb1").unwrap(),
        "report": lambda: services.requests.report_issue(rid, "req1", "melted").unwrap(),
    }
    claimed_by = None
    _assert_claim_invariant(doc, claimed_by)
    for step in path:
        doc = steps[step]()
        if step == "accept":
            claimed_by = "pb1"
        _assert_claim_invariant(doc, claimed_by)
        assert services.requests.get_request(rid).unwrap() == doc
