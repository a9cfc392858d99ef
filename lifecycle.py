r"""
Request lifecycle state machine.

    (new) -> active -> accepted -> delivered -> completed
                \          \           \
                 +----------+-----------+--> cancelled

Every committed transition is a conditional write on the request's current
status, so a request never moves backward and a writer that lost a race sees
``InvalidTransition`` instead of overwriting the winner.

Cancelling keeps ``accepted_by`` so the record shows who held the claim.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pricing
from errors import InvalidTransition, NotFound, NotPermitted, ValidationError, returns_result
from schemas import CreateRequestPayload, EditRequestPayload, Request
from status import (
    ACCEPTED,
    ACTIVE,
    CANCELLED,
    COMPLETED,
    DELIVERED,
    filter_by_status,
    is_claimed,
    status_of,
)

logger = logging.getLogger(__name__)

REQUEST_COLLECTION = "request"

REQUESTER = "requester"
PASABUYER = "pasabuyer"

# (from, to) -> roles allowed to make the move; None is "not yet created"
TRANSITIONS = {
    (None, ACTIVE): frozenset({REQUESTER}),
    (ACTIVE, ACCEPTED): frozenset({PASABUYER}),
    (ACTIVE, CANCELLED): frozenset({REQUESTER}),
    (ACCEPTED, DELIVERED): frozenset({PASABUYER}),
    (ACCEPTED, CANCELLED): frozenset({REQUESTER, PASABUYER}),
    (DELIVERED, COMPLETED): frozenset({REQUESTER}),
    (DELIVERED, CANCELLED): frozenset({REQUESTER}),
}

TIMESTAMP_FIELDS = {
    ACCEPTED: "accepted_at",
    DELIVERED: "delivered_at",
    COMPLETED: "completed_at",
    CANCELLED: "cancelled_at",
}

# action name -> (from, to)
ACTIONS = {
    "mark_delivered": (ACCEPTED, DELIVERED),
    "confirm_receipt": (DELIVERED, COMPLETED),
    "report_issue": (DELIVERED, CANCELLED),
}


def is_valid_transition(src: Optional[str], dst: str) -> bool:
    return (src, dst) in TRANSITIONS


def can_transition(src: Optional[str], dst: str, role: Optional[str]) -> bool:
    return role in TRANSITIONS.get((src, dst), frozenset())


def role_of(doc: Dict[str, Any], user_id: str) -> Optional[str]:
    """Role ``user_id`` plays on an existing request, or None if unrelated."""
    if not user_id:
        return None
    if (doc.get("requester") or {}).get("user_id") == user_id:
        return REQUESTER
    if doc.get("accepted_by") and doc.get("accepted_by") == user_id:
        return PASABUYER
    return None


def transition_changes(dst: str, **extra) -> Dict[str, Any]:
    """Fields written by a transition into ``dst``."""
    changes = {"status": dst}
    if dst in TIMESTAMP_FIELDS:
        changes[TIMESTAMP_FIELDS[dst]] = datetime.now(timezone.utc)
    changes.update(extra)
    return changes


def allowed_actions(doc: Dict[str, Any], user_id: str) -> List[str]:
    src = status_of(doc)
    role = role_of(doc, user_id)
    actions = []
    if src == ACTIVE and role is None and not doc.get("accepted_by"):
        actions.append("accept")
    if src == ACTIVE and role == REQUESTER:
        actions.extend(["edit", "delete"])
    if can_transition(src, CANCELLED, role):
        actions.append("cancel")
    for name, (frm, to) in ACTIONS.items():
        if src == frm and can_transition(src, to, role):
            actions.append(name)
    if role is not None and is_claimed(doc):
        actions.append("message")
    return actions


def _require(value, field: str, errors: Dict[str, str], message: str = "required"):
    if value is None or (isinstance(value, str) and not value.strip()):
        errors[field] = message


def validate_new_request(req: CreateRequestPayload) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    _require(req.user_id, "user_id", errors)
    _require(req.title, "title", errors, "Please enter an item name.")
    _require(req.store_location, "store_location", errors, "Please select a store location.")
    _require(req.pickup_date, "pickup_date", errors, "Please choose a pickup time.")
    if req.quantity is None or req.quantity < 1:
        errors["quantity"] = "Quantity must be at least 1."
    return errors


class RequestService:
    def __init__(self, store, users):
        self.store = store
        self.users = users

    def _load(self, request_id: str) -> Dict[str, Any]:
        doc = self.store.get(REQUEST_COLLECTION, request_id)
        if doc is None:
            raise NotFound(f"Request {request_id} not found")
        return doc

    def _commit(self, doc: Dict[str, Any], dst: str, conditions: Optional[Dict[str, Any]] = None,
                **extra) -> Dict[str, Any]:
        src = status_of(doc)
        query = {"status": doc.get("status")}
        query.update(conditions or {})
        updated = self.store.update_if(REQUEST_COLLECTION, doc["id"], query, transition_changes(dst, **extra))
        if updated is None:
            current = self.store.get(REQUEST_COLLECTION, doc["id"])
            if current is None:
                raise NotFound(f"Request {doc['id']} not found")
            raise InvalidTransition(f"Request is now {status_of(current) or 'unknown'}")
        logger.info("Request %s: %s -> %s", doc["id"], src, dst)
        return updated

    def _transition(self, request_id: str, actor_id: str, dst: str, **extra) -> Dict[str, Any]:
        doc = self._load(request_id)
        src = status_of(doc)
        if not is_valid_transition(src, dst):
            raise InvalidTransition(f"Cannot move request from {src or 'unknown'} to {dst}")
        role = role_of(doc, actor_id)
        if not can_transition(src, dst, role):
            raise NotPermitted(f"{role or 'This user'} cannot move request from {src} to {dst}")
        conditions = {}
        if doc.get("accepted_by"):
            conditions["accepted_by"] = doc["accepted_by"]
        return self._commit(doc, dst, conditions, **extra)

    # ------------------ Requester ------------------

    @returns_result
    def create_request(self, req: CreateRequestPayload) -> Dict[str, Any]:
        errors = validate_new_request(req)
        if errors:
            raise ValidationError("Invalid request", errors)
        fees = pricing.fee_breakdown(req.item_price)
        requester = self.users.get_profile(req.user_id, REQUESTER)
        data = req.model_dump(exclude={"user_id"})
        data.update({
            "title": req.title.strip(),
            "store_location": req.store_location.strip(),
            "note": (req.note or "").strip(),
            "price": fees["estimated_total"],
            "requester": requester,
            "status": ACTIVE,
            "accepted_by": None,
        })
        request_id = self.store.create(REQUEST_COLLECTION, Request(**data))
        logger.info("Request %s created by %s", request_id, req.user_id)
        return self.store.get(REQUEST_COLLECTION, request_id)

    @returns_result
    def get_request(self, request_id: str) -> Dict[str, Any]:
        return self._load(request_id)

    @returns_result
    def edit_request(self, request_id: str, req: EditRequestPayload) -> Dict[str, Any]:
        doc = self._load(request_id)
        if role_of(doc, req.user_id) != REQUESTER:
            raise NotPermitted("Only the requester can edit this request")
        if status_of(doc) != ACTIVE:
            raise InvalidTransition("Only active requests can be edited")
        changes = req.model_dump(exclude={"user_id"}, exclude_unset=True)
        errors: Dict[str, str] = {}
        if "title" in changes:
            _require(changes["title"], "title", errors, "Please enter an item name.")
        if "store_location" in changes:
            _require(changes["store_location"], "store_location", errors, "Please select a store location.")
        if "quantity" in changes and (changes["quantity"] is None or changes["quantity"] < 1):
            errors["quantity"] = "Quantity must be at least 1."
        if errors:
            raise ValidationError("Invalid request", errors)
        for field in ("title", "store_location", "note"):
            if isinstance(changes.get(field), str):
                changes[field] = changes[field].strip()
        if changes.get("item_price") is not None:
            changes["price"] = pricing.fee_breakdown(changes["item_price"])["estimated_total"]
        updated = self.store.update_if(
            REQUEST_COLLECTION, request_id,
            {"status": doc.get("status"), "accepted_by": None},
            changes,
        )
        if updated is None:
            raise InvalidTransition("Request was accepted or cancelled before the edit was saved")
        return updated

    @returns_result
    def delete_request(self, request_id: str, user_id: str) -> str:
        doc = self._load(request_id)
        if role_of(doc, user_id) != REQUESTER:
            raise NotPermitted("Only the requester can delete this request")
        if status_of(doc) != ACTIVE or doc.get("accepted_by"):
            raise InvalidTransition("Only active requests can be deleted")
        self.store.delete(REQUEST_COLLECTION, request_id)
        logger.info("Request %s deleted by %s", request_id, user_id)
        return request_id

    @returns_result
    def cancel_request(self, request_id: str, actor_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        doc = self._load(request_id)
        role = role_of(doc, actor_id)
        default = "Cancelled by requester" if role == REQUESTER else "Cancelled by pasabuyer"
        return self._transition(
            request_id, actor_id, CANCELLED,
            cancelled_by=actor_id,
            cancellation_reason=(reason or "").strip() or default,
        )

    @returns_result
    def confirm_receipt(self, request_id: str, actor_id: str) -> Dict[str, Any]:
        return self._transition(request_id, actor_id, COMPLETED, confirmed_by=actor_id)

    @returns_result
    def report_issue(self, request_id: str, actor_id: str, issue: str) -> Dict[str, Any]:
        doc = self._load(request_id)
        if status_of(doc) != DELIVERED:
            raise InvalidTransition("Issues can only be reported on delivered requests")
        return self._transition(
            request_id, actor_id, CANCELLED,
            cancelled_by=actor_id,
            reported_by=actor_id,
            cancellation_reason=f"Issue reported by requester: {issue.strip()}",
        )

    @returns_result
    def list_requester_requests(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        docs = self.store.query(REQUEST_COLLECTION, {"requester.user_id": user_id}, sort=[("created_at", -1)])
        return filter_by_status(docs, status)

    # ------------------ Pasabuyer ------------------

    @returns_result
    def mark_delivered(self, request_id: str, actor_id: str) -> Dict[str, Any]:
        return self._transition(request_id, actor_id, DELIVERED)

    @returns_result
    def list_pasabuyer_orders(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        docs = self.store.query(REQUEST_COLLECTION, {"accepted_by": user_id}, sort=[("accepted_at", -1)])
        return filter_by_status(docs, status)
