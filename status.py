"""
Request status normalization.

Stored status values are free text with inconsistent casing and synonyms.
Every comparison in the workflow goes through ``normalize_status`` first.
"""
import re
from typing import Dict, Iterable, List, Optional

ACTIVE = "active"
ACCEPTED = "accepted"
DELIVERED = "delivered"
COMPLETED = "completed"
CANCELLED = "cancelled"

CANONICAL_STATUSES = (ACTIVE, ACCEPTED, DELIVERED, COMPLETED, CANCELLED)

STATUS_SYNONYMS: Dict[str, tuple] = {
    ACTIVE: ("active", "pending", "open", "available"),
    ACCEPTED: ("accepted", "approved", "taken", "in progress"),
    DELIVERED: ("delivered", "shipped", "out for delivery", "ready for pickup"),
    COMPLETED: ("completed", "finished", "done", "fulfilled", "closed"),
    CANCELLED: ("cancelled", "canceled", "rejected", "declined", "failed"),
}

_LOOKUP = {syn: canonical for canonical, syns in STATUS_SYNONYMS.items() for syn in syns}

# Statuses that imply a pasabuyer holds the claim
CLAIMED_STATUSES = (ACCEPTED, DELIVERED, COMPLETED)


def normalize_status(value) -> Optional[str]:
    """Map a raw status to its canonical value, or None when unknown."""
    if value is None:
        return None
    text = re.sub(r"[\s_\-]+", " ", str(value)).strip().lower()
    return _LOOKUP.get(text)


def status_of(doc: dict) -> Optional[str]:
    return normalize_status((doc or {}).get("status"))


def is_open_for_claim(doc: dict) -> bool:
    return status_of(doc) == ACTIVE and not doc.get("accepted_by")


def is_claimed(doc: dict) -> bool:
    return status_of(doc) in CLAIMED_STATUSES


def filter_by_status(docs: Iterable[dict], status: Optional[str]) -> List[dict]:
    """Keep docs whose normalized status matches ``status`` (any synonym accepted)."""
    if status is None:
        return list(docs)
    wanted = normalize_status(status)
    return [d for d in docs if status_of(d) == wanted]


def count_by_status(docs: Iterable[dict]) -> Dict[str, int]:
    counts = {s: 0 for s in CANONICAL_STATUSES}
    for d in docs:
        s = status_of(d)
        if s is not None:
            counts[s] += 1
    return counts
