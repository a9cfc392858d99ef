"""
Matching: which requests an online pasabuyer can see, and claiming one.
"""
import difflib
import logging
import re
from math import atan2, cos, radians, sin, sqrt
from typing import Any, Dict, List, Optional

import config
from chat import ChatService
from errors import AlreadyClaimed, GeolocationUnavailable, NotFound, NotPermitted, returns_result
from lifecycle import REQUEST_COLLECTION, REQUESTER, role_of, transition_changes
from presence import PresenceService
from pricing import estimate_earnings
from schemas import Coordinate
from status import ACCEPTED, is_open_for_claim, status_of

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# Known stores, name/alias -> approximate coordinate
GAZETTEER = {
    "sm city calapan": (13.3997, 121.1799),
    "xentro mall calapan": (13.4118, 121.1780),
    "calapan public market": (13.4117, 121.1798),
    "sm fairview": (14.7343, 121.0576),
    "sm city fairview": (14.7343, 121.0576),
    "trinoma": (14.6533, 121.0332),
    "sm mall of asia": (14.5352, 120.9822),
    "sm north edsa": (14.6565, 121.0296),
    "ayala malls vertis north": (14.6516, 121.0373),
}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(a: Coordinate, b: Coordinate) -> float:
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)


def _clean(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", name.lower()).strip()


def lookup_store(name: Optional[str]) -> Optional[Coordinate]:
    """Fuzzy store-name match against the gazetteer."""
    if not name:
        return None
    text = _clean(name)
    if not text:
        return None
    contained = [alias for alias in GAZETTEER if alias in text or (len(text) >= 5 and text in alias)]
    if contained:
        best = max(contained, key=len)
    else:
        close = difflib.get_close_matches(text, list(GAZETTEER), n=1, cutoff=0.8)
        if not close:
            return None
        best = close[0]
    lat, lng = GAZETTEER[best]
    return Coordinate(latitude=lat, longitude=lng)


def resolve_coordinate(doc: Dict[str, Any]) -> Optional[Coordinate]:
    loc = doc.get("user_location")
    if isinstance(loc, dict) and loc.get("latitude") is not None and loc.get("longitude") is not None:
        return Coordinate(latitude=float(loc["latitude"]), longitude=float(loc["longitude"]))
    return lookup_store(doc.get("store_location") or doc.get("location"))


class MatchingEngine:
    def __init__(self, store, chats: ChatService, presence: PresenceService,
                 radius_km: float = config.NEARBY_RADIUS_KM):
        self.store = store
        self.chats = chats
        self.presence = presence
        self.radius_km = radius_km

    def open_requests(self) -> List[Dict[str, Any]]:
        # status is matched after normalization, not in the store filter
        docs = self.store.query(REQUEST_COLLECTION, {"accepted_by": None})
        return [d for d in docs if is_open_for_claim(d)]

    @returns_result
    def nearby_requests(self, origin: Optional[Coordinate], viewer_id: Optional[str] = None,
                        radius_km: Optional[float] = None) -> List[Dict[str, Any]]:
        """Open requests within ``radius_km`` of ``origin``, nearest first."""
        if origin is None:
            raise GeolocationUnavailable("Current location is not available")
        radius = self.radius_km if radius_km is None else radius_km
        results = []
        for doc in self.open_requests():
            if viewer_id and role_of(doc, viewer_id) == REQUESTER:
                continue
            coord = resolve_coordinate(doc)
            if coord is None:
                continue
            dist = distance_km(origin, coord)
            if dist <= radius:
                results.append({
                    **doc,
                    "distance_km": round(dist, 1),
                    "estimated_earnings": estimate_earnings(doc.get("price")),
                    "_distance": dist,
                })
        results.sort(key=lambda x: x["_distance"])
        for r in results:
            r.pop("_distance")
        return results

    @returns_result
    def nearby_for_pasabuyer(self, pasabuyer_id: str, origin: Optional[Coordinate] = None,
                             radius_km: Optional[float] = None) -> List[Dict[str, Any]]:
        """Like nearby_requests, taking the origin from the pasabuyer's presence when not given."""
        if origin is None:
            record = self.presence.current(pasabuyer_id)
            if record is None or not record.get("online"):
                raise GeolocationUnavailable("Go online to see nearby requests")
            origin = Coordinate(latitude=record["latitude"], longitude=record["longitude"])
        return self.nearby_requests(origin, viewer_id=pasabuyer_id, radius_km=radius_km).unwrap()

    @returns_result
    def accept_request(self, request_id: str, pasabuyer_id: str) -> Dict[str, Any]:
        """
        Claim an active request for ``pasabuyer_id``.

        The claim is a single conditional update (status still active and
        ``accepted_by`` still empty), so of two racing pasabuyers exactly one
        wins and the other gets AlreadyClaimed. Retrying a won claim succeeds
        without writing again. The chat thread is created afterwards; failing
        to create it is reported in ``chat_error`` and leaves the claim in place.
        """
        doc = self.store.get(REQUEST_COLLECTION, request_id)
        if doc is None:
            raise NotFound(f"Request {request_id} not found")
        if role_of(doc, pasabuyer_id) == REQUESTER:
            raise NotPermitted("You cannot accept your own request")

        if doc.get("accepted_by") == pasabuyer_id and status_of(doc) == ACCEPTED:
            return self._accepted(doc, pasabuyer_id, created=False)
        if not is_open_for_claim(doc):
            raise AlreadyClaimed("This request is no longer available")

        updated = self.store.update_if(
            REQUEST_COLLECTION, request_id,
            {"status": doc.get("status"), "accepted_by": None},
            transition_changes(ACCEPTED, accepted_by=pasabuyer_id),
        )
        if updated is None:
            current = self.store.get(REQUEST_COLLECTION, request_id)
            if current is None:
                raise NotFound(f"Request {request_id} not found")
            if current.get("accepted_by") == pasabuyer_id and status_of(current) == ACCEPTED:
                return self._accepted(current, pasabuyer_id, created=False)
            logger.info("Claim on %s by %s lost to %s", request_id, pasabuyer_id, current.get("accepted_by"))
            raise AlreadyClaimed("This request is no longer available")

        logger.info("Request %s accepted by %s", request_id, pasabuyer_id)
        return self._accepted(updated, pasabuyer_id, created=True)

    def _accepted(self, doc: Dict[str, Any], pasabuyer_id: str, created: bool) -> Dict[str, Any]:
        requester_id = doc["requester"]["user_id"]
        outcome = {"request": doc, "claimed": created, "chat_id": None, "chat_error": None}
        # a retry re-checks the thread too, repairing a creation that failed the first time
        chat = self.chats.ensure_thread(doc, requester_id, pasabuyer_id)
        if chat.ok:
            outcome["chat_id"] = chat.value["id"]
        else:
            logger.warning("Request %s accepted but chat creation failed: %s", doc["id"], chat.error.message)
            outcome["chat_error"] = chat.error.to_detail()
        return outcome
