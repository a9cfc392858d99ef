"""
Pasabuyer presence: online flag plus last known location.

The store is the only source of truth for "online"; a restarted process reads
it back with ``current``. Each pasabuyer writes only their own record.
"""
import logging
from typing import Any, Dict, Optional

from errors import NotFound, returns_result
from geocoding import ReverseGeocoder
from schemas import Coordinate, Presence

logger = logging.getLogger(__name__)

PRESENCE_COLLECTION = "presence"


class PresenceService:
    def __init__(self, store, geocoder: Optional[ReverseGeocoder] = None):
        self.store = store
        self.geocoder = geocoder or ReverseGeocoder()

    def current(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(PRESENCE_COLLECTION, user_id)

    def _write(self, user_id: str, coordinate: Coordinate, online: bool) -> Dict[str, Any]:
        address = self.geocoder.reverse(coordinate.latitude, coordinate.longitude)
        record = Presence(
            user_id=user_id,
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
            address=address,
            online=online,
        )
        self.store.update(PRESENCE_COLLECTION, user_id, record, upsert=True)
        return self.current(user_id)

    @returns_result
    def go_online(self, user_id: str, coordinate: Coordinate) -> Dict[str, Any]:
        logger.info("Pasabuyer %s online", user_id)
        return self._write(user_id, coordinate, online=True)

    @returns_result
    def update_location(self, user_id: str, coordinate: Coordinate) -> Dict[str, Any]:
        """Location tick; keeps the current online flag."""
        existing = self.current(user_id)
        online = bool(existing and existing.get("online"))
        return self._write(user_id, coordinate, online=online)

    @returns_result
    def go_offline(self, user_id: str) -> Dict[str, Any]:
        if not self.store.update(PRESENCE_COLLECTION, user_id, {"online": False}):
            raise NotFound(f"No presence for {user_id}")
        logger.info("Pasabuyer %s offline", user_id)
        return self.current(user_id)

    @returns_result
    def get_presence(self, user_id: str) -> Dict[str, Any]:
        doc = self.current(user_id)
        if doc is None:
            raise NotFound(f"No presence for {user_id}")
        return doc
