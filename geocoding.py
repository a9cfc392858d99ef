import logging
from typing import Optional

import httpx

import config

logger = logging.getLogger(__name__)


def format_coordinate(latitude: float, longitude: float) -> str:
    return f"{latitude:.5f}, {longitude:.5f}"


class ReverseGeocoder:
    """
    Coordinate -> address lookup against a Nominatim-compatible endpoint.

    Best effort: any failure (no endpoint configured, network error, empty
    answer) falls back to the formatted raw coordinate.
    """

    def __init__(self, url: Optional[str] = config.GEOCODER_URL, timeout: float = config.GEOCODER_TIMEOUT,
                 transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def reverse(self, latitude: float, longitude: float) -> str:
        fallback = format_coordinate(latitude, longitude)
        if not self.url:
            return fallback
        params = {"lat": latitude, "lon": longitude, "format": "json"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport,
                              headers={"User-Agent": "pasabuy-backend"}) as http:
                resp = http.get(self.url, params=params)
                resp.raise_for_status()
                address = (resp.json() or {}).get("display_name")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Reverse geocoding failed for %s: %s", fallback, e)
            return fallback
        return address or fallback
