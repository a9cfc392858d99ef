import math

import pytest
from fastapi.testclient import TestClient

from database import MemoryStore
from geocoding import ReverseGeocoder
from main import Services, app, get_services
from schemas import CreateRequestPayload

CALAPAN = (13.3997, 121.1799)
KM_PER_DEGREE_LAT = 6371.0 * math.pi / 180


def north_of(origin, km):
    """Coordinate ``km`` due north of ``origin`` (exact along a meridian)."""
    return {"latitude": origin[0] + km / KM_PER_DEGREE_LAT, "longitude": origin[1]}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def services(store):
    return Services(store, geocoder=ReverseGeocoder(url=None))


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_request(services):
    def _make(user_id="req1", km=1.0, **overrides):
        data = {
            "user_id": user_id,
            "title": "Milk Tea",
            "quantity": 1,
            "item_price": 150,
            "store_location": "Gong Cha - SM City Calapan",
            "user_location": north_of(CALAPAN, km),
            "pickup_date": "2026-10-20T15:00",
        }
        data.update(overrides)
        result = services.requests.create_request(CreateRequestPayload(**data))
        assert result.ok, result.error
        return result.value
    return _make


@pytest.fixture
def seed(store):
    """Write a request document directly in any state."""
    def _seed(status, accepted_by=None, requester="req1"):
        return store.create("request", {
            "title": "Milk Tea",
            "quantity": 1,
            "price": 225,
            "store_location": "SM City Calapan",
            "requester": {"user_id": requester, "display_name": "Rina"},
            "status": status,
            "accepted_by": accepted_by,
        })
    return _seed
