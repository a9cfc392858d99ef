import httpx

from errors import NotFound
from geocoding import ReverseGeocoder
from presence import PresenceService
from pricing import fee_breakdown
from schemas import Coordinate

HERE = Coordinate(latitude=13.4117, longitude=121.1798)


def _geocoder(handler):
    return ReverseGeocoder(url="https://geo.example/reverse", transport=httpx.MockTransport(handler))


def test_reverse_geocode_uses_display_name():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"display_name": "Calapan Public Market, Calapan City"})

    assert _geocoder(handler).reverse(HERE.latitude, HERE.longitude) == "Calapan Public Market, Calapan City"
    assert seen["params"]["format"] == "json"


def test_reverse_geocode_falls_back_to_coordinate():
    failing = _geocoder(lambda request: httpx.Response(500))
    assert failing.reverse(13.4117, 121.1798) == "13.41170, 121.17980"
    empty = _geocoder(lambda request: httpx.Response(200, json={}))
    assert empty.reverse(13.4117, 121.1798) == "13.41170, 121.17980"
    assert ReverseGeocoder(url=None).reverse(1, 2) == "1.00000, 2.00000"


def test_presence_lifecycle(store):
    geocoder = _geocoder(lambda request: httpx.Response(200, json={"display_name": "Calapan City"}))
    presence = PresenceService(store, geocoder)

    online = presence.go_online("pb1", HERE).unwrap()
    assert online["online"] is True
    assert online["address"] == "Calapan City"

    moved = presence.update_location("pb1", Coordinate(latitude=13.40, longitude=121.18)).unwrap()
    assert moved["online"] is True
    assert moved["latitude"] == 13.40

    offline = presence.go_offline("pb1").unwrap()
    assert offline["online"] is False
    assert offline["latitude"] == 13.40

    # a fresh service over the same store sees the stored flag
    assert PresenceService(store, geocoder).get_presence("pb1").unwrap()["online"] is False


def test_presence_unknown_user(store):
    presence = PresenceService(store, ReverseGeocoder(url=None))
    assert isinstance(presence.go_offline("ghost").error, NotFound)
    assert isinstance(presence.get_presence("ghost").error, NotFound)
    tick = presence.update_location("ghost", HERE).unwrap()
    assert tick["online"] is False


def test_fee_breakdown():
    assert fee_breakdown(150) == {"service_fee": 50, "platform_fee": 25, "total_fees": 75, "estimated_total": 225}
    assert fee_breakdown(5000) == {"service_fee": 250, "platform_fee": 100, "total_fees": 350, "estimated_total": 5350}
    assert fee_breakdown(0)["estimated_total"] == 75
