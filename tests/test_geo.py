import pytest

from app.domain.items import Coordinates, TextLocation, UnknownLocation, parse_location
from app.services.geo import distance_km, haversine_km


def test_identity_and_symmetry():
    a = Coordinates(lat=40.0, lng=-73.0)
    b = Coordinates(lat=48.85, lng=2.35)
    assert distance_km(a, a) == 0
    assert distance_km(a, b) == pytest.approx(distance_km(b, a))


def test_short_distance_scenario():
    km = distance_km({"lat": 40.0, "lng": -73.0}, {"lat": 40.01, "lng": -73.01})
    assert 1.2 < km < 1.5


def test_known_long_distance():
    # New York -> London, roughly 5570 km
    km = haversine_km(Coordinates(lat=40.7128, lng=-74.0060), Coordinates(lat=51.5074, lng=-0.1278))
    assert 5500 < km < 5650


def test_unknown_is_none_never_zero():
    here = {"lat": 40.0, "lng": -73.0}
    assert distance_km(None, here) is None
    assert distance_km("Central Park", here) is None
    assert distance_km({"lat": "abc", "lng": 1}, here) is None
    assert distance_km({"lat": 120, "lng": 1}, here) is None
    assert distance_km("{not json", "{not json") is None


def test_parse_location_variants():
    assert isinstance(parse_location(None), UnknownLocation)
    assert isinstance(parse_location(""), UnknownLocation)
    assert parse_location("Main station") == TextLocation(text="Main station")
    assert parse_location('{"lat": 1.5, "lng": 2.5}') == Coordinates(lat=1.5, lng=2.5)
    # GeoJSON order is [lng, lat]
    assert parse_location({"coordinates": [2.5, 1.5]}) == Coordinates(lat=1.5, lng=2.5)
    assert isinstance(parse_location({"lat": float("nan"), "lng": 0}), UnknownLocation)
