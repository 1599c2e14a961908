import pytest
import requests

from ingest.core.config import Settings
from ingest.core.errors import GeocodingError
from ingest.core.models import Coordinates
from ingest.vendors import geocoder


class DummyResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummySession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, params, headers, timeout))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def patch_session(monkeypatch):
    def install(*responses):
        session = DummySession(responses)
        monkeypatch.setattr(geocoder, "_SESSION", session)
        return session

    return install


def test_nominatim_used_without_mapbox_token(patch_session):
    session = patch_session(DummyResponse(payload=[{"lat": "41.99", "lon": "-87.69"}]))
    client = geocoder.Geocoder(Settings(database_url="", geocoder_user_agent="TestBot/1.0"))

    result = client.geocode("2800 W Devon Ave", "Chicago", "IL", "60659")

    assert result == Coordinates(41.99, -87.69)
    url, params, headers, timeout = session.calls[0]
    assert "nominatim" in url
    assert params["q"] == "2800 W Devon Ave, Chicago, IL 60659"
    assert headers == {"User-Agent": "TestBot/1.0"}
    assert timeout == 10


def test_mapbox_preferred_when_token_set(patch_session):
    session = patch_session(DummyResponse(payload={"features": [{"center": [-83.2, 42.3]}]}))
    client = geocoder.Geocoder(Settings(database_url="", mapbox_access_token="pk.test"))

    result = client.geocode(None, "Dearborn", "MI")

    assert result == Coordinates(42.3, -83.2)
    url, params, _, _ = session.calls[0]
    assert "mapbox" in url
    assert params["access_token"] == "pk.test"


def test_mapbox_error_falls_back_to_nominatim(patch_session):
    session = patch_session(
        DummyResponse(status_code=503),
        DummyResponse(payload=[{"lat": "40.9", "lon": "-74.17"}]),
    )
    client = geocoder.Geocoder(Settings(database_url="", mapbox_access_token="pk.test"))

    assert client.geocode("1 Main St", "Paterson", "NJ") == Coordinates(40.9, -74.17)
    assert len(session.calls) == 2


def test_no_match_returns_none(patch_session):
    patch_session(DummyResponse(payload=[]))
    client = geocoder.Geocoder(Settings(database_url=""))

    assert client.geocode("Nowhere", "Atlantis", "ZZ") is None


@pytest.mark.parametrize(
    "response",
    [
        DummyResponse(status_code=429),
        DummyResponse(status_code=403),
        DummyResponse(payload=None),
        requests.Timeout("slow"),
    ],
)
def test_provider_errors_raise_geocoding_error(patch_session, response):
    patch_session(response)
    client = geocoder.Geocoder(Settings(database_url=""))

    with pytest.raises(GeocodingError):
        client.geocode("1 Main St", "Houston", "TX")


def test_empty_address_skips_request(patch_session):
    session = patch_session()
    client = geocoder.Geocoder(Settings(database_url=""))

    assert client.geocode(None, None, None) is None
    assert session.calls == []


def test_dropped_connection_raises_geocoding_error(patch_session):
    patch_session(requests.exceptions.ChunkedEncodingError("connection broken"))
    client = geocoder.Geocoder(Settings(database_url=""))

    with pytest.raises(GeocodingError):
        client.geocode("1 Main St", "Houston", "TX")


@pytest.mark.parametrize(
    "payload",
    [
        {"features": [{"place_name": "Houston"}]},
        {"features": [{"center": []}]},
        ["not", "an", "object"],
    ],
)
def test_malformed_mapbox_payload_falls_back_to_nominatim(patch_session, payload):
    session = patch_session(
        DummyResponse(payload=payload),
        DummyResponse(payload=[{"lat": "29.76", "lon": "-95.37"}]),
    )
    client = geocoder.Geocoder(Settings(database_url="", mapbox_access_token="pk.test"))

    assert client.geocode("1 Main St", "Houston", "TX") == Coordinates(29.76, -95.37)
    assert len(session.calls) == 2


@pytest.mark.parametrize("payload", [{"error": "Unable to geocode"}, [{"lat": "north"}], [None]])
def test_malformed_nominatim_payload_raises_geocoding_error(patch_session, payload):
    patch_session(DummyResponse(payload=payload))
    client = geocoder.Geocoder(Settings(database_url=""))

    with pytest.raises(GeocodingError):
        client.geocode("1 Main St", "Houston", "TX")


def test_timeout_is_passed_to_provider(patch_session):
    session = patch_session(DummyResponse(payload=[]))
    client = geocoder.Geocoder(Settings(database_url=""), timeout=2.5)

    client.geocode("1 Main St", "Houston", "TX")

    assert session.calls[0][3] == 2.5
