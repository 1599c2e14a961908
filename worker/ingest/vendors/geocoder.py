"""Client utilities for the Mapbox and Nominatim geocoding APIs."""

import logging
from typing import Optional
from urllib.parse import quote

import requests

from ingest.core.config import Settings
from ingest.core.errors import GeocodingError
from ingest.core.models import Coordinates

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_MAPBOX_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places"
_NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
REQUEST_TIMEOUT = 10


def _get(url: str, *, params, headers=None, timeout: float = REQUEST_TIMEOUT, session=None):
    session = session or _SESSION
    try:
        response = session.get(url, params=params, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        raise GeocodingError(f"geocoding request to {url} failed: {exc}") from exc
    if response.status_code == 429 or response.status_code >= 500:
        raise GeocodingError(f"geocoding provider returned HTTP {response.status_code}")
    try:
        response.raise_for_status()
    except requests.HTTPError as exc:
        raise GeocodingError(str(exc)) from exc
    try:
        return response.json()
    except ValueError as exc:
        raise GeocodingError("geocoding provider returned invalid JSON") from exc


def mapbox_search(query: str, access_token: str, *, timeout: float = REQUEST_TIMEOUT, session=None) -> Optional[Coordinates]:
    params = {"access_token": access_token, "limit": 1, "country": "us"}
    payload = _get(f"{_MAPBOX_URL}/{quote(query)}.json", params=params, timeout=timeout, session=session)
    try:
        features = payload.get("features") or []
        if not features:
            return None
        lng, lat = features[0]["center"][:2]
        return Coordinates(lat=float(lat), lng=float(lng))
    except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
        raise GeocodingError(f"unexpected Mapbox payload: {payload}") from exc


def nominatim_search(query: str, user_agent: str, *, timeout: float = REQUEST_TIMEOUT, session=None) -> Optional[Coordinates]:
    params = {"q": query, "format": "json", "limit": 1, "countrycodes": "us"}
    payload = _get(_NOMINATIM_URL, params=params, headers={"User-Agent": user_agent}, timeout=timeout, session=session)
    if not payload:
        return None
    if not isinstance(payload, list):
        raise GeocodingError(f"unexpected Nominatim payload: {payload}")
    first = payload[0]
    try:
        return Coordinates(lat=float(first["lat"]), lng=float(first["lon"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise GeocodingError(f"unexpected Nominatim payload: {first}") from exc


class Geocoder:
    """Resolves an address to coordinates.

    Mapbox is used when an access token is configured and Nominatim otherwise.
    A Mapbox error falls back to Nominatim. ``None`` means no match.
    """

    def __init__(self, settings: Settings, *, session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT) -> None:
        self.mapbox_token = settings.mapbox_access_token
        self.user_agent = settings.geocoder_user_agent
        self.session = session
        self.timeout = timeout

    def geocode(self, street: Optional[str], city: Optional[str], state: Optional[str], zip_code: Optional[str] = None) -> Optional[Coordinates]:
        query = ", ".join(part for part in (street, city, " ".join(filter(None, (state, zip_code)))) if part)
        if not query:
            return None

        if self.mapbox_token:
            try:
                return mapbox_search(query, self.mapbox_token, timeout=self.timeout, session=self.session)
            except GeocodingError as exc:
                logger.warning("Mapbox geocoding failed for %s, trying Nominatim: %s", query, exc)

        return nominatim_search(query, self.user_agent, timeout=self.timeout, session=self.session)
