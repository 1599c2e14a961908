"""Address, phone, website and e-mail normalization, plus geocoding of candidates."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import phonenumbers

from ingest.core.errors import GeocodingError
from ingest.core.models import Coordinates, ParsedAddress, RawCandidate
from ingest.core.throttle import RETRY_BASE_DELAY_SECONDS, RateLimiter, retry_async
from ingest.vendors.geocoder import Geocoder

logger = logging.getLogger(__name__)

STATE_ABBREVIATIONS = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE",
    "nevada": "NV", "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM",
    "new york": "NY", "north carolina": "NC", "north dakota": "ND", "ohio": "OH",
    "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}
STATE_CODES = frozenset(STATE_ABBREVIATIONS.values())

TRACKING_PARAMS = frozenset({"fbclid", "gclid", "dclid", "msclkid", "mc_cid", "mc_eid", "_ga", "ref", "igshid"})

ZIP_REGEX = re.compile(r"\b(\d{5})(?:-\d{4})?\b")
STATE_ZIP_REGEX = re.compile(r"^([A-Za-z]{2})\.?(?:\s+(\d{5})(?:-\d{4})?)?$")
CITY_STATE_ZIP_REGEX = re.compile(r"^(.+?)\s+([A-Z]{2})(?:\s+(\d{5})(?:-\d{4})?)?$")
EMAIL_REGEX = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)
_COUNTRY_SUFFIXES = {"usa", "us", "u.s.a.", "united states", "united states of america"}

NO_COORDINATES_FLAG = "missing coordinates, needs geocoding"
INCOMPLETE_ADDRESS_FLAG = "address could not be parsed into city/state"


def clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = re.sub(r"\s+", " ", value).strip()
    return cleaned or None


def state_code(value: Optional[str]) -> Optional[str]:
    """Map a two-letter code or full US state name to its code."""
    cleaned = clean_text(value)
    if not cleaned:
        return None
    cleaned = re.sub(r"\d", "", cleaned).strip(" .")
    if cleaned.upper() in STATE_CODES:
        return cleaned.upper()
    return STATE_ABBREVIATIONS.get(cleaned.lower())


def _split_state_zip(part: str) -> Tuple[Optional[str], Optional[str]]:
    match = STATE_ZIP_REGEX.match(part)
    if match and match.group(1).upper() in STATE_CODES:
        return match.group(1).upper(), match.group(2)
    return state_code(part), None


def parse_address(
    text: Optional[str],
    default_city: Optional[str] = None,
    default_state: Optional[str] = None,
) -> ParsedAddress:
    """Parse a free-form US address into street, city, state and ZIP.

    Handles "street, city, ST 12345", "street, city, State Name",
    "street, city ST 12345" and "city, ST". Unresolved parts fall back to the
    defaults; nothing is ever discarded, the raw text stays on the record.
    """
    cleaned = clean_text(text)
    fallback_state = state_code(default_state)
    if not cleaned:
        return ParsedAddress(city=clean_text(default_city), state=fallback_state)

    parts = [part.strip() for part in re.split(r"[,\n]+", cleaned) if part.strip()]
    if parts and parts[-1].lower() in _COUNTRY_SUFFIXES:
        parts = parts[:-1]

    zip_code: Optional[str] = None
    if len(parts) > 1 and ZIP_REGEX.fullmatch(parts[-1]):
        zip_code = parts.pop()[:5]
    # ZIPs sit at the end; a leading house number is not one.
    tail = parts[-1] if len(parts) > 1 else cleaned
    zip_matches = [match for match in ZIP_REGEX.finditer(tail) if match.start() > 0 or len(parts) > 1]
    if zip_code is None and zip_matches:
        zip_code = zip_matches[-1].group(1)

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None

    if len(parts) >= 3:
        street = ", ".join(parts[:-2])
        city = ZIP_REGEX.sub("", parts[-2]).strip() or None
        state, part_zip = _split_state_zip(parts[-1])
        if state is None:
            # "street, suite, city ST 12345"
            match = CITY_STATE_ZIP_REGEX.match(parts[-1])
            if match and match.group(2) in STATE_CODES:
                street = ", ".join(parts[:-1])
                city, state = match.group(1).strip(), match.group(2)
        zip_code = zip_code or part_zip
    elif len(parts) == 2:
        state, _ = _split_state_zip(parts[1])
        if state is not None:
            city = parts[0]
        else:
            street = parts[0]
            match = CITY_STATE_ZIP_REGEX.match(parts[1])
            if match and match.group(2) in STATE_CODES:
                city, state = match.group(1).strip(), match.group(2)
            else:
                city = ZIP_REGEX.sub("", parts[1]).strip() or None
    else:
        street = cleaned

    return ParsedAddress(
        street=street,
        city=city or clean_text(default_city),
        state=state or fallback_state,
        zip=zip_code,
    )


def normalize_phone(raw: Optional[str], region: Optional[str] = "US") -> Optional[str]:
    """Return the E.164 form of ``raw`` or None when it is not a possible number."""
    if not raw or not raw.strip():
        return None
    try:
        parsed = phonenumbers.parse(raw.strip(), region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_website(raw_url: Optional[str]) -> Optional[str]:
    """Normalise raw website strings into absolute URLs without tracking parameters."""
    if not raw_url:
        return None

    url = raw_url.strip()
    if not url or url.lower().startswith(("mailto:", "tel:", "javascript:")):
        return None

    parsed = urlparse(url, scheme="https")
    if not parsed.netloc:
        parsed = urlparse(f"https://{url}")

    host = parsed.netloc.lower()
    if not host or "." not in host:
        return None

    query = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in TRACKING_PARAMS
    ]
    path = parsed.path or "/"
    if not path.startswith("/"):
        path = f"/{path}"

    normalized = parsed._replace(netloc=host, path=path, query=urlencode(query), fragment="", params="")
    return urlunparse(normalized)


def normalize_email(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    candidate = raw.strip()
    if candidate.lower().startswith("mailto:"):
        candidate = candidate[7:].split("?", 1)[0]
    candidate = candidate.strip().lower()
    return candidate if EMAIL_REGEX.match(candidate) else None


@dataclass(frozen=True)
class NormalizedContact:
    address: ParsedAddress
    coordinates: Optional[Coordinates]
    phone: Optional[str]
    website: Optional[str]
    email: Optional[str]
    geocode_status: str
    flags: Tuple[str, ...] = ()


class Normalizer:
    """Normalizes contact data on a raw candidate and geocodes its address.

    Geocoding runs behind its own rate limiter and retry policy. Failures never
    fail the candidate: coordinates stay null and a review flag is added.
    """

    def __init__(
        self,
        geocoder: Optional[Geocoder],
        *,
        min_interval: float = 1.1,
        max_attempts: int = 3,
        phone_region: str = "US",
        retry_base_delay: float = RETRY_BASE_DELAY_SECONDS,
    ) -> None:
        self.geocoder = geocoder
        self.limiter = RateLimiter(min_interval, name="geocoder")
        self.max_attempts = max_attempts
        self.phone_region = phone_region
        self.retry_base_delay = retry_base_delay

    async def normalize(self, raw: RawCandidate, *, skip_geocoding: bool = False) -> NormalizedContact:
        flags = []
        parsed = parse_address(raw.address, default_city=raw.city, default_state=raw.state)
        if raw.street:
            # Structured source fields win over text parsing.
            parsed = ParsedAddress(
                street=clean_text(raw.street),
                city=clean_text(raw.city) or parsed.city,
                state=state_code(raw.state) or parsed.state,
                zip=raw.zip or parsed.zip,
            )
        elif raw.zip and not parsed.zip:
            parsed = ParsedAddress(street=parsed.street, city=parsed.city, state=parsed.state, zip=raw.zip)
        if not parsed.complete:
            flags.append(INCOMPLETE_ADDRESS_FLAG)

        phone = normalize_phone(raw.phone, self.phone_region)
        if raw.phone and phone is None:
            flags.append(f"phone could not be normalized: {raw.phone.strip()}")
        website = normalize_website(raw.website)
        email = normalize_email(raw.email)

        coordinates, status = await self._resolve_coordinates(raw, parsed, skip_geocoding)
        if coordinates is None:
            flags.append(NO_COORDINATES_FLAG)

        return NormalizedContact(
            address=parsed,
            coordinates=coordinates,
            phone=phone,
            website=website,
            email=email,
            geocode_status=status,
            flags=tuple(flags),
        )

    async def _resolve_coordinates(
        self, raw: RawCandidate, parsed: ParsedAddress, skip_geocoding: bool
    ) -> Tuple[Optional[Coordinates], str]:
        if raw.coordinates is not None:
            return raw.coordinates, "provided"
        if skip_geocoding or self.geocoder is None:
            return None, "skipped"
        if not parsed.city and not parsed.street:
            return None, "skipped"

        async def attempt() -> Optional[Coordinates]:
            await self.limiter.acquire()
            return await asyncio.to_thread(self.geocoder.geocode, parsed.street, parsed.city, parsed.state, parsed.zip)

        try:
            coordinates = await retry_async(
                attempt, attempts=self.max_attempts, description=f"geocode {raw.name}", base_delay=self.retry_base_delay
            )
        except GeocodingError as exc:
            logger.warning("Geocoding failed for %s: %s", raw.name, exc)
            return None, "failed"
        if coordinates is None:
            logger.info("No geocoding match for %s (%s, %s)", raw.name, parsed.city, parsed.state)
            return None, "no_match"
        return coordinates, "resolved"
