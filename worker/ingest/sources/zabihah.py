"""Zabihah.com community halal restaurant guide.

The homepage lists restaurants near the visitor, so each city is visited with
a spoofed geolocation. Detail pages carry schema.org JSON-LD.
"""

import json
import logging
import re
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from urllib.parse import urljoin

from ingest.core.config import ScraperConfig
from ingest.core.models import Coordinates, RawCandidate, SourceId
from ingest.sources.base import BrowserSourceAdapter, Chapter

logger = logging.getLogger(__name__)

BASE_URL = "https://www.zabihah.com/"
CERTIFIER = "Zabihah (community)"

CITIES = (
    Chapter("New York", BASE_URL, "NY", "New York", Coordinates(40.7580, -73.9855)),
    Chapter("Los Angeles", BASE_URL, "CA", "Los Angeles", Coordinates(34.0522, -118.2437)),
    Chapter("Chicago", BASE_URL, "IL", "Chicago", Coordinates(41.8781, -87.6298)),
    Chapter("Houston", BASE_URL, "TX", "Houston", Coordinates(29.7604, -95.3698)),
    Chapter("Dallas", BASE_URL, "TX", "Dallas", Coordinates(32.7767, -96.7970)),
    Chapter("San Francisco", BASE_URL, "CA", "San Francisco", Coordinates(37.7749, -122.4194)),
    Chapter("Atlanta", BASE_URL, "GA", "Atlanta", Coordinates(33.7490, -84.3880)),
    Chapter("Miami", BASE_URL, "FL", "Miami", Coordinates(25.7617, -80.1918)),
    Chapter("Detroit", BASE_URL, "MI", "Detroit", Coordinates(42.3314, -83.0458)),
    Chapter("Philadelphia", BASE_URL, "PA", "Philadelphia", Coordinates(39.9526, -75.1652)),
    Chapter("Dearborn", BASE_URL, "MI", "Dearborn", Coordinates(42.3223, -83.1763)),
    Chapter("Jersey City", BASE_URL, "NJ", "Jersey City", Coordinates(40.7178, -74.0431)),
    Chapter("Paterson", BASE_URL, "NJ", "Paterson", Coordinates(40.9168, -74.1718)),
    Chapter("Fremont", BASE_URL, "CA", "Fremont", Coordinates(37.5485, -121.9886)),
    Chapter("Irving", BASE_URL, "TX", "Irving", Coordinates(32.8140, -96.9489)),
)

_LINKS_SCRIPT = "Array.from(document.querySelectorAll('a[href*=\"/restaurants/\"]')).map(a => a.getAttribute('href'))"
_LD_SCRIPT = "Array.from(document.querySelectorAll('script[type=\"application/ld+json\"]')).map(s => s.textContent || '')"
_TITLE = re.compile(r"^(.+?)\s*-\s*(.+?)\s*\|")
_TEXT_ADDRESS = re.compile(r"^(\d+\s+.+?),\s*([^,]+),\s*([A-Z]{2})$")


def restaurant_urls(hrefs: Iterable[Optional[str]]) -> List[str]:
    urls: Dict[str, None] = {}
    for href in hrefs:
        if href and "/restaurants/" in href:
            urls[urljoin(BASE_URL, href)] = None
    return list(urls)


def find_restaurant_ld(scripts: Iterable[str]) -> Optional[Dict[str, Any]]:
    for raw in scripts:
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        for item in data if isinstance(data, list) else [data]:
            if isinstance(item, dict) and item.get("@type") == "Restaurant":
                return item
    return None


def _category_for_cuisines(cuisines: List[str]) -> str:
    lowered = [cuisine.lower() for cuisine in cuisines]
    if any(word in cuisine for cuisine in lowered for word in ("grocery", "market", "supermarket")):
        return "GROCERY"
    if any("butcher" in cuisine or "meat" in cuisine for cuisine in lowered):
        return "BUTCHER"
    if any(word in cuisine for cuisine in lowered for word in ("bakery", "dessert")):
        return "BAKERY"
    return "RESTAURANT"


def candidate_from_ld(data: Dict[str, Any], url: str, chapter: Chapter) -> Optional[RawCandidate]:
    name = (data.get("name") or "").strip()
    if not name:
        return None
    address = data.get("address") or {}
    if isinstance(address, str):
        address = {"streetAddress": address}
    cuisines = data.get("servesCuisine") or []
    if isinstance(cuisines, str):
        cuisines = [cuisines]

    coordinates = None
    geo = data.get("geo") or {}
    try:
        if geo.get("latitude") is not None and geo.get("longitude") is not None:
            coordinates = Coordinates(lat=float(geo["latitude"]), lng=float(geo["longitude"]))
    except (TypeError, ValueError):
        logger.debug("Ignoring malformed geo block on %s", url)

    street = (address.get("streetAddress") or "").strip() or None
    city = (address.get("addressLocality") or "").strip() or chapter.city
    state = (address.get("addressRegion") or "").strip() or chapter.state
    zip_code = (address.get("postalCode") or "").strip() or None
    description = data.get("description") or (data.get("hasMenuSection") or {}).get("name")

    return RawCandidate(
        name=name,
        source=SourceId.ZABIHAH,
        source_url=url,
        address=", ".join(filter(None, (street, city, " ".join(filter(None, (state, zip_code)))))),
        street=street,
        city=city,
        state=state,
        zip=zip_code,
        coordinates=coordinates,
        phone=data.get("telephone"),
        website=data.get("url") if data.get("url") and "zabihah.com" not in data.get("url") else None,
        description=f"Halal restaurant listed on Zabihah. {description or ''}".strip(),
        category_hint=_category_for_cuisines(list(cuisines)),
        region=chapter.region,
        certifier=CERTIFIER,
        products=tuple(cuisines),
    )


def candidate_from_text(title: str, body: str, url: str, chapter: Chapter) -> Optional[RawCandidate]:
    match = _TITLE.match(title or "")
    if not match:
        return None
    street = city = state = None
    for line in (line.strip() for line in (body or "").split("\n")):
        found = _TEXT_ADDRESS.match(line)
        if found:
            street, city, state = found.group(1), found.group(2).strip(), found.group(3)
            break
    return RawCandidate(
        name=match.group(1).strip(),
        source=SourceId.ZABIHAH,
        source_url=url,
        address=", ".join(filter(None, (street, city, state))) or None,
        street=street,
        city=city or chapter.city,
        state=state or chapter.state,
        description="Halal restaurant listed on Zabihah",
        category_hint="RESTAURANT",
        region=chapter.region,
        certifier=CERTIFIER,
    )


class ZabihahSource(BrowserSourceAdapter):
    source_id = SourceId.ZABIHAH
    display_name = "Zabihah"
    description = "Zabihah.com halal restaurant guide"
    chapters = CITIES
    scroll_delay = 2.0

    async def iter_candidates(self, config: ScraperConfig) -> AsyncIterator[RawCandidate]:
        for chapter in self.target_chapters(config):
            geolocation = {"latitude": chapter.coordinates.lat, "longitude": chapter.coordinates.lng}
            async with self.browser_pool.context(geolocation=geolocation, permissions=["geolocation"]) as context:
                page = await context.new_page()
                if not await self.goto(page, chapter.url):
                    continue
                await self.scroll_to_bottom(page, max_scrolls=5, scroll_delay=self.scroll_delay)

                urls = restaurant_urls(await self.evaluate(page, _LINKS_SCRIPT))
                self.require(bool(urls), "restaurant links", chapter.url)
                if config.max_results:
                    urls = urls[: config.max_results]
                logger.info("Found %d restaurants near %s", len(urls), chapter.region)

                for url in urls:
                    if not await self.goto(page, url):
                        continue
                    data = find_restaurant_ld(await self.evaluate(page, _LD_SCRIPT))
                    if data is not None:
                        candidate = candidate_from_ld(data, url, chapter)
                    else:
                        title = await self.within_timeout(page.title(), f"title of {url}")
                        body_text = await self.evaluate(page, "document.body.innerText")
                        candidate = candidate_from_text(title, body_text, url, chapter)
                    if candidate is None:
                        self.record_error(f"no restaurant data on {url}", kind="structural")
                        continue
                    yield candidate
