"""HMS (Halal Monitoring Services) certified listing.

The listing lazy-loads cards while scrolling, so it is rendered in a browser.
"""

import logging
import re
from typing import AsyncIterator, List, Optional

from ingest.core.config import ScraperConfig
from ingest.core.models import RawCandidate, SourceId
from ingest.etl.normalize import state_code
from ingest.sources.base import BrowserSourceAdapter, Chapter

logger = logging.getLogger(__name__)

LISTING_URL = "https://www.hmsusa.org/certified-listing"
CARD_SELECTOR = ".MagicListing.record-list"

CATEGORY_MAP = {
    "RESTAURANTS": "RESTAURANT",
    "CATERERS": "CATERING",
    "RETAIL STORE": "GROCERY",
    "SLAUGHTER HOUSE": "BUTCHER",
    "PROCESSORS": "HALAL_FOOD",
    "FURTHER PROCESSOR": "HALAL_FOOD",
    "DISTRIBUTOR": "HALAL_FOOD",
}

_CARD_ADDRESS = re.compile(r"^(.+),\s*(.+),\s*([A-Z]{2})\s*(\d{5})$")
_CITY_STATE = re.compile(r"^(.+?),\s*([A-Z]{2})\s*(\d{5})?")
_PHONE = re.compile(r"(?:Phone:?\s*)?(\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4})", re.IGNORECASE)
_STREET = re.compile(r"^\d+\s+\w+")
_HEADER_WORDS = ("certified", "listing", "search", "filter", "category", "home", "about", "contact", "copyright")

_CARDS_SCRIPT = f"Array.from(document.querySelectorAll('{CARD_SELECTOR}')).map(el => el.innerText || '')"


def _candidate(chapter: Chapter, name: str, **fields) -> RawCandidate:
    fields.setdefault("state", chapter.state)
    return RawCandidate(
        name=name,
        source=SourceId.HMS,
        source_url=chapter.url,
        region=chapter.region,
        certifier="HMS",
        description=fields.pop("description", "HMS certified zabiha halal establishment"),
        **fields,
    )


def _labelled(lines: List[str], label: str) -> Optional[str]:
    if label in lines:
        index = lines.index(label)
        if index + 1 < len(lines):
            return lines[index + 1]
    return None


def parse_card(text: str, chapter: Chapter) -> Optional[RawCandidate]:
    """Cards read: category, name, "street, city, ST 12345", then optional labelled fields."""
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if len(lines) < 3:
        return None
    category, name, full_address = lines[0], lines[1], lines[2]
    if len(name) < 2 or name == category:
        return None

    street, city, state, zip_code = full_address, None, None, None
    match = _CARD_ADDRESS.match(full_address)
    if match:
        street, city, state, zip_code = (group.strip() for group in match.groups())
    else:
        city = _labelled(lines, "City")
        state = state_code(_labelled(lines, "State"))

    products_line = next((line for line in lines if line.startswith("Products:")), None)
    products = tuple(products_line.replace("Products:", "").split()) if products_line else ()

    return _candidate(
        chapter,
        name,
        address=full_address,
        street=street if match else None,
        city=city,
        state=state or chapter.state,
        zip=zip_code,
        category_hint=CATEGORY_MAP.get(category.upper(), "RESTAURANT"),
        products=products,
    )


def _is_header(line: str) -> bool:
    lowered = line.lower()
    return len(line) < 3 or any(lowered == word or lowered.startswith(f"{word} ") for word in _HEADER_WORDS)


def parse_listing_text(text: str, chapter: Chapter) -> List[RawCandidate]:
    """Fallback for pages without cards: name, street line, "City, ST 12345", phone."""
    results: List[RawCandidate] = []
    current: dict = {}

    def flush() -> None:
        if current.get("name") and current.get("street"):
            address = ", ".join(filter(None, (current["street"], current.get("city_line"))))
            results.append(
                _candidate(
                    chapter,
                    current["name"],
                    address=address,
                    city=current.get("city"),
                    state=current.get("state") or chapter.state,
                    zip=current.get("zip"),
                    phone=current.get("phone"),
                    category_hint="RESTAURANT",
                )
            )

    for line in (line.strip() for line in text.split("\n")):
        if not line or _is_header(line):
            continue
        city_state = _CITY_STATE.match(line)
        phone = _PHONE.search(line)
        if city_state and current.get("name") and current.get("street"):
            current.update(city=city_state.group(1).strip(), state=city_state.group(2), zip=city_state.group(3), city_line=line)
        elif _STREET.match(line) and current.get("name") and not current.get("street"):
            current["street"] = line
        elif phone and current.get("name"):
            current["phone"] = phone.group(1)
        elif re.match(r"^(County|State|City):", line, re.IGNORECASE):
            continue
        elif 3 < len(line) < 100 and "@" not in line:
            flush()
            current = {"name": line}
    flush()
    return results


class HmsSource(BrowserSourceAdapter):
    source_id = SourceId.HMS
    display_name = "HMS"
    description = "Halal Monitoring Services certified establishments"
    chapters = (Chapter("National", LISTING_URL, "NJ"),)
    scroll_delay = 1.5

    def target_chapters(self, config: ScraperConfig) -> List[Chapter]:
        # One national page; the state filter applies to the listings instead.
        if config.region and config.region.lower() not in {"national", "usa", "us"}:
            return []
        return list(self.chapters)

    async def iter_candidates(self, config: ScraperConfig) -> AsyncIterator[RawCandidate]:
        for chapter in self.target_chapters(config):
            async with self.browser_pool.context() as context:
                page = await context.new_page()
                if not await self.goto(page, chapter.url):
                    continue
                await self.scroll_to_bottom(page, scroll_delay=self.scroll_delay)

                card_texts = await self.evaluate(page, _CARDS_SCRIPT)
                listings = [card for card in (parse_card(text, chapter) for text in card_texts) if card]
                if not listings:
                    body_text = await self.evaluate(page, "document.body.innerText")
                    listings = parse_listing_text(body_text or "", chapter)
                    self.require(bool(card_texts) or bool(listings), "certified listing cards", chapter.url)

            logger.info("Found %d HMS establishments", len(listings))
            for candidate in listings:
                if config.state and candidate.state != config.state:
                    continue
                yield candidate
