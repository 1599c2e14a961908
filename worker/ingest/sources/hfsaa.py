"""HFSAA (Halal Food Standards Alliance of America) regional chapter listings."""

import logging
from typing import AsyncIterator, List

from bs4 import BeautifulSoup

from ingest.core.config import ScraperConfig
from ingest.core.models import RawCandidate, SourceId
from ingest.etl.normalize import clean_text
from ingest.sources.base import Chapter, StaticSourceAdapter

logger = logging.getLogger(__name__)

CERTIFIER = "HFSAA"

CHAPTERS = (
    Chapter("Chicago", "https://www.hfsaa.org/chicago", "IL", "Chicago"),
    Chapter("Detroit", "https://www.hfsaa.org/detroit", "MI", "Detroit"),
    Chapter("Indianapolis", "https://www.hfsaa.org/indianapolis", "IN", "Indianapolis"),
    Chapter("Columbus", "https://www.hfsaa.org/columbus", "OH", "Columbus"),
    Chapter("New York", "https://www.hfsaa.org/newyork", "NY", "New York"),
    Chapter("New Jersey", "https://www.hfsaa.org/newjersey", "NJ", "Newark"),
    Chapter("Pennsylvania", "https://www.hfsaa.org/pennsylvania", "PA", "Philadelphia"),
    Chapter("Bay Area", "https://www.hfsaa.org/bayarea", "CA", "Fremont"),
    Chapter("Los Angeles", "https://www.hfsaa.org/losangeles", "CA", "Los Angeles"),
    Chapter("Seattle", "https://www.hfsaa.org/seattle", "WA", "Seattle"),
    Chapter("Atlanta", "https://www.hfsaa.org/atlanta", "GA", "Atlanta"),
    Chapter("Florida", "https://www.hfsaa.org/florida", "FL", "Miami"),
    Chapter("Texas", "https://www.hfsaa.org/texas", "TX", "Houston"),
    Chapter("Dallas", "https://www.hfsaa.org/dallas", "TX", "Dallas"),
)

_LIST_SELECTOR = "ul li, .establishment, .business-listing, .listing-item"
_CARD_SELECTOR = ".card, .business-card, .establishment-card, [class*='listing']"
_SKIP_WORDS = ("establishment", "click", "view", "menu")


def _looks_like_name(name: str) -> bool:
    lowered = name.lower()
    return len(name) > 2 and not any(word in lowered for word in _SKIP_WORDS)


def _candidate(chapter: Chapter, name: str, address: str, **extra) -> RawCandidate:
    return RawCandidate(
        name=name,
        source=SourceId.HFSAA,
        source_url=chapter.url,
        address=address or None,
        city=chapter.city,
        state=chapter.state,
        description=f"HFSAA certified zabiha halal establishment in the {chapter.region} area",
        category_hint="restaurant",
        region=chapter.region,
        certifier=CERTIFIER,
        **extra,
    )


def parse_chapter_page(soup: BeautifulSoup, chapter: Chapter) -> List[RawCandidate]:
    """Extract listings from a chapter page.

    Chapters use one of three layouts: a table, a plain list or cards. They are
    tried in that order and the first that yields anything wins.
    """
    candidates: List[RawCandidate] = []

    for row in soup.select("table tr"):
        cells = row.find_all("td")
        if len(cells) < 2:
            continue
        name = clean_text(cells[0].get_text(" ")) or ""
        address = clean_text(cells[1].get_text(" ")) or ""
        phone = clean_text(cells[2].get_text(" ")) if len(cells) > 2 else None
        if _looks_like_name(name):
            has_digits = phone is not None and any(ch.isdigit() for ch in phone)
            candidates.append(_candidate(chapter, name, address, phone=phone if has_digits else None))
    if candidates:
        return candidates

    for item in soup.select(_LIST_SELECTOR):
        lines = [clean_text(line) for line in item.get_text("\n").replace(",", "\n").split("\n")]
        lines = [line for line in lines if line]
        if len(lines) < 2 or not _looks_like_name(lines[0]):
            continue
        candidates.append(_candidate(chapter, lines[0], ", ".join(lines[1:])))
    if candidates:
        return candidates

    for card in soup.select(_CARD_SELECTOR):
        name_el = card.select_one("h2, h3, h4, .title, .name, [class*='name']")
        if name_el is None:
            continue
        name = clean_text(name_el.get_text(" ")) or ""
        if not _looks_like_name(name):
            continue
        address_el = card.select_one(".address, [class*='address'], p")
        phone_el = card.select_one(".phone, [class*='phone'], a[href^='tel']")
        website_el = card.select_one("a[href^='http']")
        candidates.append(
            _candidate(
                chapter,
                name,
                clean_text(address_el.get_text(" ")) if address_el else "",
                phone=clean_text(phone_el.get_text(" ")) if phone_el else None,
                website=website_el.get("href") if website_el else None,
            )
        )
    return candidates


def has_listing_markup(soup: BeautifulSoup) -> bool:
    return bool(soup.select("table tr td") or soup.select(_LIST_SELECTOR) or soup.select(_CARD_SELECTOR))


class HfsaaSource(StaticSourceAdapter):
    source_id = SourceId.HFSAA
    display_name = "HFSAA"
    description = "Halal Food Standards Alliance of America certified establishments"
    chapters = CHAPTERS

    async def iter_candidates(self, config: ScraperConfig) -> AsyncIterator[RawCandidate]:
        for chapter in self.target_chapters(config):
            soup = await self.fetch_soup(chapter.url)
            if soup is None:
                continue
            self.require(has_listing_markup(soup), "listing table, list or cards", chapter.url)
            listings = parse_chapter_page(soup, chapter)
            logger.info("Found %d establishments in %s", len(listings), chapter.region)
            for candidate in listings:
                yield candidate
