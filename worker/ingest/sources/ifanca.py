"""IFANCA (Islamic Food and Nutrition Council of America) certified companies.

IFANCA mostly certifies manufacturers and processors, so rows carry a country
and product type but no street address.
"""

import logging
from typing import AsyncIterator, List, Optional

from bs4 import BeautifulSoup

from ingest.core.config import ScraperConfig
from ingest.core.models import RawCandidate, SourceId
from ingest.etl.normalize import clean_text
from ingest.sources.base import StaticSourceAdapter

logger = logging.getLogger(__name__)

LISTING_URL = "https://ifanca.org/certified-companies/"
_US_NAMES = {"us", "usa", "u.s.a.", "united states", "united states of america"}


def category_for_product_type(product_type: str) -> str:
    lowered = product_type.lower()
    if "restaurant" in lowered or "food service" in lowered:
        return "RESTAURANT"
    if "butcher" in lowered or "meat" in lowered or "poultry" in lowered:
        return "BUTCHER"
    if "grocery" in lowered or "retail" in lowered:
        return "GROCERY"
    if "bakery" in lowered or "confection" in lowered:
        return "BAKERY"
    return "HALAL_FOOD"


def is_us(country: Optional[str]) -> bool:
    if not country:
        return False
    lowered = country.strip().lower()
    return lowered in _US_NAMES or "united states" in lowered


def parse_company_table(soup: BeautifulSoup, *, us_only: bool = False) -> List[RawCandidate]:
    candidates: List[RawCandidate] = []
    for row in soup.select("table tbody tr"):
        cells = row.find_all("td")
        if len(cells) < 3:
            continue
        company = clean_text(cells[0].get_text(" "))
        country = clean_text(cells[1].get_text(" "))
        product_type = clean_text(cells[2].get_text(" ")) or ""
        if not company or len(company) < 2:
            continue
        if us_only and not is_us(country):
            continue
        candidates.append(
            RawCandidate(
                name=company,
                source=SourceId.IFANCA,
                source_url=LISTING_URL,
                description=f"IFANCA halal certified company. Product types: {product_type}",
                category_hint=category_for_product_type(product_type),
                region=country,
                certifier="IFANCA",
                products=tuple(part.strip() for part in product_type.split(",") if part.strip()),
            )
        )
    return candidates


class IfancaSource(StaticSourceAdapter):
    source_id = SourceId.IFANCA
    display_name = "IFANCA"
    description = "IFANCA certified companies (manufacturers and processors)"

    async def iter_candidates(self, config: ScraperConfig) -> AsyncIterator[RawCandidate]:
        soup = await self.fetch_soup(LISTING_URL)
        if soup is None:
            return
        self.require(bool(soup.select("table tbody tr")), "certified companies table", LISTING_URL)
        # A state filter only makes sense for US companies.
        companies = parse_company_table(soup, us_only=bool(config.state))
        logger.info("Found %d IFANCA certified companies", len(companies))
        for candidate in companies:
            yield candidate
