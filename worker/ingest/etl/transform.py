"""Utilities for turning normalized candidates into scored establishments."""

import logging
import re
from typing import Dict, List, Optional, Tuple

from ingest.core.models import RawCandidate, ScrapedEstablishment, SignalAnalysis
from ingest.etl.normalize import NormalizedContact, clean_text

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "OTHER"

CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "MASJID": ("masjid", "mosque", "islamic center", "musalla", "prayer hall"),
    "BUTCHER": ("butcher", "meat market", "meat shop", "slaughter", "zabiha"),
    "RESTAURANT": ("restaurant", "grill", "cuisine", "eatery", "cafe", "diner", "bistro", "kitchen", "kabob", "shawarma"),
    "GROCERY": ("grocery", "supermarket", "market", "foods", "provisions"),
    "BAKERY": ("bakery", "pastry", "bread", "dessert", "sweets"),
    "CATERING": ("catering", "banquet"),
    "FOOD_TRUCK": ("food truck", "street food"),
    "HALAL_FOOD": ("halal", "meat", "poultry", "food products", "ingredients"),
    "AUTO_REPAIR": ("auto repair", "mechanic", "automotive", "auto shop"),
    "LEGAL_SERVICES": ("lawyer", "attorney", "law firm", "legal services"),
    "ACCOUNTING": ("accounting", "accountant", "cpa", "bookkeeping"),
    "HEALTH_WELLNESS": ("clinic", "medical", "wellness", "doctor"),
    "BARBER_SALON": ("barber", "salon", "haircut", "grooming"),
    "CLOTHING": ("clothing", "apparel", "hijab", "abaya", "modest fashion"),
    "TRAVEL": ("travel", "hajj", "umrah", "pilgrimage"),
    "FINANCIAL_SERVICES": ("islamic finance", "sharia compliant", "investment", "takaful", "mortgage"),
    "TUTORING": ("tutoring", "tutor", "academy", "quran school", "weekend school"),
}

MALFORMED_NAME_FLAG = "name is empty or malformed"
GENERIC_NAME_FLAG = "name is too generic to identify a business"
RESIDENTIAL_ADDRESS_FLAG = "address looks residential"
SPAM_FLAG = "name or description reads like spam"
MISSING_CONTACT_FLAG = "no phone or website"

_RESIDENTIAL_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bapt\.?\s*#?\s*\d+",
        r"\bunit\s*#?\s*\d+",
        r"\b(?:suite|ste)\.?\s*(?!\d{3})\d{1,2}\b",
        r"\bfloor\s*\d+",
        r"\bbasement\b",
        r"\bgarage\b",
    )
)

_SPAM_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(?:work from home|earn money|get rich)\b",
        r"\b(?:click here|visit now|limited time)\b",
        r"\b(?:free|discount|deal)\s+(?:code|offer|special)\b",
        r"\$\d+[kK]?\s*(?:per|a)\s*(?:month|week|day)",
        r"\b(?:make money|passive income|side hustle)\b",
        r"\b(?:no experience|easy money|guaranteed)\b",
    )
)

_GENERIC_NAME_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^(?:business|company|services?|store|shop)$",
        r"^(?:new|the)\s+(?:business|company|store)$",
        r"^(?:test|sample|example|demo)",
    )
)

_GENERAL_SERVICES: Tuple[Tuple[str, str], ...] = (
    (r"delivery", "Delivery"),
    (r"take-?out|take out", "Takeout"),
    (r"catering", "Catering"),
    (r"dine-?in", "Dine-in"),
    (r"online order", "Online Ordering"),
    (r"reservation", "Reservations"),
    (r"private event", "Private Events"),
)

_CATEGORY_SERVICES: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "RESTAURANT": (
        (r"buffet", "Buffet"),
        (r"breakfast", "Breakfast"),
        (r"brunch", "Brunch"),
        (r"lunch", "Lunch"),
        (r"dinner", "Dinner"),
    ),
    "MASJID": (
        (r"jummah", "Jummah Prayer"),
        (r"five daily", "Five Daily Prayers"),
        (r"taraweeh", "Taraweeh Prayer"),
        (r"weekend school", "Weekend School"),
        (r"quran class", "Quran Classes"),
        (r"nikah", "Nikah Services"),
        (r"janazah", "Janazah Services"),
    ),
    "BUTCHER": (
        (r"fresh meat", "Fresh Meat"),
        (r"custom cut", "Custom Cuts"),
        (r"bulk order", "Bulk Orders"),
        (r"goat|lamb|beef|chicken", "Various Meats"),
    ),
    "BARBER_SALON": (
        (r"haircut", "Haircuts"),
        (r"beard", "Beard Trim"),
        (r"shave", "Shave"),
    ),
}


def infer_category(text: Optional[str], name: Optional[str] = None, hint: Optional[str] = None) -> str:
    """Pick the best matching category; keywords found in the name weigh more.

    A hint that is already a known category wins outright.
    """
    if hint:
        normalized_hint = re.sub(r"[\s-]+", "_", hint.strip().upper())
        if normalized_hint in CATEGORY_KEYWORDS:
            return normalized_hint

    lowered_name = (name or "").lower()
    combined = f"{lowered_name} {(hint or '').lower()} {(text or '').lower()}"
    best_category = DEFAULT_CATEGORY
    best_score = 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        score = 0
        for keyword in keywords:
            if keyword in combined:
                score += 15 if keyword in lowered_name else 10
        if score > best_score:
            best_category, best_score = category, score
    return best_category


def extract_services(text: Optional[str], category: str) -> Tuple[str, ...]:
    if not text:
        return ()
    services: List[str] = []
    for pattern, service in _GENERAL_SERVICES + _CATEGORY_SERVICES.get(category, ()):
        if service not in services and re.search(pattern, text, re.IGNORECASE):
            services.append(service)
    return tuple(services)


def is_malformed_name(name: Optional[str]) -> bool:
    text = (name or "").strip()
    return len(text) < 2 or text.isdigit() or not re.search(r"[A-Za-z0-9]", text)


def is_generic_name(name: Optional[str]) -> bool:
    text = (name or "").strip().lower()
    return len(text) < 3 or any(pattern.search(text) for pattern in _GENERIC_NAME_PATTERNS)


def validation_flags(
    name: Optional[str],
    address: Optional[str],
    description: Optional[str],
    phone: Optional[str],
    website: Optional[str],
) -> Tuple[str, ...]:
    """Review flags for entries that may not be a real, reachable business.

    These never drop an entry; a reviewer decides.
    """
    flags = []
    if is_malformed_name(name):
        flags.append(MALFORMED_NAME_FLAG)
    elif is_generic_name(name):
        flags.append(GENERIC_NAME_FLAG)
    if address and any(pattern.search(address) for pattern in _RESIDENTIAL_PATTERNS):
        flags.append(RESIDENTIAL_ADDRESS_FLAG)
    text = f"{name or ''} {description or ''}"
    if any(pattern.search(text) for pattern in _SPAM_PATTERNS):
        flags.append(SPAM_FLAG)
    if not phone and not website:
        flags.append(MISSING_CONTACT_FLAG)
    return tuple(flags)


def build_establishment(
    raw: RawCandidate,
    contact: NormalizedContact,
    analysis: SignalAnalysis,
) -> ScrapedEstablishment:
    """Assemble the immutable establishment the staging path consumes."""
    name = clean_text(raw.name) or raw.name
    description = clean_text(raw.description)
    service_text = " ".join(filter(None, (description, *raw.products)))
    category = infer_category(service_text, name, raw.category_hint)
    address = clean_text(raw.address)

    return ScrapedEstablishment(
        name=name,
        source=raw.source,
        source_url=raw.source_url,
        address=address,
        street=contact.address.street,
        city=contact.address.city,
        state=contact.address.state,
        zip=contact.address.zip,
        coordinates=contact.coordinates,
        phone=contact.phone,
        website=contact.website,
        email=contact.email,
        description=description,
        category=category,
        services=extract_services(service_text, category),
        signals=analysis.signals,
        confidence=analysis.score,
        flags=contact.flags
        + validation_flags(name, address or contact.address.street, description, contact.phone, contact.website),
    )
