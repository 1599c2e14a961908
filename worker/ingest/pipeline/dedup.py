"""Duplicate detection against staged and live businesses.

A candidate matches an existing record when any of these agree exactly, after
whitespace collapsing and case folding: name and city, phone, or street and
city. Checks run in that order and the first hit wins.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ingest.core.store import LIVE_TABLE, STAGED_TABLE
from ingest.etl.normalize import clean_text

logger = logging.getLogger(__name__)

# Live businesses keep the street line in ``address``.
_STREET_COLUMN = {STAGED_TABLE: "street", LIVE_TABLE: "address"}

# Fields compared when deciding between an identical duplicate and a conflict.
COMPARED_FIELDS = ("name", "address", "city", "state", "zip", "phone", "website", "email", "category")


@dataclass(frozen=True)
class DuplicateMatch:
    table: str
    record_id: str
    matched_on: str
    record: Dict[str, Any]


def _folded(value: Any) -> Optional[str]:
    text = clean_text(value if isinstance(value, str) else None)
    return text.casefold() if text else None


def lock_keys(candidate: Any) -> Tuple[str, ...]:
    """One lock key per duplicate criterion ``candidate`` can match on.

    Two records that could match each other share at least one key.
    """
    name = _folded(getattr(candidate, "name", None))
    city = _folded(getattr(candidate, "city", None))
    phone = _folded(getattr(candidate, "phone", None))
    street = _folded(getattr(candidate, "street", None))

    keys = []
    if name and city:
        keys.append(f"name_city:{name}|{city}")
    if phone:
        keys.append(f"phone:{phone}")
    if street and city:
        keys.append(f"street_city:{street}|{city}")
    if not keys:
        keys.append(f"name:{name or ''}")
    return tuple(keys)


def _criteria(candidate: Any, table: str) -> List[Tuple[str, Dict[str, Any]]]:
    name = clean_text(getattr(candidate, "name", None))
    city = clean_text(getattr(candidate, "city", None))
    phone = clean_text(getattr(candidate, "phone", None))
    street = clean_text(getattr(candidate, "street", None))

    criteria = []
    if name and city:
        criteria.append(("name_city", {"name": name, "city": city}))
    if phone:
        criteria.append(("phone", {"phone": phone}))
    if street and city:
        criteria.append(("street_city", {_STREET_COLUMN.get(table, "street"): street, "city": city}))
    return criteria


def find_duplicate(reader, candidate: Any, tables: Iterable[str] = (STAGED_TABLE, LIVE_TABLE)) -> Optional[DuplicateMatch]:
    """Return the first existing record ``candidate`` duplicates, or None.

    ``reader`` is a store or an open transaction handle; ``candidate`` is any
    object with ``name``, ``city``, ``phone`` and ``street`` attributes.
    """
    for table in tables:
        for matched_on, filters in _criteria(candidate, table):
            row = reader.find_first(table, filters, case_insensitive=True)
            if row is not None:
                logger.debug("%s matches %s record %s on %s", getattr(candidate, "name", "?"), table, row["id"], matched_on)
                return DuplicateMatch(table=table, record_id=str(row["id"]), matched_on=matched_on, record=row)
    return None


def differing_fields(candidate_row: Dict[str, Any], existing: Dict[str, Any]) -> List[str]:
    """Compared fields whose values differ, ignoring case and surrounding whitespace."""
    differences = []
    for field in COMPARED_FIELDS:
        if field not in candidate_row or field not in existing:
            continue
        if _folded(candidate_row.get(field)) != _folded(existing.get(field)):
            differences.append(field)
    return differences
