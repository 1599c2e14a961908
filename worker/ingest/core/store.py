"""Persistence contract for staged and live business records, plus an in-memory backend."""

import abc
import copy
import logging
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

STAGED_TABLE = "staged_businesses"
LIVE_TABLE = "businesses"


def _fold(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().casefold()
    return value


def _sort_key(value: Any):
    return (value is None, value if value is not None else 0)


class Store(abc.ABC):
    """Point-get, filtered list, create, update, update-many and transactions.

    ``filters`` maps column to expected value; ``None`` matches a null column.
    With ``case_insensitive`` string values compare after trimming and case folding.
    ``order_by`` is a column name, prefixed with ``-`` for descending order.
    """

    @abc.abstractmethod
    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    def find_many(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        case_insensitive: bool = False,
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    def create(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def update_many(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        ...

    @abc.abstractmethod
    def transaction(self, *lock_keys: str):
        """Context manager yielding a handle with the same read/write methods.

        Everything done through the handle commits together or not at all.
        Transactions sharing any of their ``lock_keys`` never interleave.
        """

    def find_first(self, table: str, filters: Dict[str, Any], *, case_insensitive: bool = False) -> Optional[Dict[str, Any]]:
        rows = self.find_many(table, filters, case_insensitive=case_insensitive, limit=1)
        return rows[0] if rows else None


class InMemoryStore(Store):
    """Dictionary-backed store for dry runs, local development and tests.

    All transactions share one re-entrant lock, so every lock key is implied.
    A failing transaction restores the snapshot taken when it started.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._lock = threading.RLock()

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._tables[table].get(str(record_id))
            return copy.deepcopy(row) if row is not None else None

    def find_many(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        case_insensitive: bool = False,
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [row for row in self._tables[table].values() if self._matches(row, filters or {}, case_insensitive)]
            if order_by:
                column = order_by.lstrip("-")
                rows.sort(key=lambda row: _sort_key(row.get(column)), reverse=order_by.startswith("-"))
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    def create(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = copy.deepcopy(values)
            row["id"] = str(row.get("id") or uuid.uuid4())
            if row["id"] in self._tables[table]:
                raise ValueError(f"{table} already has a record with id {row['id']}")
            self._tables[table][row["id"]] = row
            logger.debug("Created %s record %s", table, row["id"])
            return copy.deepcopy(row)

    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = self._tables[table].get(str(record_id))
            if row is None:
                raise KeyError(f"{table} has no record with id {record_id}")
            row.update(copy.deepcopy(values))
            return copy.deepcopy(row)

    def update_many(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        with self._lock:
            count = 0
            for row in self._tables[table].values():
                if self._matches(row, filters, False):
                    row.update(copy.deepcopy(values))
                    count += 1
            return count

    @contextmanager
    def transaction(self, *lock_keys: str) -> Iterator["InMemoryStore"]:
        with self._lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                yield self
            except BaseException:
                self._tables = snapshot
                logger.debug("Rolled back in-memory transaction (lock_keys=%s)", ", ".join(lock_keys))
                raise

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any], case_insensitive: bool) -> bool:
        for column, expected in filters.items():
            actual = row.get(column)
            if expected is None:
                if actual is not None:
                    return False
                continue
            if case_insensitive:
                if _fold(actual) != _fold(expected):
                    return False
            elif actual != expected:
                return False
        return True
