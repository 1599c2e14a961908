"""Database helpers for the worker."""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from psycopg2 import extras, pool, sql

from ingest.core.config import Settings, get_settings
from ingest.core.errors import ConfigError
from ingest.core.store import LIVE_TABLE, STAGED_TABLE, InMemoryStore, Store

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.ThreadedConnectionPool] = None
_store: Optional[Store] = None

_TABLE_COLUMNS = {
    STAGED_TABLE: (
        "id", "name", "address", "street", "city", "state", "zip", "lat", "lng",
        "phone", "website", "email", "description", "category", "services",
        "source", "source_url", "signals", "confidence", "flags", "status",
        "scraped_at", "reviewed_at", "reviewed_by", "review_note",
    ),
    LIVE_TABLE: (
        "id", "name", "slug", "description", "category", "services", "address",
        "city", "state", "zip", "lat", "lng", "phone", "email", "website",
        "status", "scraped_business_id", "scraped_from", "confidence_score",
        "scraped_at", "needs_geocoding",
    ),
}
_JSON_COLUMNS = {"services", "signals", "flags"}


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.ThreadedConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.ThreadedConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


def _columns(table: str, values: Dict[str, Any]) -> List[str]:
    allowed = _TABLE_COLUMNS.get(table)
    if allowed is None:
        raise ValueError(f"Unknown table {table}")
    unknown = set(values) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown columns for {table}: {sorted(unknown)}")
    return [column for column in allowed if column in values]


def _prepare_params(values: Dict[str, Any]) -> Dict[str, Any]:
    params = dict(values)
    for column in _JSON_COLUMNS & set(params):
        params[column] = extras.Json(params[column] or [])
    return params


def _where(filters: Dict[str, Any], case_insensitive: bool, prefix: str = "f_"):
    clauses = []
    params: Dict[str, Any] = {}
    for column in filters:
        value = filters[column]
        ident = sql.Identifier(column)
        if value is None:
            clauses.append(sql.SQL("{} IS NULL").format(ident))
            continue
        placeholder = sql.Placeholder(f"{prefix}{column}")
        if case_insensitive and isinstance(value, str):
            clauses.append(sql.SQL("lower(btrim({})) = lower(btrim({}))").format(ident, placeholder))
        else:
            clauses.append(sql.SQL("{} = {}").format(ident, placeholder))
        params[f"{prefix}{column}"] = value
    if not clauses:
        return sql.SQL(""), params
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params


class _PostgresSession:
    """Reads and writes bound to one open cursor inside a transaction."""

    def __init__(self, cursor) -> None:
        self.cursor = cursor

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        _columns(table, {})
        query = sql.SQL("SELECT * FROM {} WHERE id = %(id)s").format(sql.Identifier(table))
        self.cursor.execute(query, {"id": str(record_id)})
        row = self.cursor.fetchone()
        return dict(row) if row else None

    def find_many(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        case_insensitive: bool = False,
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        filters = filters or {}
        _columns(table, filters)
        where, params = _where(filters, case_insensitive)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + where
        if order_by:
            column = order_by.lstrip("-")
            _columns(table, {column: None})
            direction = sql.SQL(" DESC") if order_by.startswith("-") else sql.SQL(" ASC")
            query += sql.SQL(" ORDER BY {}").format(sql.Identifier(column)) + direction
        if limit is not None:
            query += sql.SQL(" LIMIT {}").format(sql.Literal(int(limit)))
        self.cursor.execute(query, params)
        return [dict(row) for row in self.cursor.fetchall()]

    def find_first(self, table: str, filters: Dict[str, Any], *, case_insensitive: bool = False) -> Optional[Dict[str, Any]]:
        rows = self.find_many(table, filters, case_insensitive=case_insensitive, limit=1)
        return rows[0] if rows else None

    def create(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(values)
        values["id"] = str(values.get("id") or uuid.uuid4())
        columns = _columns(table, values)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(column) for column in columns),
            sql.SQL(", ").join(sql.Placeholder(column) for column in columns),
        )
        self.cursor.execute(query, _prepare_params(values))
        row = self.cursor.fetchone()
        logger.debug("Inserted %s record %s", table, values["id"])
        return dict(row) if row else values

    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        columns = _columns(table, values)
        if not columns:
            raise ValueError("update requires at least one column")
        query = sql.SQL("UPDATE {} SET {} WHERE id = %(record_id)s RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column)) for column in columns
            ),
        )
        params = _prepare_params(values)
        params["record_id"] = str(record_id)
        self.cursor.execute(query, params)
        row = self.cursor.fetchone()
        if row is None:
            raise KeyError(f"{table} has no record with id {record_id}")
        return dict(row)

    def update_many(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        columns = _columns(table, values)
        _columns(table, filters)
        where, where_params = _where(filters, False)
        query = sql.SQL("UPDATE {} SET {}").format(
            sql.Identifier(table),
            sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column)) for column in columns
            ),
        ) + where
        params = _prepare_params(values)
        params.update(where_params)
        self.cursor.execute(query, params)
        return self.cursor.rowcount


class PostgresStore(Store):
    """Store backed by the shared psycopg2 pool.

    Each transaction runs on one pooled connection. Every one of the
    ``lock_keys`` takes a transaction-scoped advisory lock, in sorted order,
    before anything else runs, which makes check-then-insert sequences atomic
    across workers.
    """

    @contextmanager
    def transaction(self, *lock_keys: str) -> Iterator[_PostgresSession]:
        with get_connection() as conn:
            try:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    for key in sorted(set(filter(None, lock_keys))):
                        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%(key)s))", {"key": key})
                    yield _PostgresSession(cur)
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as session:
            return session.get(table, record_id)

    def find_many(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        case_insensitive: bool = False,
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        with self.transaction() as session:
            return session.find_many(
                table, filters, case_insensitive=case_insensitive, limit=limit, order_by=order_by
            )

    def create(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        with self.transaction() as session:
            return session.create(table, values)

    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        with self.transaction() as session:
            return session.update(table, record_id, values)

    def update_many(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        with self.transaction() as session:
            return session.update_many(table, filters, values)


def get_store(settings: Optional[Settings] = None) -> Store:
    """Return the process-wide store, choosing the backend on first use."""
    global _store
    if _store is None:
        settings = settings or get_settings()
        if settings.store_backend == "postgres":
            if not settings.database_url:
                raise ConfigError("DATABASE_URL is required when STORE_BACKEND=postgres")
            init_pool()
            _store = PostgresStore()
        else:
            _store = InMemoryStore()
        logger.info("Using %s store", settings.store_backend)
    return _store
