"""
Relational status store.

SQLAlchemy Core over PostgreSQL (production) or SQLite (single host, tests).
Every write is a single statement: upsert is ``INSERT ... ON CONFLICT DO
UPDATE`` and error reporting is ``UPDATE ... SET error_count = error_count + 1``,
so concurrent readers never see a partially written row and concurrent
increments are never lost. Lock and serialization conflicts are retried here
and never reach the caller.
"""

import logging
import threading
import time
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import case, create_engine, event, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.pool import StaticPool

from .errors import InvalidRecord, StoreUnavailable, WriteConflict
from .models import RecordFilter, StatusRecord
from . import schema
from .schema import COLUMNS, service_status
from .store import StatusStore, check_error_args

logger = logging.getLogger(__name__)

_SUPPORTED_DIALECTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}

# Columns an ordinary heartbeat copies verbatim from the incoming record.
_REPLACED_COLUMNS = (
    "service_type", "source_id", "status", "last_heartbeat",
    "current_task", "stats", "host", "version",
)
# Columns whose stored value survives an incoming null.
_PRESERVED_COLUMNS = ("last_activity", "last_error", "last_error_at")

# SQLSTATE codes PostgreSQL uses for serialization failures and deadlocks.
_PG_CONFLICT_CODES = {"40001", "40P01"}


def _redact(url) -> str:
    return url.render_as_string(hide_password=True)


def _is_in_memory(url) -> bool:
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def _create_engine(url, pool_size: int, pool_timeout: int, echo: bool) -> Engine:
    if url.get_backend_name() == "sqlite":
        kwargs: Dict[str, Any] = {
            "connect_args": {"check_same_thread": False, "timeout": pool_timeout},
            "echo": echo,
        }
        if _is_in_memory(url):
            # One shared connection, otherwise every checkout sees an empty database.
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        return engine

    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=pool_size * 2,
        pool_timeout=pool_timeout,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
    )


def _is_conflict(exc: DBAPIError) -> bool:
    pgcode = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    if pgcode in _PG_CONFLICT_CODES:
        return True
    message = str(exc.orig).lower()
    return "database is locked" in message or "database table is locked" in message


def _record_values(record: StatusRecord) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in COLUMNS}


def _row_to_record(row) -> StatusRecord:
    values = dict(row)
    if values.get("stats") is None:
        values["stats"] = {}
    return StatusRecord(**values)


def _where_clauses(filter: Optional[RecordFilter]) -> list:
    if filter is None:
        return []
    t = service_status
    clauses = []
    if filter.service_type is not None:
        clauses.append(t.c.service_type == filter.service_type)
    if filter.source_id is not None:
        clauses.append(t.c.source_id == filter.source_id)
    if filter.status is not None:
        clauses.append(t.c.status == filter.status)
    if filter.heartbeat_after is not None:
        clauses.append(t.c.last_heartbeat >= filter.heartbeat_after)
    if filter.heartbeat_before is not None:
        clauses.append(t.c.last_heartbeat < filter.heartbeat_before)
    return clauses


class SqlStatusStore(StatusStore):
    """Status store backed by a relational database reachable at *database_url*.

    The store owns its engine: it is opened on construction and released by
    :meth:`close`, so several isolated stores can coexist in one process.
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        pool_timeout: int = 30,
        create_schema: bool = False,
        max_retries: int = 8,
        retry_delay: float = 0.02,
        echo: bool = False,
    ):
        self._url = make_url(database_url)
        dialect = self._url.get_backend_name()
        if dialect not in _SUPPORTED_DIALECTS:
            raise ValueError(
                f"Unsupported database backend {dialect!r}"
                f" (expected one of {', '.join(sorted(_SUPPORTED_DIALECTS))})"
            )
        self._insert = _SUPPORTED_DIALECTS[dialect]
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._closed = False
        # An in-memory database lives on one shared connection, so its
        # transactions must not interleave.
        self._serial = threading.RLock() if _is_in_memory(self._url) else nullcontext()

        logger.info("Opening status store at %s", _redact(self._url))
        self._engine = _create_engine(self._url, pool_size, pool_timeout, echo)
        if create_schema:
            schema.create_schema(self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    # -- plumbing ----------------------------------------------------------

    @contextmanager
    def _translate(self, operation: str) -> Iterator[None]:
        """Map SQLAlchemy failures onto the registry error taxonomy."""
        if self._closed:
            raise StoreUnavailable("store is closed")
        try:
            yield
        except (IntegrityError, DataError) as e:
            raise InvalidRecord(f"{operation}: rejected by the database: {e.orig}") from e
        except DBAPIError as e:
            if _is_conflict(e):
                raise WriteConflict(f"{operation}: {e.orig}") from e
            logger.warning("%s failed: %s", operation, e.orig)
            raise StoreUnavailable(f"{operation}: {e.orig}") from e
        except PoolTimeoutError as e:
            logger.warning("%s timed out waiting for a connection", operation)
            raise StoreUnavailable(f"{operation}: {e}") from e

    def _read(self, operation: str, fn):
        with self._serial, self._translate(operation):
            with self._engine.connect() as conn:
                return fn(conn)

    def _write(self, operation: str, fn):
        delay = self._retry_delay
        for attempt in range(1, self._max_retries + 1):
            try:
                with self._serial, self._translate(operation):
                    with self._engine.begin() as conn:
                        return fn(conn)
            except WriteConflict as e:
                if attempt == self._max_retries:
                    raise StoreUnavailable(
                        f"{operation}: still conflicting after {attempt} attempts"
                    ) from e
                logger.debug("%s conflicted (attempt %d), retrying: %s", operation, attempt, e)
                time.sleep(delay)
                delay = min(delay * 2, 1.0)

    # -- operations --------------------------------------------------------

    def upsert(self, record: StatusRecord, restart: bool = False) -> None:
        record.validate()
        t = service_status
        stmt = self._insert(t).values(**_record_values(record))
        excluded = stmt.excluded

        if restart:
            set_ = {name: excluded[name] for name in COLUMNS if name != "id"}
        else:
            set_ = {name: excluded[name] for name in _REPLACED_COLUMNS}
            for name in _PRESERVED_COLUMNS:
                set_[name] = func.coalesce(excluded[name], t.c[name])
            set_["error_count"] = case(
                (excluded.error_count > t.c.error_count, excluded.error_count),
                else_=t.c.error_count,
            )

        stmt = stmt.on_conflict_do_update(
            index_elements=[t.c.id],
            set_=set_,
            where=t.c.last_heartbeat <= excluded.last_heartbeat,
        )
        self._write(f"upsert {record.id}", lambda conn: conn.execute(stmt))

    def get(self, record_id: str) -> Optional[StatusRecord]:
        stmt = select(service_status).where(service_status.c.id == record_id)

        def run(conn):
            row = conn.execute(stmt).mappings().first()
            return _row_to_record(row) if row is not None else None

        return self._read(f"get {record_id}", run)

    def list(self, filter: Optional[RecordFilter] = None) -> List[StatusRecord]:
        stmt = select(service_status).where(*_where_clauses(filter)).order_by(service_status.c.id)
        return self._read(
            "list",
            lambda conn: [_row_to_record(row) for row in conn.execute(stmt).mappings()],
        )

    def increment_error(self, record_id: str, message: str, at: datetime) -> bool:
        check_error_args(record_id, message, at)
        t = service_status
        stmt = (
            update(t)
            .where(t.c.id == record_id)
            .values(error_count=t.c.error_count + 1, last_error=message, last_error_at=at)
        )
        rowcount = self._write(
            f"increment_error {record_id}",
            lambda conn: conn.execute(stmt).rowcount,
        )
        return rowcount == 1

    def count(self, filter: Optional[RecordFilter] = None) -> int:
        stmt = select(func.count()).select_from(service_status).where(*_where_clauses(filter))
        return self._read("count", lambda conn: conn.execute(stmt).scalar_one())

    def ping(self) -> None:
        self._read("ping", lambda conn: conn.execute(text("SELECT 1")).scalar_one())
        logger.debug("Status store at %s is reachable", _redact(self._url))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine.dispose()
        logger.info("Closed status store at %s", _redact(self._url))
