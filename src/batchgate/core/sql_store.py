"""SQL-backed ``JobStore`` on SQLAlchemy Core.

Two tables hold the state: ``jobs`` (one row per job) and ``job_items`` (one
row per item, keyed by ``(job_id, item_index)``). Item rows are written
concurrently from many worker threads; every write is its own short
transaction and upserts by primary key, so arrival order does not matter.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import UTC, datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine, URL, make_url
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from batchgate.core.types import ItemOutcome, ItemStatus, JobStatus

logger = logging.getLogger(__name__)

metadata = MetaData()

jobs_table = Table(
    "jobs",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("status", String(16), nullable=False),
    Column("total", Integer),
    Column("progress", Integer),
    Column("succeeded", Integer),
    Column("failed", Integer),
    Column("duration_ms", Float),
    Column("avg_item_duration_ms", Float),
    Column("duration_seconds", Integer),
    Column("cancelled", Boolean),
    Column("error", Text),
    Column("started_at", DateTime(timezone=True)),
    Column("finished_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

job_items_table = Table(
    "job_items",
    metadata,
    Column("job_id", String(128), primary_key=True),
    Column("item_index", Integer, primary_key=True),
    Column("item_id", String(160), nullable=False),
    Column("status", String(16), nullable=False),
    Column("result_ref", Text),
    Column("error", Text),
    Column("duration_ms", Float),
    Column("wait_ms", Float),
    Column("attempts", Integer),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

_JOB_COLUMNS = frozenset(column.name for column in jobs_table.columns)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _is_sqlite_memory_url(url: URL) -> bool:
    database = (url.database or "").strip()
    if database in {"", ":memory:"}:
        return True
    return database.startswith("file::memory:")


def create_store_engine(database_url: str) -> Engine:
    """Create an engine suitable for multi-threaded writes."""
    url = make_url(database_url)
    engine_kwargs: Dict[str, Any] = {}
    if url.get_backend_name() == "sqlite":
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if _is_sqlite_memory_url(url):
            engine_kwargs["poolclass"] = StaticPool
    return create_engine(url, **engine_kwargs)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


_NATIVE_UPSERT = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


class SQLJobStore:
    """``JobStore`` writing to a relational database.

    SQLite and PostgreSQL use a native ``INSERT .. ON CONFLICT DO UPDATE``;
    other backends fall back to update-then-insert. Writes to SQLite are
    serialized in-process because the database allows a single writer anyway
    and an in-memory database shares one connection between threads.
    """

    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        self._engine = engine
        self._dialect = engine.dialect.name
        self._write_lock = threading.Lock() if self._dialect == "sqlite" else None
        if create_tables:
            metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str, *, create_tables: bool = True) -> SQLJobStore:
        return cls(create_store_engine(database_url), create_tables=create_tables)

    @property
    def engine(self) -> Engine:
        return self._engine

    def update_job_status(
        self, job_id: str, status: JobStatus, fields: Optional[Mapping[str, Any]] = None
    ) -> None:
        values: Dict[str, Any] = {}
        for key, value in (fields or {}).items():
            if key in _JOB_COLUMNS:
                values[key] = value
            else:
                logger.debug("Ignoring unknown job field %r for job %s", key, job_id)
        values["status"] = JobStatus(status).value
        values["updated_at"] = _utcnow()
        self._upsert(jobs_table, {"id": job_id}, values)

    def mark_item(self, job_id: str, index: int, item_id: str, status: ItemStatus) -> None:
        values = {
            "item_id": item_id,
            "status": ItemStatus(status).value,
            "updated_at": _utcnow(),
        }
        self._upsert(job_items_table, {"job_id": job_id, "item_index": index}, values)

    def upsert_item_result(self, job_id: str, index: int, outcome: ItemOutcome) -> None:
        values = {
            "item_id": outcome.item_id,
            "status": outcome.status.value,
            "result_ref": outcome.result_ref,
            "error": outcome.error,
            "duration_ms": outcome.duration_ms,
            "wait_ms": outcome.wait_ms,
            "attempts": outcome.attempts,
            "updated_at": _utcnow(),
        }
        self._upsert(job_items_table, {"job_id": job_id, "item_index": index}, values)

    def read_job_started_at(self, job_id: str) -> Optional[datetime]:
        with self._connection(begin=False) as conn:
            started_at = conn.execute(
                select(jobs_table.c.started_at).where(jobs_table.c.id == job_id)
            ).scalar_one_or_none()
        return _as_utc(started_at)

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._connection(begin=False) as conn:
            row = conn.execute(
                select(jobs_table).where(jobs_table.c.id == job_id)
            ).mappings().first()
        if row is None:
            return None
        record = dict(row)
        for key in ("started_at", "finished_at", "updated_at"):
            record[key] = _as_utc(record[key])
        return record

    def get_items(self, job_id: str) -> List[Dict[str, Any]]:
        with self._connection(begin=False) as conn:
            rows = conn.execute(
                select(job_items_table)
                .where(job_items_table.c.job_id == job_id)
                .order_by(job_items_table.c.item_index)
            ).mappings().all()
        return [dict(row) for row in rows]

    @contextmanager
    def _connection(self, *, begin: bool = True) -> Iterator[Connection]:
        with self._write_lock or nullcontext():
            with self._engine.begin() if begin else self._engine.connect() as conn:
                yield conn

    def _upsert(self, table: Table, key: Mapping[str, Any], values: Mapping[str, Any]) -> None:
        native_insert = _NATIVE_UPSERT.get(self._dialect)
        if native_insert is not None:
            statement = native_insert(table).values(**key, **values)
            statement = statement.on_conflict_do_update(index_elements=list(key), set_=dict(values))
            with self._connection() as conn:
                conn.execute(statement)
            return

        where = [table.c[name] == value for name, value in key.items()]
        with self._connection() as conn:
            if conn.execute(update(table).where(*where).values(**values)).rowcount:
                return
        try:
            with self._connection() as conn:
                conn.execute(insert(table).values(**key, **values))
        except IntegrityError:
            # Another writer inserted the row first.
            with self._connection() as conn:
                conn.execute(update(table).where(*where).values(**values))


__all__ = [
    "SQLJobStore",
    "create_store_engine",
    "job_items_table",
    "jobs_table",
    "metadata",
]
