"""
core/loader.py — Loader contract and the transactional natural-key upsert.

Every call to UpsertLoader.load() runs inside ONE database transaction.
Records are processed in batch_size chunks inside it; for each record the
loader looks up an existing row by the natural key (null-safe comparison,
so NULL matches NULL), updates its mutable columns if found and inserts a
new row otherwise. Any failure raises LoadError and rolls the whole
transaction back: nothing from a failed load is committed.

Usage:
    class AreaLoader(UpsertLoader):
        table = administrative_areas
        natural_key = ("code", "level")

    result = await AreaLoader(database).load(records)
    print(result.inserted_count, result.updated_count)
"""

from __future__ import annotations

import math
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog
from sqlalchemy import Table, func, insert, inspect, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from bewhere_pipeline.errors import GeometryError, LoadError
from bewhere_shared.config import settings
from bewhere_shared.db import Database
from bewhere_shared.schema import utcnow

log = structlog.get_logger(__name__)


@dataclass
class LoadResult:
    """Summary of one load() call."""

    table: str
    inserted_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    batches_total: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def records_loaded(self) -> int:
        return self.inserted_count + self.updated_count


@runtime_checkable
class Loader(Protocol):
    async def load(self, records: Sequence[Any]) -> LoadResult: ...

    async def validate(self) -> bool: ...


class UpsertLoader:
    """Base loader: subclasses set `table` and `natural_key`."""

    table: Table
    natural_key: tuple[str, ...] = ()
    # Never overwritten on update
    immutable_columns: tuple[str, ...] = ("id", "created_at")

    def __init__(self, database: Database, *, batch_size: int | None = None) -> None:
        self.database = database
        self.batch_size = batch_size or settings.etl_batch_size
        self._log = log.bind(table=self.table.name)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def build_values(self, record: Any) -> dict[str, Any] | None:
        """Column values for one record. Returning None skips the record."""
        if hasattr(record, "to_insert_dict"):
            return record.to_insert_dict()
        return dict(record)

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(self, records: Sequence[Any]) -> LoadResult:
        result = LoadResult(table=self.table.name)
        t0 = time.monotonic()

        if not records:
            result.warnings.append(f"No records to load into {self.table.name}")
            self._log.warning("load_empty")
            return result

        n_batches = math.ceil(len(records) / self.batch_size)
        result.batches_total = n_batches
        self._log.info("load_start", total_rows=len(records), batches=n_batches)

        try:
            with self.database.engine.begin() as conn:
                for batch_idx in range(n_batches):
                    start = batch_idx * self.batch_size
                    batch = records[start : start + self.batch_size]
                    for offset, record in enumerate(batch):
                        self._load_one(conn, record, start + offset, result)
                    self._log.debug(
                        "batch_loaded",
                        batch=batch_idx + 1,
                        n_batches=n_batches,
                        batch_size=len(batch),
                    )
        except LoadError as exc:
            self._log.error("load_rolled_back", row=exc.row_index, error=str(exc))
            raise
        except SQLAlchemyError as exc:
            self._log.error("load_commit_failed", error=str(exc))
            raise LoadError(self.table.name, str(exc)) from exc

        result.duration_ms = int((time.monotonic() - t0) * 1000)
        self._log.info(
            "load_complete",
            inserted=result.inserted_count,
            updated=result.updated_count,
            skipped=result.skipped_count,
            duration_ms=result.duration_ms,
        )
        return result

    def _load_one(self, conn: Connection, record: Any, index: int, result: LoadResult) -> None:
        try:
            values = self.build_values(record)
            if values is None:
                result.skipped_count += 1
                return
            if self._upsert(conn, values):
                result.inserted_count += 1
            else:
                result.updated_count += 1
        except (SQLAlchemyError, GeometryError, ValueError, KeyError) as exc:
            raise LoadError(self.table.name, str(exc), row_index=index) from exc

    def _upsert(self, conn: Connection, values: dict[str, Any]) -> bool:
        """Insert or update one row. Returns True when a row was inserted."""
        conditions = [
            self.table.c[col].is_not_distinct_from(values[col]) for col in self.natural_key
        ]
        existing = conn.execute(
            select(self.table.c.id).where(*conditions).limit(1)
        ).first()

        if existing is None:
            conn.execute(insert(self.table).values(**values))
            return True

        changes = {
            k: v
            for k, v in values.items()
            if k not in self.natural_key and k not in self.immutable_columns
        }
        changes["updated_at"] = utcnow()
        conn.execute(update(self.table).where(self.table.c.id == existing.id).values(**changes))
        return False

    # ------------------------------------------------------------------
    # Validation / introspection
    # ------------------------------------------------------------------

    async def validate(self) -> bool:
        if not self.database.ping():
            return False
        try:
            exists = inspect(self.database.engine).has_table(self.table.name)
        except SQLAlchemyError as exc:
            self._log.error("loader_validate_failed", error=str(exc))
            return False
        if not exists:
            self._log.error("table_missing")
        return exists

    def count_rows(self, *conditions: Any) -> int:
        stmt = select(func.count()).select_from(self.table)
        if conditions:
            stmt = stmt.where(*conditions)
        with self.database.engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())
