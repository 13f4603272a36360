"""
utils/run_logger.py — persists pipeline run history to the etl_runs table.

A row is inserted with status 'running' when a run starts and updated
once when it finishes. Only the last MAX_MESSAGES error and warning
messages are kept, as JSON arrays.

Bookkeeping never fails a run: database errors raised here are logged
and swallowed, and the methods return None / False instead.

Usage:
    run_logger = EtlRunLogger(database)
    run_id = run_logger.start_run("departements", source_url=url)
    ...
    run_logger.complete_run(run_id, result)
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from bewhere_shared.db import Database
from bewhere_shared.models.etl import EtlRun
from bewhere_shared.schema import etl_runs

if TYPE_CHECKING:
    from bewhere_pipeline.core.pipeline import RunResult

log = structlog.get_logger(__name__)

MAX_MESSAGES = 100


def _tail(messages: Sequence[str]) -> list[str]:
    return list(messages[-MAX_MESSAGES:])


class EtlRunLogger:
    def __init__(self, database: Database) -> None:
        self.database = database

    def start_run(
        self,
        run_name: str,
        *,
        source_url: str | None = None,
        data_source_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
        started_at: datetime | None = None,
    ) -> UUID | None:
        try:
            with self.database.engine.begin() as conn:
                row = conn.execute(
                    insert(etl_runs)
                    .values(
                        run_name=run_name,
                        source_url=source_url,
                        data_source_id=data_source_id,
                        status="running",
                        started_at=started_at or datetime.now(timezone.utc),
                        error_messages=[],
                        warning_messages=[],
                        metadata=metadata or {},
                    )
                    .returning(etl_runs.c.id)
                ).one()
        except SQLAlchemyError as exc:
            log.error("etl_run_start_failed", run_name=run_name, error=str(exc))
            return None
        log.info("etl_run_started", run_id=str(row.id), run_name=run_name)
        return row.id

    def _update(self, run_id: UUID | None, event: str, **values: Any) -> bool:
        if run_id is None:
            log.warning("etl_run_not_started", action=event)
            return False
        try:
            with self.database.engine.begin() as conn:
                conn.execute(update(etl_runs).where(etl_runs.c.id == run_id).values(**values))
        except SQLAlchemyError as exc:
            log.error("etl_run_update_failed", run_id=str(run_id), action=event, error=str(exc))
            return False
        return True

    def update_run(self, run_id: UUID | None, **counters: int) -> bool:
        """Update any of the rows_* / *_count counters mid-run."""
        return self._update(run_id, "update", **counters)

    def complete_run(self, run_id: UUID | None, result: "RunResult") -> bool:
        ok = self._update(
            run_id,
            "complete",
            status=result.status.value,
            completed_at=result.completed_at,
            duration_ms=result.duration_ms,
            rows_extracted=result.stats.rows_extracted,
            rows_transformed=result.stats.rows_transformed,
            rows_loaded=result.stats.rows_loaded,
            rows_skipped=result.stats.rows_skipped,
            error_count=result.stats.error_count,
            warning_count=result.stats.warning_count,
            error_messages=_tail(result.errors),
            warning_messages=_tail(result.warnings),
        )
        if ok:
            log.info(
                "etl_run_completed",
                run_id=str(run_id),
                status=result.status.value,
                duration_ms=result.duration_ms,
            )
        return ok

    def fail_run(self, run_id: UUID | None, error: str, *, duration_ms: int | None = None) -> bool:
        return self._update(
            run_id,
            "fail",
            status="failed",
            completed_at=datetime.now(timezone.utc),
            duration_ms=duration_ms,
            error_count=1,
            error_messages=[error],
        )

    def cancel_run(self, run_id: UUID, reason: str | None = None) -> bool:
        """Mark a run cancelled out of band. Pipelines never cancel themselves."""
        values: dict[str, Any] = {
            "status": "cancelled",
            "completed_at": datetime.now(timezone.utc),
        }
        if reason:
            values["warning_messages"] = [f"Cancelled: {reason}"]
            values["warning_count"] = 1
        ok = self._update(run_id, "cancel", **values)
        if ok:
            log.warning("etl_run_cancelled", run_id=str(run_id), reason=reason)
        return ok

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def history(self, run_name: str | None = None, limit: int = 10) -> list[EtlRun]:
        stmt = select(etl_runs).order_by(etl_runs.c.started_at.desc()).limit(limit)
        if run_name:
            stmt = stmt.where(etl_runs.c.run_name == run_name)
        with self.database.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [EtlRun.from_db_row(dict(r)) for r in rows]

    def last_successful_run(self, run_name: str) -> EtlRun | None:
        stmt = (
            select(etl_runs)
            .where(etl_runs.c.run_name == run_name)
            .where(etl_runs.c.status.in_(("completed", "completed_with_warnings")))
            .order_by(etl_runs.c.started_at.desc())
            .limit(1)
        )
        with self.database.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return EtlRun.from_db_row(dict(row)) if row else None

    def cleanup_stale_runs(self, max_age_s: float = 3600) -> int:
        """Cancel runs left in 'running' for longer than max_age_s (e.g. after a crash)."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_s)
        try:
            with self.database.engine.begin() as conn:
                result = conn.execute(
                    update(etl_runs)
                    .where(etl_runs.c.status == "running")
                    .where(etl_runs.c.started_at < cutoff)
                    .values(
                        status="cancelled",
                        completed_at=datetime.now(timezone.utc),
                        warning_messages=["Cancelled: stale run"],
                    )
                )
        except SQLAlchemyError as exc:
            log.error("etl_run_cleanup_failed", error=str(exc))
            return 0
        if result.rowcount:
            log.info("etl_runs_cleaned_up", count=result.rowcount)
        return result.rowcount
