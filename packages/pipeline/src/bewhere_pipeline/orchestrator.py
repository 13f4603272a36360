"""
orchestrator.py — runs datasets in dependency order and reports run history.

    departements ──► population ──► crime-monthly ──► crime-timeseries

Before a dataset runs, every dataset it depends on must have at least its
min_rows persisted. run_all() is fail-fast: the first failed run (or unmet
prerequisite) stops the sequence and the results so far are returned.

Usage:
    from bewhere_pipeline.orchestrator import Orchestrator

    with Database() as db:
        orchestrator = Orchestrator(db)
        results = asyncio.run(orchestrator.run_all(dry_run=True))
        print(orchestrator.show_status(limit=5))
"""

from __future__ import annotations

from typing import Any

import structlog

from bewhere_pipeline.core.pipeline import RunnablePipeline, RunResult, RunStatus
from bewhere_pipeline.errors import PrerequisiteError
from bewhere_pipeline.pipelines import get_dataset
from bewhere_pipeline.utils.download import Fetcher
from bewhere_pipeline.utils.run_logger import EtlRunLogger
from bewhere_shared.db import Database
from bewhere_shared.models.etl import EtlRun

log = structlog.get_logger(__name__)

PIPELINE_ORDER: tuple[str, ...] = (
    "departements",
    "population",
    "crime-monthly",
    "crime-yearly",
    "crime-timeseries",
)

STATUS_ICONS = {
    RunStatus.COMPLETED.value: "✅",
    RunStatus.COMPLETED_WITH_WARNINGS.value: "⚠️ ",
    RunStatus.FAILED.value: "❌",
    RunStatus.RUNNING.value: "🔄",
    RunStatus.CANCELLED.value: "🚫",
}


class Orchestrator:
    def __init__(
        self,
        database: Database,
        *,
        fetcher: Fetcher | None = None,
        run_logger: EtlRunLogger | None = None,
    ) -> None:
        self.database = database
        self.fetcher = fetcher or Fetcher()
        self.run_logger = run_logger or EtlRunLogger(database)

    # ------------------------------------------------------------------
    # Building / prerequisites
    # ------------------------------------------------------------------

    def build(self, name: str, **options: Any) -> RunnablePipeline:
        spec = get_dataset(name)
        return spec.build(
            self.database, fetcher=self.fetcher, run_logger=self.run_logger, **options
        )

    def unmet_prerequisite(self, name: str) -> PrerequisiteError | None:
        spec = get_dataset(name)
        for dependency in spec.depends_on:
            dep = get_dataset(dependency)
            found = dep.loaded_rows(self.database)
            if found < dep.min_rows:
                return PrerequisiteError(name, dependency, found, dep.min_rows)
        return None

    def check_prerequisites(self, name: str) -> bool:
        """True when every dependency of `name` has enough rows loaded."""
        missing = self.unmet_prerequisite(name)
        if missing is not None:
            log.warning(
                "prerequisite_missing",
                dataset=name,
                missing=missing.missing,
                found=missing.found,
                required=missing.required,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def run_dataset(
        self,
        name: str,
        *,
        dry_run: bool = False,
        check_prerequisites: bool = True,
        **options: Any,
    ) -> RunResult:
        """
        Run one dataset.

        Raises:
            UnknownDatasetError: `name` is not registered.
            PrerequisiteError:   a dependency is not sufficiently loaded.
        """
        get_dataset(name)
        if check_prerequisites:
            missing = self.unmet_prerequisite(name)
            if missing is not None:
                log.error("prerequisite_missing", dataset=name, error=str(missing))
                raise missing

        pipeline = self.build(name, **options)
        log.info("dataset_start", dataset=name, dry_run=dry_run)
        return await pipeline.run(dry_run=dry_run)

    async def run_all(self, *, dry_run: bool = False, **options: Any) -> list[RunResult]:
        """Run every dataset in PIPELINE_ORDER, stopping at the first failure."""
        results: list[RunResult] = []
        for name in PIPELINE_ORDER:
            try:
                result = await self.run_dataset(name, dry_run=dry_run, **options)
            except PrerequisiteError as exc:
                result = self._failed_result(name, exc, dry_run=dry_run)
            except Exception as exc:
                log.error("dataset_aborted", dataset=name, error=str(exc), exc_info=True)
                result = self._failed_result(name, exc, dry_run=dry_run)
            results.append(result)
            if result.failed:
                log.error("run_all_stopped", dataset=name, errors=list(result.errors[-1:]))
                break

        self._log_summary(results)
        return results

    def _failed_result(self, name: str, exc: Exception, *, dry_run: bool) -> RunResult:
        """A finalized failed result for a dataset that could not start."""
        result = RunResult(name=name, dry_run=dry_run, error=exc)
        result.add_error(str(exc))
        result.finalize(RunStatus.FAILED, 0)
        run_id = self.run_logger.start_run(name, started_at=result.started_at)
        self.run_logger.fail_run(run_id, str(exc), duration_ms=0)
        return result

    def _log_summary(self, results: list[RunResult]) -> None:
        for result in results:
            log.info(
                "run_summary",
                dataset=result.name,
                status=result.status.value,
                rows_loaded=result.stats.rows_loaded,
                errors=result.stats.error_count,
                warnings=result.stats.warning_count,
                duration_ms=result.duration_ms,
            )
        failed = [r.name for r in results if r.failed]
        log.info(
            "run_all_complete",
            ran=len(results),
            total=len(PIPELINE_ORDER),
            failed=failed,
            rows_loaded=sum(r.stats.rows_loaded for r in results),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_dataset(self, name: str, **options: Any) -> bool:
        return await self.build(name, **options).validate()

    async def validate_all(self, **options: Any) -> dict[str, bool]:
        return {name: await self.validate_dataset(name, **options) for name in PIPELINE_ORDER}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def show_status(self, *, dataset: str | None = None, limit: int = 10) -> str:
        """Render recent etl_runs as a text table, newest first."""
        if dataset is not None:
            get_dataset(dataset)
        runs = self.run_logger.history(dataset, limit=limit)
        if not runs:
            return "No ETL runs recorded."
        lines = [
            f"   {'dataset':<18} {'status':<24} {'loaded':>8} {'duration':>9}  "
            f"{'started':<19} {'errors':>6} {'warnings':>8}"
        ]
        lines.extend(format_run(run) for run in runs)
        return "\n".join(lines)


def format_run(run: EtlRun) -> str:
    icon = STATUS_ICONS.get(run.status, "?")
    duration = f"{run.duration_ms / 1000:.1f}s" if run.duration_ms is not None else "-"
    started = run.started_at.strftime("%Y-%m-%d %H:%M:%S")
    return (
        f"{icon} {run.run_name:<18} {run.status:<24} {run.rows_loaded:>8} {duration:>9}  "
        f"{started:<19} {run.error_count:>6} {run.warning_count:>8}"
    )
