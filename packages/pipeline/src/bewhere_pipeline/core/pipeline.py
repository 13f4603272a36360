"""
core/pipeline.py — composes one extractor, transformer and loader into a run.

State machine:

    running ──► completed
            ├─► completed_with_warnings   (errors within tolerance or warnings)
            ├─► failed                    (validation, extract, transform beyond
            │                              tolerance, or load failed)
            └─► cancelled                 (only set out of band on etl_runs)

Stages run strictly in sequence. A dry run executes validate, extract and
transform exactly as a real run does and skips load (rows_loaded = 0).
The RunResult is finalized once; mutating it afterwards raises
RuntimeError.

Usage:
    pipeline = Pipeline("departements", extractor, transformer, loader,
                        run_logger=EtlRunLogger(db), expected_rows=96)
    result = await pipeline.run(dry_run=True)
    print(result.status, result.stats.rows_transformed)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

import structlog

from bewhere_pipeline.core.extractor import Extractor
from bewhere_pipeline.core.loader import Loader
from bewhere_pipeline.core.transformer import Transformer
from bewhere_pipeline.errors import EtlError
from bewhere_pipeline.utils.run_logger import EtlRunLogger
from bewhere_pipeline.utils.validation import validate_row_count

log = structlog.get_logger(__name__)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"


class _Sealable:
    _sealed: bool = False

    def __setattr__(self, key: str, value: Any) -> None:
        if self._sealed:
            raise RuntimeError(f"{type(self).__name__} is finalized and cannot be modified")
        object.__setattr__(self, key, value)

    def _seal(self) -> None:
        object.__setattr__(self, "_sealed", True)


@dataclass
class RunStats(_Sealable):
    rows_extracted: int = 0
    rows_transformed: int = 0
    rows_loaded: int = 0
    rows_skipped: int = 0
    error_count: int = 0
    warning_count: int = 0


@dataclass
class RunResult(_Sealable):
    name: str
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    duration_ms: int | None = None
    stats: RunStats = field(default_factory=RunStats)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: BaseException | None = None
    dry_run: bool = False
    run_id: UUID | None = None

    @property
    def is_final(self) -> bool:
        return self._sealed

    @property
    def failed(self) -> bool:
        return self.status == RunStatus.FAILED

    def add_warnings(self, warnings: list[str]) -> None:
        self.warnings.extend(warnings)
        self.stats.warning_count += len(warnings)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.stats.error_count += 1

    def finalize(self, status: RunStatus, duration_ms: int) -> "RunResult":
        if self._sealed:
            raise RuntimeError("RunResult already finalized")
        self.status = status
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = duration_ms
        # Tuples so the message lists cannot be appended to either
        object.__setattr__(self, "errors", tuple(self.errors))
        object.__setattr__(self, "warnings", tuple(self.warnings))
        self.stats._seal()
        self._seal()
        return self


@runtime_checkable
class RunnablePipeline(Protocol):
    name: str

    async def run(self, *, dry_run: bool = False) -> RunResult: ...

    async def validate(self) -> bool: ...


class Pipeline:
    """Generic extract → transform → load runner. Depends only on the three contracts."""

    def __init__(
        self,
        name: str,
        extractor: Extractor,
        transformer: Transformer,
        loader: Loader,
        *,
        run_logger: EtlRunLogger | None = None,
        expected_rows: int | None = None,
        tolerance: float = 0.05,
        source_url: str | None = None,
    ) -> None:
        self.name = name
        self.extractor = extractor
        self.transformer = transformer
        self.loader = loader
        self.run_logger = run_logger
        self.expected_rows = expected_rows
        self.tolerance = tolerance
        self.source_url = source_url or getattr(extractor, "source", None)

    async def validate(self) -> bool:
        """Validate all three components; True only if every one passes."""
        checks = {
            "extractor": await self.extractor.validate(),
            "transformer": await self.transformer.validate(),
            "loader": await self.loader.validate(),
        }
        failed = [name for name, ok in checks.items() if not ok]
        if failed:
            log.error("pipeline_validation_failed", pipeline=self.name, components=failed)
        return not failed

    async def run(self, *, dry_run: bool = False) -> RunResult:
        result = RunResult(name=self.name, dry_run=dry_run)
        run_log = log.bind(pipeline=self.name, dry_run=dry_run)
        run_log.info("pipeline_start")
        t0 = time.monotonic()

        if self.run_logger is not None:
            result.run_id = self.run_logger.start_run(
                self.name,
                source_url=self.source_url,
                started_at=result.started_at,
                metadata={"dry_run": dry_run},
            )

        stage = "validate"
        stage_failed = False
        try:
            if not await self.validate():
                raise EtlError("Component validation failed")

            stage = "extract"
            extraction = await self.extractor.extract()
            result.stats.rows_extracted = extraction.row_count
            result.add_warnings(extraction.warnings)
            run_log.info(
                "extract_complete",
                rows=extraction.row_count,
                from_cache=extraction.from_cache,
                warnings=len(extraction.warnings),
            )

            stage = "transform"
            transformation = self.transformer.transform(extraction.records)
            result.stats.rows_transformed = transformation.transformed_count
            result.stats.rows_skipped = transformation.skipped_count
            for issue in transformation.errors:
                result.add_error(str(issue))
            result.add_warnings(transformation.warnings)
            run_log.info(
                "transform_complete",
                transformed=transformation.transformed_count,
                skipped=transformation.skipped_count,
                errors=transformation.error_count,
            )

            stage = "load"
            if dry_run:
                result.stats.rows_loaded = 0
                run_log.info("load_skipped_dry_run", would_load=transformation.transformed_count)
            else:
                load = await self.loader.load(transformation.records)
                result.stats.rows_loaded = load.records_loaded
                result.stats.rows_skipped += load.skipped_count
                result.add_warnings(load.warnings)
                run_log.info(
                    "load_complete",
                    inserted=load.inserted_count,
                    updated=load.updated_count,
                )
        except Exception as exc:
            stage_failed = True
            result.error = exc
            result.add_error(f"{stage} failed: {exc}")
            run_log.error("pipeline_stage_failed", stage=stage, error=str(exc), exc_info=True)

        if stage_failed:
            status = RunStatus.FAILED
        elif result.stats.error_count or result.stats.warning_count:
            status = RunStatus.COMPLETED_WITH_WARNINGS
        else:
            status = RunStatus.COMPLETED
        result.finalize(status, int((time.monotonic() - t0) * 1000))

        run_log.info(
            "pipeline_complete",
            status=result.status.value,
            duration_ms=result.duration_ms,
            rows_loaded=result.stats.rows_loaded,
        )

        if not dry_run and not result.failed and self.expected_rows is not None:
            self._check_row_count(result)

        if self.run_logger is not None:
            self.run_logger.complete_run(result.run_id, result)
        return result

    def _check_row_count(self, result: RunResult) -> None:
        check = validate_row_count(result.stats.rows_loaded, self.expected_rows, self.tolerance)
        for message in [*check.errors, *check.warnings]:
            log.warning("row_count_discrepancy", pipeline=self.name, message=message)
