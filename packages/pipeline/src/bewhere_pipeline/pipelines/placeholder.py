"""
pipelines/placeholder.py — registered dataset with no implementation yet.

Keeps the dataset name in the registry and the orchestrator order so it
shows up in status and run-all output. A run touches nothing and finishes
as completed_with_warnings with a single warning.
"""

from __future__ import annotations

from typing import Any

from bewhere_pipeline.core.pipeline import RunResult, RunStatus
from bewhere_pipeline.utils.logging import get_logger
from bewhere_pipeline.utils.run_logger import EtlRunLogger

log = get_logger(__name__)


class PlaceholderPipeline:
    def __init__(
        self,
        name: str,
        *,
        reason: str = "not implemented yet",
        run_logger: EtlRunLogger | None = None,
    ) -> None:
        self.name = name
        self.reason = reason
        self.run_logger = run_logger

    async def validate(self) -> bool:
        return True

    async def run(self, *, dry_run: bool = False) -> RunResult:
        result = RunResult(name=self.name, dry_run=dry_run)
        if self.run_logger is not None:
            result.run_id = self.run_logger.start_run(
                self.name, started_at=result.started_at, metadata={"dry_run": dry_run}
            )
        result.add_warnings([f"Pipeline {self.name} is a placeholder: {self.reason}"])
        result.finalize(RunStatus.COMPLETED_WITH_WARNINGS, 0)
        log.warning("placeholder_pipeline", pipeline=self.name, reason=self.reason)
        if self.run_logger is not None:
            self.run_logger.complete_run(result.run_id, result)
        return result


def build_pipeline(
    database: Any = None,
    *,
    run_logger: EtlRunLogger | None = None,
    **_: Any,
) -> PlaceholderPipeline:
    return PlaceholderPipeline(
        "crime-timeseries",
        reason="historical time series ingestion is not implemented",
        run_logger=run_logger,
    )
