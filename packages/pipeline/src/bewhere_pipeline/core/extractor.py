"""
core/extractor.py — Extractor contract and shared plumbing.

An extractor pulls raw source records (GeoJSON features, CSV rows, ...)
into memory and reports provenance. It never writes persistent state.

Filtering is non-fatal: dropped records become a warning on the result,
never an error. The optional max_rows cap and min_expected_rows advisory
also only add warnings.

Usage:
    class MyExtractor(BaseExtractor):
        name = "my-dataset"

        async def extract(self) -> ExtractionResult:
            records = ...
            warnings: list[str] = []
            records = self._filter(records, lambda r: r.get("code"), "record(s) without code", warnings)
            return self._finalize(records, warnings)
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import structlog

log = structlog.get_logger(__name__)


@dataclass
class ExtractionResult:
    records: list[Any]
    source: str
    extracted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    warnings: list[str] = field(default_factory=list)
    from_cache: bool | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def row_count(self) -> int:
        return len(self.records)


@runtime_checkable
class Extractor(Protocol):
    async def extract(self) -> ExtractionResult: ...

    async def validate(self) -> bool: ...


class BaseExtractor:
    """Optional base class supplying filtering, the row cap and the row-count advisory."""

    name: str = "extractor"
    record_label: str = "record"

    def __init__(
        self,
        source: str,
        *,
        max_rows: int | None = None,
        min_expected_rows: int | None = None,
    ) -> None:
        self.source = source
        self.max_rows = max_rows
        self.min_expected_rows = min_expected_rows
        self._log = log.bind(extractor=self.name)

    async def extract(self) -> ExtractionResult:
        raise NotImplementedError

    async def validate(self) -> bool:
        return bool(self.source)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _filter(
        self,
        records: Sequence[Any],
        keep: Callable[[Any], Any],
        reason: str,
        warnings: list[str],
    ) -> list[Any]:
        """Keep records for which keep(record) is truthy; warn with the drop count."""
        kept = [r for r in records if keep(r)]
        dropped = len(records) - len(kept)
        if dropped:
            message = f"Filtered out {dropped} {reason}"
            warnings.append(message)
            self._log.warning("records_filtered", dropped=dropped, reason=reason)
        return kept

    def _finalize(
        self,
        records: list[Any],
        warnings: list[str],
        *,
        from_cache: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExtractionResult:
        """Apply the row cap and the row-count advisory, then build the result."""
        if self.max_rows is not None and len(records) > self.max_rows:
            records = records[: self.max_rows]
            warnings.append(f"Limited to {self.max_rows} {self.record_label}s (max_rows)")

        if self.min_expected_rows is not None and len(records) < self.min_expected_rows:
            warnings.append(
                f"{self.record_label.capitalize()} count ({len(records)}) is below expected minimum "
                f"({self.min_expected_rows})"
            )

        self._log.info("extract_complete", rows=len(records), warnings=len(warnings))
        return ExtractionResult(
            records=records,
            source=self.source,
            warnings=warnings,
            from_cache=from_cache,
            metadata=metadata or {},
        )
