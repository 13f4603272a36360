"""
core/transformer.py — Transformer contract and the row-error tolerance policy.

Rows are transformed independently and in input order. A row that raises
a recoverable error (RowError, GeometryError, ValueError incl. pydantic
ValidationError, KeyError, TypeError) is recorded with its index, the
offending field and value, and skipped.

Tolerance:
    continue_on_error=False  -> the first row error aborts the transform
    continue_on_error=True   -> keep going until the error count exceeds
                                max_errors, then abort

An abort raises TransformationError carrying the partial result, which
must not be loaded. transform_row() may also return None to drop a row
silently; it is counted as skipped with no error entry.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import ValidationError

from bewhere_pipeline.errors import GeometryError, TransformationError
from bewhere_pipeline.utils.validation import ValidationResult, combine

log = structlog.get_logger(__name__)


class RowError(ValueError):
    """A single row failed validation."""

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


@dataclass
class TransformIssue:
    row_index: int
    message: str
    field: str | None = None
    value: Any = None

    def __str__(self) -> str:
        where = f" [{self.field}]" if self.field else ""
        return f"Row {self.row_index}{where}: {self.message}"


@dataclass
class TransformationResult:
    records: list[Any] = field(default_factory=list)
    transformed_count: int = 0
    skipped_count: int = 0
    errors: list[TransformIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)


@runtime_checkable
class Transformer(Protocol):
    def transform(self, records: Sequence[Any]) -> TransformationResult: ...

    async def validate(self) -> bool: ...


RECOVERABLE_ERRORS: tuple[type[Exception], ...] = (
    RowError,
    GeometryError,
    ValueError,
    KeyError,
    TypeError,
)


def _issue_from(exc: Exception, index: int) -> TransformIssue:
    if isinstance(exc, ValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ())) or None
        return TransformIssue(index, first.get("msg", str(exc)), loc, first.get("input"))
    if isinstance(exc, KeyError):
        return TransformIssue(index, f"Missing key {exc.args[0]!r}", str(exc.args[0]))
    return TransformIssue(
        index,
        str(exc),
        getattr(exc, "field", None),
        getattr(exc, "value", None),
    )


class BaseTransformer:
    """Runs transform_row() over every record under the tolerance policy."""

    name: str = "transformer"

    def __init__(self, *, continue_on_error: bool = True, max_errors: int = 100) -> None:
        self.continue_on_error = continue_on_error
        self.max_errors = max_errors
        self._log = log.bind(transformer=self.name)
        self._warnings: list[str] = []

    def transform_row(self, record: Any, index: int) -> Any | None:
        raise NotImplementedError

    def prepare(self) -> None:
        """Hook run once before the first row (lookup tables, caches, ...)."""

    async def validate(self) -> bool:
        return True

    def warn(self, message: str) -> None:
        self._warnings.append(message)

    def check(
        self, *results: ValidationResult, field: str | None = None, value: Any = None
    ) -> None:
        """Raise RowError if any check failed; otherwise pass their warnings on."""
        merged = combine(results)
        if not merged.is_valid:
            raise RowError("; ".join(merged.errors), field, value)
        for warning in merged.warnings:
            self.warn(warning)

    def transform(self, records: Sequence[Any]) -> TransformationResult:
        result = TransformationResult()
        self._warnings = result.warnings
        self.prepare()

        for index, record in enumerate(records):
            try:
                out = self.transform_row(record, index)
            except RECOVERABLE_ERRORS as exc:
                issue = _issue_from(exc, index)
                result.errors.append(issue)
                result.skipped_count += 1
                self._log.debug("row_rejected", row=index, field=issue.field, error=issue.message)

                if not self.continue_on_error:
                    raise TransformationError(
                        f"Transform aborted at row {index}: {issue.message}", partial=result
                    ) from exc
                if result.error_count > self.max_errors:
                    raise TransformationError(
                        f"Too many transform errors ({result.error_count} > max_errors "
                        f"{self.max_errors})",
                        partial=result,
                    ) from exc
                continue

            if out is None:
                result.skipped_count += 1
                continue
            result.records.append(out)
            result.transformed_count += 1

        self._log.info(
            "transform_complete",
            transformed=result.transformed_count,
            skipped=result.skipped_count,
            errors=result.error_count,
        )
        return result
