"""
utils/validation.py — small reusable data checks.

Each check returns a ValidationResult instead of raising, so callers decide
whether a failure is fatal (transformers raise RowError) or advisory (the
pipeline's post-run row-count check only logs).

Usage:
    from bewhere_pipeline.utils.validation import validate_row_count

    result = validate_row_count(actual=94, expected=96, tolerance=0.05)
    if not result.is_valid:
        log.warning("row_count_mismatch", errors=result.errors)
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

DEPARTEMENT_CODE_RE = re.compile(r"^(0[1-9]|1[0-9]|2[1-9AB]|[3-8][0-9]|9[0-5]|97[1-6])$")

MIN_YEAR = 1900
MAX_YEAR = 2100


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        return ValidationResult(
            errors=[*self.errors, *other.errors],
            warnings=[*self.warnings, *other.warnings],
        )


def combine(results: Iterable[ValidationResult]) -> ValidationResult:
    combined = ValidationResult()
    for r in results:
        combined = combined.merge(r)
    return combined


def validate_row_count(actual: int, expected: int, tolerance: float = 0.05) -> ValidationResult:
    """
    Compare a row count to an expected count within a relative tolerance.

    Below the lower bound is an error, above the upper bound a warning.
    """
    result = ValidationResult()
    lower = expected * (1 - tolerance)
    upper = expected * (1 + tolerance)
    if actual < lower:
        result.errors.append(
            f"Row count {actual} is below expected minimum {round(lower)} (expected ~{expected})"
        )
    elif actual > upper:
        result.warnings.append(
            f"Row count {actual} exceeds expected maximum {round(upper)} (expected ~{expected})"
        )
    return result


def validate_required_fields(
    record: Mapping[str, Any],
    fields: Iterable[str],
    *,
    prefix: str = "",
) -> ValidationResult:
    result = ValidationResult()
    for name in fields:
        value = record.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            result.errors.append(f"{prefix}Missing required field: {name}")
    return result


def validate_numeric_range(value: Any, minimum: float, maximum: float, name: str) -> ValidationResult:
    result = ValidationResult()
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        result.errors.append(f"{name} is not a valid number")
    elif value < minimum:
        result.errors.append(f"{name} ({value}) is below minimum ({minimum})")
    elif value > maximum:
        result.errors.append(f"{name} ({value}) exceeds maximum ({maximum})")
    return result


def validate_year(year: Any) -> ValidationResult:
    return validate_numeric_range(year, MIN_YEAR, MAX_YEAR, "Year")


def validate_month(month: Any) -> ValidationResult:
    return validate_numeric_range(month, 1, 12, "Month")


def validate_departement_code(code: str) -> ValidationResult:
    result = ValidationResult()
    if not isinstance(code, str) or not DEPARTEMENT_CODE_RE.match(code):
        result.errors.append(f"Invalid département code: {code}")
    return result


def validate_crime_count(count: int) -> ValidationResult:
    result = ValidationResult()
    if count < 0:
        result.errors.append(f"Crime count cannot be negative: {count}")
    elif count > 10_000_000:
        result.warnings.append(f"Unusually high crime count: {count}")
    return result


def calculate_rate_per_100k(count: int, population: int) -> float:
    """count / population * 100 000, rounded to 4 decimals."""
    if population <= 0:
        raise ValueError("Population must be greater than 0")
    if count < 0:
        raise ValueError("Count cannot be negative")
    return round(count / population * 100_000, 4)
