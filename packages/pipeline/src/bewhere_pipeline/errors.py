"""
errors.py — exception taxonomy for the ETL pipeline.

    EtlError
    ├── FetchError           network/cache failure after retries are exhausted
    ├── GeometryError        malformed or unsupported shape (also a ValueError)
    ├── ExtractionError      malformed source structure
    ├── TransformationError  row errors beyond the configured tolerance
    ├── LoadError            persistence failure; the transaction was rolled back
    ├── UnknownDatasetError  no dataset registered under that name
    └── PrerequisiteError    a dependency dataset is not sufficiently loaded
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from bewhere_shared.errors import EtlError, GeometryError

if TYPE_CHECKING:
    from bewhere_pipeline.core.transformer import TransformationResult

__all__ = [
    "EtlError",
    "ExtractionError",
    "FetchError",
    "GeometryError",
    "LoadError",
    "PrerequisiteError",
    "TransformationError",
    "UnknownDatasetError",
]


class FetchError(EtlError):
    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"Failed to fetch {source}: {message}")
        self.source = source


class ExtractionError(EtlError):
    pass


class TransformationError(EtlError):
    """
    Raised when row errors exceed the transformer's tolerance.

    `partial` holds what was produced before the abort. It is for
    diagnostics only and must not be loaded.
    """

    def __init__(self, message: str, partial: "TransformationResult | None" = None) -> None:
        super().__init__(message)
        self.partial = partial


class LoadError(EtlError):
    def __init__(self, table: str, message: str, *, row_index: int | None = None) -> None:
        where = f" (row {row_index})" if row_index is not None else ""
        super().__init__(f"Load into {table} failed{where}: {message}")
        self.table = table
        self.row_index = row_index


class UnknownDatasetError(EtlError):
    def __init__(self, name: str, known: Any = ()) -> None:
        known_list = ", ".join(known)
        super().__init__(f"Unknown dataset {name!r}. Known datasets: {known_list}")
        self.name = name


class PrerequisiteError(EtlError):
    def __init__(self, dataset: str, missing: str, found: int, required: int) -> None:
        super().__init__(
            f"Cannot run {dataset}: prerequisite {missing} has {found} rows "
            f"(requires at least {required})"
        )
        self.dataset = dataset
        self.missing = missing
        self.found = found
        self.required = required
