"""
pipelines/crime_yearly.py — a year of État 4001 monthly files -> yearly crime_observations.

The source is either a local directory of monthly files named like
etat4001_YYYY-MM.csv, or a path/URL template with {year} and {month}
placeholders:

    https://data.example.fr/etat4001/etat4001_{year}-{month:02d}.csv

Each month is read with CrimeMonthlyExtractor and counts are summed per
(département, category). A month missing from the directory, or that
cannot be fetched from the template, counts as missing. Completeness is
kept on each row and written to notes:

    Months with data: 11/12; missing: 12

Yearly rows carry month=NULL and granularity='yearly', so they live next
to the monthly rows of the same year without colliding.

Usage:
    from bewhere_pipeline.pipelines.crime_yearly import build_pipeline
    result = await build_pipeline(database, source="./data/etat4001", year=2023).run()
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import polars as pl

from bewhere_pipeline.core.extractor import BaseExtractor, ExtractionResult
from bewhere_pipeline.core.pipeline import Pipeline
from bewhere_pipeline.errors import ExtractionError, FetchError
from bewhere_pipeline.pipelines.crime_monthly import (
    CrimeMonthlyExtractor,
    CrimeMonthlyTransformer,
    CrimeObservationsLoader,
    report_period,
)
from bewhere_pipeline.utils.download import Fetcher
from bewhere_pipeline.utils.logging import get_logger
from bewhere_pipeline.utils.run_logger import EtlRunLogger
from bewhere_shared.config import settings
from bewhere_shared.db import Database
from bewhere_shared.schema import crime_observations

log = get_logger(__name__, pipeline="crime-yearly")

MONTHS: tuple[int, ...] = tuple(range(1, 13))


def missing_months(months: list[int]) -> list[int]:
    return [m for m in MONTHS if m not in months]


def completeness_note(months: list[int]) -> str:
    missing = missing_months(months)
    if not missing:
        return "Months with data: 12/12 (complete)"
    return f"Months with data: {len(months)}/12; missing: {', '.join(map(str, missing))}"


# ---------------------------------------------------------------------------
# Extract
# ---------------------------------------------------------------------------

class CrimeYearlyExtractor(BaseExtractor):
    name = "crime-yearly"
    record_label = "observation"

    def __init__(
        self,
        source: str | None = None,
        *,
        fetcher: Fetcher | None = None,
        year: int | None = None,
        min_months: int = 1,
        force: bool = False,
        max_rows: int | None = None,
        min_expected_rows: int | None = None,
    ) -> None:
        super().__init__(
            source or settings.etat4001_yearly_source,
            max_rows=max_rows,
            min_expected_rows=min_expected_rows,
        )
        self.fetcher = fetcher or Fetcher()
        self.year = year
        self.min_months = min_months
        self.force = force

    @property
    def is_template(self) -> bool:
        return "{month" in self.source

    async def validate(self) -> bool:
        if not 1 <= self.min_months <= 12:
            self._log.error("invalid_min_months", min_months=self.min_months)
            return False
        if self.is_template:
            return self.year is not None
        return Path(self.source).is_dir()

    def monthly_sources(self) -> tuple[int, dict[int, str]]:
        """(report year, {month: source}) for the months available to read."""
        if self.is_template:
            if self.year is None:
                raise ExtractionError(f"A {{month}} source template needs a report year: {self.source}")
            return self.year, {m: self.source.format(year=self.year, month=m) for m in MONTHS}

        directory = Path(self.source)
        if not directory.is_dir():
            raise ExtractionError(
                f"{self.source} is neither a directory nor a source template with {{month}}"
            )
        periods: dict[tuple[int, int], str] = {}
        for path in sorted(directory.iterdir()):
            found = report_period(path.name)
            if path.is_file() and found and found[1] in MONTHS:
                periods.setdefault(found, str(path))
        if not periods:
            raise ExtractionError(f"No État 4001 files named like etat4001_YYYY-MM in {self.source}")

        year = self.year if self.year is not None else max(y for y, _ in periods)
        return year, {m: source for (y, m), source in periods.items() if y == year}

    async def extract(self) -> ExtractionResult:
        year, sources = self.monthly_sources()
        warnings: list[str] = []
        frames: list[pl.DataFrame] = []
        from_cache = True

        for month, source in sorted(sources.items()):
            extractor = CrimeMonthlyExtractor(
                source, fetcher=self.fetcher, year=year, month=month, force=self.force
            )
            try:
                monthly = await extractor.extract()
            except FetchError as exc:
                if not self.is_template:
                    raise
                self._log.warning("month_unavailable", year=year, month=month, error=str(exc))
                continue
            warnings.extend(f"{year}-{month:02d}: {w}" for w in monthly.warnings)
            from_cache = from_cache and bool(monthly.from_cache)
            if monthly.records:
                frames.append(
                    pl.DataFrame(monthly.records).select(
                        "departement_code", "category_code", "count", "month", "indices"
                    )
                )

        if len(frames) < self.min_months:
            raise ExtractionError(
                f"Only {len(frames)} month(s) of État 4001 data for {year}; "
                f"at least {self.min_months} required"
            )

        yearly = (
            pl.concat(frames)
            .group_by(["departement_code", "category_code"])
            .agg(
                pl.col("count").sum(),
                pl.col("month").unique().sort().alias("months"),
                pl.col("indices").explode().unique().sort().alias("indices"),
            )
            .sort(["departement_code", "category_code"])
        )

        months_read = sorted({m for frame in frames for m in frame["month"].unique().to_list()})
        absent = missing_months(months_read)
        if absent:
            warnings.append(
                f"Year {year} is incomplete: no data for month(s) {', '.join(map(str, absent))}"
            )

        records = []
        for row in yearly.to_dicts():
            months = row.pop("months")
            records.append(
                {
                    **row,
                    "year": year,
                    "month": None,
                    "months_with_data": len(months),
                    "is_complete": not missing_months(months),
                    "missing_months": missing_months(months),
                    "notes": completeness_note(months),
                }
            )

        return self._finalize(
            records,
            warnings,
            from_cache=from_cache,
            metadata={"year": year, "months": months_read, "missing_months": absent},
        )


# ---------------------------------------------------------------------------
# Transform
# ---------------------------------------------------------------------------

class CrimeYearlyTransformer(CrimeMonthlyTransformer):
    """Monthly transform rules; month=None makes each record a yearly observation."""

    name = "crime-yearly"


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------

def count_loaded(database: Database) -> int:
    return CrimeObservationsLoader(database).count_rows(
        crime_observations.c.granularity == "yearly"
    )


def build_pipeline(
    database: Database,
    *,
    source: str | None = None,
    year: int | None = None,
    min_months: int = 1,
    force: bool = False,
    max_rows: int | None = None,
    fetcher: Fetcher | None = None,
    run_logger: EtlRunLogger | None = None,
    **_: Any,
) -> Pipeline:
    log.debug("pipeline_built", source=source, year=year, min_months=min_months)
    return Pipeline(
        "crime-yearly",
        CrimeYearlyExtractor(
            source,
            fetcher=fetcher,
            year=year,
            min_months=min_months,
            force=force,
            max_rows=max_rows,
        ),
        CrimeYearlyTransformer(database),
        CrimeObservationsLoader(database),
        run_logger=run_logger,
    )
