"""
pipelines/population.py — INSEE population estimates -> population table.

Source: a delimited file (URL or local path) with one row per
(département, year). Column names, delimiter and a value scale are
configurable; INSEE publishes some series in thousands.

    code;year;population
    01;2022;663202
    2A;2022;162421

Each row is resolved to its administrative_areas id, so the départements
dataset must be loaded first. Rows are upserted on (area_id, year).

Usage:
    from bewhere_pipeline.pipelines.population import build_pipeline
    result = await build_pipeline(database, start_year=2016).run()
"""

from __future__ import annotations

import io
from typing import Any
from uuid import UUID

import polars as pl

from bewhere_pipeline.core.extractor import BaseExtractor, ExtractionResult
from bewhere_pipeline.core.loader import UpsertLoader
from bewhere_pipeline.core.pipeline import Pipeline
from bewhere_pipeline.core.transformer import BaseTransformer, RowError
from bewhere_pipeline.errors import ExtractionError, TransformationError
from bewhere_pipeline.pipelines.lookups import area_ids_by_code
from bewhere_pipeline.utils.download import Fetcher
from bewhere_pipeline.utils.logging import get_logger
from bewhere_pipeline.utils.run_logger import EtlRunLogger
from bewhere_pipeline.utils.validation import validate_year
from bewhere_shared.config import settings
from bewhere_shared.constants import INSEE_POPULATION_SOURCE, is_overseas
from bewhere_shared.db import Database
from bewhere_shared.models.areas import PopulationRecord
from bewhere_shared.schema import population

log = get_logger(__name__, pipeline="population")

POPULATION_WARN_THRESHOLD = 100_000_000


def _normalize_code(code: str) -> str:
    code = code.strip().upper()
    # "1" -> "01"; Corsica ("2A") and overseas ("971") unchanged
    return code.zfill(2) if code.isdigit() and len(code) < 2 else code


# ---------------------------------------------------------------------------
# Extract
# ---------------------------------------------------------------------------

class PopulationExtractor(BaseExtractor):
    name = "population"
    record_label = "population row"

    def __init__(
        self,
        source: str | None = None,
        *,
        fetcher: Fetcher | None = None,
        start_year: int | None = None,
        end_year: int | None = None,
        include_overseas: bool = True,
        code_column: str = "code",
        year_column: str = "year",
        population_column: str = "population",
        separator: str = ";",
        encoding: str = "utf-8",
        force: bool = False,
        max_rows: int | None = None,
        min_expected_rows: int | None = None,
    ) -> None:
        super().__init__(
            source or settings.population_source,
            max_rows=max_rows,
            min_expected_rows=min_expected_rows,
        )
        self.fetcher = fetcher or Fetcher()
        self.start_year = start_year
        self.end_year = end_year
        self.include_overseas = include_overseas
        self.columns = {
            code_column: "departement_code",
            year_column: "year",
            population_column: "population",
        }
        self.separator = separator
        self.encoding = encoding
        self.force = force

    async def validate(self) -> bool:
        if self.start_year and self.end_year and self.start_year > self.end_year:
            self._log.error("invalid_year_range", start=self.start_year, end=self.end_year)
            return False
        return self.fetcher.validate(self.source)

    def parse(self, raw: bytes) -> pl.DataFrame:
        try:
            text = raw.decode(self.encoding).lstrip("﻿")
            df = pl.read_csv(
                io.BytesIO(text.encode("utf-8")),
                separator=self.separator,
                infer_schema_length=0,
                truncate_ragged_lines=True,
            )
        except (UnicodeDecodeError, pl.exceptions.PolarsError) as exc:
            raise ExtractionError(f"Cannot parse population file {self.source}: {exc}") from exc

        missing = [c for c in self.columns if c not in df.columns]
        if missing:
            raise ExtractionError(
                f"Population file is missing column(s) {missing}; found {df.columns}"
            )
        return (
            df.select(list(self.columns))
            .rename(self.columns)
            .with_columns(
                pl.col("departement_code").map_elements(_normalize_code, return_dtype=pl.String),
                pl.col("year").str.strip_chars().cast(pl.Int32, strict=False).alias("year_int"),
            )
        )

    async def extract(self) -> ExtractionResult:
        download = await self.fetcher.fetch(self.source, force=self.force)
        df = self.parse(download.path.read_bytes())
        warnings: list[str] = []

        if self.start_year is not None or self.end_year is not None:
            lo = self.start_year or 0
            hi = self.end_year or 9999
            in_range = pl.col("year_int").is_null() | pl.col("year_int").is_between(lo, hi)
            dropped = df.height - df.filter(in_range).height
            df = df.filter(in_range)
            if dropped:
                warnings.append(f"Filtered out {dropped} row(s) outside {lo}-{hi}")

        records = df.drop("year_int").sort(["departement_code", "year"]).to_dicts()
        if not self.include_overseas:
            records = self._filter(
                records,
                lambda r: not is_overseas(r["departement_code"] or ""),
                "overseas population row(s)",
                warnings,
            )
        return self._finalize(records, warnings, from_cache=download.from_cache)


# ---------------------------------------------------------------------------
# Transform
# ---------------------------------------------------------------------------

class PopulationTransformer(BaseTransformer):
    name = "population"

    def __init__(
        self,
        database: Database,
        *,
        scale: int = 1,
        source_label: str = INSEE_POPULATION_SOURCE,
        continue_on_error: bool = True,
        max_errors: int = 100,
    ) -> None:
        super().__init__(continue_on_error=continue_on_error, max_errors=max_errors)
        self.database = database
        self.scale = scale
        self.source_label = source_label
        self._area_ids: dict[str, UUID] = {}

    async def validate(self) -> bool:
        return self.database.is_open

    def prepare(self) -> None:
        self._area_ids = area_ids_by_code(self.database)
        if not self._area_ids:
            raise TransformationError(
                "No départements found in administrative_areas; load départements first"
            )
        log.debug("areas_resolved", count=len(self._area_ids))

    def transform_row(self, record: dict[str, Any], index: int) -> PopulationRecord:
        code = record.get("departement_code")
        if not code:
            raise RowError("Missing département code", "departement_code")
        area_id = self._area_ids.get(code)
        if area_id is None:
            raise RowError(f"Unknown département code {code}", "departement_code", code)

        try:
            year = int(str(record.get("year")).strip())
        except ValueError:
            raise RowError("Year is not an integer", "year", record.get("year")) from None
        self.check(validate_year(year), field="year", value=year)

        raw_population = str(record.get("population") or "").replace(" ", "").replace(",", ".")
        try:
            count = round(float(raw_population) * self.scale)
        except ValueError:
            raise RowError("Population is not a number", "population", record.get("population")) from None
        if count <= 0:
            raise RowError("Population must be greater than 0", "population", count)
        if count > POPULATION_WARN_THRESHOLD:
            self.warn(f"Unusually large population for {code} in {year}: {count}")

        return PopulationRecord(
            area_id=area_id,
            year=year,
            population_count=count,
            source=self.source_label,
            departement_code=code,
        )


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------

class PopulationLoader(UpsertLoader):
    table = population
    natural_key = ("area_id", "year")


def count_loaded(database: Database) -> int:
    return PopulationLoader(database).count_rows()


def build_pipeline(
    database: Database,
    *,
    source: str | None = None,
    start_year: int | None = None,
    end_year: int | None = None,
    include_overseas: bool = True,
    scale: int = 1,
    force: bool = False,
    max_rows: int | None = None,
    fetcher: Fetcher | None = None,
    run_logger: EtlRunLogger | None = None,
    **_: Any,
) -> Pipeline:
    return Pipeline(
        "population",
        PopulationExtractor(
            source,
            fetcher=fetcher,
            start_year=start_year,
            end_year=end_year,
            include_overseas=include_overseas,
            force=force,
            max_rows=max_rows,
        ),
        PopulationTransformer(database, scale=scale),
        PopulationLoader(database),
        run_logger=run_logger,
    )
