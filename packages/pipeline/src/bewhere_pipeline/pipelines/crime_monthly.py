"""
pipelines/crime_monthly.py — État 4001 monthly snapshot -> crime_observations.

État 4001 is the Ministère de l'Intérieur's monthly table of recorded
offences: one row per offence index (1-107), one column per département.
Files are Latin-1, semicolon separated, and open with title rows:

    Etat 4001 - Janvier 2024;;;;
    ;;;;
    N°Index;Libellé index;Métropole;01-Ain;02-Aisne;...
    1;Règlements de compte entre malfaiteurs;12;0;1;...

The extractor melts the wide table to (département, index, count) rows
with polars and folds the 107 indices into the canonical categories,
summing counts per (département, category). The transformer resolves
area, category and data source ids and attaches rate_per_100k using the
loaded population (exact year, else the nearest loaded year).

Usage:
    from bewhere_pipeline.pipelines.crime_monthly import build_pipeline
    result = await build_pipeline(database, source="etat4001_2024-01.csv").run()
"""

from __future__ import annotations

import io
import re
import unicodedata
from typing import Any
from uuid import UUID

import polars as pl

from bewhere_pipeline.core.extractor import BaseExtractor, ExtractionResult
from bewhere_pipeline.core.loader import UpsertLoader
from bewhere_pipeline.core.pipeline import Pipeline
from bewhere_pipeline.core.transformer import BaseTransformer, RowError
from bewhere_pipeline.errors import ExtractionError, TransformationError
from bewhere_pipeline.pipelines.lookups import (
    area_ids_by_code,
    category_ids_by_code,
    data_source_id,
    population_by_area,
)
from bewhere_pipeline.utils.download import Fetcher
from bewhere_pipeline.utils.logging import get_logger
from bewhere_pipeline.utils.run_logger import EtlRunLogger
from bewhere_pipeline.utils.validation import (
    calculate_rate_per_100k,
    validate_crime_count,
    validate_month,
    validate_required_fields,
    validate_year,
)
from bewhere_shared.config import settings
from bewhere_shared.constants import DEPARTEMENT_NAMES, ETAT4001_SOURCE_CODE
from bewhere_shared.db import Database
from bewhere_shared.models.crime import CrimeObservationRecord
from bewhere_shared.schema import crime_observations

log = get_logger(__name__, pipeline="crime-monthly")


def _span(first: int, last: int) -> tuple[int, ...]:
    return tuple(range(first, last + 1))


# État 4001 index -> canonical category. DOMESTIC_VIOLENCE has no index of
# its own in this table.
CATEGORY_INDICES: dict[str, tuple[int, ...]] = {
    "HOMICIDE": (1, 2, 3, 51),
    "ATTEMPTED_HOMICIDE": (4, 5, 6),
    "ASSAULT": (7, 11, 12, 13, 73),
    "SEXUAL_VIOLENCE": _span(46, 50),
    "HUMAN_TRAFFICKING": (45,),
    "KIDNAPPING": (8, 9, 10),
    "ARMED_ROBBERY": _span(15, 22),
    "ROBBERY": _span(23, 26),
    "BURGLARY_RESIDENTIAL": (14, 27, 28, 31),
    "BURGLARY_COMMERCIAL": (29, 30),
    "VEHICLE_THEFT": _span(34, 38),
    "THEFT_OTHER": (32, 33, *_span(39, 44)),
    "DRUG_TRAFFICKING": (55, 56),
    "DRUG_USE": (57, 58),
    "ARSON": _span(62, 65),
    "VANDALISM": _span(66, 68),
    "FRAUD": (*_span(81, 92), 98, 101, 102, 106),
    "CHILD_ABUSE": (52, 53, 54),
    "DOMESTIC_VIOLENCE": (),
    "OTHER": (59, 60, 61, 69, 70, 71, 72, *_span(74, 80), 93, 94, 95, 103, 104, 105, 107),
}
# Discontinued indices, always zero in current files
UNUSED_INDICES: frozenset[int] = frozenset({96, 97, 99, 100})

INDEX_TO_CATEGORY: dict[int, str] = {
    index: category for category, indices in CATEGORY_INDICES.items() for index in indices
}

MIN_DEPARTEMENT_COLUMNS = 90
_DATE_IN_NAME = re.compile(r"(\d{4})[-_](\d{2})")
_CODE_PREFIXED = re.compile(r"^(\d{1,3}|2[AB])\s*[-–]\s*.+$", re.IGNORECASE)
_NOT_A_DEPARTEMENT = ("metropole", "france metropolitaine")
REQUIRED_FIELDS = ("departement_code", "category_code", "year", "count")


def _fold(text: str) -> str:
    """Lowercase and strip diacritics: 'Ardèche' -> 'ardeche'."""
    decomposed = unicodedata.normalize("NFD", text.strip().lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c)).replace("’", "'")


_NAME_TO_CODE: dict[str, str] = {_fold(name): code for code, name in DEPARTEMENT_NAMES.items()}


def resolve_departement_column(header: str) -> str | None:
    """
    Map an État 4001 column header to a département code.

    Accepts a bare code ("01", "2A", "971"), a code-prefixed label
    ("01-Ain", "2B - Haute-Corse") or a name ("Ardèche", "cotes d'armor").
    Returns None for anything else, including the Métropole total.
    """
    header = header.strip()
    if not header:
        return None
    upper = header.upper()
    if upper in DEPARTEMENT_NAMES:
        return upper
    if upper.isdigit() and upper.zfill(2) in DEPARTEMENT_NAMES:
        return upper.zfill(2)

    match = _CODE_PREFIXED.match(header)
    if match:
        code = match.group(1).upper()
        code = code.zfill(2) if code.isdigit() else code
        if code in DEPARTEMENT_NAMES:
            return code

    folded = _fold(header)
    for key in (folded, folded.replace("-", " "), folded.replace(" ", "-")):
        if key in _NAME_TO_CODE:
            return _NAME_TO_CODE[key]
    return None


def report_period(source: str) -> tuple[int, int] | None:
    """(year, month) from a file name like etat4001_2024-01.csv."""
    match = _DATE_IN_NAME.search(source.rsplit("/", 1)[-1])
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


# ---------------------------------------------------------------------------
# Extract
# ---------------------------------------------------------------------------

class CrimeMonthlyExtractor(BaseExtractor):
    name = "crime-monthly"
    record_label = "observation"

    def __init__(
        self,
        source: str | None = None,
        *,
        fetcher: Fetcher | None = None,
        year: int | None = None,
        month: int | None = None,
        encoding: str = "latin-1",
        separator: str = ";",
        skip_rows: int = 2,
        force: bool = False,
        max_rows: int | None = None,
        min_expected_rows: int | None = None,
    ) -> None:
        super().__init__(
            source or settings.etat4001_source,
            max_rows=max_rows,
            min_expected_rows=min_expected_rows,
        )
        self.fetcher = fetcher or Fetcher()
        self.year = year
        self.month = month
        self.encoding = encoding
        self.separator = separator
        self.skip_rows = skip_rows
        self.force = force

    async def validate(self) -> bool:
        if self.month is not None and not 1 <= self.month <= 12:
            self._log.error("invalid_month", month=self.month)
            return False
        return self.fetcher.validate(self.source)

    def period(self) -> tuple[int, int]:
        found = report_period(self.source)
        year = self.year if self.year is not None else (found[0] if found else None)
        month = self.month if self.month is not None else (found[1] if found else None)
        if year is None or month is None:
            raise ExtractionError(
                f"Cannot determine report year/month for {self.source}; "
                "pass year= and month= or name the file like etat4001_YYYY-MM.csv"
            )
        if not 1 <= month <= 12:
            raise ExtractionError(f"Report month must be 1-12, got {month}")
        return year, month

    def read_table(self, raw: bytes) -> pl.DataFrame:
        try:
            text = raw.decode(self.encoding)
            return pl.read_csv(
                io.BytesIO(text.encode("utf-8")),
                separator=self.separator,
                skip_rows=self.skip_rows,
                infer_schema_length=0,
                truncate_ragged_lines=True,
            )
        except (UnicodeDecodeError, LookupError, pl.exceptions.PolarsError) as exc:
            raise ExtractionError(f"Cannot parse État 4001 file {self.source}: {exc}") from exc

    def departement_columns(
        self, columns: list[str], warnings: list[str]
    ) -> dict[str, str]:
        """{column name: département code} for the columns after index and label."""
        mapping: dict[str, str] = {}
        ignored: list[str] = []
        for column in columns[2:]:
            code = resolve_departement_column(column)
            if code is None:
                folded = _fold(column)
                if folded and folded not in _NOT_A_DEPARTEMENT and "total" not in folded:
                    ignored.append(column)
                continue
            if code not in mapping.values():
                mapping[column] = code

        if ignored:
            warnings.append(f"Ignored {len(ignored)} unrecognized column(s): {', '.join(ignored)}")
            self._log.warning("columns_ignored", columns=ignored)
        if len(mapping) < MIN_DEPARTEMENT_COLUMNS:
            warnings.append(
                f"Low département count: {len(mapping)} (expected at least "
                f"{MIN_DEPARTEMENT_COLUMNS})"
            )
        return mapping

    async def extract(self) -> ExtractionResult:
        year, month = self.period()
        download = await self.fetcher.fetch(self.source, force=self.force)
        df = self.read_table(download.path.read_bytes())
        if df.width < 3:
            raise ExtractionError(
                f"État 4001 file has {df.width} column(s); expected index, label and départements"
            )

        warnings: list[str] = []
        columns = self.departement_columns(df.columns, warnings)
        if not columns:
            raise ExtractionError("No département columns recognized in État 4001 header")

        wide = (
            df.select([df.columns[0], *columns])
            .rename({df.columns[0]: "index", **columns})
            .with_columns(pl.col("index").str.strip_chars().cast(pl.Int32, strict=False))
            .filter(pl.col("index").is_not_null())
        )

        indices = set(wide["index"].to_list())
        unmapped = sorted(indices - INDEX_TO_CATEGORY.keys() - UNUSED_INDICES)
        if unmapped:
            warnings.append(f"Unmapped État 4001 indices ignored: {unmapped}")

        long = (
            wide.filter(pl.col("index").is_in(list(INDEX_TO_CATEGORY)))
            .unpivot(
                index="index",
                on=list(columns.values()),
                variable_name="departement_code",
                value_name="raw_count",
            )
            .with_columns(
                pl.col("index")
                .replace_strict(INDEX_TO_CATEGORY, return_dtype=pl.String)
                .alias("category_code"),
                pl.col("raw_count")
                .str.replace_all(r"\s", "")
                .cast(pl.Int64, strict=False)
                .alias("count"),
            )
        )

        invalid = long.filter(
            pl.col("count").is_null() & (pl.col("raw_count").str.strip_chars().str.len_chars() > 0)
        ).height
        if invalid:
            warnings.append(f"{invalid} non-numeric count cell(s) treated as 0")

        grouped = (
            long.with_columns(pl.col("count").fill_null(0))
            .group_by(["departement_code", "category_code"])
            .agg(pl.col("count").sum(), pl.col("index").sort().alias("indices"))
            .sort(["departement_code", "category_code"])
            .with_columns(pl.lit(year).alias("year"), pl.lit(month).alias("month"))
        )

        return self._finalize(
            grouped.to_dicts(),
            warnings,
            from_cache=download.from_cache,
            metadata={
                "year": year,
                "month": month,
                "departements": len(columns),
                "indices": len(indices),
            },
        )


# ---------------------------------------------------------------------------
# Transform
# ---------------------------------------------------------------------------

class CrimeMonthlyTransformer(BaseTransformer):
    name = "crime-monthly"

    def __init__(
        self,
        database: Database,
        *,
        source_code: str = ETAT4001_SOURCE_CODE,
        continue_on_error: bool = True,
        max_errors: int = 100,
    ) -> None:
        super().__init__(continue_on_error=continue_on_error, max_errors=max_errors)
        self.database = database
        self.source_code = source_code
        self._area_ids: dict[str, UUID] = {}
        self._category_ids: dict[str, UUID] = {}
        self._population: dict[UUID, dict[int, int]] = {}
        self._source_id: UUID | None = None
        self._missing_population: set[str] = set()

    async def validate(self) -> bool:
        return self.database.is_open

    def prepare(self) -> None:
        self._area_ids = area_ids_by_code(self.database)
        if not self._area_ids:
            raise TransformationError("No départements loaded; run the departements dataset first")
        self._category_ids = category_ids_by_code(self.database)
        if not self._category_ids:
            raise TransformationError(
                "crime_categories is empty; the canonical categories must be seeded first"
            )
        self._source_id = data_source_id(self.database, self.source_code)
        if self._source_id is None:
            raise TransformationError(f"Data source {self.source_code} is not registered")
        self._population = population_by_area(self.database)
        self._missing_population = set()
        log.debug(
            "lookups_loaded",
            areas=len(self._area_ids),
            categories=len(self._category_ids),
            areas_with_population=len(self._population),
        )

    def population_for(self, area_id: UUID, year: int) -> tuple[int, int] | None:
        """(population, year used): exact year, else the nearest loaded year."""
        by_year = self._population.get(area_id)
        if not by_year:
            return None
        if year in by_year:
            return by_year[year], year
        nearest = min(by_year, key=lambda y: (abs(y - year), -y))
        return by_year[nearest], nearest

    def transform_row(self, record: dict[str, Any], index: int) -> CrimeObservationRecord:
        self.check(validate_required_fields(record, REQUIRED_FIELDS))
        code = record["departement_code"]
        area_id = self._area_ids.get(code)
        if area_id is None:
            raise RowError(f"Unknown département code {code}", "departement_code", code)
        category = record["category_code"]
        category_id = self._category_ids.get(category)
        if category_id is None:
            raise RowError(f"Unknown crime category {category}", "category_code", category)

        year = int(record["year"])
        count = int(record["count"])
        self.check(validate_year(year), field="year", value=year)
        self.check(validate_crime_count(count), field="count", value=count)
        month = record.get("month")
        if month is not None:
            self.check(validate_month(month), field="month", value=month)
        rate = population_used = None
        notes = [record["notes"]] if record.get("notes") else []
        found = self.population_for(area_id, year)
        if found is None:
            if code not in self._missing_population:
                self._missing_population.add(code)
                self.warn(f"No population for {code}; rate_per_100k left empty")
        else:
            population_used, population_year = found
            rate = calculate_rate_per_100k(count, population_used)
            if population_year != year:
                notes.append(f"Population from year {population_year}")

        return CrimeObservationRecord(
            area_id=area_id,
            category_id=category_id,
            data_source_id=self._source_id,
            year=year,
            month=month,
            granularity="monthly" if month is not None else "yearly",
            count=count,
            rate_per_100k=rate,
            population_used=population_used,
            notes="; ".join(notes) or None,
        )


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------

class CrimeObservationsLoader(UpsertLoader):
    table = crime_observations
    natural_key = CrimeObservationRecord.NATURAL_KEY


def count_loaded(database: Database) -> int:
    return CrimeObservationsLoader(database).count_rows(
        crime_observations.c.granularity == "monthly"
    )


def build_pipeline(
    database: Database,
    *,
    source: str | None = None,
    year: int | None = None,
    month: int | None = None,
    force: bool = False,
    max_rows: int | None = None,
    fetcher: Fetcher | None = None,
    run_logger: EtlRunLogger | None = None,
    **_: Any,
) -> Pipeline:
    return Pipeline(
        "crime-monthly",
        CrimeMonthlyExtractor(
            source,
            fetcher=fetcher,
            year=year,
            month=month,
            force=force,
            max_rows=max_rows,
        ),
        CrimeMonthlyTransformer(database),
        CrimeObservationsLoader(database),
        run_logger=run_logger,
    )
