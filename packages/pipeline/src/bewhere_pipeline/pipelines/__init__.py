"""
bewhere_pipeline.pipelines — dataset registry.

Each dataset module exports build_pipeline(database, **options) returning
a runnable pipeline, and count_loaded(database) returning the rows it has
persisted. The registry records how datasets depend on each other: a
dataset runs only once every dependency has at least its min_rows loaded.

    from bewhere_pipeline.pipelines import get_dataset

    spec = get_dataset("population")
    pipeline = spec.build(database, start_year=2016)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from bewhere_pipeline.core.pipeline import RunnablePipeline
from bewhere_pipeline.errors import UnknownDatasetError
from bewhere_pipeline.pipelines import (
    crime_monthly,
    crime_yearly,
    departements,
    placeholder,
    population,
)
from bewhere_shared.constants import EXPECTED_DEPARTEMENT_COUNT
from bewhere_shared.db import Database

METROPOLITAN = EXPECTED_DEPARTEMENT_COUNT["metropolitan"]


@dataclass(frozen=True)
class DatasetSpec:
    name: str
    build: Callable[..., RunnablePipeline]
    depends_on: tuple[str, ...] = ()
    # Minimum persisted rows for this dataset to satisfy its dependents
    min_rows: int = 1
    count_rows: Callable[[Database], int] | None = None
    description: str = ""

    def loaded_rows(self, database: Database) -> int:
        return self.count_rows(database) if self.count_rows is not None else 0


DATASETS: dict[str, DatasetSpec] = {
    spec.name: spec
    for spec in (
        DatasetSpec(
            name="departements",
            build=departements.build_pipeline,
            min_rows=METROPOLITAN,
            count_rows=departements.count_loaded,
            description="Département boundaries (GeoJSON) -> administrative_areas",
        ),
        DatasetSpec(
            name="population",
            build=population.build_pipeline,
            depends_on=("departements",),
            min_rows=METROPOLITAN,
            count_rows=population.count_loaded,
            description="INSEE population by département and year -> population",
        ),
        DatasetSpec(
            name="crime-monthly",
            build=crime_monthly.build_pipeline,
            depends_on=("population",),
            min_rows=1,
            count_rows=crime_monthly.count_loaded,
            description="État 4001 monthly offences -> crime_observations",
        ),
        DatasetSpec(
            name="crime-yearly",
            build=crime_yearly.build_pipeline,
            depends_on=("population",),
            min_rows=1,
            count_rows=crime_yearly.count_loaded,
            description="État 4001 monthly files summed per year -> crime_observations",
        ),
        DatasetSpec(
            name="crime-timeseries",
            build=placeholder.build_pipeline,
            depends_on=("crime-monthly",),
            description="Historical crime time series (placeholder)",
        ),
    )
}


def get_dataset(name: str) -> DatasetSpec:
    try:
        return DATASETS[name]
    except KeyError:
        raise UnknownDatasetError(name, DATASETS) from None


def dataset_names() -> list[str]:
    return list(DATASETS)


__all__ = ["DATASETS", "DatasetSpec", "dataset_names", "get_dataset"]
