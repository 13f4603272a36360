"""
pipelines/lookups.py — read-only reference lookups used by transformers.

Transformers resolve natural codes (département code, category code,
data source code) to surrogate ids once per run in prepare().
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from bewhere_shared.db import Database
from bewhere_shared.schema import (
    administrative_areas,
    crime_categories,
    data_sources,
    population,
)


def area_ids_by_code(database: Database, level: str = "department") -> dict[str, UUID]:
    stmt = select(administrative_areas.c.code, administrative_areas.c.id).where(
        administrative_areas.c.level == level
    )
    with database.engine.connect() as conn:
        return {row.code: row.id for row in conn.execute(stmt)}


def category_ids_by_code(database: Database) -> dict[str, UUID]:
    stmt = select(crime_categories.c.code, crime_categories.c.id).where(
        crime_categories.c.is_active.is_(True)
    )
    with database.engine.connect() as conn:
        return {row.code: row.id for row in conn.execute(stmt)}


def data_source_id(database: Database, code: str) -> UUID | None:
    stmt = select(data_sources.c.id).where(data_sources.c.code == code)
    with database.engine.connect() as conn:
        return conn.execute(stmt).scalar_one_or_none()


def population_by_area(database: Database) -> dict[UUID, dict[int, int]]:
    """{area_id: {year: population_count}}"""
    stmt = select(population.c.area_id, population.c.year, population.c.population_count)
    out: dict[UUID, dict[int, int]] = {}
    with database.engine.connect() as conn:
        for row in conn.execute(stmt):
            out.setdefault(row.area_id, {})[int(row.year)] = int(row.population_count)
    return out
