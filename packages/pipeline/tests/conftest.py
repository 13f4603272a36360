"""
tests/conftest.py — Shared pytest fixtures for the pipeline test suite.

Provides:
  database           — open Database on an in-memory SQLite engine with the
                       full schema and stand-in ST_GeomFromText / ST_AsGeoJSON
  seeded_database    — database plus crime categories and data sources
  areas_database     — seeded_database plus all 101 départements
  fetcher            — Fetcher with a tmp cache and no retry delay
  mock_http          — configured respx router for faking HTTP responses
  departements_geojson / write_* helpers — synthetic source files
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import respx
from sqlalchemy import event, insert
from sqlalchemy.pool import StaticPool

from bewhere_pipeline.utils.download import Fetcher
from bewhere_shared.constants import CANONICAL_CATEGORIES, DEPARTEMENT_NAMES, ETAT4001_SOURCE_CODE
from bewhere_shared.db import Database
from bewhere_shared.schema import administrative_areas, crime_categories, data_sources, metadata

SQUARE_WKT = "POLYGON((2 48, 3 48, 3 49, 2 49, 2 48))"

# Reference rows normally written by the migration seeds
CATEGORY_ROWS = [
    {"code": code, "name": code.replace("_", " ").title(), "sort_order": order}
    for order, code in enumerate(CANONICAL_CATEGORIES, start=1)
]
DATA_SOURCE_ROWS = [{"code": ETAT4001_SOURCE_CODE, "name": "État 4001", "update_frequency": "monthly"}]


def _register_spatial_functions(dbapi_connection: Any, _record: Any) -> None:
    # Geometry is stored as WKT text on SQLite
    dbapi_connection.create_function("ST_GeomFromText", 2, lambda wkt, _srid: wkt)
    dbapi_connection.create_function("ST_AsGeoJSON", 1, lambda value: value)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def database() -> Iterator[Database]:
    db = Database("sqlite://", poolclass=StaticPool).open()
    event.listen(db.engine, "connect", _register_spatial_functions)
    metadata.create_all(db.engine)
    yield db
    db.close()


@pytest.fixture
def seeded_database(database: Database) -> Database:
    with database.engine.begin() as conn:
        conn.execute(insert(crime_categories), CATEGORY_ROWS)
        conn.execute(insert(data_sources), DATA_SOURCE_ROWS)
    return database


@pytest.fixture
def areas_database(seeded_database: Database) -> Database:
    """seeded_database plus one department row per code in DEPARTEMENT_NAMES."""
    rows = [
        {"code": code, "name": name, "level": "department", "geometry": SQUARE_WKT}
        for code, name in DEPARTEMENT_NAMES.items()
    ]
    with seeded_database.engine.begin() as conn:
        conn.execute(insert(administrative_areas), rows)
    return seeded_database


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

@pytest.fixture
def fetcher(tmp_path: Path) -> Fetcher:
    return Fetcher(
        tmp_path / "cache",
        cache_max_age=3600,
        timeout=5,
        max_retries=2,
        retry_delay=0,
    )


@pytest.fixture
def mock_http():
    """
    Activate the respx mock router for all httpx requests.

    Usage in tests:
        def test_something(mock_http):
            mock_http.get("https://...").mock(return_value=httpx.Response(200, json={...}))
    """
    with respx.mock(assert_all_called=False) as router:
        yield router


# ---------------------------------------------------------------------------
# Synthetic sources
# ---------------------------------------------------------------------------

def square(x: float, y: float, size: float = 0.5) -> list[list[list[float]]]:
    return [[[x, y], [x + size, y], [x + size, y + size], [x, y + size], [x, y]]]


def make_feature(code: str, name: str, index: int = 0) -> dict[str, Any]:
    x, y = -5.0 + (index % 12) * 0.8, 42.0 + (index // 12) * 0.8
    if index % 10 == 0:
        geometry = {"type": "MultiPolygon", "coordinates": [square(x, y), square(x, y + 0.6, 0.1)]}
    else:
        geometry = {"type": "Polygon", "coordinates": square(x, y)}
    return {
        "type": "Feature",
        "properties": {"code": code, "nom": name},
        "geometry": geometry,
    }


@pytest.fixture
def departements_geojson() -> dict[str, Any]:
    """101 départements: 96 metropolitan + 5 overseas."""
    features = [
        make_feature(code, name, i) for i, (code, name) in enumerate(DEPARTEMENT_NAMES.items())
    ]
    return {"type": "FeatureCollection", "features": features}


@pytest.fixture
def departements_file(tmp_path: Path, departements_geojson: dict[str, Any]) -> Path:
    path = tmp_path / "departements.geojson"
    path.write_text(json.dumps(departements_geojson), encoding="utf-8")
    return path


def write_population_csv(
    path: Path, years: tuple[int, ...] = (2022,), codes: list[str] | None = None
) -> Path:
    lines = ["code;year;population"]
    for code in codes or list(DEPARTEMENT_NAMES):
        for year in years:
            lines.append(f"{code};{year};{100000 + len(lines)}")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def write_etat4001_csv(
    path: Path,
    codes: list[str] | None = None,
    indices: tuple[int, ...] = (1, 2, 4, 27, 96, 108),
) -> Path:
    """État 4001 layout: two title rows, a header row, one row per index."""
    codes = codes or [c for c in DEPARTEMENT_NAMES if not c.startswith("97")]
    header = ["N°Index", "Libellé index", "Métropole"] + [
        f"{code}-{DEPARTEMENT_NAMES[code]}" for code in codes
    ]
    lines = ["Etat 4001 - Janvier 2024" + ";" * (len(header) - 1), ";" * (len(header) - 1)]
    lines.append(";".join(header))
    for index in indices:
        counts = [str(index + n % 3) for n in range(len(codes))]
        total = sum(int(c) for c in counts)
        lines.append(";".join([str(index), f"Index {index}", str(total), *counts]))
    path.write_bytes(("\n".join(lines) + "\n").encode("latin-1"))
    return path


@pytest.fixture
def population_file(tmp_path: Path) -> Path:
    return write_population_csv(tmp_path / "population.csv", years=(2021, 2022))


@pytest.fixture
def etat4001_file(tmp_path: Path) -> Path:
    return write_etat4001_csv(tmp_path / "etat4001_2024-01.csv")


@pytest.fixture
def population_csv():
    """Factory: population_csv(path, years=..., codes=...)."""
    return write_population_csv


@pytest.fixture
def etat4001_csv():
    """Factory: etat4001_csv(path, codes=..., indices=...)."""
    return write_etat4001_csv
