"""
pipelines/departements.py — French département boundaries -> administrative_areas.

Ingests a GeoJSON FeatureCollection of départements (geo.api.gouv.fr by
default), drops features without a code or a polygonal geometry,
optionally drops the overseas départements (codes 97x), encodes each
geometry as WKT and upserts one administrative_areas row per
(code, level='department').

Usage:
    from bewhere_pipeline.pipelines.departements import build_pipeline

    pipeline = build_pipeline(database, include_overseas=False)
    result = await pipeline.run(dry_run=True)
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from bewhere_pipeline.core.extractor import BaseExtractor, ExtractionResult
from bewhere_pipeline.core.loader import UpsertLoader
from bewhere_pipeline.core.pipeline import Pipeline
from bewhere_pipeline.core.transformer import BaseTransformer, RowError
from bewhere_pipeline.errors import ExtractionError
from bewhere_pipeline.utils.download import Fetcher
from bewhere_pipeline.utils.logging import get_logger
from bewhere_pipeline.utils.run_logger import EtlRunLogger
from bewhere_pipeline.utils.validation import validate_departement_code, validate_required_fields
from bewhere_shared.config import settings
from bewhere_shared.constants import (
    DEPARTEMENT_TO_REGION,
    EXPECTED_DEPARTEMENT_COUNT,
    FRENCH_REGIONS,
    is_overseas,
)
from bewhere_shared.db import Database
from bewhere_shared.geometry import encode, to_multi_polygon, validate_geometry
from bewhere_shared.models.areas import AreaRecord
from bewhere_shared.schema import administrative_areas

log = get_logger(__name__, pipeline="departements")

GEOJSON_SOURCES: dict[str, str] = {
    # Simplified contours, suitable for web display
    "geo-api": "https://geo.api.gouv.fr/departements?format=geojson&geometry=contour",
    # Full-resolution IGN polygons
    "etalab": (
        "https://raw.githubusercontent.com/etalab/decoupage-administratif/"
        "master/data/departements.geojson"
    ),
    "opendatasoft": (
        "https://public.opendatasoft.com/api/explore/v2.1/catalog/datasets/"
        "georef-france-departement/exports/geojson"
    ),
}
DEFAULT_SOURCE = settings.departements_source

POLYGONAL_TYPES = ("Polygon", "MultiPolygon")
AREA_LEVEL = "department"


def _has_code_and_polygon(feature: Any) -> bool:
    if not isinstance(feature, dict):
        return False
    properties = feature.get("properties") or {}
    geometry = feature.get("geometry") or {}
    return bool(properties.get("code")) and geometry.get("type") in POLYGONAL_TYPES


def _is_metropolitan(feature: dict[str, Any]) -> bool:
    return not is_overseas(str(feature["properties"]["code"]))


# ---------------------------------------------------------------------------
# Extract
# ---------------------------------------------------------------------------

class DepartementsExtractor(BaseExtractor):
    name = "departements"
    record_label = "feature"

    def __init__(
        self,
        source: str = DEFAULT_SOURCE,
        *,
        fetcher: Fetcher | None = None,
        include_overseas: bool = True,
        force: bool = False,
        max_rows: int | None = None,
        min_expected_rows: int | None = None,
    ) -> None:
        if min_expected_rows is None:
            min_expected_rows = EXPECTED_DEPARTEMENT_COUNT["metropolitan"]
        # A known provider name stands for its URL
        source = GEOJSON_SOURCES.get(source, source)
        super().__init__(source, max_rows=max_rows, min_expected_rows=min_expected_rows)
        self.fetcher = fetcher or Fetcher()
        self.include_overseas = include_overseas
        self.force = force

    async def validate(self) -> bool:
        ok = self.fetcher.validate(self.source)
        if not ok:
            self._log.error("invalid_source", source=self.source)
        return ok

    async def extract(self) -> ExtractionResult:
        download = await self.fetcher.fetch(self.source, force=self.force)
        try:
            geojson = json.loads(download.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ExtractionError(f"Failed to parse GeoJSON from {self.source}: {exc}") from exc

        if not isinstance(geojson, dict) or geojson.get("type") != "FeatureCollection":
            found = geojson.get("type") if isinstance(geojson, dict) else type(geojson).__name__
            raise ExtractionError(
                f"Invalid GeoJSON type: expected FeatureCollection, got {found}"
            )
        features = geojson.get("features")
        if not isinstance(features, list):
            raise ExtractionError("Invalid GeoJSON: features is not a list")

        warnings: list[str] = []
        features = self._filter(
            features,
            _has_code_and_polygon,
            "feature(s) without code or polygonal geometry",
            warnings,
        )
        if not self.include_overseas:
            features = self._filter(
                features, _is_metropolitan, "overseas département(s)", warnings
            )

        return self._finalize(
            features,
            warnings,
            from_cache=download.from_cache,
            metadata={"size": download.size, "elapsed_ms": download.elapsed_ms},
        )


# ---------------------------------------------------------------------------
# Transform
# ---------------------------------------------------------------------------

class DepartementsTransformer(BaseTransformer):
    name = "departements"

    def __init__(self, *, continue_on_error: bool = True, max_errors: int = 10) -> None:
        super().__init__(continue_on_error=continue_on_error, max_errors=max_errors)

    def transform_row(self, feature: dict[str, Any], index: int) -> AreaRecord:
        properties = feature.get("properties") or {}
        code = str(properties.get("code") or "")
        self.check(validate_required_fields({"code": code}, ["code"]), field="code")
        self.check(validate_departement_code(code), field="code", value=code)
        name = properties.get("nom") or properties.get("name")
        self.check(validate_required_fields({"nom": name}, ["nom"]), field="nom")

        geometry = feature.get("geometry")
        if not geometry:
            raise RowError("Geometry is missing", "geometry")
        if geometry.get("type") not in POLYGONAL_TYPES:
            raise RowError(
                f"Invalid geometry type: {geometry.get('type')}", "geometry.type", geometry.get("type")
            )
        validate_geometry(geometry)
        geometry = to_multi_polygon(geometry)

        return AreaRecord(
            code=code,
            name=name,
            name_en=None,
            level=AREA_LEVEL,
            parent_code=self.resolve_region(properties),
            country_code="FR",
            geometry=encode(geometry),
            geojson=geometry,
        )

    def resolve_region(self, properties: dict[str, Any]) -> str | None:
        region = properties.get("region") or properties.get("codeRegion")
        if region:
            return FRENCH_REGIONS.get(str(region), str(region))
        code = str(properties.get("code"))
        region = DEPARTEMENT_TO_REGION.get(code)
        if region is None:
            self._log.warning("region_unresolved", code=code)
            return None
        return FRENCH_REGIONS.get(region, region)


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------

class DepartementsLoader(UpsertLoader):
    table = administrative_areas
    natural_key = ("code", "level")

    def __init__(self, database: Database, *, batch_size: int = 50) -> None:
        super().__init__(database, batch_size=batch_size)

    async def validate(self) -> bool:
        if not await super().validate():
            return False
        if self.database.dialect != "postgresql":
            return True
        try:
            with self.database.engine.connect() as conn:
                version = conn.execute(text("SELECT PostGIS_Version()")).scalar()
        except SQLAlchemyError as exc:
            self._log.error("postgis_unavailable", error=str(exc))
            return False
        self._log.debug("postgis_version", version=version)
        return bool(version)

    def current_count(self) -> int:
        return self.count_rows(administrative_areas.c.level == AREA_LEVEL)

    def are_departements_loaded(self) -> bool:
        return self.current_count() >= EXPECTED_DEPARTEMENT_COUNT["metropolitan"]


def count_loaded(database: Database) -> int:
    return DepartementsLoader(database).current_count()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def build_pipeline(
    database: Database,
    *,
    source: str = DEFAULT_SOURCE,
    include_overseas: bool = True,
    force: bool = False,
    max_rows: int | None = None,
    fetcher: Fetcher | None = None,
    run_logger: EtlRunLogger | None = None,
    **_: Any,
) -> Pipeline:
    expected = EXPECTED_DEPARTEMENT_COUNT["total" if include_overseas else "metropolitan"]
    log.debug("pipeline_built", source=source, expected_rows=expected)
    return Pipeline(
        "departements",
        DepartementsExtractor(
            source,
            fetcher=fetcher,
            include_overseas=include_overseas,
            force=force,
            max_rows=max_rows,
        ),
        DepartementsTransformer(),
        DepartementsLoader(database),
        run_logger=run_logger,
        expected_rows=expected,
    )
