"""
tests/test_pipelines/test_departements.py — département boundaries pipeline.

GeoJSON is served by respx or read from tmp_path; the store is SQLite.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from bewhere_pipeline.core.pipeline import RunStatus
from bewhere_pipeline.errors import ExtractionError
from bewhere_pipeline.pipelines.departements import (
    DepartementsExtractor,
    DepartementsLoader,
    DepartementsTransformer,
    build_pipeline,
)
from bewhere_pipeline.utils.download import Fetcher
from bewhere_pipeline.utils.run_logger import EtlRunLogger
from bewhere_shared.db import Database

URL = "https://geo.example.test/departements.geojson"


# ---------------------------------------------------------------------------
# extract()
# ---------------------------------------------------------------------------

class TestExtract:
    @pytest.mark.asyncio
    async def test_overseas_filter(self, fetcher: Fetcher, departements_file: Path):
        extractor = DepartementsExtractor(
            str(departements_file), fetcher=fetcher, include_overseas=False
        )
        result = await extractor.extract()
        assert result.row_count == 96
        assert "Filtered out 5 overseas département(s)" in result.warnings

    @pytest.mark.asyncio
    async def test_drops_features_without_code_or_polygon(
        self, fetcher: Fetcher, tmp_path: Path, departements_geojson: dict[str, Any]
    ):
        features = departements_geojson["features"]
        features[0]["properties"].pop("code")
        features[1]["geometry"] = {"type": "Point", "coordinates": [1.0, 2.0]}
        features[2]["geometry"] = None
        path = tmp_path / "partial.geojson"
        path.write_text(json.dumps(departements_geojson))

        result = await DepartementsExtractor(str(path), fetcher=fetcher).extract()

        assert result.row_count == 98
        assert "Filtered out 3 feature(s) without code or polygonal geometry" in result.warnings

    @pytest.mark.asyncio
    async def test_rejects_non_feature_collection(self, fetcher: Fetcher, mock_http):
        mock_http.get(URL).mock(return_value=httpx.Response(200, json={"type": "Feature"}))
        with pytest.raises(ExtractionError, match="expected FeatureCollection"):
            await DepartementsExtractor(URL, fetcher=fetcher).extract()

    @pytest.mark.asyncio
    async def test_rejects_invalid_json(self, fetcher: Fetcher, mock_http):
        mock_http.get(URL).mock(return_value=httpx.Response(200, content=b"<html>"))
        with pytest.raises(ExtractionError, match="Failed to parse GeoJSON"):
            await DepartementsExtractor(URL, fetcher=fetcher).extract()

    def test_named_source(self, fetcher: Fetcher):
        extractor = DepartementsExtractor("etalab", fetcher=fetcher)
        assert extractor.source.startswith("https://raw.githubusercontent.com/etalab/")

    @pytest.mark.asyncio
    async def test_low_count_is_a_warning(self, fetcher: Fetcher, mock_http, departements_geojson):
        departements_geojson["features"] = departements_geojson["features"][:10]
        mock_http.get(URL).mock(return_value=httpx.Response(200, json=departements_geojson))
        result = await DepartementsExtractor(URL, fetcher=fetcher).extract()
        assert result.row_count == 10
        assert "Feature count (10) is below expected minimum (96)" in result.warnings


# ---------------------------------------------------------------------------
# transform()
# ---------------------------------------------------------------------------

class TestTransform:
    def test_builds_area_records(self, departements_geojson):
        result = DepartementsTransformer().transform(departements_geojson["features"])
        assert result.transformed_count == 101
        ain = result.records[0]
        assert ain.code == "01"
        assert ain.level == "department"
        assert ain.parent_code == "ARA"
        assert ain.geometry.startswith("MULTIPOLYGON")

    def test_polygon_is_promoted(self, departements_geojson):
        feature = departements_geojson["features"][1]
        assert feature["geometry"]["type"] == "Polygon"
        record = DepartementsTransformer().transform([feature]).records[0]
        assert record.geometry.startswith("MULTIPOLYGON(((")
        assert record.geojson["type"] == "MultiPolygon"

    def test_region_from_properties(self):
        transformer = DepartementsTransformer()
        assert transformer.resolve_region({"code": "75", "region": "11"}) == "IDF"
        assert transformer.resolve_region({"code": "75"}) == "IDF"
        assert transformer.resolve_region({"code": "999"}) is None

    def test_bad_features_are_row_errors(self, departements_geojson):
        features = departements_geojson["features"][:3]
        features[1]["properties"]["nom"] = ""
        features[2]["geometry"]["coordinates"] = [[[0.0, 0.0], [1.0, 1.0]]]
        result = DepartementsTransformer().transform(features)
        assert result.transformed_count == 1
        assert [e.row_index for e in result.errors] == [1, 2]
        assert result.errors[0].field == "nom"

    def test_unknown_code_is_row_error(self, departements_geojson):
        feature = departements_geojson["features"][0]
        feature["properties"]["code"] = "20"
        result = DepartementsTransformer().transform([feature])
        assert result.transformed_count == 0
        assert result.errors[0].field == "code"
        assert result.errors[0].message == "Invalid département code: 20"


# ---------------------------------------------------------------------------
# end to end
# ---------------------------------------------------------------------------

class TestPipeline:
    @pytest.mark.asyncio
    async def test_metropolitan_only_loads_96(
        self, database: Database, fetcher: Fetcher, mock_http, departements_geojson
    ):
        route = mock_http.get(URL).mock(
            side_effect=[httpx.Response(503), httpx.Response(200, json=departements_geojson)]
        )
        run_logger = EtlRunLogger(database)
        pipeline = build_pipeline(
            database,
            source=URL,
            include_overseas=False,
            fetcher=fetcher,
            run_logger=run_logger,
        )

        result = await pipeline.run()

        assert route.call_count == 2
        assert result.status == RunStatus.COMPLETED_WITH_WARNINGS
        assert result.stats.rows_loaded == 96
        assert result.errors == ()
        assert "Filtered out 5 overseas département(s)" in result.warnings
        loader = DepartementsLoader(database)
        assert loader.current_count() == 96
        assert loader.are_departements_loaded()

        [run] = run_logger.history("departements")
        assert run.status == "completed_with_warnings"
        assert run.rows_loaded == 96

    @pytest.mark.asyncio
    async def test_rerun_updates_instead_of_duplicating(
        self, database: Database, fetcher: Fetcher, departements_file: Path
    ):
        pipeline = build_pipeline(database, source=str(departements_file), fetcher=fetcher)
        first = await pipeline.run()
        second = await pipeline.run()

        assert first.status == RunStatus.COMPLETED
        assert second.stats.rows_loaded == 101
        assert DepartementsLoader(database).current_count() == 101

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(
        self, database: Database, fetcher: Fetcher, departements_file: Path
    ):
        pipeline = build_pipeline(database, source=str(departements_file), fetcher=fetcher)
        result = await pipeline.run(dry_run=True)
        assert result.stats.rows_transformed == 101
        assert result.stats.rows_loaded == 0
        assert DepartementsLoader(database).current_count() == 0
