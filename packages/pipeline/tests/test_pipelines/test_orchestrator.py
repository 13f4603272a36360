"""
tests/test_pipelines/test_orchestrator.py — dependency gating, run-all and status.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from bewhere_pipeline.core.pipeline import RunStatus
from bewhere_pipeline.errors import ExtractionError, PrerequisiteError, UnknownDatasetError
from bewhere_pipeline.orchestrator import PIPELINE_ORDER, Orchestrator
from bewhere_pipeline.pipelines import DATASETS, get_dataset
from bewhere_pipeline.pipelines.placeholder import PlaceholderPipeline
from bewhere_pipeline.utils.download import Fetcher
from bewhere_shared.db import Database


@pytest.fixture
def orchestrator(seeded_database: Database, fetcher: Fetcher) -> Orchestrator:
    return Orchestrator(seeded_database, fetcher=fetcher)


class TestRegistry:
    def test_order_matches_registry(self):
        assert set(PIPELINE_ORDER) == set(DATASETS)

    def test_dependencies_point_backwards(self):
        for position, name in enumerate(PIPELINE_ORDER):
            for dependency in get_dataset(name).depends_on:
                assert PIPELINE_ORDER.index(dependency) < position

    def test_unknown_dataset(self):
        with pytest.raises(UnknownDatasetError, match="departements"):
            get_dataset("communes")


class TestPrerequisites:
    def test_departements_have_no_prerequisites(self, orchestrator: Orchestrator):
        assert orchestrator.check_prerequisites("departements")

    def test_population_needs_departements(self, orchestrator: Orchestrator):
        assert not orchestrator.check_prerequisites("population")

    @pytest.mark.asyncio
    async def test_run_dataset_raises_when_gate_closed(
        self, orchestrator: Orchestrator, population_file: Path
    ):
        with pytest.raises(PrerequisiteError) as exc_info:
            await orchestrator.run_dataset("population", source=str(population_file))
        assert exc_info.value.missing == "departements"
        assert exc_info.value.found == 0
        assert exc_info.value.required == 96

    @pytest.mark.asyncio
    async def test_gate_applies_to_dry_runs(self, orchestrator: Orchestrator):
        with pytest.raises(PrerequisiteError):
            await orchestrator.run_dataset("crime-monthly", dry_run=True)

    @pytest.mark.asyncio
    async def test_gate_can_be_skipped(self, orchestrator: Orchestrator):
        result = await orchestrator.run_dataset("crime-timeseries", check_prerequisites=False)
        assert result.status == RunStatus.COMPLETED_WITH_WARNINGS

    @pytest.mark.asyncio
    async def test_unknown_dataset(self, orchestrator: Orchestrator):
        with pytest.raises(UnknownDatasetError):
            await orchestrator.run_dataset("communes")


class TestRunAll:
    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, orchestrator: Orchestrator, tmp_path: Path):
        results = await orchestrator.run_all(source=str(tmp_path / "missing.geojson"))

        assert [r.name for r in results] == ["departements"]
        assert results[0].failed

    @pytest.mark.asyncio
    async def test_population_failure_ends_run(
        self, orchestrator: Orchestrator, departements_file: Path
    ):
        # The GeoJSON is not a valid population CSV
        results = await orchestrator.run_all(source=str(departements_file))

        assert [r.name for r in results] == ["departements", "population"]
        assert results[0].status == RunStatus.COMPLETED
        assert isinstance(results[1].error, ExtractionError)

    @pytest.mark.asyncio
    async def test_unmet_prerequisite_becomes_failed_result(
        self, orchestrator: Orchestrator, departements_file: Path
    ):
        # A dry run persists nothing, so population is gated
        results = await orchestrator.run_all(dry_run=True, source=str(departements_file))

        assert [r.name for r in results] == ["departements", "population"]
        assert results[0].stats.rows_transformed == 101
        assert isinstance(results[1].error, PrerequisiteError)
        assert results[1].failed
        [run] = orchestrator.run_logger.history("population")
        assert run.status == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failed_result(
        self, orchestrator: Orchestrator, departements_file: Path, monkeypatch
    ):
        def locked(database):
            raise OperationalError("SELECT count(*)", {}, Exception("database is locked"))

        monkeypatch.setitem(
            DATASETS, "departements", dataclasses.replace(DATASETS["departements"], count_rows=locked)
        )
        results = await orchestrator.run_all(source=str(departements_file))

        assert [r.name for r in results] == ["departements", "population"]
        assert results[0].status == RunStatus.COMPLETED
        assert isinstance(results[1].error, OperationalError)
        assert results[1].status == RunStatus.FAILED
        [run] = orchestrator.run_logger.history("population")
        assert run.status == "failed"


class TestPlaceholder:
    @pytest.mark.asyncio
    async def test_placeholder_warns(self):
        result = await PlaceholderPipeline("crime-timeseries").run()
        assert result.status == RunStatus.COMPLETED_WITH_WARNINGS
        assert len(result.warnings) == 1
        assert result.stats.rows_loaded == 0


class TestStatus:
    def test_no_runs(self, orchestrator: Orchestrator):
        assert orchestrator.show_status() == "No ETL runs recorded."

    @pytest.mark.asyncio
    async def test_lists_runs_with_icons(self, orchestrator: Orchestrator, departements_file: Path):
        await orchestrator.run_dataset("departements", source=str(departements_file))
        await orchestrator.run_dataset("crime-timeseries", check_prerequisites=False)

        output = orchestrator.show_status(limit=5)
        lines = output.splitlines()
        assert len(lines) == 3
        assert lines[1].startswith("⚠️") and "crime-timeseries" in lines[1]
        assert lines[2].startswith("✅") and "departements" in lines[2]
        assert " 101 " in lines[2]

        only = orchestrator.show_status(dataset="departements")
        assert "crime-timeseries" not in only

    def test_unknown_dataset(self, orchestrator: Orchestrator):
        with pytest.raises(UnknownDatasetError):
            orchestrator.show_status(dataset="communes")


class TestValidate:
    @pytest.mark.asyncio
    async def test_validate_dataset(
        self, orchestrator: Orchestrator, departements_file: Path, tmp_path: Path
    ):
        assert await orchestrator.validate_dataset("departements", source=str(departements_file))
        assert not await orchestrator.validate_dataset(
            "departements", source=str(tmp_path / "missing.geojson")
        )
