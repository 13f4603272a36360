"""
tests/test_shared/test_models.py — row models and settings validation.
"""

from __future__ import annotations

import uuid

import pytest
from pydantic import ValidationError

from bewhere_shared.config import Settings
from bewhere_shared.models import AreaRecord, CrimeObservationRecord, EtlRun, PopulationRecord


def _observation(**overrides) -> dict:
    data = {
        "area_id": uuid.uuid4(),
        "category_id": uuid.uuid4(),
        "data_source_id": uuid.uuid4(),
        "year": 2024,
        "month": 1,
        "count": 12,
    }
    data.update(overrides)
    return data


class TestAreaRecord:
    def test_geojson_not_in_insert_dict(self):
        record = AreaRecord(
            code="75",
            name="Paris",
            geometry="POLYGON((2 48, 3 48, 3 49, 2 49, 2 48))",
            geojson={"type": "Polygon", "coordinates": []},
        )
        values = record.to_insert_dict()
        assert "geojson" not in values
        assert values["level"] == "department"
        assert record.natural_key() == {"code": "75", "level": "department"}

    def test_invalid_wkt_rejected(self):
        with pytest.raises(ValidationError):
            AreaRecord(code="75", name="Paris", geometry="POLYGON((2 48")


class TestPopulationRecord:
    def test_population_must_be_positive(self):
        with pytest.raises(ValidationError):
            PopulationRecord(area_id=uuid.uuid4(), year=2022, population_count=0)

    def test_departement_code_not_persisted(self):
        record = PopulationRecord(
            area_id=uuid.uuid4(), year=2022, population_count=10, departement_code="01"
        )
        assert "departement_code" not in record.to_insert_dict()


class TestCrimeObservationRecord:
    def test_monthly_requires_month(self):
        with pytest.raises(ValidationError):
            CrimeObservationRecord(**_observation(month=None))

    def test_month_zero_rejected(self):
        with pytest.raises(ValidationError):
            CrimeObservationRecord(**_observation(month=0))

    def test_yearly_has_null_month(self):
        record = CrimeObservationRecord(**_observation(month=None, granularity="yearly"))
        assert record.natural_key()["month"] is None

    def test_yearly_with_month_rejected(self):
        with pytest.raises(ValidationError):
            CrimeObservationRecord(**_observation(granularity="yearly"))

    def test_negative_count_rejected(self):
        with pytest.raises(ValidationError):
            CrimeObservationRecord(**_observation(count=-1))


class TestEtlRun:
    def test_null_message_lists_default_to_empty(self):
        run = EtlRun.from_db_row(
            {
                "run_name": "departements",
                "status": "completed",
                "started_at": "2024-01-01T00:00:00+00:00",
                "error_messages": None,
                "warning_messages": None,
            }
        )
        assert run.error_messages == []
        assert run.warning_messages == []


class TestSettings:
    def test_unsupported_srid_rejected(self):
        with pytest.raises(ValidationError):
            Settings(geometry_srid=2154)

    def test_srid_env_alias(self, monkeypatch):
        monkeypatch.setenv("BEWHERE_GEOMETRY_SRID", "3857")
        assert Settings().geometry_srid == 3857

    def test_log_level_upper_cased(self):
        assert Settings(log_level="debug").log_level == "DEBUG"
