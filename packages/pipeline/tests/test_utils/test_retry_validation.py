"""
tests/test_utils/test_retry_validation.py — retry controller and data checks.
"""

from __future__ import annotations

import httpx
import pytest

from bewhere_pipeline.utils.retry import is_transient_http_error, retrying
from bewhere_pipeline.utils.validation import (
    calculate_rate_per_100k,
    combine,
    validate_crime_count,
    validate_departement_code,
    validate_month,
    validate_required_fields,
    validate_row_count,
    validate_year,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://data.example.test/file.csv")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestRetrying:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_errors(self):
        calls = {"n": 0}

        async for attempt in retrying(max_retries=3, delay=0, retry_on=ConnectionError):
            with attempt:
                calls["n"] += 1
                if calls["n"] < 3:
                    raise ConnectionError("reset")

        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_reraises_after_max_retries(self):
        calls = {"n": 0}

        with pytest.raises(ConnectionError):
            async for attempt in retrying(max_retries=2, delay=0, retry_on=ConnectionError):
                with attempt:
                    calls["n"] += 1
                    raise ConnectionError("down")
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        calls = {"n": 0}

        with pytest.raises(ValueError):
            async for attempt in retrying(max_retries=5, delay=0, retry_on=ConnectionError):
                with attempt:
                    calls["n"] += 1
                    raise ValueError("bad")
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_predicate_replaces_exception_types(self):
        calls = {"n": 0}

        with pytest.raises(httpx.HTTPStatusError):
            async for attempt in retrying(max_retries=5, delay=0, retry_if=is_transient_http_error):
                with attempt:
                    calls["n"] += 1
                    raise _status_error(403)
        assert calls["n"] == 1


class TestTransientHttpError:
    @pytest.mark.parametrize(
        "status,retried", [(400, False), (404, False), (429, True), (500, True), (503, True)]
    )
    def test_status_codes(self, status, retried):
        assert is_transient_http_error(_status_error(status)) is retried

    def test_transport_errors_are_transient(self):
        assert is_transient_http_error(httpx.ConnectError("refused"))
        assert is_transient_http_error(httpx.ReadTimeout("slow"))

    def test_other_errors_are_final(self):
        assert not is_transient_http_error(ValueError("bad"))


class TestRowCount:
    def test_within_tolerance(self):
        assert validate_row_count(95, 96).is_valid

    def test_below_is_error(self):
        result = validate_row_count(80, 96)
        assert not result.is_valid
        assert "below expected minimum" in result.errors[0]

    def test_above_is_warning(self):
        result = validate_row_count(120, 96)
        assert result.is_valid
        assert result.warnings


class TestFieldChecks:
    def test_required_fields(self):
        result = validate_required_fields({"code": "01", "nom": " "}, ["code", "nom", "geometry"])
        assert result.errors == ["Missing required field: nom", "Missing required field: geometry"]

    @pytest.mark.parametrize("year,ok", [(1899, False), (1900, True), (2024, True), (2101, False)])
    def test_year(self, year, ok):
        assert validate_year(year).is_valid is ok

    @pytest.mark.parametrize("month,ok", [(0, False), (1, True), (12, True), (13, False), ("1", False)])
    def test_month(self, month, ok):
        assert validate_month(month).is_valid is ok

    @pytest.mark.parametrize("code,ok", [("01", True), ("2A", True), ("976", True), ("20", False), ("96", False), ("1", False)])
    def test_departement_code(self, code, ok):
        assert validate_departement_code(code).is_valid is ok

    def test_crime_count(self):
        assert not validate_crime_count(-1).is_valid
        assert validate_crime_count(20_000_000).warnings

    def test_combine(self):
        merged = combine([validate_month(0), validate_year(2024), validate_crime_count(20_000_000)])
        assert len(merged.errors) == 1
        assert len(merged.warnings) == 1


class TestRate:
    def test_rate(self):
        assert calculate_rate_per_100k(50, 200_000) == 25.0
        assert calculate_rate_per_100k(1, 3) == 33333.3333

    def test_zero_population_raises(self):
        with pytest.raises(ValueError):
            calculate_rate_per_100k(1, 0)
