"""
tests/test_core/test_transformer.py — row-error tolerance policy.
"""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import BaseModel, Field

from bewhere_pipeline.core.transformer import BaseTransformer, RowError
from bewhere_pipeline.errors import TransformationError
from bewhere_pipeline.utils.validation import validate_crime_count, validate_year
from bewhere_shared.geometry import validate_geometry


class _Row(BaseModel):
    value: int = Field(ge=0)


class DoublingTransformer(BaseTransformer):
    """Doubles "value"; rows flagged bad raise RowError, "skip" rows return None."""

    name = "doubling"

    def transform_row(self, record: dict[str, Any], index: int) -> int | None:
        if record.get("skip"):
            return None
        if record.get("bad"):
            raise RowError("bad row", "bad", record["bad"])
        if record.get("shape"):
            validate_geometry(record["shape"])
        if "model" in record:
            return _Row(value=record["model"]).value
        return record["value"] * 2


def _records(n: int, bad: set[int]) -> list[dict[str, Any]]:
    return [{"value": i, "bad": i in bad} for i in range(n)]


class TestTolerance:
    def test_errors_within_max_errors(self):
        bad = {1, 4, 7}
        result = DoublingTransformer(max_errors=3).transform(_records(10, bad))

        assert result.transformed_count == 7
        assert result.skipped_count == 3
        assert result.error_count == 3
        assert [e.row_index for e in result.errors] == [1, 4, 7]
        # surviving rows keep input order
        assert result.records == [i * 2 for i in range(10) if i not in bad]

    def test_errors_beyond_max_errors_abort(self):
        with pytest.raises(TransformationError) as exc_info:
            DoublingTransformer(max_errors=2).transform(_records(10, {1, 4, 7}))
        partial = exc_info.value.partial
        assert partial is not None
        assert partial.error_count == 3
        assert partial.transformed_count == 5

    def test_fail_fast_on_first_error(self):
        transformer = DoublingTransformer(continue_on_error=False)
        with pytest.raises(TransformationError, match="row 4"):
            transformer.transform(_records(10, {4, 7}))

    def test_none_counts_as_skipped_without_error(self):
        result = DoublingTransformer().transform([{"value": 1}, {"skip": True}])
        assert result.transformed_count == 1
        assert result.skipped_count == 1
        assert result.errors == []


class TestIssues:
    def test_row_error_carries_field_and_value(self):
        result = DoublingTransformer().transform([{"value": 1, "bad": "x"}])
        issue = result.errors[0]
        assert issue.field == "bad"
        assert issue.value == "x"
        assert str(issue) == "Row 0 [bad]: bad row"

    def test_missing_key(self):
        result = DoublingTransformer().transform([{}])
        assert result.errors[0].field == "value"

    def test_geometry_error_is_row_level(self):
        result = DoublingTransformer().transform([{"value": 1, "shape": {"type": "Line"}}])
        assert result.error_count == 1
        assert "Unsupported geometry type" in result.errors[0].message

    def test_validation_error_reports_location(self):
        result = DoublingTransformer().transform([{"model": -1}])
        assert result.errors[0].field == "value"
        assert result.errors[0].value == -1

    def test_warn_collects_into_result(self):
        class NoisyTransformer(DoublingTransformer):
            def transform_row(self, record, index):
                self.warn(f"checked {index}")
                return super().transform_row(record, index)

        result = NoisyTransformer().transform([{"value": 1}, {"value": 2}])
        assert result.warnings == ["checked 0", "checked 1"]

    def test_check_raises_errors_and_passes_warnings(self):
        class CountingTransformer(DoublingTransformer):
            def transform_row(self, record, index):
                self.check(
                    validate_year(record["year"]),
                    validate_crime_count(record["value"]),
                    field="value",
                    value=record["value"],
                )
                return super().transform_row(record, index)

        result = CountingTransformer().transform(
            [{"year": 2024, "value": 20_000_000}, {"year": 1850, "value": -1}]
        )
        assert result.transformed_count == 1
        assert result.warnings == ["Unusually high crime count: 20000000"]
        issue = result.errors[0]
        assert issue.field == "value"
        assert issue.message == (
            "Year (1850) is below minimum (1900); Crime count cannot be negative: -1"
        )
