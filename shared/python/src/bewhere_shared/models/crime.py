"""
models/crime.py — Pydantic model for crime_observations rows.
"""

from __future__ import annotations

from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from bewhere_shared.constants import Granularity


class CrimeObservationRecord(BaseModel):
    """
    One crime count for an area, category and source over a period.

    month is None for yearly observations and 1-12 for monthly ones;
    month=0 is rejected so a yearly row can never be confused with a
    monthly one.
    """

    NATURAL_KEY: ClassVar[tuple[str, ...]] = (
        "area_id",
        "category_id",
        "data_source_id",
        "year",
        "month",
    )

    area_id: UUID
    category_id: UUID
    data_source_id: UUID
    year: int = Field(ge=1900, le=2100)
    month: int | None = Field(default=None, ge=1, le=12)
    granularity: Granularity = "monthly"
    count: int = Field(ge=0)
    rate_per_100k: float | None = None
    population_used: int | None = Field(default=None, gt=0)
    is_validated: bool = False
    notes: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def check_granularity(self) -> "CrimeObservationRecord":
        if self.granularity == "monthly" and self.month is None:
            raise ValueError("monthly observation requires a month")
        if self.granularity == "yearly" and self.month is not None:
            raise ValueError("yearly observation must not carry a month")
        return self

    def natural_key(self) -> dict[str, Any]:
        return {k: getattr(self, k) for k in self.NATURAL_KEY}

    def to_insert_dict(self) -> dict[str, Any]:
        return self.model_dump()
