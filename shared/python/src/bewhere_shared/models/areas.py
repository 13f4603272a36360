"""
models/areas.py — Pydantic models for administrative_areas and population rows.
"""

from __future__ import annotations

from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from bewhere_shared.geometry import GeometryError, decode


class AreaRecord(BaseModel):
    """One administrative boundary, geometry already encoded as WKT."""

    NATURAL_KEY: ClassVar[tuple[str, ...]] = ("code", "level")

    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    name_en: str | None = None
    level: str = "department"
    parent_code: str | None = None
    country_code: str = "FR"
    geometry: str
    # Original interchange shape, kept for audit; never written to the table
    geojson: dict[str, Any] | None = None

    @field_validator("geometry")
    @classmethod
    def check_wkt(cls, v: str) -> str:
        try:
            decode(v)
        except GeometryError as exc:
            raise ValueError(str(exc)) from exc
        return v

    def natural_key(self) -> dict[str, Any]:
        return {k: getattr(self, k) for k in self.NATURAL_KEY}

    def to_insert_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude={"geojson"})


class PopulationRecord(BaseModel):
    """Population of one area for one year."""

    NATURAL_KEY: ClassVar[tuple[str, ...]] = ("area_id", "year")

    area_id: UUID
    year: int = Field(ge=1900, le=2100)
    population_count: int = Field(gt=0)
    source: str | None = "INSEE"
    notes: str | None = None
    departement_code: str | None = None

    def natural_key(self) -> dict[str, Any]:
        return {k: getattr(self, k) for k in self.NATURAL_KEY}

    def to_insert_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude={"departement_code"})
