"""
schema.py — SQLAlchemy Core table definitions for the tables the ETL writes.

The authoritative DDL lives with the migration tooling; these definitions
mirror it closely enough for the loaders to build statements and for the
test suite to create an equivalent SQLite schema with metadata.create_all().

Geometry columns use GeometryType, which binds WKT through
ST_GeomFromText(:wkt, srid) and reads values back through ST_AsGeoJSON.

Usage:
    from bewhere_shared.schema import administrative_areas, metadata

    stmt = select(administrative_areas.c.id).where(administrative_areas.c.code == "75")
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator, UserDefinedType

from bewhere_shared.config import settings
from bewhere_shared.geometry import decode, encode, to_multi_polygon


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Geometry column type
# ---------------------------------------------------------------------------

class _PostGISGeometry(UserDefinedType):
    cache_ok = True

    def __init__(self, kind: str, srid: int) -> None:
        self.kind = kind
        self.srid = srid

    def get_col_spec(self, **kw: Any) -> str:
        return f"geometry({self.kind},{self.srid})"


class GeometryType(TypeDecorator):
    """
    Column type for PostGIS geometries.

    Python side values are GeoJSON-style dicts (or anything decode()
    accepts); the SRID is a property of the column, never of the value.
    """

    impl = Text
    cache_ok = True

    def __init__(self, kind: str = "Geometry", srid: int | None = None) -> None:
        super().__init__()
        self.kind = kind
        self.srid = int(srid if srid is not None else settings.geometry_srid)

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_PostGISGeometry(self.kind, self.srid))
        return dialect.type_descriptor(Text())

    def bind_expression(self, bindvalue: Any) -> Any:
        return func.ST_GeomFromText(bindvalue, self.srid, type_=self)

    def column_expression(self, col: Any) -> Any:
        return func.ST_AsGeoJSON(col, type_=self)

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        if value is None:
            return None
        shape = decode(value)
        if self.kind == "MultiPolygon":
            shape = to_multi_polygon(shape)
        return encode(shape)

    def process_result_value(self, value: Any, dialect: Any) -> dict[str, Any] | None:
        if value is None:
            return None
        return decode(value)


def geometry_column(
    name: str = "geometry",
    kind: str = "MultiPolygon",
    srid: int | None = None,
    **kwargs: Any,
) -> Column:
    return Column(name, GeometryType(kind, srid), **kwargs)


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _timestamps() -> list[Column]:
    return [
        Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
        Column(
            "updated_at",
            DateTime(timezone=True),
            nullable=False,
            default=utcnow,
            onupdate=utcnow,
        ),
    ]


metadata = MetaData()

# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

administrative_areas = Table(
    "administrative_areas",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("code", String(10), nullable=False),
    Column("name", String(255), nullable=False),
    Column("name_en", String(255)),
    Column("level", String(20), nullable=False),
    Column("parent_code", String(10)),
    Column("country_code", String(2), nullable=False, default="FR"),
    geometry_column("geometry", "MultiPolygon"),
    Column("area_km2", Float),
    *_timestamps(),
    UniqueConstraint("code", "level", name="uq_administrative_areas_code_level"),
)

population = Table(
    "population",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "area_id",
        Uuid,
        ForeignKey("administrative_areas.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("year", SmallInteger, nullable=False),
    Column("population_count", Integer, nullable=False),
    Column("source", String(100)),
    Column("notes", Text),
    *_timestamps(),
    UniqueConstraint("area_id", "year", name="uq_population_area_year"),
)

crime_categories = Table(
    "crime_categories",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("name_fr", String(255)),
    Column("description", Text),
    Column("severity", String(20)),
    Column("category_group", String(50)),
    Column("sort_order", Integer, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    *_timestamps(),
)

data_sources = Table(
    "data_sources",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("url", String(500)),
    Column("update_frequency", String(20)),
    Column("country_code", String(2), default="FR"),
    Column("is_active", Boolean, nullable=False, default=True),
    *_timestamps(),
)

crime_observations = Table(
    "crime_observations",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "area_id",
        Uuid,
        ForeignKey("administrative_areas.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "category_id",
        Uuid,
        ForeignKey("crime_categories.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "data_source_id",
        Uuid,
        ForeignKey("data_sources.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("year", SmallInteger, nullable=False),
    Column("month", SmallInteger),
    Column("granularity", String(20), nullable=False, default="yearly"),
    Column("count", Integer, nullable=False),
    Column("rate_per_100k", Float),
    Column("population_used", Integer),
    Column("is_validated", Boolean, nullable=False, default=False),
    Column("notes", String(500)),
    *_timestamps(),
    UniqueConstraint(
        "area_id",
        "category_id",
        "data_source_id",
        "year",
        "month",
        name="uq_crime_observations_natural_key",
    ),
)

etl_runs = Table(
    "etl_runs",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("data_source_id", Uuid, ForeignKey("data_sources.id", ondelete="SET NULL")),
    Column("run_name", String(100), nullable=False),
    Column("source_url", String(1000)),
    Column("status", String(30), nullable=False, default="running"),
    Column("started_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("completed_at", DateTime(timezone=True)),
    Column("duration_ms", Integer),
    Column("rows_extracted", Integer, nullable=False, default=0),
    Column("rows_transformed", Integer, nullable=False, default=0),
    Column("rows_loaded", Integer, nullable=False, default=0),
    Column("rows_skipped", Integer, nullable=False, default=0),
    Column("error_count", Integer, nullable=False, default=0),
    Column("warning_count", Integer, nullable=False, default=0),
    Column("error_messages", JSONType),
    Column("warning_messages", JSONType),
    Column("metadata", JSONType),
    *_timestamps(),
)
