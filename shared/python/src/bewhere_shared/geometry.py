"""
geometry.py — GeoJSON <-> WKT codec for the spatial store.

Shapes are plain GeoJSON-style dicts:

    {"type": "Point", "coordinates": [lon, lat]}
    {"type": "Polygon", "coordinates": [[[lon, lat], ...], ...]}       # exterior, holes
    {"type": "MultiPolygon", "coordinates": [[[[lon, lat], ...]], ...]}

encode() is pure text formatting and never swaps axes. decode() accepts a
native dict, a WKT string, a JSON string holding a geometry (some upstream
writers double-encode the column) or any object exposing __geo_interface__,
and always returns the same normalized dict of float lists.

The SRID is not stored in the shape; it belongs to the column (see
bewhere_shared.schema.GeometryType) and defaults to settings.geometry_srid.

Usage:
    from bewhere_shared.geometry import decode, encode

    wkt = encode({"type": "Point", "coordinates": [2.35, 48.85]})
    # 'POINT(2.35 48.85)'
    shape = decode(wkt)
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from enum import IntEnum
from typing import Any

import shapely.wkt
from shapely.errors import ShapelyError
from shapely.geometry import mapping

from bewhere_shared.errors import GeometryError

__all__ = [
    "DEFAULT_SRID",
    "GEOMETRY_DEPTH",
    "SRID",
    "GeometryError",
    "create_multi_polygon",
    "create_point",
    "create_polygon",
    "decode",
    "encode",
    "is_geometry",
    "to_multi_polygon",
    "validate_geometry",
]


class SRID(IntEnum):
    WGS84 = 4326
    WEB_MERCATOR = 3857


DEFAULT_SRID = SRID.WGS84

# Nesting depth of "coordinates" for each supported type tag
GEOMETRY_DEPTH: dict[str, int] = {
    "Point": 1,
    "Polygon": 3,
    "MultiPolygon": 4,
}

_WKT_KEYWORDS = {
    "Point": "POINT",
    "Polygon": "POLYGON",
    "MultiPolygon": "MULTIPOLYGON",
}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def _check_position(pos: Any, shape: Any) -> None:
    if (
        not isinstance(pos, Sequence)
        or isinstance(pos, str)
        or len(pos) != 2
        or not all(_is_number(c) for c in pos)
    ):
        raise GeometryError(f"Invalid position {pos!r}: expected [lon, lat]", shape)


def _check_ring(ring: Any, shape: Any) -> None:
    if not isinstance(ring, Sequence) or isinstance(ring, str):
        raise GeometryError("Ring must be a list of positions", shape)
    if len(ring) < 4:
        raise GeometryError(f"Ring has {len(ring)} positions; at least 4 required", shape)
    for pos in ring:
        _check_position(pos, shape)
    if list(ring[0]) != list(ring[-1]):
        raise GeometryError("Ring is not closed (first position != last position)", shape)


def _check_polygon(rings: Any, shape: Any) -> None:
    if not isinstance(rings, Sequence) or isinstance(rings, str) or not rings:
        raise GeometryError("Polygon must contain at least one ring", shape)
    for ring in rings:
        _check_ring(ring, shape)


def validate_geometry(shape: Any) -> None:
    """
    Raise GeometryError unless shape is a well-formed Point, Polygon or
    MultiPolygon mapping.
    """
    if not isinstance(shape, Mapping):
        raise GeometryError(f"Geometry must be a mapping, got {type(shape).__name__}", shape)

    geom_type = shape.get("type")
    if geom_type not in GEOMETRY_DEPTH:
        raise GeometryError(f"Unsupported geometry type: {geom_type!r}", shape)

    coords = shape.get("coordinates")
    if coords is None:
        raise GeometryError(f"{geom_type} has no coordinates", shape)

    if geom_type == "Point":
        _check_position(coords, shape)
    elif geom_type == "Polygon":
        _check_polygon(coords, shape)
    else:
        if not isinstance(coords, Sequence) or isinstance(coords, str) or not coords:
            raise GeometryError("MultiPolygon must contain at least one polygon", shape)
        for polygon in coords:
            _check_polygon(polygon, shape)


def is_geometry(value: Any) -> bool:
    try:
        validate_geometry(value)
    except GeometryError:
        return False
    return True


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------

def _fmt_position(pos: Sequence[float]) -> str:
    return f"{pos[0]!r} {pos[1]!r}"


def _fmt_ring(ring: Sequence[Sequence[float]]) -> str:
    return "(" + ", ".join(_fmt_position(p) for p in ring) + ")"


def _fmt_polygon(rings: Sequence[Sequence[Sequence[float]]]) -> str:
    return "(" + ", ".join(_fmt_ring(r) for r in rings) + ")"


def encode(shape: Mapping[str, Any]) -> str:
    """
    Format a shape as WKT.

    Raises:
        GeometryError: shape is malformed or of an unsupported type.
    """
    validate_geometry(shape)
    geom_type = shape["type"]
    coords = shape["coordinates"]
    keyword = _WKT_KEYWORDS[geom_type]

    if geom_type == "Point":
        body = f"({_fmt_position(coords)})"
    elif geom_type == "Polygon":
        body = _fmt_polygon(coords)
    else:
        body = "(" + ", ".join(_fmt_polygon(p) for p in coords) + ")"
    return keyword + body


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------

def _to_lists(coords: Any, depth: int) -> Any:
    if depth == 1:
        return [float(c) for c in coords]
    return [_to_lists(c, depth - 1) for c in coords]


def _normalize(shape: Mapping[str, Any]) -> dict[str, Any]:
    validate_geometry(shape)
    geom_type = shape["type"]
    return {
        "type": geom_type,
        "coordinates": _to_lists(shape["coordinates"], GEOMETRY_DEPTH[geom_type]),
    }


def _decode_wkt(text: str, original: Any) -> dict[str, Any]:
    try:
        geom = shapely.wkt.loads(text)
    except (ShapelyError, ValueError, TypeError) as exc:
        raise GeometryError(f"Unparseable WKT: {exc}", original) from exc
    if geom.is_empty:
        raise GeometryError("WKT geometry is empty", original)
    return _normalize(mapping(geom))


def decode(value: Any) -> dict[str, Any]:
    """
    Normalize any accepted representation to a GeoJSON-style dict.

    Accepts:
        - a mapping with "type" and "coordinates"
        - a WKT string ("POLYGON((...))")
        - a JSON string of a geometry mapping
        - an object exposing __geo_interface__ (e.g. a shapely geometry)

    Raises:
        GeometryError: value is none of the above or is malformed.
    """
    if isinstance(value, Mapping):
        return _normalize(value)

    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise GeometryError("Empty geometry string", value)
        if text[0] in "{[\"":
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                raise GeometryError(f"Invalid geometry JSON: {exc.msg}", value) from exc
            # Double-encoded JSON ("\"{...}\"") unwraps once more
            if isinstance(parsed, str):
                return decode(parsed)
            if not isinstance(parsed, Mapping):
                raise GeometryError("Geometry JSON is not an object", value)
            return _normalize(parsed)
        return _decode_wkt(text, value)

    geo_interface = getattr(value, "__geo_interface__", None)
    if isinstance(geo_interface, Mapping):
        return _normalize(geo_interface)

    raise GeometryError(f"Cannot decode geometry from {type(value).__name__}", value)


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------

def to_multi_polygon(shape: Mapping[str, Any]) -> dict[str, Any]:
    """
    Return shape as a MultiPolygon. A Polygon becomes a one-member
    MultiPolygon; a MultiPolygon is returned normalized.

    Raises:
        GeometryError: shape is malformed or not polygonal.
    """
    shape = _normalize(shape)
    if shape["type"] == "Polygon":
        return {"type": "MultiPolygon", "coordinates": [shape["coordinates"]]}
    if shape["type"] != "MultiPolygon":
        raise GeometryError(f"Cannot promote {shape['type']} to MultiPolygon", shape)
    return shape


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def create_point(lon: float, lat: float) -> dict[str, Any]:
    return _normalize({"type": "Point", "coordinates": [lon, lat]})


def create_polygon(rings: Sequence[Sequence[Sequence[float]]]) -> dict[str, Any]:
    return _normalize({"type": "Polygon", "coordinates": rings})


def create_multi_polygon(
    polygons: Sequence[Sequence[Sequence[Sequence[float]]]],
) -> dict[str, Any]:
    return _normalize({"type": "MultiPolygon", "coordinates": polygons})
