"""
errors.py — exception types shared by the geometry codec and the pipeline.

The pipeline package builds the rest of its taxonomy on top of EtlError
(see bewhere_pipeline.errors).
"""

from __future__ import annotations

from typing import Any


class EtlError(Exception):
    """Base class for every error raised by the bewhere ETL."""


class GeometryError(EtlError, ValueError):
    """A shape payload is malformed or of an unsupported kind."""

    def __init__(self, message: str, value: Any = None) -> None:
        super().__init__(message)
        self.value = value
