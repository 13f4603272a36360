"""
models/etl.py — Pydantic model for etl_runs rows (read side).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class EtlRun(BaseModel):
    """Matches the etl_runs table row."""

    id: UUID | None = None
    run_name: str
    status: str
    source_url: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    rows_extracted: int = 0
    rows_transformed: int = 0
    rows_loaded: int = 0
    rows_skipped: int = 0
    error_count: int = 0
    warning_count: int = 0
    error_messages: list[str] = Field(default_factory=list)
    warning_messages: list[str] = Field(default_factory=list)

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> "EtlRun":
        data = dict(row)
        data["error_messages"] = data.get("error_messages") or []
        data["warning_messages"] = data.get("warning_messages") or []
        return cls.model_validate(data)
