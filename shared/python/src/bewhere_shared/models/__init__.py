"""
bewhere_shared.models — Pydantic load records for each table the ETL writes.

Transformers emit these models; loaders persist them. All load records
provide:
  .to_insert_dict() -> dict   (column values, audit-only fields excluded)
  .natural_key() -> dict      (the columns the upsert looks rows up by)
"""

from bewhere_shared.models.areas import AreaRecord, PopulationRecord
from bewhere_shared.models.crime import CrimeObservationRecord
from bewhere_shared.models.etl import EtlRun

__all__ = [
    "AreaRecord",
    "PopulationRecord",
    "CrimeObservationRecord",
    "EtlRun",
]
