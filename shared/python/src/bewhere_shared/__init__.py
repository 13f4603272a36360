"""
bewhere_shared — shared configuration, database handle, geometry codec and
table definitions for the bewhere ETL platform.

Usage:
    from bewhere_shared.config import settings
    from bewhere_shared.db import Database
    from bewhere_shared.geometry import encode, decode
    from bewhere_shared.schema import administrative_areas, etl_runs
    from bewhere_shared.constants import DEPARTEMENT_NAMES, EXPECTED_DEPARTEMENT_COUNT
"""

__version__ = "0.1.0"
