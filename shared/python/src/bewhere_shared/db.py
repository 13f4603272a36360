"""
db.py — explicit SQLAlchemy database handle.

One Database is created at process startup (by the CLI or a test fixture),
opened once, passed to every loader / transformer / run logger that needs
it, and closed at shutdown. There is no module-level connection.

Usage:
    from bewhere_shared.db import Database

    with Database(settings.database_url) as db:
        with db.engine.begin() as conn:
            conn.execute(...)
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from bewhere_shared.config import settings

logger = structlog.get_logger(__name__)


class Database:
    """Owns one SQLAlchemy Engine with an explicit open/close lifecycle."""

    def __init__(
        self,
        url: str | None = None,
        *,
        engine: Engine | None = None,
        **engine_kwargs: Any,
    ) -> None:
        self.url = url or settings.database_url
        self._engine = engine
        self._engine_kwargs = engine_kwargs

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "Database":
        if self._engine is not None:
            return self
        kwargs: dict[str, Any] = {"future": True, **self._engine_kwargs}
        if self.url.startswith("sqlite"):
            kwargs.setdefault("connect_args", {"check_same_thread": False})
        else:
            kwargs.setdefault("pool_size", settings.database_pool_size)
            kwargs.setdefault("pool_pre_ping", True)
        self._engine = create_engine(self.url, **kwargs)
        logger.info("database_opened", dialect=self._engine.dialect.name)
        return self

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        logger.info("database_closed")

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open. Call open() first.")
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def ping(self) -> bool:
        """Return True if a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.error("database_ping_failed", error=str(exc))
            return False

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
