"""
utils/download.py — cached, retrying fetch of remote or local sources.

A source is either a local path or an http(s) URL:
  - an existing local path is returned as-is (no cache, no network)
  - a URL maps to <cache_dir>/<md5(url)><ext>; a cache file younger than
    cache_max_age is returned without any network call
  - otherwise the URL is downloaded with httpx and retried with a fixed
    delay (tenacity); the body is written to the cache path before return

The cache directory has no index: the key derivation alone decides the
path, so it can be pruned externally at any time.

Usage:
    from bewhere_pipeline.utils.download import Fetcher

    fetcher = Fetcher()
    result = await fetcher.fetch("https://geo.api.gouv.fr/departements?format=geojson")
    print(result.path, result.from_cache, result.size, result.elapsed_ms)

    data, result = await fetcher.read_json(url)
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from bewhere_pipeline.errors import FetchError
from bewhere_pipeline.utils.retry import is_transient_http_error, retrying
from bewhere_shared.config import settings

log = structlog.get_logger(__name__)

DEFAULT_EXTENSION = ".dat"
USER_AGENT = "bewhere-etl/0.1 (+https://github.com/bewhere)"


@dataclass(frozen=True)
class DownloadResult:
    """Outcome of one Fetcher.fetch() call."""

    path: Path
    from_cache: bool
    size: int
    elapsed_ms: int


def is_url(source: str) -> bool:
    parsed = urlparse(source)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def cache_key(url: str) -> str:
    """md5 of the URL plus the extension of its path (".dat" if none)."""
    digest = hashlib.md5(url.encode("utf-8")).hexdigest()
    ext = Path(urlparse(url).path).suffix or DEFAULT_EXTENSION
    return digest + ext


class Fetcher:
    """Downloads sources into a shared on-disk cache."""

    def __init__(
        self,
        cache_dir: Path | str | None = None,
        *,
        cache_max_age: float | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self.cache_dir = Path(cache_dir if cache_dir is not None else settings.etl_cache_dir)
        self.cache_max_age = (
            cache_max_age if cache_max_age is not None else settings.etl_cache_max_age
        )
        self.timeout = timeout if timeout is not None else settings.etl_request_timeout
        self.max_retries = max_retries if max_retries is not None else settings.etl_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.etl_retry_delay

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def cache_path(self, url: str) -> Path:
        return self.cache_dir / cache_key(url)

    def _is_fresh(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age < self.cache_max_age

    async def fetch(
        self,
        source: str,
        *,
        force: bool = False,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> DownloadResult:
        """
        Resolve a source to a local file.

        Args:
            source:  URL or local path.
            force:   Ignore a fresh cache entry and download again.
            timeout: Per-request timeout override in seconds.
            headers: Extra request headers.

        Raises:
            FetchError: local path missing, or every download attempt failed.
        """
        t0 = time.monotonic()

        if not is_url(source):
            path = Path(source)
            if not path.is_file():
                raise FetchError(source, "local file does not exist")
            log.debug("fetch_local", path=str(path))
            return DownloadResult(
                path=path,
                from_cache=False,
                size=path.stat().st_size,
                elapsed_ms=int((time.monotonic() - t0) * 1000),
            )

        path = self.cache_path(source)
        if not force and self._is_fresh(path):
            log.info("fetch_cache_hit", url=source, path=str(path))
            return DownloadResult(
                path=path,
                from_cache=True,
                size=path.stat().st_size,
                elapsed_ms=int((time.monotonic() - t0) * 1000),
            )

        content = await self._download(source, timeout=timeout, headers=headers)

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as exc:
            raise FetchError(source, f"cannot write cache file {path}: {exc}") from exc

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        log.info("fetch_downloaded", url=source, size=len(content), elapsed_ms=elapsed_ms)
        return DownloadResult(
            path=path,
            from_cache=False,
            size=len(content),
            elapsed_ms=elapsed_ms,
        )

    async def _download(
        self,
        url: str,
        *,
        timeout: float | None,
        headers: dict[str, str] | None,
    ) -> bytes:
        request_headers = {"User-Agent": USER_AGENT, **(headers or {})}
        try:
            async for attempt in retrying(
                self.max_retries,
                self.retry_delay,
                retry_if=is_transient_http_error,
                name="fetch",
            ):
                with attempt:
                    async with httpx.AsyncClient(
                        timeout=timeout or self.timeout,
                        follow_redirects=True,
                        headers=request_headers,
                    ) as client:
                        response = await client.get(url)
                        response.raise_for_status()
                        return response.content
        except httpx.HTTPError as exc:
            log.error(
                "fetch_failed",
                url=url,
                max_attempts=self.max_retries + 1,
                error=str(exc),
            )
            raise FetchError(url, str(exc)) from exc
        raise FetchError(url, "no attempt was made")

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    async def read_text(
        self,
        source: str,
        *,
        encoding: str = "utf-8",
        **options: Any,
    ) -> tuple[str, DownloadResult]:
        result = await self.fetch(source, **options)
        return result.path.read_text(encoding=encoding), result

    async def read_json(self, source: str, **options: Any) -> tuple[Any, DownloadResult]:
        text, result = await self.read_text(source, **options)
        return json.loads(text), result

    # ------------------------------------------------------------------
    # Validation / cache management
    # ------------------------------------------------------------------

    def validate(self, source: str) -> bool:
        """True for a well-formed http(s) URL or an existing local path. No I/O beyond stat."""
        if is_url(source):
            return True
        return Path(source).exists()

    def invalidate(self, url: str) -> bool:
        path = self.cache_path(url)
        if path.exists():
            path.unlink()
            return True
        return False

    def clear_cache(self) -> int:
        """Delete every cache file. Returns the number of files removed."""
        if not self.cache_dir.is_dir():
            return 0
        removed = 0
        for entry in self.cache_dir.iterdir():
            if entry.is_file():
                entry.unlink()
                removed += 1
        log.info("cache_cleared", cache_dir=str(self.cache_dir), files=removed)
        return removed

    def cache_stats(self) -> dict[str, Any]:
        files = (
            [p for p in self.cache_dir.iterdir() if p.is_file()]
            if self.cache_dir.is_dir()
            else []
        )
        now = time.time()
        ages = [now - p.stat().st_mtime for p in files]
        return {
            "cache_dir": str(self.cache_dir),
            "files": len(files),
            "total_bytes": sum(p.stat().st_size for p in files),
            "stale_files": sum(1 for a in ages if a >= self.cache_max_age),
            "oldest_age_s": int(max(ages)) if ages else None,
        }
