"""Per-source fetch discipline: enable flag → cache → rate limit → fetch → cache write.

Sources are plain objects with a ``name`` and an async ``fetch()`` returning
the raw provider payload. The pipeline receives them as an explicit list, so
adding a source means constructing another object, not registering a class.

A fetch never raises: disabled and cached runs are successes, provider
exceptions become a failed ``FetchResult`` so the run can continue with the
remaining sources.
"""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import httpx

from cti.core.config import SourceConfig
from cti.core.logger import get_logger
from cti.core.models import SourceName
from cti.sources.cache import ScraperCache
from cti.sources.rate_limiter import RateLimiter

logger = get_logger(__name__)

Loader = Callable[[], Awaitable[Dict[str, Any]]]


class Source(Protocol):
    name: SourceName

    async def fetch(self) -> Dict[str, Any]:
        ...


class InfrastructureSource:
    """Infrastructure scan results: ``{"hosts": [{ip, port, product, vulns, ...}]}``."""

    name = SourceName.INFRASTRUCTURE

    def __init__(self, loader: Loader):
        self._loader = loader

    async def fetch(self) -> Dict[str, Any]:
        payload = await self._loader()
        if not isinstance(payload, dict):
            raise ValueError(f"infrastructure payload must be an object, got {type(payload).__name__}")
        payload.setdefault("hosts", [])
        return payload


class SocialSource:
    """Social posts: ``{"posts": [{id, text, author, metrics, createdAt}]}``."""

    name = SourceName.SOCIAL

    def __init__(self, loader: Loader):
        self._loader = loader

    async def fetch(self) -> Dict[str, Any]:
        payload = await self._loader()
        if not isinstance(payload, dict):
            raise ValueError(f"social payload must be an object, got {type(payload).__name__}")
        payload.setdefault("posts", [])
        return payload


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def http_json_loader(
    url: str,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = 30.0,
    client: Optional[httpx.AsyncClient] = None,
) -> Loader:
    """GET a JSON document. Non-2xx raises, which the fetcher records as a failure."""

    async def _load() -> Dict[str, Any]:
        own_client = client is None
        http = client or httpx.AsyncClient(timeout=timeout)
        try:
            resp = await http.get(url, params=params, headers=headers)
            resp.raise_for_status()
            return resp.json()
        finally:
            if own_client:
                await http.aclose()

    return _load


def json_file_loader(path: Union[str, Path]) -> Loader:
    """Read a payload that an external scraper already wrote to disk."""

    async def _load() -> Dict[str, Any]:
        text = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        return json.loads(text)

    return _load


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FetchResult:
    source: SourceName
    success: bool
    payload: Optional[Dict[str, Any]] = None
    from_cache: bool = False
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "success": self.success,
            "fromCache": self.from_cache,
            "skipped": self.skipped,
            "error": self.error,
        }


class SourceFetcher:
    """
    Wraps one Source with cache and rate limiting.

    Usage:
        fetcher = SourceFetcher(InfrastructureSource(loader), source_config, cache)
        result = await fetcher.execute()
    """

    def __init__(
        self,
        source: Source,
        config: SourceConfig,
        cache: Optional[ScraperCache] = None,
        use_cache: bool = True,
        ttl_override_hours: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._source = source
        self._config = config
        self._cache = cache
        self._use_cache = use_cache
        self._ttl_override = ttl_override_hours
        self._limiter = rate_limiter or RateLimiter(
            config.requests_per_minute,
            config.cooldown_ms,
            name=source.name.value,
        )

    @property
    def source_name(self) -> SourceName:
        return self._source.name

    @property
    def _ttl_hours(self) -> float:
        return self._ttl_override if self._ttl_override is not None else self._config.ttl_hours

    @property
    def _cache_active(self) -> bool:
        return self._cache is not None and self._config.cache_enabled

    async def execute(self) -> FetchResult:
        name = self._source.name

        if not self._config.enabled:
            logger.info("source_skipped", source=name.value, reason="disabled")
            return FetchResult(source=name, success=True, skipped=True)

        if self._cache_active and self._use_cache:
            cached = await asyncio.to_thread(self._cache.get, name.value, self._ttl_override)
            if cached is not None:
                logger.info("source_fetch_complete", source=name.value, from_cache=True)
                return FetchResult(source=name, success=True, payload=cached, from_cache=True)

        await self._limiter.acquire()

        try:
            if self._config.fetch_timeout_s:
                payload = await asyncio.wait_for(self._source.fetch(), self._config.fetch_timeout_s)
            else:
                payload = await self._source.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning("source_fetch_failed", source=name.value, error=error)
            return FetchResult(source=name, success=False, error=error)

        if self._cache_active:
            await asyncio.to_thread(self._cache.put, name.value, payload, self._ttl_hours)

        logger.info("source_fetch_complete", source=name.value, from_cache=False)
        return FetchResult(source=name, success=True, payload=payload)
