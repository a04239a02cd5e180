"""Source collection: checksum cache, rate limiter, per-source fetchers."""
from .cache import ScraperCache
from .rate_limiter import RateLimiter
from .fetcher import (
    FetchResult,
    InfrastructureSource,
    SocialSource,
    Source,
    SourceFetcher,
    http_json_loader,
    json_file_loader,
)

__all__ = [
    "ScraperCache", "RateLimiter",
    "FetchResult", "InfrastructureSource", "SocialSource", "Source",
    "SourceFetcher", "http_json_loader", "json_file_loader",
]
