"""Checksum-validated, TTL-bounded on-disk cache for raw source payloads.

Each source key owns two files in the cache directory:

    <key>-cache.json        serialized payload
    <key>-cache.meta.json   {createdAt, expiresAt, source, checksum, ttlSeconds}

The two writes are not atomic. ``get`` recomputes the MD5 of the payload
bytes and compares it with the metadata, so a torn write, a concurrent
writer or manual corruption all degrade to a miss. ``get`` never raises.
"""

import hashlib
import json
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

from cti.core.logger import get_logger
from cti.core.models import isoformat, parse_timestamp

logger = get_logger(__name__)


def compute_checksum(data: bytes) -> str:
    """MD5 of the serialized payload. Integrity guard only, not a security control."""
    return hashlib.md5(data).hexdigest()


def serialize_payload(payload: Any) -> bytes:
    return json.dumps(payload, indent=2, sort_keys=True, default=str).encode("utf-8")


class ScraperCache:
    """
    File cache keyed per source.

    Usage:
        cache = ScraperCache("./DATA/cti-cache")
        cache.put("infrastructure", payload, ttl_hours=24)
        payload = cache.get("infrastructure")    # None on any miss
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        clock: Callable[[], float] = time.time,
    ):
        self._dir = Path(cache_dir)
        self._clock = clock

    @property
    def cache_dir(self) -> Path:
        return self._dir

    def payload_path(self, key: str) -> Path:
        return self._dir / f"{key}-cache.json"

    def metadata_path(self, key: str) -> Path:
        return self._dir / f"{key}-cache.meta.json"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str, ttl_hours: Optional[float] = None) -> Optional[Any]:
        """
        Return the cached payload, or None when the entry is missing, expired,
        unreadable or fails its checksum.

        ttl_hours overrides the TTL recorded at write time (CACHE_TTL_HOURS).
        """
        meta_path = self.metadata_path(key)
        data_path = self.payload_path(key)

        if not meta_path.exists() or not data_path.exists():
            return self._miss(key, "missing")

        try:
            metadata = json.loads(meta_path.read_text(encoding="utf-8"))
            created_at = parse_timestamp(metadata["createdAt"])
            checksum = str(metadata["checksum"])
        except (OSError, ValueError, KeyError, TypeError):
            return self._miss(key, "metadata_unreadable")
        if created_at is None:
            return self._miss(key, "metadata_unreadable")

        if ttl_hours is not None:
            expires_at = created_at + timedelta(hours=ttl_hours)
        else:
            expires_at = parse_timestamp(metadata.get("expiresAt"))
            if expires_at is None:
                return self._miss(key, "metadata_unreadable")

        if not self._now() < expires_at:
            return self._miss(key, "expired")

        try:
            raw = data_path.read_bytes()
        except OSError:
            return self._miss(key, "payload_unreadable")

        if compute_checksum(raw) != checksum:
            return self._miss(key, "checksum_mismatch")

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return self._miss(key, "payload_unreadable")

        logger.info("cache_hit", source=key, created_at=isoformat(created_at))
        return payload

    def put(self, key: str, payload: Any, ttl_hours: float) -> None:
        """Write payload then metadata. Failures are logged, never raised."""
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            raw = serialize_payload(payload)
            created_at = self._now()
            metadata = {
                "createdAt": isoformat(created_at),
                "expiresAt": isoformat(created_at + timedelta(hours=ttl_hours)),
                "source": key,
                "checksum": compute_checksum(raw),
                "ttlSeconds": int(ttl_hours * 3600),
            }
            self.payload_path(key).write_bytes(raw)
            self.metadata_path(key).write_text(json.dumps(metadata, indent=2), encoding="utf-8")
            logger.info("cache_write", source=key, bytes=len(raw), ttl_hours=ttl_hours)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("cache_write_failed", source=key, error=str(e))

    def invalidate(self, key: str) -> None:
        for path in (self.payload_path(key), self.metadata_path(key)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _miss(key: str, reason: str) -> None:
        logger.info("cache_miss", source=key, reason=reason)
        return None
