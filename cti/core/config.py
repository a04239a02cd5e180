"""Pipeline configuration.

Defaults live on the dataclasses; ``PipelineConfig.from_env()`` overlays the
environment (after ``load_dotenv``) so a ``.env`` file next to the working
directory is honoured the same way in CI and locally.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from cti.core.models import SourceName


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class SourceConfig:
    source: SourceName
    enabled: bool = True
    cache_enabled: bool = True
    ttl_hours: float = 24.0
    requests_per_minute: float = 5.0
    cooldown_ms: float = 2000.0
    fetch_timeout_s: Optional[float] = None


@dataclass
class PipelineConfig:
    # Filesystem
    cache_dir: str = "./DATA/cti-cache"
    output_dir: str = "./DATA/cti-output"

    # Cache behaviour
    use_cache: bool = True
    cache_ttl_override_hours: Optional[float] = None   # CACHE_TTL_HOURS

    # Per-source settings (infrastructure scans change slower than social chatter)
    sources: Dict[SourceName, SourceConfig] = field(default_factory=lambda: {
        SourceName.INFRASTRUCTURE: SourceConfig(SourceName.INFRASTRUCTURE, ttl_hours=24.0),
        SourceName.SOCIAL: SourceConfig(SourceName.SOCIAL, ttl_hours=6.0),
    })

    # Narrative enrichment endpoint
    enrichment_endpoint: str = "http://localhost:11434"
    enrichment_model: str = "qwen2.5:3b"
    enrichment_timeout_s: float = 60.0
    enrichment_temperature: float = 0.3
    enrichment_max_tokens: int = 800

    # Context bounds for the enrichment prompt
    context_max_lines: int = 40
    context_max_chars: int = 2000

    def source_config(self, source: SourceName) -> SourceConfig:
        if source not in self.sources:
            self.sources[source] = SourceConfig(source)
        return self.sources[source]

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        load_dotenv()
        config = cls()
        config.cache_dir = os.getenv("CTI_CACHE_DIR", config.cache_dir)
        config.output_dir = os.getenv("CTI_OUTPUT_DIR", config.output_dir)
        config.use_cache = _env_bool("USE_CACHE", config.use_cache)
        config.cache_ttl_override_hours = _env_float("CACHE_TTL_HOURS", None)

        rpm = _env_float("CTI_RATE_LIMIT_RPM", None)
        cooldown = _env_float("CTI_RATE_LIMIT_COOLDOWN_MS", None)
        for name, env_flag in (
            (SourceName.INFRASTRUCTURE, "CTI_INFRA_ENABLED"),
            (SourceName.SOCIAL, "CTI_SOCIAL_ENABLED"),
        ):
            src = config.source_config(name)
            src.enabled = _env_bool(env_flag, src.enabled)
            if rpm is not None and rpm > 0:
                src.requests_per_minute = rpm
            if cooldown is not None and cooldown >= 0:
                src.cooldown_ms = cooldown

        config.enrichment_endpoint = os.getenv("OLLAMA_HOST", config.enrichment_endpoint).rstrip("/")
        config.enrichment_model = os.getenv("OLLAMA_MODEL", config.enrichment_model)
        timeout_ms = _env_float("CTI_REQUEST_TIMEOUT", None)
        if timeout_ms is not None and timeout_ms > 0:
            config.enrichment_timeout_s = timeout_ms / 1000.0
        return config


# Global singleton
_config: Optional[PipelineConfig] = None


def get_config() -> PipelineConfig:
    global _config
    if _config is None:
        _config = PipelineConfig.from_env()
    return _config
