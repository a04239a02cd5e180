"""Tests for environment-driven configuration."""
import pytest

from cti.core import config as config_module
from cti.core.config import PipelineConfig, SourceConfig, get_config
from cti.core.models import SourceName

ENV_VARS = [
    "CTI_CACHE_DIR", "CTI_OUTPUT_DIR", "USE_CACHE", "CACHE_TTL_HOURS",
    "CTI_INFRA_ENABLED", "CTI_SOCIAL_ENABLED", "CTI_RATE_LIMIT_RPM",
    "CTI_RATE_LIMIT_COOLDOWN_MS", "OLLAMA_HOST", "OLLAMA_MODEL", "CTI_REQUEST_TIMEOUT",
]


@pytest.fixture
def clean_env(monkeypatch):
    """No CTI variables set."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    """Dataclass defaults."""

    def test_defaults(self, clean_env):
        config = PipelineConfig.from_env()

        assert config.use_cache is True
        assert config.cache_ttl_override_hours is None
        assert config.enrichment_endpoint == "http://localhost:11434"
        assert config.enrichment_timeout_s == 60.0
        assert config.source_config(SourceName.INFRASTRUCTURE).ttl_hours == 24.0
        assert config.source_config(SourceName.SOCIAL).ttl_hours == 6.0
        assert config.source_config(SourceName.SOCIAL).requests_per_minute == 5.0

    def test_source_config_created_on_demand(self):
        config = PipelineConfig(sources={})
        assert isinstance(config.source_config(SourceName.SOCIAL), SourceConfig)
        assert SourceName.SOCIAL in config.sources


class TestFromEnv:
    """Environment overlay."""

    def test_overrides(self, clean_env):
        clean_env.setenv("CTI_CACHE_DIR", "/tmp/cti-cache")
        clean_env.setenv("USE_CACHE", "false")
        clean_env.setenv("CACHE_TTL_HOURS", "2")
        clean_env.setenv("CTI_SOCIAL_ENABLED", "0")
        clean_env.setenv("CTI_RATE_LIMIT_RPM", "10")
        clean_env.setenv("CTI_RATE_LIMIT_COOLDOWN_MS", "500")
        clean_env.setenv("OLLAMA_HOST", "http://gpu-box:11434/")
        clean_env.setenv("OLLAMA_MODEL", "llama3:8b")
        clean_env.setenv("CTI_REQUEST_TIMEOUT", "30000")

        config = PipelineConfig.from_env()

        assert config.cache_dir == "/tmp/cti-cache"
        assert config.use_cache is False
        assert config.cache_ttl_override_hours == 2.0
        assert config.source_config(SourceName.SOCIAL).enabled is False
        assert config.source_config(SourceName.INFRASTRUCTURE).enabled is True
        assert config.source_config(SourceName.INFRASTRUCTURE).requests_per_minute == 10.0
        assert config.source_config(SourceName.SOCIAL).cooldown_ms == 500.0
        assert config.enrichment_endpoint == "http://gpu-box:11434"
        assert config.enrichment_model == "llama3:8b"
        assert config.enrichment_timeout_s == 30.0

    def test_invalid_numbers_ignored(self, clean_env):
        clean_env.setenv("CACHE_TTL_HOURS", "soon")
        clean_env.setenv("CTI_RATE_LIMIT_RPM", "-1")
        config = PipelineConfig.from_env()

        assert config.cache_ttl_override_hours is None
        assert config.source_config(SourceName.INFRASTRUCTURE).requests_per_minute == 5.0

    def test_get_config_is_singleton(self, clean_env):
        clean_env.setattr(config_module, "_config", None)
        assert get_config() is get_config()
