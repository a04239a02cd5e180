"""Core infrastructure: config, logger, shared models."""
from .config import PipelineConfig, SourceConfig, get_config
from .logger import setup_logging, get_logger
from .models import (
    Indicator,
    IndicatorType,
    Severity,
    SourceName,
    TechniqueEvidence,
    ThreatSignal,
)

__all__ = [
    "PipelineConfig", "SourceConfig", "get_config",
    "setup_logging", "get_logger",
    "Indicator", "IndicatorType", "Severity", "SourceName",
    "TechniqueEvidence", "ThreatSignal",
]
