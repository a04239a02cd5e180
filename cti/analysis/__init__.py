"""Analysis stages: indicator extraction, cross-source correlation, risk scoring."""
from .extractor import Extraction, IndicatorExtractor, SocialExcerpt, merge_signals, summarize
from .correlation import CorrelationEngine, CorrelationReport, CorrelationSignal
from .risk import RiskAssessment, RiskLevel, RiskScorer, Trend

__all__ = [
    "Extraction", "IndicatorExtractor", "SocialExcerpt", "merge_signals", "summarize",
    "CorrelationEngine", "CorrelationReport", "CorrelationSignal",
    "RiskAssessment", "RiskLevel", "RiskScorer", "Trend",
]
