"""Aggregate risk score, level, trend and confidence.

score      = min(100, round(critical*40 + high*20 + medium*5 + low*1))
level      = critical ≥ 75, elevated ≥ 45, moderate ≥ 15, else low
trend      = share of signals seen in the last hour: > 50% increasing,
             < 20% decreasing, otherwise stable (no signals → stable)
confidence = 50 + 10 per contributing source + 15 (≥10 signals) or 10 (≥5)
             + 10 when the external endpoint produced the narrative, capped at 95

Confidence is an additive, explainable heuristic over data coverage. It is
not a probability and should not be read as one. Social-data freshness is
deliberately not part of it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from cti.core.logger import get_logger
from cti.core.models import ThreatSignal, utc_now

logger = get_logger(__name__)

# Fixed boundaries (inclusive lower bounds)
CRITICAL_THRESHOLD = 75
ELEVATED_THRESHOLD = 45
MODERATE_THRESHOLD = 15

SEVERITY_WEIGHTS = {"critical": 40, "high": 20, "medium": 5, "low": 1}

RECENT_WINDOW = timedelta(hours=1)
INCREASING_SHARE = 0.5
DECREASING_SHARE = 0.2

BASE_CONFIDENCE = 50
CONFIDENCE_PER_SOURCE = 10
CONFIDENCE_CAP = 95


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    ELEVATED = "elevated"
    MODERATE = "moderate"
    LOW = "low"


class Trend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: RiskLevel
    trend: Trend
    confidence: int

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "level": self.level.value,
            "trend": self.trend.value,
            "confidence": self.confidence,
        }


def calculate_score(critical: int = 0, high: int = 0, medium: int = 0, low: int = 0) -> int:
    raw = (
        critical * SEVERITY_WEIGHTS["critical"]
        + high * SEVERITY_WEIGHTS["high"]
        + medium * SEVERITY_WEIGHTS["medium"]
        + low * SEVERITY_WEIGHTS["low"]
    )
    return max(0, min(100, round(raw)))


def determine_level(score: int) -> RiskLevel:
    if score >= CRITICAL_THRESHOLD:
        return RiskLevel.CRITICAL
    if score >= ELEVATED_THRESHOLD:
        return RiskLevel.ELEVATED
    if score >= MODERATE_THRESHOLD:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


def determine_trend(timestamps: Iterable[Optional[datetime]], now: Optional[datetime] = None) -> Trend:
    stamps = list(timestamps)
    total = len(stamps)
    if total == 0:
        return Trend.STABLE
    cutoff = (now or utc_now()) - RECENT_WINDOW
    recent = sum(1 for ts in stamps if ts is not None and ts > cutoff)
    if recent > total * INCREASING_SHARE:
        return Trend.INCREASING
    if recent < total * DECREASING_SHARE:
        return Trend.DECREASING
    return Trend.STABLE


def calculate_confidence(source_count: int, signal_count: int, narrative_from_model: bool) -> int:
    confidence = BASE_CONFIDENCE + max(0, source_count) * CONFIDENCE_PER_SOURCE
    if signal_count >= 10:
        confidence += 15
    elif signal_count >= 5:
        confidence += 10
    if narrative_from_model:
        confidence += 10
    return min(CONFIDENCE_CAP, confidence)


class RiskScorer:
    """Stateless; recomputed from scratch every run."""

    def __init__(self, now: Optional[datetime] = None):
        self._now = now

    def assess(
        self,
        summary: dict,
        signals: Iterable[ThreatSignal],
        narrative_from_model: bool = False,
    ) -> RiskAssessment:
        by_severity = summary.get("bySeverity") or {}
        score = calculate_score(
            critical=by_severity.get("critical", 0),
            high=by_severity.get("high", 0),
            medium=by_severity.get("medium", 0),
            low=by_severity.get("low", 0),
        )
        signals = list(signals)
        assessment = RiskAssessment(
            score=score,
            level=determine_level(score),
            trend=determine_trend((s.timestamp for s in signals), self._now),
            confidence=calculate_confidence(
                source_count=len(summary.get("bySource") or {}),
                signal_count=len(signals),
                narrative_from_model=narrative_from_model,
            ),
        )
        logger.info(
            "risk_scored",
            score=assessment.score,
            level=assessment.level.value,
            trend=assessment.trend.value,
            confidence=assessment.confidence,
        )
        return assessment
