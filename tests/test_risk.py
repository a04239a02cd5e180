"""Tests for risk scoring."""
import pytest
from datetime import timedelta
from structlog.testing import capture_logs

from cti.analysis.risk import (
    RiskLevel,
    RiskScorer,
    Trend,
    calculate_confidence,
    calculate_score,
    determine_level,
    determine_trend,
)
from cti.core.models import Severity, SourceName, ThreatSignal


def _signal(n, timestamp):
    return ThreatSignal(
        id=f"s{n}",
        title=f"signal {n}",
        severity=Severity.HIGH,
        category="vulnerability",
        sources=frozenset({SourceName.SOCIAL}),
        timestamp=timestamp,
    )


class TestScore:
    """Weighted severity sum clamped to 0..100."""

    def test_two_critical_one_high_saturates(self):
        assert calculate_score(critical=2, high=1) == 100

    def test_weights(self):
        assert calculate_score(critical=1) == 40
        assert calculate_score(high=1) == 20
        assert calculate_score(medium=1) == 5
        assert calculate_score(low=1) == 1
        assert calculate_score(high=1, medium=2, low=3) == 33

    def test_clamped(self):
        assert calculate_score(critical=50) == 100
        assert calculate_score() == 0

    def test_monotonic_in_each_severity(self):
        """Adding a finding never lowers the score."""
        base = dict(critical=0, high=1, medium=2, low=3)
        for key in base:
            bumped = dict(base)
            bumped[key] += 1
            assert calculate_score(**bumped) >= calculate_score(**base)


class TestLevel:
    """Inclusive lower bounds at 75 / 45 / 15."""

    @pytest.mark.parametrize("score,expected", [
        (100, RiskLevel.CRITICAL),
        (75, RiskLevel.CRITICAL),
        (74, RiskLevel.ELEVATED),
        (45, RiskLevel.ELEVATED),
        (44, RiskLevel.MODERATE),
        (15, RiskLevel.MODERATE),
        (14, RiskLevel.LOW),
        (0, RiskLevel.LOW),
    ])
    def test_boundaries(self, score, expected):
        assert determine_level(score) == expected


class TestTrend:
    """Share of signals in the last hour."""

    def test_no_signals_is_stable(self, now):
        assert determine_trend([], now) == Trend.STABLE

    def test_mostly_recent_is_increasing(self, now):
        stamps = [now - timedelta(minutes=m) for m in (5, 10, 20)] + [now - timedelta(hours=5)]
        assert determine_trend(stamps, now) == Trend.INCREASING

    def test_few_recent_is_decreasing(self, now):
        stamps = [now - timedelta(minutes=5)] + [now - timedelta(hours=h) for h in range(2, 7)]
        assert determine_trend(stamps, now) == Trend.DECREASING

    def test_half_recent_is_stable(self, now):
        """Exactly 50% is not more than half."""
        stamps = [now - timedelta(minutes=5), now - timedelta(hours=3)]
        assert determine_trend(stamps, now) == Trend.STABLE

    def test_window_edge_is_not_recent(self, now):
        assert determine_trend([now - timedelta(hours=1)], now) == Trend.DECREASING

    def test_missing_timestamps_count_as_old(self, now):
        assert determine_trend([None, None, now], now) == Trend.STABLE


class TestConfidence:
    """Additive heuristic capped at 95."""

    def test_base(self):
        assert calculate_confidence(0, 0, False) == 50

    def test_sources_and_volume(self):
        assert calculate_confidence(2, 6, False) == 80
        assert calculate_confidence(2, 12, False) == 85

    def test_model_narrative_bonus(self):
        assert calculate_confidence(2, 6, True) == 90

    def test_cap(self):
        assert calculate_confidence(5, 50, True) == 95


class TestRiskScorer:
    """End-to-end assessment from a summary and signal list."""

    def test_assess(self, now):
        summary = {
            "bySeverity": {"critical": 2, "high": 1, "medium": 0, "low": 0, "info": 0},
            "bySource": {"infrastructure": 2, "social": 1},
        }
        signals = [_signal(n, now - timedelta(hours=3)) for n in range(3)]

        with capture_logs() as logs:
            assessment = RiskScorer(now=now).assess(summary, signals)

        assert assessment.score == 100
        assert assessment.level is RiskLevel.CRITICAL
        assert assessment.trend is Trend.DECREASING
        assert assessment.confidence == 70
        assert logs[-1]["event"] == "risk_scored"
        assert assessment.to_dict() == {
            "score": 100, "level": "critical", "trend": "decreasing", "confidence": 70,
        }

    def test_empty_summary(self, now):
        assessment = RiskScorer(now=now).assess({}, [])
        assert assessment.score == 0
        assert assessment.level is RiskLevel.LOW
        assert assessment.trend is Trend.STABLE
        assert assessment.confidence == 50
