"""Cross-source correlation of threat signals with temporal precedence.

A label (CVE id, product/service key, threat keyword) is *correlated* when it
appears with a non-zero count under at least two distinct sources. Labels
seen by a single source are co-occurrence noise and are dropped, never
reported as low-confidence correlation.

For correlated labels where both the infrastructure and the social side
carry a last-seen time:

    delta_h = social_last_seen - infra_last_seen   (hours)
    |delta_h| < 1   → simultaneous
    delta_h > 0     → infra-first   (exposure observed before the discussion)
    delta_h < 0     → social-first

The run-level dominant pattern is a strict majority vote; ties or no votes
give ``insufficient-data``.
"""

import hashlib
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from cti.core.logger import get_logger
from cti.core.models import SourceName, ThreatSignal, isoformat

logger = get_logger(__name__)

INFRA_FIRST = "infra-first"
SOCIAL_FIRST = "social-first"
SIMULTANEOUS = "simultaneous"
INSUFFICIENT_DATA = "insufficient-data"

MIN_SOURCES = 2
SIMULTANEOUS_WINDOW_HOURS = 1.0
MAX_SAMPLES = 3

# (pattern, magnitude bucket) → interpretation template
_TEMPLATES: Dict[tuple, str] = {
    (SIMULTANEOUS, "none"): (
        "'{label}' surfaced in infrastructure scans and social discussion at the same time; "
        "treat as an active, publicly known exposure."
    ),
    (INFRA_FIRST, "hours"): (
        "Exposure of '{label}' was observed {hours:.1f}h before social discussion picked it up; "
        "discussion may be reacting to scan visibility."
    ),
    (INFRA_FIRST, "days"): (
        "Exposure of '{label}' preceded social discussion by {hours:.1f}h; "
        "long-standing exposed assets are now drawing attention."
    ),
    (SOCIAL_FIRST, "hours"): (
        "Social discussion of '{label}' preceded matching exposure by {hours:.1f}h; "
        "possible early warning of scanning or exploitation."
    ),
    (SOCIAL_FIRST, "days"): (
        "Social discussion of '{label}' appeared {hours:.1f}h before exposure was observed; "
        "chatter ran ahead of infrastructure evidence."
    ),
    (None, "none"): (
        "'{label}' appears in both infrastructure and social data; timing could not be compared."
    ),
}


@dataclass(frozen=True)
class SourceObservation:
    count: int
    sample_data: List[str]
    last_seen: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "sampleData": list(self.sample_data),
            "lastSeen": isoformat(self.last_seen),
        }


@dataclass(frozen=True)
class TemporalAnalysis:
    time_delta_hours: float
    infra_precedes_social: bool
    pattern: str

    def to_dict(self) -> dict:
        return {
            "timeDeltaHours": self.time_delta_hours,
            "infraPrecedesSocial": self.infra_precedes_social,
            "pattern": self.pattern,
        }


@dataclass(frozen=True)
class CorrelationSignal:
    id: str
    label: str
    per_source: Dict[SourceName, SourceObservation]
    temporal_analysis: Optional[TemporalAnalysis] = None
    interpretation: str = ""

    @property
    def total_count(self) -> int:
        return sum(obs.count for obs in self.per_source.values())

    @property
    def pattern(self) -> Optional[str]:
        return self.temporal_analysis.pattern if self.temporal_analysis else None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "label": self.label,
            "perSource": {src.value: obs.to_dict() for src, obs in sorted(
                self.per_source.items(), key=lambda kv: kv[0].value)},
            "interpretation": self.interpretation,
        }
        if self.temporal_analysis is not None:
            data["temporalAnalysis"] = self.temporal_analysis.to_dict()
        return data


@dataclass(frozen=True)
class CorrelationReport:
    signals: List[CorrelationSignal] = field(default_factory=list)
    dominant_pattern: str = INSUFFICIENT_DATA

    def to_dict(self) -> dict:
        return {
            "signals": [s.to_dict() for s in self.signals],
            "dominantPattern": self.dominant_pattern,
            "summary": {"correlatedSignals": len(self.signals)},
        }


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def classify_delta(delta_hours: float) -> str:
    if abs(delta_hours) < SIMULTANEOUS_WINDOW_HOURS:
        return SIMULTANEOUS
    return INFRA_FIRST if delta_hours > 0 else SOCIAL_FIRST


def temporal_analysis(
    infra_last_seen: Optional[datetime],
    social_last_seen: Optional[datetime],
) -> Optional[TemporalAnalysis]:
    if infra_last_seen is None or social_last_seen is None:
        return None
    delta = (social_last_seen - infra_last_seen).total_seconds() / 3600.0
    return TemporalAnalysis(
        time_delta_hours=round(delta, 1),
        infra_precedes_social=delta > 0,
        pattern=classify_delta(delta),
    )


def dominant_pattern(patterns: Iterable[Optional[str]]) -> str:
    votes = Counter(p for p in patterns if p)
    if not votes:
        return INSUFFICIENT_DATA
    ranked = votes.most_common()
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return INSUFFICIENT_DATA
    return ranked[0][0]


def interpret(label: str, analysis: Optional[TemporalAnalysis]) -> str:
    if analysis is None:
        key = (None, "none")
    elif analysis.pattern == SIMULTANEOUS:
        key = (SIMULTANEOUS, "none")
    else:
        bucket = "days" if abs(analysis.time_delta_hours) >= 24 else "hours"
        key = (analysis.pattern, bucket)
    hours = abs(analysis.time_delta_hours) if analysis else 0.0
    return _TEMPLATES[key].format(label=label, hours=hours)


def _correlation_id(label: str) -> str:
    return "corr_" + hashlib.md5(label.encode("utf-8")).hexdigest()[:10]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CorrelationEngine:
    """
    Stateless. Each call to correlate() builds a fresh report.

    Usage:
        report = CorrelationEngine().correlate({
            SourceName.INFRASTRUCTURE: infra_signals,
            SourceName.SOCIAL: social_signals,
        })
    """

    def __init__(self, min_sources: int = MIN_SOURCES):
        self._min_sources = min_sources

    def correlate(self, signals_by_source: Mapping[SourceName, List[ThreatSignal]]) -> CorrelationReport:
        groups = self._group(signals_by_source)

        correlated: List[CorrelationSignal] = []
        for label, per_source in groups.items():
            if not per_source:
                raise AssertionError(f"correlation label {label!r} has no contributing source")
            present = {src: obs for src, obs in per_source.items() if obs.count > 0}
            if len(present) < self._min_sources:
                continue

            infra = present.get(SourceName.INFRASTRUCTURE)
            social = present.get(SourceName.SOCIAL)
            analysis = temporal_analysis(
                infra.last_seen if infra else None,
                social.last_seen if social else None,
            )
            correlated.append(CorrelationSignal(
                id=_correlation_id(label),
                label=label,
                per_source=present,
                temporal_analysis=analysis,
                interpretation=interpret(label, analysis),
            ))

        correlated.sort(key=lambda s: (-s.total_count, s.label))
        report = CorrelationReport(
            signals=correlated,
            dominant_pattern=dominant_pattern(s.pattern for s in correlated),
        )
        logger.info(
            "correlation_complete",
            candidates=len(groups),
            correlated=len(correlated),
            dominant_pattern=report.dominant_pattern,
        )
        return report

    @staticmethod
    def _group(signals_by_source: Mapping[SourceName, List[ThreatSignal]]) -> Dict[str, Dict[SourceName, SourceObservation]]:
        counts: Dict[str, Dict[SourceName, int]] = {}
        samples: Dict[str, Dict[SourceName, List[str]]] = {}
        last_seen: Dict[str, Dict[SourceName, Optional[datetime]]] = {}

        for source, signals in signals_by_source.items():
            for sig in signals or []:
                for raw_label in sig.labels:
                    label = normalize_label(raw_label)
                    if not label:
                        continue
                    counts.setdefault(label, {})
                    counts[label][source] = counts[label].get(source, 0) + 1
                    src_samples = samples.setdefault(label, {}).setdefault(source, [])
                    if len(src_samples) < MAX_SAMPLES and sig.title not in src_samples:
                        src_samples.append(sig.title)
                    prev = last_seen.setdefault(label, {}).get(source)
                    if sig.timestamp is not None and (prev is None or sig.timestamp > prev):
                        last_seen[label][source] = sig.timestamp
                    else:
                        last_seen[label].setdefault(source, prev)

        return {
            label: {
                src: SourceObservation(
                    count=count,
                    sample_data=samples[label][src],
                    last_seen=last_seen[label].get(src),
                )
                for src, count in per_source.items()
            }
            for label, per_source in counts.items()
        }


def normalize_label(label: str) -> str:
    value = (label or "").strip()
    if value.upper().startswith("CVE-"):
        return value.upper()
    return value.lower()
