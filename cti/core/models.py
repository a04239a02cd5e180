"""Shared value types passed between pipeline stages.

All of these are created fresh on every run and never mutated afterwards,
hence ``frozen=True``. ``to_dict()`` produces the camelCase shape of the JSON
artifacts consumed by the dashboard.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional


class SourceName(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    SOCIAL = "social"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        """0 = most severe; used for sorting."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
}


class IndicatorType(str, Enum):
    CVE = "cve"
    IP = "ip"
    DOMAIN = "domain"
    KEYWORD = "keyword"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse ISO strings / unix seconds into aware UTC datetimes. None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Indicator:
    """Typed atomic fact. Identity is ``(type, value)`` only."""
    type: IndicatorType
    value: str
    source_origin: SourceName = field(compare=False)
    first_seen: datetime = field(default_factory=utc_now, compare=False)

    @property
    def key(self):
        return (self.type, self.value)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "value": self.value,
            "sourceOrigin": self.source_origin.value,
            "firstSeen": isoformat(self.first_seen),
        }


@dataclass(frozen=True)
class ThreatSignal:
    id: str
    title: str
    severity: Severity
    category: str
    sources: FrozenSet[SourceName]
    timestamp: datetime
    labels: FrozenSet[str] = frozenset()
    sample: str = ""
    engagement: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "severity": self.severity.value,
            "category": self.category,
            "sources": sorted(s.value for s in self.sources),
            "timestamp": isoformat(self.timestamp),
            "labels": sorted(self.labels),
        }


@dataclass(frozen=True)
class TechniqueEvidence:
    """ATT&CK technique observed in the data, with the text that triggered it."""
    technique_id: str
    name: str
    tactic: str
    evidence: str

    def to_dict(self) -> dict:
        return {
            "id": self.technique_id,
            "name": self.name,
            "tactic": self.tactic,
            "evidence": self.evidence,
        }


def dedupe_indicators(indicators) -> list:
    """Drop repeated ``(type, value)`` pairs, keeping first-seen order."""
    seen = set()
    result = []
    for ind in indicators:
        if ind.key in seen:
            continue
        seen.add(ind.key)
        result.append(ind)
    return result
