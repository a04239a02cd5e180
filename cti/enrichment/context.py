"""Compact, bounded context handed to the narrative-generation endpoint.

The same EnrichmentContext feeds the deterministic heuristics, so the fallback
result is a pure function of what the model would have seen.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from cti.analysis.correlation import INSUFFICIENT_DATA, CorrelationReport
from cti.analysis.extractor import SocialExcerpt
from cti.core.models import Indicator, IndicatorType, TechniqueEvidence, ThreatSignal

MAX_CONTEXT_LINES = 40
MAX_CONTEXT_CHARS = 2000

TOP_THREATS = 5
TOP_CVES = 5
TOP_EXCERPTS = 3

_TITLE_CHARS = 60
_EXCERPT_CHARS = 100

_CATEGORY_CODES = {
    "malware": "MAL",
    "ransomware": "RAN",
    "phishing": "PHI",
    "ddos": "DDOS",
    "apt": "APT",
    "vulnerability": "VUL",
    "data_breach": "BRE",
    "infrastructure": "INF",
    "other": "OTH",
}


@dataclass(frozen=True)
class EnrichmentContext:
    total_threats: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    top_category: str = "unknown"
    sources: Tuple[str, ...] = ()
    top_threats: Tuple[Tuple[str, str, str], ...] = ()      # (severity, category, title)
    indicator_counts: Tuple[Tuple[str, int], ...] = ()
    cves: Tuple[str, ...] = ()
    techniques: Tuple[Tuple[str, str, str], ...] = ()       # (id, name, tactic)
    excerpts: Tuple[Tuple[str, str, int], ...] = ()         # (author, text, engagement)
    correlated_signals: int = 0
    dominant_pattern: str = INSUFFICIENT_DATA
    correlated_labels: Tuple[str, ...] = field(default=())


def build_context(
    summary: dict,
    signals: Iterable[ThreatSignal],
    indicators: Iterable[Indicator],
    techniques: Iterable[TechniqueEvidence] = (),
    excerpts: Iterable[SocialExcerpt] = (),
    correlation: Optional[CorrelationReport] = None,
) -> EnrichmentContext:
    """Rank and truncate upstream output into an EnrichmentContext.

    ``signals`` are expected already merged and sorted most severe first.
    """
    by_severity = summary.get("bySeverity") or {}
    by_category = summary.get("byCategory") or {}

    top_category = "unknown"
    if by_category:
        top_category = sorted(by_category.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    top_threats = tuple(
        (sig.severity.value, sig.category, _truncate(sig.title, _TITLE_CHARS))
        for sig in list(signals)[:TOP_THREATS]
    )

    indicators = list(indicators)
    counts: Counter = Counter(ind.type.value for ind in indicators)
    indicator_counts = tuple(
        (kind.value, counts[kind.value]) for kind in IndicatorType if counts[kind.value]
    )
    cves: List[str] = []
    for ind in indicators:
        if ind.type is IndicatorType.CVE and ind.value not in cves:
            cves.append(ind.value)

    seen_techniques: Dict[str, Tuple[str, str, str]] = {}
    for tech in techniques:
        seen_techniques.setdefault(tech.technique_id, (tech.technique_id, tech.name, tech.tactic))

    ranked_excerpts = sorted(excerpts, key=lambda e: -e.engagement)[:TOP_EXCERPTS]

    correlated = correlation.signals if correlation else []
    return EnrichmentContext(
        total_threats=int(summary.get("totalThreats", 0) or 0),
        critical=int(by_severity.get("critical", 0) or 0),
        high=int(by_severity.get("high", 0) or 0),
        medium=int(by_severity.get("medium", 0) or 0),
        low=int(by_severity.get("low", 0) or 0),
        top_category=top_category,
        sources=tuple(sorted((summary.get("bySource") or {}).keys())),
        top_threats=top_threats,
        indicator_counts=indicator_counts,
        cves=tuple(cves[:TOP_CVES]),
        techniques=tuple(seen_techniques.values()),
        excerpts=tuple((e.author, _truncate(e.text, _EXCERPT_CHARS), e.engagement) for e in ranked_excerpts),
        correlated_signals=len(correlated),
        dominant_pattern=correlation.dominant_pattern if correlation else INSUFFICIENT_DATA,
        correlated_labels=tuple(sig.label for sig in correlated[:TOP_THREATS]),
    )


def render_context(
    ctx: EnrichmentContext,
    max_lines: int = MAX_CONTEXT_LINES,
    max_chars: int = MAX_CONTEXT_CHARS,
) -> str:
    """Plain-text rendering, cut to ``max_lines`` lines and ``max_chars`` characters."""
    lines: List[str] = ["=== THREAT INTELLIGENCE SUMMARY ==="]
    lines.append(
        f"Threats: {ctx.total_threats} total, {ctx.critical} critical, "
        f"{ctx.high} high, {ctx.medium} medium, {ctx.low} low"
    )
    lines.append(f"Top category: {ctx.top_category}")
    lines.append(f"Sources: {', '.join(ctx.sources) or 'none'}")

    if ctx.top_threats:
        lines.append("TOP THREATS:")
        for severity, category, title in ctx.top_threats:
            code = _CATEGORY_CODES.get(category, category[:3].upper())
            lines.append(f"  - [{severity[0].upper()}] {code}: {title}")

    if ctx.indicator_counts:
        lines.append("INDICATORS: " + ", ".join(f"{kind}:{n}" for kind, n in ctx.indicator_counts))
    lines.append(f"CVEs: {', '.join(ctx.cves) or 'none'}")

    if ctx.techniques:
        lines.append("TECHNIQUES (MITRE ATT&CK):")
        for tech_id, name, tactic in ctx.techniques:
            lines.append(f"  - {tech_id}: {name} ({tactic})")

    if ctx.excerpts:
        lines.append(f"SOCIAL INTELLIGENCE: {len(ctx.excerpts)} top posts")
        for author, text, engagement in ctx.excerpts:
            lines.append(f'  - {author} ({engagement}): "{text}"')

    lines.append(
        f"CORRELATION: {ctx.correlated_signals} cross-source signals, "
        f"dominant pattern {ctx.dominant_pattern}"
    )
    if ctx.correlated_labels:
        lines.append("  Labels: " + ", ".join(ctx.correlated_labels))

    text = "\n".join(lines[:max_lines])
    if len(text) > max_chars:
        cut = text.rfind("\n", 0, max_chars)
        text = text[: cut if cut > 0 else max_chars]
    return text


def _truncate(text: str, limit: int) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[: limit - 3] + "..."
