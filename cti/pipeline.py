"""
Single-run threat intelligence pipeline.

    fetch (concurrent per source) → extract → merge/summarize
        → correlate → enrich → score → display artifact

Every stage runs once per invocation and depends on the complete output of
the previous one. The run always completes with well-formed output: failed or
disabled sources contribute empty sections, and enrichment falls back to
heuristics when the endpoint is unavailable.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from cti.analysis.correlation import CorrelationEngine, CorrelationReport
from cti.analysis.extractor import Extraction, IndicatorExtractor, SocialExcerpt, merge_signals, summarize
from cti.analysis.risk import RiskAssessment, RiskScorer
from cti.core.config import PipelineConfig, get_config
from cti.core.logger import get_logger
from cti.core.models import (
    Indicator,
    SourceName,
    TechniqueEvidence,
    ThreatSignal,
    dedupe_indicators,
    isoformat,
    utc_now,
)
from cti.dashboard.json_export import build_dashboard
from cti.enrichment.context import build_context
from cti.enrichment.orchestrator import EnrichmentOrchestrator, EnrichmentResult
from cti.sources.cache import ScraperCache
from cti.sources.fetcher import FetchResult, Source, SourceFetcher

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    generated_at: datetime
    fetch_results: List[FetchResult]
    signals: List[ThreatSignal]
    indicators: List[Indicator]
    techniques: List[TechniqueEvidence]
    excerpts: List[SocialExcerpt]
    summary: dict
    correlation: CorrelationReport
    risk: RiskAssessment
    enrichment: EnrichmentResult
    dashboard: dict = field(default_factory=dict)

    @property
    def processed(self) -> dict:
        """Normalized intermediate artifact."""
        return {
            "generatedAt": isoformat(self.generated_at),
            "threats": [s.to_dict() for s in self.signals],
            "indicators": [i.to_dict() for i in self.indicators],
            "techniques": [t.to_dict() for t in self.techniques],
            "socialExcerpts": [e.to_dict() for e in self.excerpts],
            "summary": self.summary,
            "correlation": self.correlation.to_dict(),
            "sources": [r.to_dict() for r in self.fetch_results],
        }

    @property
    def sources_ok(self) -> Dict[str, bool]:
        return {r.source.value: r.success for r in self.fetch_results}


class ThreatPipeline:
    """
    Composes the stages over an explicit list of sources.

    Usage:
        pipeline = ThreatPipeline([InfrastructureSource(infra_loader), SocialSource(social_loader)])
        result = await pipeline.run()
        write_artifacts(result, config.output_dir)
    """

    def __init__(
        self,
        sources: Sequence[Source],
        config: Optional[PipelineConfig] = None,
        cache: Optional[ScraperCache] = None,
        enricher: Optional[EnrichmentOrchestrator] = None,
        extractor: Optional[IndicatorExtractor] = None,
        correlator: Optional[CorrelationEngine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config or get_config()
        self._clock = clock
        if cache is None:
            cache = ScraperCache(self._config.cache_dir)
        self._fetchers = [
            SourceFetcher(
                source,
                self._config.source_config(source.name),
                cache=cache,
                use_cache=self._config.use_cache,
                ttl_override_hours=self._config.cache_ttl_override_hours,
            )
            for source in sources
        ]
        self._enricher = enricher or EnrichmentOrchestrator.from_config(self._config)
        self._extractor = extractor
        self._correlator = correlator or CorrelationEngine()

    async def fetch_all(self) -> List[FetchResult]:
        return list(await asyncio.gather(*(f.execute() for f in self._fetchers)))

    async def run(self) -> PipelineResult:
        now = self._clock()
        fetch_results = await self.fetch_all()

        extractor = self._extractor or IndicatorExtractor(reference_time=now)
        extractions: List[Extraction] = [
            extractor.extract(r.source, r.payload)
            for r in fetch_results
            if r.success and r.payload is not None
        ]

        signals_by_source: Dict[SourceName, List[ThreatSignal]] = {}
        for ex in extractions:
            signals_by_source.setdefault(ex.source, []).extend(ex.signals)

        signals = merge_signals(s for ex in extractions for s in ex.signals)
        indicators = dedupe_indicators(i for ex in extractions for i in ex.indicators)
        techniques = _dedupe_techniques(t for ex in extractions for t in ex.techniques)
        excerpts = [e for ex in extractions for e in ex.excerpts]
        summary = summarize(signals)

        correlation = self._correlator.correlate(signals_by_source)

        context = build_context(summary, signals, indicators, techniques, excerpts, correlation)
        enrichment = await self._enricher.enrich(context)

        risk = RiskScorer(now=now).assess(summary, signals, narrative_from_model=enrichment.from_model)

        result = PipelineResult(
            generated_at=now,
            fetch_results=fetch_results,
            signals=signals,
            indicators=indicators,
            techniques=techniques,
            excerpts=excerpts,
            summary=summary,
            correlation=correlation,
            risk=risk,
            enrichment=enrichment,
        )
        result.dashboard = build_dashboard(result.processed, risk, correlation, enrichment, now=now)

        logger.info(
            "pipeline_complete",
            sources=result.sources_ok,
            threats=summary["totalThreats"],
            correlated=len(correlation.signals),
            risk_score=risk.score,
            risk_level=risk.level.value,
            provenance=enrichment.provenance,
        )
        return result


def _dedupe_techniques(techniques) -> List[TechniqueEvidence]:
    seen = set()
    result = []
    for tech in techniques:
        if tech.technique_id in seen:
            continue
        seen.add(tech.technique_id)
        result.append(tech)
    return result
