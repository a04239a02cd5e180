"""
CTI Correlation Pipeline: Entry Point
=====================================
Run with:  python -m cti.main --infra-file shodan.json --social-file posts.json

One batch run: loads the raw source payloads (files written by external
scrapers, or JSON URLs), runs fetch → extract → correlate → enrich → score,
and writes processed-data.json, enrichment.json and cti-dashboard.json to
the output directory. Meant to be scheduled externally.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from cti.core.config import PipelineConfig, get_config
from cti.core.logger import get_logger, setup_logging
from cti.dashboard.json_export import write_artifacts
from cti.enrichment.orchestrator import EnrichmentOrchestrator, GenerationClient
from cti.enrichment.query_generator import QueryGenerator
from cti.pipeline import ThreatPipeline
from cti.sources.fetcher import (
    InfrastructureSource,
    SocialSource,
    Source,
    http_json_loader,
    json_file_loader,
)

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cross-source threat intelligence pipeline")
    p.add_argument("--infra-file", help="Infrastructure scan payload (JSON file)")
    p.add_argument("--infra-url", help="Infrastructure scan payload (JSON URL)")
    p.add_argument("--social-file", help="Social posts payload (JSON file)")
    p.add_argument("--social-url", help="Social posts payload (JSON URL)")
    p.add_argument("--outdir", "-o", help="Output directory (default: CTI_OUTPUT_DIR)")
    p.add_argument("--no-cache", action="store_true", help="Ignore cached payloads")
    p.add_argument("--no-llm", action="store_true", help="Skip the generation endpoint, heuristics only")
    p.add_argument("--queries", action="store_true", help="Also suggest scan queries from social posts")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--json-logs", action="store_true")
    return p.parse_args(argv)


def build_sources(args: argparse.Namespace) -> List[Source]:
    sources: List[Source] = []
    if args.infra_file:
        sources.append(InfrastructureSource(json_file_loader(args.infra_file)))
    elif args.infra_url:
        sources.append(InfrastructureSource(http_json_loader(args.infra_url)))
    if args.social_file:
        sources.append(SocialSource(json_file_loader(args.social_file)))
    elif args.social_url:
        sources.append(SocialSource(http_json_loader(args.social_url)))
    return sources


def build_query_generator(config: PipelineConfig, use_model: bool = True) -> QueryGenerator:
    client = GenerationClient.from_config(config) if use_model else None
    return QueryGenerator(config.cache_dir, client=client, timeout_s=config.enrichment_timeout_s)


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, json_output=args.json_logs)

    config = get_config()
    if args.no_cache:
        config.use_cache = False
    output_dir = args.outdir or config.output_dir

    sources = build_sources(args)
    if not sources:
        logger.warning("no_sources_configured")

    enricher = EnrichmentOrchestrator() if args.no_llm else EnrichmentOrchestrator.from_config(config)
    pipeline = ThreatPipeline(sources, config=config, enricher=enricher)
    result = await pipeline.run()
    write_artifacts(result, output_dir)

    if args.queries:
        social = next((r.payload for r in result.fetch_results if r.source.value == "social" and r.payload), None)
        generator = build_query_generator(config, use_model=not args.no_llm)
        queries = await generator.generate(social, use_cache=config.use_cache)
        for q in queries.queries:
            logger.info("query_suggestion", query=q.query, priority=q.priority, rationale=q.rationale)

    logger.info(
        "run_finished",
        risk_level=result.risk.level.value,
        risk_score=result.risk.score,
        output_dir=str(output_dir),
    )
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
