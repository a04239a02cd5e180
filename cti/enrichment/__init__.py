"""Narrative enrichment and scan-query suggestions via a text-generation endpoint."""
from .context import EnrichmentContext, build_context, render_context
from .orchestrator import (
    EnrichmentOrchestrator,
    EnrichmentResult,
    GenerationClient,
    GenerationError,
    heuristic_result,
)
from .query_generator import QueryGenerator, QueryGeneratorResult, QuerySuggestion

__all__ = [
    "EnrichmentContext", "build_context", "render_context",
    "EnrichmentOrchestrator", "EnrichmentResult", "GenerationClient", "GenerationError",
    "heuristic_result",
    "QueryGenerator", "QueryGeneratorResult", "QuerySuggestion",
]
