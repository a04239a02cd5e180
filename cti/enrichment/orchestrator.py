"""
Narrative enrichment through an Ollama-style text-generation endpoint.

One bounded attempt per run:
    POST {endpoint}/api/generate  {"model", "prompt", "stream": false, "options"}
    -> {"response": "<text>"}

The call is wrapped in ``asyncio.wait_for``; on timeout the request task is
cancelled, which aborts the in-flight httpx request and releases its
connection. Non-2xx, network errors, empty bodies and responses no parser
strategy understands all yield the heuristic result. No retries: the pipeline
is rerun externally on a schedule.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple

import httpx

from cti.core.config import PipelineConfig
from cti.core.logger import get_logger
from cti.enrichment import heuristics
from cti.enrichment.context import EnrichmentContext, render_context
from cti.enrichment.parsers import combine, normalize_risk

logger = get_logger(__name__)

PROVENANCE_MODEL = "model"
PROVENANCE_HEURISTIC = "heuristic"

_PROMPT_TEMPLATE = """You are a cybersecurity threat intelligence analyst.
Analyze the data below and answer with a single JSON object only.

{context}

Output format:
{{"summary": "2-3 sentences", "findings": ["3-5 key findings"], "risk": "critical|high|medium|low", "recommendations": ["3-5 actions"]}}

Base the analysis only on the data provided."""


def build_prompt(context_text: str) -> str:
    return _PROMPT_TEMPLATE.format(context=context_text)


@dataclass(frozen=True)
class EnrichmentResult:
    summary: str
    findings: Tuple[str, ...]
    recommendations: Tuple[str, ...]
    risk_level_guess: str
    model: str
    provenance: str
    kill_chain_phase: str = heuristics.DEFAULT_KILL_CHAIN_PHASE

    @property
    def from_model(self) -> bool:
        return self.provenance == PROVENANCE_MODEL

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "findings": list(self.findings),
            "recommendations": list(self.recommendations),
            "riskLevelGuess": self.risk_level_guess,
            "model": self.model,
            "provenance": self.provenance,
            "killChainPhase": self.kill_chain_phase,
        }


class GenerationError(Exception):
    """The endpoint answered, but not with usable text."""


class GenerationClient:
    """Thin async client for ``/api/generate``. Pass ``client`` to share a pool or mock."""

    def __init__(
        self,
        endpoint: str,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 800,
        timeout_s: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_s = timeout_s
        self._client = client

    @classmethod
    def from_config(cls, config: PipelineConfig, client: Optional[httpx.AsyncClient] = None) -> "GenerationClient":
        return cls(
            endpoint=config.enrichment_endpoint,
            model=config.enrichment_model,
            temperature=config.enrichment_temperature,
            max_tokens=config.enrichment_max_tokens,
            timeout_s=config.enrichment_timeout_s,
            client=client,
        )

    async def generate(self, prompt: str) -> str:
        body = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        }
        own_client = self._client is None
        http = self._client or httpx.AsyncClient(timeout=self.timeout_s)
        try:
            resp = await http.post(f"{self.endpoint}/api/generate", json=body)
            resp.raise_for_status()
            data = resp.json()
        finally:
            if own_client:
                await http.aclose()

        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise GenerationError("empty response")
        return text


class EnrichmentOrchestrator:
    """
    Produces an EnrichmentResult for one pipeline run. Never raises for
    endpoint problems; the heuristic result is always available.

    Usage:
        orchestrator = EnrichmentOrchestrator(GenerationClient.from_config(cfg), timeout_s=60)
        result = await orchestrator.enrich(ctx)
    """

    def __init__(
        self,
        client: Optional[GenerationClient] = None,
        timeout_s: float = 60.0,
        max_context_lines: int = 40,
        max_context_chars: int = 2000,
    ):
        self._client = client
        self.timeout_s = timeout_s
        self.max_context_lines = max_context_lines
        self.max_context_chars = max_context_chars

    @classmethod
    def from_config(cls, config: PipelineConfig, client: Optional[httpx.AsyncClient] = None) -> "EnrichmentOrchestrator":
        return cls(
            client=GenerationClient.from_config(config, client=client),
            timeout_s=config.enrichment_timeout_s,
            max_context_lines=config.context_max_lines,
            max_context_chars=config.context_max_chars,
        )

    @property
    def model_name(self) -> str:
        return self._client.model if self._client else PROVENANCE_HEURISTIC

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enrich(self, ctx: EnrichmentContext) -> EnrichmentResult:
        context_text = render_context(ctx, self.max_context_lines, self.max_context_chars)
        if self._client is None:
            return self._fallback(ctx, context_text, reason="no_client")

        try:
            raw = await asyncio.wait_for(
                self._client.generate(build_prompt(context_text)),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            return self._fallback(ctx, context_text, reason="timeout")
        except httpx.HTTPStatusError as e:
            return self._fallback(ctx, context_text, reason=f"http_{e.response.status_code}")
        except httpx.HTTPError as e:
            return self._fallback(ctx, context_text, reason=f"network_error: {type(e).__name__}")
        except (GenerationError, ValueError) as e:
            return self._fallback(ctx, context_text, reason=f"bad_response: {e}")

        parsed = combine(raw)
        if not parsed:
            return self._fallback(ctx, context_text, reason="unparseable")

        result = self._merge(ctx, parsed, raw)
        replaced = [name for name in ("summary", "findings", "recommendations", "risk") if name not in parsed]
        logger.info(
            "enrichment_complete",
            provenance=result.provenance,
            model=result.model,
            risk=result.risk_level_guess,
            heuristic_fields=replaced,
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _merge(self, ctx: EnrichmentContext, parsed: dict, raw: str) -> EnrichmentResult:
        """Parsed fields where valid, heuristic values for the rest."""
        risk = normalize_risk(parsed.get("risk")) or heuristics.calculate_risk(ctx)
        findings: List[str] = list(parsed.get("findings") or heuristics.default_findings(ctx))
        recommendations: List[str] = list(
            parsed.get("recommendations") or heuristics.default_recommendations(risk)
        )
        return EnrichmentResult(
            summary=str(parsed.get("summary") or heuristics.default_summary(ctx)),
            findings=tuple(findings),
            recommendations=tuple(recommendations),
            risk_level_guess=risk,
            model=self.model_name,
            provenance=PROVENANCE_MODEL,
            kill_chain_phase=heuristics.guess_kill_chain_phase(raw),
        )

    def _fallback(self, ctx: EnrichmentContext, context_text: str, reason: str) -> EnrichmentResult:
        logger.warning("enrichment_fallback", reason=reason, model=self.model_name)
        result = heuristic_result(ctx, context_text)
        logger.info("enrichment_complete", provenance=result.provenance, model=result.model, risk=result.risk_level_guess)
        return result


def heuristic_result(ctx: EnrichmentContext, context_text: Optional[str] = None) -> EnrichmentResult:
    """Fully deterministic result for ``ctx``."""
    if context_text is None:
        context_text = render_context(ctx)
    risk = heuristics.calculate_risk(ctx)
    return EnrichmentResult(
        summary=heuristics.default_summary(ctx),
        findings=tuple(heuristics.default_findings(ctx)),
        recommendations=tuple(heuristics.default_recommendations(risk)),
        risk_level_guess=risk,
        model=PROVENANCE_HEURISTIC,
        provenance=PROVENANCE_HEURISTIC,
        kill_chain_phase=heuristics.guess_kill_chain_phase(context_text),
    )
