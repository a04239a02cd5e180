"""Tests for enrichment context, heuristics and the orchestrator."""
import asyncio
import json
from dataclasses import replace

import httpx
import pytest
from structlog.testing import capture_logs

from cti.analysis.correlation import CorrelationEngine
from cti.analysis.extractor import IndicatorExtractor, merge_signals, summarize
from cti.core.config import PipelineConfig
from cti.core.models import SourceName, dedupe_indicators
from cti.enrichment import heuristics
from cti.enrichment.context import EnrichmentContext, build_context, render_context
from cti.enrichment.orchestrator import (
    EnrichmentOrchestrator,
    GenerationClient,
    heuristic_result,
)

INFRA = SourceName.INFRASTRUCTURE
SOCIAL = SourceName.SOCIAL

MODEL_JSON = json.dumps({
    "summary": "Ransomware crews are targeting exposed RDP endpoints.",
    "findings": ["Three RDP hosts exposed", "LockBit affiliates active"],
    "risk": "high",
    "recommendations": ["Restrict RDP to VPN users"],
})


@pytest.fixture
def ctx():
    """Context resembling the fixture payloads after correlation."""
    return EnrichmentContext(
        total_threats=6,
        critical=2,
        high=3,
        medium=1,
        top_category="infrastructure",
        sources=("infrastructure", "social"),
        top_threats=(("critical", "vulnerability", "CVE-2024-6387 observed on 1 exposed host"),),
        indicator_counts=(("cve", 2), ("ip", 3)),
        cves=("CVE-2024-6387", "CVE-2019-0708"),
        techniques=(("T1021.004", "Remote Services: SSH", "Lateral Movement"),),
        excerpts=(("@researcher1", "CVE-2024-6387 is being actively exploited", 150),),
        correlated_signals=3,
        dominant_pattern="infra-first",
        correlated_labels=("rdp", "ssh", "CVE-2024-6387"),
    )


def _orchestrator(handler, timeout_s=5.0):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    generator = GenerationClient("http://llm.test", "qwen2.5:3b", client=client)
    return EnrichmentOrchestrator(generator, timeout_s=timeout_s), client


def _respond(text):
    return lambda request: httpx.Response(200, json={"response": text})


class TestBuildContext:
    """Ranking and truncation of upstream output."""

    def test_from_fixture_payloads(self, now, infra_payload, social_payload):
        extractor = IndicatorExtractor(reference_time=now)
        infra = extractor.extract(INFRA, infra_payload)
        social = extractor.extract(SOCIAL, social_payload)
        signals = merge_signals(infra.signals + social.signals)
        report = CorrelationEngine().correlate({INFRA: infra.signals, SOCIAL: social.signals})

        result = build_context(
            summarize(signals),
            signals,
            dedupe_indicators(infra.indicators + social.indicators),
            infra.techniques + social.techniques,
            social.excerpts,
            report,
        )

        assert result.total_threats == 6
        assert (result.critical, result.high, result.medium) == (2, 3, 1)
        assert result.sources == ("infrastructure", "social")
        assert result.top_category == "infrastructure"
        assert result.cves == ("CVE-2024-6387", "CVE-2019-0708")
        assert len(result.excerpts) == 3
        assert [t[0] for t in result.techniques].count("T1021.004") == 1
        assert result.correlated_signals == 3
        assert result.dominant_pattern == "infra-first"
        assert result.correlated_labels == ("rdp", "ssh", "CVE-2024-6387")

    def test_empty_inputs(self):
        result = build_context({}, [], [])
        assert result.total_threats == 0 and result.indicator_counts == ()
        assert result.top_category == "unknown"
        assert result.dominant_pattern == "insufficient-data"


class TestRenderContext:
    """Rendered text stays within line and character bounds."""

    def test_header_and_content(self, ctx):
        text = render_context(ctx)
        lines = text.splitlines()
        assert lines[0] == "=== THREAT INTELLIGENCE SUMMARY ==="
        assert "  - [C] VUL: CVE-2024-6387 observed on 1 exposed host" in lines
        assert "CVEs: CVE-2024-6387, CVE-2019-0708" in lines

    def test_bounded(self, ctx):
        """100 threats still render to ≤40 lines and ≤2000 characters."""
        many = tuple(("high", "malware", "x" * 60) for _ in range(100))
        text = render_context(replace(ctx, top_threats=many))
        assert len(text.splitlines()) <= 40
        assert len(text) <= 2000

    def test_custom_bounds(self, ctx):
        text = render_context(ctx, max_lines=3, max_chars=80)
        assert len(text.splitlines()) <= 3
        assert len(text) <= 80

    def test_empty_context(self):
        text = render_context(EnrichmentContext())
        assert "CVEs: none" in text
        assert "Sources: none" in text


class TestHeuristics:
    """Deterministic fallback functions."""

    @pytest.mark.parametrize("counts,expected", [
        (dict(critical=1), "critical"),
        (dict(high=3), "high"),
        (dict(high=2), "medium"),
        (dict(medium=6), "medium"),
        (dict(medium=5), "low"),
        (dict(), "low"),
    ])
    def test_calculate_risk(self, counts, expected):
        assert heuristics.calculate_risk(EnrichmentContext(**counts)) == expected

    def test_default_summary(self, ctx):
        summary = heuristics.default_summary(ctx)
        assert summary.startswith(
            "6 threats detected (2 critical, 3 high) from infrastructure, social. Main focus: infrastructure."
        )
        assert "dominant pattern infra-first" in summary

    def test_default_summary_no_threats(self):
        assert heuristics.default_summary(EnrichmentContext()) == "No threats detected in the collected data."

    def test_default_findings(self, ctx):
        findings = heuristics.default_findings(ctx)
        assert findings[0] == "Known vulnerabilities referenced: CVE-2024-6387, CVE-2019-0708"
        assert any("Remote Services: SSH" in f for f in findings)
        assert len(findings) == 4

    def test_default_findings_empty(self):
        assert heuristics.default_findings(EnrichmentContext()) == [
            "No actionable indicators extracted in this collection window"
        ]

    def test_recommendations_per_level(self):
        assert len(heuristics.default_recommendations("critical")) == 3
        assert heuristics.default_recommendations("bogus") == heuristics.default_recommendations("low")

    @pytest.mark.parametrize("text,expected", [
        ("CVE-2024-6387 under exploitation", "Exploitation"),
        ("phishing payload delivered", "Delivery"),
        ("beacon traffic to new infrastructure", "Command & Control"),
        ("ransom note and exfil", "Actions on Objectives"),
        ("ransomware using a cve-2023-1 exploit", "Exploitation"),
        ("", "Reconnaissance"),
    ])
    def test_kill_chain_phase(self, text, expected):
        assert heuristics.guess_kill_chain_phase(text) == expected


class TestOrchestrator:
    """One bounded attempt, heuristic fallback on any failure."""

    @pytest.mark.asyncio
    async def test_model_success(self, ctx):
        """Parsed model output is used verbatim and tagged with the model."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": MODEL_JSON})

        orchestrator, client = _orchestrator(handler)
        async with client:
            result = await orchestrator.enrich(ctx)

        assert result.provenance == "model"
        assert result.from_model
        assert result.model == "qwen2.5:3b"
        assert result.summary == "Ransomware crews are targeting exposed RDP endpoints."
        assert result.findings == ("Three RDP hosts exposed", "LockBit affiliates active")
        assert result.risk_level_guess == "high"
        assert result.kill_chain_phase == "Actions on Objectives"

        assert seen["path"] == "/api/generate"
        assert seen["body"]["model"] == "qwen2.5:3b"
        assert seen["body"]["stream"] is False
        assert seen["body"]["options"] == {"temperature": 0.3, "num_predict": 800}
        assert "=== THREAT INTELLIGENCE SUMMARY ===" in seen["body"]["prompt"]

    @pytest.mark.asyncio
    async def test_partial_fields_filled_by_heuristics(self, ctx):
        """Missing fields and an invalid risk are replaced individually."""
        raw = json.dumps({"summary": "Model summary of SSH exposure.", "risk": "extreme"})
        orchestrator, client = _orchestrator(_respond(raw))

        with capture_logs() as logs:
            async with client:
                result = await orchestrator.enrich(ctx)

        assert result.provenance == "model"
        assert result.summary == "Model summary of SSH exposure."
        assert result.risk_level_guess == "critical"
        assert list(result.findings) == heuristics.default_findings(ctx)
        assert list(result.recommendations) == heuristics.default_recommendations("critical")
        complete = [e for e in logs if e["event"] == "enrichment_complete"]
        assert complete[0]["heuristic_fields"] == ["findings", "recommendations", "risk"]

    @pytest.mark.asyncio
    async def test_server_error_falls_back(self, ctx):
        orchestrator, client = _orchestrator(lambda request: httpx.Response(500, text="boom"))

        with capture_logs() as logs:
            async with client:
                result = await orchestrator.enrich(ctx)

        assert result == heuristic_result(ctx)
        assert result.provenance == "heuristic"
        fallback = [e for e in logs if e["event"] == "enrichment_fallback"]
        assert fallback[0]["reason"] == "http_500"
        assert fallback[0]["log_level"] == "warning"

    @pytest.mark.asyncio
    async def test_timeout_falls_back_deterministically(self, ctx):
        """A hanging endpoint yields identical heuristic results on every run."""
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"response": MODEL_JSON})

        orchestrator, client = _orchestrator(slow, timeout_s=0.05)
        with capture_logs() as logs:
            async with client:
                first = await orchestrator.enrich(ctx)
                second = await orchestrator.enrich(ctx)

        assert first == second == heuristic_result(ctx)
        reasons = [e["reason"] for e in logs if e["event"] == "enrichment_fallback"]
        assert reasons == ["timeout", "timeout"]

    @pytest.mark.asyncio
    async def test_network_error_falls_back(self, ctx):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        orchestrator, client = _orchestrator(refuse)
        with capture_logs() as logs:
            async with client:
                result = await orchestrator.enrich(ctx)

        assert result.provenance == "heuristic"
        assert logs[0]["reason"].startswith("network_error")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handler,reason", [
        (_respond("   "), "bad_response"),
        (lambda request: httpx.Response(200, text="not json"), "bad_response"),
        (_respond("I cannot help with that."), "unparseable"),
    ])
    async def test_unusable_bodies_fall_back(self, ctx, handler, reason):
        orchestrator, client = _orchestrator(handler)
        with capture_logs() as logs:
            async with client:
                result = await orchestrator.enrich(ctx)

        assert result.provenance == "heuristic"
        assert logs[0]["reason"].startswith(reason)

    @pytest.mark.asyncio
    async def test_no_client_is_heuristic(self, ctx):
        with capture_logs() as logs:
            result = await EnrichmentOrchestrator().enrich(ctx)
        assert result.model == "heuristic"
        assert result.kill_chain_phase == "Exploitation"
        assert logs[0]["reason"] == "no_client"

    @pytest.mark.asyncio
    async def test_from_config(self, ctx):
        """Endpoint and model come from config; trailing slash tolerated."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"response": MODEL_JSON})

        config = PipelineConfig(enrichment_endpoint="http://llm.test/", enrichment_model="llama3:8b")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = EnrichmentOrchestrator.from_config(config, client=client)
            result = await orchestrator.enrich(ctx)

        assert seen["url"] == "http://llm.test/api/generate"
        assert result.model == "llama3:8b"

    def test_result_to_dict(self, ctx):
        data = heuristic_result(ctx).to_dict()
        assert data["provenance"] == "heuristic"
        assert data["riskLevelGuess"] == "critical"
        assert isinstance(data["findings"], list)
        assert set(data) == {
            "summary", "findings", "recommendations", "riskLevelGuess",
            "model", "provenance", "killChainPhase",
        }
