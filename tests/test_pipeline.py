"""End-to-end tests for the pipeline, artifact writers and CLI entry point."""
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from structlog.testing import capture_logs

from cti.analysis.risk import RiskLevel, Trend
from cti.dashboard.json_export import (
    DASHBOARD_FILENAME,
    ENRICHMENT_FILENAME,
    PROCESSED_FILENAME,
    write_artifacts,
)
from cti.enrichment.orchestrator import EnrichmentOrchestrator, GenerationClient
from cti.pipeline import ThreatPipeline
from cti.sources.fetcher import InfrastructureSource, SocialSource


@pytest.fixture
def sources(infra_payload, social_payload):
    return [
        InfrastructureSource(AsyncMock(return_value=infra_payload)),
        SocialSource(AsyncMock(return_value=social_payload)),
    ]


def _pipeline(sources, config, now, enricher=None):
    return ThreatPipeline(
        sources,
        config=config,
        enricher=enricher or EnrichmentOrchestrator(),
        clock=lambda: now,
    )


class TestPipelineRun:
    """Full runs over the fixture payloads."""

    @pytest.mark.asyncio
    async def test_full_run(self, sources, pipeline_config, now):
        """Both sources succeed; shared labels correlate; risk is critical."""
        with capture_logs() as logs:
            result = await _pipeline(sources, pipeline_config, now).run()

        assert result.sources_ok == {"infrastructure": True, "social": True}
        assert result.summary["totalThreats"] == 6
        assert [s.label for s in result.correlation.signals] == ["rdp", "ssh", "CVE-2024-6387"]
        assert result.correlation.dominant_pattern == "infra-first"

        assert result.risk.score == 100
        assert result.risk.level is RiskLevel.CRITICAL
        assert result.risk.trend is Trend.DECREASING
        assert result.risk.confidence == 80

        assert result.enrichment.provenance == "heuristic"
        assert result.enrichment.kill_chain_phase == "Exploitation"

        complete = [e for e in logs if e["event"] == "pipeline_complete"]
        assert complete[0]["threats"] == 6
        assert complete[0]["risk_level"] == "critical"

    @pytest.mark.asyncio
    async def test_processed_artifact(self, sources, pipeline_config, now):
        result = await _pipeline(sources, pipeline_config, now).run()
        processed = result.processed

        assert processed["generatedAt"] == "2025-06-01T12:00:00Z"
        assert len(processed["threats"]) == 6
        assert processed["threats"][0]["severity"] == "critical"
        assert {t["id"] for t in processed["techniques"]} >= {"T1021.004", "T1021.001", "T1486"}
        assert [s["source"] for s in processed["sources"]] == ["infrastructure", "social"]
        assert processed["correlation"]["summary"] == {"correlatedSignals": 3}

    @pytest.mark.asyncio
    async def test_dashboard_artifact(self, sources, pipeline_config, now):
        result = await _pipeline(sources, pipeline_config, now).run()
        dashboard = result.dashboard

        assert dashboard["status"] == {
            "riskLevel": "critical", "riskScore": 100, "trend": "decreasing", "confidenceLevel": 80,
        }
        assert dashboard["meta"]["validUntil"] == "2025-06-01T18:00:00Z"
        assert dashboard["executive"]["headline"] == "Critical Threat Activity Detected"
        assert dashboard["executive"]["summary"].startswith(
            "Analysis identified 6 threat signals across social and technical intelligence sources."
        )
        assert dashboard["indicators"]["cves"] == ["CVE-2024-6387", "CVE-2019-0708"]
        assert dashboard["analysis"]["provenance"] == "heuristic"
        assert {s["name"] for s in dashboard["sources"]} == {
            "Technical Reconnaissance", "Social Intelligence",
        }

    @pytest.mark.asyncio
    async def test_model_enrichment_raises_confidence(self, sources, pipeline_config, now):
        """A model-produced narrative adds confidence and feeds the executive summary."""
        reply = json.dumps({
            "summary": "Exposed SSH and RDP services coincide with active exploitation chatter.",
            "findings": ["regreSSHion discussed publicly"],
            "risk": "critical",
            "recommendations": ["Patch OpenSSH"],
        })
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"response": reply}))

        async with httpx.AsyncClient(transport=transport) as http:
            enricher = EnrichmentOrchestrator(GenerationClient("http://llm.test", "qwen2.5:3b", client=http))
            result = await _pipeline(sources, pipeline_config, now, enricher=enricher).run()

        assert result.enrichment.provenance == "model"
        assert result.risk.confidence == 90
        assert result.dashboard["executive"]["summary"].startswith("Exposed SSH and RDP services")
        assert result.dashboard["executive"]["keyFindings"] == ["regreSSHion discussed publicly"]
        assert result.dashboard["analysis"]["model"] == "qwen2.5:3b"


class TestDegradedRuns:
    """The run always completes with well-formed output."""

    @pytest.mark.asyncio
    async def test_one_source_fails(self, infra_payload, pipeline_config, now):
        """A failing source contributes nothing; nothing correlates."""
        sources = [
            InfrastructureSource(AsyncMock(return_value=infra_payload)),
            SocialSource(AsyncMock(side_effect=ConnectionError("scraper down"))),
        ]
        result = await _pipeline(sources, pipeline_config, now).run()

        assert result.sources_ok == {"infrastructure": True, "social": False}
        assert result.summary["totalThreats"] == 5
        assert result.correlation.signals == []
        assert result.correlation.dominant_pattern == "insufficient-data"
        assert result.processed["sources"][1]["error"] == "scraper down"

    @pytest.mark.asyncio
    async def test_empty_payloads(self, pipeline_config, now):
        sources = [
            InfrastructureSource(AsyncMock(return_value={})),
            SocialSource(AsyncMock(return_value={"posts": []})),
        ]
        result = await _pipeline(sources, pipeline_config, now).run()

        assert result.summary["totalThreats"] == 0
        assert result.risk.score == 0
        assert result.risk.level is RiskLevel.LOW
        assert result.enrichment.summary == "No threats detected in the collected data."
        assert result.dashboard["executive"]["headline"] == "No Active Threats Detected"

    @pytest.mark.asyncio
    async def test_no_sources(self, pipeline_config, now):
        result = await _pipeline([], pipeline_config, now).run()
        assert result.fetch_results == []
        assert result.dashboard["metrics"]["totalSignals"] == 0

    @pytest.mark.asyncio
    async def test_disabled_source(self, sources, pipeline_config, now):
        from cti.core.models import SourceName

        pipeline_config.source_config(SourceName.SOCIAL).enabled = False
        result = await _pipeline(sources, pipeline_config, now).run()

        social = [r for r in result.fetch_results if r.source is SourceName.SOCIAL][0]
        assert social.skipped
        assert result.correlation.signals == []

    @pytest.mark.asyncio
    async def test_second_run_uses_cache(self, infra_payload, pipeline_config, now):
        loader = AsyncMock(return_value=infra_payload)
        await _pipeline([InfrastructureSource(loader)], pipeline_config, now).run()
        result = await _pipeline([InfrastructureSource(loader)], pipeline_config, now).run()

        assert loader.await_count == 1
        assert result.fetch_results[0].from_cache
        assert result.summary["totalThreats"] == 5

    @pytest.mark.asyncio
    async def test_use_cache_false_still_writes(self, infra_payload, pipeline_config, now, tmp_path):
        """USE_CACHE=false skips the read but fresh payloads are still cached."""
        pipeline_config.use_cache = False
        loader = AsyncMock(return_value=infra_payload)
        await _pipeline([InfrastructureSource(loader)], pipeline_config, now).run()
        result = await _pipeline([InfrastructureSource(loader)], pipeline_config, now).run()

        assert loader.await_count == 2
        assert not result.fetch_results[0].from_cache
        cache_dir = tmp_path / "cache"
        assert (cache_dir / "infrastructure-cache.json").exists()
        assert (cache_dir / "infrastructure-cache.meta.json").exists()


class TestArtifacts:
    """Three JSON files per run."""

    @pytest.mark.asyncio
    async def test_write_artifacts(self, sources, pipeline_config, now, tmp_path):
        result = await _pipeline(sources, pipeline_config, now).run()
        written = write_artifacts(result, tmp_path / "out")

        assert set(written) == {PROCESSED_FILENAME, ENRICHMENT_FILENAME, DASHBOARD_FILENAME}
        processed = json.loads((tmp_path / "out" / PROCESSED_FILENAME).read_text())
        enrichment = json.loads((tmp_path / "out" / ENRICHMENT_FILENAME).read_text())
        dashboard = json.loads((tmp_path / "out" / DASHBOARD_FILENAME).read_text())

        assert len(processed["threats"]) == 6
        assert enrichment["provenance"] == "heuristic"
        assert enrichment["riskLevelGuess"] == "critical"
        assert dashboard["meta"]["version"] == "2.0.0"

    @pytest.mark.asyncio
    async def test_write_failure_is_logged(self, sources, pipeline_config, now, tmp_path):
        result = await _pipeline(sources, pipeline_config, now).run()
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with capture_logs() as logs:
            written = write_artifacts(result, blocker)

        assert written == {}
        assert [e["event"] for e in logs].count("json_export_error") == 3


class TestCli:
    """python -m cti.main"""

    @pytest.mark.asyncio
    async def test_main_writes_artifacts(self, monkeypatch, tmp_path, pipeline_config,
                                         infra_payload, social_payload):
        import cti.main as cli

        infra_file = tmp_path / "shodan.json"
        social_file = tmp_path / "x-data.json"
        infra_file.write_text(json.dumps(infra_payload))
        social_file.write_text(json.dumps(social_payload))
        monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
        monkeypatch.setattr(cli, "get_config", lambda: pipeline_config)

        outdir = tmp_path / "out"
        code = await cli.main([
            "--infra-file", str(infra_file),
            "--social-file", str(social_file),
            "--no-llm", "--queries", "-o", str(outdir),
        ])

        assert code == 0
        assert (outdir / DASHBOARD_FILENAME).exists()
        assert (tmp_path / "cache" / "query-generator-cache.json").exists()

    def test_build_sources(self):
        from cti.main import build_sources, parse_args

        args = parse_args(["--infra-url", "https://scan.test/results", "--social-file", "posts.json"])
        names = [s.name.value for s in build_sources(args)]
        assert names == ["infrastructure", "social"]
        assert build_sources(parse_args([])) == []

    def test_query_generator_uses_enrichment_timeout(self, pipeline_config):
        from cti.main import build_query_generator

        pipeline_config.enrichment_timeout_s = 15.0
        generator = build_query_generator(pipeline_config)
        assert generator.timeout_s == 15.0
        assert generator.model_name == pipeline_config.enrichment_model
        assert build_query_generator(pipeline_config, use_model=False).model_name == "heuristic"
