"""Cross-source cyber threat intelligence (CTI) correlation core.

Provides:
- Checksum + TTL cache for raw source payloads
- Rate-limited per-source fetchers that never raise
- CVE / IP / domain / keyword indicator extraction with ATT&CK technique hints
- Infrastructure-vs-social correlation with temporal precedence
- Additive risk score, level, trend and confidence
- Narrative enrichment through a text-generation endpoint with deterministic fallback

Usage:
    from cti.pipeline import ThreatPipeline
    result = await ThreatPipeline([InfrastructureSource(loader), SocialSource(loader)]).run()
"""

__version__ = "0.1.0"
