"""Deterministic fallback analysis, computed only from EnrichmentContext."""

from typing import List

from cti.enrichment.context import EnrichmentContext

# Ordered: first matching phase wins
_KILL_CHAIN_PHASES = (
    ("Exploitation", ("exploit", "vulnerab", "cve-")),
    ("Delivery", ("malware", "payload", "phishing")),
    ("Command & Control", ("c2", "command and control", "beacon")),
    ("Actions on Objectives", ("exfil", "data theft", "ransom")),
)
DEFAULT_KILL_CHAIN_PHASE = "Reconnaissance"

_RECOMMENDATIONS = {
    "critical": [
        "Review critical threats immediately and patch affected systems",
        "Restrict exposed remote access services (SSH/RDP/SMB)",
        "Hunt for indicators of compromise across the estate",
    ],
    "high": [
        "Prioritize remediation of high-severity vulnerabilities",
        "Restrict exposed remote access services (SSH/RDP/SMB)",
        "Enable multi-factor authentication on remote access",
    ],
    "medium": [
        "Schedule patching for identified vulnerabilities",
        "Review network segmentation for exposed services",
    ],
    "low": [
        "Continue monitoring detected indicators",
    ],
}


def calculate_risk(ctx: EnrichmentContext) -> str:
    if ctx.critical > 0:
        return "critical"
    if ctx.high > 2:
        return "high"
    if ctx.high > 0 or ctx.medium > 5:
        return "medium"
    return "low"


def default_summary(ctx: EnrichmentContext) -> str:
    if ctx.total_threats == 0:
        return "No threats detected in the collected data."
    sources = ", ".join(ctx.sources) or "no sources"
    summary = (
        f"{ctx.total_threats} threats detected ({ctx.critical} critical, {ctx.high} high) "
        f"from {sources}. Main focus: {ctx.top_category}."
    )
    if ctx.correlated_signals:
        summary += (
            f" {ctx.correlated_signals} signals observed across sources, "
            f"dominant pattern {ctx.dominant_pattern}."
        )
    return summary


def default_findings(ctx: EnrichmentContext) -> List[str]:
    findings: List[str] = []
    if ctx.cves:
        findings.append(f"Known vulnerabilities referenced: {', '.join(ctx.cves)}")
    lateral = [name for _, name, tactic in ctx.techniques if tactic == "Lateral Movement"]
    if lateral:
        findings.append(f"Remote access services exposed to the internet ({', '.join(lateral)})")
    if ctx.correlated_signals:
        findings.append(
            f"{ctx.correlated_signals} threats corroborated by both infrastructure and social sources"
        )
    if ctx.excerpts:
        findings.append(f"{len(ctx.excerpts)} high-engagement social posts discuss current threats")
    if not findings:
        findings.append("No actionable indicators extracted in this collection window")
    return findings


def default_recommendations(risk_level: str) -> List[str]:
    return list(_RECOMMENDATIONS.get(risk_level, _RECOMMENDATIONS["low"]))


def guess_kill_chain_phase(text: str) -> str:
    lowered = (text or "").lower()
    for phase, needles in _KILL_CHAIN_PHASES:
        if any(n in lowered for n in needles):
            return phase
    return DEFAULT_KILL_CHAIN_PHASE
