"""JSON artifacts for the presentation layer.

processed-data.json  normalized threats, indicators, summary, correlation
enrichment.json      narrative enrichment with provenance
cti-dashboard.json   display-oriented view (risk banner, timeline, indicator lists)
"""

import json
import re
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cti.analysis.correlation import CorrelationReport
from cti.analysis.risk import RiskAssessment, RiskLevel
from cti.core.logger import get_logger
from cti.core.models import isoformat, utc_now
from cti.enrichment.orchestrator import EnrichmentResult

logger = get_logger(__name__)

DASHBOARD_VERSION = "2.0.0"
VALIDITY = timedelta(hours=6)

PROCESSED_FILENAME = "processed-data.json"
ENRICHMENT_FILENAME = "enrichment.json"
DASHBOARD_FILENAME = "cti-dashboard.json"

TIMELINE_SIZE = 8
MAX_CATEGORIES = 6
DISPLAY_LIMITS = {"cve": 10, "domain": 5, "ip": 5, "keyword": 8}

_IPV4 = re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")

_CATEGORY_NAMES = {
    "malware": "Malware",
    "ransomware": "Ransomware",
    "phishing": "Phishing",
    "ddos": "DDoS",
    "apt": "APT",
    "vulnerability": "Vulnerability",
    "data_breach": "Data Breach",
    "infrastructure": "Infrastructure",
    "other": "Other",
}

_SOURCE_NAMES = {
    "infrastructure": "Technical Reconnaissance",
    "social": "Social Intelligence",
}

_HEADLINES = {
    RiskLevel.CRITICAL: "Critical Threat Activity Detected",
    RiskLevel.ELEVATED: "Elevated Threat Landscape",
    RiskLevel.MODERATE: "Moderate Security Signals Observed",
    RiskLevel.LOW: "Baseline Threat Activity",
}

_ACTIONS = {
    RiskLevel.CRITICAL: [
        "Initiate incident response procedures",
        "Review and patch critical vulnerabilities immediately",
        "Increase monitoring on affected systems",
        "Brief security leadership on current threat status",
    ],
    RiskLevel.ELEVATED: [
        "Prioritize vulnerability remediation for high-severity items",
        "Review access controls and network segmentation",
        "Increase threat hunting activities",
    ],
    RiskLevel.MODERATE: [
        "Continue routine vulnerability management",
        "Monitor for escalation indicators",
        "Update threat intelligence feeds",
    ],
    RiskLevel.LOW: [
        "Maintain standard security operations",
        "Continue periodic threat assessments",
    ],
}


def _serialize(obj: Any) -> Any:
    """Recursively serialize model objects, dataclasses, enums and datetimes for JSON."""
    if hasattr(obj, "to_dict"):
        return _serialize(obj.to_dict())
    elif is_dataclass(obj) and not isinstance(obj, type):
        return {k: _serialize(v) for k, v in asdict(obj).items()}
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, datetime):
        return isoformat(obj)
    elif isinstance(obj, (list, tuple)):
        return [_serialize(i) for i in obj]
    elif isinstance(obj, (set, frozenset)):
        return sorted(_serialize(i) for i in obj)
    elif isinstance(obj, dict):
        return {(k.value if isinstance(k, Enum) else k): _serialize(v) for k, v in obj.items()}
    elif isinstance(obj, float) and (obj != obj):  # NaN
        return None
    return obj


def format_category(category: str) -> str:
    return _CATEGORY_NAMES.get(category.lower(), category)


def format_source(source: str) -> str:
    return _SOURCE_NAMES.get(source.lower(), source)


def sanitize_title(title: str, limit: int = 80) -> str:
    """Mask IPv4 addresses and cap length for public display."""
    return _IPV4.sub("[IP]", title or "")[:limit]


def _top_category(by_category: Dict[str, int]) -> Optional[str]:
    if not by_category:
        return None
    return sorted(by_category.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


# ---------------------------------------------------------------------------
# Display artifact
# ---------------------------------------------------------------------------

def display_indicators(indicators: List[dict]) -> Dict[str, List[str]]:
    result: Dict[str, List[str]] = {"cves": [], "domains": [], "ips": [], "keywords": []}
    keys = {"cve": "cves", "domain": "domains", "ip": "ips", "keyword": "keywords"}
    for ind in indicators:
        kind = ind.get("type")
        if kind not in keys:
            continue
        bucket = result[keys[kind]]
        if len(bucket) < DISPLAY_LIMITS[kind] and ind.get("value") not in bucket:
            bucket.append(ind.get("value"))
    return result


def _generated_summary(processed: dict, level: RiskLevel) -> str:
    threats = processed.get("threats") or []
    summary = processed.get("summary") or {}
    social = sum(1 for t in threats if "social" in (t.get("sources") or []))
    technical = sum(1 for t in threats if "infrastructure" in (t.get("sources") or []))
    top = _top_category(summary.get("byCategory") or {})

    if social and technical:
        text = (
            f"Analysis identified {summary.get('totalThreats', len(threats))} threat signals "
            "across social and technical intelligence sources. "
        )
        if top:
            text += (
                f"{format_category(top)} activity represents the dominant threat category "
                f"({summary['byCategory'][top]} signals). "
            )
        activity = "elevated" if level in (RiskLevel.CRITICAL, RiskLevel.ELEVATED) else "baseline"
        text += f"Social discussion and infrastructure observations indicate {activity} activity levels."
        return text
    if social:
        return (
            f"Social intelligence analysis detected {social} threat-related discussions. "
            "Claims require verification against technical indicators."
        )
    if technical:
        return (
            f"Technical reconnaissance identified {technical} infrastructure-related signals. "
            "Exposed services and vulnerabilities indicate potential attack surface."
        )
    return "Insufficient data for comprehensive threat assessment."


def _generated_findings(processed: dict) -> List[str]:
    summary = processed.get("summary") or {}
    findings: List[str] = []
    cves = sum(1 for i in processed.get("indicators") or [] if i.get("type") == "cve")
    if cves:
        findings.append(f"{cves} CVE reference{'s' if cves > 1 else ''} identified in collected intelligence")
    critical = (summary.get("bySeverity") or {}).get("critical", 0)
    if critical:
        findings.append(
            f"{critical} critical severity signal{'s' if critical > 1 else ''} require immediate attention"
        )
    top = _top_category(summary.get("byCategory") or {})
    if top:
        findings.append(f"{format_category(top)} represents primary threat vector")
    correlated = ((processed.get("correlation") or {}).get("summary") or {}).get("correlatedSignals", 0)
    if correlated:
        findings.append(f"{correlated} signals corroborated across infrastructure and social sources")
    return findings[:4] or ["No high-priority findings at this time"]


def _executive(processed: dict, risk: RiskAssessment, enrichment: Optional[EnrichmentResult]) -> dict:
    total = (processed.get("summary") or {}).get("totalThreats", 0)
    if total == 0:
        return {
            "headline": "No Active Threats Detected",
            "summary": "No significant threat activity was identified during this analysis period. "
                       "Continue monitoring for emerging threats.",
            "keyFindings": ["No critical vulnerabilities detected", "No active campaigns identified"],
            "recommendedActions": ["Maintain current security posture", "Continue routine monitoring"],
        }

    if enrichment is not None and enrichment.from_model and len(enrichment.summary) > 20:
        return {
            "headline": _HEADLINES[risk.level],
            "summary": enrichment.summary,
            "keyFindings": list(enrichment.findings[:4]) or _generated_findings(processed),
            "recommendedActions": list(enrichment.recommendations[:4]) or list(_ACTIONS[risk.level]),
        }

    return {
        "headline": _HEADLINES[risk.level],
        "summary": _generated_summary(processed, risk.level),
        "keyFindings": _generated_findings(processed),
        "recommendedActions": list(_ACTIONS[risk.level]),
    }


def build_dashboard(
    processed: dict,
    risk: RiskAssessment,
    correlation: Optional[CorrelationReport] = None,
    enrichment: Optional[EnrichmentResult] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Display-oriented artifact. ``processed`` is the normalized intermediate artifact."""
    now = now or utc_now()
    summary = processed.get("summary") or {}
    by_severity = summary.get("bySeverity") or {}
    total = summary.get("totalThreats", 0)

    categories = [
        {
            "name": format_category(name),
            "count": count,
            "percentage": round(count / total * 100) if total else 0,
        }
        for name, count in sorted(
            (summary.get("byCategory") or {}).items(), key=lambda kv: (-kv[1], kv[0])
        )
        if count > 0
    ][:MAX_CATEGORIES]

    timeline = [
        {
            "id": t["id"],
            "title": sanitize_title(t.get("title", "")),
            "severity": t.get("severity"),
            "category": format_category(t.get("category", "other")),
            "timestamp": t.get("timestamp"),
        }
        for t in (processed.get("threats") or [])[:TIMELINE_SIZE]
    ]

    sources = [
        {"name": format_source(name), "signalCount": count, "lastUpdate": isoformat(now)}
        for name, count in (summary.get("bySource") or {}).items()
        if count > 0
    ]

    return {
        "meta": {
            "version": DASHBOARD_VERSION,
            "generatedAt": isoformat(now),
            "validUntil": isoformat(now + VALIDITY),
        },
        "status": {
            "riskLevel": risk.level.value,
            "riskScore": risk.score,
            "trend": risk.trend.value,
            "confidenceLevel": risk.confidence,
        },
        "executive": _executive(processed, risk, enrichment),
        "metrics": {
            "totalSignals": total,
            "criticalCount": by_severity.get("critical", 0),
            "highCount": by_severity.get("high", 0),
            "mediumCount": by_severity.get("medium", 0),
            "lowCount": by_severity.get("low", 0),
            "categories": categories,
        },
        "timeline": timeline,
        "sources": sources,
        "indicators": display_indicators(processed.get("indicators") or []),
        "correlation": _serialize(correlation) if correlation else CorrelationReport([]).to_dict(),
        "analysis": {
            "killChainPhase": enrichment.kill_chain_phase if enrichment else None,
            "provenance": enrichment.provenance if enrichment else None,
            "model": enrichment.model if enrichment else None,
            "techniques": processed.get("techniques") or [],
        },
    }


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def write_json(path: Union[str, Path], data: Any) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(_serialize(data), f, indent=2, default=str)
    logger.debug("json_artifact_written", path=str(path))
    return path


def write_artifacts(result, output_dir: Union[str, Path]) -> Dict[str, Path]:
    """Write the three JSON artifacts of a PipelineResult. Returns name → path."""
    output_dir = Path(output_dir)
    written: Dict[str, Path] = {}
    for filename, data in (
        (PROCESSED_FILENAME, result.processed),
        (ENRICHMENT_FILENAME, result.enrichment),
        (DASHBOARD_FILENAME, result.dashboard),
    ):
        try:
            written[filename] = write_json(output_dir / filename, data)
        except (OSError, TypeError, ValueError) as e:
            logger.error("json_export_error", path=str(output_dir / filename), error=str(e))
    logger.info("artifacts_written", output_dir=str(output_dir), files=sorted(written))
    return written
