"""Indicator and threat-signal extraction from raw source payloads.

Deterministic: the output depends only on the payload and the extractor's
reference time (used for the CVE-year severity default and as the fallback
"first seen" stamp). Missing, empty or malformed payloads yield an empty
Extraction rather than an error.

Infrastructure payload (scan results):
    {"hosts": [{"ip": str, "port": int, "product": str, "hostnames": [str],
                "vulns": [str] | {cve: {"cvss": float}}, "timestamp": iso, "data": str}]}

Social payload:
    {"posts": [{"id": str, "text": str, "author": {"username": str},
                "metrics": {"likes": int, "reposts": int}, "createdAt": iso}]}
"""

import hashlib
import ipaddress
import re
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from cti.analysis.techniques import (
    KEYWORD_TECHNIQUES,
    PORT_TECHNIQUES,
    port_service,
)
from cti.core.logger import get_logger
from cti.core.models import (
    Indicator,
    IndicatorType,
    Severity,
    SourceName,
    TechniqueEvidence,
    ThreatSignal,
    dedupe_indicators,
    parse_timestamp,
    utc_now,
)

logger = get_logger(__name__)

CVE_PATTERN = re.compile(r"\bCVE-\d{4}-\d{4,}\b", re.IGNORECASE)
IPV4_PATTERN = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
DOMAIN_PATTERN = re.compile(
    r"\b(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,24}\b", re.IGNORECASE
)

# Hosts of the social platforms themselves and file extensions that look like TLDs
_IGNORED_DOMAINS = {"x.com", "twitter.com", "t.co", "pic.twitter.com", "nvd.nist.gov", "mitre.org"}
_FILE_SUFFIXES = {"js", "py", "sh", "exe", "dll", "md", "txt", "json", "yaml", "yml", "zip", "pdf", "ps1", "bat"}

PRODUCT_KEYS = [
    "apache", "nginx", "iis", "exchange", "citrix", "fortinet", "palo alto",
    "cisco", "mikrotik", "jenkins", "gitlab", "confluence", "jira", "openssh",
    "vmware", "ivanti", "moveit",
]

# Social keyword → threat category. Order decides the category of a post.
CATEGORY_KEYWORDS: "OrderedDict[str, List[str]]" = OrderedDict([
    ("ransomware", ["ransomware", "lockbit", "blackcat", "alphv", "clop", "akira",
                    "rhysida", "medusa", "bianlian", "conti", "revil"]),
    ("apt", ["apt28", "apt29", "lazarus", "sandworm", "cozy bear", "fancy bear",
             "nation-state", "scattered spider", "volt typhoon"]),
    ("phishing", ["phishing", "smishing", "credential harvesting"]),
    ("malware", ["malware", "botnet", "trojan", "infostealer", "stealer", "backdoor",
                 "emotet", "qakbot", "cobalt strike", "icedid"]),
    ("ddos", ["ddos"]),
    ("data_breach", ["data breach", "breach", "leaked", "data leak"]),
    ("vulnerability", ["vulnerability", "exploit", "exploited", "rce", "zero-day", "0day", "poc"]),
])

_CRITICAL_TERMS = ["zero-day", "0day", "0-day", "actively exploited", "exploited in the wild", "mass exploitation"]
_HIGH_TERMS = ["ransomware", "rce", "remote code execution", "data breach", "backdoor", "auth bypass"]


def _keyword_regex(keyword: str) -> "re.Pattern":
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])", re.IGNORECASE)


_CATEGORY_PATTERNS = {
    cat: [(kw, _keyword_regex(kw)) for kw in kws] for cat, kws in CATEGORY_KEYWORDS.items()
}
_PRODUCT_PATTERNS = [(p, _keyword_regex(p)) for p in PRODUCT_KEYS]
_SERVICE_PATTERNS = [(svc, _keyword_regex(svc)) for svc in ("ssh", "rdp", "smb", "telnet", "ftp", "redis", "mongodb", "elasticsearch", "mysql", "postgres", "docker", "kubernetes")]


@dataclass(frozen=True)
class SocialExcerpt:
    author: str
    text: str
    url: str
    engagement: int
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "author": self.author,
            "text": self.text,
            "url": self.url,
            "engagement": self.engagement,
        }


@dataclass
class Extraction:
    source: SourceName
    indicators: List[Indicator] = field(default_factory=list)
    signals: List[ThreatSignal] = field(default_factory=list)
    techniques: List[TechniqueEvidence] = field(default_factory=list)
    excerpts: List[SocialExcerpt] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def extract_cves(text: str) -> List[str]:
    """All CVE ids in text, uppercased, de-duplicated, in order of appearance."""
    if not text:
        return []
    seen: "OrderedDict[str, None]" = OrderedDict()
    for match in CVE_PATTERN.findall(text):
        seen[match.upper()] = None
    return list(seen)


def extract_ips(text: str) -> List[str]:
    result = []
    for candidate in IPV4_PATTERN.findall(text or ""):
        try:
            ipaddress.IPv4Address(candidate)
        except ValueError:
            continue
        if candidate not in result:
            result.append(candidate)
    return result


def extract_domains(text: str) -> List[str]:
    refanged = (text or "").replace("[.]", ".").replace("(.)", ".")
    result = []
    for match in DOMAIN_PATTERN.findall(refanged):
        domain = match.lower().rstrip(".")
        if domain in _IGNORED_DOMAINS or domain.rsplit(".", 1)[-1] in _FILE_SUFFIXES:
            continue
        if IPV4_PATTERN.fullmatch(domain) or CVE_PATTERN.fullmatch(domain):
            continue
        if domain not in result:
            result.append(domain)
    return result


def cve_severity_from_year(cve: str, reference_year: int) -> Severity:
    """
    Conservative default for a bare CVE id: the newer the CVE year, the higher
    the default. Not a scoring system; only used when no CVSS/severity is supplied.
    """
    match = re.match(r"CVE-(\d{4})-", cve.upper())
    if match:
        year = int(match.group(1))
        if year >= reference_year - 1:
            return Severity.CRITICAL
        if year >= reference_year - 3:
            return Severity.HIGH
    return Severity.MEDIUM


def severity_from_cvss(score) -> Optional[Severity]:
    try:
        value = float(score)
    except (TypeError, ValueError):
        return None
    if value >= 9.0:
        return Severity.CRITICAL
    if value >= 7.0:
        return Severity.HIGH
    if value >= 4.0:
        return Severity.MEDIUM
    if value > 0:
        return Severity.LOW
    return Severity.INFO


def _coerce_severity(value) -> Optional[Severity]:
    if isinstance(value, Severity):
        return value
    if isinstance(value, str):
        try:
            return Severity(value.strip().lower())
        except ValueError:
            return None
    return None


def max_severity(severities: Iterable[Severity]) -> Severity:
    items = list(severities)
    if not items:
        return Severity.INFO
    return min(items, key=lambda s: s.rank)


def engagement_of(post: dict) -> int:
    """likes + reposts, accepting the common counter spellings."""
    metrics = post.get("metrics") or post.get("public_metrics") or {}
    if not isinstance(metrics, dict):
        return 0
    likes = metrics.get("likes", metrics.get("like_count", 0)) or 0
    reposts = metrics.get("reposts", metrics.get("retweets", metrics.get("retweet_count", 0))) or 0
    try:
        return int(likes) + int(reposts)
    except (TypeError, ValueError):
        return 0


def author_of(post: dict) -> str:
    author = post.get("author")
    if isinstance(author, dict):
        return str(author.get("username") or author.get("name") or "unknown")
    if isinstance(author, str) and author:
        return author
    return "unknown"


def _stable_id(prefix: str, *parts: str) -> str:
    digest = hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()[:10]
    return f"{prefix}-{digest}"


def _latest(timestamps: Iterable[Optional[datetime]]) -> Optional[datetime]:
    present = [t for t in timestamps if t is not None]
    return max(present) if present else None


def _matches(patterns, text: str) -> List[str]:
    return [kw for kw, rx in patterns if rx.search(text)]


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class IndicatorExtractor:
    """
    Maps a raw per-source payload to indicators, threat signals, technique
    evidence and (for social) engagement-ranked excerpts.
    """

    MAX_EXCERPTS = 10
    EXCERPT_CHARS = 200

    def __init__(self, reference_time: Optional[datetime] = None):
        self._reference_time = reference_time or utc_now()

    @property
    def reference_year(self) -> int:
        return self._reference_time.year

    def extract(self, source: SourceName, payload: Optional[dict]) -> Extraction:
        if not isinstance(payload, dict) or not payload:
            return Extraction(source=source)
        if source == SourceName.INFRASTRUCTURE:
            result = self.extract_infrastructure(payload)
        elif source == SourceName.SOCIAL:
            result = self.extract_social(payload)
        else:
            return Extraction(source=source)
        logger.info(
            "extraction_complete",
            source=source.value,
            indicators=len(result.indicators),
            signals=len(result.signals),
            techniques=len(result.techniques),
        )
        return result

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------

    def extract_infrastructure(self, payload: dict) -> Extraction:
        source = SourceName.INFRASTRUCTURE
        hosts = payload.get("hosts") or payload.get("matches") or []
        if not isinstance(hosts, list):
            return Extraction(source=source)
        fallback_ts = parse_timestamp(payload.get("scrapedAt") or payload.get("timestamp"))

        indicators: List[Indicator] = []
        techniques: List[TechniqueEvidence] = []
        seen_techniques: Set[str] = set()

        # cve -> accumulated observations
        cve_hosts: Dict[str, List[str]] = OrderedDict()
        cve_severities: Dict[str, List[Severity]] = {}
        cve_labels: Dict[str, Set[str]] = {}
        cve_times: Dict[str, List[Optional[datetime]]] = {}
        # service -> accumulated observations
        port_hosts: Dict[int, List[str]] = OrderedDict()
        port_labels: Dict[int, Set[str]] = {}
        port_times: Dict[int, List[Optional[datetime]]] = {}

        for host in hosts:
            if not isinstance(host, dict):
                continue
            ip = str(host.get("ip") or host.get("ip_str") or "").strip()
            port = _as_int(host.get("port"))
            ts = parse_timestamp(host.get("timestamp")) or fallback_ts
            seen_at = ts or self._reference_time
            product = str(host.get("product") or "")
            products = _matches(_PRODUCT_PATTERNS, product)
            svc = port_service(port)

            if ip:
                indicators.append(Indicator(IndicatorType.IP, ip, source, seen_at))
            for name in _as_list(host.get("hostnames")) + _as_list(host.get("domains")):
                domain = str(name).strip().lower()
                if domain:
                    indicators.append(Indicator(IndicatorType.DOMAIN, domain, source, seen_at))
            for key in products:
                indicators.append(Indicator(IndicatorType.KEYWORD, key, source, seen_at))

            host_labels = set(products)
            if svc is not None:
                host_labels.add(svc.service)

            # Vulnerabilities: authoritative severity where supplied, banner CVEs otherwise
            vulns = host.get("vulns") or []
            authoritative: Dict[str, Optional[Severity]] = OrderedDict()
            if isinstance(vulns, dict):
                for cve_id, info in vulns.items():
                    sev = None
                    if isinstance(info, dict):
                        sev = _coerce_severity(info.get("severity")) or severity_from_cvss(info.get("cvss"))
                    for cve in extract_cves(str(cve_id)):
                        authoritative[cve] = sev
            else:
                for cve_id in _as_list(vulns):
                    for cve in extract_cves(str(cve_id)):
                        authoritative.setdefault(cve, None)
            for cve in extract_cves(str(host.get("data") or "")):
                authoritative.setdefault(cve, None)

            for cve, sev in authoritative.items():
                indicators.append(Indicator(IndicatorType.CVE, cve, source, seen_at))
                cve_hosts.setdefault(cve, []).append(f"{ip}:{port}" if port is not None else ip)
                cve_severities.setdefault(cve, []).append(
                    sev or cve_severity_from_year(cve, self.reference_year)
                )
                cve_labels.setdefault(cve, set()).update(host_labels)
                cve_times.setdefault(cve, []).append(ts)

            if svc is not None:
                port_hosts.setdefault(port, []).append(ip)
                port_labels.setdefault(port, set()).update(host_labels)
                port_times.setdefault(port, []).append(ts)

                tech = PORT_TECHNIQUES.get(port)
                if tech is not None and tech.technique_id not in seen_techniques:
                    seen_techniques.add(tech.technique_id)
                    techniques.append(TechniqueEvidence(
                        technique_id=tech.technique_id,
                        name=tech.name,
                        tactic=tech.tactic,
                        evidence=f"{svc.display} exposed on port {port} ({ip or 'unknown host'})",
                    ))

        signals: List[ThreatSignal] = []
        for cve, where in cve_hosts.items():
            count = len(where)
            signals.append(ThreatSignal(
                id=f"cve-{cve.lower()}",
                title=f"{cve} observed on {count} exposed host{'s' if count != 1 else ''}",
                severity=max_severity(cve_severities[cve]),
                category="vulnerability",
                sources=frozenset({source}),
                timestamp=_latest(cve_times[cve]),
                labels=frozenset({cve} | cve_labels[cve]),
                sample=", ".join(where[:3]),
            ))
        for port, where in port_hosts.items():
            svc = port_service(port)
            count = len(where)
            signals.append(ThreatSignal(
                id=f"exposure-{svc.service}",
                title=f"{svc.display} ({svc.exposure}) exposed on {count} host{'s' if count != 1 else ''}",
                severity=Severity(svc.severity),
                category="infrastructure",
                sources=frozenset({source}),
                timestamp=_latest(port_times[port]),
                labels=frozenset({svc.service} | port_labels[port]),
                sample=", ".join(w for w in where[:3] if w),
            ))

        return Extraction(
            source=source,
            indicators=dedupe_indicators(indicators),
            signals=signals,
            techniques=techniques,
        )

    # ------------------------------------------------------------------
    # Social
    # ------------------------------------------------------------------

    def extract_social(self, payload: dict) -> Extraction:
        source = SourceName.SOCIAL
        posts = payload.get("posts") or []
        if not isinstance(posts, list):
            return Extraction(source=source)

        indicators: List[Indicator] = []
        techniques: List[TechniqueEvidence] = []
        seen_techniques: Set[str] = set()
        signals: List[ThreatSignal] = []
        excerpts: List[SocialExcerpt] = []

        # cve -> [(post text, engagement, timestamp, labels, keyword severity)]
        cve_mentions: Dict[str, List[Tuple[str, int, Optional[datetime], Set[str], Severity]]] = OrderedDict()

        for post in posts:
            if not isinstance(post, dict):
                continue
            text = str(post.get("text") or "").strip()
            if not text:
                continue
            ts = parse_timestamp(post.get("createdAt") or post.get("created_at"))
            seen_at = ts or self._reference_time
            engagement = engagement_of(post)
            author = author_of(post)
            post_id = str(post.get("id") or "")

            excerpts.append(SocialExcerpt(
                author=f"@{author}",
                text=text[: self.EXCERPT_CHARS],
                url=f"https://x.com/{author}/status/{post_id}" if post_id else "",
                engagement=engagement,
                timestamp=ts,
            ))

            cves = extract_cves(text)
            categories: List[str] = []
            keywords: List[str] = []
            for cat, patterns in _CATEGORY_PATTERNS.items():
                hits = _matches(patterns, text)
                if hits:
                    categories.append(cat)
                    keywords.extend(hits)
            products = _matches(_PRODUCT_PATTERNS, text)
            services = _matches(_SERVICE_PATTERNS, text)

            for cve in cves:
                indicators.append(Indicator(IndicatorType.CVE, cve, source, seen_at))
            for ip in extract_ips(text):
                indicators.append(Indicator(IndicatorType.IP, ip, source, seen_at))
            for domain in extract_domains(text):
                indicators.append(Indicator(IndicatorType.DOMAIN, domain, source, seen_at))
            for kw in keywords + products + services:
                indicators.append(Indicator(IndicatorType.KEYWORD, kw.lower(), source, seen_at))

            lowered = text.lower()
            for keyword, tech in KEYWORD_TECHNIQUES.items():
                if keyword in lowered and tech.technique_id not in seen_techniques:
                    seen_techniques.add(tech.technique_id)
                    techniques.append(TechniqueEvidence(
                        technique_id=tech.technique_id,
                        name=tech.name,
                        tactic=tech.tactic,
                        evidence=f'Mentioned in social post by @{author}: "{text[:50]}..."',
                    ))

            labels = {k.lower() for k in keywords + products + services}
            keyword_sev = self._keyword_severity(lowered, categories)

            if cves:
                for cve in cves:
                    cve_mentions.setdefault(cve, []).append((text, engagement, ts, labels, keyword_sev))
                continue
            if not categories:
                continue

            signals.append(ThreatSignal(
                id=f"post-{post_id}" if post_id else _stable_id("post", text),
                title=_title_from_text(text),
                severity=keyword_sev,
                category=categories[0],
                sources=frozenset({source}),
                timestamp=ts,
                labels=frozenset(labels),
                sample=text[: self.EXCERPT_CHARS],
                engagement=engagement,
            ))

        for cve, mentions in cve_mentions.items():
            count = len(mentions)
            top = max(mentions, key=lambda m: m[1])
            labels: Set[str] = {cve}
            for m in mentions:
                labels |= m[3]
            signals.append(ThreatSignal(
                id=f"cve-{cve.lower()}",
                title=f"{cve} discussed in {count} social post{'s' if count != 1 else ''}",
                severity=max_severity(
                    [cve_severity_from_year(cve, self.reference_year)] + [m[4] for m in mentions]
                ),
                category="vulnerability",
                sources=frozenset({source}),
                timestamp=_latest(m[2] for m in mentions),
                labels=frozenset(labels),
                sample=top[0][: self.EXCERPT_CHARS],
                engagement=sum(m[1] for m in mentions),
            ))

        excerpts.sort(key=lambda e: e.engagement, reverse=True)
        return Extraction(
            source=source,
            indicators=dedupe_indicators(indicators),
            signals=signals,
            techniques=techniques,
            excerpts=excerpts[: self.MAX_EXCERPTS],
        )

    @staticmethod
    def _keyword_severity(lowered: str, categories: List[str]) -> Severity:
        if any(term in lowered for term in _CRITICAL_TERMS):
            return Severity.CRITICAL
        if any(term in lowered for term in _HIGH_TERMS):
            return Severity.HIGH
        if categories:
            return Severity.MEDIUM
        return Severity.LOW


# ---------------------------------------------------------------------------
# Aggregation over extracted signals
# ---------------------------------------------------------------------------

def merge_signals(signals: Iterable[ThreatSignal]) -> List[ThreatSignal]:
    """
    Collapse signals sharing an id (e.g. the same CVE seen by both sources)
    into one, with the union of sources and labels and the highest severity.
    Sorted most severe first, newest first within a severity.
    """
    merged: "OrderedDict[str, ThreatSignal]" = OrderedDict()
    for sig in signals:
        prev = merged.get(sig.id)
        if prev is None:
            merged[sig.id] = sig
            continue
        merged[sig.id] = ThreatSignal(
            id=prev.id,
            title=prev.title,
            severity=max_severity([prev.severity, sig.severity]),
            category=prev.category,
            sources=prev.sources | sig.sources,
            timestamp=_latest([prev.timestamp, sig.timestamp]),
            labels=prev.labels | sig.labels,
            sample=prev.sample or sig.sample,
            engagement=prev.engagement + sig.engagement,
        )
    return sorted(
        merged.values(),
        key=lambda s: (s.severity.rank, -(s.timestamp.timestamp() if s.timestamp else 0.0)),
    )


def summarize(signals: List[ThreatSignal]) -> dict:
    """{totalThreats, bySeverity, byCategory, bySource} over the merged signal list."""
    by_severity = {sev.value: 0 for sev in Severity}
    by_category: Counter = Counter()
    by_source: Counter = Counter()
    for sig in signals:
        by_severity[sig.severity.value] += 1
        by_category[sig.category] += 1
        for src in sig.sources:
            by_source[src.value] += 1
    return {
        "totalThreats": len(signals),
        "bySeverity": by_severity,
        "byCategory": dict(by_category.most_common()),
        "bySource": {k: v for k, v in sorted(by_source.items()) if v > 0},
    }


def _title_from_text(text: str, limit: int = 80) -> str:
    first_line = text.splitlines()[0] if text else ""
    return first_line if len(first_line) <= limit else first_line[: limit - 3] + "..."


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]
