"""Scan-query suggestions derived from social chatter.

Reads the social payload, pulls out CVEs, ports, services, countries, malware
families and threat actors, and turns them into infrastructure search queries
(port/product/country filters). When a GenerationClient is available its JSON
array of suggestions is merged in front of the heuristic ones.

Results are memoised per calendar day in ``query-generator-cache.json``.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import httpx

from cti.analysis.extractor import author_of, engagement_of, extract_cves
from cti.core.logger import get_logger
from cti.core.models import isoformat, parse_timestamp, utc_now
from cti.enrichment.orchestrator import GenerationClient, GenerationError

logger = get_logger(__name__)

CACHE_FILENAME = "query-generator-cache.json"
MAX_QUERIES = 5
PRIORITIES = ("high", "medium", "low")

SERVICE_TO_QUERY: Dict[str, str] = {
    "ssh": "port:22",
    "rdp": "port:3389",
    "smb": "port:445",
    "ftp": "port:21",
    "telnet": "port:23",
    "mysql": "port:3306",
    "postgres": "port:5432",
    "redis": "port:6379",
    "mongodb": "port:27017",
    "elasticsearch": "port:9200",
    "apache": "product:apache",
    "nginx": "product:nginx",
    "iis": "product:iis",
    "exchange": "product:exchange",
    "citrix": "product:citrix",
    "fortinet": "product:fortinet",
    "palo alto": 'product:"palo alto"',
    "cisco": "product:cisco",
    "mikrotik": "product:mikrotik",
    "kubernetes": "port:6443",
    "docker": "port:2375,2376",
    "jenkins": "product:jenkins",
    "gitlab": "product:gitlab",
    "confluence": "product:confluence",
    "jira": "product:jira",
}

COUNTRY_TO_CODE: Dict[str, str] = {
    "united states": "US",
    "usa": "US",
    "china": "CN",
    "russia": "RU",
    "iran": "IR",
    "north korea": "KP",
    "germany": "DE",
    "uk": "GB",
    "united kingdom": "GB",
    "france": "FR",
    "japan": "JP",
    "india": "IN",
    "brazil": "BR",
    "mexico": "MX",
    "spain": "ES",
}

MALWARE_FAMILIES = [
    "lockbit", "blackcat", "alphv", "clop", "royal", "akira", "rhysida",
    "medusa", "bianlian", "hive", "conti", "revil", "sodinokibi", "emotet",
    "qakbot", "cobalt strike", "trickbot", "icedid", "bumblebee",
]

THREAT_ACTORS = [
    "lazarus", "apt28", "apt29", "cozy bear", "fancy bear", "sandworm",
    "hafnium", "nobelium", "scattered spider", "lapsus", "fin7", "fin8",
]

_PORT_MENTION = re.compile(r"\bport[:\s]+(\d{1,5})\b", re.IGNORECASE)

_PROMPT_TEMPLATE = """You are a CTI analyst. Suggest infrastructure search queries based on these social media posts.

Already extracted:
- CVEs: {cves}
- Ports: {ports}
- Services: {services}
- Malware: {malware}
- Threat actors: {actors}

Posts (top by engagement):
{posts}

Query syntax: port:22 | port:22,3389 | country:US | product:apache | os:windows, combined with spaces.
Do not use the vuln: filter.

Respond with a JSON array only:
[{{"query": "...", "rationale": "...", "priority": "high|medium|low", "tags": ["..."]}}]
Suggest 3-5 queries."""


@dataclass(frozen=True)
class QuerySuggestion:
    query: str
    rationale: str
    priority: str = "medium"
    tags: tuple = ()

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "rationale": self.rationale,
            "priority": self.priority,
            "tags": list(self.tags),
        }


@dataclass
class SocialIndicators:
    cves: List[str] = field(default_factory=list)
    ports: List[int] = field(default_factory=list)
    services: List[str] = field(default_factory=list)
    countries: List[str] = field(default_factory=list)
    malware_families: List[str] = field(default_factory=list)
    threat_actors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "cves": self.cves,
            "ports": self.ports,
            "services": self.services,
            "countries": self.countries,
            "malwareFamilies": self.malware_families,
            "threatActors": self.threat_actors,
        }


@dataclass
class QueryGeneratorResult:
    timestamp: datetime
    model: str
    source_posts_analyzed: int
    queries: List[QuerySuggestion]
    indicators: SocialIndicators
    from_cache: bool = False

    def to_dict(self) -> dict:
        return {
            "timestamp": isoformat(self.timestamp),
            "model": self.model,
            "sourcePostsAnalyzed": self.source_posts_analyzed,
            "queries": [q.to_dict() for q in self.queries],
            "extractedIndicators": self.indicators.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueryGeneratorResult":
        ind = data.get("extractedIndicators") or {}
        return cls(
            timestamp=parse_timestamp(data.get("timestamp")),
            model=data.get("model", ""),
            source_posts_analyzed=int(data.get("sourcePostsAnalyzed", 0)),
            queries=[
                QuerySuggestion(
                    query=q["query"],
                    rationale=q.get("rationale", ""),
                    priority=q.get("priority", "medium"),
                    tags=tuple(q.get("tags") or ()),
                )
                for q in data.get("queries", [])
            ],
            indicators=SocialIndicators(
                cves=list(ind.get("cves", [])),
                ports=list(ind.get("ports", [])),
                services=list(ind.get("services", [])),
                countries=list(ind.get("countries", [])),
                malware_families=list(ind.get("malwareFamilies", [])),
                threat_actors=list(ind.get("threatActors", [])),
            ),
            from_cache=True,
        )


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def _mentions(term: str, text: str) -> bool:
    return re.search(r"(?<![a-z0-9])" + re.escape(term) + r"(?![a-z0-9])", text) is not None


def extract_social_indicators(posts: List[dict]) -> SocialIndicators:
    text = " ".join(str(p.get("text") or "") for p in posts if isinstance(p, dict)).lower()

    ports: List[int] = []
    for match in _PORT_MENTION.finditer(text):
        port = int(match.group(1))
        if 0 < port < 65536 and port not in ports:
            ports.append(port)

    countries: List[str] = []
    for name, code in COUNTRY_TO_CODE.items():
        if _mentions(name, text) and code not in countries:
            countries.append(code)

    return SocialIndicators(
        cves=extract_cves(text),
        ports=ports,
        services=[s for s in SERVICE_TO_QUERY if _mentions(s, text)],
        countries=countries,
        malware_families=[m for m in MALWARE_FAMILIES if _mentions(m, text)],
        threat_actors=[a for a in THREAT_ACTORS if _mentions(a, text)],
    )


def heuristic_queries(ind: SocialIndicators) -> List[QuerySuggestion]:
    queries: List[QuerySuggestion] = []

    service_filters = [SERVICE_TO_QUERY[s] for s in ind.services][:3]
    if service_filters:
        queries.append(QuerySuggestion(
            query=" ".join(service_filters),
            rationale=f"Services actively discussed: {', '.join(ind.services)}",
            priority="high",
            tags=("services", "social-intel"),
        ))

    if ind.ports:
        queries.append(QuerySuggestion(
            query="port:" + ",".join(str(p) for p in ind.ports[:5]),
            rationale="Ports explicitly mentioned in social discussion",
            priority="high",
            tags=("ports", "explicit-mention"),
        ))

    if ind.malware_families:
        queries.append(QuerySuggestion(
            query="port:3389,445,22 os:windows",
            rationale=(
                f"Active ransomware campaigns: {', '.join(ind.malware_families)}. "
                "Scanning common initial access vectors."
            ),
            priority="high",
            tags=("ransomware", "initial-access"),
        ))

    if ind.countries:
        country = ind.countries[0]
        queries.append(QuerySuggestion(
            query=f"port:22,3389 country:{country}",
            rationale=f"Geographic focus in social intel: {country}",
            priority="medium",
            tags=("geographic", country.lower()),
        ))

    if not queries:
        queries.append(QuerySuggestion(
            query="port:22,3389,445,3306",
            rationale="Default high-risk ports scan (no specific indicators extracted)",
            priority="low",
            tags=("default", "baseline"),
        ))
    return queries


def parse_query_suggestions(raw: str) -> List[QuerySuggestion]:
    """Suggestions from the first JSON array in ``raw``. Invalid entries are dropped."""
    start = raw.find("[")
    end = raw.rfind("]")
    if start == -1 or end <= start:
        return []
    try:
        items = json.loads(raw[start:end + 1])
    except ValueError:
        return []
    if not isinstance(items, list):
        return []

    suggestions: List[QuerySuggestion] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        query = item.get("query")
        if not isinstance(query, str) or len(query.strip()) <= 3 or "vuln:" in query.lower():
            continue
        priority = item.get("priority")
        tags = item.get("tags")
        suggestions.append(QuerySuggestion(
            query=query.strip(),
            rationale=str(item.get("rationale") or "Model suggested"),
            priority=priority if priority in PRIORITIES else "medium",
            tags=tuple(str(t) for t in tags) if isinstance(tags, list) else (),
        ))
    return suggestions


def merge_queries(*groups: List[QuerySuggestion], limit: int = MAX_QUERIES) -> List[QuerySuggestion]:
    """Concatenate in order, dropping case-insensitive duplicates, capped at ``limit``."""
    seen = set()
    merged: List[QuerySuggestion] = []
    for group in groups:
        for q in group:
            key = q.query.lower().strip()
            if key in seen:
                continue
            seen.add(key)
            merged.append(q)
    return merged[:limit]


def _build_prompt(posts: List[dict], ind: SocialIndicators) -> str:
    ranked = sorted(posts, key=engagement_of, reverse=True)[:15]
    lines = []
    for i, post in enumerate(ranked, start=1):
        text = str(post.get("text") or "")
        lines.append(f"[{i}] @{author_of(post)} ({engagement_of(post)} engagement): {text[:200]}")
    return _PROMPT_TEMPLATE.format(
        cves=", ".join(ind.cves) or "none",
        ports=", ".join(str(p) for p in ind.ports) or "none",
        services=", ".join(ind.services) or "none",
        malware=", ".join(ind.malware_families) or "none",
        actors=", ".join(ind.threat_actors) or "none",
        posts="\n".join(lines),
    )


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class QueryGenerator:
    def __init__(
        self,
        cache_dir: Union[str, Path],
        client: Optional[GenerationClient] = None,
        timeout_s: float = 120.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.cache_path = Path(cache_dir) / CACHE_FILENAME
        self._client = client
        self.timeout_s = timeout_s
        self._clock = clock

    @property
    def model_name(self) -> str:
        return self._client.model if self._client else "heuristic"

    async def generate(self, social_payload: Optional[dict], use_cache: bool = True) -> QueryGeneratorResult:
        if use_cache:
            cached = await asyncio.to_thread(self._load_cached)
            if cached is not None:
                logger.info("query_cache_hit", queries=len(cached.queries))
                return cached

        posts = []
        if isinstance(social_payload, dict) and isinstance(social_payload.get("posts"), list):
            posts = [p for p in social_payload["posts"] if isinstance(p, dict)]

        indicators = extract_social_indicators(posts)
        if not posts:
            queries = [QuerySuggestion(
                query="port:22,3389,445",
                rationale="Default query (no social intel available)",
                priority="low",
                tags=("default",),
            )]
        else:
            suggested = await self._suggest(posts, indicators)
            queries = merge_queries(suggested, heuristic_queries(indicators))

        result = QueryGeneratorResult(
            timestamp=self._clock(),
            model=self.model_name,
            source_posts_analyzed=len(posts),
            queries=queries,
            indicators=indicators,
        )
        if posts:
            await asyncio.to_thread(self._save, result)
        logger.info("queries_generated", queries=len(queries), posts=len(posts), model=result.model)
        return result

    async def _suggest(self, posts: List[dict], ind: SocialIndicators) -> List[QuerySuggestion]:
        if self._client is None:
            return []
        try:
            raw = await asyncio.wait_for(self._client.generate(_build_prompt(posts, ind)), timeout=self.timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError, GenerationError, ValueError) as e:
            logger.warning("query_suggestion_failed", error=str(e) or type(e).__name__)
            return []
        return parse_query_suggestions(raw)

    def _load_cached(self) -> Optional[QueryGeneratorResult]:
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                return None
            cached = QueryGeneratorResult.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError):
            return None
        if cached.timestamp is None or cached.timestamp.date() != self._clock().date():
            return None
        return cached

    def _save(self, result: QueryGeneratorResult) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("query_cache_write_failed", error=str(e))
