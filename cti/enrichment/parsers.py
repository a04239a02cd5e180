"""
Response parsing strategies for the narrative endpoint.

Each strategy is a pure function ``str -> dict`` returning only the fields it
could read (possibly none). ``combine`` merges them in order, first non-empty
field wins. Risk labels outside ``RISK_LEVELS`` are never returned, so the
caller substitutes the heuristic value for that field alone.

Field keys: ``summary`` (str), ``findings`` (list), ``recommendations`` (list),
``risk`` (str).
"""

import json
import re
from typing import Callable, Dict, List, Optional, Sequence

RISK_LEVELS = ("critical", "high", "medium", "low")

FIELDS = ("summary", "findings", "recommendations", "risk")

Parsed = Dict[str, object]
Strategy = Callable[[str], Parsed]

_RISK_WORD = re.compile(r"\b(critical|high|medium|low)\b", re.IGNORECASE)
_BULLET = re.compile(r"^[ \t]*(?:[-•*]|\d+[.)])[ \t]+(.+?)[ \t]*$", re.MULTILINE)
_BULLETS_AFTER = re.compile(r"[^\n]*\n(?:[ \t]*\n)*[ \t]*(?:[-•*]|\d+[.)])[ \t]+")

_JSON_KEYS = {
    "summary": ("summary", "executive_summary", "executiveSummary"),
    "findings": ("findings", "key_findings", "keyFindings"),
    "recommendations": ("recommendations", "actions", "action", "recommendation"),
    "risk": ("risk", "risk_level", "riskLevel", "risk_level_guess"),
}

_NAMED_FIELDS = {
    "summary": re.compile(r"\bsummary[\"']?[ \t]*[:=][ \t]*[\"']?([^\"'\n]+)", re.IGNORECASE),
    "findings": re.compile(r"\b(?:key[ _])?findings?[\"']?[ \t]*[:=][ \t]*[\"']?([^\"'\n]+)", re.IGNORECASE),
    "recommendations": re.compile(
        r"\b(?:actions?|recommendations?)[\"']?[ \t]*[:=][ \t]*[\"']?([^\"'\n]+)", re.IGNORECASE
    ),
    "risk": re.compile(
        r"\brisk(?:[ _]level)?[\"']?[ \t]*[:=][ \t]*[\"']?(critical|high|medium|low)\b", re.IGNORECASE
    ),
}

_SECTION_HEADER = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?(?:\*\*)?[ \t]*"
    r"(summary|key findings|findings|risk level|risk|recommendations)"
    r"[ \t]*(?:\*\*)?[ \t]*(?::[ \t]*(?:\*\*)?|$)",
    re.IGNORECASE | re.MULTILINE,
)

_SECTION_FIELDS = {
    "summary": "summary",
    "key findings": "findings",
    "findings": "findings",
    "risk level": "risk",
    "risk": "risk",
    "recommendations": "recommendations",
}


def normalize_risk(value) -> Optional[str]:
    """Lowercased label if it is one of RISK_LEVELS, else None."""
    if not isinstance(value, str):
        return None
    label = value.strip().lower()
    return label if label in RISK_LEVELS else None


def _clean(text: str) -> str:
    return " ".join(text.split()).strip(" \"'")


def _as_items(value) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [_clean(str(v)) for v in value if isinstance(v, (str, int, float)) and _clean(str(v))]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def parse_json_object(text: str) -> Parsed:
    """First embedded JSON object that decodes, scanning each ``{`` in turn."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except ValueError:
            obj = None
        if isinstance(obj, dict):
            return _from_mapping(obj)
        start = text.find("{", start + 1)
    return {}


def _from_mapping(obj: dict) -> Parsed:
    parsed: Parsed = {}
    for field_name, keys in _JSON_KEYS.items():
        value = next((obj[k] for k in keys if k in obj), None)
        if value is None:
            continue
        if field_name == "summary":
            if isinstance(value, str) and _clean(value):
                parsed["summary"] = _clean(value)
        elif field_name == "risk":
            risk = normalize_risk(value)
            if risk:
                parsed["risk"] = risk
        else:
            items = _as_items(value)
            if items:
                parsed[field_name] = items
    return parsed


def parse_named_fields(text: str) -> Parsed:
    """``name: value`` pairs anywhere in free text, one line each.

    A list field whose line is followed by bullets is left to parse_sections.
    """
    parsed: Parsed = {}
    for field_name, pattern in _NAMED_FIELDS.items():
        match = pattern.search(text)
        if not match:
            continue
        if field_name in ("findings", "recommendations") and _BULLETS_AFTER.match(text, match.end()):
            continue
        value = _clean(match.group(1))
        if not value:
            continue
        if field_name == "risk":
            parsed["risk"] = value.lower()
        elif field_name == "summary":
            parsed["summary"] = value
        else:
            parsed[field_name] = [value]
    return parsed


def parse_sections(text: str) -> Parsed:
    """Header-delimited prose: SUMMARY / KEY FINDINGS / RISK / RECOMMENDATIONS."""
    headers = list(_SECTION_HEADER.finditer(text))
    parsed: Parsed = {}
    for i, header in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
        body = text[header.end():end]
        field_name = _SECTION_FIELDS[" ".join(header.group(1).lower().split())]
        if field_name in parsed:
            continue
        if field_name == "summary":
            summary = _clean(body)
            if summary:
                parsed["summary"] = summary
        elif field_name == "risk":
            match = _RISK_WORD.search(body)
            if match:
                parsed["risk"] = match.group(1).lower()
        else:
            items = [_clean(b) for b in _BULLET.findall(body) if _clean(b)]
            if items:
                parsed[field_name] = items
    return parsed


STRATEGIES: Sequence[Strategy] = (parse_json_object, parse_named_fields, parse_sections)


def combine(text: str, strategies: Sequence[Strategy] = STRATEGIES) -> Parsed:
    """Run strategies in order; each field keeps the first non-empty value seen."""
    result: Parsed = {}
    if not text or not text.strip():
        return result
    for strategy in strategies:
        for key, value in strategy(text).items():
            if key not in result and value:
                result[key] = value
        if all(k in result for k in FIELDS):
            break
    return result
