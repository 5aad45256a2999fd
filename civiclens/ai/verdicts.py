"""
CivicLens
Lenient parsers for oracle replies.

Oracle output is untrusted text.  Yes/no answers default to NO on any
ambiguity; structured triage verdicts are a partial record where every
field has a safe default and numeric ranges are checked before use.
"""

import json
import math
import re
from dataclasses import asdict, dataclass

from civiclens.core.exceptions import OracleError
from civiclens.models.issue import SEVERITIES

_WORD_RE = re.compile(r"[A-Za-z]+")
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

DEFAULT_SUMMARY = "Analysis complete."
DEFAULT_SEVERITY = "medium"


def parse_yes_no(text: str | None) -> bool:
    """True only for an unambiguous YES.

    ``"YES"``, ``"yes."`` and ``"**Yes**"`` are YES; empty text, ``"NO"``,
    ``"Yes and no"`` and anything without the word are NO.
    """
    if not text:
        return False
    words = {w.upper() for w in _WORD_RE.findall(text)}
    return "YES" in words and "NO" not in words


@dataclass(frozen=True)
class TriageVerdict:
    verified: bool = False
    confidence_score: int = 0
    summary: str = DEFAULT_SUMMARY
    severity: str = DEFAULT_SEVERITY

    def to_dict(self) -> dict:
        return asdict(self)


def _coerce_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes")
    return False


def _coerce_score(value) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if isinstance(value, (int, float)) and math.isfinite(value) and 0 <= value <= 100:
        return int(round(value))
    return 0


def parse_triage_verdict(text: str | None) -> TriageVerdict:
    """Parse the structured triage reply.

    Raises OracleError when no JSON object can be recovered at all; missing
    or invalid fields fall back to their defaults.
    """
    if not text or not text.strip():
        raise OracleError("empty triage reply")

    cleaned = _FENCE_RE.sub("", text.strip())
    match = _OBJECT_RE.search(cleaned)
    if not match:
        raise OracleError("triage reply contains no JSON object")
    try:
        raw = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise OracleError(f"triage reply is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise OracleError("triage reply is not a JSON object")

    summary = raw.get("summary")
    summary = summary.strip()[:500] if isinstance(summary, str) and summary.strip() else DEFAULT_SUMMARY

    severity = raw.get("severity")
    severity = severity.strip().lower() if isinstance(severity, str) else ""
    if severity not in SEVERITIES:
        severity = DEFAULT_SEVERITY

    return TriageVerdict(
        verified=_coerce_bool(raw.get("verified")),
        confidence_score=_coerce_score(raw.get("confidence_score")),
        summary=summary,
        severity=severity,
    )
