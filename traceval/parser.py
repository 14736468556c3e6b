"""
Parsing of judge model output into a score and rationale.

Judge models are asked for a bare JSON object but frequently wrap it in
Markdown, truncate it, or answer in prose. ``parse_evaluation_response``
tries progressively looser strategies and tags the result with the
``ParseTier`` that produced the score. It never raises.
"""

import json
import math
import re
from typing import Any

from pydantic import BaseModel, Field

from traceval.models import ParseTier


MIN_SCORE = 0.0
MAX_SCORE = 10.0
DEFAULT_SCORE = 5.0

NO_RATIONALE = "No rationale provided"
TRUNCATED_RATIONALE = "Rationale truncated"
UNPARSEABLE_RATIONALE = "Unparseable evaluation response"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_JSON_SCORE = re.compile(r'"score"\s*:\s*(\d+(?:\.\d+)?)', re.IGNORECASE)
_LABELLED_SCORE = re.compile(r"(?:评分|score|分数)[:\s]*(\d+(?:\.\d+)?)", re.IGNORECASE)
_SUFFIXED_SCORE = re.compile(r"(\d+(?:\.\d+)?)\s*分")
_JSON_REASON = re.compile(r'"(?:reason|reasoning)"\s*:\s*"([^"]*)', re.IGNORECASE)
_STRIP_CHARS = re.compile(r'[{}"]')
_STRIP_SCORE = re.compile(r"score\s*:\s*\d+", re.IGNORECASE)


class ParsedEvaluation(BaseModel):
    """Score and rationale recovered from a judge response."""
    score: float = Field(..., ge=MIN_SCORE, le=MAX_SCORE)
    reason: str = Field(..., min_length=1)
    tier: ParseTier


def clamp_score(value: float) -> float:
    if math.isnan(value):
        return MIN_SCORE
    return min(MAX_SCORE, max(MIN_SCORE, value))


def _coerce_score(value: Any) -> float:
    """Numeric coercion of a JSON score field; anything non-numeric is 0."""
    if isinstance(value, bool) or value is None:
        return MIN_SCORE
    try:
        return clamp_score(float(value))
    except OverflowError:
        # Integers too large for a float
        return MAX_SCORE if value > 0 else MIN_SCORE
    except (TypeError, ValueError):
        return MIN_SCORE


def _parse_json_object(text: str):
    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except (ValueError, RecursionError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _extract_reason(text: str) -> str:
    match = _JSON_REASON.search(text)
    if match:
        return match.group(1) or TRUNCATED_RATIONALE

    remainder = _STRIP_SCORE.sub("", _STRIP_CHARS.sub("", text)).strip()
    return remainder[:200] or UNPARSEABLE_RATIONALE


def parse_evaluation_response(text: str) -> ParsedEvaluation:
    """
    Extract ``{score, reason}`` from a judge model's free-text answer.

    Args:
        text: Raw model output

    Returns:
        ParsedEvaluation: Score clamped to [0, 10], non-empty reason and the
        tier that produced the score
    """
    cleaned = (text or "").strip()

    parsed = _parse_json_object(cleaned)
    if parsed is not None:
        reason = parsed.get("reason") or parsed.get("reasoning")
        return ParsedEvaluation(
            score=_coerce_score(parsed.get("score")),
            reason=str(reason) if reason else NO_RATIONALE,
            tier=ParseTier.EXACT,
        )

    match = (_JSON_SCORE.search(cleaned)
             or _LABELLED_SCORE.search(cleaned)
             or _SUFFIXED_SCORE.search(cleaned))
    if match:
        score = clamp_score(float(match.group(1)))
        tier = ParseTier.APPROXIMATE
    else:
        score = DEFAULT_SCORE
        tier = ParseTier.DEFAULTED

    return ParsedEvaluation(score=score, reason=_extract_reason(cleaned), tier=tier)


__all__ = [
    'ParsedEvaluation',
    'parse_evaluation_response',
    'clamp_score',
]
