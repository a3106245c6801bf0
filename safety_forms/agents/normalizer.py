# =============================================================================
# Response Normalizer — Provider Reply → AnalysisResult
# =============================================================================
#
# Backends are asked for a single JSON object but reply in free form:
# markdown code fences, a sentence of preamble, trailing commentary. The
# normalizer locates the first balanced {...} object, parses it, validates
# it against AnalysisResult, then hands it to the escalation engine, which
# adds rule-detected hazards and re-derives score, level and review flag.
#
# DESIGN DECISION: String-aware brace matching over a greedy regex.
# A `\{.*\}` regex swallows trailing prose containing braces, and a
# non-greedy one stops inside nested objects. Walking the text while
# tracking string literals finds the exact object boundary.
# =============================================================================

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from pydantic import ValidationError

from safety_forms.exceptions import MalformedResponse
from safety_forms.models.analysis import AnalysisResult
from safety_forms.services.violations import apply_escalation

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json|JSON)?")


def extract_json_object(raw_reply: str) -> str | None:
    """
    Return the first balanced `{...}` substring of `raw_reply`, or None.

    Braces inside JSON string literals (including escaped quotes) are
    ignored when counting depth.
    """
    text = _CODE_FENCE.sub("", raw_reply)
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        # Unbalanced from this brace; try the next opening brace
        start = text.find("{", start + 1)
    return None


def _numeric_score(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, int):
        return value
    # json.loads accepts NaN, Infinity and 1e999
    if isinstance(value, float) and math.isfinite(value):
        return int(round(value))
    return None


def normalize_payload(payload: dict[str, Any], original_text: str) -> AnalysisResult:
    """
    Validate a parsed payload and run escalation over `original_text`.

    Raises MalformedResponse when formType or a numeric riskScore is missing,
    or when the payload does not fit the schema.
    """
    form_type = payload.get("formType", payload.get("form_type"))
    if not isinstance(form_type, str) or not form_type.strip():
        raise MalformedResponse("Response is missing formType")

    provider_score = _numeric_score(payload.get("riskScore", payload.get("risk_score")))
    if provider_score is None:
        raise MalformedResponse("Response is missing a numeric riskScore")

    # An already-normalized result keeps its original base, so running it
    # through here again lands on the same score.
    base_score = provider_score
    previous = payload.get("escalation")
    if isinstance(previous, dict):
        previous_base = _numeric_score(previous.get("baseScore", previous.get("base_score")))
        if previous_base is not None:
            base_score = previous_base
            provider_score = _numeric_score(
                previous.get("providerScore", previous.get("provider_score"))
            )

    data = {
        key: value
        for key, value in payload.items()
        if value is not None and key not in ("escalation", "metadata")
    }
    data["riskScore"] = max(1, min(10, base_score))
    data.pop("risk_score", None)

    try:
        analysis = AnalysisResult.model_validate(data)
    except ValidationError as e:
        raise MalformedResponse(f"Response does not match the analysis schema: {e}") from e

    return apply_escalation(
        analysis, original_text, base_score=base_score, provider_score=provider_score,
    )


def normalize_response(raw_reply: str, original_text: str) -> AnalysisResult:
    """
    Turn a backend's raw reply into a validated, escalated AnalysisResult.

    Args:
        raw_reply: Free-form text expected to contain one JSON object.
        original_text: The extracted form text, for rule detection.

    Raises:
        MalformedResponse: No JSON object found, unparseable JSON, or
            required fields missing.
    """
    candidate = extract_json_object(raw_reply or "")
    if candidate is None:
        raise MalformedResponse("No JSON object found in response")

    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Invalid JSON in response: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedResponse("Response JSON is not an object")

    result = normalize_payload(payload, original_text)
    logger.debug(
        "Normalized response: formType=%s, riskScore=%d, issues=%d",
        result.form_type, result.risk_score, len(result.flagged_issues),
    )
    return result
