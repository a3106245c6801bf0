# =============================================================================
# Form Classifier — Form-Type Detection & Text Restructuring
# =============================================================================
#
# DESIGN DECISION: Rule-based classification over LLM.
# Form titles are printed in a handful of fixed phrasings ("Safe Work
# Method Statement", "Take 5", "Permit to Work"), so a keyword table is
# instant, free, and accurate enough. The provider still reports its own
# formType, which wins whenever it is not UNKNOWN.
#
# Patterns are checked in table order; the first family with a match wins.
# JSA precedes JHA, so "Job Hazard Analysis" resolves to JSA unless the
# form says "JHA" explicitly.
# =============================================================================

from __future__ import annotations

import logging
import re

from safety_forms.models.analysis import UNKNOWN_FORM_TYPE

logger = logging.getLogger(__name__)

FORM_TYPES = (
    "SWMS",
    "JSA",
    "JHA",
    "TAKE5",
    "PERMIT",
    "INSPECTION",
    "HAZARD_ASSESSMENT",
    "SAFETY_FORM",
    UNKNOWN_FORM_TYPE,
)

_FORM_PATTERNS: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = tuple(
    (form_type, tuple(re.compile(p, re.IGNORECASE) for p in patterns))
    for form_type, patterns in (
        ("SWMS", (r"safe\s+work\s+method\s+statement", r"\bSWMS\b", r"\bwork\s+method\b")),
        ("JSA", (r"job\s+safety\s+analysis", r"\bJSA\b", r"job\s+hazard\s+analysis")),
        ("JHA", (r"\bJHA\b",)),
        ("TAKE5", (r"\btake\s*5\b", r"\btake\s+five\b", r"\b5\s+minute\b")),
        ("PERMIT", (r"\bwork\s+permit\b", r"\bpermit\s+to\s+work\b", r"\bhot\s+work\s+permit\b")),
        ("INSPECTION", (
            r"\bsafety\s+inspection\b", r"\binspection\s+checklist\b",
            r"\bpre[\s-]?\w*\s*inspection\b",
        )),
        ("HAZARD_ASSESSMENT", (
            r"\bhazard\s+assessment\b", r"\brisk\s+assessment\b",
            r"\bhazard\b.*\bidentification\b",
        )),
    )
)

_SAFETY_KEYWORDS = ("HAZARD", "RISK", "PPE", "SAFETY", "WORK", "PROCEDURE")

_HEADER_PATTERNS = (
    re.compile(r"^[A-Z\s]+:$"),
    re.compile(
        r"^(?:HAZARD|RISK|PPE|CONTROL|PROCEDURE|EMERGENCY|WORK|TASK|EQUIPMENT)",
        re.IGNORECASE,
    ),
    re.compile(r"ASSESSMENT|IDENTIFICATION|ANALYSIS|METHOD|STATEMENT", re.IGNORECASE),
    re.compile(r"^\d+\."),
    re.compile(r"^[A-Z]\."),
)


def detect_form_type(text: str | None) -> str:
    """
    Classify form text into one of FORM_TYPES.

    Falls back to SAFETY_FORM when at least two generic safety keywords
    appear, else UNKNOWN.
    """
    if not text:
        return UNKNOWN_FORM_TYPE

    for form_type, patterns in _FORM_PATTERNS:
        for pattern in patterns:
            if pattern.search(text):
                logger.info("Form type detected: %s (pattern=%s)", form_type, pattern.pattern)
                return form_type

    upper = text.upper()
    keyword_count = sum(1 for keyword in _SAFETY_KEYWORDS if keyword in upper)
    if keyword_count >= 2:
        return "SAFETY_FORM"

    return UNKNOWN_FORM_TYPE


def is_section_header(line: str | None) -> bool:
    if not line or len(line) > 100:
        return False
    line = line.strip()
    return any(pattern.search(line) for pattern in _HEADER_PATTERNS)


def preprocess_text_for_ai(text: str | None, form_type: str) -> str:
    """
    Restructure OCR text for the analysis prompt.

    Collapses runs of spaces and blank lines, joins each section's lines,
    tags section headers as `[SECTION: ...]`, and prefixes the form type
    and original text length.

    Example:
        >>> preprocess_text_for_ai("HAZARDS:\\nNoise   from saw", "JSA")
        '[FORM_TYPE: JSA]\\n[TEXT_LENGTH: 25 characters]\\n\\n[SECTION: HAZARDS:] Noise from saw'
    """
    if not text:
        return ""

    lines = [
        re.sub(r"[ \t\f\v]+", " ", line).strip()
        for line in text.splitlines()
    ]
    lines = [line for line in lines if line]

    sections: list[str] = []
    current: list[str] = []
    for line in lines:
        if is_section_header(line):
            if current:
                sections.append(" ".join(current))
            current = [f"[SECTION: {line}]"]
        else:
            current.append(line)
    if current:
        sections.append(" ".join(current))

    structured = "\n".join(sections)
    return (
        f"[FORM_TYPE: {form_type}]\n"
        f"[TEXT_LENGTH: {len(text)} characters]\n\n"
        f"{structured}"
    )
