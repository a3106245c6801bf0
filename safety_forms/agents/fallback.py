# =============================================================================
# Fallback Analyzer — Rule-Only Analysis
# =============================================================================
#
# Used when every remote backend has declined. A pure function of the text:
# hazards come solely from the violation rules, the score from the text
# heuristic plus escalation, and supervisor review is always required
# because nothing has been read by a model.
#
# failed_processing_analysis() is the second synthetic payload: attached to
# forms that never reached analysis (OCR failure, too little text, an
# unexpected error), so a failed form still carries a displayable,
# review-required assessment.
# =============================================================================

from __future__ import annotations

import logging

from safety_forms.models.analysis import (
    UNKNOWN_FORM_TYPE,
    AnalysisMetadata,
    AnalysisResult,
    ComplianceIssue,
    EmergencyProcedures,
    FlaggedIssue,
)
from safety_forms.services.violations import apply_escalation

logger = logging.getLogger(__name__)

FALLBACK_PROVIDER = "rule_based_fallback"

_EMERGENCY_WORDS = ("emergency", "evacuation", "first aid", "muster", "rescue")


def fallback_analysis(text: str, error: str | None = None) -> AnalysisResult:
    """
    Produce a complete AnalysisResult without any remote backend.

    Args:
        text: Extracted form text (the raw text, for rule detection).
        error: Why the remote backends could not be used, for diagnostics.
    """
    text = text or ""
    lowered = text.lower()
    base = AnalysisResult(
        form_type=UNKNOWN_FORM_TYPE,
        form_type_confidence="LOW",
        risk_score=1,
        compliance_issues=[
            ComplianceIssue(
                standard="Internal review",
                issue="Automated analysis unavailable; manual review required",
                action="Supervisor to review the form in full before work proceeds",
                severity="MEDIUM",
            )
        ],
        summary=(
            "Automated analysis was unavailable. Hazards listed were detected "
            "by rule-based checks only; a supervisor must review this form."
        ),
        form_completeness="UNKNOWN",
        emergency_procedures=EmergencyProcedures(
            mentioned=any(word in lowered for word in _EMERGENCY_WORDS),
        ),
    )

    result = apply_escalation(base, text)
    logger.warning(
        "Rule-based fallback analysis used (score=%d, hazards=%d): %s",
        result.risk_score, len(result.flagged_issues), error or "no providers",
    )

    return result.model_copy(
        update={
            "requires_supervisor_review": True,
            "metadata": AnalysisMetadata(
                provider=FALLBACK_PROVIDER,
                fallback=True,
                error=error,
            ),
        }
    )


def failed_processing_analysis(
    reason: str, form_type: str | None = None,
) -> AnalysisResult:
    """Synthetic medium-risk, review-required payload for a failed form."""
    return AnalysisResult(
        form_type=form_type or UNKNOWN_FORM_TYPE,
        form_type_confidence="LOW",
        risk_score=5,
        risk_level="MEDIUM",
        flagged_issues=[
            FlaggedIssue(
                category="SYSTEM",
                description="Form processing error - requires manual safety review",
                severity="HIGH",
                recommendation="Please review form manually and contact IT support",
                action_priority="HIGH",
                source="system",
            )
        ],
        summary=f"Processing failed: {reason}",
        requires_supervisor_review=True,
        form_completeness="UNKNOWN",
        metadata=AnalysisMetadata(provider="none", fallback=True, error=reason),
    )
