# =============================================================================
# Analysis Result Schema — The Single Schema Boundary
# =============================================================================
#
# Every text-analysis backend, the rule-based fallback, and the HTTP layer
# all exchange this shape. Backends reply in camelCase JSON, so every model
# uses a camelCase alias generator and accepts either spelling on input:
#
#   AnalysisResult.model_validate({"formType": "SWMS", "riskScore": 6})
#   AnalysisResult(form_type="SWMS", risk_score=6)
#
# Serialise with `model_dump(by_alias=True)` to produce the wire format.
#
# Ordinal labels (severity, risk level, confidence, completeness) are kept
# as upper-cased strings rather than enums: providers occasionally invent
# labels, and the downstream integer mapping defaults unknown labels to
# MEDIUM instead of rejecting the whole reply.
# =============================================================================

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SEVERITY_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")

UNKNOWN_FORM_TYPE = "UNKNOWN"


class CamelModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def _upper(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip().upper()
    return text or default


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


class FlaggedIssue(CamelModel):
    """
    One hazard or issue found on the form.

    Issues produced by the violation rules carry `source="rule"`, a
    `rule_id`, and `is_controlled=False`. Provider issues usually leave
    `is_controlled` unset, which the escalation engine treats as uncontrolled.
    """

    category: str = "HAZARD"
    type: str | None = None
    description: str = ""
    severity: str = "MEDIUM"
    recommendation: str = ""
    location: str | None = None
    standard: str | None = None
    regulatory_requirement: str | None = None
    action_priority: str | None = None
    estimated_cost_impact: str | None = None
    is_controlled: bool | None = None
    rule_id: str | None = None
    source: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _normalise_severity(cls, value: Any) -> str:
        return _upper(value, "MEDIUM")

    @field_validator("category", mode="before")
    @classmethod
    def _normalise_category(cls, value: Any) -> str:
        return _upper(value, "HAZARD")


class ComplianceIssue(CamelModel):
    standard: str = ""
    issue: str = ""
    action: str = ""
    severity: str = "MEDIUM"

    @field_validator("severity", mode="before")
    @classmethod
    def _normalise_severity(cls, value: Any) -> str:
        return _upper(value, "MEDIUM")


class HRWFactor(CamelModel):
    """A high-risk-work activity present on the form."""

    category: str
    description: str = ""
    escalation_weight: int | None = None


class PPERequirement(CamelModel):
    type: str
    required: bool = True
    status: str | None = None


class RiskAssessmentDetail(CamelModel):
    """Consequence × likelihood matrix as read from the form."""

    initial_risk: str | None = None
    residual_risk: str | None = None
    consequence: str | None = None
    likelihood: str | None = None


class WorkerDetails(CamelModel):
    signatures_present: bool = False
    supervisor_approval: bool = False
    date_completed: str | None = None


class EmergencyProcedures(CamelModel):
    mentioned: bool = False
    details: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Scoring & Provenance
# ---------------------------------------------------------------------------


class EscalationDetail(CamelModel):
    """
    Breakdown of how the final risk score was derived.

    `base_score` is either the provider's own score or the text heuristic.
    Re-normalizing a result that already carries this block starts again
    from `base_score`, so the final score is stable across round trips.
    """

    base_score: int
    provider_score: int | None = None
    hrw_escalation: int = 0
    fatal_five_escalation: int = 0
    critical_hazard_escalation: int = 0
    checkbox_escalation: int = 0
    contextual_escalation: int = 0
    matched_hrw_categories: list[str] = Field(default_factory=list)
    matched_fatal_five: list[str] = Field(default_factory=list)
    matched_rules: list[str] = Field(default_factory=list)
    contextual_reasons: list[str] = Field(default_factory=list)

    @property
    def total_escalation(self) -> int:
        return (
            self.hrw_escalation
            + self.fatal_five_escalation
            + self.critical_hazard_escalation
            + self.checkbox_escalation
            + self.contextual_escalation
        )

    @property
    def escalated(self) -> bool:
        return self.total_escalation > 0


class ProviderAttempt(CamelModel):
    provider: str
    success: bool
    error: str | None = None
    duration_ms: int = 0


class AnalysisMetadata(CamelModel):
    """Which backend produced the result, how long it took, what failed first."""

    provider: str
    processing_time_ms: int | None = None
    fallback: bool = False
    error: str | None = None
    attempts: list[ProviderAttempt] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    context: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Analysis Result
# ---------------------------------------------------------------------------


class AnalysisResult(CamelModel):
    """Normalized output of the analysis pipeline."""

    form_type: str
    form_type_confidence: str = "HIGH"
    risk_score: int = Field(ge=1, le=10)
    risk_level: str = "MEDIUM"
    flagged_issues: list[FlaggedIssue] = Field(default_factory=list)
    hrw_factors: list[HRWFactor] = Field(default_factory=list)
    ppe_required: list[PPERequirement] = Field(default_factory=list)
    compliance_issues: list[ComplianceIssue] = Field(default_factory=list)
    risk_assessment: RiskAssessmentDetail | None = None
    summary: str = ""
    requires_supervisor_review: bool = False
    form_completeness: str = "PARTIALLY_COMPLETE"
    missing_fields: list[str] = Field(default_factory=list)
    positive_findings: list[str] = Field(default_factory=list)
    work_location: str = "Not specified"
    work_activity: str = "Not specified"
    worker_details: WorkerDetails = Field(default_factory=WorkerDetails)
    emergency_procedures: EmergencyProcedures = Field(
        default_factory=EmergencyProcedures,
    )
    escalation: EscalationDetail | None = None
    metadata: AnalysisMetadata | None = None

    @field_validator(
        "form_type", "form_type_confidence", "risk_level", "form_completeness",
        mode="before",
    )
    @classmethod
    def _normalise_labels(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def standards_referenced(self) -> list[str]:
        return [issue.standard for issue in self.compliance_issues if issue.standard]

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe camelCase dict (for JSONB columns and audit details)."""
        return self.model_dump(mode="json", by_alias=True)
