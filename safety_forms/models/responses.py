# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# The shape of data going OUT of the API. ORM rows are converted with
# `from_attributes=True`; the full analysis payload is passed through as
# the stored camelCase JSON rather than re-validated.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from safety_forms.db.models import FormStatus
from safety_forms.models.processing import (
    BatchItemResult,
    FileMeta,
    OCRResult,
    ProcessingTimings,
)
from safety_forms.models.requests import PreviewData


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str = "ok"
    version: str
    service: str
    tracking: str = Field(description="'connected' or 'unavailable'")
    providers: list[str] = Field(
        default_factory=list,
        description="Configured analysis backends, in fallthrough order",
    )
    ocr_configured: bool = False


class HazardResponse(BaseModel):
    id: int
    hazard_type: str
    hazard_category: str | None
    severity: int
    description: str | None
    location_on_form: str | None
    standard_violated: str | None
    regulatory_requirement: str | None
    recommended_action: str | None
    action_priority: int
    estimated_cost_impact: str | None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class FormRecordResponse(BaseModel):
    """A persisted form record, optionally with its hazards."""

    id: int
    session_id: int | None
    original_filename: str | None
    file_size: int | None
    file_type: str | None
    ocr_provider: str | None
    ocr_confidence: float | None
    ocr_processing_time_ms: int | None
    extracted_text_length: int | None
    ocr_fallback_used: bool | None
    ai_provider: str | None
    ai_processing_time_ms: int | None
    form_type: str | None
    risk_score: int | None
    risk_level: str | None
    risk_escalated: bool | None
    requires_supervisor_review: bool | None
    standards_referenced: list[str] | None
    compliance_gaps_count: int | None
    ai_analysis: dict[str, Any] | None = None
    status: FormStatus
    error_details: dict[str, Any] | None
    total_processing_time_ms: int | None
    created_at: datetime | None
    updated_at: datetime | None
    hazards: list[HazardResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class FormSummaryResponse(BaseModel):
    """Compact row for session and recent-form listings."""

    id: int
    original_filename: str | None
    form_type: str | None
    risk_score: int | None
    risk_level: str | None
    requires_supervisor_review: bool | None
    status: FormStatus
    total_processing_time_ms: int | None
    created_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class UploadResponse(BaseModel):
    """Response for POST /forms/upload (tracked single-shot processing)."""

    success: bool
    session_id: int | None
    session_token: str | None
    form_id: int | None
    form_type: str
    risk_score: int
    analysis: dict[str, Any]
    ocr_result: OCRResult | None
    timings: ProcessingTimings


class AnalyzeResponse(BaseModel):
    """
    Response for POST /forms/analyze: preview without persistence.

    `temp_data` is echoed back to /forms/confirm as `preview`.
    """

    status: str = "awaiting_confirmation"
    session_id: int | None
    session_token: str | None
    analysis: dict[str, Any]
    ocr_text_preview: str
    temp_data: PreviewData
    file_info: FileMeta
    timings: ProcessingTimings


class NextStep(BaseModel):
    """One follow-up action returned after confirmation."""

    action: str
    priority: str
    description: str
    required: bool = True


class ConfirmResponse(BaseModel):
    """Response for POST /forms/confirm."""

    status: str = "confirmed"
    form_id: int
    session_id: int | None
    risk_score: int | None
    risk_level: str | None
    requires_supervisor_review: bool | None
    correction_fields: list[str]
    recommendations: list[str]
    next_steps: list[NextStep]


class BatchResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: list[BatchItemResult]


class AuditEventResponse(BaseModel):
    id: int
    form_id: int | None
    session_id: int | None
    event_type: str
    event_details: dict[str, Any] | None
    event_timestamp: datetime | None
    server_instance: str | None
    api_version: str | None

    model_config = ConfigDict(from_attributes=True)


class ProcessingSummaryResponse(BaseModel):
    """Aggregate counts over a time window (GET /analytics/summary)."""

    window_hours: int
    total_forms: int
    completed_forms: int
    failed_forms: int
    processing_forms: int
    high_risk_forms: int
    supervisor_reviews: int
    average_risk_score: float | None
    average_processing_time_ms: float | None
    unique_sessions: int


class HazardTrendResponse(BaseModel):
    hazard_type: str
    hazard_category: str | None
    count: int
    average_severity: float
