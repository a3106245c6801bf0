# =============================================================================
# Processing Pipeline Models
# =============================================================================
#
# Shapes passed between the OCR collaborator, the form processor, and the
# tracking service. Snake_case on the wire, like the rest of the HTTP API;
# only the analysis payload (models/analysis.py) is camelCase.
# =============================================================================

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from safety_forms.models.analysis import AnalysisResult


class OCRResult(BaseModel):
    """Text recovered from a form image by the OCR collaborator."""

    text: str = ""
    confidence: float = Field(default=0.0, ge=0, le=100)
    provider: str = "unknown"
    fallback_used: bool = False
    processing_time_ms: int = 0


class FileMeta(BaseModel):
    """Original upload details stored on the form record."""

    filename: str | None = None
    size: int | None = None
    mime_type: str | None = None


class ProcessingTimings(BaseModel):
    ocr_ms: int = 0
    analysis_ms: int = 0
    total_ms: int = 0


class ProcessingError(BaseModel):
    """
    Where and why processing stopped.

    stage is one of: ocr, ocr_validation, ai_analysis, unexpected_error,
    confirmation_error.
    """

    stage: str
    message: str


class FormProcessingResult(BaseModel):
    """
    Outcome of running one form through the pipeline.

    On failure `success` is False, `error` names the stage, and `analysis`
    holds the synthetic review-required payload so callers always receive a
    displayable assessment.
    """

    success: bool
    form_type: str
    risk_score: int
    analysis: AnalysisResult
    ocr_result: OCRResult | None = None
    processing_time_ms: int = 0
    timings: ProcessingTimings = Field(default_factory=ProcessingTimings)
    error: ProcessingError | None = None
    session_id: int | None = None
    session_token: str | None = None
    form_id: int | None = None


class BatchItem(BaseModel):
    """One entry of a batch request: raw image bytes plus per-item metadata."""

    image: bytes
    metadata: dict[str, Any] = Field(default_factory=dict)


class BatchItemResult(BaseModel):
    index: int
    filename: str | None = None
    result: FormProcessingResult
