# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Uploads arrive as multipart form data (the image plus optional hints), so
# only the confirm step has a JSON request body. The analyze step returns a
# `PreviewData` bundle; the client echoes it back here unchanged, together
# with whatever fields the reviewer corrected.
# =============================================================================

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from safety_forms.models.analysis import AnalysisResult
from safety_forms.models.processing import FileMeta, OCRResult


class PreviewData(BaseModel):
    """Transient analysis state held by the client between analyze and confirm."""

    analysis: AnalysisResult
    ocr_result: OCRResult
    file_info: FileMeta = Field(default_factory=FileMeta)
    processing_time_ms: int = 0
    ocr_processing_time_ms: int = 0
    analysis_processing_time_ms: int = 0


class ConfirmRequest(BaseModel):
    """
    Request body for POST /forms/confirm: persist a reviewed analysis.

    `user_corrections` is keyed by analysis field name, in either camelCase
    or snake_case. Only the reviewer-editable fields are honoured:
    formType, riskScore, workLocation, workActivity, formCompleteness,
    requiresSupervisorReview, summary.

    Example:
        {
            "session_token": "2f0c...",
            "preview": {...},
            "user_corrections": {"riskScore": 8, "workLocation": "Bay 4"}
        }
    """

    session_token: str | None = Field(
        default=None,
        description="Session token returned by /forms/analyze",
    )
    session_id: int | None = Field(
        default=None,
        description="Session ID returned by /forms/analyze",
    )
    preview: PreviewData = Field(
        description="The temp data bundle returned by /forms/analyze",
    )
    user_corrections: dict[str, Any] = Field(
        default_factory=dict,
        description="Reviewer-corrected analysis fields",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "session_token": "2f0c5b0e-3f2a-4f3b-9a57-0b0f2d1f1c11",
                    "preview": {
                        "analysis": {"formType": "TAKE5", "riskScore": 4},
                        "ocr_result": {
                            "text": "Take 5 ...",
                            "confidence": 88,
                            "provider": "vision",
                        },
                    },
                    "user_corrections": {"riskScore": 6},
                }
            ]
        }
    )
