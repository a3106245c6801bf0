# =============================================================================
# Exception Taxonomy
# =============================================================================
#
# Two families, each with its own propagation policy:
#
#   AnalysisError — raised inside the analysis pipeline. Always recovered
#   locally: the provider orchestrator falls through to the next backend,
#   and ultimately to the rule-based fallback. Never reaches a caller.
#
#   TrackingError — raised by the processing lifecycle store. Logged and
#   swallowed wherever tracking is auxiliary; surfaced only by the explicit
#   confirm-and-save step.
#
# InsufficientText and OCRFailure are the only pipeline errors reported to
# the caller, as structured failures carrying whatever OCR data exists.
# =============================================================================

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from safety_forms.models.processing import OCRResult


class SafetyFormsError(Exception):
    """Base class for all service errors."""


# ---------------------------------------------------------------------------
# Analysis pipeline
# ---------------------------------------------------------------------------


class AnalysisError(SafetyFormsError):
    """A text-analysis backend could not produce a usable result."""


class BackendUnavailable(AnalysisError):
    """The backend call itself failed (network, auth, quota, timeout)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class MalformedResponse(AnalysisError):
    """The backend replied, but the content does not fit the result schema."""


class AllBackendsFailed(AnalysisError):
    """Every configured backend declined. Absorbed by the fallback analyzer."""

    def __init__(self, failures: list[str]) -> None:
        summary = "; ".join(failures) if failures else "no providers configured"
        super().__init__(f"All analysis providers failed: {summary}")
        self.failures = failures


# ---------------------------------------------------------------------------
# OCR stage
# ---------------------------------------------------------------------------


class OCRFailure(SafetyFormsError):
    """The OCR collaborator raised while extracting text."""


class InsufficientText(SafetyFormsError):
    """OCR produced too little text to analyse."""

    def __init__(self, ocr_result: OCRResult, min_length: int) -> None:
        length = len(ocr_result.text.strip()) if ocr_result.text else 0
        super().__init__(
            f"Insufficient text extracted from image "
            f"({length} characters, minimum {min_length})"
        )
        self.ocr_result = ocr_result
        self.min_length = min_length


# ---------------------------------------------------------------------------
# Processing lifecycle
# ---------------------------------------------------------------------------


class TrackingError(SafetyFormsError):
    """Base class for processing lifecycle errors."""


class PersistenceFailure(TrackingError):
    """A tracking store read or write failed."""


class FormNotFound(TrackingError):
    def __init__(self, form_id: int) -> None:
        super().__init__(f"Form record {form_id} not found")
        self.form_id = form_id


class InvalidCorrection(SafetyFormsError):
    """A reviewer correction carries a value the field cannot hold."""

    def __init__(self, field: str, value: object) -> None:
        super().__init__(f"Invalid value for correction '{field}': {value!r}")
        self.field = field
        self.value = value


class InvalidStatusTransition(TrackingError):
    def __init__(self, form_id: int, current: str, target: str) -> None:
        super().__init__(
            f"Form record {form_id} cannot move from '{current}' to '{target}'"
        )
        self.form_id = form_id
        self.current = current
        self.target = target
