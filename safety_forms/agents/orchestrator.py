# =============================================================================
# Form Processing Orchestrator — LangGraph Pipeline
# =============================================================================
#
# Sequences one form through OCR, classification, analysis and contextual
# re-scoring as a LangGraph StateGraph:
#
# GRAPH TOPOLOGY:
#   START ──▶ ocr ──┬──▶ classify ──▶ analyse ──┬──▶ rescore ──▶ END
#                   │ (error)                   │ (error)
#                   └──────────▶ END ◀──────────┘
#
# DESIGN DECISION: Collaborators travel in the state.
# The OCR service, provider orchestrator and (optionally) the tracking
# service are placed in the initial state rather than read from globals,
# so one compiled graph serves every FormProcessor and every test double.
# NOTE: Not JSON-serialisable. Safe as long as no checkpointer is
# configured on the graph (current: no checkpointer).
#
# DESIGN DECISION: Graph compiled once at module level.
#
# DESIGN DECISION: Tracking is auxiliary.
# When a tracking service and form id are present, nodes record OCR and AI
# results as the pipeline advances. Tracking failures are logged and
# swallowed; they never change the processing result.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from pathlib import Path
from typing import Any, TypeVar

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from safety_forms.agents.analyst import ProviderOrchestrator
from safety_forms.agents.classifier import detect_form_type, preprocess_text_for_ai
from safety_forms.agents.fallback import failed_processing_analysis
from safety_forms.config import Settings, settings as default_settings
from safety_forms.exceptions import InsufficientText, OCRFailure, TrackingError
from safety_forms.models.analysis import UNKNOWN_FORM_TYPE, AnalysisResult
from safety_forms.models.processing import (
    BatchItem,
    BatchItemResult,
    FileMeta,
    FormProcessingResult,
    OCRResult,
    ProcessingError,
    ProcessingTimings,
)
from safety_forms.services.ocr import OCRService, calculate_image_quality
from safety_forms.services.tracking import TrackingService
from safety_forms.services.violations import requires_supervisor_review, risk_level_for_score

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Contextual Re-Scoring
# ---------------------------------------------------------------------------


def contextual_adjustments(
    analysis: AnalysisResult,
    ocr_result: OCRResult,
    metadata: dict[str, Any] | None = None,
) -> list[tuple[str, int]]:
    """
    Score increments for how trustworthy the reading of the form is.

    OCR confidence rules are exclusive: below 30 adds 2, below 50 adds 1,
    otherwise a mobile camera capture below 80 adds 1.
    """
    metadata = metadata or {}
    confidence = ocr_result.confidence
    adjustments: list[tuple[str, int]] = []

    if confidence < 30:
        adjustments.append(("very_low_ocr_confidence", 2))
    elif confidence < 50:
        adjustments.append(("low_ocr_confidence", 1))
    elif metadata.get("capture_method") == "mobile_camera" and confidence < 80:
        adjustments.append(("mobile_capture_moderate_confidence", 1))

    if analysis.form_completeness == "INCOMPLETE":
        adjustments.append(("form_incomplete", 1))

    if len(analysis.missing_fields) > 2:
        adjustments.append(("missing_fields", 1))

    return adjustments


def calculate_contextual_risk_score(
    analysis: AnalysisResult,
    ocr_result: OCRResult,
    metadata: dict[str, Any] | None = None,
) -> int:
    """Final score after contextual adjustments. Capped at 10, never lowered."""
    increment = sum(delta for _, delta in contextual_adjustments(analysis, ocr_result, metadata))
    return min(10, analysis.risk_score + increment)


def apply_contextual_rescore(
    analysis: AnalysisResult,
    ocr_result: OCRResult,
    metadata: dict[str, Any] | None = None,
) -> AnalysisResult:
    adjustments = contextual_adjustments(analysis, ocr_result, metadata)
    if not adjustments:
        return analysis

    score = min(10, analysis.risk_score + sum(delta for _, delta in adjustments))
    update: dict[str, Any] = {
        "risk_score": score,
        "risk_level": risk_level_for_score(score),
        "requires_supervisor_review": analysis.requires_supervisor_review
        or requires_supervisor_review(
            score,
            analysis.flagged_issues,
            analysis.form_completeness,
            analysis.compliance_issues,
        ),
    }
    if analysis.escalation is not None:
        update["escalation"] = analysis.escalation.model_copy(
            update={
                "contextual_escalation": score - analysis.risk_score,
                "contextual_reasons": [reason for reason, _ in adjustments],
            }
        )

    logger.info(
        "Contextual re-score %d -> %d (%s)",
        analysis.risk_score, score, ", ".join(reason for reason, _ in adjustments),
    )
    return analysis.model_copy(update=update)


# ---------------------------------------------------------------------------
# Pipeline State Schema
# ---------------------------------------------------------------------------


class FormState(TypedDict, total=False):
    """
    State that flows through the form pipeline graph.

    Uses total=False so nodes only need to return the keys they update.
    """

    # --- Input (set by caller) ---
    image: bytes
    metadata: dict[str, Any]
    min_text_length: int

    # --- Collaborators (set by caller) ---
    ocr_service: OCRService | None
    analyzer: ProviderOrchestrator
    tracking: TrackingService | None
    form_id: int | None

    # --- Intermediate (set by nodes) ---
    ocr_result: OCRResult | None
    ocr_ms: int
    form_type: str
    prompt_text: str
    analysis_ms: int

    # --- Output ---
    analysis: AnalysisResult | None
    error: ProcessingError | None


async def _best_effort(label: str, call: Awaitable[T]) -> T | None:
    """Await a tracking call; log and swallow tracking failures."""
    try:
        return await call
    except TrackingError as e:
        logger.warning("Tracking %s failed (continuing): %s", label, e)
        return None


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def ocr_node(state: FormState) -> dict:
    """Extract text and reject forms with too little of it."""
    ocr_service = state.get("ocr_service")
    metadata = state.get("metadata") or {}
    started = time.perf_counter()

    if ocr_service is None:
        return {"error": ProcessingError(stage="ocr", message="No OCR service configured")}

    context = {
        "capture_method": metadata.get("capture_method", "unknown"),
        "device_type": metadata.get("device_type", "unknown"),
        "image_quality": calculate_image_quality(
            state["image"], metadata.get("capture_method"),
        ),
    }

    try:
        ocr_result = await ocr_service.extract_text(
            state["image"], metadata.get("ocr_provider"), context,
        )
    except Exception as e:
        failure = OCRFailure(f"{type(e).__name__}: {e}")
        logger.error("OCR failed: %s", failure)
        return {
            "ocr_ms": int((time.perf_counter() - started) * 1000),
            "error": ProcessingError(stage="ocr", message=f"OCR failed: {failure}"),
        }

    ocr_ms = int((time.perf_counter() - started) * 1000)
    if not ocr_result.processing_time_ms:
        ocr_result = ocr_result.model_copy(update={"processing_time_ms": ocr_ms})

    logger.info(
        "OCR complete: provider=%s, confidence=%.1f, chars=%d (%dms)",
        ocr_result.provider, ocr_result.confidence, len(ocr_result.text), ocr_ms,
    )

    tracking = state.get("tracking")
    form_id = state.get("form_id")
    if tracking is not None and form_id is not None:
        await _best_effort(
            "record_ocr", tracking.record_ocr(form_id, ocr_result, ocr_ms),
        )

    min_length = state.get("min_text_length", default_settings.min_text_length)
    if len(ocr_result.text.strip()) < min_length:
        error = InsufficientText(ocr_result, min_length)
        logger.warning("%s", error)
        return {
            "ocr_result": ocr_result,
            "ocr_ms": ocr_ms,
            "error": ProcessingError(stage="ocr_validation", message=str(error)),
        }

    return {"ocr_result": ocr_result, "ocr_ms": ocr_ms}


async def classify_node(state: FormState) -> dict:
    """
    Determine the form type and restructure the text for the prompt.

    A caller-supplied form type wins unless it is UNKNOWN.
    """
    metadata = state.get("metadata") or {}
    text = state["ocr_result"].text

    hint = (metadata.get("form_type") or "").strip().upper()
    if hint and hint != UNKNOWN_FORM_TYPE:
        form_type = hint
        logger.info("Using caller-specified form type: %s", form_type)
    else:
        form_type = detect_form_type(text)

    return {"form_type": form_type, "prompt_text": preprocess_text_for_ai(text, form_type)}


async def analyse_node(state: FormState) -> dict:
    """Run the provider orchestrator over the restructured text."""
    started = time.perf_counter()
    try:
        analysis = await state["analyzer"].analyze(
            state["prompt_text"],
            form_type=state["form_type"],
            metadata={
                "capture_method": (state.get("metadata") or {}).get("capture_method"),
                "ocr_confidence": state["ocr_result"].confidence,
            },
            source_text=state["ocr_result"].text,
        )
    except Exception as e:
        # ProviderOrchestrator never raises; a substituted analyzer might
        logger.exception("Analysis step failed")
        return {
            "analysis_ms": int((time.perf_counter() - started) * 1000),
            "error": ProcessingError(stage="ai_analysis", message=f"AI analysis failed: {e}"),
        }

    return {
        "analysis": analysis,
        "analysis_ms": int((time.perf_counter() - started) * 1000),
    }


async def rescore_node(state: FormState) -> dict:
    """Apply contextual adjustments, then record the AI stage if tracked."""
    analysis = state["analysis"]
    # Provider-reported form type is kept; the detected one fills UNKNOWN
    if analysis.form_type == UNKNOWN_FORM_TYPE and state.get("form_type"):
        analysis = analysis.model_copy(update={"form_type": state["form_type"]})

    analysis = apply_contextual_rescore(
        analysis, state["ocr_result"], state.get("metadata"),
    )

    tracking = state.get("tracking")
    form_id = state.get("form_id")
    if tracking is not None and form_id is not None:
        await _best_effort(
            "record_ai",
            tracking.record_ai(
                form_id,
                analysis,
                processing_time_ms=state.get("analysis_ms", 0),
                provider=analysis.metadata.provider if analysis.metadata else None,
            ),
        )

    return {"analysis": analysis}


def _route_after(state: FormState) -> str:
    return "failed" if state.get("error") else "continue"


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(FormState)
_builder.add_node("ocr", ocr_node)
_builder.add_node("classify", classify_node)
_builder.add_node("analyse", analyse_node)
_builder.add_node("rescore", rescore_node)

_builder.add_edge(START, "ocr")
_builder.add_conditional_edges("ocr", _route_after, {"failed": END, "continue": "classify"})
_builder.add_edge("classify", "analyse")
_builder.add_conditional_edges("analyse", _route_after, {"failed": END, "continue": "rescore"})
_builder.add_edge("rescore", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class FormProcessor:
    """
    Entry points for running forms through the pipeline.

    Args:
        analyzer: The provider orchestrator, constructed once at startup.
        ocr_service: OCR collaborator. Without one every form fails at
            the `ocr` stage.
        tracking: Processing lifecycle service, used by process_upload().
        settings: Overrides for min_text_length and batch pacing.
    """

    def __init__(
        self,
        analyzer: ProviderOrchestrator,
        ocr_service: OCRService | None = None,
        tracking: TrackingService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.analyzer = analyzer
        self.ocr_service = ocr_service
        self.tracking = tracking
        self.settings = settings or default_settings

    async def process_form_bytes(
        self,
        image: bytes,
        metadata: dict[str, Any] | None = None,
        form_id: int | None = None,
    ) -> FormProcessingResult:
        """
        Run one image through the pipeline. Never raises.

        When `form_id` is given and a tracking service is configured, OCR
        and AI results are recorded against that form as they arrive.
        """
        metadata = metadata or {}
        started = time.perf_counter()
        initial_state: FormState = {
            "image": image,
            "metadata": metadata,
            "min_text_length": self.settings.min_text_length,
            "ocr_service": self.ocr_service,
            "analyzer": self.analyzer,
            "tracking": self.tracking if form_id is not None else None,
            "form_id": form_id,
        }

        logger.info(
            "Processing form: %d bytes, capture_method=%s",
            len(image), metadata.get("capture_method", "unknown"),
        )

        try:
            state = await graph.ainvoke(initial_state)
        except Exception as e:
            logger.exception("Unexpected error processing form")
            return self._failure(
                ProcessingError(stage="unexpected_error", message=str(e)),
                state={},
                started=started,
                metadata=metadata,
            )

        if state.get("error"):
            return self._failure(state["error"], state, started, metadata)

        analysis: AnalysisResult = state["analysis"]
        total_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Form processed: type=%s, risk=%d/%s, review=%s (%dms)",
            analysis.form_type, analysis.risk_score, analysis.risk_level,
            analysis.requires_supervisor_review, total_ms,
        )
        return FormProcessingResult(
            success=True,
            form_type=analysis.form_type,
            risk_score=analysis.risk_score,
            analysis=analysis,
            ocr_result=state.get("ocr_result"),
            processing_time_ms=total_ms,
            timings=ProcessingTimings(
                ocr_ms=state.get("ocr_ms", 0),
                analysis_ms=state.get("analysis_ms", 0),
                total_ms=total_ms,
            ),
            form_id=form_id,
        )

    async def process_form_path(
        self, path: str | Path, metadata: dict[str, Any] | None = None,
    ) -> FormProcessingResult:
        """Read an image file off disk, then process its bytes."""
        metadata = {"filename": Path(path).name, **(metadata or {})}
        try:
            image = await asyncio.to_thread(Path(path).read_bytes)
        except OSError as e:
            logger.error("Could not read form image %s: %s", path, e)
            return self._failure(
                ProcessingError(stage="unexpected_error", message=f"Could not read {path}: {e}"),
                state={},
                started=time.perf_counter(),
                metadata=metadata,
            )
        return await self.process_form_bytes(image, metadata)

    async def process_form(
        self, source: bytes | str | Path, metadata: dict[str, Any] | None = None,
    ) -> FormProcessingResult:
        """Dispatch on source type: raw bytes or a filesystem path."""
        if isinstance(source, (bytes, bytearray)):
            return await self.process_form_bytes(bytes(source), metadata)
        return await self.process_form_path(source, metadata)

    async def preview(
        self, image: bytes, metadata: dict[str, Any] | None = None,
    ) -> FormProcessingResult:
        """Analyze without creating any persisted record (first phase of confirm)."""
        return await self.process_form_bytes(image, metadata)

    async def process_upload(
        self,
        image: bytes,
        metadata: dict[str, Any] | None = None,
        file_meta: FileMeta | None = None,
        session_token: str | None = None,
        user_identifier: str | None = None,
        device_info: dict[str, Any] | None = None,
        location_data: dict[str, Any] | None = None,
    ) -> FormProcessingResult:
        """
        Tracked single-shot processing.

        Creates (or reuses) the session and a form record, runs the
        pipeline while recording each stage, marks the form failed on
        error, and bumps the session counters. Every tracking step is
        best-effort: without a tracking service, or if the store is down,
        the form is still processed and the ids are simply None.
        """
        if self.tracking is None:
            return await self.process_form_bytes(image, metadata)

        session = await _best_effort(
            "create_session",
            self.tracking.create_session(
                token=session_token,
                user_identifier=user_identifier,
                device_info=device_info,
                location_data=location_data,
            ),
        )
        session_id = session.id if session is not None else None

        record = await _best_effort(
            "create_form_record",
            self.tracking.create_form_record(session_id, file_meta or FileMeta()),
        )
        form_id = record.id if record is not None else None

        result = await self.process_form_bytes(image, metadata, form_id=form_id)

        if form_id is not None and not result.success and result.error is not None:
            details: dict[str, Any] = {}
            if result.ocr_result is not None:
                details["ocr_text_length"] = len(result.ocr_result.text)
                details["ocr_confidence"] = result.ocr_result.confidence
            await _best_effort(
                "mark_failed",
                self.tracking.mark_failed(
                    form_id, result.error.stage, result.error.message, **details,
                ),
            )

        if session_id is not None:
            await _best_effort(
                "update_session_stats",
                self.tracking.update_session_stats(
                    session_id, forms_processed=1,
                    processing_time_ms=result.processing_time_ms,
                ),
            )

        return result.model_copy(
            update={
                "session_id": session_id,
                "session_token": session.session_token if session is not None else session_token,
                "form_id": form_id,
            }
        )

    async def process_batch(
        self,
        items: list[BatchItem],
        max_concurrent: int | None = None,
        delay_seconds: float | None = None,
        tracked: bool = False,
        session_token: str | None = None,
    ) -> list[BatchItemResult]:
        """
        Process many forms in windows of `max_concurrent`.

        Windows run concurrently via asyncio.gather; the pipeline pauses
        `delay_seconds` between windows. A failing item never affects the
        others. Results keep input order.
        """
        window = max(1, max_concurrent or self.settings.batch_max_concurrent)
        delay = self.settings.batch_delay_seconds if delay_seconds is None else delay_seconds

        logger.info(
            "Batch processing %d forms (window=%d, delay=%.2fs)",
            len(items), window, delay,
        )

        async def run_one(index: int, item: BatchItem) -> BatchItemResult:
            filename = item.metadata.get("filename")
            if tracked:
                result = await self.process_upload(
                    item.image,
                    item.metadata,
                    file_meta=FileMeta(
                        filename=filename,
                        size=len(item.image),
                        mime_type=item.metadata.get("mime_type"),
                    ),
                    session_token=session_token,
                )
            else:
                result = await self.process_form_bytes(item.image, item.metadata)
            return BatchItemResult(index=index, filename=filename, result=result)

        results: list[BatchItemResult] = []
        for start in range(0, len(items), window):
            chunk = items[start:start + window]
            results.extend(
                await asyncio.gather(
                    *(run_one(start + offset, item) for offset, item in enumerate(chunk))
                )
            )
            if start + window < len(items) and delay > 0:
                await asyncio.sleep(delay)

        succeeded = sum(1 for item in results if item.result.success)
        logger.info("Batch complete: %d/%d succeeded", succeeded, len(results))
        return results

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _failure(
        self,
        error: ProcessingError,
        state: FormState,
        started: float,
        metadata: dict[str, Any],
    ) -> FormProcessingResult:
        form_type = state.get("form_type") or (metadata.get("form_type") or None)
        analysis = failed_processing_analysis(error.message, form_type)
        total_ms = int((time.perf_counter() - started) * 1000)
        logger.warning("Form processing failed at stage %s: %s", error.stage, error.message)
        return FormProcessingResult(
            success=False,
            form_type=analysis.form_type,
            risk_score=analysis.risk_score,
            analysis=analysis,
            ocr_result=state.get("ocr_result"),
            processing_time_ms=total_ms,
            timings=ProcessingTimings(
                ocr_ms=state.get("ocr_ms", 0),
                analysis_ms=state.get("analysis_ms", 0),
                total_ms=total_ms,
            ),
            error=error,
            form_id=state.get("form_id"),
        )
