# =============================================================================
# Forms API — Upload, Preview/Confirm, Batch and Record Lookup
# =============================================================================
#
# ENDPOINTS:
#   POST /forms/upload            — tracked single-shot processing
#   POST /forms/analyze           — preview analysis, nothing persisted
#   POST /forms/confirm           — persist a (corrected) preview
#   POST /forms/batch             — several images through process_batch()
#   GET  /forms/session/{token}   — forms processed in one session
#   GET  /forms/{form_id}         — one record with its hazards
#   GET  /forms/{form_id}/audit   — the record's audit trail
#
# DESIGN DECISION: Two ways to process a form.
# /upload creates the record up front and records each stage as it
# completes, which suits unattended capture. /analyze + /confirm lets a
# person review and correct the analysis first; nothing is stored until
# they confirm.
#
# DESIGN DECISION: Failures carry partial context.
# A form that fails in the pipeline still has a stage, a message, the
# synthetic review-required analysis and any OCR output. They are returned
# in the error detail so the client can show what was read.
#   ocr_validation → 400 (unreadable or empty image)
#   anything else  → 500
# =============================================================================

import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from safety_forms.agents.orchestrator import FormProcessor
from safety_forms.api.deps import (
    get_device_info,
    get_location_data,
    get_session_token,
    get_tracking,
    require_ocr,
)
from safety_forms.exceptions import (
    FormNotFound,
    InvalidCorrection,
    PersistenceFailure,
    TrackingError,
)
from safety_forms.models.processing import BatchItem, FileMeta, FormProcessingResult
from safety_forms.models.requests import ConfirmRequest, PreviewData
from safety_forms.models.responses import (
    AnalyzeResponse,
    AuditEventResponse,
    BatchResponse,
    ConfirmResponse,
    FormRecordResponse,
    FormSummaryResponse,
    UploadResponse,
)
from safety_forms.services.tracking import (
    TrackingService,
    extract_recommendations,
    generate_next_steps,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Forms"])

OCR_PREVIEW_CHARS = 500
MAX_BATCH_FILES = 20


# ---------------------------------------------------------------------------
# POST /forms/upload — Tracked single-shot processing
# ---------------------------------------------------------------------------


@router.post(
    "/forms/upload",
    response_model=UploadResponse,
    summary="Process a safety form image and store the result",
    description=(
        "Runs OCR, classification, analysis and contextual re-scoring on one "
        "image. A session and form record are created first and each stage "
        "is recorded as it completes."
    ),
)
async def upload_form(
    file: UploadFile = File(..., description="Photo or scan of a completed safety form"),
    capture_method: str | None = Form(default=None, description="e.g. mobile_camera, scanner"),
    device_type: str | None = Form(default=None),
    form_type: str | None = Form(default=None, description="Known form type, if any"),
    ocr_provider: str | None = Form(default=None),
    session_token: str = Depends(get_session_token),
    device_info: dict[str, Any] = Depends(get_device_info),
    location_data: dict[str, Any] | None = Depends(get_location_data),
    processor: FormProcessor = Depends(require_ocr),
) -> UploadResponse:
    image, file_meta = await _read_image(file, processor.settings.max_upload_bytes)

    result = await processor.process_upload(
        image,
        _metadata(file_meta, capture_method, device_type, form_type, ocr_provider),
        file_meta=file_meta,
        session_token=session_token,
        user_identifier=device_info.get("ip"),
        device_info=device_info,
        location_data=location_data,
    )
    if not result.success:
        raise _failure(result, session_token)

    return UploadResponse(
        success=True,
        session_id=result.session_id,
        session_token=result.session_token,
        form_id=result.form_id,
        form_type=result.form_type,
        risk_score=result.risk_score,
        analysis=result.analysis.to_payload(),
        ocr_result=result.ocr_result,
        timings=result.timings,
    )


# ---------------------------------------------------------------------------
# POST /forms/analyze — Preview without persistence
# ---------------------------------------------------------------------------


@router.post(
    "/forms/analyze",
    response_model=AnalyzeResponse,
    summary="Analyse a safety form for review before saving",
    description=(
        "Same pipeline as /forms/upload, but no form record is created. "
        "Post the returned temp_data to /forms/confirm to save it."
    ),
)
async def analyze_form(
    file: UploadFile = File(...),
    capture_method: str | None = Form(default=None),
    device_type: str | None = Form(default=None),
    form_type: str | None = Form(default=None),
    ocr_provider: str | None = Form(default=None),
    session_token: str = Depends(get_session_token),
    device_info: dict[str, Any] = Depends(get_device_info),
    location_data: dict[str, Any] | None = Depends(get_location_data),
    processor: FormProcessor = Depends(require_ocr),
    tracking: TrackingService = Depends(get_tracking),
) -> AnalyzeResponse:
    image, file_meta = await _read_image(file, processor.settings.max_upload_bytes)

    # The session is only a grouping for later; analysis goes ahead without it
    session_id: int | None = None
    try:
        session = await tracking.create_session(
            token=session_token,
            user_identifier=device_info.get("ip"),
            device_info=device_info,
            location_data=location_data,
        )
        session_id = session.id
    except TrackingError as e:
        logger.warning("Could not create session record, continuing without tracking: %s", e)

    result = await processor.preview(
        image, _metadata(file_meta, capture_method, device_type, form_type, ocr_provider),
    )
    if not result.success:
        raise _failure(result, session_token)

    text = result.ocr_result.text
    preview = text[:OCR_PREVIEW_CHARS] + ("..." if len(text) > OCR_PREVIEW_CHARS else "")

    logger.info(
        "Form analysed for confirmation: %s, risk %d (%dms)",
        result.form_type, result.risk_score, result.processing_time_ms,
    )
    return AnalyzeResponse(
        session_id=session_id,
        session_token=session_token,
        analysis=result.analysis.to_payload(),
        ocr_text_preview=preview,
        temp_data=PreviewData(
            analysis=result.analysis,
            ocr_result=result.ocr_result,
            file_info=file_meta,
            processing_time_ms=result.processing_time_ms,
            ocr_processing_time_ms=result.timings.ocr_ms,
            analysis_processing_time_ms=result.timings.analysis_ms,
        ),
        file_info=file_meta,
        timings=result.timings,
    )


# ---------------------------------------------------------------------------
# POST /forms/confirm — Persist a reviewed analysis
# ---------------------------------------------------------------------------


@router.post(
    "/forms/confirm",
    response_model=ConfirmResponse,
    summary="Save a reviewed analysis",
    description=(
        "Creates the form record from the temp_data returned by "
        "/forms/analyze, applying any reviewer corrections."
    ),
)
async def confirm_form(
    request: ConfirmRequest,
    tracking: TrackingService = Depends(get_tracking),
) -> ConfirmResponse:
    try:
        confirmed = await tracking.confirm_analysis(request)
    except InvalidCorrection as e:
        raise HTTPException(
            status_code=422,
            detail={
                "error": str(e),
                "field": e.field,
                "sessionToken": request.session_token,
            },
        ) from e
    except PersistenceFailure as e:
        logger.error("Form confirmation failed: %s", e)
        raise HTTPException(
            status_code=500,
            detail={
                "error": "Failed to save confirmed form",
                "stage": "confirmation_error",
                "details": str(e),
                "sessionToken": request.session_token,
            },
        ) from e

    analysis = confirmed.analysis
    return ConfirmResponse(
        form_id=confirmed.record.id,
        session_id=confirmed.record.session_id,
        risk_score=analysis.risk_score,
        risk_level=analysis.risk_level,
        requires_supervisor_review=analysis.requires_supervisor_review,
        correction_fields=list(confirmed.corrections),
        recommendations=extract_recommendations(analysis),
        next_steps=generate_next_steps(analysis),
    )


# ---------------------------------------------------------------------------
# POST /forms/batch — Several forms in one request
# ---------------------------------------------------------------------------


@router.post(
    "/forms/batch",
    response_model=BatchResponse,
    summary="Process several safety form images",
    description=(
        "Images are processed in windows of max_concurrent with a short "
        "pause between windows. One failing image does not affect the rest."
    ),
)
async def batch_forms(
    files: list[UploadFile] = File(...),
    capture_method: str | None = Form(default=None),
    max_concurrent: int | None = Query(default=None, ge=1, le=10),
    tracked: bool = Query(default=False, description="Record each form like /forms/upload"),
    session_token: str = Depends(get_session_token),
    processor: FormProcessor = Depends(require_ocr),
) -> BatchResponse:
    if len(files) > MAX_BATCH_FILES:
        raise HTTPException(
            status_code=400,
            detail=f"At most {MAX_BATCH_FILES} files per batch.",
        )

    items: list[BatchItem] = []
    for upload in files:
        image, file_meta = await _read_image(upload, processor.settings.max_upload_bytes)
        items.append(
            BatchItem(image=image, metadata=_metadata(file_meta, capture_method))
        )

    results = await processor.process_batch(
        items,
        max_concurrent=max_concurrent,
        tracked=tracked,
        session_token=session_token if tracked else None,
    )
    succeeded = sum(1 for item in results if item.result.success)
    return BatchResponse(
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )


# ---------------------------------------------------------------------------
# Record lookup
# ---------------------------------------------------------------------------


@router.get(
    "/forms/session/{session_token}",
    response_model=list[FormSummaryResponse],
    summary="List forms processed in a session, newest first",
)
async def list_session_forms(
    session_token: str,
    tracking: TrackingService = Depends(get_tracking),
) -> list[FormSummaryResponse]:
    try:
        forms = await tracking.get_session_forms(session_token)
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return [FormSummaryResponse.model_validate(form) for form in forms]


@router.get(
    "/forms/{form_id}",
    response_model=FormRecordResponse,
    summary="Get one form record with its hazards",
)
async def get_form(
    form_id: int,
    tracking: TrackingService = Depends(get_tracking),
) -> FormRecordResponse:
    try:
        record = await tracking.get_form(form_id)
    except FormNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return FormRecordResponse.model_validate(record)


@router.get(
    "/forms/{form_id}/audit",
    response_model=list[AuditEventResponse],
    summary="Get the audit trail of one form",
)
async def get_form_audit(
    form_id: int,
    tracking: TrackingService = Depends(get_tracking),
) -> list[AuditEventResponse]:
    try:
        events = await tracking.get_audit_trail(form_id)
    except FormNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return [AuditEventResponse.model_validate(event) for event in events]


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _read_image(file: UploadFile, max_bytes: int) -> tuple[bytes, FileMeta]:
    """Read an uploaded image, rejecting non-images, empty and oversized files."""
    if not file.content_type or not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail="Only image files are allowed.",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {max_bytes // (1024 * 1024)}MB upload limit.",
        )

    return content, FileMeta(
        filename=file.filename,
        size=len(content),
        mime_type=file.content_type,
    )


def _metadata(
    file_meta: FileMeta,
    capture_method: str | None = None,
    device_type: str | None = None,
    form_type: str | None = None,
    ocr_provider: str | None = None,
) -> dict[str, Any]:
    values = {
        "filename": file_meta.filename,
        "mime_type": file_meta.mime_type,
        "capture_method": capture_method,
        "device_type": device_type,
        "form_type": form_type,
        "ocr_provider": ocr_provider,
    }
    return {key: value for key, value in values.items() if value is not None}


def _failure(result: FormProcessingResult, session_token: str | None) -> HTTPException:
    """Map a failed pipeline result to an HTTP error carrying partial context."""
    error = result.error
    stage = error.stage if error else "unexpected_error"
    detail: dict[str, Any] = {
        "success": False,
        "stage": stage,
        "error": error.message if error else "Form processing failed",
        "sessionToken": result.session_token or session_token,
        "formId": result.form_id,
        "analysis": result.analysis.to_payload(),
    }
    if result.ocr_result is not None:
        detail["ocrResult"] = result.ocr_result.model_dump(mode="json")
    if stage == "ocr_validation":
        detail["suggestion"] = "Please ensure the image is clear and contains readable text"
    return HTTPException(status_code=400 if stage == "ocr_validation" else 500, detail=detail)
