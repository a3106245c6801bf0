# =============================================================================
# Tracking Service — Processing Lifecycle & Audit Trail
# =============================================================================
#
# Records what happened to every submitted form:
#
#   create_session ──▶ create_form_record ──▶ record_ocr ──▶ record_ai
#        (get-or-create)     status=processing   ocr_recorded    completed
#                                   │                 │
#                                   └──── mark_failed ┘──▶ failed
#
# Each step writes an audit event. Hazards are written as their own rows
# once the AI stage is recorded, so trends can be aggregated per type.
#
# DESIGN DECISION: Rules here, rows in the store.
# The TrackingStore only reads and writes. Status transitions, severity
# mapping, audit event shapes and the confirm flow live in this service, so
# both store implementations behave identically.
#
# DESIGN DECISION: Audit writes return a bool and never raise.
# An audit trail that can take down form processing is worse than a
# missing audit row. Callers that care can check the result.
#
# DESIGN DECISION: Two-phase confirm.
# FormProcessor.preview() analyses without persisting anything. The client
# reviews the result, edits a handful of fields, and posts it back to
# confirm_analysis(), which is the only point where the record is created.
# =============================================================================

from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from safety_forms.config import Settings, settings as default_settings
from safety_forms.db.models import (
    AuditEvent,
    FormHazard,
    FormRecord,
    FormStatus,
    ProcessingSession,
    utcnow,
)
from safety_forms.exceptions import (
    FormNotFound,
    InvalidCorrection,
    InvalidStatusTransition,
    PersistenceFailure,
    TrackingError,
)
from safety_forms.models.analysis import AnalysisResult, FlaggedIssue
from safety_forms.models.processing import FileMeta, OCRResult
from safety_forms.models.requests import ConfirmRequest
from safety_forms.models.responses import NextStep
from safety_forms.services.tracking_store import (
    HazardTrend,
    ProcessingSummary,
    TrackingStore,
)
from safety_forms.services.violations import (
    clamp_score,
    requires_supervisor_review,
    risk_level_for_score,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Severity Mapping
# ---------------------------------------------------------------------------
# FormHazard stores severity and action priority on a 1–4 scale so they
# can be averaged. Anything unrecognised lands in the middle.
# ---------------------------------------------------------------------------

SEVERITY_SCALE = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}
DEFAULT_SEVERITY = 2


def map_severity_to_integer(severity: str | None) -> int:
    """
    Map a severity label to 1–4.

    Examples:
        >>> map_severity_to_integer("critical")
        4
        >>> map_severity_to_integer("SEVERE")
        2
    """
    if not severity:
        return DEFAULT_SEVERITY
    return SEVERITY_SCALE.get(str(severity).strip().upper(), DEFAULT_SEVERITY)


def map_priority_to_integer(priority: str | None) -> int:
    """Same scale as severity; priorities use the same labels."""
    return map_severity_to_integer(priority)


# Transitions allowed out of each non-terminal state
_ALLOWED_TRANSITIONS: dict[FormStatus, set[FormStatus]] = {
    FormStatus.PROCESSING: {
        FormStatus.OCR_RECORDED, FormStatus.COMPLETED, FormStatus.FAILED,
    },
    FormStatus.OCR_RECORDED: {FormStatus.COMPLETED, FormStatus.FAILED},
}


# ---------------------------------------------------------------------------
# Reviewer Corrections
# ---------------------------------------------------------------------------

# camelCase name → AnalysisResult attribute
EDITABLE_FIELDS = {
    "formType": "form_type",
    "riskScore": "risk_score",
    "workLocation": "work_location",
    "workActivity": "work_activity",
    "formCompleteness": "form_completeness",
    "requiresSupervisorReview": "requires_supervisor_review",
    "summary": "summary",
}
_SNAKE_TO_CAMEL = {snake: camel for camel, snake in EDITABLE_FIELDS.items()}


def _coerce_correction(camel: str, attr: str, value: Any) -> Any:
    if attr == "risk_score":
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                raise InvalidCorrection(camel, value) from None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidCorrection(camel, value)
        if not math.isfinite(value):
            raise InvalidCorrection(camel, value)
        return clamp_score(value)
    if attr == "requires_supervisor_review":
        if not isinstance(value, bool):
            raise InvalidCorrection(camel, value)
        return value
    if not isinstance(value, str):
        raise InvalidCorrection(camel, value)
    if attr in ("form_type", "form_completeness"):
        return value.strip().upper()
    return value


def apply_corrections(
    analysis: AnalysisResult,
    corrections: dict[str, Any],
) -> tuple[AnalysisResult, dict[str, dict[str, Any]]]:
    """
    Apply reviewer edits to an analysis.

    Keys may be camelCase or snake_case; keys outside EDITABLE_FIELDS are
    ignored. A corrected score is clamped to 1–10. When the score or
    completeness changes, the risk level is re-derived, and so is the
    review flag unless the reviewer supplied one (even an unchanged one).

    Returns:
        (corrected analysis, diff) where diff maps each changed camelCase
        field to {"from": old, "to": new}.

    Raises:
        InvalidCorrection: a value does not fit its field (a non-numeric
            or non-finite score, a non-string text field).
    """
    update: dict[str, Any] = {}
    diff: dict[str, dict[str, Any]] = {}
    supplied: set[str] = set()

    for key, value in corrections.items():
        camel = key if key in EDITABLE_FIELDS else _SNAKE_TO_CAMEL.get(key)
        if camel is None:
            logger.debug("Ignoring non-editable correction field: %s", key)
            continue
        attr = EDITABLE_FIELDS[camel]
        value = _coerce_correction(camel, attr, value)
        supplied.add(attr)

        current = getattr(analysis, attr)
        if value == current:
            continue
        update[attr] = value
        diff[camel] = {"from": current, "to": value}

    if not update:
        return analysis, diff

    if "risk_score" in update or "form_completeness" in update:
        score = update.get("risk_score", analysis.risk_score)
        update["risk_level"] = risk_level_for_score(score)
        if "requires_supervisor_review" not in supplied:
            update["requires_supervisor_review"] = requires_supervisor_review(
                score,
                analysis.flagged_issues,
                update.get("form_completeness", analysis.form_completeness),
                analysis.compliance_issues,
            )

    logger.info("Applied reviewer corrections: %s", sorted(diff))
    return analysis.model_copy(update=update), diff


# ---------------------------------------------------------------------------
# Recommendations & Next Steps
# ---------------------------------------------------------------------------


def extract_recommendations(analysis: AnalysisResult) -> list[str]:
    """
    Flatten an analysis into an ordered, de-duplicated action list.

    Issue recommendations come first, then compliance actions, then the
    general notes for high risk and incomplete forms.
    """
    candidates = [issue.recommendation for issue in analysis.flagged_issues]
    candidates += [issue.action for issue in analysis.compliance_issues]
    if analysis.risk_level in ("HIGH", "CRITICAL"):
        candidates.append("Immediate supervisor review required before work commences")
    if analysis.form_completeness == "INCOMPLETE":
        candidates.append("Complete all missing form fields before proceeding")

    recommendations: list[str] = []
    for item in candidates:
        item = (item or "").strip()
        if item and item not in recommendations:
            recommendations.append(item)
    return recommendations


def generate_next_steps(analysis: AnalysisResult) -> list[NextStep]:
    steps: list[NextStep] = []

    if analysis.requires_supervisor_review:
        steps.append(NextStep(
            action="supervisor_review",
            priority="HIGH",
            description="Send form to supervisor for review and approval",
        ))

    if analysis.form_completeness == "INCOMPLETE":
        missing = ", ".join(analysis.missing_fields) or "various fields"
        steps.append(NextStep(
            action="complete_form",
            priority="HIGH",
            description=f"Complete missing form fields: {missing}",
        ))

    if any(issue.severity == "CRITICAL" for issue in analysis.flagged_issues):
        steps.append(NextStep(
            action="address_critical_issues",
            priority="CRITICAL",
            description="Address all critical safety issues before work begins",
        ))

    if analysis.ppe_required:
        items = ", ".join(ppe.type for ppe in analysis.ppe_required)
        steps.append(NextStep(
            action="verify_ppe",
            priority="MEDIUM",
            description=f"Ensure all required PPE is available: {items}",
        ))

    steps.append(NextStep(
        action="proceed_with_work",
        priority="LOW",
        description="Work may proceed once all above steps are completed",
        required=False,
    ))
    return steps


def hazard_from_issue(issue: FlaggedIssue) -> FormHazard:
    """Build a FormHazard row (without form_id) from a flagged issue."""
    return FormHazard(
        hazard_type=_clip(issue.type or issue.category or "GENERAL", 100),
        hazard_category=_clip(issue.category, 100),
        severity=map_severity_to_integer(issue.severity),
        description=issue.description or None,
        location_on_form=_clip(issue.location, 255),
        standard_violated=_clip(issue.standard, 255),
        regulatory_requirement=issue.regulatory_requirement,
        recommended_action=issue.recommendation or None,
        action_priority=map_priority_to_integer(issue.action_priority or issue.severity),
        estimated_cost_impact=_clip(issue.estimated_cost_impact, 255),
    )


@dataclass
class ConfirmedForm:
    """Outcome of confirm_analysis: the saved record and what was saved."""

    record: FormRecord
    analysis: AnalysisResult
    corrections: dict[str, dict[str, Any]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TrackingService:
    """
    Processing lifecycle operations over a TrackingStore.

    Write operations raise TrackingError subclasses; callers that treat
    tracking as auxiliary (the form pipeline) log and continue.
    """

    def __init__(self, store: TrackingStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or default_settings

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    async def create_session(
        self,
        token: str | None = None,
        user_identifier: str | None = None,
        device_info: dict[str, Any] | None = None,
        location_data: dict[str, Any] | None = None,
    ) -> ProcessingSession:
        """Return the session for `token`, creating it if needed."""
        if token:
            existing = await self.store.get_session_by_token(token)
            if existing is not None:
                return existing

        session = ProcessingSession(
            session_token=token or str(uuid.uuid4()),
            user_identifier=user_identifier,
            device_info=device_info,
            location_data=location_data,
            total_forms_processed=0,
            total_processing_time_ms=0,
        )
        try:
            session = await self.store.create_session(session)
        except PersistenceFailure:
            # Another request may have created the same token meanwhile
            existing = await self.store.get_session_by_token(session.session_token)
            if existing is None:
                raise
            return existing

        logger.info("Created processing session %s", session.id)
        return session

    async def update_session_stats(
        self, session_id: int, forms_processed: int = 1, processing_time_ms: int = 0,
    ) -> ProcessingSession | None:
        return await self.store.update_session(
            session_id,
            forms_processed=forms_processed,
            processing_time_ms=processing_time_ms,
        )

    # -----------------------------------------------------------------------
    # Form lifecycle
    # -----------------------------------------------------------------------

    async def create_form_record(
        self, session_id: int | None, file_meta: FileMeta | None = None,
    ) -> FormRecord:
        file_meta = file_meta or FileMeta()
        record = await self.store.create_form(
            FormRecord(
                session_id=session_id,
                original_filename=file_meta.filename,
                file_size=file_meta.size,
                file_type=file_meta.mime_type,
                status=FormStatus.PROCESSING,
                hazards=[],
            )
        )
        await self.log_audit_event(
            "form_processing_started",
            {
                "filename": file_meta.filename,
                "fileSize": file_meta.size,
                "mimeType": file_meta.mime_type,
            },
            form_id=record.id,
            session_id=session_id,
        )
        logger.info("Created form record %s (session %s)", record.id, session_id)
        return record

    async def record_ocr(
        self, form_id: int, ocr_result: OCRResult, processing_time_ms: int = 0,
    ) -> FormRecord:
        record = await self._transition(
            form_id,
            FormStatus.OCR_RECORDED,
            ocr_provider=ocr_result.provider,
            ocr_confidence=ocr_result.confidence,
            ocr_processing_time_ms=processing_time_ms,
            extracted_text_length=len(ocr_result.text),
            ocr_fallback_used=ocr_result.fallback_used,
            extracted_text=ocr_result.text,
        )
        await self.log_audit_event(
            "ocr_completed",
            {
                "provider": ocr_result.provider,
                "confidence": ocr_result.confidence,
                "textLength": len(ocr_result.text),
                "processingTimeMs": processing_time_ms,
                "fallbackUsed": ocr_result.fallback_used,
            },
            form_id=form_id,
            session_id=record.session_id,
        )
        return record

    async def record_ai(
        self,
        form_id: int,
        analysis: AnalysisResult,
        processing_time_ms: int = 0,
        provider: str | None = None,
        analysis_payload: dict[str, Any] | None = None,
    ) -> FormRecord:
        """
        Store the analysis, complete the record and write its hazards.

        `analysis_payload` overrides the stored JSON (the confirm flow adds
        the correction diff to it).
        """
        current = await self._require(form_id)
        now = utcnow()
        provider = provider or (analysis.metadata.provider if analysis.metadata else None)
        escalated = analysis.escalation.escalated if analysis.escalation else False

        record = await self._transition(
            form_id,
            FormStatus.COMPLETED,
            current=current,
            ai_provider=provider,
            ai_processing_time_ms=processing_time_ms,
            form_type=analysis.form_type,
            risk_score=analysis.risk_score,
            risk_level=analysis.risk_level,
            risk_escalated=escalated,
            requires_supervisor_review=analysis.requires_supervisor_review,
            standards_referenced=analysis.standards_referenced,
            compliance_gaps_count=len(analysis.compliance_issues),
            ai_analysis=analysis_payload or analysis.to_payload(),
            hazards_payload=[
                issue.model_dump(mode="json", by_alias=True)
                for issue in analysis.flagged_issues
            ],
            recommendations_payload=extract_recommendations(analysis),
            processing_end_time=now,
            total_processing_time_ms=_elapsed_ms(current.processing_start_time, now),
        )

        await self.log_audit_event(
            "ai_analysis_completed",
            {
                "provider": provider,
                "formType": analysis.form_type,
                "riskScore": analysis.risk_score,
                "riskLevel": analysis.risk_level,
                "riskEscalated": escalated,
                "supervisorReview": analysis.requires_supervisor_review,
                "hazardCount": len(analysis.flagged_issues),
                "processingTimeMs": processing_time_ms,
            },
            form_id=form_id,
            session_id=record.session_id,
        )

        await self.store.add_hazards(
            form_id, [hazard_from_issue(issue) for issue in analysis.flagged_issues],
        )
        logger.info(
            "Recorded analysis for form %s: %s, risk %d/%s, %d hazards",
            form_id, analysis.form_type, analysis.risk_score, analysis.risk_level,
            len(analysis.flagged_issues),
        )
        return record

    async def mark_failed(
        self, form_id: int, stage: str, error: str, **details: Any,
    ) -> FormRecord:
        current = await self._require(form_id)
        now = utcnow()
        record = await self._transition(
            form_id,
            FormStatus.FAILED,
            current=current,
            error_details={
                "stage": stage,
                "error": error,
                "timestamp": now.isoformat(),
                **details,
            },
            processing_end_time=now,
            total_processing_time_ms=_elapsed_ms(current.processing_start_time, now),
        )
        await self.log_audit_event(
            "processing_failed",
            {"stage": stage, "error": error, **details},
            form_id=form_id,
            session_id=record.session_id,
        )
        logger.warning("Form %s failed at stage %s: %s", form_id, stage, error)
        return record

    async def log_audit_event(
        self,
        event_type: str,
        details: dict[str, Any] | None = None,
        form_id: int | None = None,
        session_id: int | None = None,
    ) -> bool:
        """Append an audit event. Returns False (never raises) if it was not written."""
        if not self.settings.audit_logging_enabled:
            logger.debug("Audit logging disabled, dropping %s for form %s", event_type, form_id)
            return False
        try:
            await self.store.add_audit_event(
                AuditEvent(
                    form_id=form_id,
                    session_id=session_id,
                    event_type=event_type,
                    event_details=details or {},
                    server_instance=self.settings.server_instance,
                    api_version=self.settings.app_version,
                )
            )
        except TrackingError as e:
            logger.warning("Audit event %s for form %s not written: %s", event_type, form_id, e)
            return False
        return True

    # -----------------------------------------------------------------------
    # Two-phase confirm
    # -----------------------------------------------------------------------

    async def confirm_analysis(self, request: ConfirmRequest) -> ConfirmedForm:
        """
        Persist a previewed analysis together with reviewer corrections.

        Raises:
            PersistenceFailure: The record could not be created or
                completed. A record that was created is marked failed
                with stage `confirmation_error`.
            InvalidCorrection: A correction value does not fit its field.
                Raised before anything is written.
        """
        started = time.perf_counter()
        preview = request.preview
        analysis, diff = apply_corrections(preview.analysis, request.user_corrections)

        session_id = await self._confirm_session(request)

        try:
            record = await self.create_form_record(session_id, preview.file_info)
        except PersistenceFailure:
            raise
        except TrackingError as e:
            raise PersistenceFailure(str(e)) from e

        try:
            await self.record_ocr(
                record.id, preview.ocr_result, preview.ocr_processing_time_ms,
            )
            confirmed_at = utcnow().isoformat()
            await self.record_ai(
                record.id,
                analysis,
                processing_time_ms=preview.analysis_processing_time_ms,
                analysis_payload={
                    **analysis.to_payload(),
                    "userCorrections": diff,
                    "confirmationTimestamp": confirmed_at,
                },
            )
        except TrackingError as e:
            logger.error("Confirmation of form %s failed: %s", record.id, e)
            try:
                await self.mark_failed(record.id, "confirmation_error", str(e))
            except TrackingError as mark_error:
                logger.error("Could not mark form %s failed: %s", record.id, mark_error)
            if isinstance(e, PersistenceFailure):
                raise
            raise PersistenceFailure(str(e)) from e

        await self.log_audit_event(
            "form_confirmed",
            {
                "userCorrections": diff,
                "finalFormType": analysis.form_type,
                "finalRiskScore": analysis.risk_score,
                "supervisorReviewRequired": analysis.requires_supervisor_review,
                "confirmationTimestamp": confirmed_at,
            },
            form_id=record.id,
            session_id=session_id,
        )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if session_id is not None:
            try:
                await self.update_session_stats(
                    session_id,
                    forms_processed=1,
                    processing_time_ms=preview.processing_time_ms + elapsed_ms,
                )
            except TrackingError as e:
                logger.warning("Could not update session statistics: %s", e)

        saved = await self.store.get_form(record.id)
        logger.info(
            "Form %s confirmed in %dms (%d corrections)", record.id, elapsed_ms, len(diff),
        )
        return ConfirmedForm(record=saved or record, analysis=analysis, corrections=diff)

    async def _confirm_session(self, request: ConfirmRequest) -> int | None:
        """Resolve the session for a confirm request; best-effort."""
        try:
            if request.session_id is not None:
                session = await self.store.get_session(request.session_id)
                if session is not None:
                    return session.id
            if request.session_token:
                return (await self.create_session(token=request.session_token)).id
        except TrackingError as e:
            logger.warning("Session lookup for confirmation failed (continuing): %s", e)
        return None

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_form(self, form_id: int) -> FormRecord:
        """Form record with hazards. Raises FormNotFound."""
        return await self._require(form_id)

    async def get_audit_trail(self, form_id: int) -> list[AuditEvent]:
        await self._require(form_id)
        return await self.store.list_audit_events(form_id)

    async def get_session_forms(self, token: str) -> list[FormRecord]:
        return await self.store.list_session_forms(token)

    async def get_recent_forms(self, limit: int = 10) -> list[FormRecord]:
        return await self.store.list_recent_forms(limit)

    async def get_processing_summary(self, window_hours: int = 24) -> ProcessingSummary:
        return await self.store.processing_summary(utcnow() - timedelta(hours=window_hours))

    async def get_hazard_trends(
        self, window_hours: int = 168, limit: int = 20,
    ) -> list[HazardTrend]:
        return await self.store.hazard_trends(
            utcnow() - timedelta(hours=window_hours), limit=limit,
        )

    async def health_check(self) -> bool:
        try:
            return await self.store.ping()
        except TrackingError as e:
            logger.warning("Tracking store health check failed: %s", e)
            return False

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _require(self, form_id: int) -> FormRecord:
        record = await self.store.get_form(form_id)
        if record is None:
            raise FormNotFound(form_id)
        return record

    async def _transition(
        self,
        form_id: int,
        target: FormStatus,
        current: FormRecord | None = None,
        **fields: Any,
    ) -> FormRecord:
        """Move a record to `target`, enforcing the status state machine."""
        record = current or await self._require(form_id)
        status = FormStatus(record.status)
        if target not in _ALLOWED_TRANSITIONS.get(status, set()):
            raise InvalidStatusTransition(form_id, status.value, target.value)

        updated = await self.store.update_form(
            form_id, status=target, updated_at=utcnow(), **fields,
        )
        if updated is None:
            raise FormNotFound(form_id)
        return updated


def _elapsed_ms(start, end) -> int | None:
    if start is None:
        return None
    return max(0, int((end - start).total_seconds() * 1000))


def _clip(value: str | None, length: int) -> str | None:
    if not value:
        return None
    return value[:length]
