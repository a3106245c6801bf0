# =============================================================================
# Unit Tests — Tracking Service
# =============================================================================
#
# Lifecycle, audit trail, corrections and the confirm flow, all against the
# in-memory store. Store failures are simulated by replacing single store
# methods with AsyncMock side effects.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from safety_forms.config import Settings
from safety_forms.db.models import FormStatus
from safety_forms.exceptions import (
    FormNotFound,
    InvalidCorrection,
    InvalidStatusTransition,
    PersistenceFailure,
)
from safety_forms.models.analysis import (
    AnalysisResult,
    ComplianceIssue,
    FlaggedIssue,
    PPERequirement,
)
from safety_forms.models.processing import FileMeta, OCRResult
from safety_forms.models.requests import ConfirmRequest, PreviewData
from safety_forms.services.tracking import (
    TrackingService,
    apply_corrections,
    extract_recommendations,
    generate_next_steps,
    hazard_from_issue,
    map_priority_to_integer,
    map_severity_to_integer,
)
from safety_forms.services.tracking_store import InMemoryTrackingStore
from safety_forms.services.violations import detect_hazards

OCR = OCRResult(text="JSA\nHard hat: ✗", confidence=88.5, provider="vision")


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _service(**settings) -> TrackingService:
    return TrackingService(InMemoryTrackingStore(), Settings(**settings))


def _analysis(score: int = 4, **fields) -> AnalysisResult:
    fields.setdefault("risk_level", "LOW" if score <= 3 else "MEDIUM" if score <= 6 else "HIGH")
    return AnalysisResult(form_type="JSA", risk_score=score, **fields)


async def _completed_form(service: TrackingService, analysis: AnalysisResult, session_id=None):
    record = await service.create_form_record(session_id, FileMeta(filename="f.jpg"))
    await service.record_ocr(record.id, OCR, 120)
    return await service.record_ai(record.id, analysis, processing_time_ms=900)


# ---------------------------------------------------------------------------
# Test: Severity Mapping
# ---------------------------------------------------------------------------


class TestSeverityMapping:
    def test_known_labels(self):
        assert [map_severity_to_integer(s) for s in ("LOW", "MEDIUM", "HIGH", "CRITICAL")] == [
            1, 2, 3, 4,
        ]

    def test_case_insensitive(self):
        assert map_severity_to_integer(" critical ") == 4

    def test_unknown_defaults_to_medium(self):
        assert map_severity_to_integer("SEVERE") == 2
        assert map_severity_to_integer(None) == 2
        assert map_priority_to_integer("") == 2

    def test_hazard_row_from_rule_issue(self):
        hazard = hazard_from_issue(detect_hazards("Hard hat: ✗")[0])
        assert hazard.hazard_type == "Hard hat"
        assert hazard.hazard_category == "PPE"
        assert hazard.severity == 3
        assert hazard.action_priority == 3
        assert hazard.standard_violated == "AS/NZS 1801"

    def test_hazard_type_falls_back_to_category(self):
        hazard = hazard_from_issue(FlaggedIssue(category="noise", description="Loud"))
        assert hazard.hazard_type == "NOISE"
        assert hazard.location_on_form is None


# ---------------------------------------------------------------------------
# Test: Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    """Tests for get-or-create sessions and their counters."""

    def test_same_token_reuses_session(self):
        service = _service()

        async def scenario():
            first = await service.create_session(token="device-1", user_identifier="crew-7")
            second = await service.create_session(token="device-1")
            return first, second

        first, second = _run(scenario())
        assert first.id == second.id
        assert first.user_identifier == "crew-7"

    def test_token_generated_when_missing(self):
        session = _run(_service().create_session())
        assert len(session.session_token) == 36

    def test_stats_increment(self):
        service = _service()

        async def scenario():
            session = await service.create_session(token="t")
            await service.update_session_stats(session.id, processing_time_ms=100)
            return await service.update_session_stats(session.id, processing_time_ms=250)

        session = _run(scenario())
        assert session.total_forms_processed == 2
        assert session.total_processing_time_ms == 350
        assert session.end_time is not None

    def test_create_failure_propagates(self):
        service = _service()
        service.store.create_session = AsyncMock(side_effect=PersistenceFailure("db down"))
        with pytest.raises(PersistenceFailure):
            _run(service.create_session(token="t"))


# ---------------------------------------------------------------------------
# Test: Form Lifecycle
# ---------------------------------------------------------------------------


class TestFormLifecycle:
    """Tests for status transitions, hazards and the audit trail."""

    def test_full_lifecycle(self):
        service = _service()
        analysis = _analysis(6, flagged_issues=detect_hazards("Hard hat: ✗"))

        async def scenario():
            session = await service.create_session(token="t")
            record = await service.create_form_record(
                session.id, FileMeta(filename="take5.jpg", size=2048, mime_type="image/jpeg"),
            )
            assert record.status == FormStatus.PROCESSING

            record = await service.record_ocr(record.id, OCR, 150)
            assert record.status == FormStatus.OCR_RECORDED
            assert record.ocr_provider == "vision"
            assert record.extracted_text_length == len(OCR.text)

            record = await service.record_ai(record.id, analysis, processing_time_ms=900)
            trail = await service.get_audit_trail(record.id)
            return record, trail

        record, trail = _run(scenario())

        assert record.status == FormStatus.COMPLETED
        assert record.risk_score == 6
        assert record.ai_analysis["formType"] == "JSA"
        assert record.hazards_payload[0]["ruleId"] == "ppe_hard_hat"
        assert record.recommendations_payload == ["Confirm hard hat is worn before work starts"]
        assert record.total_processing_time_ms is not None
        assert [h.hazard_type for h in record.hazards] == ["Hard hat"]

        assert [e.event_type for e in trail] == [
            "form_processing_started", "ocr_completed", "ai_analysis_completed",
        ]
        assert trail[0].event_details == {
            "filename": "take5.jpg", "fileSize": 2048, "mimeType": "image/jpeg",
        }
        assert trail[1].event_details["confidence"] == 88.5
        assert trail[2].event_details["hazardCount"] == 1
        assert all(e.server_instance == "local" for e in trail)

    def test_ocr_stage_is_optional(self):
        service = _service()

        async def scenario():
            record = await service.create_form_record(None)
            return await service.record_ai(record.id, _analysis(3))

        assert _run(scenario()).status == FormStatus.COMPLETED

    def test_completed_form_cannot_change(self):
        service = _service()

        async def scenario():
            record = await _completed_form(service, _analysis(3))
            with pytest.raises(InvalidStatusTransition):
                await service.record_ai(record.id, _analysis(3))
            with pytest.raises(InvalidStatusTransition):
                await service.mark_failed(record.id, "ocr", "late failure")

        _run(scenario())

    def test_mark_failed(self):
        service = _service()

        async def scenario():
            record = await service.create_form_record(None)
            record = await service.mark_failed(
                record.id, "ocr", "timeout", ocr_confidence=12.0,
            )
            return record, await service.get_audit_trail(record.id)

        record, trail = _run(scenario())
        assert record.status == FormStatus.FAILED
        assert record.error_details["stage"] == "ocr"
        assert record.error_details["error"] == "timeout"
        assert record.error_details["ocr_confidence"] == 12.0
        assert "timestamp" in record.error_details
        assert trail[-1].event_type == "processing_failed"

    def test_failed_form_is_terminal(self):
        service = _service()

        async def scenario():
            record = await service.create_form_record(None)
            await service.mark_failed(record.id, "ocr", "timeout")
            with pytest.raises(InvalidStatusTransition):
                await service.record_ocr(record.id, OCR)

        _run(scenario())

    def test_missing_form(self):
        service = _service()
        with pytest.raises(FormNotFound):
            _run(service.get_form(999))
        with pytest.raises(FormNotFound):
            _run(service.get_audit_trail(999))
        with pytest.raises(FormNotFound):
            _run(service.record_ocr(999, OCR))


class TestAuditEvents:
    """Tests for log_audit_event()."""

    def test_written(self):
        service = _service()
        assert _run(service.log_audit_event("custom", {"a": 1})) is True
        event = next(iter(service.store.audit_events.values()))
        assert event.event_details == {"a": 1}
        assert event.api_version == "0.1.0"

    def test_store_failure_returns_false(self):
        service = _service()
        service.store.add_audit_event = AsyncMock(side_effect=PersistenceFailure("db down"))
        assert _run(service.log_audit_event("custom")) is False

    def test_disabled(self, caplog):
        service = _service(audit_logging_enabled=False)
        with caplog.at_level(logging.DEBUG, logger="safety_forms.services.tracking"):
            assert _run(service.log_audit_event("custom")) is False
        assert service.store.audit_events == {}
        assert "dropping custom" in caplog.text


# ---------------------------------------------------------------------------
# Test: Corrections, Recommendations, Next Steps
# ---------------------------------------------------------------------------


class TestApplyCorrections:
    """Tests for reviewer edits."""

    def test_score_change_rederives_level_and_review(self):
        corrected, diff = apply_corrections(_analysis(4), {"riskScore": 9})
        assert corrected.risk_score == 9
        assert corrected.risk_level == "CRITICAL"
        assert corrected.requires_supervisor_review is True
        assert diff == {"riskScore": {"from": 4, "to": 9}}

    def test_snake_case_keys(self):
        corrected, diff = apply_corrections(_analysis(), {"work_location": "Bay 4"})
        assert corrected.work_location == "Bay 4"
        assert diff == {"workLocation": {"from": "Not specified", "to": "Bay 4"}}

    def test_score_clamped(self):
        corrected, _ = apply_corrections(_analysis(), {"riskScore": 15})
        assert corrected.risk_score == 10

    def test_unknown_keys_ignored(self):
        analysis = _analysis()
        corrected, diff = apply_corrections(analysis, {"riskLevel": "LOW", "flaggedIssues": []})
        assert corrected is analysis
        assert diff == {}

    def test_unchanged_values_not_in_diff(self):
        _, diff = apply_corrections(_analysis(), {"formType": "jsa", "summary": "Pump"})
        assert list(diff) == ["summary"]

    def test_explicit_review_flag_kept(self):
        corrected, _ = apply_corrections(
            _analysis(4), {"riskScore": 9, "requiresSupervisorReview": False},
        )
        assert corrected.requires_supervisor_review is False

    def test_unchanged_review_flag_still_wins(self):
        """Restating the current flag keeps it even when the score would flip it."""
        analysis = _analysis(8, requires_supervisor_review=True)
        corrected, diff = apply_corrections(
            analysis, {"riskScore": 2, "requiresSupervisorReview": True},
        )
        assert corrected.risk_level == "LOW"
        assert corrected.requires_supervisor_review is True
        assert list(diff) == ["riskScore"]

    def test_numeric_string_score(self):
        corrected, _ = apply_corrections(_analysis(4), {"riskScore": " 7 "})
        assert corrected.risk_score == 7

    def test_invalid_values_rejected(self):
        for corrections in (
            {"riskScore": "high"},
            {"riskScore": None},
            {"riskScore": True},
            {"riskScore": float("nan")},
            {"requiresSupervisorReview": "no"},
            {"workLocation": 42},
        ):
            with pytest.raises(InvalidCorrection):
                apply_corrections(_analysis(4), corrections)

    def test_completeness_change_rederives_review(self):
        corrected, _ = apply_corrections(_analysis(5), {"formCompleteness": "incomplete"})
        assert corrected.form_completeness == "INCOMPLETE"
        assert corrected.requires_supervisor_review is True


class TestRecommendations:
    def test_order_and_deduplication(self):
        analysis = _analysis(
            7,
            flagged_issues=[
                FlaggedIssue(description="No gloves", recommendation="Wear gloves"),
                FlaggedIssue(description="Torn gloves", recommendation="Wear gloves"),
                FlaggedIssue(description="Noise", recommendation="  "),
            ],
            compliance_issues=[ComplianceIssue(standard="AS 2865", action="Get a permit")],
            form_completeness="INCOMPLETE",
        )
        assert extract_recommendations(analysis) == [
            "Wear gloves",
            "Get a permit",
            "Immediate supervisor review required before work commences",
            "Complete all missing form fields before proceeding",
        ]

    def test_low_risk_complete_form(self):
        assert extract_recommendations(_analysis(2, form_completeness="COMPLETE")) == []


class TestNextSteps:
    def test_all_steps(self):
        analysis = _analysis(
            8,
            requires_supervisor_review=True,
            form_completeness="INCOMPLETE",
            missing_fields=["date", "signature"],
            flagged_issues=[FlaggedIssue(description="Live cable", severity="CRITICAL")],
            ppe_required=[PPERequirement(type="Gloves"), PPERequirement(type="Hard hat")],
        )
        steps = generate_next_steps(analysis)

        assert [s.action for s in steps] == [
            "supervisor_review",
            "complete_form",
            "address_critical_issues",
            "verify_ppe",
            "proceed_with_work",
        ]
        assert steps[1].description == "Complete missing form fields: date, signature"
        assert steps[2].priority == "CRITICAL"
        assert steps[3].description == "Ensure all required PPE is available: Gloves, Hard hat"
        assert steps[-1].required is False

    def test_missing_fields_unnamed(self):
        steps = generate_next_steps(_analysis(form_completeness="INCOMPLETE"))
        assert steps[0].description == "Complete missing form fields: various fields"

    def test_nothing_outstanding(self):
        steps = generate_next_steps(_analysis(2))
        assert [s.action for s in steps] == ["proceed_with_work"]


# ---------------------------------------------------------------------------
# Test: Confirm Flow
# ---------------------------------------------------------------------------


def _confirm_request(**overrides) -> ConfirmRequest:
    values = {
        "session_token": "device-1",
        "preview": PreviewData(
            analysis=_analysis(4, flagged_issues=detect_hazards("Hard hat: ✗")),
            ocr_result=OCR,
            file_info=FileMeta(filename="jsa.jpg", size=4096, mime_type="image/jpeg"),
            processing_time_ms=1500,
            ocr_processing_time_ms=400,
            analysis_processing_time_ms=1100,
        ),
        "user_corrections": {"riskScore": 9, "workLocation": "Bay 4"},
    }
    values.update(overrides)
    return ConfirmRequest(**values)


class TestConfirmAnalysis:
    """Tests for the second phase of analyze-then-confirm."""

    def test_persists_corrected_analysis(self):
        service = _service()

        async def scenario():
            confirmed = await service.confirm_analysis(_confirm_request())
            trail = await service.get_audit_trail(confirmed.record.id)
            session = await service.store.get_session_by_token("device-1")
            return confirmed, trail, session

        confirmed, trail, session = _run(scenario())
        record = confirmed.record

        assert record.status == FormStatus.COMPLETED
        assert record.risk_score == 9
        assert record.risk_level == "CRITICAL"
        assert record.requires_supervisor_review is True
        assert record.original_filename == "jsa.jpg"
        assert record.ocr_processing_time_ms == 400
        assert record.ai_processing_time_ms == 1100
        assert record.ai_analysis["workLocation"] == "Bay 4"
        assert record.ai_analysis["userCorrections"]["riskScore"] == {"from": 4, "to": 9}
        assert "confirmationTimestamp" in record.ai_analysis
        assert len(record.hazards) == 1

        assert sorted(confirmed.corrections) == ["riskScore", "workLocation"]
        assert confirmed.analysis.risk_score == 9

        assert [e.event_type for e in trail] == [
            "form_processing_started", "ocr_completed", "ai_analysis_completed", "form_confirmed",
        ]
        assert trail[-1].event_details["finalRiskScore"] == 9
        assert record.session_id == session.id
        assert session.total_forms_processed == 1

    def test_without_session(self):
        service = _service()
        confirmed = _run(service.confirm_analysis(_confirm_request(session_token=None)))
        assert confirmed.record.session_id is None
        assert confirmed.record.status == FormStatus.COMPLETED

    def test_session_lookup_failure_is_tolerated(self):
        service = _service()
        service.store.get_session_by_token = AsyncMock(side_effect=PersistenceFailure("down"))
        confirmed = _run(service.confirm_analysis(_confirm_request()))
        assert confirmed.record.session_id is None

    def test_write_failure_marks_form_failed(self):
        service = _service()
        service.record_ocr = AsyncMock(side_effect=PersistenceFailure("write failed"))

        with pytest.raises(PersistenceFailure):
            _run(service.confirm_analysis(_confirm_request()))

        record = service.store.forms[1]
        assert record.status == FormStatus.FAILED
        assert record.error_details["stage"] == "confirmation_error"

    def test_create_failure_raises(self):
        service = _service()
        service.store.create_form = AsyncMock(side_effect=PersistenceFailure("db down"))
        with pytest.raises(PersistenceFailure):
            _run(service.confirm_analysis(_confirm_request()))


# ---------------------------------------------------------------------------
# Test: Analytics
# ---------------------------------------------------------------------------


class TestAnalytics:
    """Tests for summary and hazard trends over the in-memory store."""

    def test_processing_summary(self):
        service = _service()

        async def scenario():
            session = await service.create_session(token="t")
            await _completed_form(
                service, _analysis(7, requires_supervisor_review=True), session.id,
            )
            await _completed_form(service, _analysis(3), session.id)
            failed = await service.create_form_record(session.id)
            await service.mark_failed(failed.id, "ocr", "timeout")
            await service.create_form_record(None)
            return await service.get_processing_summary(24)

        summary = _run(scenario())
        assert summary.total_forms == 4
        assert summary.completed_forms == 2
        assert summary.failed_forms == 1
        assert summary.processing_forms == 1
        assert summary.high_risk_forms == 1
        assert summary.supervisor_reviews == 1
        assert summary.average_risk_score == 5.0
        assert summary.unique_sessions == 1

    def test_hazard_trends(self):
        service = _service()

        async def scenario():
            await _completed_form(
                service, _analysis(5, flagged_issues=detect_hazards("Hard hat: ✗")),
            )
            await _completed_form(
                service, _analysis(5, flagged_issues=detect_hazards("Hard hat: ✗\nGloves: ✗")),
            )
            return await service.get_hazard_trends()

        trends = _run(scenario())
        assert [(t.hazard_type, t.count) for t in trends] == [("Hard hat", 2), ("Gloves", 1)]
        assert trends[0].average_severity == 3.0
        assert trends[1].average_severity == 2.0

    def test_recent_and_session_forms(self):
        service = _service()

        async def scenario():
            session = await service.create_session(token="t")
            await _completed_form(service, _analysis(3), session.id)
            await _completed_form(service, _analysis(3))
            return (
                await service.get_session_forms("t"),
                await service.get_recent_forms(limit=1),
                await service.get_session_forms("unknown"),
            )

        session_forms, recent, unknown = _run(scenario())
        assert len(session_forms) == 1
        assert [f.id for f in recent] == [2]
        assert unknown == []

    def test_health_check(self):
        service = _service()
        assert _run(service.health_check()) is True
        service.store.ping = AsyncMock(side_effect=PersistenceFailure("down"))
        assert _run(service.health_check()) is False
