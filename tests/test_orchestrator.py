# =============================================================================
# Unit Tests — Form Processing Pipeline
# =============================================================================
#
# Runs the compiled LangGraph pipeline with a fake OCR service and fake
# providers. Tracked runs use the in-memory store.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

from safety_forms.agents.analyst import ProviderOrchestrator
from safety_forms.agents.orchestrator import (
    FormProcessor,
    apply_contextual_rescore,
    calculate_contextual_risk_score,
)
from safety_forms.config import Settings
from safety_forms.db.models import FormStatus
from safety_forms.exceptions import PersistenceFailure
from safety_forms.models.analysis import AnalysisResult, EscalationDetail
from safety_forms.models.processing import BatchItem, FileMeta, OCRResult
from safety_forms.services.llm import LLMResponse
from safety_forms.services.tracking import TrackingService
from safety_forms.services.tracking_store import InMemoryTrackingStore

TAKE5_TEXT = "Take 5 pre-start check\nTask: sweep workshop floor\nAll tools stored"


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _settings(**overrides) -> Settings:
    values = {"min_text_length": 10, "batch_delay_seconds": 0.0, "batch_max_concurrent": 1}
    values.update(overrides)
    return Settings(**values)


def _ocr(text: str = TAKE5_TEXT, confidence: float = 92.0, error: Exception | None = None):
    service = AsyncMock()
    service.extract_text = AsyncMock(
        return_value=OCRResult(text=text, confidence=confidence, provider="fake-ocr"),
        side_effect=error,
    )
    return service


class FakeProvider:
    def __init__(self, reply: dict):
        self.name = "fake"
        self.complete = AsyncMock(
            return_value=LLMResponse(
                content=json.dumps(reply), model="fake", input_tokens=0, output_tokens=0,
            )
        )


def _processor(ocr=None, reply=None, tracking=None, **settings) -> FormProcessor:
    reply = reply or {"formType": "TAKE5", "riskScore": 3, "formCompleteness": "COMPLETE"}
    return FormProcessor(
        ProviderOrchestrator([FakeProvider(reply)]),
        ocr_service=ocr if ocr is not None else _ocr(),
        tracking=tracking,
        settings=_settings(**settings),
    )


def _analysis(score: int = 5, **fields) -> AnalysisResult:
    return AnalysisResult(
        form_type="JSA",
        risk_score=score,
        escalation=EscalationDetail(base_score=score),
        **fields,
    )


# ---------------------------------------------------------------------------
# Test: Contextual Re-Scoring
# ---------------------------------------------------------------------------


class TestContextualRescore:
    """Tests for OCR-confidence and completeness adjustments."""

    def test_mobile_low_confidence_scenario(self):
        ocr = OCRResult(text="x", confidence=25)
        metadata = {"capture_method": "mobile_camera"}
        assert calculate_contextual_risk_score(_analysis(5), ocr, metadata) == 7

        result = apply_contextual_rescore(_analysis(5), ocr, metadata)
        assert result.risk_score == 7
        assert result.risk_level == "HIGH"
        assert result.escalation.contextual_escalation == 2
        assert result.escalation.contextual_reasons == ["very_low_ocr_confidence"]

    def test_low_confidence(self):
        ocr = OCRResult(text="x", confidence=45)
        assert calculate_contextual_risk_score(_analysis(3), ocr) == 4

    def test_mobile_moderate_confidence(self):
        ocr = OCRResult(text="x", confidence=70)
        assert calculate_contextual_risk_score(
            _analysis(3), ocr, {"capture_method": "mobile_camera"},
        ) == 4
        assert calculate_contextual_risk_score(_analysis(3), ocr, {"capture_method": "scanner"}) == 3

    def test_incomplete_with_missing_fields(self):
        ocr = OCRResult(text="x", confidence=95)
        analysis = _analysis(
            4, form_completeness="INCOMPLETE", missing_fields=["date", "signature", "supervisor"],
        )
        assert calculate_contextual_risk_score(analysis, ocr) == 6

    def test_capped_at_ten(self):
        ocr = OCRResult(text="x", confidence=10)
        analysis = _analysis(9, form_completeness="INCOMPLETE")
        assert calculate_contextual_risk_score(analysis, ocr) == 10

    def test_no_adjustment_returns_same_object(self):
        analysis = _analysis(3)
        ocr = OCRResult(text="x", confidence=95)
        assert apply_contextual_rescore(analysis, ocr) is analysis

    def test_review_flag_never_cleared(self):
        analysis = _analysis(2, requires_supervisor_review=True)
        result = apply_contextual_rescore(analysis, OCRResult(text="x", confidence=45))
        assert result.requires_supervisor_review is True


# ---------------------------------------------------------------------------
# Test: Single Form
# ---------------------------------------------------------------------------


class TestProcessFormBytes:
    """Tests for the single-form pipeline."""

    def test_success(self):
        result = _run(_processor().process_form_bytes(b"image", {"capture_method": "scanner"}))

        assert result.success is True
        assert result.form_type == "TAKE5"
        assert result.risk_score == 3
        assert result.analysis.risk_level == "LOW"
        assert result.ocr_result.provider == "fake-ocr"
        assert result.error is None
        assert result.timings.total_ms >= result.timings.analysis_ms

    def test_ocr_context_passed(self):
        ocr = _ocr()
        _run(_processor(ocr=ocr).process_form_bytes(
            b"x" * 1000, {"capture_method": "mobile_camera", "ocr_provider": "vision"},
        ))
        image, hint, context = ocr.extract_text.await_args.args
        assert hint == "vision"
        assert context["capture_method"] == "mobile_camera"
        assert context["image_quality"] == 0.4

    def test_insufficient_text(self):
        result = _run(_processor(ocr=_ocr(text="  short  ")).process_form_bytes(b"image"))

        assert result.success is False
        assert result.error.stage == "ocr_validation"
        assert result.ocr_result.text == "  short  "
        assert result.risk_score == 5
        assert result.analysis.requires_supervisor_review is True

    def test_ocr_exception(self):
        result = _run(
            _processor(ocr=_ocr(error=RuntimeError("vision API down"))).process_form_bytes(b"i")
        )
        assert result.success is False
        assert result.error.stage == "ocr"
        assert "vision API down" in result.error.message
        assert result.ocr_result is None

    def test_no_ocr_service(self):
        processor = FormProcessor(ProviderOrchestrator([]), settings=_settings())
        result = _run(processor.process_form_bytes(b"image"))
        assert result.success is False
        assert result.error.stage == "ocr"

    def test_analysis_exception(self):
        analyzer = AsyncMock()
        analyzer.analyze = AsyncMock(side_effect=RuntimeError("boom"))
        processor = FormProcessor(analyzer, ocr_service=_ocr(), settings=_settings())
        result = _run(processor.process_form_bytes(b"image"))

        assert result.success is False
        assert result.error.stage == "ai_analysis"
        assert result.ocr_result is not None

    def test_caller_form_type_hint(self):
        reply = {"formType": "UNKNOWN", "riskScore": 3}
        processor = FormProcessor(
            ProviderOrchestrator([FakeProvider(reply)]), ocr_service=_ocr(), settings=_settings(),
        )
        result = _run(processor.process_form_bytes(b"image", {"form_type": "permit"}))
        # The provider declined (UNKNOWN), the fallback ran, the hint fills the type
        assert result.analysis.metadata.fallback is True
        assert result.form_type == "PERMIT"

    def test_low_confidence_rescored(self):
        processor = _processor(ocr=_ocr(confidence=25))
        result = _run(processor.process_form_bytes(b"image", {"capture_method": "mobile_camera"}))
        assert result.risk_score == 5
        assert result.analysis.escalation.contextual_reasons == ["very_low_ocr_confidence"]

    def test_process_form_dispatches_on_path(self, tmp_path):
        image = tmp_path / "form.jpg"
        image.write_bytes(b"image-bytes")
        ocr = _ocr()
        result = _run(_processor(ocr=ocr).process_form(image))

        assert result.success is True
        assert ocr.extract_text.await_args.args[0] == b"image-bytes"

    def test_missing_path(self, tmp_path):
        result = _run(_processor().process_form_path(tmp_path / "missing.jpg"))
        assert result.success is False
        assert result.error.stage == "unexpected_error"


# ---------------------------------------------------------------------------
# Test: Batch
# ---------------------------------------------------------------------------


class TestProcessBatch:
    """Tests for windowed batch processing."""

    def test_order_and_isolation(self):
        ocr = AsyncMock()
        ocr.extract_text = AsyncMock(
            side_effect=[
                OCRResult(text=TAKE5_TEXT, confidence=90),
                RuntimeError("blurred"),
                OCRResult(text=TAKE5_TEXT, confidence=90),
            ]
        )
        items = [
            BatchItem(image=b"a", metadata={"filename": "a.jpg"}),
            BatchItem(image=b"b", metadata={"filename": "b.jpg"}),
            BatchItem(image=b"c", metadata={"filename": "c.jpg"}),
        ]
        results = _run(_processor(ocr=ocr).process_batch(items, max_concurrent=1))

        assert [r.index for r in results] == [0, 1, 2]
        assert [r.filename for r in results] == ["a.jpg", "b.jpg", "c.jpg"]
        assert [r.result.success for r in results] == [True, False, True]

    def test_windows_run_concurrently(self):
        items = [BatchItem(image=bytes([i])) for i in range(5)]
        results = _run(_processor().process_batch(items, max_concurrent=2, delay_seconds=0))
        assert len(results) == 5
        assert all(r.result.success for r in results)

    def test_empty_batch(self):
        assert _run(_processor().process_batch([])) == []


# ---------------------------------------------------------------------------
# Test: Tracked Processing
# ---------------------------------------------------------------------------


class TestProcessUpload:
    """Tests for process_upload() against the in-memory store."""

    def test_records_each_stage(self):
        store = InMemoryTrackingStore()
        processor = _processor(tracking=TrackingService(store))
        result = _run(processor.process_upload(
            b"image", {}, file_meta=FileMeta(filename="f.jpg", size=5), session_token="tok-1",
        ))

        assert result.success is True
        assert result.session_token == "tok-1"
        record = store.forms[result.form_id]
        assert record.status == FormStatus.COMPLETED
        assert record.ocr_provider == "fake-ocr"
        assert record.risk_score == result.risk_score
        assert store.sessions[result.session_id].total_forms_processed == 1

        events = [e.event_type for e in _run(store.list_audit_events(result.form_id))]
        assert events == ["form_processing_started", "ocr_completed", "ai_analysis_completed"]

    def test_failure_marks_record_failed(self):
        store = InMemoryTrackingStore()
        processor = _processor(ocr=_ocr(text="tiny"), tracking=TrackingService(store))
        result = _run(processor.process_upload(b"image", {}))

        assert result.success is False
        record = store.forms[result.form_id]
        assert record.status == FormStatus.FAILED
        assert record.error_details["stage"] == "ocr_validation"
        assert record.ocr_provider == "fake-ocr"

    def test_store_down_still_processes(self):
        store = InMemoryTrackingStore()
        store.create_session = AsyncMock(side_effect=PersistenceFailure("db down"))
        store.create_form = AsyncMock(side_effect=PersistenceFailure("db down"))
        processor = _processor(tracking=TrackingService(store))
        result = _run(processor.process_upload(b"image", {}, session_token="tok"))

        assert result.success is True
        assert result.form_id is None
        assert result.session_id is None

    def test_preview_persists_nothing(self):
        store = InMemoryTrackingStore()
        processor = _processor(tracking=TrackingService(store))
        result = _run(processor.preview(b"image"))

        assert result.success is True
        assert store.forms == {}
        assert store.audit_events == {}
