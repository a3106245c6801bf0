# =============================================================================
# Unit Tests — Form Classifier & OCR Helpers
# =============================================================================

from __future__ import annotations

from safety_forms.agents.classifier import (
    FORM_TYPES,
    detect_form_type,
    is_section_header,
    preprocess_text_for_ai,
)
from safety_forms.services.ocr import calculate_image_quality


class TestDetectFormType:
    """Tests for keyword-based form type detection."""

    def test_swms(self):
        assert detect_form_type("SAFE WORK METHOD STATEMENT - Roof repairs") == "SWMS"

    def test_jsa(self):
        assert detect_form_type("Job Safety Analysis for pump change") == "JSA"

    def test_job_hazard_analysis_resolves_to_jsa(self):
        assert detect_form_type("Job Hazard Analysis") == "JSA"

    def test_jha_abbreviation(self):
        assert detect_form_type("JHA No. 42") == "JHA"

    def test_take5(self):
        assert detect_form_type("TAKE 5 personal risk check") == "TAKE5"
        assert detect_form_type("Take5") == "TAKE5"

    def test_permit(self):
        assert detect_form_type("Hot work permit #118") == "PERMIT"

    def test_inspection(self):
        assert detect_form_type("Forklift pre-start inspection") == "INSPECTION"

    def test_hazard_assessment(self):
        assert detect_form_type("Site risk assessment") == "HAZARD_ASSESSMENT"

    def test_generic_safety_form(self):
        assert detect_form_type("PPE and hazard checklist") == "SAFETY_FORM"

    def test_unknown(self):
        assert detect_form_type("Lunch order: 2 pies") == "UNKNOWN"
        assert detect_form_type("") == "UNKNOWN"
        assert detect_form_type(None) == "UNKNOWN"

    def test_results_are_known_types(self):
        for text in ("SWMS", "JSA", "random words", "hazard risk"):
            assert detect_form_type(text) in FORM_TYPES


class TestPreprocessText:
    """Tests for restructuring OCR text for the prompt."""

    def test_header_and_prefix(self):
        result = preprocess_text_for_ai("HAZARDS:\nNoise   from saw", "JSA")
        assert result == (
            "[FORM_TYPE: JSA]\n[TEXT_LENGTH: 25 characters]\n\n"
            "[SECTION: HAZARDS:] Noise from saw"
        )

    def test_blank_lines_dropped(self):
        result = preprocess_text_for_ai("line one\n\n\nline two", "TAKE5")
        assert result.endswith("line one line two")

    def test_several_sections(self):
        text = "1. Task steps\nDig\n2. Controls\nBarricade"
        body = preprocess_text_for_ai(text, "SWMS").split("\n\n", 1)[1]
        assert body.splitlines() == [
            "[SECTION: 1. Task steps] Dig",
            "[SECTION: 2. Controls] Barricade",
        ]

    def test_empty(self):
        assert preprocess_text_for_ai("", "JSA") == ""

    def test_section_header_detection(self):
        assert is_section_header("EMERGENCY PROCEDURES:")
        assert is_section_header("3. Isolation")
        assert not is_section_header("the crew will sweep up")
        assert not is_section_header("x" * 101)


class TestImageQuality:
    """Tests for the OCR quality hint."""

    def test_small_image(self):
        assert calculate_image_quality(b"x" * 1000) == 0.5

    def test_mid_size_image(self):
        assert calculate_image_quality(b"x" * (1024 * 1024)) == 0.7

    def test_large_image(self):
        assert calculate_image_quality(b"x" * (3 * 1024 * 1024)) == 0.8

    def test_mobile_capture_lowers_quality(self):
        assert calculate_image_quality(b"x" * 1000, "mobile_camera") == 0.4
