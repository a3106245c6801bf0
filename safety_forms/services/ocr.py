# =============================================================================
# OCR Collaborator Contract
# =============================================================================
#
# Text extraction from images is an external service. The form processor
# only depends on this protocol; a deployment wires in a concrete client
# (a cloud vision API, a local engine) through create_app(ocr_service=...).
#
# DESIGN DECISION: Protocol (structural typing) over ABC, matching the
# LLMProvider and TrackingStore contracts.
# =============================================================================

from __future__ import annotations

from typing import Any, Protocol

from safety_forms.models.processing import OCRResult


class OCRService(Protocol):
    """Anything with an async `extract_text()` returning an OCRResult."""

    async def extract_text(
        self,
        image: bytes,
        provider_hint: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> OCRResult:
        """
        Extract text from image bytes.

        Args:
            image: Raw image bytes.
            provider_hint: Preferred OCR engine, if the service has several.
            context: Capture hints: capture_method, device_type,
                image_quality (0.1–1.0, see calculate_image_quality).

        Returns:
            OCRResult with text and a 0–100 confidence.
        """
        ...


def calculate_image_quality(image: bytes, capture_method: str | None = None) -> float:
    """
    Rough 0.1–1.0 quality hint for the OCR service.

    Starts at 0.7, adjusted by file size (larger photos usually carry more
    detail) and lowered by 0.1 for mobile camera captures.
    """
    quality = 0.7
    size_mb = len(image) / (1024 * 1024)
    if size_mb > 5:
        quality += 0.2
    elif size_mb > 2:
        quality += 0.1
    elif size_mb < 0.5:
        quality -= 0.2

    if capture_method == "mobile_camera":
        quality -= 0.1

    return round(max(0.1, min(1.0, quality)), 2)
