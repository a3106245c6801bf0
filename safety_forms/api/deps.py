# =============================================================================
# Request Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# Provides the collaborators and request context the form routes need:
#
# 1. get_processor() / require_ocr() — the FormProcessor built at startup
# 2. get_tracking()                   — the TrackingService built at startup
# 3. get_session_token()              — X-Session-Token header, or a new uuid4
# 4. get_device_info() / get_location_data() — capture context from headers
#
# DESIGN DECISION: Collaborators live on app.state.
# create_app() builds the processor and tracking service once; routes reach
# them through these dependencies. Tests either pass fakes to create_app()
# or swap a dependency via app.dependency_overrides.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import Depends, Header, HTTPException, Request

from safety_forms.agents.orchestrator import FormProcessor
from safety_forms.db.models import utcnow
from safety_forms.services.tracking import TrackingService

logger = logging.getLogger(__name__)


def get_processor(request: Request) -> FormProcessor:
    return request.app.state.processor


def get_tracking(request: Request) -> TrackingService:
    return request.app.state.tracking


def require_ocr(processor: FormProcessor = Depends(get_processor)) -> FormProcessor:
    """
    The processor, provided an OCR collaborator is configured.

    Raises:
        HTTPException 503: No OCR service, so images cannot be read.
    """
    if processor.ocr_service is None:
        raise HTTPException(
            status_code=503,
            detail="OCR service is not configured. Image processing is unavailable.",
        )
    return processor


def get_session_token(
    x_session_token: str | None = Header(default=None),
) -> str:
    """Client-held session token, or a fresh one for a new session."""
    return x_session_token or str(uuid.uuid4())


def get_device_info(request: Request) -> dict[str, Any]:
    headers = request.headers
    return {
        "userAgent": headers.get("user-agent"),
        "ip": request.client.host if request.client else None,
        "acceptLanguage": headers.get("accept-language"),
        "origin": headers.get("origin"),
        "referer": headers.get("referer"),
        "timestamp": utcnow().isoformat(),
    }


def get_location_data(
    x_location_lat: str | None = Header(default=None),
    x_location_lng: str | None = Header(default=None),
    x_location_accuracy: str | None = Header(default=None),
) -> dict[str, Any] | None:
    """Device location from X-Location-* headers; None when absent or unparsable."""
    if not x_location_lat or not x_location_lng:
        return None
    try:
        latitude = float(x_location_lat)
        longitude = float(x_location_lng)
    except ValueError:
        logger.debug(
            "Ignoring unparsable location headers: %s, %s", x_location_lat, x_location_lng,
        )
        return None
    return {
        "latitude": latitude,
        "longitude": longitude,
        "accuracy": x_location_accuracy,
        "timestamp": utcnow().isoformat(),
    }
