# =============================================================================
# Analytics API — Aggregates Over Processed Forms
# =============================================================================
#
# ENDPOINTS:
#   GET /analytics/summary?hours=24   — counts and averages over a window
#   GET /analytics/hazards?hours=168  — most frequent hazard types
#   GET /analytics/recent?limit=10    — newest form records
#
# All three read through the TrackingService; a store that is down answers
# 503 rather than an empty result, so dashboards can tell the difference.
# =============================================================================

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from safety_forms.api.deps import get_tracking
from safety_forms.exceptions import PersistenceFailure
from safety_forms.models.responses import (
    FormSummaryResponse,
    HazardTrendResponse,
    ProcessingSummaryResponse,
)
from safety_forms.services.tracking import TrackingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Analytics"])


@router.get(
    "/analytics/summary",
    response_model=ProcessingSummaryResponse,
    summary="Processing summary over a time window",
)
async def processing_summary(
    hours: int = Query(default=24, ge=1, le=24 * 365),
    tracking: TrackingService = Depends(get_tracking),
) -> ProcessingSummaryResponse:
    try:
        summary = await tracking.get_processing_summary(hours)
    except PersistenceFailure as e:
        logger.error("Processing summary unavailable: %s", e)
        raise HTTPException(status_code=503, detail=str(e)) from e
    return ProcessingSummaryResponse(window_hours=hours, **asdict(summary))


@router.get(
    "/analytics/hazards",
    response_model=list[HazardTrendResponse],
    summary="Most frequent hazard types over a time window",
)
async def hazard_trends(
    hours: int = Query(default=168, ge=1, le=24 * 365),
    limit: int = Query(default=20, ge=1, le=100),
    tracking: TrackingService = Depends(get_tracking),
) -> list[HazardTrendResponse]:
    try:
        trends = await tracking.get_hazard_trends(hours, limit=limit)
    except PersistenceFailure as e:
        logger.error("Hazard trends unavailable: %s", e)
        raise HTTPException(status_code=503, detail=str(e)) from e
    return [HazardTrendResponse(**asdict(trend)) for trend in trends]


@router.get(
    "/analytics/recent",
    response_model=list[FormSummaryResponse],
    summary="Most recently processed forms",
)
async def recent_forms(
    limit: int = Query(default=10, ge=1, le=100),
    tracking: TrackingService = Depends(get_tracking),
) -> list[FormSummaryResponse]:
    try:
        forms = await tracking.get_recent_forms(limit)
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return [FormSummaryResponse.model_validate(form) for form in forms]
