# =============================================================================
# Application Entry Point — FastAPI App Factory
# =============================================================================
#
# Run with:  uvicorn safety_forms.main:app
#
# DESIGN DECISION: App factory with injectable collaborators.
# create_app() builds the provider orchestrator, tracking service and form
# processor once and stores them on app.state. The OCR engine is an external
# collaborator (see services/ocr.py) and is passed in by the deployment;
# without one the OCR-dependent routes answer 503 while confirm, lookups
# and analytics keep working. Tests pass fakes for all three.
#
# DESIGN DECISION: The database engine is only disposed, never created, here.
# The engine is lazy (db/engine.py), so the in-memory tracking backend never
# opens a connection.
# =============================================================================

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from safety_forms.agents.analyst import ProviderOrchestrator
from safety_forms.agents.orchestrator import FormProcessor
from safety_forms.api import analytics, forms
from safety_forms.config import Settings, settings as default_settings
from safety_forms.db.engine import dispose_engine
from safety_forms.models.responses import HealthResponse
from safety_forms.services.llm import LLMProvider, build_providers
from safety_forms.services.ocr import OCRService
from safety_forms.services.tracking import TrackingService
from safety_forms.services.tracking_store import (
    SqlAlchemyTrackingStore,
    TrackingStore,
    get_tracking_store,
)

logger = logging.getLogger(__name__)


def create_app(
    ocr_service: OCRService | None = None,
    providers: list[LLMProvider] | None = None,
    store: TrackingStore | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        ocr_service: Text extraction collaborator. Optional.
        providers: Analysis backends in priority order. Defaults to
            build_providers(settings).
        store: Tracking persistence. Defaults to get_tracking_store(settings).
        settings: Defaults to the module-level settings.
    """
    settings = settings or default_settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if providers is None:
        providers = build_providers(settings)
    if store is None:
        store = get_tracking_store(settings)

    analyzer = ProviderOrchestrator(
        providers,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )
    tracking = TrackingService(store, settings)
    processor = FormProcessor(
        analyzer, ocr_service=ocr_service, tracking=tracking, settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Starting %s v%s (providers: %s, OCR: %s, tracking: %s)",
            settings.app_name,
            settings.app_version,
            ", ".join(analyzer.provider_names) or "none, rule-based fallback only",
            "configured" if ocr_service is not None else "not configured",
            type(store).__name__,
        )
        yield
        logger.info("Shutting down %s", settings.app_name)
        if isinstance(store, SqlAlchemyTrackingStore):
            await dispose_engine()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Risk assessment for photographed workplace safety forms: OCR, "
            "multi-provider analysis with rule-based escalation, and a "
            "tracked processing lifecycle."
        ),
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.processor = processor
    app.state.tracking = tracking

    app.include_router(forms.router)
    app.include_router(analytics.router)

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Service and tracking store health",
    )
    async def health() -> HealthResponse:
        connected = await tracking.health_check()
        return HealthResponse(
            status="ok" if connected else "degraded",
            version=settings.app_version,
            service=settings.app_name,
            tracking="connected" if connected else "unavailable",
            providers=analyzer.provider_names,
            ocr_configured=ocr_service is not None,
        )

    return app


app = create_app()
