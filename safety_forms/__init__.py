# =============================================================================
# Safety Forms Risk Service
# =============================================================================
# Turns photographed workplace-safety checklists into a structured risk
# assessment and decides whether a supervisor must review the form before
# work proceeds.
#
# Package structure:
#   safety_forms/
#   ├── api/          → FastAPI route handlers (forms, analytics)
#   ├── agents/       → Analysis pipeline (provider orchestrator, normalizer,
#   │                    fallback, form classifier, LangGraph form pipeline)
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 schemas (analysis, requests, responses)
#   ├── services/     → LLM providers, violation rules, OCR contract,
#   │                    processing lifecycle tracking
#   ├── config.py     → pydantic-settings configuration
#   ├── exceptions.py → analysis and tracking error families
#   └── main.py       → FastAPI app factory (uvicorn safety_forms.main:app)
# =============================================================================
