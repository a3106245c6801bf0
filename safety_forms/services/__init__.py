# =============================================================================
# Services Package — Business Logic
# =============================================================================
#   - llm.py:            text-analysis backends (Anthropic, OpenAI-compatible)
#   - violations.py:     checkbox-violation rules and the escalation engine
#   - ocr.py:            OCR collaborator protocol and image-quality hint
#   - tracking.py:       processing lifecycle, audit trail, confirm step
#   - tracking_store.py: persistence protocol (PostgreSQL, in-memory)
# =============================================================================
