# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - forms.py:     upload, analyze/confirm, batch, and form/session reads
#   - analytics.py: processing summary, hazard trends, recent forms
#   - deps.py:      shared dependencies (processor, tracking, OCR, session token)
# =============================================================================
