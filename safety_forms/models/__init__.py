# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Transient schemas exchanged by the pipeline and the HTTP layer:
#   - analysis.py:   AnalysisResult (camelCase wire format) and its parts
#   - processing.py: OCR result, timings, FormProcessingResult
#   - requests.py:   confirm-step request body
#   - responses.py:  HTTP response bodies
#
# These are SEPARATE from the ORM tables in safety_forms/db/models.py.
# =============================================================================
