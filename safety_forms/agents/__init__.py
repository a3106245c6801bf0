# =============================================================================
# Agents Package — Analysis Pipeline
# =============================================================================
#   - orchestrator.py: LangGraph pipeline (ocr → classify → analyse → rescore)
#     and the FormProcessor entry points, including batch mode
#   - classifier.py:   form-type detection and text restructuring
#   - analyst.py:      ProviderOrchestrator, ordered fallthrough over backends
#   - normalizer.py:   provider reply → AnalysisResult, plus rule escalation
#   - fallback.py:     rule-only analysis when every backend declines
# =============================================================================
