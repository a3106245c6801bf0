# =============================================================================
# Provider Orchestrator — Ordered Fallthrough Over Analysis Backends
# =============================================================================
#
# Sends one structured prompt to each configured backend in a fixed order
# and accepts the first reply that normalizes into a usable AnalysisResult.
#
#   deepseek ──✗──▶ openai ──✗──▶ anthropic ──✗──▶ rule-based fallback
#                     │
#                     ✓ (first valid result wins, no further calls)
#
# A backend "declines" when the call raises (network, auth, quota,
# timeout) or when its reply cannot be normalized, including a reply whose
# formType is empty or UNKNOWN. Every decline is recorded as a
# ProviderAttempt on the result's metadata.
#
# DESIGN DECISION: analyze() never raises.
# If every backend declines, or none is configured, the fallback analyzer's
# result is returned. Callers never have to handle "no analysis produced".
#
# DESIGN DECISION: Explicitly constructed, no global provider list.
# The orchestrator is built once at startup from build_providers() and
# passed to the form processor; tests pass their own fakes.
# =============================================================================

from __future__ import annotations

import logging
import time
from typing import Any

from safety_forms.agents.fallback import fallback_analysis
from safety_forms.agents.normalizer import normalize_response
from safety_forms.exceptions import (
    AllBackendsFailed,
    AnalysisError,
    BackendUnavailable,
    MalformedResponse,
)
from safety_forms.models.analysis import (
    UNKNOWN_FORM_TYPE,
    AnalysisMetadata,
    AnalysisResult,
    ProviderAttempt,
)
from safety_forms.services.llm import LLMProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = (
    "You are a workplace health and safety expert reviewing completed "
    "safety forms (SWMS, JSA, JHA, Take 5, permits, inspections). Identify "
    "hazards, missing or inadequate PPE, uncontrolled risks, incomplete "
    "procedures, documentation gaps and regulatory non-compliance.\n\n"
    "Rules:\n"
    "- Base your assessment ONLY on the form content provided\n"
    "- A box marked ✗, ☐, X or NO means the control was NOT in place\n"
    "- Set isControlled to true only when the form shows the control is in place\n"
    "- Respond with a single JSON object and nothing else"
)

RESPONSE_SCHEMA = """{
  "formType": "SWMS|JSA|JHA|TAKE5|PERMIT|INSPECTION|HAZARD_ASSESSMENT|SAFETY_FORM",
  "formTypeConfidence": "LOW|MEDIUM|HIGH",
  "riskScore": 1-10,
  "riskLevel": "LOW|MEDIUM|HIGH|CRITICAL",
  "flaggedIssues": [
    {
      "category": "PPE|HAZARD|PROCEDURE|DOCUMENTATION|CONTROL_MEASURE",
      "type": "Short hazard type",
      "description": "Brief description",
      "severity": "LOW|MEDIUM|HIGH|CRITICAL",
      "recommendation": "Specific action to take",
      "location": "Where on the form",
      "standard": "Standard or regulation, if any",
      "actionPriority": "LOW|MEDIUM|HIGH|CRITICAL",
      "isControlled": true
    }
  ],
  "hrwFactors": [{"category": "High-risk work category", "description": "..."}],
  "ppeRequired": [{"type": "PPE item", "required": true, "status": "CONFIRMED|MISSING|UNCLEAR"}],
  "complianceIssues": [
    {
      "standard": "Regulation/Standard name",
      "issue": "Description of non-compliance",
      "action": "Required corrective action",
      "severity": "LOW|MEDIUM|HIGH|CRITICAL"
    }
  ],
  "riskAssessment": {"initialRisk": "...", "residualRisk": "...", "consequence": "...", "likelihood": "..."},
  "summary": "Brief overall assessment",
  "requiresSupervisorReview": true,
  "formCompleteness": "COMPLETE|PARTIALLY_COMPLETE|INCOMPLETE",
  "missingFields": ["..."],
  "positiveFindings": ["..."],
  "workLocation": "...",
  "workActivity": "...",
  "workerDetails": {"signaturesPresent": true, "supervisorApproval": false, "dateCompleted": "..."},
  "emergencyProcedures": {"mentioned": true, "details": ["..."]}
}"""


def build_prompt(text: str, form_type: str | None = None) -> str:
    """User message: schema instructions followed by the form content."""
    label = form_type if form_type and form_type != UNKNOWN_FORM_TYPE else "safety"
    return (
        f"Analyze this {label} form and return a JSON response with the "
        f"following structure:\n\n{RESPONSE_SCHEMA}\n\n"
        f"Form Content:\n{text}\n\n"
        "Focus on:\n"
        "1. Missing or inadequate PPE\n"
        "2. Uncontrolled hazards and high-risk work\n"
        "3. Incomplete procedures and missing signatures\n"
        "4. Documentation gaps\n"
        "5. Regulatory compliance"
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ProviderOrchestrator:
    """
    Tries each backend in order until one yields a usable result.

    Args:
        providers: Backends in priority order. May be empty.
        temperature: Sampling temperature for every call.
        max_tokens: Output token limit for every call.
    """

    def __init__(
        self,
        providers: list[LLMProvider],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self.providers = list(providers)
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def provider_names(self) -> list[str]:
        return [provider.name for provider in self.providers]

    async def analyze(
        self,
        text: str,
        form_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        source_text: str | None = None,
    ) -> AnalysisResult:
        """
        Analyze form text, falling through backends, never raising.

        Args:
            text: Prompt content (usually the restructured form text).
            form_type: Detected form type, used to label the prompt.
            metadata: Caller context copied onto the result's metadata.
            source_text: Raw extracted text for rule detection. Defaults
                to `text`.
        """
        started = time.perf_counter()
        detection_text = source_text if source_text is not None else text
        prompt = build_prompt(text, form_type)
        attempts: list[ProviderAttempt] = []

        for provider in self.providers:
            attempt_started = time.perf_counter()
            try:
                result = await self._try_provider(provider, prompt, detection_text)
            except AnalysisError as e:
                duration_ms = int((time.perf_counter() - attempt_started) * 1000)
                attempts.append(
                    ProviderAttempt(
                        provider=provider.name,
                        success=False,
                        error=str(e),
                        duration_ms=duration_ms,
                    )
                )
                logger.warning(
                    "Provider %s declined after %dms: %s",
                    provider.name, duration_ms, e,
                )
                continue

            duration_ms = int((time.perf_counter() - attempt_started) * 1000)
            attempts.append(
                ProviderAttempt(provider=provider.name, success=True, duration_ms=duration_ms)
            )
            total_ms = int((time.perf_counter() - started) * 1000)
            logger.info(
                "Provider %s succeeded: formType=%s, riskScore=%d (%dms, %d attempts)",
                provider.name, result.form_type, result.risk_score,
                total_ms, len(attempts),
            )
            return result.model_copy(
                update={
                    "metadata": AnalysisMetadata(
                        provider=provider.name,
                        processing_time_ms=total_ms,
                        attempts=attempts,
                        context=metadata or {},
                    )
                }
            )

        failure = AllBackendsFailed(
            [f"{a.provider}: {a.error}" for a in attempts]
        )
        logger.error("%s", failure)

        result = fallback_analysis(detection_text, error=str(failure))
        fallback_meta = result.metadata.model_copy(
            update={
                "processing_time_ms": int((time.perf_counter() - started) * 1000),
                "attempts": attempts,
                "context": metadata or {},
            }
        )
        return result.model_copy(update={"metadata": fallback_meta})

    async def _try_provider(
        self, provider: LLMProvider, prompt: str, detection_text: str,
    ) -> AnalysisResult:
        """One backend call. Raises an AnalysisError subclass on decline."""
        logger.info("Requesting analysis from provider %s", provider.name)
        try:
            response = await provider.complete(
                messages=[{"role": "user", "content": prompt}],
                system=SYSTEM_PROMPT,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except Exception as e:
            raise BackendUnavailable(provider.name, f"{type(e).__name__}: {e}") from e

        try:
            result = normalize_response(response.content, detection_text)
        except AnalysisError:
            raise
        except Exception as e:
            raise MalformedResponse(
                f"Unusable response from {provider.name}: {type(e).__name__}: {e}"
            ) from e
        if result.form_type in ("", UNKNOWN_FORM_TYPE):
            raise MalformedResponse("Response formType is UNKNOWN")
        return result
