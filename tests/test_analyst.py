# =============================================================================
# Unit Tests — Provider Orchestrator & Provider Factory
# =============================================================================
#
# Uses fake providers (a name plus an AsyncMock `complete`), so no API keys
# or network access are needed.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

from safety_forms.agents.analyst import SYSTEM_PROMPT, ProviderOrchestrator, build_prompt
from safety_forms.agents.fallback import FALLBACK_PROVIDER
from safety_forms.config import Settings
from safety_forms.services.llm import LLMResponse, build_providers

FORM_TEXT = "Job Safety Analysis\nTask: replace pump seal\nHard hat: ✗"


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _response(payload: dict | str) -> LLMResponse:
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return LLMResponse(content=content, model="fake-model", input_tokens=100, output_tokens=50)


class FakeProvider:
    def __init__(self, name: str, reply=None, error: Exception | None = None):
        self.name = name
        self.complete = AsyncMock(
            return_value=_response(reply) if reply is not None else None,
            side_effect=error,
        )


GOOD_REPLY = {"formType": "JSA", "riskScore": 4, "summary": "Pump maintenance"}


# ---------------------------------------------------------------------------
# Test: Fallthrough
# ---------------------------------------------------------------------------


class TestProviderOrchestrator:
    """Tests for ordered fallthrough across providers."""

    def test_first_provider_wins(self):
        first = FakeProvider("deepseek", GOOD_REPLY)
        second = FakeProvider("openai", GOOD_REPLY)
        result = _run(ProviderOrchestrator([first, second]).analyze(FORM_TEXT))

        assert result.metadata.provider == "deepseek"
        assert result.metadata.fallback is False
        second.complete.assert_not_awaited()

    def test_falls_through_on_exception(self):
        first = FakeProvider("deepseek", error=TimeoutError("timed out"))
        second = FakeProvider("openai", GOOD_REPLY)
        result = _run(ProviderOrchestrator([first, second]).analyze(FORM_TEXT))

        assert result.metadata.provider == "openai"
        attempts = result.metadata.attempts
        assert [(a.provider, a.success) for a in attempts] == [
            ("deepseek", False), ("openai", True),
        ]
        assert "TimeoutError" in attempts[0].error

    def test_falls_through_on_malformed_reply(self):
        first = FakeProvider("deepseek", "Sorry, I can't read this form.")
        second = FakeProvider("anthropic", GOOD_REPLY)
        result = _run(ProviderOrchestrator([first, second]).analyze(FORM_TEXT))
        assert result.metadata.provider == "anthropic"

    def test_third_provider_after_two_malformed(self):
        """Backends are tried strictly in order; each decline is recorded."""
        first = FakeProvider("deepseek", "no json here")
        second = FakeProvider("openai", '{"summary": "missing type and score"}')
        third = FakeProvider("anthropic", GOOD_REPLY)
        result = _run(ProviderOrchestrator([first, second, third]).analyze(FORM_TEXT))

        assert result.metadata.provider == "anthropic"
        assert result.metadata.fallback is False
        failed = [a.provider for a in result.metadata.attempts if not a.success]
        assert failed == ["deepseek", "openai"]
        first.complete.assert_awaited_once()
        second.complete.assert_awaited_once()

    def test_non_finite_score_declines(self):
        """NaN and overflowing scores parse as JSON but are not usable scores."""
        for content in (
            '{"formType": "JSA", "riskScore": NaN}',
            '{"formType": "JSA", "riskScore": Infinity}',
            '{"formType": "JSA", "riskScore": 1e999}',
        ):
            first = FakeProvider("deepseek", content)
            second = FakeProvider("openai", GOOD_REPLY)
            result = _run(ProviderOrchestrator([first, second]).analyze(FORM_TEXT))

            assert result.metadata.provider == "openai"
            assert result.metadata.attempts[0].success is False

    def test_unexpected_normalizer_error_declines(self):
        first = FakeProvider("deepseek", GOOD_REPLY)
        with patch(
            "safety_forms.agents.analyst.normalize_response",
            side_effect=KeyError("formType"),
        ):
            result = _run(ProviderOrchestrator([first]).analyze(FORM_TEXT))

        assert result.metadata.fallback is True
        assert "KeyError" in result.metadata.attempts[0].error

    def test_unknown_form_type_declines(self):
        first = FakeProvider("deepseek", {"formType": "UNKNOWN", "riskScore": 2})
        second = FakeProvider("openai", GOOD_REPLY)
        result = _run(ProviderOrchestrator([first, second]).analyze(FORM_TEXT))
        assert result.metadata.provider == "openai"

    def test_all_fail_uses_fallback(self):
        providers = [
            FakeProvider("deepseek", error=ConnectionError("refused")),
            FakeProvider("openai", error=RuntimeError("quota exceeded")),
        ]
        result = _run(ProviderOrchestrator(providers).analyze(FORM_TEXT))

        assert result.metadata.provider == FALLBACK_PROVIDER
        assert result.metadata.fallback is True
        assert "quota exceeded" in result.metadata.error
        assert len(result.metadata.attempts) == 2
        assert result.requires_supervisor_review is True

    def test_no_providers_uses_fallback(self):
        result = _run(ProviderOrchestrator([]).analyze(FORM_TEXT))
        assert result.metadata.provider == FALLBACK_PROVIDER
        assert result.metadata.attempts == []

    def test_rule_detection_uses_source_text(self):
        provider = FakeProvider("deepseek", GOOD_REPLY)
        result = _run(
            ProviderOrchestrator([provider]).analyze(
                "[FORM_TYPE: JSA]\nrestructured text", source_text=FORM_TEXT,
            )
        )
        assert [i.rule_id for i in result.flagged_issues] == ["ppe_hard_hat"]

    def test_prompt_and_system_sent(self):
        provider = FakeProvider("deepseek", GOOD_REPLY)
        _run(
            ProviderOrchestrator([provider], temperature=0.2, max_tokens=1000).analyze(
                FORM_TEXT, form_type="JSA",
            )
        )
        kwargs = provider.complete.await_args.kwargs
        assert kwargs["system"] == SYSTEM_PROMPT
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 1000
        assert "Analyze this JSA form" in kwargs["messages"][0]["content"]
        assert FORM_TEXT in kwargs["messages"][0]["content"]

    def test_caller_context_kept(self):
        provider = FakeProvider("deepseek", GOOD_REPLY)
        result = _run(
            ProviderOrchestrator([provider]).analyze(
                FORM_TEXT, metadata={"capture_method": "scanner"},
            )
        )
        assert result.metadata.context == {"capture_method": "scanner"}


class TestBuildPrompt:
    def test_unknown_form_type_labelled_safety(self):
        assert "Analyze this safety form" in build_prompt("text", "UNKNOWN")

    def test_form_type_label(self):
        assert "Analyze this SWMS form" in build_prompt("text", "SWMS")


# ---------------------------------------------------------------------------
# Test: Provider Factory
# ---------------------------------------------------------------------------


class TestBuildProviders:
    """Tests for building the ordered provider list from settings."""

    def test_no_keys_no_providers(self):
        settings = Settings(deepseek_api_key="", openai_api_key="", anthropic_api_key="")
        assert build_providers(settings) == []

    def test_order_follows_settings(self):
        settings = Settings(
            llm_provider_order=["anthropic", "deepseek"],
            deepseek_api_key="sk-deepseek",
            openai_api_key="",
            anthropic_api_key="sk-ant",
        )
        assert [p.name for p in build_providers(settings)] == ["anthropic", "deepseek"]

    def test_provider_without_key_skipped(self):
        settings = Settings(
            deepseek_api_key="",
            openai_api_key="sk-openai",
            anthropic_api_key="",
        )
        assert [p.name for p in build_providers(settings)] == ["openai"]
