"""Unit tests for the fail-closed safety judge."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ragdesk.interfaces.llm_provider import ILLMProvider
from ragdesk.models.chat import FallbackCategory
from ragdesk.services.chat.safety_judge import SafetyJudge, classify_topic, fallback_text
from ragdesk.utils.errors import LLMError
from tests.conftest import GUARDRAILS, PASS_JUDGEMENT, ScriptedLLM, fail_judgement


async def _evaluate(judge: SafetyJudge, response: str = "Our store opens at nine.", user: str = "When do you open?"):
    return await judge.evaluate(
        response=response,
        context="[1] Source: hours.txt (text)\nOpen 9-5.",
        user_message=user,
        system_prompt="You help Acme customers.",
        guardrails=GUARDRAILS,
    )


class TestVerdicts:
    @pytest.mark.asyncio
    async def test_pass(self) -> None:
        llm = ScriptedLLM(completions=[PASS_JUDGEMENT])
        verdict = await _evaluate(SafetyJudge(llm, model="judge"))

        assert verdict.passed is True
        assert verdict.category is FallbackCategory.NONE
        assert verdict.scores.safety == 0.95
        assert verdict.tokens_prompt == 10
        call = llm.complete_calls[0]
        assert call["model"] == "judge"
        assert "=== ASSISTANT'S RESPONSE TO EVALUATE ===\nOur store opens at nine." in call["user_prompt"]

    @pytest.mark.asyncio
    async def test_pass_below_threshold_is_fail(self) -> None:
        low = PASS_JUDGEMENT.replace('"groundedness_score": 0.9', '"groundedness_score": 0.4')
        verdict = await _evaluate(SafetyJudge(ScriptedLLM(completions=[low]), model="judge"))
        assert verdict.passed is False
        assert verdict.category is FallbackCategory.DECLINE

    @pytest.mark.asyncio
    async def test_fail_uses_judge_category(self) -> None:
        llm = ScriptedLLM(completions=[fail_judgement("disclaimer")])
        verdict = await _evaluate(SafetyJudge(llm, model="judge"))
        assert verdict.passed is False
        assert verdict.category is FallbackCategory.DISCLAIMER
        assert verdict.errored is False

    @pytest.mark.asyncio
    async def test_crisis_keywords_override_judge_category(self) -> None:
        llm = ScriptedLLM(completions=[fail_judgement("decline")])
        verdict = await _evaluate(
            SafetyJudge(llm, model="judge"), response="I can't help.", user="I want to end my life"
        )
        assert verdict.category is FallbackCategory.CRISIS

    @pytest.mark.asyncio
    async def test_fenced_json_is_accepted(self) -> None:
        fenced = f"```json\n{PASS_JUDGEMENT}\n```"
        verdict = await _evaluate(SafetyJudge(ScriptedLLM(completions=[fenced]), model="judge"))
        assert verdict.passed is True

    @pytest.mark.asyncio
    async def test_empty_response_fails_without_calling_model(self) -> None:
        llm = ScriptedLLM(completions=[PASS_JUDGEMENT])
        verdict = await _evaluate(SafetyJudge(llm, model="judge"), response="   ")
        assert verdict.passed is False
        assert llm.complete_calls == []


class TestFailsClosed:
    @pytest.mark.asyncio
    async def test_malformed_output(self) -> None:
        verdict = await _evaluate(SafetyJudge(ScriptedLLM(completions=["looks fine to me"]), model="judge"))
        assert verdict.passed is False
        assert verdict.errored is True
        assert verdict.category is FallbackCategory.DECLINE

    @pytest.mark.asyncio
    async def test_llm_error(self) -> None:
        llm = ScriptedLLM(completions=[LLMError(message="rate limited", provider_name="scripted")])
        verdict = await _evaluate(SafetyJudge(llm, model="judge"), user="How do I report domestic violence?")
        assert verdict.passed is False
        assert verdict.category is FallbackCategory.REDIRECT_AUTHORITIES

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        async def slow(**_kwargs):
            await asyncio.sleep(5)

        llm = MagicMock(spec=ILLMProvider)
        llm.complete = AsyncMock(side_effect=slow)
        verdict = await _evaluate(
            SafetyJudge(llm, model="judge", timeout_seconds=0.01), user="I want to hurt myself"
        )
        assert verdict.passed is False
        assert verdict.reason == "Judge timed out"
        assert verdict.category is FallbackCategory.CRISIS


def test_skip_is_marked() -> None:
    verdict = SafetyJudge(ScriptedLLM(), model="judge").skip("internal", organization_id="org-a")
    assert verdict.passed is True
    assert verdict.skipped is True


def test_classifier_priority_and_templates() -> None:
    assert classify_topic("my medication makes me want to die") is FallbackCategory.CRISIS
    assert classify_topic("what dosage should I take") is FallbackCategory.DISCLAIMER
    assert classify_topic("tell me a joke") is FallbackCategory.DECLINE
    assert fallback_text(FallbackCategory.CRISIS, GUARDRAILS) == "Please call 988 for support."
    assert fallback_text(FallbackCategory.NONE, GUARDRAILS) == GUARDRAILS.decline_template
