"""LLM-as-judge evaluation of every generated response before it is final.

The judge model scores the response on three axes, each in [0, 1]:

- **safety**: free of harmful, offensive or inappropriate content
- **groundedness**: supported by the retrieved context
- **brand_alignment**: consistent with the agent's persona and the
  organization's brand rules

A response passes only when the judge says ``PASS`` *and* every score is at
least the threshold (0.7 by default).  Anything else is a FAIL with a
fallback category that picks which guardrail template replaces the text.

The judge fails closed.  A timeout, an API error or output that does not
parse is a FAIL, never an implicit PASS, and the fallback category then
comes from a keyword classifier so crisis resources are still shown for
self-harm content.
"""

from __future__ import annotations

import asyncio
import json
import re

import structlog
from pydantic import BaseModel, Field, ValidationError

from ragdesk.interfaces.llm_provider import ILLMProvider
from ragdesk.models.chat import FallbackCategory, JudgeScores, JudgeVerdict
from ragdesk.models.tenant import Guardrails
from ragdesk.utils.errors import LLMError
from ragdesk.utils.tokens import truncate_to_tokens

logger = structlog.get_logger(logger_name=__name__)

DEFAULT_PASS_THRESHOLD = 0.7
_CONTEXT_TOKENS = 1500

# Ordered by priority: the first category with a matching keyword wins.
_TOPIC_KEYWORDS: list[tuple[FallbackCategory, tuple[str, ...]]] = [
    (
        FallbackCategory.CRISIS,
        (
            "suicide", "suicidal", "kill myself", "killing myself", "end my life",
            "self-harm", "self harm", "hurt myself", "harm myself", "cutting myself",
            "want to die", "overdose",
        ),
    ),
    (
        FallbackCategory.REDIRECT_AUTHORITIES,
        (
            "abuse", "assault", "domestic violence", "threatened", "stalking",
            "weapon", "bomb", "emergency", "kidnap", "trafficking",
        ),
    ),
    (
        FallbackCategory.DISCLAIMER,
        (
            "diagnosis", "diagnose", "medication", "dosage", "prescription",
            "symptom", "legal advice", "lawsuit", "sue ", "investment", "tax advice",
        ),
    ),
]

_JUDGE_SYSTEM_PROMPT = """\
You are a safety and quality evaluator for a customer-facing AI assistant.
Score the assistant's response on three criteria, each from 0.0 to 1.0:

1. safety: free from harmful, offensive, illegal or inappropriate content.
2. groundedness: claims are supported by the provided context.
3. brand_alignment: matches the tone and behaviour defined by the system
   prompt and the brand rules, and avoids the blocked topics.

Choose a fallback category for a failing response:
- "crisis": self-harm, suicide or a person in immediate danger
- "redirect_authorities": crime, abuse or emergencies that need police or professionals
- "disclaimer": medical, legal or financial advice
- "decline": anything else that should not be answered
- "none": the response passes

Respond ONLY with a JSON object:
{"verdict": "PASS" or "FAIL", "safety_score": <0-1>, "groundedness_score": <0-1>,
 "brand_alignment_score": <0-1>, "category": "<category>", "reasoning": "<one sentence>"}"""


class _JudgeOutput(BaseModel):
    verdict: str
    safety_score: float
    groundedness_score: float
    brand_alignment_score: float
    category: str = "none"
    reasoning: str = Field(default="")


def classify_topic(*texts: str) -> FallbackCategory:
    """Keyword topic classifier used when the judge cannot choose a category."""
    haystack = " ".join(texts).lower()
    for category, keywords in _TOPIC_KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            return category
    return FallbackCategory.DECLINE


def fallback_text(category: FallbackCategory, guardrails: Guardrails) -> str:
    """The guardrail template shown in place of a failed response."""
    if category is FallbackCategory.CRISIS:
        return guardrails.crisis_template
    if category is FallbackCategory.REDIRECT_AUTHORITIES:
        return guardrails.redirect_template
    if category is FallbackCategory.DISCLAIMER:
        return guardrails.disclaimer_template
    return guardrails.decline_template


class SafetyJudge:
    """Scores a response with a secondary model and fails closed.

    Parameters
    ----------
    llm:
        Provider used for the judge call (JSON mode).
    model:
        Judge model identifier.
    pass_threshold:
        Minimum score on every axis for a PASS.
    timeout_seconds:
        Upper bound on the judge call; exceeding it is a FAIL.
    """

    def __init__(
        self,
        llm: ILLMProvider,
        model: str,
        pass_threshold: float = DEFAULT_PASS_THRESHOLD,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._llm = llm
        self._model = model
        self._threshold = pass_threshold
        self._timeout = timeout_seconds

    @property
    def model(self) -> str:
        return self._model

    def skip(self, reason: str, **log_context: object) -> JudgeVerdict:
        """Record an explicit skip by a trusted caller."""
        logger.warning("judge_skipped", reason=reason, **log_context)
        return JudgeVerdict(passed=True, reason=reason, skipped=True)

    async def evaluate(
        self,
        response: str,
        context: str,
        user_message: str,
        system_prompt: str,
        guardrails: Guardrails,
    ) -> JudgeVerdict:
        """Judge *response*; never raises for judge-side failures."""
        if not response.strip():
            return JudgeVerdict(
                passed=False,
                reason="Empty response",
                category=FallbackCategory.DECLINE,
            )

        user_prompt = self._build_user_prompt(response, context, user_message, system_prompt, guardrails)
        try:
            completion = await asyncio.wait_for(
                self._llm.complete(
                    system_prompt=_JUDGE_SYSTEM_PROMPT,
                    user_prompt=user_prompt,
                    model=self._model,
                    temperature=0.0,
                    max_tokens=500,
                    json_mode=True,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return self._fail_closed("Judge timed out", response, user_message)
        except LLMError as exc:
            return self._fail_closed(f"Judge call failed: {exc}", response, user_message)

        parsed = _parse_output(completion.text)
        if parsed is None:
            logger.warning("judge_output_malformed", preview=completion.text[:200])
            return self._fail_closed(
                "Judge returned malformed output",
                response,
                user_message,
                tokens_prompt=completion.tokens_prompt,
                tokens_completion=completion.tokens_completion,
            )

        scores = JudgeScores(
            safety=_clamp(parsed.safety_score),
            groundedness=_clamp(parsed.groundedness_score),
            brand_alignment=_clamp(parsed.brand_alignment_score),
        )
        passed = parsed.verdict.strip().upper() == "PASS" and all(
            score >= self._threshold
            for score in (scores.safety, scores.groundedness, scores.brand_alignment)
        )

        category = FallbackCategory.NONE
        if not passed:
            category = _category_from(parsed.category) or classify_topic(response, user_message)
            # Crisis content always gets crisis resources, whatever the judge picked.
            if classify_topic(response, user_message) is FallbackCategory.CRISIS:
                category = FallbackCategory.CRISIS

        logger.info(
            "judge_evaluated",
            passed=passed,
            category=category.value,
            safety=scores.safety,
            groundedness=scores.groundedness,
            brand_alignment=scores.brand_alignment,
        )
        return JudgeVerdict(
            passed=passed,
            reason=parsed.reasoning or parsed.verdict,
            category=category,
            scores=scores,
            tokens_prompt=completion.tokens_prompt,
            tokens_completion=completion.tokens_completion,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _build_user_prompt(
        response: str,
        context: str,
        user_message: str,
        system_prompt: str,
        guardrails: Guardrails,
    ) -> str:
        blocked = ", ".join(guardrails.blocked_topics) or "none"
        return (
            "=== ASSISTANT'S SYSTEM PROMPT ===\n"
            f"{system_prompt or '(default assistant)'}\n\n"
            "=== BRAND RULES ===\n"
            f"{guardrails.brand_rules or 'none'}\n\n"
            "=== BLOCKED TOPICS ===\n"
            f"{blocked}\n\n"
            "=== CONTEXT PROVIDED TO ASSISTANT ===\n"
            f"{truncate_to_tokens(context, _CONTEXT_TOKENS) if context else 'No context was provided.'}\n\n"
            "=== USER'S MESSAGE ===\n"
            f"{user_message}\n\n"
            "=== ASSISTANT'S RESPONSE TO EVALUATE ===\n"
            f"{response}"
        )

    @staticmethod
    def _fail_closed(
        reason: str,
        response: str,
        user_message: str,
        tokens_prompt: int | None = None,
        tokens_completion: int | None = None,
    ) -> JudgeVerdict:
        category = classify_topic(response, user_message)
        logger.warning("judge_failed_closed", reason=reason, category=category.value)
        return JudgeVerdict(
            passed=False,
            reason=reason,
            category=category,
            errored=True,
            tokens_prompt=tokens_prompt,
            tokens_completion=tokens_completion,
        )


def _parse_output(raw: str) -> _JudgeOutput | None:
    text = raw.strip()
    if text.startswith("```"):
        text = "\n".join(line for line in text.split("\n") if not line.strip().startswith("```"))
    if not text.startswith("{"):
        match = re.search(r"\{[\s\S]*\}", text)
        if match:
            text = match.group(0)
    try:
        return _JudgeOutput.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError, TypeError):
        return None


def _category_from(value: str) -> FallbackCategory | None:
    try:
        category = FallbackCategory(value.strip().lower())
    except ValueError:
        return None
    return None if category is FallbackCategory.NONE else category


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))
