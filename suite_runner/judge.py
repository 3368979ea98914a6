"""LLM-as-judge scoring against weighted rubric criteria."""

import json
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, ValidationError

from suite_runner.config import settings
from suite_runner.errors import JudgeError, JudgeParseError
from suite_runner.llm import CompletionProvider, CompletionRequest, provider_default_model
from suite_runner.logging import get_logger
from suite_runner.models import (
    JudgeConfig,
    JudgeOperator,
    JudgeValidationRule,
    ScoringCriterion,
    Severity,
    TestCase,
)

logger = get_logger(__name__)

JUDGE_TEMPERATURE = 0.3
JUDGE_MAX_TOKENS = 1024

_FENCE = re.compile(r"```(?:json)?")

_OPERATOR_TEXT = {
    JudgeOperator.gte: ">=",
    JudgeOperator.lte: "<=",
    JudgeOperator.eq: "==",
}


class CriterionScore(BaseModel):
    score: float = Field(ge=0, le=10)
    reason: str = ""


class JudgeResponse(BaseModel):
    scores: dict[str, CriterionScore]
    overall_reasoning: str = ""


@dataclass
class JudgeOutcome:
    score: float
    scores: dict[str, float]
    reasoning: str
    validation_passed: bool = True
    validation_errors: list[str] = field(default_factory=list)
    validation_warnings: list[str] = field(default_factory=list)


def build_judge_prompt(config: JudgeConfig, test_case: TestCase, output: str) -> str:
    inputs = "\n".join(f"{k}: {v}" for k, v in test_case.inputs.items()) or "(no inputs)"
    criteria = "\n".join(
        f"{i}. {c.name} (weight: {c.weight}): {c.description}"
        for i, c in enumerate(config.criteria, 1)
    )
    return f"""You are an AI quality evaluator. Score an AI response against specific criteria.

<input>
{inputs}
</input>

<expected>
{test_case.expected_output or "Not specified"}
</expected>

<actual>
{output}
</actual>

<criteria>
{criteria}
</criteria>

For each criterion, give a score from 0 to 10 and a brief reason.
Respond with ONLY valid JSON in exactly this format (no other text):
{{
  "scores": {{
    "criterion_name": {{ "score": 8, "reason": "Brief explanation" }}
  }},
  "overall_reasoning": "Summary of the evaluation"
}}"""


def parse_judge_response(text: str) -> JudgeResponse:
    cleaned = _FENCE.sub("", text).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start < 0 or end <= start:
        raise JudgeParseError("No JSON object found in judge response")
    try:
        raw = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as e:
        raise JudgeParseError(f"Judge response is not valid JSON: {e}") from e
    try:
        return JudgeResponse.model_validate(raw)
    except ValidationError as e:
        raise JudgeParseError(f"Judge response has an unexpected shape: {e.error_count()} error(s)") from e


def weighted_score(criteria: Iterable[ScoringCriterion], scores: dict[str, float]) -> float:
    total = 0.0
    total_weight = 0.0
    for criterion in criteria:
        if criterion.name in scores:
            total += scores[criterion.name] * criterion.weight
            total_weight += criterion.weight
    if total_weight == 0:
        return 0.0
    return round(total / total_weight, 2)


def _rule_holds(rule: JudgeValidationRule, value: float) -> bool:
    match rule.operator:
        case JudgeOperator.gte:
            return value >= rule.threshold
        case JudgeOperator.lte:
            return value <= rule.threshold
        case JudgeOperator.eq:
            return math.isclose(value, rule.threshold, abs_tol=1e-9)
    return False


def apply_judge_rules(
    rules: Iterable[JudgeValidationRule],
    scores: dict[str, float],
) -> tuple[bool, list[str], list[str]]:
    passed = True
    errors: list[str] = []
    warnings: list[str] = []
    for rule in rules:
        value = scores.get(rule.criteria)
        if value is None:
            message = rule.message or f"Criterion '{rule.criteria}' was not scored by the judge"
        elif _rule_holds(rule, value):
            continue
        else:
            message = rule.message or (
                f"{rule.criteria} score {value:.2f} is not "
                f"{_OPERATOR_TEXT[rule.operator]} {rule.threshold:.2f}"
            )

        if rule.severity == Severity.warning:
            warnings.append(message)
        else:
            errors.append(message)
            passed = False
    return passed, errors, warnings


class JudgeEvaluator:
    def __init__(self, provider: CompletionProvider) -> None:
        self.provider = provider

    async def evaluate(
        self,
        config: JudgeConfig,
        test_case: TestCase,
        output: str,
        extra_rules: Iterable[JudgeValidationRule] = (),
    ) -> JudgeOutcome:
        if not config.criteria:
            raise JudgeError("Judge is enabled but has no scoring criteria")

        request = CompletionRequest(
            model=config.model or provider_default_model(self.provider, settings.judge_model),
            user_message=build_judge_prompt(config, test_case, output),
            temperature=JUDGE_TEMPERATURE,
            max_tokens=JUDGE_MAX_TOKENS,
        )
        try:
            text = await self.provider.complete(request)
        except Exception as e:
            raise JudgeError(f"Judge call failed ({type(e).__name__}): {e}") from e

        response = parse_judge_response(text)
        scores = {
            c.name: response.scores[c.name].score / 10
            for c in config.criteria
            if c.name in response.scores
        }
        if not scores:
            raise JudgeParseError("Judge response did not score any configured criterion")

        score = weighted_score(config.criteria, scores)
        passed, errors, warnings = apply_judge_rules(
            [*config.validation_rules, *extra_rules], scores
        )
        if config.min_score is not None and score < config.min_score:
            passed = False
            errors.append(
                f"Judge score {score * 100:.0f}% is below minimum threshold "
                f"of {config.min_score * 100:.0f}%"
            )
        logger.debug(f"Judge scored {test_case.name or test_case.id}: {score:.2f}")
        return JudgeOutcome(
            score=score,
            scores=scores,
            reasoning=response.overall_reasoning,
            validation_passed=passed,
            validation_errors=errors,
            validation_warnings=warnings,
        )
