# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Evaluator interface and the CLI-backed implementation.

The controllers treat the Evaluator as a black box:

    evaluate(skill_content, cases) -> EvaluationOutcome

or raise EvaluatorError (CLI_NOT_AVAILABLE, CLI_EXECUTION_ERROR,
OUTPUT_PARSE_FAILED, CLI_TIMEOUT). ``CliEvaluator`` runs each case through
the LLM CLI with the skill as system prompt, then scores the output with a
second CLI call against the six-dimension rubric.
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from skillbench.config import BenchConfig
from skillbench.errors import ErrorCode, EvaluatorError
from skillbench.evaluation.cli_runner import CliRunner
from skillbench.evaluation.models import (
    DIMENSION_WEIGHTS, EvaluationOutcome, ScoreBreakdown,
)
from skillbench.workspace import BaselineCase

logger = logging.getLogger(__name__)

SCORE_PROMPT_TEMPLATE = """You are a code quality reviewer. Score the result below objectively.

[Test input]
{test_input}

[Expected output]
{expected_output}

[Actual output]
{actual_output}

[Rubric — 100 points]
1. functional_correctness (0-30): does it implement what the input asks, is the core logic right
2. robustness (0-20): error handling, boundary conditions, protection against crashes
3. readability (0-15): clear names, structure, necessary comments only
4. conciseness (0-15): no redundancy or repeated logic
5. complexity_control (0-10): no needless nesting, sensible decomposition
6. format_compliance (0-10): follows the language's common style conventions

[Output rules]
Output JSON only, no prose and no Markdown fences. "total" must equal the sum.
{{
  "scores": {{
    "functional_correctness": <int>,
    "robustness": <int>,
    "readability": <int>,
    "conciseness": <int>,
    "complexity_control": <int>,
    "format_compliance": <int>,
    "total": <int>
  }},
  "reasoning": "<short justification per dimension>"
}}"""


class Evaluator(ABC):
    """Scores a skill document against baseline cases."""

    # Whether cancelling an in-flight evaluate() actually stops the work.
    supports_cancellation = False

    @abstractmethod
    async def evaluate(
        self,
        skill_content: str,
        cases: List[BaselineCase],
    ) -> EvaluationOutcome:
        """Score ``skill_content`` over ``cases``. Raises EvaluatorError."""


def parse_structured_output(raw: str) -> Dict[str, Any]:
    """Extract a JSON object from model output.

    Tries direct parse, then a fenced ```json block, then the first ``{``
    to the last ``}``. Raises EvaluatorError(OUTPUT_PARSE_FAILED).
    """
    text = (raw or "").strip()
    candidates = [text]
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    braces = re.search(r"\{[\s\S]*\}", text)
    if braces:
        candidates.append(braces.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise EvaluatorError(
        ErrorCode.OUTPUT_PARSE_FAILED, "No JSON object in output",
        {"raw": text[:500]},
    )


def breakdown_from_scores(scores: Dict[str, Any]) -> ScoreBreakdown:
    """Build a ScoreBreakdown from a rubric dict, clamping each dimension."""
    values = {}
    for dim, weight in DIMENSION_WEIGHTS.items():
        try:
            value = float(scores.get(dim, 0) or 0)
        except (TypeError, ValueError):
            raise EvaluatorError(
                ErrorCode.OUTPUT_PARSE_FAILED,
                "Non-numeric score for {}: {!r}".format(dim, scores.get(dim)),
            )
        values[dim] = max(0.0, min(float(weight), value))
    return ScoreBreakdown(**values)


def aggregate_outcome(
    breakdowns: List[ScoreBreakdown],
    failed_cases: int = 0,
) -> EvaluationOutcome:
    """Aggregate per-case breakdowns into one outcome (one-decimal averages)."""
    if not breakdowns:
        return EvaluationOutcome(avg_score=0.0, failed_cases=failed_cases)
    n = len(breakdowns)
    avg_score = round(sum(b.total for b in breakdowns) / n, 1)
    return EvaluationOutcome(
        avg_score=avg_score,
        score_breakdown=ScoreBreakdown.average(breakdowns),
        completed_cases=n,
        failed_cases=failed_cases,
    )


class CliEvaluator(Evaluator):
    """Evaluator backed by the LLM CLI: execute the case, then score it."""

    supports_cancellation = True

    def __init__(
        self,
        config: Optional[BenchConfig] = None,
        runner: Optional[CliRunner] = None,
        model: str = "",
        timeout: Optional[int] = None,
        scoring_timeout: int = 30,
    ) -> None:
        self._config = config or BenchConfig()
        self._model = model or self._config.model
        self._timeout = timeout or self._config.default_timeout_seconds
        self._scoring_timeout = scoring_timeout
        self._runner = runner or CliRunner(
            cli_path=self._config.cli_path, model=self._model, timeout=self._timeout,
        )

    async def evaluate(
        self,
        skill_content: str,
        cases: List[BaselineCase],
    ) -> EvaluationOutcome:
        breakdowns: List[ScoreBreakdown] = []
        failed = 0
        last_error: Optional[EvaluatorError] = None

        for case in cases:
            try:
                breakdowns.append(await self._evaluate_case(skill_content, case))
            except EvaluatorError as e:
                logger.warning("Case %s failed: %s", case.case_id, e)
                failed += 1
                last_error = e

        if not breakdowns and last_error is not None:
            raise last_error
        return aggregate_outcome(breakdowns, failed_cases=failed)

    async def _evaluate_case(self, skill_content: str, case: BaselineCase) -> ScoreBreakdown:
        executed = await self._runner.invoke(
            case.input,
            system_prompt=skill_content,
            model=self._model,
            timeout=self._timeout,
        )
        actual_output = str(executed.get("result", ""))

        prompt = SCORE_PROMPT_TEMPLATE.format(
            test_input=case.input,
            expected_output=case.expected_output,
            actual_output=actual_output,
        )
        scored = await self._runner.invoke(
            prompt,
            model=self._config.resolved_scoring_model,
            timeout=self._scoring_timeout,
        )
        parsed = parse_structured_output(str(scored.get("result", "")))
        scores = parsed.get("scores")
        if not isinstance(scores, dict):
            raise EvaluatorError(
                ErrorCode.OUTPUT_PARSE_FAILED, "Scoring output has no 'scores' object",
            )
        breakdown = breakdown_from_scores(scores)
        logger.debug("Case %s scored %.1f", case.case_id, breakdown.total)
        return breakdown
