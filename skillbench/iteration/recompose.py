# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Candidate generation — recompose the best skill into a new variant.

The iteration loop hands a ``RecomposeRequest`` (base skill, strategy,
retention rules, segments, score history) to a ``Recomposer`` and gets the
text of a new skill back. ``CliRecomposer`` asks the LLM CLI for the merged
document.
"""
import logging
import random
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from skillbench.config import BenchConfig
from skillbench.errors import EvaluatorError, RecomposeError
from skillbench.evaluation.cli_runner import CliRunner
from skillbench.evaluation.models import ScoreBreakdown
from skillbench.iteration.strategy import StrategyTag, stagnant_dimensions
from skillbench.workspace import AdvantageSegment

logger = logging.getLogger(__name__)

RECOMPOSE_PROMPT = """You are an expert prompt engineer. Produce an improved skill prompt by \
merging the current best skill with the advantage segments below, honoring the \
user's retention rules.

[Current best skill]
{base_content}

[Source skills]
{source_skills}

[Advantage segments to keep]
{segments}

[User retention rules]
{retention_rules}

[Recompose guidelines]
1. Keep every selected segment intact; do not drop or rewrite its core meaning
2. Merge the strongest robustness and readability constraints from all sources
3. Unify the output format description and remove contradictions and redundancy
4. Keep instructions clear and concise; do not pile on requirements
5. The result must be a complete, directly usable prompt with no commentary

{meta_tail}[Output]
Output only the full recomposed skill prompt text, with no explanation, title or JSON wrapper."""

_STRATEGY_DIRECTIONS = {
    StrategyTag.SEGMENT_EXPLORE: (
        "Strategy for this round: SEGMENT_EXPLORE. Actively bring in advantage segments "
        "that earlier rounds did not use.",
        "Blend the new segments into the existing text instead of appending them.",
    ),
    StrategyTag.CROSS_POLLINATE: (
        "Strategy for this round: CROSS_POLLINATE. Cross the boundaries of the original "
        "skills and take the best structure from several sources.",
        "Revisit the source segments without being bound by last round's structure.",
    ),
    StrategyTag.RANDOM_SUBSET: (
        "Strategy for this round: RANDOM_SUBSET. Only a random subset of segments is "
        "provided; rebuild the skill around them.",
        "Prefer a fresh structure over small edits to the current best skill.",
    ),
}


class ScoreHistoryEntry(BaseModel):
    """One past round as seen by the recompose prompt."""

    round: int
    strategy: Optional[StrategyTag] = None
    avg_score: float
    score_delta: Optional[float] = None
    score_breakdown: Optional[ScoreBreakdown] = None


class RecomposeRequest(BaseModel):
    """Everything a Recomposer needs to produce one candidate."""

    project_id: str
    base_skill_id: str
    base_content: str
    strategy: StrategyTag = StrategyTag.GREEDY
    retention_rules: str = ""
    focus_dimension: Optional[str] = None
    segments: List[AdvantageSegment] = Field(default_factory=list)
    score_history: List[ScoreHistoryEntry] = Field(default_factory=list)


class Recomposer(ABC):
    """Produces the text of a new candidate skill."""

    @abstractmethod
    async def generate(self, request: RecomposeRequest) -> str:
        """Return the candidate skill content. Raises RecomposeError."""


def pick_segments(
    strategy: StrategyTag,
    segments: Sequence[AdvantageSegment],
    rng: random.Random,
    used_ids: Iterable[str] = (),
) -> List[AdvantageSegment]:
    """Choose the segments fed to one candidate for its strategy."""
    pool = list(segments)
    if strategy == StrategyTag.RANDOM_SUBSET and pool:
        k = max(1, len(pool) // 2)
        return rng.sample(pool, k)
    if strategy == StrategyTag.SEGMENT_EXPLORE:
        used = set(used_ids)
        fresh = [s for s in pool if s.id not in used]
        return fresh or pool
    return pool


def build_meta_prompt_tail(
    history: Sequence[ScoreHistoryEntry],
    strategy: StrategyTag,
    focus_dimension: Optional[str] = None,
) -> str:
    """Score trend and strategy direction appended to the recompose prompt."""
    if not history:
        return ""

    lines = ["[Score history]"]
    for h in history:
        delta = ""
        if h.score_delta is not None:
            delta = " ({:+.1f})".format(h.score_delta)
        breakdown = ""
        if h.score_breakdown is not None:
            breakdown = "  " + " | ".join(
                "{} {}".format(dim, value)
                for dim, value in h.score_breakdown.model_dump().items()
            )
        lines.append("Round {}{}: total {:.1f}{}{}".format(
            h.round,
            " ({})".format(h.strategy.value) if h.strategy else "",
            h.avg_score, delta, breakdown,
        ))
    lines.append("")

    if strategy == StrategyTag.DIMENSION_FOCUS and focus_dimension:
        lines.append(
            "Strategy for this round: DIMENSION_FOCUS. Improve the {} dimension.".format(
                focus_dimension,
            ),
        )
        lines.append(
            "Tighten the instructions and constraints behind that dimension "
            "without trading away the others.",
        )
    elif strategy in _STRATEGY_DIRECTIONS:
        lines.extend(_STRATEGY_DIRECTIONS[strategy])

    stagnant = stagnant_dimensions([h.score_breakdown for h in history])
    if stagnant:
        lines.append("Stagnant dimensions (no gain over 2 rounds): {}".format(", ".join(stagnant)))
        lines.append("Focus this round on improving them.")
    lines.append("")
    return "\n".join(lines)


def build_recompose_prompt(request: RecomposeRequest) -> str:
    seen = []
    for seg in request.segments:
        if seg.skill_id not in seen:
            seen.append(seg.skill_id)
    source_skills = "\n".join("- {}".format(sid) for sid in seen) or "(none)"
    segments = "\n\n".join(
        "Segment {} (from {}, dimension: {}):\n{}".format(
            i + 1, s.skill_id, s.dimension or "general", s.content,
        )
        for i, s in enumerate(request.segments)
    ) or "(none selected)"
    tail = build_meta_prompt_tail(request.score_history, request.strategy, request.focus_dimension)
    return RECOMPOSE_PROMPT.format(
        base_content=request.base_content,
        source_skills=source_skills,
        segments=segments,
        retention_rules=request.retention_rules or "(no special requirements)",
        meta_tail=tail + "\n" if tail else "",
    )


class CliRecomposer(Recomposer):
    """Recomposer backed by a single LLM CLI call."""

    def __init__(
        self,
        config: Optional[BenchConfig] = None,
        runner: Optional[CliRunner] = None,
    ) -> None:
        self._config = config or BenchConfig()
        self._runner = runner or CliRunner(
            cli_path=self._config.cli_path,
            model=self._config.model,
            timeout=self._config.recompose_timeout_seconds,
        )

    async def generate(self, request: RecomposeRequest) -> str:
        prompt = build_recompose_prompt(request)
        try:
            result = await self._runner.invoke(
                prompt,
                model=self._config.model,
                timeout=self._config.recompose_timeout_seconds,
            )
        except EvaluatorError as e:
            raise RecomposeError(
                "Recompose CLI call failed: {}".format(e.message),
                {"cause": e.code.value},
            )

        content = str(result.get("result", "")).strip()
        if not content:
            raise RecomposeError("Recompose returned empty content")
        logger.info(
            "Recomposed %s with %s (%d segments, %d chars)",
            request.base_skill_id, request.strategy.value, len(request.segments), len(content),
        )
        return content
