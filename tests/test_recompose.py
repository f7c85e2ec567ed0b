# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for segment picking, recompose prompts and CliRecomposer."""
import random

import pytest

from skillbench.errors import ErrorCode, EvaluatorError, RecomposeError
from skillbench.evaluation.models import ScoreBreakdown
from skillbench.iteration.recompose import (
    CliRecomposer, RecomposeRequest, ScoreHistoryEntry, build_meta_prompt_tail,
    build_recompose_prompt, pick_segments,
)
from skillbench.iteration.strategy import StrategyTag
from skillbench.workspace import AdvantageSegment

SEGMENTS = [
    AdvantageSegment(id="s{}".format(i), skill_id="skill-{}".format(i % 2), content="seg {}".format(i))
    for i in range(4)
]


class TestPickSegments:

    def test_greedy_takes_all(self):
        assert pick_segments(StrategyTag.GREEDY, SEGMENTS, random.Random(0)) == SEGMENTS

    def test_random_subset_takes_half(self):
        picked = pick_segments(StrategyTag.RANDOM_SUBSET, SEGMENTS, random.Random(0))
        assert len(picked) == 2
        assert all(s in SEGMENTS for s in picked)

    def test_random_subset_single_segment(self):
        assert pick_segments(StrategyTag.RANDOM_SUBSET, SEGMENTS[:1], random.Random(0)) == SEGMENTS[:1]

    def test_segment_explore_prefers_unused(self):
        picked = pick_segments(StrategyTag.SEGMENT_EXPLORE, SEGMENTS, random.Random(0), {"s0", "s1"})
        assert [s.id for s in picked] == ["s2", "s3"]

    def test_segment_explore_reuses_when_exhausted(self):
        used = {s.id for s in SEGMENTS}
        assert pick_segments(StrategyTag.SEGMENT_EXPLORE, SEGMENTS, random.Random(0), used) == SEGMENTS


def _history():
    b1 = ScoreBreakdown(functional_correctness=20, robustness=10, readability=10,
                        conciseness=10, complexity_control=5, format_compliance=5)
    b2 = b1.model_copy(update={"functional_correctness": 24})
    return [
        ScoreHistoryEntry(round=1, strategy=StrategyTag.GREEDY, avg_score=60.0, score_breakdown=b1),
        ScoreHistoryEntry(round=2, strategy=StrategyTag.GREEDY, avg_score=64.0,
                          score_delta=4.0, score_breakdown=b2),
    ]


class TestPrompts:

    def test_tail_empty_without_history(self):
        assert build_meta_prompt_tail([], StrategyTag.GREEDY) == ""

    def test_tail_lists_rounds_and_stagnation(self):
        tail = build_meta_prompt_tail(_history(), StrategyTag.GREEDY)
        assert "Round 1 (GREEDY): total 60.0" in tail
        assert "(+4.0)" in tail
        assert "Stagnant dimensions" in tail
        assert "robustness" in tail

    def test_tail_dimension_focus(self):
        tail = build_meta_prompt_tail(_history(), StrategyTag.DIMENSION_FOCUS, "robustness")
        assert "Improve the robustness dimension" in tail

    def test_tail_exploratory_direction(self):
        tail = build_meta_prompt_tail(_history(), StrategyTag.CROSS_POLLINATE)
        assert "CROSS_POLLINATE" in tail

    def test_full_prompt(self):
        request = RecomposeRequest(
            project_id="demo", base_skill_id="skill-a", base_content="BASE TEXT",
            retention_rules="Keep the JSON output format.", segments=SEGMENTS[:2],
        )
        prompt = build_recompose_prompt(request)
        assert "BASE TEXT" in prompt
        assert "Keep the JSON output format." in prompt
        assert "- skill-0\n- skill-1" in prompt
        assert "Segment 2 (from skill-1, dimension: general)" in prompt

    def test_full_prompt_defaults(self):
        prompt = build_recompose_prompt(RecomposeRequest(
            project_id="demo", base_skill_id="a", base_content="x",
        ))
        assert "(none selected)" in prompt
        assert "(no special requirements)" in prompt


class StubRunner:

    def __init__(self, response):
        self.response = response
        self.prompts = []

    async def invoke(self, prompt, system_prompt=None, model="", timeout=None, cwd=None):
        self.prompts.append(prompt)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


REQUEST = RecomposeRequest(project_id="demo", base_skill_id="a", base_content="base")


class TestCliRecomposer:

    @pytest.mark.asyncio
    async def test_returns_stripped_content(self):
        runner = StubRunner({"result": "  new skill body\n"})
        assert await CliRecomposer(runner=runner).generate(REQUEST) == "new skill body"
        assert "base" in runner.prompts[0]

    @pytest.mark.asyncio
    async def test_cli_failure_maps_to_recompose_error(self):
        runner = StubRunner(EvaluatorError(ErrorCode.CLI_TIMEOUT, "slow"))
        with pytest.raises(RecomposeError) as exc:
            await CliRecomposer(runner=runner).generate(REQUEST)
        assert exc.value.code == ErrorCode.RECOMPOSE_FAILED
        assert exc.value.details == {"cause": "CLI_TIMEOUT"}

    @pytest.mark.asyncio
    async def test_empty_content(self):
        with pytest.raises(RecomposeError):
            await CliRecomposer(runner=StubRunner({"result": "   "})).generate(REQUEST)
