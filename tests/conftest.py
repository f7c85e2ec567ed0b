# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Shared fixtures: a small workspace plus scripted evaluator and recomposer."""
import asyncio
from typing import Dict, List, Optional

import pytest

from skillbench.evaluation.evaluator import Evaluator
from skillbench.evaluation.models import DIMENSION_WEIGHTS, EvaluationOutcome, ScoreBreakdown
from skillbench.iteration.recompose import RecomposeRequest, Recomposer
from skillbench.workspace import (
    AdvantageSegment, Baseline, BaselineCase, ProjectConfig, Skill, Workspace,
)


def breakdown_for(score: float) -> ScoreBreakdown:
    """A breakdown whose dimensions scale with the total."""
    return ScoreBreakdown(**{
        dim: round(weight * score / 100.0, 2) for dim, weight in DIMENSION_WEIGHTS.items()
    })


class FakeEvaluator(Evaluator):
    """Scripted evaluator.

    scores:   skill content -> score, or an exception raised on every call
    failures: key -> list of exceptions consumed one per call; key is
              (content, case_id), case_id or content
    gates:    case_id or content -> asyncio.Event awaited before answering
    """

    def __init__(
        self,
        scores: Optional[Dict[str, object]] = None,
        default_score: float = 80.0,
        failures: Optional[Dict[object, List[Exception]]] = None,
        gates: Optional[Dict[str, asyncio.Event]] = None,
        supports_cancellation: bool = True,
    ):
        self.scores = scores or {}
        self.default_score = default_score
        self.failures = failures or {}
        self.gates = gates or {}
        self.supports_cancellation = supports_cancellation
        self.calls = []

    async def evaluate(self, skill_content, cases):
        case = cases[0]
        self.calls.append((skill_content, case.case_id))
        gate = self.gates.get(case.case_id) or self.gates.get(skill_content)
        if gate is not None:
            await gate.wait()
        for key in ((skill_content, case.case_id), case.case_id, skill_content):
            queue = self.failures.get(key)
            if queue:
                raise queue.pop(0)
        score = self.scores.get(skill_content, self.default_score)
        if isinstance(score, Exception):
            raise score
        return EvaluationOutcome(
            avg_score=score,
            score_breakdown=breakdown_for(score),
            completed_cases=len(cases),
        )

    async def wait_calls(self, n: int, timeout: float = 5.0):
        async def _wait():
            while len(self.calls) < n:
                await asyncio.sleep(0.01)
        await asyncio.wait_for(_wait(), timeout)


class FakeRecomposer(Recomposer):
    """Returns scripted outputs in call order; an Exception entry is raised."""

    def __init__(self, outputs=None):
        self.outputs = list(outputs or [])
        self.requests: List[RecomposeRequest] = []

    async def generate(self, request):
        self.requests.append(request)
        if not self.outputs:
            return "{}+{}".format(request.base_content, request.strategy.value)
        out = self.outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return out


async def wait_until(predicate, timeout: float = 5.0):
    async def _wait():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_wait(), timeout)


def build_workspace(**project_overrides) -> Workspace:
    project = dict(
        id="demo",
        name="Demo",
        skills=["skill-a", "skill-b"],
        baselines=["core"],
        concurrency=2,
        timeout_seconds=5,
        retry_count=0,
    )
    project.update(project_overrides)
    return Workspace(
        projects=[ProjectConfig(**project)],
        skills=[
            Skill(id="skill-a", name="Alpha", content="alpha"),
            Skill(id="skill-b", name="Beta", content="beta", last_score=80.0),
        ],
        baselines=[Baseline(id="core", cases=[
            BaselineCase(case_id="c{}".format(i), input="task {}".format(i), expected_output="ok")
            for i in range(1, 4)
        ])],
        segments=[
            AdvantageSegment(id="seg-1", skill_id="skill-a", dimension="robustness",
                             content="Validate every input before use."),
            AdvantageSegment(id="seg-2", skill_id="skill-b", dimension="readability",
                             content="Prefer descriptive names."),
        ],
    )


@pytest.fixture
def make_workspace():
    return build_workspace


@pytest.fixture
def workspace():
    return build_workspace()
