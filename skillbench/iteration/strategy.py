# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Strategy selection — which recompose direction each beam slot takes.

Selection is a pure function of (mode, plateau level, available segments).
Level 0 exploits (GREEDY); each plateau level escalates toward more
exploratory strategies:

    level 0  GREEDY           DIMENSION_FOCUS   SEGMENT_EXPLORE
    level 1  DIMENSION_FOCUS  SEGMENT_EXPLORE   CROSS_POLLINATE
    level 2  SEGMENT_EXPLORE  CROSS_POLLINATE   DIMENSION_FOCUS
    level 3  RANDOM_SUBSET    CROSS_POLLINATE   SEGMENT_EXPLORE
"""
from enum import Enum
from typing import Dict, List, Optional, Sequence

from skillbench.evaluation.models import DIMENSION_WEIGHTS, ScoreBreakdown
from skillbench.workspace import AdvantageSegment

MAX_PLATEAU_LEVEL = 3


class StrategyTag(str, Enum):
    GREEDY = "GREEDY"
    DIMENSION_FOCUS = "DIMENSION_FOCUS"
    SEGMENT_EXPLORE = "SEGMENT_EXPLORE"
    CROSS_POLLINATE = "CROSS_POLLINATE"
    RANDOM_SUBSET = "RANDOM_SUBSET"


class IterationMode(str, Enum):
    STANDARD = "standard"
    EXPLORE = "explore"
    ADAPTIVE = "adaptive"


ESCALATION_TABLE: Dict[int, List[StrategyTag]] = {
    0: [StrategyTag.GREEDY, StrategyTag.DIMENSION_FOCUS, StrategyTag.SEGMENT_EXPLORE],
    1: [StrategyTag.DIMENSION_FOCUS, StrategyTag.SEGMENT_EXPLORE, StrategyTag.CROSS_POLLINATE],
    2: [StrategyTag.SEGMENT_EXPLORE, StrategyTag.CROSS_POLLINATE, StrategyTag.DIMENSION_FOCUS],
    3: [StrategyTag.RANDOM_SUBSET, StrategyTag.CROSS_POLLINATE, StrategyTag.SEGMENT_EXPLORE],
}


def is_applicable(tag: StrategyTag, segments: Sequence[AdvantageSegment]) -> bool:
    """Whether the segment pool can feed this strategy."""
    if tag in (StrategyTag.SEGMENT_EXPLORE, StrategyTag.RANDOM_SUBSET):
        return len(segments) >= 1
    if tag == StrategyTag.CROSS_POLLINATE:
        return len({s.skill_id for s in segments}) >= 2
    return True


def _row(level: int, segments: Sequence[AdvantageSegment]) -> List[StrategyTag]:
    level = max(0, min(MAX_PLATEAU_LEVEL, level))
    row = [t for t in ESCALATION_TABLE[level] if is_applicable(t, segments)]
    # DIMENSION_FOCUS needs no segments, so an escalated round never falls back to GREEDY
    return row or [StrategyTag.DIMENSION_FOCUS]


def select(
    mode: IterationMode,
    plateau_level: int,
    segments: Sequence[AdvantageSegment] = (),
) -> StrategyTag:
    """Primary strategy for a round."""
    mode = IterationMode(mode)
    if mode == IterationMode.STANDARD or plateau_level <= 0:
        return StrategyTag.GREEDY
    return _row(plateau_level, segments)[0]


def select_beam(
    mode: IterationMode,
    plateau_level: int,
    beam_width: int,
    segments: Sequence[AdvantageSegment] = (),
) -> List[StrategyTag]:
    """One strategy per beam slot; the first is always ``select(...)``.

    standard: a single GREEDY slot regardless of beam width.
    explore:  ``beam_width`` slots cycling the level's row.
    adaptive: the beam widens with the plateau, ``min(beam_width, level + 1)``.
    """
    mode = IterationMode(mode)
    if mode == IterationMode.STANDARD:
        return [StrategyTag.GREEDY]

    width = max(1, beam_width)
    if mode == IterationMode.ADAPTIVE:
        width = min(width, max(0, plateau_level) + 1)

    row = _row(plateau_level, segments)
    return [row[i % len(row)] for i in range(width)]


def find_weakest_dimension(breakdown: Optional[ScoreBreakdown]) -> str:
    """Dimension with the lowest score-to-weight ratio."""
    if breakdown is None:
        return "functional_correctness"
    weakest = "functional_correctness"
    lowest = float("inf")
    for dim, weight in DIMENSION_WEIGHTS.items():
        ratio = getattr(breakdown, dim) / weight
        if ratio < lowest:
            lowest = ratio
            weakest = dim
    return weakest


def stagnant_dimensions(history: Sequence[Optional[ScoreBreakdown]]) -> List[str]:
    """Dimensions that did not improve between the last two scored rounds."""
    scored = [b for b in history if b is not None]
    if len(scored) < 2:
        return []
    previous, latest = scored[-2], scored[-1]
    return [
        dim for dim in DIMENSION_WEIGHTS
        if getattr(latest, dim) <= getattr(previous, dim)
    ]
