# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Data models for the iteration loop."""
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from skillbench.errors import ErrorCode, SkillBenchError
from skillbench.evaluation.models import ScoreBreakdown
from skillbench.iteration.strategy import IterationMode, StrategyTag
from skillbench.models import ErrorInfo

# Stop reasons
THRESHOLD_REACHED = "score_threshold_reached"
MAX_ROUNDS = "max_rounds"
MANUAL_STOP = "manual_stop"
STOP_ERROR = "error"
INTERRUPTED = "interrupted"


class IterationStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"


class IterationParams(BaseModel):
    """User-supplied knobs for one optimization session."""

    seed_skill_id: str
    max_rounds: int = Field(default=3, ge=1, le=100)
    stop_threshold: Optional[float] = Field(default=None, ge=0, le=100)
    beam_width: int = Field(default=1, ge=1, le=8)
    plateau_threshold: float = Field(default=1.0, ge=0)
    plateau_rounds_before_escape: int = Field(default=2, ge=1)
    retention_rules: str = ""
    mode: Optional[IterationMode] = None  # None: use the project's mode
    selected_segment_ids: List[str] = Field(default_factory=list)

    @classmethod
    def build(cls, data: Dict[str, Any]) -> "IterationParams":
        """Validate raw params, mapping validation failures to INVALID_PARAMS."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise SkillBenchError(
                ErrorCode.INVALID_PARAMS,
                "Invalid iteration params",
                {"errors": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ]},
            )


class Candidate(BaseModel):
    """One beam slot: a recomposed skill and its evaluation."""

    index: int
    strategy: StrategyTag
    skill_id: Optional[str] = None  # None when recompose failed
    focus_dimension: Optional[str] = None
    segment_ids: List[str] = Field(default_factory=list)
    avg_score: Optional[float] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    completed_cases: int = 0
    failed_cases: int = 0
    error: Optional[ErrorInfo] = None
    won: bool = False

    @property
    def succeeded(self) -> bool:
        return self.skill_id is not None and self.completed_cases > 0 and self.avg_score is not None


class Round(BaseModel):
    """One barrier-synchronized round. Never mutated once appended."""

    round: int
    plateau_level: int = 0
    strategies: List[StrategyTag] = Field(default_factory=list)
    candidates: List[Candidate] = Field(default_factory=list)
    winner_skill_id: Optional[str] = None
    avg_score: Optional[float] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    score_delta: Optional[float] = None
    started_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None


class BestEver(BaseModel):
    """Highest-scoring skill seen so far (round 0 = the seed)."""

    skill_id: str
    round: int = 0
    avg_score: Optional[float] = None
    strategy: Optional[StrategyTag] = None
    score_breakdown: Optional[ScoreBreakdown] = None


class IterationState(BaseModel):
    """Per-project loop state."""

    project_id: str
    status: IterationStatus = IterationStatus.IDLE
    params: IterationParams
    current_round: int = 0
    best_ever: BestEver
    plateau_counter: int = 0
    plateau_level: int = 0
    stop_requested: bool = False
    stop_reason: Optional[str] = None
    error: Optional[str] = None
    started_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None


class RoundSummary(BaseModel):
    """Compact per-round line of the iteration report."""

    round: int
    strategies: List[StrategyTag] = Field(default_factory=list)
    plateau_level: int = 0
    winner_skill_id: Optional[str] = None
    winner_strategy: Optional[StrategyTag] = None
    avg_score: Optional[float] = None
    score_delta: Optional[float] = None
    candidate_count: int = 0
    failed_candidates: int = 0


class IterationReport(BaseModel):
    """Final (or in-progress) outcome of an iteration."""

    project_id: str
    status: IterationStatus
    total_rounds: int = 0
    stop_reason: Optional[str] = None
    stop_threshold: Optional[float] = None
    seed_skill_id: str = ""
    best_round: int = 0
    best_skill_id: str = ""
    best_avg_score: Optional[float] = None
    best_strategy: Optional[StrategyTag] = None
    error: Optional[str] = None
    rounds: List[RoundSummary] = Field(default_factory=list)
    started_at: float = 0.0
    completed_at: Optional[float] = None


class ExplorationLog(BaseModel):
    """Full candidate history across all rounds."""

    project_id: str
    params: IterationParams
    seed_skill_id: str
    rounds: List[Round] = Field(default_factory=list)
    best_ever: BestEver
    started_at: float = 0.0
    completed_at: Optional[float] = None
