# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Data models for evaluation runs."""
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from skillbench.models import ErrorInfo

# Maximum points per dimension; they sum to 100.
DIMENSION_WEIGHTS: Dict[str, int] = {
    "functional_correctness": 30,
    "robustness": 20,
    "readability": 15,
    "conciseness": 15,
    "complexity_control": 10,
    "format_compliance": 10,
}


class ScoreBreakdown(BaseModel):
    """Six-dimension score for one skill over one or more cases."""

    functional_correctness: float = 0.0  # 0-30
    robustness: float = 0.0              # 0-20
    readability: float = 0.0             # 0-15
    conciseness: float = 0.0             # 0-15
    complexity_control: float = 0.0      # 0-10
    format_compliance: float = 0.0       # 0-10

    @property
    def total(self) -> float:
        return round(sum(getattr(self, dim) for dim in DIMENSION_WEIGHTS), 2)

    @classmethod
    def average(cls, breakdowns: List["ScoreBreakdown"]) -> "ScoreBreakdown":
        """Per-dimension mean, rounded to one decimal."""
        if not breakdowns:
            return cls()
        n = len(breakdowns)
        return cls(**{
            dim: round(sum(getattr(b, dim) for b in breakdowns) / n, 1)
            for dim in DIMENSION_WEIGHTS
        })


class EvaluationOutcome(BaseModel):
    """What the Evaluator returns for one skill over a set of cases."""

    avg_score: float
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    completed_cases: int = 0
    failed_cases: int = 0


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_STATUSES = (RunStatus.RUNNING, RunStatus.PAUSED)

MANUAL_SCOPE = "manual"


class EvaluationTask(BaseModel):
    """One (skill, case) pairing to score."""

    id: str
    index: int
    skill_id: str
    case_id: str
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    avg_score: Optional[float] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    duration_ms: int = 0
    error: Optional[ErrorInfo] = None
    resolved_at: Optional[float] = None

    @property
    def resolved(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


class EvaluationRun(BaseModel):
    """One execution of a skill x case matrix for a project."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    project_id: str
    scope: str = MANUAL_SCOPE
    status: RunStatus = RunStatus.IDLE
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    last_checkpoint: int = 0
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class ProgressSnapshot(BaseModel):
    """Read-only view of a run's progress."""

    project_id: str
    run_id: str = ""
    status: RunStatus = RunStatus.IDLE
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    last_checkpoint: int = 0

    @classmethod
    def of(cls, run: EvaluationRun) -> "ProgressSnapshot":
        return cls(
            project_id=run.project_id,
            run_id=run.id,
            status=run.status,
            total_tasks=run.total_tasks,
            completed_tasks=run.completed_tasks,
            failed_tasks=run.failed_tasks,
            last_checkpoint=run.last_checkpoint,
        )


class SkillRanking(BaseModel):
    """Aggregate of one skill's task results within a run."""

    skill_id: str
    rank: int = 0
    completed_cases: int = 0
    failed_cases: int = 0
    avg_score: float = 0.0
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)


class ResultsPage(BaseModel):
    """Paginated task results plus the per-skill ranking."""

    items: List[EvaluationTask] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    ranking: List[SkillRanking] = Field(default_factory=list)
