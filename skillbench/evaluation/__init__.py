# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Evaluation runs — score skills against baseline cases with checkpointing."""
from skillbench.evaluation.controller import EvaluationRunController, rank_skills
from skillbench.evaluation.evaluator import CliEvaluator, Evaluator, parse_structured_output
from skillbench.evaluation.models import (
    EvaluationOutcome, EvaluationRun, EvaluationTask,
    ProgressSnapshot, ResultsPage, RunStatus, ScoreBreakdown, TaskStatus,
)
from skillbench.evaluation.store import CheckpointStore

__all__ = [
    "EvaluationRunController", "rank_skills",
    "CliEvaluator", "Evaluator", "parse_structured_output",
    "EvaluationOutcome", "EvaluationRun", "EvaluationTask",
    "ProgressSnapshot", "ResultsPage", "RunStatus", "ScoreBreakdown", "TaskStatus",
    "CheckpointStore",
]
