# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Iterative skill optimization — recompose, evaluate, keep the best.

Usage:
    skillbench iterate WORKSPACE --project ID --seed SKILL   Run the loop
    skillbench report --project ID                           Show the report
"""
from skillbench.iteration.controller import IterationController
from skillbench.iteration.models import (
    BestEver, Candidate, ExplorationLog, IterationParams,
    IterationReport, IterationState, IterationStatus, Round,
)
from skillbench.iteration.recompose import CliRecomposer, RecomposeRequest, Recomposer
from skillbench.iteration.strategy import IterationMode, StrategyTag

__all__ = [
    "IterationController",
    "BestEver", "Candidate", "ExplorationLog", "IterationParams",
    "IterationReport", "IterationState", "IterationStatus", "Round",
    "CliRecomposer", "RecomposeRequest", "Recomposer",
    "IterationMode", "StrategyTag",
]
