# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Read-only projections of iteration and evaluation state."""
from typing import List

from skillbench.evaluation.models import ProgressSnapshot
from skillbench.iteration.models import (
    ExplorationLog, IterationReport, IterationState, Round, RoundSummary,
)


def _summarize(r: Round) -> RoundSummary:
    winner = next((c for c in r.candidates if c.won), None)
    return RoundSummary(
        round=r.round,
        strategies=list(r.strategies),
        plateau_level=r.plateau_level,
        winner_skill_id=r.winner_skill_id,
        winner_strategy=winner.strategy if winner else None,
        avg_score=r.avg_score,
        score_delta=r.score_delta,
        candidate_count=len(r.candidates),
        failed_candidates=sum(1 for c in r.candidates if not c.succeeded),
    )


def build_report(state: IterationState, rounds: List[Round]) -> IterationReport:
    best = state.best_ever
    return IterationReport(
        project_id=state.project_id,
        status=state.status,
        total_rounds=len(rounds),
        stop_reason=state.stop_reason,
        stop_threshold=state.params.stop_threshold,
        seed_skill_id=state.params.seed_skill_id,
        best_round=best.round,
        best_skill_id=best.skill_id,
        best_avg_score=best.avg_score,
        best_strategy=best.strategy,
        error=state.error,
        rounds=[_summarize(r) for r in rounds],
        started_at=state.started_at,
        completed_at=state.completed_at,
    )


def build_exploration_log(state: IterationState, rounds: List[Round]) -> ExplorationLog:
    return ExplorationLog(
        project_id=state.project_id,
        params=state.params.model_copy(deep=True),
        seed_skill_id=state.params.seed_skill_id,
        rounds=[r.model_copy(deep=True) for r in rounds],
        best_ever=state.best_ever.model_copy(deep=True),
        started_at=state.started_at,
        completed_at=state.completed_at,
    )


def _score(value) -> str:
    return "-" if value is None else "{:.1f}".format(value)


def format_iteration_report(report: IterationReport) -> str:
    """Format an iteration report as human-readable text."""
    lines = [
        "=" * 60,
        "ITERATION REPORT — {}".format(report.project_id),
        "=" * 60,
        "Status: {}  Rounds: {}  Stop reason: {}".format(
            report.status.value, report.total_rounds, report.stop_reason or "-",
        ),
        "Seed: {}".format(report.seed_skill_id),
        "Best: {} (round {}, score {}{})".format(
            report.best_skill_id, report.best_round, _score(report.best_avg_score),
            ", {}".format(report.best_strategy.value) if report.best_strategy else "",
        ),
    ]
    if report.stop_threshold is not None:
        lines.append("Stop threshold: {:.1f}".format(report.stop_threshold))
    if report.error:
        lines.append("Error: {}".format(report.error))
    lines.append("")

    for r in report.rounds:
        delta = "" if r.score_delta is None else "  delta {:+.1f}".format(r.score_delta)
        lines.append("--- Round {} (plateau {}) ---".format(r.round, r.plateau_level))
        lines.append("Strategies: {}".format(", ".join(s.value for s in r.strategies)))
        if r.winner_skill_id:
            lines.append("Winner: {} [{}] {}{}".format(
                r.winner_skill_id,
                r.winner_strategy.value if r.winner_strategy else "-",
                _score(r.avg_score), delta,
            ))
        else:
            lines.append("Winner: none")
        if r.failed_candidates:
            lines.append("Failed candidates: {}/{}".format(r.failed_candidates, r.candidate_count))
        lines.append("")

    return "\n".join(lines)


def format_progress(snapshot: ProgressSnapshot) -> str:
    """One-line evaluation progress."""
    resolved = snapshot.completed_tasks + snapshot.failed_tasks
    pct = (resolved / snapshot.total_tasks) if snapshot.total_tasks else 0.0
    return "[{}] {}/{} ({:.0%})  ok={} failed={} checkpoint={}".format(
        snapshot.status.value, resolved, snapshot.total_tasks, pct,
        snapshot.completed_tasks, snapshot.failed_tasks, snapshot.last_checkpoint,
    )
