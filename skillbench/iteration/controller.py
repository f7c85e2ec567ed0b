# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Iteration controller — beam search over recomposed skills.

Flow per round (strict barrier):
  1. Pick one strategy per beam slot from the plateau level
  2. Recompose the best-ever skill once per strategy
  3. Evaluate all candidates concurrently (scoped evaluation runs)
  4. Winner = highest avg_score among candidates with a successful task
  5. Update plateau tracking and best-ever, append the round
  6. Stop on threshold, max rounds, or a requested stop

Only the best-ever skill seeds the next round; losing candidates stay in
the exploration log.
"""
import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional, Union

from skillbench.audit import RunAuditEntry
from skillbench.coordinator import ITERATION, ProjectActivity
from skillbench.errors import ErrorCode, SkillBenchError
from skillbench.evaluation.controller import EvaluationRunController, rank_skills
from skillbench.evaluation.store import CheckpointStore
from skillbench.iteration.models import (
    INTERRUPTED, MANUAL_STOP, MAX_ROUNDS, STOP_ERROR, THRESHOLD_REACHED,
    BestEver, Candidate, ExplorationLog, IterationParams, IterationReport,
    IterationState, IterationStatus, Round,
)
from skillbench.iteration.plateau import PlateauTracker
from skillbench.iteration.recompose import (
    RecomposeRequest, Recomposer, ScoreHistoryEntry, pick_segments,
)
from skillbench.iteration.report import build_exploration_log, build_report
from skillbench.iteration.strategy import (
    IterationMode, StrategyTag, find_weakest_dimension, select_beam,
)
from skillbench.models import ErrorInfo, Notification, NotificationType
from skillbench.notify import NotificationBus
from skillbench.workspace import AdvantageSegment, Skill, Workspace

logger = logging.getLogger(__name__)


class _IterationHandle:
    def __init__(self, state: IterationState) -> None:
        self.state = state
        self.rounds: List[Round] = []
        self.used_segment_ids: set = set()
        self.task: Optional[asyncio.Task] = None
        self.done = asyncio.Event()


class IterationController:
    """Runs one optimization loop per project."""

    def __init__(
        self,
        workspace: Workspace,
        runs: EvaluationRunController,
        recomposer: Recomposer,
        store: Optional[CheckpointStore] = None,
        activity: Optional[ProjectActivity] = None,
        bus: Optional[NotificationBus] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._workspace = workspace
        self._runs = runs
        self._recomposer = recomposer
        self._store = store
        self._activity = activity or ProjectActivity()
        self._bus = bus or NotificationBus()
        self._rng = rng or random.Random()
        self._iterations: Dict[str, _IterationHandle] = {}

    # ── Public API ────────────────────────────────────────────

    async def start(
        self,
        project_id: str,
        params: Union[IterationParams, Dict[str, Any]],
    ) -> IterationState:
        if not isinstance(params, IterationParams):
            params = IterationParams.build(params)
        project = self._workspace.get_project(project_id)

        existing = self._iterations.get(project_id)
        if existing and existing.state.status == IterationStatus.RUNNING:
            raise SkillBenchError(
                ErrorCode.ALREADY_RUNNING,
                "Iteration already running for project {}".format(project_id),
            )
        self._activity.ensure_free(project_id, ITERATION)

        seed = self._workspace.find_skill(params.seed_skill_id) if params.seed_skill_id else None
        if seed is None:
            raise SkillBenchError(
                ErrorCode.NO_SEED_SKILL,
                "Seed skill not found: {}".format(params.seed_skill_id or "(empty)"),
            )
        if params.mode is None:
            params = params.model_copy(update={"mode": IterationMode(project.mode)})

        state = IterationState(
            project_id=project_id,
            status=IterationStatus.RUNNING,
            params=params,
            best_ever=BestEver(skill_id=seed.id, round=0, avg_score=seed.last_score),
        )
        handle = _IterationHandle(state)
        self._activity.claim(project_id, ITERATION)
        self._iterations[project_id] = handle

        logger.info(
            "Iteration started for %s: seed=%s mode=%s beam=%d max_rounds=%d",
            project_id, seed.id, params.mode.value, params.beam_width, params.max_rounds,
        )
        RunAuditEntry(
            event="iteration_started", project_id=project_id, status=state.status.value,
            avg_score=seed.last_score,
            extra={"seed_skill_id": seed.id, "mode": params.mode.value},
        ).emit()

        await self._persist(handle)
        handle.task = asyncio.create_task(self._run(handle))
        return state.model_copy(deep=True)

    def stop(self, project_id: str) -> IterationState:
        """Request termination at the next round barrier. Idempotent."""
        handle = self._iterations.get(project_id)
        if handle is None:
            raise SkillBenchError(
                ErrorCode.NOT_RUNNING, "No iteration for project {}".format(project_id),
            )
        if handle.state.status == IterationStatus.RUNNING and not handle.state.stop_requested:
            handle.state.stop_requested = True
            logger.info(
                "Stop requested for iteration %s (round %d in progress)",
                project_id, handle.state.current_round + 1,
            )
        return handle.state.model_copy(deep=True)

    def get_progress(self, project_id: str) -> IterationState:
        return self._get(project_id).state.model_copy(deep=True)

    def get_report(self, project_id: str) -> IterationReport:
        handle = self._get(project_id)
        return build_report(handle.state, handle.rounds).model_copy(deep=True)

    def get_exploration_log(self, project_id: str) -> ExplorationLog:
        handle = self._get(project_id)
        return build_exploration_log(handle.state, handle.rounds)

    async def join(self, project_id: str) -> IterationState:
        """Wait for the project's loop to finish."""
        handle = self._get(project_id)
        await handle.done.wait()
        return handle.state.model_copy(deep=True)

    async def restore(self) -> int:
        """Reload persisted iterations. Loops that were running come back idle."""
        if self._store is None:
            return 0
        count = 0
        for project_id in await self._store.list_iteration_projects():
            loaded = await self._store.load_iteration(project_id)
            if loaded is None:
                continue
            state_data, rounds_data = loaded
            state = IterationState.model_validate(state_data)
            handle = _IterationHandle(state)
            handle.rounds = [Round.model_validate(r) for r in rounds_data]
            if state.status == IterationStatus.RUNNING:
                state.status = IterationStatus.IDLE
                state.stop_reason = INTERRUPTED
                state.completed_at = time.time()
                logger.warning(
                    "Iteration for %s was interrupted after %d round(s)",
                    project_id, len(handle.rounds),
                )
                await self._persist(handle)
            handle.done.set()
            self._iterations[project_id] = handle
            count += 1
        return count

    # ── Loop ──────────────────────────────────────────────────

    def _get(self, project_id: str) -> _IterationHandle:
        handle = self._iterations.get(project_id)
        if handle is None:
            raise SkillBenchError(
                ErrorCode.NOT_FOUND, "No iteration for project {}".format(project_id),
            )
        return handle

    async def _run(self, handle: _IterationHandle) -> None:
        state = handle.state
        params = state.params
        tracker = PlateauTracker(params.plateau_threshold, params.plateau_rounds_before_escape)
        try:
            segments = self._workspace.project_segments(
                state.project_id, params.selected_segment_ids,
            )
            while True:
                if state.stop_requested and not handle.rounds:
                    await self._finish(handle, IterationStatus.IDLE, MANUAL_STOP)
                    return
                round_ = await self._run_round(handle, tracker, segments)
                reason = self._stop_reason(handle, round_)
                if reason:
                    await self._finish(handle, IterationStatus.COMPLETED, reason)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Iteration for %s failed", state.project_id)
            state.error = str(e)[:500]
            await self._finish(handle, IterationStatus.COMPLETED, STOP_ERROR)

    def _stop_reason(self, handle: _IterationHandle, round_: Round) -> Optional[str]:
        state = handle.state
        params = state.params
        if (
            params.stop_threshold is not None
            and round_.avg_score is not None
            and round_.avg_score >= params.stop_threshold
        ):
            return THRESHOLD_REACHED
        if round_.round >= params.max_rounds:
            return MAX_ROUNDS
        if state.stop_requested:
            return MANUAL_STOP
        return None

    async def _run_round(
        self,
        handle: _IterationHandle,
        tracker: PlateauTracker,
        segments: List[AdvantageSegment],
    ) -> Round:
        state = handle.state
        params = state.params
        round_no = state.current_round + 1
        level = tracker.level
        strategies = select_beam(params.mode, level, params.beam_width, segments)
        base = self._workspace.get_skill(state.best_ever.skill_id)
        history = self._score_history(handle.rounds)
        focus = find_weakest_dimension(
            state.best_ever.score_breakdown
            or (handle.rounds[-1].score_breakdown if handle.rounds else None)
        )

        logger.info(
            "Round %d for %s: plateau=%d strategies=%s base=%s",
            round_no, state.project_id, level, [s.value for s in strategies], base.id,
        )
        round_ = Round(round=round_no, plateau_level=level, strategies=strategies)

        candidates = await asyncio.gather(*[
            self._run_candidate(handle, round_no, i, tag, base, segments, history, focus)
            for i, tag in enumerate(strategies)
        ])
        round_.candidates = list(candidates)

        succeeded = [c for c in round_.candidates if c.succeeded]
        winner = max(succeeded, key=lambda c: (c.avg_score, -c.index)) if succeeded else None

        previous_best = state.best_ever.avg_score
        if winner is not None:
            winner.won = True
            round_.winner_skill_id = winner.skill_id
            round_.avg_score = winner.avg_score
            round_.score_breakdown = winner.score_breakdown
            if previous_best is not None:
                round_.score_delta = round(winner.avg_score - previous_best, 2)

        state.plateau_level = tracker.observe(round_.score_delta, winner is not None)
        state.plateau_counter = tracker.counter

        if winner is not None and (previous_best is None or winner.avg_score > previous_best):
            state.best_ever = BestEver(
                skill_id=winner.skill_id,
                round=round_no,
                avg_score=winner.avg_score,
                strategy=winner.strategy,
                score_breakdown=winner.score_breakdown,
            )
            logger.info("New best for %s: %s (%.1f)", state.project_id, winner.skill_id, winner.avg_score)

        round_.completed_at = time.time()
        handle.rounds.append(round_)
        state.current_round = round_no
        await self._persist(handle)

        RunAuditEntry(
            event="round_completed", project_id=state.project_id, round=round_no,
            status="winner" if winner else "no_winner", avg_score=round_.avg_score,
            extra={
                "strategies": [s.value for s in strategies],
                "plateau_level": level,
                "score_delta": round_.score_delta,
                "best_avg_score": state.best_ever.avg_score,
            },
        ).emit()
        self._bus.publish(Notification(
            type=NotificationType.ROUND_COMPLETED,
            project_id=state.project_id,
            data={
                "round": round_no,
                "strategies": [s.value for s in strategies],
                "plateau_level": level,
                "next_plateau_level": state.plateau_level,
                "winner_skill_id": round_.winner_skill_id,
                "avg_score": round_.avg_score,
                "score_delta": round_.score_delta,
                "best_skill_id": state.best_ever.skill_id,
                "best_avg_score": state.best_ever.avg_score,
            },
        ))
        return round_

    async def _run_candidate(
        self,
        handle: _IterationHandle,
        round_no: int,
        index: int,
        strategy: StrategyTag,
        base: Skill,
        segments: List[AdvantageSegment],
        history: List[ScoreHistoryEntry],
        focus: str,
    ) -> Candidate:
        state = handle.state
        chosen = pick_segments(strategy, segments, self._rng, handle.used_segment_ids)
        handle.used_segment_ids.update(s.id for s in chosen)
        candidate = Candidate(
            index=index,
            strategy=strategy,
            focus_dimension=focus if strategy == StrategyTag.DIMENSION_FOCUS else None,
            segment_ids=[s.id for s in chosen],
        )

        request = RecomposeRequest(
            project_id=state.project_id,
            base_skill_id=base.id,
            base_content=base.content,
            strategy=strategy,
            retention_rules=state.params.retention_rules,
            focus_dimension=candidate.focus_dimension,
            segments=chosen,
            score_history=history,
        )
        try:
            content = await self._recomposer.generate(request)
        except SkillBenchError as e:
            logger.warning("Round %d candidate %d recompose failed: %s", round_no, index, e)
            candidate.error = ErrorInfo.from_exception(e)
            return candidate
        except Exception as e:
            logger.exception("Round %d candidate %d recompose raised", round_no, index)
            candidate.error = ErrorInfo.from_exception(e)
            return candidate

        try:
            skill = self._workspace.create_skill(
                content,
                name="{}-r{}-c{}".format(base.name or base.id, round_no, index + 1),
                parent_id=base.id,
                provenance={
                    "project_id": state.project_id,
                    "round": str(round_no),
                    "strategy": strategy.value,
                },
            )
            candidate.skill_id = skill.id
            run, tasks = await self._runs.evaluate_scoped(state.project_id, skill.id, content)
        except SkillBenchError as e:
            candidate.error = ErrorInfo.from_exception(e)
            return candidate
        except Exception as e:
            logger.exception("Round %d candidate %d evaluation raised", round_no, index)
            candidate.error = ErrorInfo.from_exception(e)
            return candidate

        candidate.completed_cases = run.completed_tasks
        candidate.failed_cases = run.failed_tasks
        if run.completed_tasks > 0:
            ranking = rank_skills(tasks)[0]
            candidate.avg_score = ranking.avg_score
            candidate.score_breakdown = ranking.score_breakdown
            self._workspace.record_score(skill.id, ranking.avg_score)
        else:
            errors = [t.error for t in tasks if t.error is not None]
            candidate.error = errors[-1] if errors else ErrorInfo(
                code=ErrorCode.NOT_FOUND.value, message="Project has no baseline cases",
            )
            logger.warning(
                "Round %d candidate %d (%s) had no successful case", round_no, index, skill.id,
            )
        return candidate

    @staticmethod
    def _score_history(rounds: List[Round]) -> List[ScoreHistoryEntry]:
        history = []
        for r in rounds:
            if r.avg_score is None:
                continue
            winner = next((c for c in r.candidates if c.won), None)
            history.append(ScoreHistoryEntry(
                round=r.round,
                strategy=winner.strategy if winner else None,
                avg_score=r.avg_score,
                score_delta=r.score_delta,
                score_breakdown=r.score_breakdown,
            ))
        return history

    async def _finish(self, handle: _IterationHandle, status: IterationStatus, reason: str) -> None:
        state = handle.state
        state.status = status
        state.stop_reason = reason
        state.completed_at = time.time()
        self._activity.release(state.project_id, ITERATION)
        logger.info(
            "Iteration for %s finished: %s after %d round(s), best=%s (%s)",
            state.project_id, reason, len(handle.rounds),
            state.best_ever.skill_id, state.best_ever.avg_score,
        )
        try:
            await self._persist(handle)
        finally:
            handle.done.set()
        RunAuditEntry(
            event="iteration_finished", project_id=state.project_id, status=status.value,
            avg_score=state.best_ever.avg_score, error=state.error,
            extra={"stop_reason": reason, "rounds": len(handle.rounds),
                   "best_round": state.best_ever.round},
        ).emit()
        self._bus.publish(Notification(
            type=NotificationType.ALL_COMPLETE,
            project_id=state.project_id,
            data={
                "stop_reason": reason,
                "status": status.value,
                "total_rounds": len(handle.rounds),
                "best_round": state.best_ever.round,
                "best_skill_id": state.best_ever.skill_id,
                "best_avg_score": state.best_ever.avg_score,
            },
        ))

    async def _persist(self, handle: _IterationHandle) -> None:
        if self._store is None:
            return
        await self._store.save_iteration(
            handle.state.project_id,
            handle.state.model_dump(mode="json"),
            [r.model_dump(mode="json") for r in handle.rounds],
        )
