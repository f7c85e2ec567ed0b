# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Evaluation run controller — the skill x case task queue for one project.

Lifecycle of a manual run:

    start ──> running ──pause──> paused ──resume──> running ──> completed
                 │                  │
                 └──────stop────────┴──> idle (aborted)

Tasks are dispatched to the Evaluator by ``concurrency`` workers. Each task
gets ``1 + retry_count`` attempts, each bounded by ``timeout_seconds``.
Every resolved task is written to the checkpoint store before the run's
``last_checkpoint`` moves past it, so a restarted process resumes without
re-running succeeded or failed tasks.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from skillbench.audit import RunAuditEntry
from skillbench.config import BenchConfig
from skillbench.coordinator import EVALUATION, ProjectActivity
from skillbench.errors import ErrorCode, EvaluatorError, SkillBenchError
from skillbench.evaluation.evaluator import Evaluator
from skillbench.evaluation.models import (
    ACTIVE_STATUSES, MANUAL_SCOPE, EvaluationRun, EvaluationTask,
    ProgressSnapshot, ResultsPage, RunStatus, ScoreBreakdown, SkillRanking,
    TaskStatus,
)
from skillbench.evaluation.store import CheckpointStore
from skillbench.models import ErrorInfo, Notification, NotificationType
from skillbench.notify import NotificationBus
from skillbench.workspace import BaselineCase, Workspace

logger = logging.getLogger(__name__)


@dataclass
class RunSettings:
    concurrency: int
    timeout_seconds: int
    retry_count: int


class _RunHandle:
    """Live state of one run: the run record, its tasks and its workers."""

    def __init__(
        self,
        run: EvaluationRun,
        tasks: List[EvaluationTask],
        contents: Dict[str, str],
        cases: Dict[int, BaselineCase],
        settings: RunSettings,
        durable: bool,
    ) -> None:
        self.run = run
        self.tasks = tasks
        self.contents = contents
        self.cases = cases
        self.settings = settings
        self.durable = durable
        self.epoch = 0
        self.stopped = False
        self.inflight = 0
        self.drivers: List[asyncio.Task] = []
        self.persisted: Set[int] = {t.index for t in tasks if t.resolved}
        self.settled = asyncio.Event()
        # Workers of a superseded epoch keep their slot until their task resolves.
        self.slots = asyncio.Semaphore(max(1, settings.concurrency))

    @property
    def manual(self) -> bool:
        return self.run.scope == MANUAL_SCOPE

    def next_pending(self) -> Optional[EvaluationTask]:
        for task in self.tasks:
            if task.status == TaskStatus.PENDING:
                return task
        return None

    def has_pending(self) -> bool:
        return any(t.status == TaskStatus.PENDING for t in self.tasks)

    def all_resolved(self) -> bool:
        return all(t.resolved for t in self.tasks)

    def advance_checkpoint(self) -> None:
        """Move last_checkpoint over the durably resolved prefix. Never decreases."""
        cp = self.run.last_checkpoint
        while cp < len(self.tasks) and self.tasks[cp].resolved and cp in self.persisted:
            cp += 1
        self.run.last_checkpoint = cp

    def update_settled(self) -> None:
        status = self.run.status
        if status in (RunStatus.COMPLETED, RunStatus.IDLE, RunStatus.ERROR):
            self.settled.set()
        elif status == RunStatus.PAUSED and self.inflight == 0:
            self.settled.set()
        else:
            self.settled.clear()


class EvaluationRunController:
    """Owns one manual evaluation run per project plus ad-hoc scoped runs."""

    def __init__(
        self,
        workspace: Workspace,
        evaluator: Evaluator,
        config: Optional[BenchConfig] = None,
        store: Optional[CheckpointStore] = None,
        activity: Optional[ProjectActivity] = None,
        bus: Optional[NotificationBus] = None,
    ) -> None:
        self._workspace = workspace
        self._evaluator = evaluator
        self._config = config or BenchConfig()
        self._store = store
        self._activity = activity or ProjectActivity()
        self._bus = bus or NotificationBus()
        self._runs: Dict[str, _RunHandle] = {}
        self._last_known: Dict[str, ProgressSnapshot] = {}

    # ── Public API ────────────────────────────────────────────

    async def start(self, project_id: str) -> ProgressSnapshot:
        """Build the task queue for a project and begin dispatching."""
        existing = self._runs.get(project_id)
        if existing and existing.run.status in ACTIVE_STATUSES:
            raise SkillBenchError(
                ErrorCode.ALREADY_RUNNING,
                "Evaluation already {} for project {}".format(existing.run.status.value, project_id),
            )
        self._activity.ensure_free(project_id, EVALUATION)

        skills = self._workspace.project_skills(project_id)
        cases = self._workspace.project_cases(project_id)
        handle = self._build_handle(
            project_id, [(s.id, s.content) for s in skills], cases, MANUAL_SCOPE,
            durable=self._store is not None,
        )
        handle.run.status = RunStatus.RUNNING

        self._activity.claim(project_id, EVALUATION)
        self._runs[project_id] = handle
        self._last_known.pop(project_id, None)

        logger.info(
            "Evaluation run %s started for %s (%d tasks, concurrency=%d)",
            handle.run.id, project_id, handle.run.total_tasks, handle.settings.concurrency,
        )
        RunAuditEntry(
            event="run_started", project_id=project_id, run_id=handle.run.id,
            status=handle.run.status.value, extra={"total_tasks": handle.run.total_tasks},
        ).emit()

        if handle.durable:
            await self._store.save_run(handle.run)
            await self._store.save_tasks(handle.run.id, handle.tasks)

        self._launch(handle)
        return ProgressSnapshot.of(handle.run)

    async def pause(self, project_id: str) -> ProgressSnapshot:
        """Stop dispatching new tasks; in-flight tasks finish and are recorded."""
        handle = self._runs.get(project_id)
        if handle is None or handle.run.status != RunStatus.RUNNING:
            raise SkillBenchError(
                ErrorCode.NOT_RUNNING, "No running evaluation for project {}".format(project_id),
            )
        handle.run.status = RunStatus.PAUSED
        handle.update_settled()
        logger.info(
            "Evaluation run %s paused (%d/%d resolved)",
            handle.run.id, handle.run.completed_tasks + handle.run.failed_tasks, handle.run.total_tasks,
        )
        await self._persist_run(handle)
        self._audit(handle, "run_paused")
        return ProgressSnapshot.of(handle.run)

    async def resume(self, project_id: str) -> ProgressSnapshot:
        """Continue a paused run; only pending tasks are dispatched."""
        handle = self._runs.get(project_id)
        if handle is None or handle.run.status != RunStatus.PAUSED:
            raise SkillBenchError(
                ErrorCode.NOT_PAUSED, "No paused evaluation for project {}".format(project_id),
            )
        handle.run.status = RunStatus.RUNNING
        remaining = sum(1 for t in handle.tasks if not t.resolved)
        logger.info("Evaluation run %s resumed (%d remaining)", handle.run.id, remaining)
        await self._persist_run(handle)
        self._audit(handle, "run_resumed")
        self._launch(handle)
        return ProgressSnapshot.of(handle.run)

    async def stop(self, project_id: str) -> ProgressSnapshot:
        """Abort a running or paused run. Late results are discarded."""
        handle = self._runs.get(project_id)
        if handle is None or handle.run.status not in ACTIVE_STATUSES:
            raise SkillBenchError(
                ErrorCode.NOT_RUNNING, "No active evaluation for project {}".format(project_id),
            )
        handle.stopped = True
        handle.epoch += 1
        handle.run.status = RunStatus.IDLE
        if self._evaluator.supports_cancellation:
            for driver in handle.drivers:
                if not driver.done():
                    driver.cancel()
        # Tasks cut off mid-flight go back to pending; their results never land.
        for task in handle.tasks:
            if task.status == TaskStatus.RUNNING:
                task.status = TaskStatus.PENDING
        handle.update_settled()
        self._activity.release(project_id, EVALUATION)
        logger.info("Evaluation run %s stopped", handle.run.id)
        await self._persist_run(handle)
        self._audit(handle, "run_stopped")
        return ProgressSnapshot.of(handle.run)

    def get_progress(self, project_id: str) -> ProgressSnapshot:
        """Non-blocking snapshot of the project's run progress."""
        handle = self._runs.get(project_id)
        if handle is not None:
            return ProgressSnapshot.of(handle.run)
        known = self._last_known.get(project_id)
        if known is not None:
            return known.model_copy()
        return ProgressSnapshot(project_id=project_id)

    def get_results(
        self,
        project_id: str,
        skill_id: Optional[str] = None,
        case_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> ResultsPage:
        """Paginated task results and the per-skill ranking."""
        page = max(1, page)
        page_size = max(1, page_size)
        handle = self._runs.get(project_id)
        if handle is None:
            return ResultsPage(page=page, page_size=page_size)

        items = [
            t for t in handle.tasks
            if (skill_id is None or t.skill_id == skill_id)
            and (case_id is None or t.case_id == case_id)
            and (status is None or t.status.value == status)
        ]
        start = (page - 1) * page_size
        return ResultsPage(
            items=[t.model_copy(deep=True) for t in items[start:start + page_size]],
            total=len(items),
            page=page,
            page_size=page_size,
            ranking=rank_skills(handle.tasks),
        )

    async def retry_case(
        self,
        project_id: str,
        case_id: str,
        skill_id: Optional[str] = None,
    ) -> ProgressSnapshot:
        """Re-submit exactly the failed task(s) for one case."""
        handle = self._runs.get(project_id)
        if handle is None or handle.run.status in (RunStatus.IDLE, RunStatus.ERROR):
            raise SkillBenchError(
                ErrorCode.NOT_RUNNING, "No evaluation run for project {}".format(project_id),
            )
        failed = [
            t for t in handle.tasks
            if t.case_id == case_id and t.status == TaskStatus.FAILED
            and (skill_id is None or t.skill_id == skill_id)
        ]
        if not failed:
            raise SkillBenchError(
                ErrorCode.CASE_NOT_FAILED,
                "Case {} has no failed task".format(case_id),
                {"case_id": case_id, "skill_id": skill_id},
            )

        reopen = handle.run.status == RunStatus.COMPLETED
        if reopen:
            self._activity.claim(project_id, EVALUATION)

        for task in failed:
            task.status = TaskStatus.PENDING
            task.attempts = 0
            task.error = None
            task.resolved_at = None
            handle.run.failed_tasks -= 1

        logger.info(
            "Retrying case %s in run %s (%d task(s))", case_id, handle.run.id, len(failed),
        )
        if reopen:
            handle.run.status = RunStatus.RUNNING
        if handle.durable:
            await self._store.save_tasks(handle.run.id, failed)
            await self._store.save_run(handle.run)
        self._audit(handle, "case_retried", extra={"case_id": case_id, "tasks": len(failed)})

        # A live driver picks the re-queued tasks up on its next pass.
        if reopen or (
            handle.run.status == RunStatus.RUNNING
            and all(d.done() for d in handle.drivers)
        ):
            self._launch(handle)
        return ProgressSnapshot.of(handle.run)

    async def join(self, project_id: str) -> ProgressSnapshot:
        """Wait until the project's run settles (completed, stopped, drained pause)."""
        handle = self._runs.get(project_id)
        if handle is None:
            return self.get_progress(project_id)
        await handle.settled.wait()
        return ProgressSnapshot.of(handle.run)

    async def evaluate_scoped(
        self,
        project_id: str,
        skill_id: str,
        content: str,
    ) -> Tuple[EvaluationRun, List[EvaluationTask]]:
        """Evaluate one candidate skill over the project's cases.

        Uses the same dispatch, retry and timeout policy as a manual run but
        is not registered as the project's run and is not checkpointed.
        """
        cases = self._workspace.project_cases(project_id)
        handle = self._build_handle(
            project_id, [(skill_id, content)], cases,
            "candidate:{}".format(skill_id), durable=False,
        )
        handle.run.status = RunStatus.RUNNING
        self._launch(handle)
        await handle.settled.wait()
        return handle.run.model_copy(), [t.model_copy(deep=True) for t in handle.tasks]

    async def restore(self) -> int:
        """Reload persisted runs after a restart.

        Runs that were running or paused come back paused, ready to resume.
        Returns the number of runs restored as paused.
        """
        if self._store is None:
            return 0
        restored = 0
        for project_id in self._workspace.project_ids():
            record = await self._store.latest_run(project_id)
            if record is None:
                continue
            run, tasks = record
            if run.status not in ACTIVE_STATUSES:
                self._last_known[project_id] = ProgressSnapshot.of(run)
                continue
            handle = self._restore_handle(run, tasks)
            if handle is None:
                continue
            self._activity.claim(project_id, EVALUATION)
            self._runs[project_id] = handle
            await self._store.save_run(handle.run)
            restored += 1
            logger.info(
                "Restored evaluation run %s for %s as paused (%d/%d resolved)",
                run.id, project_id, run.completed_tasks + run.failed_tasks, run.total_tasks,
            )
        return restored

    # ── Internals ─────────────────────────────────────────────

    def _settings(self, project_id: str) -> RunSettings:
        project = self._workspace.get_project(project_id)
        cfg = self._config
        return RunSettings(
            concurrency=max(1, project.concurrency or cfg.default_concurrency),
            timeout_seconds=max(1, project.timeout_seconds or cfg.default_timeout_seconds),
            retry_count=max(0, project.retry_count if project.retry_count is not None
                            else cfg.default_retry_count),
        )

    def _build_handle(
        self,
        project_id: str,
        skills: List[Tuple[str, str]],
        cases: List[BaselineCase],
        scope: str,
        durable: bool,
    ) -> _RunHandle:
        tasks: List[EvaluationTask] = []
        case_map: Dict[int, BaselineCase] = {}
        for skill_id, _ in skills:
            for case in cases:
                index = len(tasks)
                tasks.append(EvaluationTask(
                    id="{}/{}".format(skill_id, case.case_id),
                    index=index,
                    skill_id=skill_id,
                    case_id=case.case_id,
                ))
                case_map[index] = case
        run = EvaluationRun(project_id=project_id, scope=scope, total_tasks=len(tasks))
        return _RunHandle(
            run, tasks, dict(skills), case_map, self._settings(project_id), durable,
        )

    def _restore_handle(
        self,
        run: EvaluationRun,
        tasks: List[EvaluationTask],
    ) -> Optional[_RunHandle]:
        contents: Dict[str, str] = {}
        for task in tasks:
            skill = self._workspace.find_skill(task.skill_id)
            if skill is None:
                logger.warning(
                    "Cannot restore run %s: skill %s no longer exists", run.id, task.skill_id,
                )
                return None
            contents[task.skill_id] = skill.content
            if task.status == TaskStatus.RUNNING:
                task.status = TaskStatus.PENDING

        by_id = {c.case_id: c for c in self._workspace.project_cases(run.project_id)}
        case_map: Dict[int, BaselineCase] = {}
        for task in tasks:
            case = by_id.get(task.case_id)
            if case is None:
                logger.warning(
                    "Cannot restore run %s: case %s no longer exists", run.id, task.case_id,
                )
                return None
            case_map[task.index] = case

        run.status = RunStatus.PAUSED
        run.completed_tasks = sum(1 for t in tasks if t.status == TaskStatus.SUCCEEDED)
        run.failed_tasks = sum(1 for t in tasks if t.status == TaskStatus.FAILED)
        handle = _RunHandle(
            run, tasks, contents, case_map, self._settings(run.project_id), durable=True,
        )
        handle.advance_checkpoint()
        handle.update_settled()
        return handle

    def _launch(self, handle: _RunHandle) -> None:
        handle.epoch += 1
        handle.update_settled()
        if not handle.has_pending():
            self._maybe_finish_soon(handle)
            return
        driver = asyncio.create_task(self._drive(handle, handle.epoch))
        handle.drivers = [d for d in handle.drivers if not d.done()] + [driver]

    def _maybe_finish_soon(self, handle: _RunHandle) -> None:
        if handle.run.status == RunStatus.RUNNING and handle.all_resolved():
            handle.drivers.append(asyncio.create_task(self._finish(handle)))

    async def _drive(self, handle: _RunHandle, epoch: int) -> None:
        try:
            while (
                handle.epoch == epoch
                and handle.run.status == RunStatus.RUNNING
                and handle.has_pending()
            ):
                width = min(handle.settings.concurrency, len(handle.tasks))
                await asyncio.gather(*[self._worker(handle, epoch) for _ in range(width)])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Evaluation run %s crashed", handle.run.id)
            handle.run.status = RunStatus.ERROR
            handle.update_settled()
            if handle.manual:
                self._activity.release(handle.run.project_id, EVALUATION)
            self._audit(handle, "run_error", error=str(e)[:300])
            await self._persist_run(handle)

    async def _worker(self, handle: _RunHandle, epoch: int) -> None:
        while handle.epoch == epoch and handle.run.status == RunStatus.RUNNING:
            async with handle.slots:
                if handle.epoch != epoch or handle.run.status != RunStatus.RUNNING:
                    return
                task = handle.next_pending()
                if task is None:
                    return
                task.status = TaskStatus.RUNNING
                handle.inflight += 1
                handle.update_settled()
                try:
                    await self._execute(handle, task)
                finally:
                    handle.inflight -= 1
                    handle.update_settled()

    async def _execute(self, handle: _RunHandle, task: EvaluationTask) -> None:
        settings = handle.settings
        content = handle.contents[task.skill_id]
        case = handle.cases[task.index]
        max_attempts = 1 + settings.retry_count
        last_error: Optional[EvaluatorError] = None
        outcome = None
        t0 = time.monotonic()

        for attempt in range(1, max_attempts + 1):
            task.attempts += 1
            try:
                outcome = await asyncio.wait_for(
                    self._evaluator.evaluate(content, [case]),
                    timeout=settings.timeout_seconds,
                )
                last_error = None
                break
            except asyncio.TimeoutError:
                last_error = EvaluatorError(
                    ErrorCode.CLI_TIMEOUT,
                    "Task timed out after {}s".format(settings.timeout_seconds),
                )
            except EvaluatorError as e:
                last_error = e
            except Exception as e:
                logger.exception("Evaluator raised unexpectedly for %s", task.id)
                last_error = EvaluatorError(ErrorCode.INTERNAL_ERROR, str(e)[:500])
            if handle.stopped:
                return
            if not last_error.retryable or attempt == max_attempts:
                break
            logger.warning(
                "Task %s attempt %d/%d failed [%s], retrying",
                task.id, attempt, max_attempts, last_error.code.value,
            )

        if handle.stopped:
            logger.debug("Discarding result of %s after stop", task.id)
            return

        task.duration_ms = int((time.monotonic() - t0) * 1000)
        task.resolved_at = time.time()
        if last_error is None and outcome is not None:
            task.status = TaskStatus.SUCCEEDED
            task.avg_score = outcome.avg_score
            task.score_breakdown = outcome.score_breakdown
            handle.run.completed_tasks += 1
        else:
            task.status = TaskStatus.FAILED
            task.error = ErrorInfo.from_exception(last_error)
            handle.run.failed_tasks += 1
            logger.error(
                "Task %s failed after %d attempt(s): %s",
                task.id, task.attempts, last_error,
            )

        if handle.durable:
            await self._store.save_tasks(handle.run.id, [task])
        handle.persisted.add(task.index)
        handle.advance_checkpoint()
        handle.run.updated_at = time.time()
        await self._persist_run(handle)

        RunAuditEntry(
            event="task_resolved", project_id=handle.run.project_id, run_id=handle.run.id,
            task_id=task.id, status=task.status.value, attempts=task.attempts,
            avg_score=task.avg_score, duration_ms=task.duration_ms,
            error=task.error.code if task.error else None,
        ).emit()
        self._publish(handle, NotificationType.EVALUATION_PROGRESS, last_result={
            "task_id": task.id,
            "skill_id": task.skill_id,
            "case_id": task.case_id,
            "status": task.status.value,
            "avg_score": task.avg_score,
            "error": task.error.code if task.error else None,
        })

        if handle.run.status == RunStatus.RUNNING and handle.all_resolved():
            await self._finish(handle)

    async def _finish(self, handle: _RunHandle) -> None:
        if handle.run.status != RunStatus.RUNNING or not handle.all_resolved():
            return
        handle.run.status = RunStatus.COMPLETED
        handle.run.updated_at = time.time()
        handle.update_settled()
        if handle.manual:
            self._activity.release(handle.run.project_id, EVALUATION)
            for entry in rank_skills(handle.tasks):
                if entry.completed_cases:
                    self._workspace.record_score(entry.skill_id, entry.avg_score)
        logger.info(
            "Evaluation run %s completed (%d succeeded, %d failed)",
            handle.run.id, handle.run.completed_tasks, handle.run.failed_tasks,
        )
        await self._persist_run(handle)
        self._audit(handle, "run_completed")
        self._publish(handle, NotificationType.EVALUATION_COMPLETED)

    async def _persist_run(self, handle: _RunHandle) -> None:
        if handle.durable:
            await self._store.save_run(handle.run)

    def _publish(self, handle: _RunHandle, kind: NotificationType, **extra) -> None:
        run = handle.run
        data = {
            "run_id": run.id,
            "scope": run.scope,
            "status": run.status.value,
            "total_tasks": run.total_tasks,
            "completed_tasks": run.completed_tasks,
            "failed_tasks": run.failed_tasks,
            "last_checkpoint": run.last_checkpoint,
        }
        data.update(extra)
        self._bus.publish(Notification(type=kind, project_id=run.project_id, data=data))

    def _audit(self, handle: _RunHandle, event: str, error: Optional[str] = None, extra=None) -> None:
        RunAuditEntry(
            event=event, project_id=handle.run.project_id, run_id=handle.run.id,
            status=handle.run.status.value, error=error,
            extra=dict(extra or {}, completed_tasks=handle.run.completed_tasks,
                       failed_tasks=handle.run.failed_tasks,
                       last_checkpoint=handle.run.last_checkpoint),
        ).emit()


def rank_skills(tasks: List[EvaluationTask]) -> List[SkillRanking]:
    """Per-skill aggregate over resolved tasks, best first."""
    grouped: Dict[str, List[EvaluationTask]] = {}
    for task in tasks:
        grouped.setdefault(task.skill_id, []).append(task)

    ranking = []
    for skill_id, skill_tasks in grouped.items():
        succeeded = [t for t in skill_tasks if t.status == TaskStatus.SUCCEEDED]
        scored = [t for t in succeeded if t.avg_score is not None]
        avg = round(sum(t.avg_score for t in scored) / len(scored), 1) if scored else 0.0
        ranking.append(SkillRanking(
            skill_id=skill_id,
            completed_cases=len(succeeded),
            failed_cases=sum(1 for t in skill_tasks if t.status == TaskStatus.FAILED),
            avg_score=avg,
            score_breakdown=ScoreBreakdown.average(
                [t.score_breakdown for t in scored if t.score_breakdown is not None],
            ),
        ))

    ranking.sort(key=lambda r: (-r.avg_score, -r.completed_cases))
    for i, entry in enumerate(ranking):
        entry.rank = i + 1
    return ranking
