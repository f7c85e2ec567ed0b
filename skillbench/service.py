# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""SkillBench — the control surface over evaluation runs and iterations.

Every call returns an ``Envelope``: ``{ok: true, data}`` on success or
``{ok: false, error: {code, message}}`` on failure. Push notifications are
delivered through ``bench.bus``.

Usage:
    bench = SkillBench(load_workspace("workspace.yaml"))
    await bench.init()
    env = await bench.start_evaluation("demo")
    ...
    await bench.close()
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel

from skillbench.config import BenchConfig
from skillbench.coordinator import ProjectActivity
from skillbench.errors import SkillBenchError
from skillbench.evaluation.controller import EvaluationRunController
from skillbench.evaluation.evaluator import CliEvaluator, Evaluator
from skillbench.evaluation.store import CheckpointStore
from skillbench.iteration.controller import IterationController
from skillbench.iteration.models import IterationParams
from skillbench.iteration.recompose import CliRecomposer, Recomposer
from skillbench.models import Envelope
from skillbench.notify import NotificationBus
from skillbench.workspace import Workspace

logger = logging.getLogger(__name__)


def _to_data(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class SkillBench:
    """Facade wiring the controllers to a shared store, bus and activity registry."""

    def __init__(
        self,
        workspace: Workspace,
        evaluator: Optional[Evaluator] = None,
        recomposer: Optional[Recomposer] = None,
        config: Optional[BenchConfig] = None,
        store: Optional[CheckpointStore] = None,
        bus: Optional[NotificationBus] = None,
    ) -> None:
        self.config = config or BenchConfig()
        self.workspace = workspace
        self.bus = bus or NotificationBus()
        self.store = store
        self.activity = ProjectActivity()
        self.runs = EvaluationRunController(
            workspace,
            evaluator or CliEvaluator(self.config),
            config=self.config,
            store=store,
            activity=self.activity,
            bus=self.bus,
        )
        self.iterations = IterationController(
            workspace,
            self.runs,
            recomposer or CliRecomposer(self.config),
            store=store,
            activity=self.activity,
            bus=self.bus,
        )

    async def init(self) -> None:
        """Open the store and restore persisted runs and iterations."""
        if self.store is None:
            return
        await self.store.init()
        runs = await self.runs.restore()
        iterations = await self.iterations.restore()
        if runs or iterations:
            logger.info("Restored %d paused run(s), %d iteration(s)", runs, iterations)

    async def close(self) -> None:
        if self.store is not None:
            await self.store.close()

    async def _call(self, name: str, fn: Callable[[], Union[Any, Awaitable[Any]]]) -> Envelope:
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return Envelope.success(_to_data(result))
        except SkillBenchError as e:
            logger.info("%s rejected: %s", name, e)
            return Envelope.failure(e)
        except Exception as e:
            logger.exception("%s failed", name)
            return Envelope.failure(e)

    # ── Evaluation ────────────────────────────────────────────

    async def start_evaluation(self, project_id: str) -> Envelope:
        return await self._call("start_evaluation", lambda: self.runs.start(project_id))

    async def pause_evaluation(self, project_id: str) -> Envelope:
        return await self._call("pause_evaluation", lambda: self.runs.pause(project_id))

    async def resume_evaluation(self, project_id: str) -> Envelope:
        return await self._call("resume_evaluation", lambda: self.runs.resume(project_id))

    async def stop_evaluation(self, project_id: str) -> Envelope:
        return await self._call("stop_evaluation", lambda: self.runs.stop(project_id))

    async def get_evaluation_progress(self, project_id: str) -> Envelope:
        return await self._call("get_evaluation_progress", lambda: self.runs.get_progress(project_id))

    async def get_evaluation_results(
        self,
        project_id: str,
        skill_id: Optional[str] = None,
        case_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Envelope:
        return await self._call("get_evaluation_results", lambda: self.runs.get_results(
            project_id, skill_id=skill_id, case_id=case_id, status=status,
            page=page, page_size=page_size,
        ))

    async def retry_case(
        self,
        project_id: str,
        case_id: str,
        skill_id: Optional[str] = None,
    ) -> Envelope:
        return await self._call(
            "retry_case", lambda: self.runs.retry_case(project_id, case_id, skill_id=skill_id),
        )

    # ── Iteration ─────────────────────────────────────────────

    async def start_iteration(
        self,
        project_id: str,
        params: Union[IterationParams, Dict[str, Any]],
    ) -> Envelope:
        return await self._call("start_iteration", lambda: self.iterations.start(project_id, params))

    async def stop_iteration(self, project_id: str) -> Envelope:
        return await self._call("stop_iteration", lambda: self.iterations.stop(project_id))

    async def get_iteration_progress(self, project_id: str) -> Envelope:
        return await self._call(
            "get_iteration_progress", lambda: self.iterations.get_progress(project_id),
        )

    async def get_iteration_report(self, project_id: str) -> Envelope:
        return await self._call(
            "get_iteration_report", lambda: self.iterations.get_report(project_id),
        )

    async def get_exploration_log(self, project_id: str) -> Envelope:
        return await self._call(
            "get_exploration_log", lambda: self.iterations.get_exploration_log(project_id),
        )
