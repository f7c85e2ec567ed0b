# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""SQLite-backed checkpoint store — run progress survives restarts."""
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from skillbench.evaluation.models import (
    EvaluationRun, EvaluationTask, MANUAL_SCOPE, RunStatus,
)

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    project_id TEXT,
    scope TEXT,
    status TEXT,
    total_tasks INTEGER,
    completed_tasks INTEGER,
    failed_tasks INTEGER,
    last_checkpoint INTEGER DEFAULT 0,
    created_at REAL,
    updated_at REAL
);

CREATE INDEX IF NOT EXISTS idx_runs_project ON runs(project_id, scope, created_at);

CREATE TABLE IF NOT EXISTS tasks (
    run_id TEXT REFERENCES runs(run_id),
    idx INTEGER,
    payload TEXT,
    status TEXT,
    updated_at REAL,
    PRIMARY KEY (run_id, idx)
);

CREATE TABLE IF NOT EXISTS iterations (
    project_id TEXT PRIMARY KEY,
    state TEXT,
    rounds TEXT,
    updated_at REAL
);
"""

RunRecord = Tuple[EvaluationRun, List[EvaluationTask]]


class CheckpointStore:
    """Async SQLite store for evaluation runs, tasks and iteration state."""

    def __init__(self, db_path: str = "~/.skillbench/state.db") -> None:
        self._db_path = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        """Open database and create tables."""
        parent = os.path.dirname(self._db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.init()
        return self._db

    # ── Runs ──────────────────────────────────────────────────

    async def save_run(self, run: EvaluationRun) -> None:
        """Upsert a run. The stored checkpoint only ever moves forward."""
        db = await self._ensure_db()
        now = time.time()
        await db.execute(
            "INSERT INTO runs (run_id, project_id, scope, status, total_tasks, completed_tasks, "
            "failed_tasks, last_checkpoint, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(run_id) DO UPDATE SET status = excluded.status, "
            "total_tasks = excluded.total_tasks, completed_tasks = excluded.completed_tasks, "
            "failed_tasks = excluded.failed_tasks, "
            "last_checkpoint = MAX(runs.last_checkpoint, excluded.last_checkpoint), "
            "updated_at = excluded.updated_at",
            (
                run.id, run.project_id, run.scope, run.status.value, run.total_tasks,
                run.completed_tasks, run.failed_tasks, run.last_checkpoint,
                run.created_at, now,
            ),
        )
        await db.commit()

    async def save_tasks(self, run_id: str, tasks: List[EvaluationTask]) -> None:
        """Write (or overwrite) task records."""
        db = await self._ensure_db()
        now = time.time()
        await db.executemany(
            "INSERT OR REPLACE INTO tasks (run_id, idx, payload, status, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [(run_id, t.index, t.model_dump_json(), t.status.value, now) for t in tasks],
        )
        await db.commit()

    async def get_checkpoint(self, run_id: str) -> int:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT last_checkpoint FROM runs WHERE run_id = ?", (run_id,),
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def load_run(self, run_id: str) -> Optional[RunRecord]:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT run_id, project_id, scope, status, total_tasks, completed_tasks, "
            "failed_tasks, last_checkpoint, created_at, updated_at FROM runs WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_run(row), await self._load_tasks(run_id)

    async def latest_run(self, project_id: str, scope: str = MANUAL_SCOPE) -> Optional[RunRecord]:
        """Most recent run for a project and scope."""
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT run_id FROM runs WHERE project_id = ? AND scope = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (project_id, scope),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return await self.load_run(row[0])

    async def _load_tasks(self, run_id: str) -> List[EvaluationTask]:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT payload FROM tasks WHERE run_id = ? ORDER BY idx ASC", (run_id,),
        )
        rows = await cursor.fetchall()
        return [EvaluationTask.model_validate_json(r[0]) for r in rows]

    # ── Iterations ────────────────────────────────────────────

    async def save_iteration(
        self,
        project_id: str,
        state: Dict[str, Any],
        rounds: List[Dict[str, Any]],
    ) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT OR REPLACE INTO iterations (project_id, state, rounds, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (
                project_id,
                json.dumps(state, ensure_ascii=False),
                json.dumps(rounds, ensure_ascii=False),
                time.time(),
            ),
        )
        await db.commit()

    async def load_iteration(self, project_id: str) -> Optional[Tuple[Dict[str, Any], List[Dict[str, Any]]]]:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT state, rounds FROM iterations WHERE project_id = ?", (project_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0]), json.loads(row[1])

    async def list_iteration_projects(self) -> List[str]:
        db = await self._ensure_db()
        cursor = await db.execute("SELECT project_id FROM iterations ORDER BY updated_at ASC")
        rows = await cursor.fetchall()
        return [r[0] for r in rows]


def _row_to_run(row) -> EvaluationRun:
    return EvaluationRun(
        id=row[0],
        project_id=row[1],
        scope=row[2],
        status=RunStatus(row[3]),
        total_tasks=row[4],
        completed_tasks=row[5],
        failed_tasks=row[6],
        last_checkpoint=row[7],
        created_at=row[8],
        updated_at=row[9],
    )
