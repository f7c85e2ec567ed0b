# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Structured audit logging for evaluation runs and iteration rounds."""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger("skillbench.audit")


@dataclass
class RunAuditEntry:
    """One audit record for a task, run transition or iteration round.

    Emitted as structured JSON to the ``skillbench.audit`` logger at INFO level.
    """
    event: str
    project_id: str
    timestamp: float = field(default_factory=time.time)
    run_id: str = ""
    task_id: str = ""
    status: str = ""
    attempts: int = 0
    round: Optional[int] = None
    avg_score: Optional[float] = None
    duration_ms: int = 0
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def emit(self) -> None:
        """Emit this entry as a structured JSON log line."""
        record: Dict[str, Any] = {
            "event": self.event,
            "ts": self.timestamp,
            "project_id": self.project_id,
        }
        if self.run_id:
            record["run_id"] = self.run_id
        if self.task_id:
            record["task_id"] = self.task_id
        if self.status:
            record["status"] = self.status
        if self.attempts:
            record["attempts"] = self.attempts
        if self.round is not None:
            record["round"] = self.round
        if self.avg_score is not None:
            record["avg_score"] = self.avg_score
        if self.duration_ms:
            record["duration_ms"] = self.duration_ms
        if self.error:
            record["error"] = self.error
        record.update(self.extra)
        logger.info(json.dumps(record, ensure_ascii=False))
