# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Pydantic models for the control surface: envelopes and notifications."""
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from skillbench.errors import ErrorCode, SkillBenchError


class ErrorInfo(BaseModel):
    """Structured failure carried by an envelope, task or candidate."""
    code: str
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        if isinstance(exc, SkillBenchError):
            return cls(code=exc.code.value, message=exc.message, details=exc.details)
        return cls(code=ErrorCode.INTERNAL_ERROR.value, message=str(exc)[:500])


class Envelope(BaseModel):
    """Success/failure envelope returned by every control-surface call."""
    ok: bool
    data: Any = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def success(cls, data: Any = None) -> "Envelope":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, exc: BaseException) -> "Envelope":
        return cls(ok=False, error=ErrorInfo.from_exception(exc))


class NotificationType(str, Enum):
    """Types of push notifications."""
    EVALUATION_PROGRESS = "evaluation.progress"
    EVALUATION_COMPLETED = "evaluation.completed"
    ROUND_COMPLETED = "iteration.round_completed"
    ALL_COMPLETE = "iteration.all_complete"


class Notification(BaseModel):
    """A single fire-and-forget notification."""
    type: NotificationType
    project_id: str
    timestamp: float = Field(default_factory=time.time)
    data: Dict[str, Any] = Field(default_factory=dict)


# Type alias for subscriber callbacks
NotificationCallback = Callable[["Notification"], None]
