# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Error codes shared by the evaluation and iteration controllers."""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Structured error codes carried by failure envelopes."""

    # State errors: rejected synchronously, never retried
    ALREADY_RUNNING = "ALREADY_RUNNING"
    NOT_RUNNING = "NOT_RUNNING"
    NOT_PAUSED = "NOT_PAUSED"
    RESOURCE_BUSY = "RESOURCE_BUSY"
    NO_SEED_SKILL = "NO_SEED_SKILL"
    CASE_NOT_FAILED = "CASE_NOT_FAILED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_PARAMS = "INVALID_PARAMS"

    # Evaluator errors: retried up to retry_count
    CLI_NOT_AVAILABLE = "CLI_NOT_AVAILABLE"
    CLI_EXECUTION_ERROR = "CLI_EXECUTION_ERROR"
    CLI_TIMEOUT = "CLI_TIMEOUT"
    OUTPUT_PARSE_FAILED = "OUTPUT_PARSE_FAILED"

    # Candidate generation
    RECOMPOSE_FAILED = "RECOMPOSE_FAILED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


RETRYABLE_CODES = frozenset({
    ErrorCode.CLI_NOT_AVAILABLE,
    ErrorCode.CLI_EXECUTION_ERROR,
    ErrorCode.CLI_TIMEOUT,
    ErrorCode.OUTPUT_PARSE_FAILED,
})


class SkillBenchError(Exception):
    """Base error with a structured code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = ErrorCode(code)
        self.message = message or self.code.value
        self.details = details or {}
        super().__init__("[{}] {}".format(self.code.value, self.message))


class EvaluatorError(SkillBenchError):
    """Failure raised by an Evaluator; eligible for the retry policy."""

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES


class RecomposeError(SkillBenchError):
    """Failure raised while generating a candidate skill."""

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.RECOMPOSE_FAILED, message, details)
