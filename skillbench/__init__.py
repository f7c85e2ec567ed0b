# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""skillbench — evaluate skill prompts against baselines and iterate on them."""
from skillbench.config import BenchConfig
from skillbench.errors import ErrorCode, EvaluatorError, SkillBenchError
from skillbench.models import Envelope, Notification, NotificationType
from skillbench.service import SkillBench
from skillbench.workspace import Workspace, load_workspace

__version__ = "0.4.0"
__all__ = [
    "BenchConfig", "SkillBench",
    "ErrorCode", "EvaluatorError", "SkillBenchError",
    "Envelope", "Notification", "NotificationType",
    "Workspace", "load_workspace",
    "__version__",
]
