# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Per-project activity registry — at most one active operation per project."""
import logging
from typing import Dict, Optional

from skillbench.errors import ErrorCode, SkillBenchError

logger = logging.getLogger(__name__)

EVALUATION = "evaluation"
ITERATION = "iteration"


class ProjectActivity:
    """Keyed store of which kind of work is active for each project.

    An evaluation run and an iteration loop are mutually exclusive per
    project; claiming one while the other holds the project fails with
    RESOURCE_BUSY. Claiming the same kind twice is allowed (the owning
    controller reports ALREADY_RUNNING itself).
    """

    def __init__(self) -> None:
        self._active: Dict[str, str] = {}

    def active(self, project_id: str) -> Optional[str]:
        """Return the kind of work active for a project, if any."""
        return self._active.get(project_id)

    def ensure_free(self, project_id: str, kind: str) -> None:
        """Raise RESOURCE_BUSY if another kind of work holds the project."""
        current = self._active.get(project_id)
        if current is not None and current != kind:
            raise SkillBenchError(
                ErrorCode.RESOURCE_BUSY,
                "Project {} is busy with an active {}".format(project_id, current),
                {"active": current},
            )

    def claim(self, project_id: str, kind: str) -> None:
        self.ensure_free(project_id, kind)
        self._active[project_id] = kind
        logger.debug("Project %s claimed by %s", project_id, kind)

    def release(self, project_id: str, kind: str) -> None:
        """Release a claim. Releasing a claim held by another kind is a no-op."""
        if self._active.get(project_id) == kind:
            self._active.pop(project_id, None)
            logger.debug("Project %s released by %s", project_id, kind)
