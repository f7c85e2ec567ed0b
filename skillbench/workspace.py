# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Workspace — projects, skills, baselines and advantage segments.

Stands in for the skill/baseline/project storage collaborator. A workspace
is loaded from a single YAML file:

    projects:
      - id: demo
        skills: [skill-a, skill-b]
        baselines: [core]
        concurrency: 2
    skills:
      - id: skill-a
        name: Terse reviewer
        path: skills/a.md        # or inline `content:`
        last_score: 81.5
    baselines:
      - id: core
        cases:
          - case_id: c1
            input: "Write a function that..."
            expected_output: "..."
    segments:
      - id: seg-1
        skill_id: skill-a
        dimension: robustness
        content: "Always validate inputs before..."
"""
import hashlib
import logging
import time
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import BaseModel, Field

from skillbench.errors import ErrorCode, SkillBenchError

logger = logging.getLogger(__name__)

MODES = ("standard", "explore", "adaptive")


class BaselineCase(BaseModel):
    """One input / expected-output pair within a baseline."""

    case_id: str
    input: str
    expected_output: str = ""


class Baseline(BaseModel):
    """A named set of test cases used to score skills."""

    id: str
    name: str = ""
    version: str = "v1"
    cases: List[BaselineCase] = Field(default_factory=list)


class Skill(BaseModel):
    """A versioned instruction document under test."""

    id: str
    name: str = ""
    version: str = "v1"
    content: str = ""
    parent_id: str = ""
    provenance: Dict[str, str] = Field(default_factory=dict)
    last_score: Optional[float] = None
    created_at: float = Field(default_factory=time.time)

    def content_hash(self) -> str:
        """Short hash of the content for dedup."""
        return hashlib.sha256(self.content.encode()).hexdigest()[:12]


class AdvantageSegment(BaseModel):
    """A portion of a skill identified as contributing to a score dimension."""

    id: str
    skill_id: str
    dimension: str = ""
    content: str


class ProjectConfig(BaseModel):
    """A project: which skills run against which baselines, and how."""

    id: str
    name: str = ""
    skills: List[str] = Field(default_factory=list)
    baselines: List[str] = Field(default_factory=list)
    concurrency: Optional[int] = None
    timeout_seconds: Optional[int] = None
    retry_count: Optional[int] = None
    model: str = ""
    mode: str = "standard"


class Workspace:
    """In-memory registry of projects, skills, baselines and segments."""

    def __init__(
        self,
        projects: Optional[Iterable[ProjectConfig]] = None,
        skills: Optional[Iterable[Skill]] = None,
        baselines: Optional[Iterable[Baseline]] = None,
        segments: Optional[Iterable[AdvantageSegment]] = None,
    ) -> None:
        self._projects: Dict[str, ProjectConfig] = {p.id: p for p in projects or []}
        self._skills: Dict[str, Skill] = {s.id: s for s in skills or []}
        self._baselines: Dict[str, Baseline] = {b.id: b for b in baselines or []}
        self._segments: Dict[str, AdvantageSegment] = {s.id: s for s in segments or []}

    # ── Lookups ───────────────────────────────────────────────

    def get_project(self, project_id: str) -> ProjectConfig:
        project = self._projects.get(project_id)
        if project is None:
            raise SkillBenchError(
                ErrorCode.NOT_FOUND, "Project not found: {}".format(project_id),
            )
        return project

    def project_ids(self) -> List[str]:
        return list(self._projects)

    def find_skill(self, skill_id: str) -> Optional[Skill]:
        return self._skills.get(skill_id)

    def get_skill(self, skill_id: str) -> Skill:
        skill = self._skills.get(skill_id)
        if skill is None:
            raise SkillBenchError(
                ErrorCode.NOT_FOUND, "Skill not found: {}".format(skill_id),
            )
        return skill

    def project_skills(self, project_id: str) -> List[Skill]:
        project = self.get_project(project_id)
        return [self.get_skill(sid) for sid in project.skills]

    def project_cases(self, project_id: str) -> List[BaselineCase]:
        """Flatten the project's baselines into one ordered case list."""
        project = self.get_project(project_id)
        cases: List[BaselineCase] = []
        for baseline_id in project.baselines:
            baseline = self._baselines.get(baseline_id)
            if baseline is None:
                raise SkillBenchError(
                    ErrorCode.NOT_FOUND, "Baseline not found: {}".format(baseline_id),
                )
            cases.extend(baseline.cases)
        return cases

    def project_segments(
        self,
        project_id: str,
        segment_ids: Optional[List[str]] = None,
    ) -> List[AdvantageSegment]:
        """Segments mined from the project's skills, optionally filtered by id."""
        project = self.get_project(project_id)
        owned = set(project.skills)
        segments = [s for s in self._segments.values() if s.skill_id in owned]
        if segment_ids:
            wanted = set(segment_ids)
            segments = [s for s in segments if s.id in wanted]
        return segments

    # ── Mutations ─────────────────────────────────────────────

    def create_skill(
        self,
        content: str,
        name: str = "",
        parent_id: str = "",
        provenance: Optional[Dict[str, str]] = None,
    ) -> Skill:
        """Store a new skill document (e.g. an iteration candidate)."""
        skill = Skill(
            id=uuid.uuid4().hex,
            name=name,
            content=content,
            parent_id=parent_id,
            provenance=provenance or {},
        )
        self._skills[skill.id] = skill
        logger.debug("Created skill %s (%s) from parent %s", skill.id, name, parent_id or "-")
        return skill

    def record_score(self, skill_id: str, score: float) -> None:
        skill = self._skills.get(skill_id)
        if skill is not None:
            skill.last_score = score


def load_workspace(path: str) -> Workspace:
    """Load a workspace from a YAML file.

    Skill ``path`` entries are resolved relative to the YAML file.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError("Workspace not found: {}".format(path))

    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    skills = []
    for item in data.get("skills", []):
        item = dict(item)
        skill_path = item.pop("path", None)
        if skill_path and not item.get("content"):
            item["content"] = (p.parent / skill_path).read_text(encoding="utf-8")
        skills.append(Skill(**item))

    projects = [ProjectConfig(**item) for item in data.get("projects", [])]
    for project in projects:
        if project.mode not in MODES:
            raise SkillBenchError(
                ErrorCode.INVALID_PARAMS,
                "Unknown mode {!r} for project {}".format(project.mode, project.id),
            )

    return Workspace(
        projects=projects,
        skills=skills,
        baselines=[Baseline(**item) for item in data.get("baselines", [])],
        segments=[AdvantageSegment(**item) for item in data.get("segments", [])],
    )
