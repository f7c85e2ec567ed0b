# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for Workspace lookups, mutations and YAML loading."""
import pytest

from skillbench.errors import ErrorCode, SkillBenchError
from skillbench.workspace import load_workspace


WORKSPACE_YAML = """\
projects:
  - id: demo
    skills: [skill-a, skill-b]
    baselines: [core, extra]
    concurrency: 3
    mode: explore
skills:
  - id: skill-a
    name: Alpha
    path: skills/a.md
  - id: skill-b
    content: inline body
    last_score: 81.5
baselines:
  - id: core
    cases:
      - case_id: c1
        input: first
  - id: extra
    cases:
      - case_id: c2
        input: second
        expected_output: done
segments:
  - id: seg-1
    skill_id: skill-a
    dimension: robustness
    content: Validate inputs.
  - id: seg-x
    skill_id: outsider
    content: Not part of the project.
"""


@pytest.fixture
def workspace_file(tmp_path):
    (tmp_path / "skills").mkdir()
    (tmp_path / "skills" / "a.md").write_text("# Alpha skill\n", encoding="utf-8")
    path = tmp_path / "workspace.yaml"
    path.write_text(WORKSPACE_YAML, encoding="utf-8")
    return path


class TestLoadWorkspace:

    def test_loads_projects_and_skills(self, workspace_file):
        ws = load_workspace(str(workspace_file))
        project = ws.get_project("demo")
        assert project.concurrency == 3
        assert project.mode == "explore"
        assert ws.get_skill("skill-a").content == "# Alpha skill\n"
        assert ws.get_skill("skill-b").last_score == 81.5

    def test_cases_flattened_in_baseline_order(self, workspace_file):
        ws = load_workspace(str(workspace_file))
        assert [c.case_id for c in ws.project_cases("demo")] == ["c1", "c2"]

    def test_segments_limited_to_project_skills(self, workspace_file):
        ws = load_workspace(str(workspace_file))
        assert [s.id for s in ws.project_segments("demo")] == ["seg-1"]
        assert ws.project_segments("demo", ["seg-x"]) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workspace(str(tmp_path / "nope.yaml"))

    def test_unknown_mode_rejected(self, tmp_path):
        path = tmp_path / "ws.yaml"
        path.write_text("projects:\n  - id: p\n    mode: turbo\n", encoding="utf-8")
        with pytest.raises(SkillBenchError) as exc:
            load_workspace(str(path))
        assert exc.value.code == ErrorCode.INVALID_PARAMS

    def test_empty_file(self, tmp_path):
        path = tmp_path / "ws.yaml"
        path.write_text("", encoding="utf-8")
        assert load_workspace(str(path)).project_ids() == []


class TestWorkspace:

    def test_unknown_project(self, workspace):
        with pytest.raises(SkillBenchError) as exc:
            workspace.get_project("missing")
        assert exc.value.code == ErrorCode.NOT_FOUND

    def test_unknown_skill(self, workspace):
        assert workspace.find_skill("missing") is None
        with pytest.raises(SkillBenchError):
            workspace.get_skill("missing")

    def test_missing_baseline(self, make_workspace):
        ws = make_workspace(baselines=["core", "gone"])
        with pytest.raises(SkillBenchError) as exc:
            ws.project_cases("demo")
        assert exc.value.code == ErrorCode.NOT_FOUND

    def test_create_skill(self, workspace):
        skill = workspace.create_skill("body", name="cand", parent_id="skill-a",
                                       provenance={"round": "1"})
        assert workspace.get_skill(skill.id) is skill
        assert skill.parent_id == "skill-a"
        assert skill.provenance == {"round": "1"}
        assert len(skill.content_hash()) == 12

    def test_record_score(self, workspace):
        workspace.record_score("skill-a", 72.5)
        assert workspace.get_skill("skill-a").last_score == 72.5
        workspace.record_score("missing", 1.0)
