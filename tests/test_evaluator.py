# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for output parsing, score aggregation, CliEvaluator and CliRunner."""
import asyncio
import json

import pytest

from skillbench.config import BenchConfig
from skillbench.errors import ErrorCode, EvaluatorError
from skillbench.evaluation.cli_runner import CliRunner
from skillbench.evaluation.evaluator import (
    CliEvaluator, aggregate_outcome, breakdown_from_scores, parse_structured_output,
)
from skillbench.evaluation.models import ScoreBreakdown
from skillbench.workspace import BaselineCase


SCORES = {
    "functional_correctness": 27,
    "robustness": 16,
    "readability": 12,
    "conciseness": 13,
    "complexity_control": 8,
    "format_compliance": 9,
    "total": 85,
}


class TestParseStructuredOutput:

    def test_plain_json(self):
        assert parse_structured_output('{"a": 1}') == {"a": 1}

    def test_fenced_block(self):
        raw = 'Here you go:\n```json\n{"scores": {"total": 5}}\n```\nthanks'
        assert parse_structured_output(raw) == {"scores": {"total": 5}}

    def test_embedded_braces(self):
        assert parse_structured_output('Result: {"ok": true} end') == {"ok": True}

    def test_no_json(self):
        with pytest.raises(EvaluatorError) as exc:
            parse_structured_output("no structure here")
        assert exc.value.code == ErrorCode.OUTPUT_PARSE_FAILED

    def test_non_object_rejected(self):
        with pytest.raises(EvaluatorError):
            parse_structured_output("[1, 2, 3]")


class TestScoring:

    def test_breakdown_total(self):
        assert breakdown_from_scores(SCORES).total == 85.0

    def test_breakdown_clamps_each_dimension(self):
        b = breakdown_from_scores({"functional_correctness": 45, "robustness": -3})
        assert b.functional_correctness == 30.0
        assert b.robustness == 0.0
        assert b.readability == 0.0

    def test_breakdown_non_numeric(self):
        with pytest.raises(EvaluatorError) as exc:
            breakdown_from_scores({"robustness": "high"})
        assert exc.value.code == ErrorCode.OUTPUT_PARSE_FAILED

    def test_aggregate_averages_to_one_decimal(self):
        a = ScoreBreakdown(functional_correctness=30, robustness=20)
        b = ScoreBreakdown(functional_correctness=25, robustness=15)
        outcome = aggregate_outcome([a, b], failed_cases=1)
        assert outcome.avg_score == 45.0
        assert outcome.score_breakdown.functional_correctness == 27.5
        assert outcome.completed_cases == 2
        assert outcome.failed_cases == 1

    def test_aggregate_empty(self):
        outcome = aggregate_outcome([], failed_cases=2)
        assert outcome.avg_score == 0.0
        assert outcome.completed_cases == 0


class ScriptedRunner:
    """Stands in for CliRunner; each response is a dict or an exception."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def invoke(self, prompt, system_prompt=None, model="", timeout=None, cwd=None):
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "model": model})
        out = self.responses.pop(0)
        if isinstance(out, Exception):
            raise out
        return out


def _scored(scores=None):
    return {"result": json.dumps({"scores": scores or SCORES, "reasoning": "ok"})}


CASES = [
    BaselineCase(case_id="c1", input="reverse a list", expected_output="def rev"),
    BaselineCase(case_id="c2", input="sum a list"),
]


class TestCliEvaluator:

    @pytest.mark.asyncio
    async def test_executes_then_scores_each_case(self):
        runner = ScriptedRunner([
            {"result": "def rev(xs): ..."}, _scored(),
            {"result": "def total(xs): ..."}, _scored(),
        ])
        ev = CliEvaluator(BenchConfig(model="exec-model", scoring_model="judge"), runner=runner)
        outcome = await ev.evaluate("You are terse.", CASES)

        assert outcome.avg_score == 85.0
        assert outcome.completed_cases == 2
        assert runner.calls[0]["system_prompt"] == "You are terse."
        assert runner.calls[0]["model"] == "exec-model"
        assert runner.calls[1]["model"] == "judge"
        assert "def rev(xs)" in runner.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_partial_failure_counts_failed_case(self):
        runner = ScriptedRunner([
            EvaluatorError(ErrorCode.CLI_EXECUTION_ERROR, "exit 1"),
            {"result": "out"}, _scored(),
        ])
        outcome = await CliEvaluator(runner=runner).evaluate("skill", CASES)
        assert outcome.completed_cases == 1
        assert outcome.failed_cases == 1

    @pytest.mark.asyncio
    async def test_all_cases_failing_raises_last_error(self):
        runner = ScriptedRunner([
            EvaluatorError(ErrorCode.CLI_EXECUTION_ERROR, "exit 1"),
            EvaluatorError(ErrorCode.CLI_TIMEOUT, "slow"),
        ])
        with pytest.raises(EvaluatorError) as exc:
            await CliEvaluator(runner=runner).evaluate("skill", CASES)
        assert exc.value.code == ErrorCode.CLI_TIMEOUT

    @pytest.mark.asyncio
    async def test_scoring_without_scores_object(self):
        runner = ScriptedRunner([{"result": "out"}, {"result": '{"verdict": "good"}'}])
        with pytest.raises(EvaluatorError) as exc:
            await CliEvaluator(runner=runner).evaluate("skill", CASES[:1])
        assert exc.value.code == ErrorCode.OUTPUT_PARSE_FAILED

    def test_supports_cancellation(self):
        assert CliEvaluator().supports_cancellation


class FakeProcess:

    def __init__(self, stdout=b"", stderr=b"", returncode=0, hang=False):
        self._stdout = stdout
        self._stderr = stderr
        self._final_code = returncode
        self._hang = hang
        self.returncode = None
        self.killed = False
        self.stdin_data = None

    async def communicate(self, input=None):
        self.stdin_data = input
        if self._hang:
            await asyncio.sleep(60)
        self.returncode = self._final_code
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


@pytest.fixture
def spawn(monkeypatch):
    """Patch subprocess creation; returns a dict capturing the spawned args."""
    captured = {}

    def _install(proc=None, error=None):
        async def fake_exec(*args, **kwargs):
            captured["args"] = args
            captured["env"] = kwargs.get("env")
            if error is not None:
                raise error
            return proc

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
        return captured

    return _install


class TestCliRunner:

    @pytest.mark.asyncio
    async def test_success(self, spawn, monkeypatch):
        monkeypatch.setenv("CLAUDECODE", "1")
        proc = FakeProcess(stdout=b'{"result": "hi", "is_error": false}')
        captured = spawn(proc)
        envelope = await CliRunner(cli_path="claude", model="m").invoke("hello", system_prompt="sys")

        assert envelope["result"] == "hi"
        assert proc.stdin_data == b"hello"
        args = captured["args"]
        assert args[0] == "claude"
        assert "--print" in args
        assert args[args.index("--model") + 1] == "m"
        assert args[args.index("--system-prompt") + 1] == "sys"
        assert "CLAUDECODE" not in captured["env"]

    @pytest.mark.asyncio
    async def test_missing_binary(self, spawn):
        spawn(error=FileNotFoundError())
        with pytest.raises(EvaluatorError) as exc:
            await CliRunner(cli_path="nope").invoke("x")
        assert exc.value.code == ErrorCode.CLI_NOT_AVAILABLE

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, spawn):
        spawn(FakeProcess(stderr=b"bad flag", returncode=2))
        with pytest.raises(EvaluatorError) as exc:
            await CliRunner().invoke("x")
        assert exc.value.code == ErrorCode.CLI_EXECUTION_ERROR
        assert exc.value.details["exit_code"] == 2
        assert "bad flag" in exc.value.message

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, spawn):
        proc = FakeProcess(hang=True)
        spawn(proc)
        with pytest.raises(EvaluatorError) as exc:
            await CliRunner().invoke("x", timeout=0.05)
        assert exc.value.code == ErrorCode.CLI_TIMEOUT
        assert proc.killed

    @pytest.mark.asyncio
    async def test_non_json_output(self, spawn):
        spawn(FakeProcess(stdout=b"plain text"))
        with pytest.raises(EvaluatorError) as exc:
            await CliRunner().invoke("x")
        assert exc.value.code == ErrorCode.OUTPUT_PARSE_FAILED

    @pytest.mark.asyncio
    async def test_error_envelope(self, spawn):
        spawn(FakeProcess(stdout=b'{"result": "quota exceeded", "is_error": true}'))
        with pytest.raises(EvaluatorError) as exc:
            await CliRunner().invoke("x")
        assert exc.value.code == ErrorCode.CLI_EXECUTION_ERROR
        assert "quota" in exc.value.message
