# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Single-shot LLM CLI invocation (``claude --print --output-format json``).

Protocol: prompt on stdin, JSON envelope on stdout
(``{"result": "...", "is_error": false, "duration_ms": 1234}``).
"""
import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

from skillbench.errors import ErrorCode, EvaluatorError

logger = logging.getLogger(__name__)


class CliRunner:
    """Run the LLM CLI as a subprocess and map failures to evaluator codes."""

    def __init__(self, cli_path: str = "claude", model: str = "", timeout: int = 60) -> None:
        self._cli_path = cli_path
        self._model = model
        self._timeout = timeout

    def _build_args(self, model: str, system_prompt: Optional[str]) -> list:
        args = [
            self._cli_path,
            "--print",
            "--output-format", "json",
            "--dangerously-skip-permissions",
        ]
        if model:
            args.extend(["--model", model])
        if system_prompt:
            args.extend(["--system-prompt", system_prompt])
        return args

    async def invoke(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: str = "",
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Execute one CLI call and return the parsed JSON envelope.

        Raises EvaluatorError with CLI_NOT_AVAILABLE, CLI_TIMEOUT,
        CLI_EXECUTION_ERROR or OUTPUT_PARSE_FAILED. Cancelling the awaiting
        task kills the subprocess.
        """
        model = model or self._model
        timeout = timeout or self._timeout
        # A nested CLI session refuses to start when this marker is inherited
        env = dict(os.environ)
        env.pop("CLAUDECODE", None)

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._build_args(model, system_prompt),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=cwd,
            )
        except FileNotFoundError:
            logger.error("CLI not found: %s", self._cli_path)
            raise EvaluatorError(
                ErrorCode.CLI_NOT_AVAILABLE,
                "CLI not found: {}".format(self._cli_path),
            )
        except OSError as e:
            raise EvaluatorError(ErrorCode.CLI_EXECUTION_ERROR, "CLI spawn failed: {}".format(e))

        logger.debug("CLI start model=%s prompt_len=%d", model, len(prompt))
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input=prompt.encode("utf-8")),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            logger.warning("CLI timeout after %ds (model=%s)", timeout, model)
            raise EvaluatorError(
                ErrorCode.CLI_TIMEOUT, "CLI timed out after {}s".format(timeout),
            )
        except asyncio.CancelledError:
            _kill(proc)
            raise

        if proc.returncode != 0:
            err = stderr.decode("utf-8", "replace").strip() if stderr else ""
            logger.error("CLI exited with %s: %s", proc.returncode, err[:300])
            raise EvaluatorError(
                ErrorCode.CLI_EXECUTION_ERROR,
                err[:500] or "CLI exited with code {}".format(proc.returncode),
                {"exit_code": proc.returncode},
            )

        raw = stdout.decode("utf-8", "replace")
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("CLI output is not JSON (len=%d): %s", len(raw), raw[:200])
            raise EvaluatorError(
                ErrorCode.OUTPUT_PARSE_FAILED, "CLI output is not JSON",
                {"raw": raw[:500]},
            )
        if not isinstance(envelope, dict):
            raise EvaluatorError(ErrorCode.OUTPUT_PARSE_FAILED, "CLI output is not an object")
        if envelope.get("is_error"):
            raise EvaluatorError(
                ErrorCode.CLI_EXECUTION_ERROR,
                str(envelope.get("result", ""))[:500] or "CLI reported an error",
            )
        return envelope


def _kill(proc) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
