"""Subprocess-based invoker for CLI agents that emit stream JSON."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shlex
import tempfile
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from pentest_pipeline.config import AgentSettings
from pentest_pipeline.orchestrator.backend.base import AgentEvent, AgentRunRequest
from pentest_pipeline.orchestrator.errors import AgentInvocationError
from pentest_pipeline.orchestrator.failure_classifier import classify_failure
from pentest_pipeline.orchestrator.models import AttemptResult

logger = logging.getLogger(__name__)

_API_ERROR_MARKERS: tuple[str, ...] = ("api error", "terminated")
_STDERR_TAIL_CHARS = 4_000
_PARTIAL_TEXT_CHARS = 2_000


class CliAgentInvoker:
    """Execute the configured CLI agent command template inside the workspace."""

    def __init__(self, settings: AgentSettings, *, extra_env: dict[str, str] | None = None) -> None:
        self._settings = settings
        self._extra_env = dict(extra_env or {})

    async def stream(self, request: AgentRunRequest) -> AsyncIterator[AgentEvent | AttemptResult]:
        prompt = request.full_prompt
        with tempfile.TemporaryDirectory(prefix="pentest-pipeline-") as tmp_dir:
            prompt_file = Path(tmp_dir) / f"{request.agent_name}_prompt.md"
            prompt_file.write_text(prompt, "utf-8")
            run_args = _build_run_args(
                command_template=self._settings.command_template,
                model=self._settings.model,
                prompt=prompt,
                prompt_file=prompt_file,
            )

            env = os.environ.copy()
            env.update(self._extra_env)
            env["PENTEST_PIPELINE_AGENT_NAME"] = request.agent_name
            env["PENTEST_PIPELINE_ATTEMPT"] = str(request.attempt_number)
            env["PENTEST_PIPELINE_AGENT_MODEL"] = self._settings.model

            started = time.monotonic()
            process = await _start_process(run_args, cwd=request.workspace, env=env)
            stderr_task = asyncio.create_task(_drain(process.stderr))
            cancel_task = (
                asyncio.create_task(self._terminate_on_cancel(request, process))
                if request.cancel_token is not None
                else None
            )
            state = _StreamState()
            try:
                assert process.stdout is not None
                async for raw_line in process.stdout:
                    for item in state.consume(raw_line.decode("utf-8", errors="replace")):
                        yield item
                exit_code = await process.wait()
                stderr_text = await stderr_task
            finally:
                if cancel_task is not None:
                    cancel_task.cancel()
                if process.returncode is None:
                    await _terminate(process, self._settings.graceful_shutdown_seconds)
                if not stderr_task.done():
                    stderr_task.cancel()

            duration_ms = int((time.monotonic() - started) * 1000)
            if request.cancel_token is not None and request.cancel_token.cancelled:
                raise AgentInvocationError(
                    "Agent attempt interrupted by cancellation",
                    retryable=False,
                    category="cancelled",
                    partial_results=state.partial_text(),
                    cost=state.cost,
                    duration_ms=duration_ms,
                )
            yield state.final_result(
                exit_code=exit_code,
                stderr=stderr_text,
                duration_ms=duration_ms,
            )

    async def _terminate_on_cancel(
        self,
        request: AgentRunRequest,
        process: asyncio.subprocess.Process,
    ) -> None:
        assert request.cancel_token is not None
        await request.cancel_token.wait()
        logger.info("Terminating %s agent process after cancellation", request.agent_name)
        await _terminate(process, self._settings.graceful_shutdown_seconds)


class _StreamState:
    """Accumulates stream-json records into events and the final result."""

    def __init__(self) -> None:
        self.texts: list[str] = []
        self.result: dict[str, Any] | None = None
        self.cost = 0.0
        self.turns = 0
        self.api_error_detected = False

    def consume(self, line: str) -> list[AgentEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            self.texts.append(stripped)
            return [AgentEvent(kind="llm_response", payload={"content": stripped})]
        if not isinstance(record, dict):
            return []

        record_type = record.get("type")
        if record_type == "assistant":
            return self._assistant_events(record)
        if record_type == "user":
            return _tool_result_events(record)
        if record_type == "result":
            self.result = record
            self.cost = float(record.get("total_cost_usd") or 0.0)
            self.turns = int(record.get("num_turns") or 0)
            summary = {"subtype": "result", **_result_summary(record)}
            return [AgentEvent(kind="system", payload=summary)]
        subtype = str(record.get("subtype") or record_type)
        return [AgentEvent(kind="system", payload={"subtype": subtype})]

    def _assistant_events(self, record: dict[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        message = record.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        for block in content if isinstance(content, list) else []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = str(block.get("text") or "")
                if not text:
                    continue
                self.texts.append(text)
                lowered = text.lower()
                if any(marker in lowered for marker in _API_ERROR_MARKERS):
                    self.api_error_detected = True
                    logger.warning("API error reported in agent response: %s", text.strip()[:200])
                events.append(AgentEvent(kind="llm_response", payload={"content": text}))
            elif block_type == "tool_use":
                events.append(
                    AgentEvent(
                        kind="tool_start",
                        payload={
                            "tool_use_id": block.get("id"),
                            "name": block.get("name"),
                            "input": block.get("input"),
                        },
                    ),
                )
        return events

    def partial_text(self) -> str:
        return "\n".join(self.texts)[-_PARTIAL_TEXT_CHARS:]

    def final_result(self, *, exit_code: int, stderr: str, duration_ms: int) -> AttemptResult:
        result = self.result
        if exit_code != 0 or result is None:
            message = _failure_message(exit_code, stderr, result)
            classification = classify_failure(
                f"{message}\n{self.partial_text()}",
                exit_code=exit_code,
            )
            raise AgentInvocationError(
                message,
                retryable=classification.retryable,
                category=classification.failure_class.value,
                partial_results=self.partial_text() or None,
                cost=self.cost,
                duration_ms=duration_ms,
            )

        payload = str(result.get("result") or "") or None
        reported_duration = int(result.get("duration_ms") or duration_ms)
        if result.get("is_error"):
            error_text = payload or str(result.get("subtype") or "agent reported an error")
            classification = classify_failure(error_text)
            return AttemptResult(
                success=False,
                payload=payload,
                duration_ms=reported_duration,
                partial_cost=self.cost,
                retryable=classification.retryable,
                api_error_detected=self.api_error_detected,
                turns=self.turns,
                error=error_text,
            )
        return AttemptResult(
            success=True,
            payload=payload,
            duration_ms=reported_duration,
            cost=self.cost,
            api_error_detected=self.api_error_detected,
            turns=self.turns,
        )


def _tool_result_events(record: dict[str, Any]) -> list[AgentEvent]:
    message = record.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    events: list[AgentEvent] = []
    for block in content if isinstance(content, list) else []:
        if isinstance(block, dict) and block.get("type") == "tool_result":
            events.append(
                AgentEvent(
                    kind="tool_end",
                    payload={
                        "tool_use_id": block.get("tool_use_id"),
                        "is_error": bool(block.get("is_error")),
                    },
                ),
            )
    return events


def _result_summary(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "is_error": bool(record.get("is_error")),
        "total_cost_usd": record.get("total_cost_usd"),
        "duration_ms": record.get("duration_ms"),
        "num_turns": record.get("num_turns"),
    }


def _failure_message(exit_code: int, stderr: str, result: dict[str, Any] | None) -> str:
    tail = stderr.strip()[-_STDERR_TAIL_CHARS:]
    if result is None and exit_code == 0:
        return f"Agent exited without a result record. {tail}".strip()
    return f"Agent exited with code {exit_code}. {tail}".strip()


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentInvocationError("Agent command template is empty.", retryable=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentInvocationError(
            "Agent command template must include {prompt} or {prompt_file}.",
            retryable=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise AgentInvocationError(
            f"Unsupported command template placeholder: {error}",
            retryable=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentInvocationError(
            "Agent command template rendered empty command.",
            retryable=False,
        )
    return argv


async def _start_process(
    run_args: list[str],
    *,
    cwd: Path,
    env: dict[str, str],
) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(
            *run_args,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=16 * 1024 * 1024,
        )
    except FileNotFoundError as error:
        raise AgentInvocationError(
            f"Agent command not found: {run_args[0]}",
            retryable=False,
        ) from error
    except OSError as error:
        raise AgentInvocationError(
            f"Agent command failed to start: {error}",
            retryable=True,
        ) from error


async def _drain(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def _terminate(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=max(0.1, grace_seconds))
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
