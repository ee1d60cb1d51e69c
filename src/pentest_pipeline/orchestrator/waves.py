"""Fan-out/join of independent external operations keyed by name."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from pentest_pipeline.config import PipelineOptions
from pentest_pipeline.orchestrator.models import ToolScanResult, ToolStatus
from pentest_pipeline.tools import ToolRunner, ToolRunResult, tool_command

logger = logging.getLogger(__name__)

TOOL_NOT_AVAILABLE = "Tool not available"
SKIPPED_PIPELINE_TESTING = "Skipped (pipeline testing mode)"
SKIPPED_BLACKBOX = "Skipped (blackbox mode)"

FOOTPRINT_CORE_TOOLS: tuple[str, ...] = ("nmap", "subfinder", "whatweb")
FOOTPRINT_OPTIONAL_TOOL = "naabu"
CODE_ANALYSIS_OPERATION = "code-analysis"
ADDITIONAL_TOOLS: tuple[str, ...] = ("schemathesis", "httpx", "nuclei", "sqlmap")

_SCHEMA_SUFFIXES = (".json", ".yml", ".yaml")
_ERROR_SUMMARY_CHARS = 2_000

OperationOutcome = ToolRunResult | ToolScanResult


@dataclass(frozen=True, slots=True)
class WaveOperation:
    """One named wave member.

    ``run`` returns either raw process output or a ready ``ToolScanResult``;
    unavailable members are never scheduled.
    """

    run: Callable[[], Awaitable[OperationOutcome]]
    available: bool = True
    skip_reason: str = TOOL_NOT_AVAILABLE


class WaveScheduler:
    """Run wave members concurrently and attribute each result to its name."""

    async def run_wave(self, operations: Mapping[str, WaveOperation]) -> dict[str, ToolScanResult]:
        """Resolve with one result per operation name; member failures never propagate."""

        results: dict[str, ToolScanResult] = {}
        tasks: dict[str, asyncio.Task[ToolScanResult]] = {}
        for name, operation in operations.items():
            if not operation.available:
                logger.info("Skipping %s: %s", name, operation.skip_reason)
                results[name] = ToolScanResult(
                    tool_name=name,
                    output=operation.skip_reason,
                    status=ToolStatus.SKIPPED,
                )
                continue
            tasks[name] = asyncio.create_task(self._run_member(name, operation), name=name)

        if tasks:
            settled = await asyncio.gather(*tasks.values())
            for name, result in zip(tasks, settled, strict=True):
                results[name] = result

        return {name: results[name] for name in operations}

    async def _run_member(self, name: str, operation: WaveOperation) -> ToolScanResult:
        started = time.monotonic()
        logger.info("Running %s", name)
        try:
            outcome = await operation.run()
        except Exception as error:  # noqa: BLE001
            duration_ms = _elapsed_ms(started)
            logger.warning("%s failed in %d ms: %s", name, duration_ms, error)
            return ToolScanResult(
                tool_name=name,
                output=_summarize_error(f"{type(error).__name__}: {error}"),
                status=ToolStatus.FAILED,
                duration_ms=duration_ms,
            )

        duration_ms = _elapsed_ms(started)
        if isinstance(outcome, ToolScanResult):
            return ToolScanResult(
                tool_name=name,
                output=outcome.output,
                status=outcome.status,
                duration_ms=outcome.duration_ms or duration_ms,
            )
        if outcome.exit_code != 0:
            logger.warning("%s exited with %d in %d ms", name, outcome.exit_code, duration_ms)
            detail = outcome.stderr.strip() or outcome.stdout.strip()
            return ToolScanResult(
                tool_name=name,
                output=_summarize_error(f"exit code {outcome.exit_code}: {detail}"),
                status=ToolStatus.FAILED,
                duration_ms=duration_ms,
            )
        logger.info("%s completed in %d ms", name, duration_ms)
        return ToolScanResult(
            tool_name=name,
            output=outcome.stdout,
            status=ToolStatus.SUCCESS,
            duration_ms=duration_ms,
        )


def build_footprint_wave(
    *,
    target_url: str,
    availability: Mapping[str, bool],
    runner: ToolRunner,
    options: PipelineOptions,
    code_analysis: Callable[[], Awaitable[OperationOutcome]] | None,
) -> dict[str, WaveOperation]:
    """Initial footprinting: fixed core scanners, optional naabu and AI code analysis."""

    operations: dict[str, WaveOperation] = {}
    for tool in FOOTPRINT_CORE_TOOLS:
        operations[tool] = _scanner_operation(tool, target_url, runner, options, available=True)
    operations[FOOTPRINT_OPTIONAL_TOOL] = _scanner_operation(
        FOOTPRINT_OPTIONAL_TOOL,
        target_url,
        runner,
        options,
        available=availability.get(FOOTPRINT_OPTIONAL_TOOL, False),
    )

    if options.blackbox or code_analysis is None:
        operations[CODE_ANALYSIS_OPERATION] = WaveOperation(
            run=_never_scheduled,
            available=False,
            skip_reason=SKIPPED_BLACKBOX,
        )
    else:
        operations[CODE_ANALYSIS_OPERATION] = WaveOperation(run=code_analysis)
    return operations


def build_additional_wave(
    *,
    target_url: str,
    availability: Mapping[str, bool],
    runner: ToolRunner,
    options: PipelineOptions,
    workspace: Path,
) -> dict[str, WaveOperation]:
    """Additional scanning: only tools probed as available are members."""

    operations: dict[str, WaveOperation] = {}
    for tool in ADDITIONAL_TOOLS:
        if not availability.get(tool, False):
            continue
        if tool == "schemathesis":
            operations[tool] = _schemathesis_operation(target_url, runner, options, workspace)
        else:
            operations[tool] = _scanner_operation(tool, target_url, runner, options, available=True)
    return operations


def _scanner_operation(
    tool: str,
    target_url: str,
    runner: ToolRunner,
    options: PipelineOptions,
    *,
    available: bool,
) -> WaveOperation:
    if options.pipeline_testing:
        return WaveOperation(
            run=_never_scheduled,
            available=False,
            skip_reason=SKIPPED_PIPELINE_TESTING,
        )
    args = tool_command(tool, target_url)

    async def run() -> ToolRunResult:
        return await runner.run(tool, args)

    return WaveOperation(run=run, available=available)


def _schemathesis_operation(
    target_url: str,
    runner: ToolRunner,
    options: PipelineOptions,
    workspace: Path,
) -> WaveOperation:
    if options.pipeline_testing:
        return WaveOperation(
            run=_never_scheduled,
            available=False,
            skip_reason=SKIPPED_PIPELINE_TESTING,
        )

    async def run() -> OperationOutcome:
        schemas_dir = workspace / "outputs" / "schemas"
        if not schemas_dir.is_dir():
            return ToolScanResult("schemathesis", "Schemas directory not found", ToolStatus.SKIPPED)
        schemas = sorted(
            path for path in schemas_dir.iterdir() if path.suffix.lower() in _SCHEMA_SUFFIXES
        )
        if not schemas:
            return ToolScanResult("schemathesis", "No API schemas found", ToolStatus.SKIPPED)
        sections: list[str] = []
        for schema in schemas:
            result = await runner.run(
                "schemathesis",
                tool_command("schemathesis", target_url, schema_path=schema),
            )
            if result.exit_code == 0:
                body = result.stdout
            else:
                body = f"Error: {result.stdout or result.stderr}"
            sections.append(f"Schema: {schema.name}\n{body}")
        return ToolRunResult(exit_code=0, stdout="\n\n".join(sections))

    return WaveOperation(run=run)


async def _never_scheduled() -> ToolScanResult:
    raise RuntimeError("Unavailable wave operation was scheduled")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _summarize_error(text: str) -> str:
    compact = text.strip()
    return compact[:_ERROR_SUMMARY_CHARS]
