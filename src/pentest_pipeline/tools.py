"""External scanner availability probe and async runner."""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127

INSTALL_HINTS: dict[str, str] = {
    "nmap": "brew install nmap (macOS) or apt install nmap (Ubuntu)",
    "subfinder": "go install -v github.com/projectdiscovery/subfinder/v2/cmd/subfinder@latest",
    "whatweb": "gem install whatweb",
    "schemathesis": "pip install schemathesis",
    "naabu": "go install -v github.com/projectdiscovery/naabu/v2/cmd/naabu@latest",
    "httpx": "go install -v github.com/projectdiscovery/httpx/cmd/httpx@latest",
    "nuclei": "go install -v github.com/projectdiscovery/nuclei/v3/cmd/nuclei@latest",
    "sqlmap": "pip install sqlmap",
}


@dataclass(frozen=True, slots=True)
class ToolRunResult:
    """Captured output of one external tool process."""

    exit_code: int
    stdout: str
    stderr: str = ""


def probe_tool_availability(
    tools: Iterable[str],
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> dict[str, bool]:
    """Probe each tool once; the result is passed to wave builders."""

    availability: dict[str, bool] = {}
    for tool in tools:
        availability[tool] = which(tool) is not None
        logger.debug("Tool %s available=%s", tool, availability[tool])
    return availability


def missing_tools(availability: Mapping[str, bool]) -> list[str]:
    """Return unavailable tools and log install hints for them."""

    missing = [tool for tool, available in availability.items() if not available]
    if missing:
        logger.warning(
            "Missing tools: %s. Some functionality will be limited.",
            ", ".join(missing),
        )
        for tool in missing:
            hint = INSTALL_HINTS.get(tool)
            if hint:
                logger.info("Install %s: %s", tool, hint)
    return missing


def tool_command(name: str, target_url: str, *, schema_path: Path | None = None) -> list[str]:
    """Argument vector for a built-in scanner."""

    hostname = urlsplit(target_url).hostname or target_url
    commands: dict[str, list[str]] = {
        "nmap": ["nmap", "-sV", "-sC", hostname],
        "subfinder": ["subfinder", "-d", hostname],
        "whatweb": ["whatweb", "--open-timeout", "30", "--read-timeout", "60", target_url],
        "naabu": ["naabu", "-host", hostname],
        "httpx": [
            "httpx",
            "-u",
            target_url,
            "-status-code",
            "-title",
            "-tech-detect",
            "-follow-redirects",
            "-nc",
        ],
        "nuclei": ["nuclei", "-u", target_url, "-severity", "medium,high,critical", "-silent"],
        "sqlmap": [
            "sqlmap",
            "-u",
            target_url,
            "--batch",
            "--crawl=1",
            "--level=1",
            "--risk=1",
            "--random-agent",
            "--flush-session",
        ],
    }
    if name == "schemathesis":
        if schema_path is None:
            raise ValueError("schemathesis requires a schema path")
        return ["schemathesis", "run", str(schema_path), "-u", target_url, "--max-failures=5"]
    try:
        return commands[name]
    except KeyError:
        raise ValueError(f"Unknown tool: {name}") from None


class ToolRunner:
    """Runs external scanners with a per-tool timeout; never raises for process failures."""

    def __init__(self, *, timeout_seconds: float, cwd: Path | None = None) -> None:
        self._timeout_seconds = timeout_seconds
        self._cwd = cwd

    async def run(self, name: str, args: list[str]) -> ToolRunResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self._cwd) if self._cwd else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.warning("[%s] not installed or not in PATH", name)
            return ToolRunResult(
                exit_code=NOT_FOUND_EXIT_CODE,
                stdout="",
                stderr=f"{name}: command not found",
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self._timeout_seconds,
            )
        except TimeoutError:
            await _terminate(process)
            logger.warning("[%s] timed out after %.0fs", name, self._timeout_seconds)
            return ToolRunResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout="",
                stderr=f"{name}: timed out after {self._timeout_seconds:.0f}s",
            )
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        return ToolRunResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=2)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
