"""Runtime configuration for the agent pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from pentest_pipeline.orchestrator.models import AgentKind, ExecutionMode

DEFAULT_AGENT_COMMAND_TEMPLATE = (
    "claude -p --output-format stream-json --verbose "
    "--permission-mode bypassPermissions --model {model} -- {prompt}"
)

DEFAULT_TOOLS: tuple[str, ...] = (
    "nmap",
    "subfinder",
    "whatweb",
    "schemathesis",
    "naabu",
    "httpx",
    "nuclei",
    "sqlmap",
)

RELAXED_VALIDATION_KINDS: frozenset[AgentKind] = frozenset({AgentKind.PRE_RECON, AgentKind.RECON})


class ConfigurationError(ValueError):
    """Environment or command-line settings the pipeline cannot run with."""


@dataclass(slots=True)
class RetrySettings:
    """Attempt budget and backoff policy for one agent."""

    max_attempts: int = 3
    retry_base_seconds: float = 10.0
    retry_max_seconds: float = 300.0
    rate_limit_floor_seconds: float = 60.0


@dataclass(slots=True)
class AgentSettings:
    """CLI agent invoker settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    model: str = "claude-sonnet-4-5"
    graceful_shutdown_seconds: float = 10.0


@dataclass(slots=True)
class ToolSettings:
    """External scanner settings."""

    tools: tuple[str, ...] = DEFAULT_TOOLS
    timeout_seconds: float = 1_800.0


@dataclass(frozen=True, slots=True)
class PipelineOptions:
    """Explicit execution-mode flags threaded through every affected call."""

    execution_mode: ExecutionMode = ExecutionMode.FULL
    blackbox: bool = False
    pipeline_testing: bool = False
    relax_validation: bool = False
    skip_text_only_phases: bool = False

    @property
    def text_only(self) -> bool:
        return self.execution_mode == ExecutionMode.TEXT_ONLY

    def relaxed_kinds(self) -> frozenset[AgentKind]:
        """Agent kinds whose validation is bypassed under the current mode."""

        if self.relax_validation and self.text_only:
            return RELAXED_VALIDATION_KINDS
        return frozenset()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".pentest_pipeline.db")
    audit_root: Path = Path("audit-logs")
    prompts_dir: Path = Path("prompts")
    workspace_root: Path = Path("workspaces")
    retry: RetrySettings = field(default_factory=RetrySettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    options: PipelineOptions = field(default_factory=PipelineOptions)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PENTEST_PIPELINE_DB_PATH", ".pentest_pipeline.db")),
            audit_root=Path(os.getenv("PENTEST_PIPELINE_AUDIT_ROOT", "audit-logs")),
            prompts_dir=Path(os.getenv("PENTEST_PIPELINE_PROMPTS_DIR", "prompts")),
            workspace_root=Path(os.getenv("PENTEST_PIPELINE_WORKSPACE_ROOT", "workspaces")),
            retry=RetrySettings(
                max_attempts=_env_int("PENTEST_PIPELINE_MAX_ATTEMPTS", default=3),
                retry_base_seconds=_env_float("PENTEST_PIPELINE_RETRY_BASE_SECONDS", default=10),
                retry_max_seconds=_env_float("PENTEST_PIPELINE_RETRY_MAX_SECONDS", default=300),
                rate_limit_floor_seconds=_env_float(
                    "PENTEST_PIPELINE_RATE_LIMIT_FLOOR_SECONDS",
                    default=60,
                ),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "PENTEST_PIPELINE_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("PENTEST_PIPELINE_AGENT_MODEL", "claude-sonnet-4-5"),
                graceful_shutdown_seconds=_env_float(
                    "PENTEST_PIPELINE_GRACEFUL_SHUTDOWN_SECONDS",
                    default=10,
                ),
            ),
            tools=ToolSettings(
                tools=_env_csv("PENTEST_PIPELINE_TOOLS", default=DEFAULT_TOOLS),
                timeout_seconds=_env_float("PENTEST_PIPELINE_TOOL_TIMEOUT_SECONDS", default=1800),
            ),
            options=PipelineOptions(
                execution_mode=_env_execution_mode("PENTEST_PIPELINE_EXECUTION_MODE"),
                relax_validation=_env_bool("PENTEST_PIPELINE_RELAX_VALIDATION", default=False),
                skip_text_only_phases=_env_bool(
                    "PENTEST_PIPELINE_SKIP_TEXT_ONLY_PHASES",
                    default=False,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot honor."""

        if self.retry.max_attempts < 1:
            raise ConfigurationError("PENTEST_PIPELINE_MAX_ATTEMPTS must be >= 1.")
        if self.retry.retry_base_seconds < 0 or self.retry.retry_max_seconds < 0:
            raise ConfigurationError("Retry delays must be >= 0.")
        if self.tools.timeout_seconds <= 0:
            raise ConfigurationError("PENTEST_PIPELINE_TOOL_TIMEOUT_SECONDS must be > 0.")
        template = self.agent.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ConfigurationError(
                "PENTEST_PIPELINE_AGENT_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )


def _env_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[str] = []
    for part in raw.split(","):
        value = part.strip()
        if value and value not in values:
            values.append(value)
    return tuple(values)


def _env_int(name: str, *, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, *, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError as error:
        raise ConfigurationError(f"Invalid number for {name}: {raw!r}") from error


def _env_execution_mode(name: str) -> ExecutionMode:
    raw = os.getenv(name, ExecutionMode.FULL.value).strip().lower()
    try:
        return ExecutionMode(raw)
    except ValueError as error:
        allowed = ", ".join(mode.value for mode in ExecutionMode)
        raise ConfigurationError(
            f"Invalid value for {name}: {raw!r} (expected one of {allowed})",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")
