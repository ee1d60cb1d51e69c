"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

from pentest_pipeline.cancellation import CancellationToken, handle_termination_signals
from pentest_pipeline.config import PipelineOptions, Settings
from pentest_pipeline.orchestrator.audit import AuditSink
from pentest_pipeline.orchestrator.backend import CliAgentInvoker
from pentest_pipeline.orchestrator.catalog import AGENT_CATALOG, get_agent
from pentest_pipeline.orchestrator.checkpoint import CheckpointStore
from pentest_pipeline.orchestrator.errors import PersistenceError, StorageError
from pentest_pipeline.orchestrator.models import ExecutionMode, Phase, Session
from pentest_pipeline.orchestrator.pipeline import PipelineRunner, PipelineSummary, PromptSource
from pentest_pipeline.orchestrator.repository import SessionRepository
from pentest_pipeline.orchestrator.retry import RetryOrchestrator
from pentest_pipeline.orchestrator.session import SessionStateMachine
from pentest_pipeline.orchestrator.validator import ValidatorRegistry
from pentest_pipeline.orchestrator.waves import WaveScheduler
from pentest_pipeline.tools import ToolRunner, missing_tools, probe_tool_availability

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


@dataclass(frozen=True, slots=True)
class ModeFlags:
    """Execution mode switches shared by every command that runs agents."""

    text_only: bool = False
    blackbox: bool = False
    pipeline_testing: bool = False
    relax_validation: bool = False
    skip_text_only_phases: bool = False


@dataclass(slots=True)
class PipelineRunCommand:
    """CLI input for a full pipeline run."""

    db_path: Path | None
    web_url: str
    repo_path: Path | None
    config_path: Path | None
    modes: ModeFlags = field(default_factory=ModeFlags)
    new_session: bool = False


@dataclass(slots=True)
class PipelineStatusCommand:
    """CLI input for session listing / inspection."""

    db_path: Path | None
    session_id: str | None
    limit: int = 20


@dataclass(slots=True)
class RunAgentCommand:
    """CLI input for running one agent of an existing session."""

    db_path: Path | None
    session_id: str
    agent_name: str
    modes: ModeFlags = field(default_factory=ModeFlags)


@dataclass(slots=True)
class RunPhaseCommand:
    """CLI input for running the pending agents of one phase."""

    db_path: Path | None
    session_id: str
    phase: Phase
    modes: ModeFlags = field(default_factory=ModeFlags)


@dataclass(slots=True)
class RerunCommand:
    """CLI input for rewinding a session and running one agent again."""

    db_path: Path | None
    session_id: str
    agent_name: str
    modes: ModeFlags = field(default_factory=ModeFlags)


@dataclass(slots=True)
class RollbackToCommand:
    """CLI input for rewinding a session to an agent's checkpoint."""

    db_path: Path | None
    session_id: str
    agent_name: str


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for deleting session records."""

    db_path: Path | None
    session_id: str | None
    all_sessions: bool = False


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus process exit code."""

    lines: list[str]
    exit_code: int = EXIT_OK


class PipelineCliController:
    """Coordinates pipeline, session and tool CLI operations."""

    def run(self, command: PipelineRunCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        options = _options_for(
            settings,
            command.modes,
            blackbox=command.modes.blackbox or command.repo_path is None,
        )
        workspace = _resolve_workspace(settings, command.web_url, command.repo_path)
        if command.config_path is not None and not command.config_path.is_file():
            return CommandResult([f"Config file not found: {command.config_path}"], EXIT_FAILED)

        with _repository(settings) as repository:
            session = None if command.new_session else repository.find_resumable(
                target_url=command.web_url,
                workspace=str(workspace),
            )
            lines: list[str] = []
            if session is None:
                session = repository.create_session(
                    target_url=command.web_url,
                    workspace=str(workspace),
                    config_path=str(command.config_path) if command.config_path else None,
                )
                lines.append(f"Session created: {session.id}")
            else:
                lines.append(
                    f"Resuming session {session.id} "
                    f"({len(session.completed_agents)}/{len(AGENT_CATALOG)} agents completed)",
                )

            runner = _build_runner(settings, options, repository)
            summary = asyncio.run(_run_with_signals(lambda token: runner.run(session, token)))

        lines.extend(_render_summary(summary))
        return CommandResult(lines, _exit_code(summary))

    def run_agent(self, command: RunAgentCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        try:
            get_agent(command.agent_name)
        except KeyError as error:
            return CommandResult([str(error.args[0])], EXIT_FAILED)
        with _repository(settings) as repository:
            session = repository.load(command.session_id)
            if session is None:
                return CommandResult([f"Session not found: {command.session_id}"], EXIT_FAILED)
            runner = _build_runner(settings, _options_for(settings, command.modes), repository)
            try:
                summary = asyncio.run(
                    _run_with_signals(
                        lambda token: runner.run_single_agent(session, command.agent_name, token),
                    ),
                )
            except ValueError as error:
                return CommandResult([str(error)], EXIT_FAILED)
        return CommandResult(_render_summary(summary), _exit_code(summary))

    def run_phase(self, command: RunPhaseCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            session = repository.load(command.session_id)
            if session is None:
                return CommandResult([f"Session not found: {command.session_id}"], EXIT_FAILED)
            runner = _build_runner(settings, _options_for(settings, command.modes), repository)
            try:
                summary = asyncio.run(
                    _run_with_signals(
                        lambda token: runner.run_phase(session, command.phase, token),
                    ),
                )
            except ValueError as error:
                return CommandResult([str(error)], EXIT_FAILED)
        lines = [f"Phase {command.phase.value}: {command.phase.label}"]
        lines.extend(_render_summary(summary))
        return CommandResult(lines, _exit_code(summary))

    def rerun(self, command: RerunCommand) -> CommandResult:
        """Rewind to the start of the agent's phase, restore the workspace, run the agent."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            session = repository.load(command.session_id)
            if session is None:
                return CommandResult([f"Session not found: {command.session_id}"], EXIT_FAILED)
            try:
                updated, refs = SessionStateMachine(repository).rewind_before(
                    session,
                    command.agent_name,
                )
            except KeyError as error:
                return CommandResult([str(error.args[0])], EXIT_FAILED)
            except PersistenceError as error:
                return CommandResult([f"Session state not saved: {error}"], EXIT_FAILED)

            workspace = Path(updated.workspace)
            checkpoints = CheckpointStore()
            try:
                if refs:
                    ref = asyncio.run(checkpoints.latest(workspace, refs))
                    asyncio.run(checkpoints.restore_to(workspace, ref))
            except StorageError as error:
                return CommandResult(
                    [f"Session rewound but workspace restore failed: {error}"],
                    EXIT_FAILED,
                )
            lines = [
                f"Session {updated.id} rewound to before {command.agent_name}",
                f"Completed agents: {', '.join(_ordered(updated.completed_agents)) or '-'}",
            ]
            runner = _build_runner(settings, _options_for(settings, command.modes), repository)
            try:
                summary = asyncio.run(
                    _run_with_signals(
                        lambda token: runner.run_single_agent(updated, command.agent_name, token),
                    ),
                )
            except ValueError as error:
                lines.append(str(error))
                return CommandResult(lines, EXIT_FAILED)
        lines.extend(_render_summary(summary))
        return CommandResult(lines, _exit_code(summary))

    def rollback_to(self, command: RollbackToCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.load(command.session_id)
            if session is None:
                return CommandResult([f"Session not found: {command.session_id}"], EXIT_FAILED)
            state_machine = SessionStateMachine(repository)
            try:
                updated, ref = state_machine.rollback_to(session, command.agent_name)
            except (KeyError, ValueError) as error:
                return CommandResult([str(error)], EXIT_FAILED)
            except PersistenceError as error:
                return CommandResult([f"Session state not saved: {error}"], EXIT_FAILED)
            try:
                asyncio.run(CheckpointStore().restore_to(Path(updated.workspace), ref))
            except StorageError as error:
                return CommandResult(
                    [f"Session rewound but workspace restore failed: {error}"],
                    EXIT_FAILED,
                )
        return CommandResult(
            [
                f"Session {updated.id} rolled back to {command.agent_name} ({ref[:12]})",
                f"Completed agents: {', '.join(_ordered(updated.completed_agents)) or '-'}",
            ],
        )

    def cleanup(self, command: CleanupCommand) -> CommandResult:
        """Delete session records; workspaces and audit logs stay on disk."""

        if command.all_sessions == (command.session_id is not None):
            return CommandResult(["Pass either a SESSION_ID or --all."], EXIT_FAILED)
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            try:
                if command.session_id is None:
                    deleted = repository.delete_all()
                    return CommandResult([f"Deleted {deleted} session(s)."])
                if not repository.delete_session(command.session_id):
                    return CommandResult(
                        [f"Session not found: {command.session_id}"],
                        EXIT_FAILED,
                    )
            except PersistenceError as error:
                return CommandResult([str(error)], EXIT_FAILED)
        return CommandResult([f"Deleted session {command.session_id}."])

    def status(self, command: PipelineStatusCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.session_id is None:
                sessions = repository.list_sessions(limit=command.limit)
                if not sessions:
                    return CommandResult(["No sessions found."])
                return CommandResult([_session_line(session) for session in sessions])
            session = repository.load(command.session_id)
        if session is None:
            return CommandResult([f"Session not found: {command.session_id}"], EXIT_FAILED)

        audit = AuditSink(settings.audit_root)
        lines = [
            _session_line(session),
            f"Workspace: {session.workspace}",
        ]
        for agent in AGENT_CATALOG:
            if agent.name in session.completed_agents:
                ref = session.checkpoints.get(agent.name)
                state = f"completed ({ref[:12]})" if ref else "completed"
            elif agent.name in session.failed_agents:
                state = "failed"
            else:
                state = "pending"
            lines.append(f"  [{agent.phase.value}] {agent.name}: {state}")
        try:
            incomplete = audit.incomplete_attempts(session.id)
        except StorageError as error:
            lines.append(f"Audit log unreadable: {error}")
            return CommandResult(lines)
        if incomplete:
            lines.append("Interrupted attempts:")
            lines.extend(f"  {path}" for path in incomplete)
        return CommandResult(lines)

    def list_agents(self) -> CommandResult:
        lines: list[str] = []
        for phase in Phase:
            lines.append(f"Phase {phase.value}: {phase.label}")
            lines.extend(
                f"  {agent.name:<18} {agent.display_name}"
                for agent in AGENT_CATALOG
                if agent.phase == phase
            )
        return CommandResult(lines)

    def check_tools(self) -> CommandResult:
        settings = Settings.from_env()
        availability = probe_tool_availability(settings.tools.tools)
        missing_tools(availability)
        lines = [
            f"{tool}: {'available' if available else 'not found'}"
            for tool, available in availability.items()
        ]
        return CommandResult(lines)


async def _run_with_signals(
    run: Callable[[CancellationToken], Awaitable[PipelineSummary]],
) -> PipelineSummary:
    token = CancellationToken()
    with handle_termination_signals(token):
        return await run(token)


def _build_runner(
    settings: Settings,
    options: PipelineOptions,
    repository: SessionRepository,
) -> PipelineRunner:
    availability = probe_tool_availability(settings.tools.tools)
    missing_tools(availability)
    checkpoints = CheckpointStore()
    retry = RetryOrchestrator(
        checkpoints=checkpoints,
        validators=ValidatorRegistry(),
        audit=AuditSink(settings.audit_root),
        invoker=CliAgentInvoker(settings.agent),
        settings=settings.retry,
        options=options,
    )
    return PipelineRunner(
        state_machine=SessionStateMachine(repository),
        retry=retry,
        checkpoints=checkpoints,
        waves=WaveScheduler(),
        tool_runner=ToolRunner(timeout_seconds=settings.tools.timeout_seconds),
        prompts=PromptSource(settings.prompts_dir),
        options=options,
        availability=availability,
    )


def _options_for(
    settings: Settings,
    modes: ModeFlags,
    *,
    blackbox: bool | None = None,
) -> PipelineOptions:
    """Overlay command-line mode flags on the environment defaults."""

    base = settings.options
    return dataclasses.replace(
        base,
        execution_mode=ExecutionMode.TEXT_ONLY if modes.text_only else base.execution_mode,
        blackbox=(modes.blackbox or base.blackbox) if blackbox is None else blackbox,
        pipeline_testing=modes.pipeline_testing or base.pipeline_testing,
        relax_validation=modes.relax_validation or base.relax_validation,
        skip_text_only_phases=modes.skip_text_only_phases or base.skip_text_only_phases,
    )


def _resolve_workspace(settings: Settings, web_url: str, repo_path: Path | None) -> Path:
    if repo_path is not None:
        return repo_path.resolve()
    hostname = urlsplit(web_url).hostname or "target"
    workspace = (settings.workspace_root / hostname).resolve()
    workspace.mkdir(parents=True, exist_ok=True)
    return workspace


def _render_summary(summary: PipelineSummary) -> list[str]:
    lines = [
        f"Completed: {', '.join(summary.completed_agents) or '-'}",
    ]
    if summary.skipped_agents:
        lines.append(f"Skipped (no vulnerabilities queued): {', '.join(summary.skipped_agents)}")
    for name, result in summary.wave_results.items():
        lines.append(f"  scan {name}: {result.status.value} ({result.duration_ms} ms)")
    for name, error in summary.errors.items():
        lines.append(f"FAILED {name} [{error.classification.value}]: {error}")
        last_good = getattr(error, "last_good_checkpoint", None)
        if last_good:
            lines.append(f"  Last good checkpoint: {last_good}")
    for error in summary.persistence_errors:
        lines.append(f"WARNING session state not saved, reconcile manually: {error}")
    if summary.cancelled:
        lines.append("Cancelled: in-flight attempts were rolled back.")
    lines.append(f"Total cost: ${summary.total_cost_usd:.4f}")
    lines.append(f"Session {summary.session.id}: {summary.session.status.value}")
    return lines


def _exit_code(summary: PipelineSummary) -> int:
    if summary.cancelled:
        return EXIT_CANCELLED
    if summary.errors:
        return EXIT_FAILED
    return EXIT_OK


def _session_line(session: Session) -> str:
    return (
        f"{session.id} {session.status.value} target={session.target_url} "
        f"completed={len(session.completed_agents)}/{len(AGENT_CATALOG)} "
        f"failed={len(session.failed_agents)} updated={session.updated_at.isoformat()}"
    )


def _ordered(names: frozenset[str]) -> list[str]:
    return [agent.name for agent in AGENT_CATALOG if agent.name in names]


@contextmanager
def _repository(settings: Settings) -> Iterator[SessionRepository]:
    repository = SessionRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
