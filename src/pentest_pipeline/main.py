"""CLI entrypoint for pentest-pipeline."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from pentest_pipeline import __version__
from pentest_pipeline.config import ConfigurationError
from pentest_pipeline.orchestrator.controllers import (
    CleanupCommand,
    CommandResult,
    ModeFlags,
    PipelineCliController,
    PipelineRunCommand,
    PipelineStatusCommand,
    RerunCommand,
    RollbackToCommand,
    RunAgentCommand,
    RunPhaseCommand,
)
from pentest_pipeline.orchestrator.models import Phase

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()

PHASE_CHOICES = [phase.label for phase in Phase] + [str(phase.value) for phase in Phase]


def mode_options(command: Callable) -> Callable:
    """Execution mode flags shared by every command that runs agents."""

    options = [
        click.option(
            "--text-only",
            is_flag=True,
            default=False,
            help="Agent invoker cannot use tools.",
        ),
        click.option(
            "--blackbox",
            is_flag=True,
            default=False,
            help="Skip source code analysis.",
        ),
        click.option(
            "--pipeline-testing",
            is_flag=True,
            default=False,
            help="Skip external scanners; agents still run.",
        ),
        click.option(
            "--relax-validation",
            is_flag=True,
            default=False,
            help="In text-only mode, accept pre-recon and recon without deliverable checks.",
        ),
        click.option(
            "--skip-text-only-phases",
            is_flag=True,
            default=False,
            help="In text-only mode, stop after pre-recon.",
        ),
    ]
    for option in reversed(options):
        command = option(command)
    return command


@click.group()
@click.version_option(version=__version__, prog_name="pentest-pipeline")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def pentest_pipeline(verbose: bool) -> None:
    """Resumable, checkpointed agent pipeline for web application security assessments."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@pentest_pipeline.command("run")
@click.argument("web_url")
@click.argument(
    "repo_path",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Assessment configuration file recorded with the session.",
)
@mode_options
@click.option(
    "--new-session",
    is_flag=True,
    default=False,
    help="Start a fresh session instead of resuming the latest unfinished one.",
)
def run(
    web_url: str,
    repo_path: Path | None,
    db_path: Path | None,
    config_path: Path | None,
    new_session: bool,
    **modes: bool,
) -> None:
    """Run (or resume) the full pipeline against WEB_URL.

    `--blackbox` is implied when REPO_PATH is omitted.
    """

    _finish(
        lambda: PIPELINE_CONTROLLER.run(
            PipelineRunCommand(
                db_path=db_path,
                web_url=web_url,
                repo_path=repo_path,
                config_path=config_path,
                modes=ModeFlags(**modes),
                new_session=new_session,
            ),
        ),
    )


@pentest_pipeline.command("status")
@click.argument("session_id", required=False)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many sessions to list when SESSION_ID is omitted.",
)
def status(session_id: str | None, db_path: Path | None, limit: int) -> None:
    """List sessions, or show per-agent progress of one session."""

    _finish(
        lambda: PIPELINE_CONTROLLER.status(
            PipelineStatusCommand(db_path=db_path, session_id=session_id, limit=limit),
        ),
    )


@pentest_pipeline.command("list-agents")
def list_agents() -> None:
    """Show the agent catalog grouped by phase."""

    _finish(PIPELINE_CONTROLLER.list_agents)


@pentest_pipeline.command("run-agent")
@click.argument("session_id")
@click.argument("agent")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@mode_options
def run_agent(session_id: str, agent: str, db_path: Path | None, **modes: bool) -> None:
    """Run a single AGENT of an existing session (developer command)."""

    _finish(
        lambda: PIPELINE_CONTROLLER.run_agent(
            RunAgentCommand(
                db_path=db_path,
                session_id=session_id,
                agent_name=agent,
                modes=ModeFlags(**modes),
            ),
        ),
    )


@pentest_pipeline.command("run-phase")
@click.argument("session_id")
@click.argument("phase", type=click.Choice(PHASE_CHOICES))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@mode_options
def run_phase(session_id: str, phase: str, db_path: Path | None, **modes: bool) -> None:
    """Run the pending agents of PHASE (label or number) for an existing session."""

    _finish(
        lambda: PIPELINE_CONTROLLER.run_phase(
            RunPhaseCommand(
                db_path=db_path,
                session_id=session_id,
                phase=_parse_phase(phase),
                modes=ModeFlags(**modes),
            ),
        ),
    )


@pentest_pipeline.command("rerun")
@click.argument("session_id")
@click.argument("agent")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@mode_options
def rerun(session_id: str, agent: str, db_path: Path | None, **modes: bool) -> None:
    """Rewind SESSION_ID to the start of AGENT's phase and run AGENT again.

    Siblings of a parallel phase are rewound too; finish them with `run-phase`.
    """

    _finish(
        lambda: PIPELINE_CONTROLLER.rerun(
            RerunCommand(
                db_path=db_path,
                session_id=session_id,
                agent_name=agent,
                modes=ModeFlags(**modes),
            ),
        ),
    )


@pentest_pipeline.command("rollback-to")
@click.argument("session_id")
@click.argument("agent")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def rollback_to(session_id: str, agent: str, db_path: Path | None) -> None:
    """Rewind SESSION_ID and its workspace to AGENT's checkpoint."""

    _finish(
        lambda: PIPELINE_CONTROLLER.rollback_to(
            RollbackToCommand(db_path=db_path, session_id=session_id, agent_name=agent),
        ),
    )


@pentest_pipeline.command("cleanup")
@click.argument("session_id", required=False)
@click.option("--all", "all_sessions", is_flag=True, default=False, help="Delete every session.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cleanup(session_id: str | None, all_sessions: bool, db_path: Path | None) -> None:
    """Delete SESSION_ID (or every session) from the session store.

    Workspaces and audit logs are left on disk.
    """

    _finish(
        lambda: PIPELINE_CONTROLLER.cleanup(
            CleanupCommand(db_path=db_path, session_id=session_id, all_sessions=all_sessions),
        ),
    )


@pentest_pipeline.command("check-tools")
def check_tools() -> None:
    """Probe external scanners used by the pre-recon waves."""

    _finish(PIPELINE_CONTROLLER.check_tools)


def _parse_phase(value: str) -> Phase:
    if value.isdigit():
        return Phase(int(value))
    return next(phase for phase in Phase if phase.label == value)


def _finish(command: Callable[[], CommandResult]) -> None:
    try:
        result = command()
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pentest_pipeline()
