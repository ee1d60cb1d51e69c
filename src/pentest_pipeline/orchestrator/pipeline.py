"""Phase-by-phase pipeline execution over a resumable session."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import string
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from pentest_pipeline.cancellation import CancellationToken
from pentest_pipeline.config import PipelineOptions
from pentest_pipeline.orchestrator.catalog import (
    AGENT_ORDER,
    get_agent,
    is_parallel_phase,
    vuln_type_of,
)
from pentest_pipeline.orchestrator.checkpoint import CheckpointStore
from pentest_pipeline.orchestrator.deliverables import DeliverableStore
from pentest_pipeline.orchestrator.errors import (
    AgentCancelledError,
    ClassifiedError,
    PersistenceError,
    StorageError,
    StorageIntegrityError,
)
from pentest_pipeline.orchestrator.models import (
    AgentDefinition,
    AttemptResult,
    Phase,
    Session,
    SessionMeta,
    ToolScanResult,
    ToolStatus,
)
from pentest_pipeline.orchestrator.retry import RetryOrchestrator
from pentest_pipeline.orchestrator.session import SessionStateMachine
from pentest_pipeline.orchestrator.waves import (
    CODE_ANALYSIS_OPERATION,
    WaveScheduler,
    build_additional_wave,
    build_footprint_wave,
)
from pentest_pipeline.tools import ToolRunner

logger = logging.getLogger(__name__)

PRE_RECON_AGENT = "pre-recon"


class PromptSource:
    """Loads ``<prompts_dir>/<prompt_name>.txt`` templates with ``$var`` substitution."""

    def __init__(self, prompts_dir: Path | None) -> None:
        self._prompts_dir = prompts_dir

    def render(self, agent: AgentDefinition, *, web_url: str, repo_path: str) -> str:
        variables = {
            "web_url": web_url,
            "repo_path": repo_path,
            "agent_name": agent.name,
            "display_name": agent.display_name,
        }
        if self._prompts_dir is not None:
            path = self._prompts_dir / f"{agent.prompt_name}.txt"
            if path.is_file():
                return string.Template(path.read_text("utf-8")).safe_substitute(variables)
            logger.debug("Prompt template %s not found, using built-in prompt", path)
        return (
            f"You are the {agent.display_name} of a web application security assessment.\n"
            f"Target: {web_url}\n"
            f"Source code: {repo_path}\n"
            "Write your deliverables under the deliverables/ directory of the workspace."
        )


@dataclass(slots=True)
class PipelineSummary:
    """Outcome of one pipeline invocation."""

    session: Session
    completed_agents: list[str] = field(default_factory=list)
    failed_agents: list[str] = field(default_factory=list)
    skipped_agents: list[str] = field(default_factory=list)
    agent_timings_ms: dict[str, int] = field(default_factory=dict)
    phase_timings_ms: dict[str, int] = field(default_factory=dict)
    agent_costs_usd: dict[str, float] = field(default_factory=dict)
    errors: dict[str, ClassifiedError] = field(default_factory=dict)
    persistence_errors: list[PersistenceError] = field(default_factory=list)
    wave_results: dict[str, ToolScanResult] = field(default_factory=dict)
    cancelled: bool = False
    stopped_after: Phase | None = None

    @property
    def total_cost_usd(self) -> float:
        return sum(self.agent_costs_usd.values())

    @property
    def succeeded(self) -> bool:
        return not self.errors and not self.cancelled


class PipelineRunner:
    """Run pipeline phases from the session's resumption point."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        state_machine: SessionStateMachine,
        retry: RetryOrchestrator,
        checkpoints: CheckpointStore,
        waves: WaveScheduler,
        tool_runner: ToolRunner,
        prompts: PromptSource,
        options: PipelineOptions,
        availability: Mapping[str, bool],
    ) -> None:
        self._state = state_machine
        self._retry = retry
        self._checkpoints = checkpoints
        self._waves = waves
        self._tool_runner = tool_runner
        self._prompts = prompts
        self._options = options
        self._availability = dict(availability)

    async def run(
        self,
        session: Session,
        cancel_token: CancellationToken | None = None,
    ) -> PipelineSummary:
        summary = PipelineSummary(session=session)
        self._persist(summary, lambda: self._state.mark_in_progress(summary.session))
        started = time.monotonic()

        phase = self._state.start_phase(summary.session)
        if phase is not None:
            logger.info("Session %s resuming at phase %d (%s)", session.id, phase, phase.label)

        while phase is not None:
            if cancel_token is not None and cancel_token.cancelled:
                summary.cancelled = True
                break
            phase_started = time.monotonic()
            await self._run_phase(summary, phase, cancel_token)
            summary.phase_timings_ms[phase.label] = _elapsed_ms(phase_started)

            if summary.cancelled or summary.errors:
                summary.stopped_after = phase
                logger.error("Pipeline stopped after phase %d (%s)", phase, phase.label)
                break
            if (
                phase == Phase.PRE_RECON
                and self._options.text_only
                and self._options.skip_text_only_phases
            ):
                summary.stopped_after = phase
                logger.info("Text-only mode: skipping phases after pre-recon")
                break
            phase = self._state.start_phase(summary.session)

        if phase is None and summary.succeeded:
            self._mark_completed(summary, started)
        return summary

    async def run_phase(
        self,
        session: Session,
        phase: Phase,
        cancel_token: CancellationToken | None = None,
    ) -> PipelineSummary:
        """Run the pending agents of one phase; earlier phases must already be complete."""

        _require_completed_before(session, phase, f"phase {phase.label}")
        summary = PipelineSummary(session=session)
        self._persist(summary, lambda: self._state.mark_in_progress(summary.session))
        started = time.monotonic()
        await self._run_phase(summary, phase, cancel_token)
        summary.phase_timings_ms[phase.label] = _elapsed_ms(started)
        if summary.cancelled or summary.errors:
            summary.stopped_after = phase
        elif self._state.start_phase(summary.session) is None:
            self._mark_completed(summary, started)
        return summary

    async def run_single_agent(
        self,
        session: Session,
        agent_name: str,
        cancel_token: CancellationToken | None = None,
    ) -> PipelineSummary:
        """Run exactly one agent; earlier phases must already be complete."""

        agent = get_agent(agent_name)
        _require_completed_before(session, agent.phase, agent_name)

        summary = PipelineSummary(session=session)
        self._persist(summary, lambda: self._state.mark_in_progress(summary.session))
        if agent.name == PRE_RECON_AGENT:
            await self._run_pre_recon(summary, cancel_token)
        elif agent.phase == Phase.REPORTING:
            await self._run_report(summary, agent, cancel_token)
        else:
            await self._run_agents(summary, [agent], cancel_token)
        return summary

    async def _run_phase(
        self,
        summary: PipelineSummary,
        phase: Phase,
        cancel_token: CancellationToken | None,
    ) -> None:
        logger.info("Phase %d: %s", phase, phase.label)
        if phase == Phase.PRE_RECON:
            await self._run_pre_recon(summary, cancel_token)
            return
        pending = list(self._state.pending_agents(summary.session, phase))
        if phase == Phase.REPORTING:
            for agent in pending:
                await self._run_report(summary, agent, cancel_token)
            return
        if phase == Phase.EXPLOITATION:
            pending = self._skip_empty_queues(summary, pending)
        if is_parallel_phase(phase):
            await self._run_agents(summary, pending, cancel_token, isolate=True)
            return
        for agent in pending:
            await self._run_agents(summary, [agent], cancel_token)
            if summary.errors or summary.cancelled:
                return

    async def _run_pre_recon(
        self,
        summary: PipelineSummary,
        cancel_token: CancellationToken | None,
    ) -> None:
        agent = get_agent(PRE_RECON_AGENT)
        session = summary.session
        workspace = Path(session.workspace)
        outcome: dict[str, AttemptResult | ClassifiedError] = {}

        async def code_analysis() -> ToolScanResult:
            try:
                result = await self._run_with_retry(summary.session, agent, cancel_token)
            except ClassifiedError as error:
                outcome["error"] = error
                raise
            outcome["result"] = result
            return ToolScanResult(
                tool_name=CODE_ANALYSIS_OPERATION,
                output=result.payload or "",
                status=ToolStatus.SUCCESS,
                duration_ms=result.duration_ms,
            )

        started = time.monotonic()
        footprint = await self._waves.run_wave(
            build_footprint_wave(
                target_url=session.target_url,
                availability=self._availability,
                runner=self._tool_runner,
                options=self._options,
                code_analysis=code_analysis,
            ),
        )
        summary.wave_results.update(footprint)

        error = outcome.get("error")
        if isinstance(error, ClassifiedError):
            self._record_failure(summary, agent, error)
            return

        additional = await self._waves.run_wave(
            build_additional_wave(
                target_url=session.target_url,
                availability=self._availability,
                runner=self._tool_runner,
                options=self._options,
                workspace=workspace,
            ),
        )
        summary.wave_results.update(additional)

        try:
            DeliverableStore(workspace).stitch_pre_recon_report(
                target_url=session.target_url,
                footprint=footprint,
                additional=additional,
            )
            checkpoint_ref = await self._checkpoints.commit_success(workspace, "Pre-recon report")
        except StorageError as storage_error:
            self._record_failure(
                summary,
                agent,
                StorageIntegrityError(
                    f"Pre-recon report could not be stored: {storage_error}",
                    last_good_checkpoint=None,
                    agent_name=agent.name,
                    workspace=str(workspace),
                    attempts=1,
                ),
            )
            return

        result = outcome.get("result")
        cost = result.total_cost if isinstance(result, AttemptResult) else None
        self._record_success(summary, agent.name, checkpoint_ref, _elapsed_ms(started), cost)

    async def _run_report(
        self,
        summary: PipelineSummary,
        agent: AgentDefinition,
        cancel_token: CancellationToken | None,
    ) -> None:
        workspace = Path(summary.session.workspace)
        try:
            DeliverableStore(workspace).assemble_final_report()
        except StorageError as storage_error:
            self._record_failure(
                summary,
                agent,
                StorageIntegrityError(
                    f"Final report could not be assembled: {storage_error}",
                    last_good_checkpoint=summary.session.checkpoints.get(AGENT_ORDER[-2]),
                    agent_name=agent.name,
                    workspace=str(workspace),
                    attempts=0,
                ),
            )
            return
        await self._run_agents(summary, [agent], cancel_token)

    async def _run_agents(
        self,
        summary: PipelineSummary,
        agents: list[AgentDefinition],
        cancel_token: CancellationToken | None,
        *,
        isolate: bool = False,
    ) -> None:
        """Run agents concurrently; each outcome is attributed by agent name.

        With ``isolate`` every agent works in its own worktree and only its
        successful result is merged into the shared workspace.
        """

        if not agents:
            return

        async def run_one(agent: AgentDefinition) -> None:
            started = time.monotonic()
            try:
                if isolate:
                    result = await self._run_isolated(summary.session, agent, cancel_token)
                else:
                    result = await self._run_with_retry(summary.session, agent, cancel_token)
            except ClassifiedError as error:
                self._record_failure(summary, agent, error)
                return
            self._record_success(
                summary,
                agent.name,
                result.checkpoint_ref,
                _elapsed_ms(started),
                result.total_cost,
            )

        tasks = {
            agent.name: asyncio.create_task(run_one(agent), name=agent.name) for agent in agents
        }
        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for name, outcome in zip(tasks, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Agent %s crashed: %s", name, outcome)
                raise outcome

    async def _run_isolated(
        self,
        session: Session,
        agent: AgentDefinition,
        cancel_token: CancellationToken | None,
    ) -> AttemptResult:
        workspace = Path(session.workspace)
        result: AttemptResult | None = None
        try:
            async with self._checkpoints.isolated(workspace, agent.name) as isolated:
                result = await self._run_with_retry(
                    session,
                    agent,
                    cancel_token,
                    workspace=isolated.path,
                )
                merged_ref = await self._checkpoints.merge_isolated(isolated, agent.display_name)
        except StorageError as error:
            logger.error("Isolated run of %s could not be stored: %s", agent.display_name, error)
            raise StorageIntegrityError(
                f"{agent.display_name} aborted, workspace integrity at risk: {error}",
                last_good_checkpoint=None,
                agent_name=agent.name,
                workspace=str(workspace),
                attempts=result.attempts if result is not None else 0,
                total_cost=result.total_cost if result is not None else 0.0,
            ) from error
        return dataclasses.replace(result, checkpoint_ref=merged_ref)

    async def _run_with_retry(
        self,
        session: Session,
        agent: AgentDefinition,
        cancel_token: CancellationToken | None,
        *,
        workspace: Path | None = None,
    ) -> AttemptResult:
        workspace = workspace or Path(session.workspace)
        prompt = self._prompts.render(
            agent,
            web_url=session.target_url,
            repo_path=str(workspace),
        )
        return await self._retry.run_with_retry(
            agent.name,
            prompt,
            workspace,
            SessionMeta(id=session.id, target_url=session.target_url),
            cancel_token=cancel_token,
        )

    def _skip_empty_queues(
        self,
        summary: PipelineSummary,
        agents: list[AgentDefinition],
    ) -> list[AgentDefinition]:
        store = DeliverableStore(Path(summary.session.workspace))
        runnable: list[AgentDefinition] = []
        for agent in agents:
            vuln_type = vuln_type_of(agent)
            if vuln_type is not None and not store.exploitation_candidates(vuln_type):
                logger.info("Skipping %s: no vulnerabilities queued", agent.name)
                self._record_skip(summary, agent.name)
                continue
            runnable.append(agent)
        return runnable

    def _record_skip(self, summary: PipelineSummary, agent_name: str) -> None:
        summary.skipped_agents.append(agent_name)
        self._persist(summary, lambda: self._state.update_progress(summary.session, agent_name))

    def _record_success(
        self,
        summary: PipelineSummary,
        agent_name: str,
        checkpoint_ref: str | None,
        duration_ms: int,
        cost: float | None,
    ) -> None:
        summary.completed_agents.append(agent_name)
        summary.agent_timings_ms[agent_name] = duration_ms
        if cost is not None:
            summary.agent_costs_usd[agent_name] = cost
        self._persist(
            summary,
            lambda: self._state.update_progress(
                summary.session,
                agent_name,
                checkpoint_ref,
                timing_ms=duration_ms,
                cost_usd=cost,
            ),
        )

    def _record_failure(
        self,
        summary: PipelineSummary,
        agent: AgentDefinition,
        error: ClassifiedError,
    ) -> None:
        summary.agent_costs_usd[agent.name] = error.total_cost
        if isinstance(error, AgentCancelledError):
            summary.cancelled = True
            logger.warning("%s cancelled: %s", agent.display_name, error)
            return
        summary.failed_agents.append(agent.name)
        summary.errors[agent.name] = error
        logger.error("%s failed (%s): %s", agent.display_name, error.classification.value, error)
        self._persist(
            summary,
            lambda: self._state.mark_failed(summary.session, agent.name, cost_usd=error.total_cost),
        )

    def _mark_completed(self, summary: PipelineSummary, started: float) -> None:
        self._persist(
            summary,
            lambda: self._state.mark_completed(
                summary.session,
                timing={
                    "total_ms": _elapsed_ms(started),
                    "phases": dict(summary.phase_timings_ms),
                },
                cost={"total_usd": _session_total_cost(summary.session)},
            ),
        )
        logger.info("Pipeline completed for session %s", summary.session.id)

    @staticmethod
    def _persist(summary: PipelineSummary, operation: Callable[[], Session]) -> None:
        try:
            summary.session = operation()
        except PersistenceError as error:
            logger.error("Session state not saved: %s", error)
            summary.persistence_errors.append(error)
            if error.session is not None:
                summary.session = error.session


def _require_completed_before(session: Session, phase: Phase, what: str) -> None:
    earlier = [
        name
        for name in AGENT_ORDER
        if get_agent(name).phase < phase and name not in session.completed_agents
    ]
    if earlier:
        raise ValueError(f"Cannot run {what}: prerequisites not completed: {', '.join(earlier)}")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _session_total_cost(session: Session) -> float:
    agents = session.cost.get("agents", {})
    if not isinstance(agents, Mapping):
        return 0.0
    return float(sum(value for value in agents.values() if isinstance(value, int | float)))
