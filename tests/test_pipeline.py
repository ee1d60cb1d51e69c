from __future__ import annotations

import asyncio
import dataclasses
from collections import defaultdict
from pathlib import Path

import allure
import pytest
from conftest import MemorySessionStore, requires_git

from pentest_pipeline.config import PipelineOptions, RetrySettings
from pentest_pipeline.orchestrator.audit import AuditSink
from pentest_pipeline.orchestrator.backend.base import AgentRunRequest
from pentest_pipeline.orchestrator.backend.echo_agent import _write_deliverables
from pentest_pipeline.orchestrator.catalog import AGENT_ORDER
from pentest_pipeline.orchestrator.checkpoint import CheckpointStore, IsolatedWorkspace
from pentest_pipeline.orchestrator.deliverables import (
    CODE_ANALYSIS_DELIVERABLE,
    FINAL_REPORT_DELIVERABLE,
    PRE_RECON_DELIVERABLE,
    DeliverableStore,
    analysis_deliverable_name,
)
from pentest_pipeline.orchestrator.errors import (
    AgentInvocationError,
    ErrorClassification,
    PersistenceError,
)
from pentest_pipeline.orchestrator.models import (
    AttemptResult,
    ExecutionMode,
    Phase,
    Session,
    SessionStatus,
    ToolStatus,
)
from pentest_pipeline.orchestrator.pipeline import PipelineRunner, PromptSource
from pentest_pipeline.orchestrator.retry import RetryOrchestrator
from pentest_pipeline.orchestrator.session import SessionStateMachine
from pentest_pipeline.orchestrator.validator import ValidatorRegistry
from pentest_pipeline.orchestrator.waves import CODE_ANALYSIS_OPERATION, WaveScheduler
from pentest_pipeline.tools import ToolRunner

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Phase Execution"),
    requires_git,
]


class DeliverableWritingInvoker:
    """Writes each agent's deliverables in-process, optionally failing some agents."""

    def __init__(
        self,
        *,
        vulnerable: bool = True,
        fatal_agents: frozenset[str] = frozenset(),
    ) -> None:
        self.vulnerable = vulnerable
        self.fatal_agents = fatal_agents
        self.agents_run: list[str] = []

    async def stream(self, request: AgentRunRequest):
        self.agents_run.append(request.agent_name)
        if request.agent_name in self.fatal_agents:
            raise AgentInvocationError("invalid api key", cost=0.01)
        _write_deliverables(
            request.agent_name,
            DeliverableStore(request.workspace),
            vulnerable=self.vulnerable,
        )
        yield AttemptResult(success=True, payload=f"{request.agent_name} done", cost=0.1)


class FailingOnceStore(MemorySessionStore):
    """Raises PersistenceError the first time a session with ``agent`` completed is saved."""

    def __init__(self, agent: str) -> None:
        super().__init__()
        self.agent = agent
        self.failed = False

    def save(self, session: Session) -> Session:
        if not self.failed and self.agent in session.completed_agents:
            self.failed = True
            raise PersistenceError("database is locked", session=session)
        return super().save(session)


class MergeSignallingStore(CheckpointStore):
    """Sets an event per agent once its isolated work is merged."""

    def __init__(self) -> None:
        super().__init__()
        self.merged: defaultdict[str, asyncio.Event] = defaultdict(asyncio.Event)

    async def merge_isolated(self, isolated: IsolatedWorkspace, label: str) -> str:
        ref = await super().merge_isolated(isolated, label)
        self.merged[isolated.branch.rsplit("/", 1)[-1]].set()
        return ref


class FailsAfterSiblingInvoker(DeliverableWritingInvoker):
    """xss-vuln leaves a partial deliverable, waits for injection-vuln to merge, then fails."""

    def __init__(self, sibling_merged: asyncio.Event) -> None:
        super().__init__()
        self.sibling_merged = sibling_merged

    async def stream(self, request: AgentRunRequest):
        if request.agent_name != "xss-vuln":
            async for item in super().stream(request):
                yield item
            return
        self.agents_run.append(request.agent_name)
        DeliverableStore(request.workspace).write_text(
            analysis_deliverable_name("xss"),
            "# partial xss analysis\n",
        )
        await asyncio.wait_for(self.sibling_merged.wait(), timeout=30)
        raise AgentInvocationError("invalid api key", cost=0.01)


def _runner(
    tmp_path: Path,
    invoker: DeliverableWritingInvoker,
    store: MemorySessionStore,
    *,
    options: PipelineOptions | None = None,
    checkpoints: CheckpointStore | None = None,
) -> PipelineRunner:
    options = options or PipelineOptions(pipeline_testing=True)
    checkpoints = checkpoints or CheckpointStore()
    retry = RetryOrchestrator(
        checkpoints=checkpoints,
        validators=ValidatorRegistry(),
        audit=AuditSink(tmp_path / "audit"),
        invoker=invoker,
        settings=RetrySettings(max_attempts=2, retry_base_seconds=0),
        options=options,
    )
    return PipelineRunner(
        state_machine=SessionStateMachine(store),
        retry=retry,
        checkpoints=checkpoints,
        waves=WaveScheduler(),
        tool_runner=ToolRunner(timeout_seconds=5),
        prompts=PromptSource(tmp_path / "prompts"),
        options=options,
        availability={},
    )


def _session(workspace: Path, **kwargs) -> Session:
    return Session(
        id="s-1",
        target_url="https://app.example.com",
        workspace=str(workspace),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_full_run_completes_every_agent(tmp_path: Path, workspace: Path) -> None:
    store = MemorySessionStore()
    invoker = DeliverableWritingInvoker()
    runner = _runner(tmp_path, invoker, store)

    summary = await runner.run(_session(workspace))

    assert summary.succeeded
    assert summary.errors == {}
    assert set(summary.completed_agents) == set(AGENT_ORDER)
    assert summary.session.status == SessionStatus.COMPLETED
    assert set(summary.session.checkpoints) == set(AGENT_ORDER)
    assert summary.total_cost_usd == pytest.approx(1.3)
    assert summary.session.cost["total_usd"] == pytest.approx(1.3)
    assert store.load("s-1") == summary.session
    assert summary.wave_results[CODE_ANALYSIS_OPERATION].status == ToolStatus.SUCCESS
    assert summary.wave_results["nmap"].status == ToolStatus.SKIPPED

    deliverables = DeliverableStore(workspace)
    pre_recon = deliverables.read_text(PRE_RECON_DELIVERABLE) or ""
    assert "Echo analysis." in pre_recon
    assert "### code-analysis" not in pre_recon
    report = deliverables.read_text(FINAL_REPORT_DELIVERABLE) or ""
    assert report.startswith("# Executive summary")
    assert "xss evidence" in report


@pytest.mark.asyncio
async def test_resume_runs_only_remaining_agents(tmp_path: Path, workspace: Path) -> None:
    store = MemorySessionStore()
    invoker = DeliverableWritingInvoker()
    runner = _runner(tmp_path, invoker, store)
    done = ("pre-recon", "recon", "injection-vuln", "xss-vuln")
    session = _session(
        workspace,
        completed_agents=frozenset(done),
        checkpoints={name: "0" * 40 for name in done},
        status=SessionStatus.IN_PROGRESS,
    )

    summary = await runner.run(session)

    assert not set(invoker.agents_run) & set(done)
    assert set(invoker.agents_run) >= {"auth-vuln", "ssrf-vuln", "authz-vuln", "report"}
    assert {"injection-exploit", "xss-exploit"} <= set(summary.skipped_agents)
    assert "injection-exploit" not in invoker.agents_run
    assert summary.session.status == SessionStatus.COMPLETED
    assert summary.session.checkpoints["recon"] == "0" * 40


@pytest.mark.asyncio
async def test_empty_exploitation_queues_skip_exploit_agents(
    tmp_path: Path,
    workspace: Path,
) -> None:
    invoker = DeliverableWritingInvoker(vulnerable=False)
    runner = _runner(tmp_path, invoker, MemorySessionStore())

    summary = await runner.run(_session(workspace))

    exploit_agents = [name for name in AGENT_ORDER if name.endswith("-exploit")]
    assert summary.skipped_agents == exploit_agents
    assert not set(invoker.agents_run) & set(exploit_agents)
    assert set(exploit_agents) <= summary.session.completed_agents
    assert not set(exploit_agents) & set(summary.session.checkpoints)
    assert summary.session.status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_agent_stops_pipeline_after_its_phase(tmp_path: Path, workspace: Path) -> None:
    store = MemorySessionStore()
    invoker = DeliverableWritingInvoker(fatal_agents=frozenset({"xss-vuln"}))
    runner = _runner(tmp_path, invoker, store)

    summary = await runner.run(_session(workspace))

    assert list(summary.errors) == ["xss-vuln"]
    assert summary.errors["xss-vuln"].classification == ErrorClassification.NON_RETRYABLE
    assert summary.stopped_after == Phase.VULNERABILITY_ANALYSIS
    finished = summary.session.completed_agents
    assert {"injection-vuln", "auth-vuln", "ssrf-vuln", "authz-vuln"} <= finished
    assert summary.session.failed_agents == {"xss-vuln"}
    assert not any(name.endswith("-exploit") for name in invoker.agents_run)
    assert summary.session.status == SessionStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_pre_recon_failure_stops_before_recon(tmp_path: Path, workspace: Path) -> None:
    invoker = DeliverableWritingInvoker(fatal_agents=frozenset({"pre-recon"}))
    runner = _runner(tmp_path, invoker, MemorySessionStore())

    summary = await runner.run(_session(workspace))

    assert list(summary.errors) == ["pre-recon"]
    assert summary.stopped_after == Phase.PRE_RECON
    assert invoker.agents_run == ["pre-recon"]
    assert summary.wave_results[CODE_ANALYSIS_OPERATION].status == ToolStatus.FAILED


@pytest.mark.asyncio
async def test_text_only_mode_can_stop_after_pre_recon(tmp_path: Path, workspace: Path) -> None:
    options = PipelineOptions(
        execution_mode=ExecutionMode.TEXT_ONLY,
        pipeline_testing=True,
        relax_validation=True,
        skip_text_only_phases=True,
    )
    invoker = DeliverableWritingInvoker()
    runner = _runner(tmp_path, invoker, MemorySessionStore(), options=options)

    summary = await runner.run(_session(workspace))

    assert invoker.agents_run == ["pre-recon"]
    assert summary.completed_agents == ["pre-recon"]
    assert summary.stopped_after == Phase.PRE_RECON
    assert summary.session.status == SessionStatus.IN_PROGRESS
    assert DeliverableStore(workspace).exists(CODE_ANALYSIS_DELIVERABLE)


@pytest.mark.asyncio
async def test_persistence_failure_is_reported_and_run_continues(
    tmp_path: Path,
    workspace: Path,
) -> None:
    store = FailingOnceStore("recon")
    runner = _runner(tmp_path, DeliverableWritingInvoker(), store)

    summary = await runner.run(_session(workspace))

    assert len(summary.persistence_errors) == 1
    assert "database is locked" in str(summary.persistence_errors[0])
    assert summary.session.status == SessionStatus.COMPLETED
    assert "recon" in store.load("s-1").completed_agents


@pytest.mark.asyncio
async def test_run_single_agent_requires_earlier_phases(tmp_path: Path, workspace: Path) -> None:
    invoker = DeliverableWritingInvoker()
    runner = _runner(tmp_path, invoker, MemorySessionStore())
    session = _session(workspace, completed_agents=frozenset({"pre-recon"}))

    with pytest.raises(ValueError, match="prerequisites not completed: recon"):
        await runner.run_single_agent(session, "xss-vuln")

    summary = await runner.run_single_agent(session, "recon")
    assert summary.completed_agents == ["recon"]
    assert invoker.agents_run == ["recon"]


@pytest.mark.asyncio
async def test_prompt_source_renders_template(tmp_path: Path, workspace: Path) -> None:
    prompts = tmp_path / "prompts"
    prompts.mkdir()
    (prompts / "recon.txt").write_text("Recon $web_url from $repo_path ($unknown)", "utf-8")
    captured: list[str] = []

    class CapturingInvoker(DeliverableWritingInvoker):
        async def stream(self, request: AgentRunRequest):
            captured.append(request.full_prompt)
            async for item in super().stream(request):
                yield item

    runner = _runner(tmp_path, CapturingInvoker(), MemorySessionStore())
    session = dataclasses.replace(_session(workspace), completed_agents=frozenset({"pre-recon"}))

    await runner.run_single_agent(session, "recon")

    assert captured == [f"Recon https://app.example.com from {workspace} ($unknown)"]


@pytest.mark.asyncio
async def test_parallel_failure_leaves_sibling_work_and_discards_its_own(
    tmp_path: Path,
    workspace: Path,
) -> None:
    checkpoints = MergeSignallingStore()
    invoker = FailsAfterSiblingInvoker(checkpoints.merged["injection-vuln"])
    runner = _runner(tmp_path, invoker, MemorySessionStore(), checkpoints=checkpoints)
    session = _session(workspace, completed_agents=frozenset({"pre-recon", "recon"}))

    summary = await runner.run_phase(session, Phase.VULNERABILITY_ANALYSIS)

    store = DeliverableStore(workspace)
    assert list(summary.errors) == ["xss-vuln"]
    assert summary.session.failed_agents == {"xss-vuln"}
    assert {"injection-vuln", "auth-vuln", "ssrf-vuln", "authz-vuln"} <= (
        summary.session.completed_agents
    )
    assert not store.exists(analysis_deliverable_name("xss"))
    for vuln_type in ("injection", "auth", "ssrf", "authz"):
        assert store.exists(analysis_deliverable_name(vuln_type))
    assert await checkpoints.current_ref(workspace) in summary.session.checkpoints.values()


@pytest.mark.asyncio
async def test_run_phase_runs_only_pending_agents_of_that_phase(
    tmp_path: Path,
    workspace: Path,
) -> None:
    invoker = DeliverableWritingInvoker()
    runner = _runner(tmp_path, invoker, MemorySessionStore())
    session = _session(
        workspace,
        completed_agents=frozenset({"pre-recon", "recon", "injection-vuln"}),
    )

    summary = await runner.run_phase(session, Phase.VULNERABILITY_ANALYSIS)

    assert summary.succeeded
    assert sorted(invoker.agents_run) == ["auth-vuln", "authz-vuln", "ssrf-vuln", "xss-vuln"]
    assert summary.session.status == SessionStatus.IN_PROGRESS
    assert summary.stopped_after is None


@pytest.mark.asyncio
async def test_run_phase_requires_earlier_phases(tmp_path: Path, workspace: Path) -> None:
    runner = _runner(tmp_path, DeliverableWritingInvoker(), MemorySessionStore())

    with pytest.raises(ValueError, match="prerequisites not completed: recon"):
        await runner.run_phase(
            _session(workspace, completed_agents=frozenset({"pre-recon"})),
            Phase.VULNERABILITY_ANALYSIS,
        )
