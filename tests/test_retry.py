from __future__ import annotations

import random
from collections.abc import Callable, Iterable
from pathlib import Path

import allure
import pytest

from pentest_pipeline.cancellation import CancellationToken
from pentest_pipeline.config import PipelineOptions, RetrySettings
from pentest_pipeline.orchestrator.audit import AuditSink
from pentest_pipeline.orchestrator.backend.base import AgentEvent, AgentRunRequest
from pentest_pipeline.orchestrator.deliverables import RECON_DELIVERABLE, DeliverableStore
from pentest_pipeline.orchestrator.errors import (
    AgentCancelledError,
    AgentInvocationError,
    NonRetryableAgentError,
    RetriesExhaustedError,
    StorageError,
    StorageIntegrityError,
    ValidationExhaustedError,
)
from pentest_pipeline.orchestrator.models import AttemptResult, FailureClass, SessionMeta
from pentest_pipeline.orchestrator.retry import RetryOrchestrator
from pentest_pipeline.orchestrator.validator import ValidatorRegistry

pytestmark = [
    allure.epic("Orchestrator Core"),
    allure.feature("Retry Orchestration"),
]

Step = Callable[[AgentRunRequest], Iterable[AgentEvent | AttemptResult]]

_META = SessionMeta(id="s-1", target_url="https://app.example.com")


class ScriptedInvoker:
    """Plays one scripted step per attempt; the last step repeats."""

    def __init__(self, *steps: Step) -> None:
        self.steps = list(steps)
        self.requests: list[AgentRunRequest] = []

    async def stream(self, request: AgentRunRequest):
        self.requests.append(request)
        step = self.steps[min(len(self.requests), len(self.steps)) - 1]
        for item in step(request):
            yield item


class RecordingCheckpoints:
    """Checkpoint store double that records the call sequence."""

    def __init__(self, *, fail_checkpoint: bool = False) -> None:
        self.calls: list[tuple[str, object]] = []
        self.fail_checkpoint = fail_checkpoint

    async def checkpoint(self, workspace: Path, label: str, attempt_number: int) -> str:
        if self.fail_checkpoint:
            raise StorageError("git add failed: disk full")
        self.calls.append(("checkpoint", attempt_number))
        return f"ckpt-{attempt_number}"

    async def commit_success(self, workspace: Path, label: str) -> str:
        self.calls.append(("commit", label))
        return "commit-ok"

    async def rollback(self, workspace: Path, reason: str) -> None:
        self.calls.append(("rollback", reason))

    def count(self, kind: str) -> int:
        return sum(1 for call, _ in self.calls if call == kind)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _writes_recon(cost: float = 0.25) -> Step:
    def step(request: AgentRunRequest) -> list[AgentEvent | AttemptResult]:
        DeliverableStore(request.workspace).write_text(RECON_DELIVERABLE, "# Recon\n")
        return [
            AgentEvent(kind="llm_response", payload={"content": "Recon done"}),
            AttemptResult(success=True, payload="done", cost=cost, turns=3),
        ]

    return step


def _writes_nothing(cost: float = 0.1) -> Step:
    def step(_request: AgentRunRequest) -> list[AgentEvent | AttemptResult]:
        return [AttemptResult(success=True, payload="claimed success", cost=cost)]

    return step


def _raises(message: str, *, retryable: bool | None = None, cost: float = 0.0) -> Step:
    def step(_request: AgentRunRequest) -> list[AgentEvent | AttemptResult]:
        raise AgentInvocationError(
            message,
            retryable=retryable,
            cost=cost,
            partial_results="half a recon map",
        )

    return step


def _orchestrator(
    tmp_path: Path,
    invoker: ScriptedInvoker,
    checkpoints: RecordingCheckpoints,
    sleep: RecordingSleep,
    *,
    max_attempts: int = 3,
) -> RetryOrchestrator:
    return RetryOrchestrator(
        checkpoints=checkpoints,
        validators=ValidatorRegistry(),
        audit=AuditSink(tmp_path / "audit"),
        invoker=invoker,
        settings=RetrySettings(
            max_attempts=max_attempts,
            retry_base_seconds=1,
            retry_max_seconds=4,
            rate_limit_floor_seconds=10,
        ),
        options=PipelineOptions(),
        sleep=sleep,
        rng=random.Random(0),
    )


@pytest.mark.asyncio
async def test_first_attempt_success_commits_and_audits(tmp_path: Path, workspace: Path) -> None:
    checkpoints = RecordingCheckpoints()
    sleep = RecordingSleep()
    orchestrator = _orchestrator(tmp_path, ScriptedInvoker(_writes_recon()), checkpoints, sleep)

    result = await orchestrator.run_with_retry("recon", "Map it.", workspace, _META)

    assert result.success
    assert result.checkpoint_ref == "commit-ok"
    assert result.attempts == 1
    assert result.total_cost == pytest.approx(0.25)
    assert checkpoints.calls == [("checkpoint", 1), ("commit", "Recon agent")]
    assert sleep.delays == []
    events = AuditSink(tmp_path / "audit").replay(
        tmp_path / "audit" / "s-1" / "agents" / "recon" / "attempt-1.jsonl",
    )
    assert [event.kind for event in events] == [
        "attempt_started",
        "llm_response",
        "attempt_finished",
    ]
    assert events[-1].payload["checkpoint"] == "commit-ok"


@pytest.mark.asyncio
async def test_validation_failures_exhaust_budget_without_commit(
    tmp_path: Path,
    workspace: Path,
) -> None:
    checkpoints = RecordingCheckpoints()
    sleep = RecordingSleep()
    orchestrator = _orchestrator(tmp_path, ScriptedInvoker(_writes_nothing()), checkpoints, sleep)

    with pytest.raises(ValidationExhaustedError) as error_info:
        await orchestrator.run_with_retry("recon", "Map it.", workspace, _META)

    error = error_info.value
    assert error.attempts == 3
    assert error.total_cost == pytest.approx(0.3)
    assert error.failure_class == FailureClass.VALIDATION
    assert "failed output validation after 3 attempts" in str(error)
    assert checkpoints.count("checkpoint") == 3
    assert checkpoints.count("rollback") == 3
    assert checkpoints.count("commit") == 0
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_stops_after_one_attempt(tmp_path: Path, workspace: Path) -> None:
    checkpoints = RecordingCheckpoints()
    sleep = RecordingSleep()
    invoker = ScriptedInvoker(_raises("401: invalid api key", cost=0.05))
    orchestrator = _orchestrator(tmp_path, invoker, checkpoints, sleep)

    with pytest.raises(NonRetryableAgentError) as error_info:
        await orchestrator.run_with_retry("recon", "Map it.", workspace, _META)

    assert error_info.value.attempts == 1
    assert error_info.value.failure_class == FailureClass.ACCESS_OR_AUTH
    assert isinstance(error_info.value.__cause__, AgentInvocationError)
    assert len(invoker.requests) == 1
    assert checkpoints.calls == [("checkpoint", 1), ("rollback", "execution failure")]
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_costs_accumulate_and_context_carries_forward(
    tmp_path: Path,
    workspace: Path,
) -> None:
    checkpoints = RecordingCheckpoints()
    sleep = RecordingSleep()
    invoker = ScriptedInvoker(
        _raises("connection reset by peer", retryable=True, cost=0.2),
        _writes_recon(cost=0.3),
    )
    orchestrator = _orchestrator(tmp_path, invoker, checkpoints, sleep)

    result = await orchestrator.run_with_retry(
        "recon",
        "Map it.",
        workspace,
        _META,
        context="Operator notes.",
    )

    assert result.attempts == 2
    assert result.total_cost == pytest.approx(0.5)
    assert result.reported_cost == pytest.approx(0.3)
    assert invoker.requests[0].context == "Operator notes."
    second_context = invoker.requests[1].context
    assert second_context.startswith("Operator notes.")
    assert "Previous attempt 1 failed: connection reset by peer" in second_context
    assert "half a recon map" in second_context
    assert invoker.requests[1].full_prompt.endswith("Map it.")
    assert checkpoints.calls == [
        ("checkpoint", 1),
        ("rollback", "execution failure"),
        ("checkpoint", 2),
        ("commit", "Recon agent"),
    ]
    assert len(sleep.delays) == 1
    assert 0 <= sleep.delays[0] <= 1


@pytest.mark.asyncio
async def test_retryable_failures_exhaust_into_retries_exhausted(
    tmp_path: Path,
    workspace: Path,
) -> None:
    checkpoints = RecordingCheckpoints()
    invoker = ScriptedInvoker(_raises("upstream timed out", cost=0.1))
    orchestrator = _orchestrator(tmp_path, invoker, checkpoints, RecordingSleep(), max_attempts=2)

    with pytest.raises(RetriesExhaustedError) as error_info:
        await orchestrator.run_with_retry("recon", "Map it.", workspace, _META)

    assert error_info.value.attempts == 2
    assert error_info.value.total_cost == pytest.approx(0.2)
    assert error_info.value.failure_class == FailureClass.TRANSIENT
    assert str(error_info.value.__cause__) == "upstream timed out"
    assert checkpoints.count("rollback") == 2


@pytest.mark.asyncio
async def test_session_limit_in_stream_short_circuits(tmp_path: Path, workspace: Path) -> None:
    def step(_request: AgentRunRequest) -> list[AgentEvent | AttemptResult]:
        return [
            AgentEvent(
                kind="llm_response",
                payload={"content": "Session limit reached | resets 5pm"},
            ),
            AttemptResult(success=True, payload="partial"),
        ]

    checkpoints = RecordingCheckpoints()
    invoker = ScriptedInvoker(step)
    orchestrator = _orchestrator(tmp_path, invoker, checkpoints, RecordingSleep())

    with pytest.raises(NonRetryableAgentError) as error_info:
        await orchestrator.run_with_retry("recon", "Map it.", workspace, _META)

    assert error_info.value.failure_class == FailureClass.SESSION_LIMIT
    assert len(invoker.requests) == 1
    assert checkpoints.count("commit") == 0


@pytest.mark.asyncio
async def test_cancellation_rolls_back_and_raises(tmp_path: Path, workspace: Path) -> None:
    token = CancellationToken()

    def step(request: AgentRunRequest) -> list[AgentEvent | AttemptResult]:
        DeliverableStore(request.workspace).write_text(RECON_DELIVERABLE, "half")
        token.cancel("test interrupt")
        return [AttemptResult(success=True, payload="done", cost=0.4)]

    checkpoints = RecordingCheckpoints()
    orchestrator = _orchestrator(tmp_path, ScriptedInvoker(step), checkpoints, RecordingSleep())

    with pytest.raises(AgentCancelledError) as error_info:
        await orchestrator.run_with_retry("recon", "Map it.", workspace, _META, cancel_token=token)

    assert error_info.value.total_cost == pytest.approx(0.4)
    assert checkpoints.calls == [("checkpoint", 1), ("rollback", "cancellation")]


@pytest.mark.asyncio
async def test_cancelled_token_prevents_first_attempt(tmp_path: Path, workspace: Path) -> None:
    token = CancellationToken()
    token.cancel()
    checkpoints = RecordingCheckpoints()
    invoker = ScriptedInvoker(_writes_recon())
    orchestrator = _orchestrator(tmp_path, invoker, checkpoints, RecordingSleep())

    with pytest.raises(AgentCancelledError):
        await orchestrator.run_with_retry("recon", "Map it.", workspace, _META, cancel_token=token)

    assert invoker.requests == []
    assert checkpoints.calls == []


@pytest.mark.asyncio
async def test_checkpoint_failure_surfaces_storage_integrity(
    tmp_path: Path,
    workspace: Path,
) -> None:
    invoker = ScriptedInvoker(_writes_recon())
    orchestrator = _orchestrator(
        tmp_path,
        invoker,
        RecordingCheckpoints(fail_checkpoint=True),
        RecordingSleep(),
    )

    with pytest.raises(StorageIntegrityError) as error_info:
        await orchestrator.run_with_retry("recon", "Map it.", workspace, _META)

    assert error_info.value.last_good_checkpoint is None
    assert "disk full" in str(error_info.value)
    assert invoker.requests == []
