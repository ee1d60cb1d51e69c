"""Attempt-retry-validate-checkpoint loop for one agent.

Each agent run is a fold over attempts::

    INIT -> CHECKPOINT -> EXECUTE -> VALIDATE -> SUCCESS
                                              -> RETRY -> CHECKPOINT ...
                                              -> FAIL

Attempts are strictly sequential: attempt N+1 never starts before attempt N's
rollback or commit has finished.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, NoReturn

from pentest_pipeline.cancellation import CancellationToken
from pentest_pipeline.config import PipelineOptions, RetrySettings
from pentest_pipeline.orchestrator.audit import AttemptHandle, AuditSink
from pentest_pipeline.orchestrator.backend.base import AgentEvent, AgentInvoker, AgentRunRequest
from pentest_pipeline.orchestrator.catalog import get_agent
from pentest_pipeline.orchestrator.checkpoint import CheckpointStore
from pentest_pipeline.orchestrator.deliverables import CODE_ANALYSIS_DELIVERABLE, DeliverableStore
from pentest_pipeline.orchestrator.errors import (
    AgentCancelledError,
    AgentInvocationError,
    ClassifiedError,
    NonRetryableAgentError,
    RetriesExhaustedError,
    StorageError,
    StorageIntegrityError,
    ValidationExhaustedError,
)
from pentest_pipeline.orchestrator.failure_classifier import (
    classify_failure,
    compute_retry_delay,
    is_session_limit_text,
)
from pentest_pipeline.orchestrator.models import (
    AgentDefinition,
    AgentKind,
    AttemptResult,
    AuditEvent,
    CommitRef,
    FailureClass,
    SessionMeta,
)
from pentest_pipeline.orchestrator.validator import ValidatorRegistry

logger = logging.getLogger(__name__)

_PARTIAL_RESULTS_CHARS = 4_000


@dataclass(frozen=True, slots=True)
class AttemptFailure:
    """Why one attempt did not succeed."""

    kind: Literal["execution", "validation"]
    message: str
    retryable: bool
    failure_class: FailureClass | None = None
    cost: float = 0.0
    partial_results: Any = None
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class RetryState:
    """Immutable loop state; the next state is computed from an attempt outcome."""

    attempt_number: int = 1
    context: str = ""
    total_cost: float = 0.0
    last_failure: AttemptFailure | None = None
    last_checkpoint: CommitRef | None = None


class RetryOrchestrator:
    """Drive one agent through bounded attempts."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        checkpoints: CheckpointStore,
        validators: ValidatorRegistry,
        audit: AuditSink,
        invoker: AgentInvoker,
        settings: RetrySettings,
        options: PipelineOptions,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._checkpoints = checkpoints
        self._validators = validators
        self._audit = audit
        self._invoker = invoker
        self._settings = settings
        self._options = options
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def run_with_retry(  # noqa: PLR0913
        self,
        agent_name: str,
        prompt: str,
        workspace: Path,
        session_meta: SessionMeta,
        *,
        context: str = "",
        cancel_token: CancellationToken | None = None,
    ) -> AttemptResult:
        """Run ``agent_name`` until it succeeds or a classified error is raised."""

        agent = get_agent(agent_name)
        max_attempts = self._settings.max_attempts
        logger.info("Starting %s with %d max attempts", agent.display_name, max_attempts)

        state = RetryState(context=context)
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                raise self._classified(
                    AgentCancelledError,
                    f"{agent.display_name} cancelled before attempt {state.attempt_number}",
                    agent,
                    workspace,
                    state,
                )
            outcome = await self._attempt(
                agent,
                prompt,
                workspace,
                session_meta,
                state,
                cancel_token,
            )
            if isinstance(outcome, AttemptResult):
                return outcome
            state = await self._transition(
                agent,
                workspace,
                state,
                outcome,
                base_context=context,
                cancel_token=cancel_token,
            )

    async def _attempt(  # noqa: PLR0913
        self,
        agent: AgentDefinition,
        prompt: str,
        workspace: Path,
        session_meta: SessionMeta,
        state: RetryState,
        cancel_token: CancellationToken | None,
    ) -> AttemptResult | tuple[AttemptFailure, AttemptHandle, CommitRef]:
        attempt_number = state.attempt_number
        request = AgentRunRequest(
            agent_name=agent.name,
            prompt=prompt,
            workspace=workspace,
            attempt_number=attempt_number,
            context=state.context,
            cancel_token=cancel_token,
        )

        try:
            checkpoint_ref = await self._checkpoints.checkpoint(
                workspace,
                agent.display_name,
                attempt_number,
            )
            handle = self._audit.start_attempt(
                session_meta.id,
                agent.name,
                attempt_number,
                request.full_prompt,
            )
        except StorageError as error:
            raise self._storage_integrity(agent, workspace, state, error) from error

        try:
            result, failure = await self._execute(request, handle)
        except StorageError as error:
            raise self._storage_integrity(
                agent, workspace, state, error, checkpoint_ref,
            ) from error
        except asyncio.CancelledError:
            await asyncio.shield(self._rollback_quietly(workspace, "task cancelled"))
            raise

        if cancel_token is not None and cancel_token.cancelled:
            await self._cancel_attempt(
                agent, workspace, state, handle, checkpoint_ref, result, failure,
            )

        if failure is None:
            assert result is not None
            try:
                self._write_text_only_code_analysis(agent, workspace, result)
            except StorageError as error:
                raise self._storage_integrity(
                    agent, workspace, state, error, checkpoint_ref,
                ) from error
            verdict = self._validators.validate(
                agent.name,
                workspace,
                attempt_succeeded=True,
                options=self._options,
            )
            if not verdict.is_valid:
                if result.api_error_detected:
                    logger.warning("API error detected with validation failure for %s", agent.name)
                    message = "API Error: terminated with validation failure"
                else:
                    message = f"Output validation failed: {verdict.error_summary or 'no details'}"
                failure = AttemptFailure(
                    kind="validation",
                    message=message,
                    retryable=True,
                    failure_class=FailureClass.VALIDATION,
                    cost=result.reported_cost,
                )

        if failure is not None:
            return failure, handle, checkpoint_ref

        assert result is not None
        try:
            success_ref = await self._checkpoints.commit_success(workspace, agent.display_name)
            total_cost = state.total_cost + result.reported_cost
            self._audit.end_attempt(
                handle,
                {
                    "success": True,
                    "cost_usd": result.reported_cost,
                    "total_cost_usd": total_cost,
                    "turns": result.turns,
                    "checkpoint": success_ref,
                    "api_error_detected": result.api_error_detected,
                },
            )
        except StorageError as error:
            raise self._storage_integrity(
                agent, workspace, state, error, checkpoint_ref,
            ) from error

        logger.info(
            "%s completed successfully on attempt %d/%d",
            agent.display_name,
            attempt_number,
            self._settings.max_attempts,
        )
        return dataclasses.replace(
            result,
            checkpoint_ref=success_ref,
            attempts=attempt_number,
            total_cost=total_cost,
        )

    async def _execute(
        self,
        request: AgentRunRequest,
        handle: AttemptHandle,
    ) -> tuple[AttemptResult | None, AttemptFailure | None]:
        result: AttemptResult | None = None
        try:
            async with contextlib.aclosing(self._invoker.stream(request)) as stream:
                async for item in stream:
                    if isinstance(item, AttemptResult):
                        result = item
                        continue
                    self._audit.append(handle, AuditEvent(kind=item.kind, payload=item.payload))
                    if _reports_session_limit(item):
                        logger.error("Session limit reached during %s", request.agent_name)
                        return None, AttemptFailure(
                            kind="execution",
                            message="Session limit reached",
                            retryable=False,
                            failure_class=FailureClass.SESSION_LIMIT,
                        )
        except AgentInvocationError as error:
            classification = classify_failure(str(error), retryable_hint=error.retryable)
            return None, AttemptFailure(
                kind="execution",
                message=str(error),
                retryable=classification.retryable,
                failure_class=classification.failure_class,
                cost=error.cost,
                partial_results=error.partial_results,
                error=error,
            )
        except StorageError:
            raise
        except Exception as error:  # noqa: BLE001
            classification = classify_failure(str(error))
            return None, AttemptFailure(
                kind="execution",
                message=f"{type(error).__name__}: {error}",
                retryable=classification.retryable,
                failure_class=classification.failure_class,
                error=error,
            )

        if result is None:
            return None, AttemptFailure(
                kind="execution",
                message="Agent stream ended without a result",
                retryable=True,
                failure_class=FailureClass.TRANSIENT,
            )
        if not result.success:
            error_text = result.error or "Agent reported failure"
            classification = classify_failure(error_text, retryable_hint=result.retryable)
            return result, AttemptFailure(
                kind="execution",
                message=error_text,
                retryable=classification.retryable,
                failure_class=classification.failure_class,
                cost=result.reported_cost,
                partial_results=result.payload,
            )
        return result, None

    async def _transition(  # noqa: PLR0913
        self,
        agent: AgentDefinition,
        workspace: Path,
        state: RetryState,
        outcome: tuple[AttemptFailure, AttemptHandle, CommitRef],
        *,
        base_context: str,
        cancel_token: CancellationToken | None,
    ) -> RetryState:
        failure, handle, checkpoint_ref = outcome
        attempt_number = state.attempt_number
        max_attempts = self._settings.max_attempts
        is_final = attempt_number >= max_attempts or not failure.retryable
        failed_state = dataclasses.replace(
            state,
            total_cost=state.total_cost + failure.cost,
            last_failure=failure,
            last_checkpoint=checkpoint_ref,
        )

        try:
            self._audit.end_attempt(
                handle,
                {
                    "success": False,
                    "failure_kind": failure.kind,
                    "failure_class": failure.failure_class.value if failure.failure_class else None,
                    "retryable": failure.retryable,
                    "error": failure.message,
                    "cost_usd": failure.cost,
                    "total_cost_usd": failed_state.total_cost,
                    "is_final_attempt": is_final,
                },
            )
            await self._checkpoints.rollback(workspace, f"{failure.kind} failure")
        except StorageError as error:
            raise self._storage_integrity(
                agent, workspace, failed_state, error, checkpoint_ref,
            ) from error

        if failure.kind == "execution" and not failure.retryable:
            logger.error(
                "%s failed with non-retryable error: %s",
                agent.display_name,
                failure.message,
            )
            raise self._classified(
                NonRetryableAgentError,
                f"{agent.display_name} failed with non-retryable error: {failure.message}",
                agent,
                workspace,
                failed_state,
            ) from failure.error

        if attempt_number >= max_attempts:
            logger.error("%s failed after %d attempts", agent.display_name, max_attempts)
            if failure.kind == "validation":
                raise self._classified(
                    ValidationExhaustedError,
                    f"Agent {agent.display_name} failed output validation after {max_attempts} "
                    "attempts. Required deliverable files were not created.",
                    agent,
                    workspace,
                    failed_state,
                )
            raise self._classified(
                RetriesExhaustedError,
                f"{agent.display_name} failed after {max_attempts} attempts: {failure.message}",
                agent,
                workspace,
                failed_state,
            ) from failure.error

        delay = compute_retry_delay(
            attempt_number,
            failure.failure_class,
            self._settings,
            self._rng,
        )
        logger.warning(
            "%s failed (attempt %d/%d): %s. Workspace rolled back, retrying in %.1fs",
            agent.display_name,
            attempt_number,
            max_attempts,
            failure.message,
            delay,
        )
        if cancel_token is not None:
            if await cancel_token.sleep(delay):
                raise self._classified(
                    AgentCancelledError,
                    f"{agent.display_name} cancelled while waiting to retry",
                    agent,
                    workspace,
                    failed_state,
                )
        else:
            await self._sleep(delay)

        return dataclasses.replace(
            failed_state,
            attempt_number=attempt_number + 1,
            context=_carry_forward(base_context, failure, attempt_number),
        )

    async def _cancel_attempt(  # noqa: PLR0913
        self,
        agent: AgentDefinition,
        workspace: Path,
        state: RetryState,
        handle: AttemptHandle,
        checkpoint_ref: CommitRef,
        result: AttemptResult | None,
        failure: AttemptFailure | None,
    ) -> NoReturn:
        cost = failure.cost if failure is not None else (result.reported_cost if result else 0.0)
        cancelled_state = dataclasses.replace(
            state,
            total_cost=state.total_cost + cost,
            last_checkpoint=checkpoint_ref,
        )
        try:
            self._audit.end_attempt(
                handle,
                {
                    "success": False,
                    "error": "cancelled",
                    "cost_usd": cost,
                    "is_final_attempt": True,
                },
            )
            await self._checkpoints.rollback(workspace, "cancellation")
        except StorageError as error:
            raise self._storage_integrity(
                agent,
                workspace,
                cancelled_state,
                error,
                checkpoint_ref,
            ) from error
        raise self._classified(
            AgentCancelledError,
            f"{agent.display_name} interrupted; workspace rolled back to {checkpoint_ref[:12]}",
            agent,
            workspace,
            cancelled_state,
        )

    async def _rollback_quietly(self, workspace: Path, reason: str) -> None:
        try:
            await self._checkpoints.rollback(workspace, reason)
        except StorageError:
            logger.exception("Rollback after %s failed for %s", reason, workspace)

    def _write_text_only_code_analysis(
        self,
        agent: AgentDefinition,
        workspace: Path,
        result: AttemptResult,
    ) -> None:
        if not (self._options.text_only and agent.kind == AgentKind.PRE_RECON and result.payload):
            return
        store = DeliverableStore(workspace)
        if not store.exists(CODE_ANALYSIS_DELIVERABLE):
            store.write_text(CODE_ANALYSIS_DELIVERABLE, result.payload)

    def _storage_integrity(  # noqa: PLR0913
        self,
        agent: AgentDefinition,
        workspace: Path,
        state: RetryState,
        error: StorageError,
        checkpoint_ref: CommitRef | None = None,
    ) -> StorageIntegrityError:
        logger.error("Storage failure during %s: %s", agent.display_name, error)
        return StorageIntegrityError(
            f"{agent.display_name} aborted, workspace integrity at risk: {error}",
            last_good_checkpoint=checkpoint_ref or state.last_checkpoint,
            agent_name=agent.name,
            workspace=str(workspace),
            attempts=state.attempt_number,
            total_cost=state.total_cost,
            failure_class=None,
        )

    @staticmethod
    def _classified(
        error_type: type[ClassifiedError],
        message: str,
        agent: AgentDefinition,
        workspace: Path,
        state: RetryState,
    ) -> ClassifiedError:
        failure = state.last_failure
        return error_type(
            message,
            agent_name=agent.name,
            workspace=str(workspace),
            attempts=state.attempt_number,
            total_cost=state.total_cost,
            failure_class=failure.failure_class if failure else None,
        )


def _reports_session_limit(event: AgentEvent) -> bool:
    if event.kind != "llm_response":
        return False
    content = event.payload.get("content")
    return isinstance(content, str) and is_session_limit_text(content)


def _carry_forward(base_context: str, failure: AttemptFailure, attempt_number: int) -> str:
    lines = [f"Previous attempt {attempt_number} failed: {failure.message}"]
    if failure.partial_results:
        partial = failure.partial_results
        if not isinstance(partial, str):
            partial = json.dumps(partial, ensure_ascii=False, default=str)
        lines.append(f"Previous partial results: {partial[:_PARTIAL_RESULTS_CHARS]}")
    summary = "\n".join(lines)
    if not base_context:
        return summary
    return f"{base_context}\n\n{summary}"
