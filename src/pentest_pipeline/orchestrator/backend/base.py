"""Agent invoker interface for orchestrator attempt execution."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

from pentest_pipeline.orchestrator.models import AttemptResult

if TYPE_CHECKING:
    from pentest_pipeline.cancellation import CancellationToken

AgentEventKind = Literal["llm_response", "tool_start", "tool_end", "system"]


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent attempt."""

    agent_name: str
    prompt: str
    workspace: Path
    attempt_number: int = 1
    context: str = ""
    cancel_token: CancellationToken | None = None

    @property
    def full_prompt(self) -> str:
        """Prompt with carried-forward context prepended."""

        if not self.context:
            return self.prompt
        return f"{self.context}\n\n{self.prompt}"


@dataclass(slots=True)
class AgentEvent:
    """Intermediate event streamed by an invoker during an attempt."""

    kind: AgentEventKind
    payload: dict[str, Any] = field(default_factory=dict)


class AgentInvoker(Protocol):
    """Protocol implemented by agent invokers."""

    def stream(self, request: AgentRunRequest) -> AsyncIterator[AgentEvent | AttemptResult]:
        """Yield intermediate events, then exactly one final ``AttemptResult``.

        Failures that prevent an attempt from producing a result are raised as
        :class:`~pentest_pipeline.orchestrator.errors.AgentInvocationError`.
        """
