"""Exception taxonomy for the orchestration core.

Only :class:`ClassifiedError` subclasses leave :meth:`RetryOrchestrator.run_with_retry`;
tool failures, retryable execution failures and validation failures within budget are
absorbed by the core.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from pentest_pipeline.orchestrator.models import FailureClass

if TYPE_CHECKING:
    from pentest_pipeline.orchestrator.models import Session


class ErrorClassification(str, Enum):
    """User-facing stop reasons."""

    NON_RETRYABLE = "non_retryable"
    RETRIES_EXHAUSTED = "retries_exhausted"
    VALIDATION_EXHAUSTED = "validation_exhausted"
    STORAGE_INTEGRITY = "storage_integrity"
    CANCELLED = "cancelled"


class OrchestratorError(RuntimeError):
    """Base class for orchestration errors."""


class StorageError(OrchestratorError):
    """Checkpoint, rollback or commit could not be performed."""


class PersistenceError(OrchestratorError):
    """Session state could not be saved."""

    def __init__(self, message: str, *, session: Session | None = None) -> None:
        super().__init__(message)
        self.session = session


class AgentInvocationError(OrchestratorError):
    """Agent invoker failure with retryability hint.

    ``retryable`` is ``None`` when the invoker has no opinion and the failure
    classifier should decide from the message.
    """

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        retryable: bool | None = None,
        category: str | None = None,
        partial_results: Any = None,
        cost: float = 0.0,
        duration_ms: int = 0,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.category = category
        self.partial_results = partial_results
        self.cost = cost
        self.duration_ms = duration_ms


class ClassifiedError(OrchestratorError):
    """Terminal agent failure surfaced to the pipeline caller."""

    classification: ErrorClassification = ErrorClassification.NON_RETRYABLE

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        agent_name: str,
        workspace: str,
        attempts: int,
        total_cost: float = 0.0,
        failure_class: FailureClass | None = None,
    ) -> None:
        super().__init__(message)
        self.agent_name = agent_name
        self.workspace = workspace
        self.attempts = attempts
        self.total_cost = total_cost
        self.failure_class = failure_class

    def to_details(self) -> dict[str, object]:
        """Serialize diagnostics for audit records and CLI output."""

        return {
            "classification": self.classification.value,
            "agent": self.agent_name,
            "workspace": self.workspace,
            "attempts": self.attempts,
            "total_cost_usd": self.total_cost,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "message": str(self),
        }


class NonRetryableAgentError(ClassifiedError):
    """Execution failed with an error that must not be retried."""

    classification = ErrorClassification.NON_RETRYABLE


class RetriesExhaustedError(ClassifiedError):
    """Every attempt failed with a retryable execution error."""

    classification = ErrorClassification.RETRIES_EXHAUSTED


class ValidationExhaustedError(ClassifiedError):
    """Agent kept completing without producing its required deliverables."""

    classification = ErrorClassification.VALIDATION_EXHAUSTED


class StorageIntegrityError(ClassifiedError):
    """Workspace snapshots can no longer be trusted."""

    classification = ErrorClassification.STORAGE_INTEGRITY

    def __init__(self, message: str, *, last_good_checkpoint: str | None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.last_good_checkpoint = last_good_checkpoint


class AgentCancelledError(ClassifiedError):
    """Attempt was interrupted and rolled back."""

    classification = ErrorClassification.CANCELLED
