"""Domain models for agent sessions, attempts and wave results."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeAlias

CommitRef: TypeAlias = str


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse a stored timestamp; naive values are taken as UTC."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class Phase(int, Enum):
    """Ordered pipeline phases."""

    PRE_RECON = 1
    RECON = 2
    VULNERABILITY_ANALYSIS = 3
    EXPLOITATION = 4
    REPORTING = 5

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")


class AgentKind(str, Enum):
    """Closed set of agent kinds used for validator dispatch."""

    PRE_RECON = "pre_recon"
    RECON = "recon"
    INJECTION_VULN = "injection_vuln"
    XSS_VULN = "xss_vuln"
    AUTH_VULN = "auth_vuln"
    SSRF_VULN = "ssrf_vuln"
    AUTHZ_VULN = "authz_vuln"
    INJECTION_EXPLOIT = "injection_exploit"
    XSS_EXPLOIT = "xss_exploit"
    AUTH_EXPLOIT = "auth_exploit"
    SSRF_EXPLOIT = "ssrf_exploit"
    AUTHZ_EXPLOIT = "authz_exploit"
    REPORT = "report"


class SessionStatus(str, Enum):
    """Durable session lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class ToolStatus(str, Enum):
    """Outcome of one wave member."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    BILLING_OR_QUOTA = "billing_or_quota"
    SESSION_LIMIT = "session_limit"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    VALIDATION = "validation"


class ExecutionMode(str, Enum):
    """Capability level of the agent invoker in use."""

    FULL = "full"
    TEXT_ONLY = "text_only"


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    """Static descriptor of one agent in the catalog."""

    name: str
    display_name: str
    phase: Phase
    kind: AgentKind
    prompt_name: str


@dataclass(frozen=True, slots=True)
class AttemptResult:
    """Outcome of one agent attempt as reported by the invoker."""

    success: bool
    payload: str | None = None
    duration_ms: int = 0
    cost: float = 0.0
    partial_cost: float = 0.0
    retryable: bool = False
    api_error_detected: bool = False
    turns: int = 0
    error: str | None = None
    checkpoint_ref: CommitRef | None = None
    attempts: int = 1
    total_cost: float | None = None

    @property
    def reported_cost(self) -> float:
        """Cost attributable to this attempt, falling back to partial cost."""

        return self.cost or self.partial_cost


@dataclass(frozen=True, slots=True)
class SessionMeta:
    """Session identity passed to the retry orchestrator for audit correlation."""

    id: str
    target_url: str


@dataclass(frozen=True, slots=True)
class ToolScanResult:
    """Result of one named wave member."""

    tool_name: str
    output: str
    status: ToolStatus
    duration_ms: int = 0


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """Write-once audit log record."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_record(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> AuditEvent:
        payload = record.get("payload")
        return cls(
            kind=str(record["kind"]),
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            timestamp=from_iso(str(record["timestamp"])),
        )


@dataclass(frozen=True, slots=True)
class Session:
    """Persisted progress of one pipeline run.

    An agent name is never in both ``completed_agents`` and ``failed_agents``, and
    ``checkpoints`` only holds entries for completed agents.
    """

    id: str
    target_url: str
    workspace: str
    config_path: str | None = None
    completed_agents: frozenset[str] = frozenset()
    failed_agents: frozenset[str] = frozenset()
    checkpoints: Mapping[str, CommitRef] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.PENDING
    timing: Mapping[str, Any] = field(default_factory=dict)
    cost: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_document(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible document."""

        return {
            "id": self.id,
            "target_url": self.target_url,
            "workspace": self.workspace,
            "config_path": self.config_path,
            "completed_agents": sorted(self.completed_agents),
            "failed_agents": sorted(self.failed_agents),
            "checkpoints": dict(self.checkpoints),
            "status": self.status.value,
            "timing": dict(self.timing),
            "cost": dict(self.cost),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> Session:
        """Rebuild a session from :meth:`to_document` output."""

        return cls(
            id=str(document["id"]),
            target_url=str(document["target_url"]),
            workspace=str(document["workspace"]),
            config_path=document.get("config_path"),
            completed_agents=frozenset(document.get("completed_agents", ())),
            failed_agents=frozenset(document.get("failed_agents", ())),
            checkpoints=dict(document.get("checkpoints", {})),
            status=SessionStatus(document.get("status", SessionStatus.PENDING.value)),
            timing=dict(document.get("timing", {})),
            cost=dict(document.get("cost", {})),
            created_at=from_iso(document["created_at"]),
            updated_at=from_iso(document["updated_at"]),
        )
