"""Deliverable validation dispatched on agent kind."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from pentest_pipeline.config import PipelineOptions
from pentest_pipeline.orchestrator.catalog import get_agent, vuln_type_of
from pentest_pipeline.orchestrator.deliverables import (
    CODE_ANALYSIS_DELIVERABLE,
    FINAL_REPORT_DELIVERABLE,
    RECON_DELIVERABLE,
    DeliverableStore,
    analysis_deliverable_name,
    evidence_deliverable_name,
    exploitation_queue_name,
)
from pentest_pipeline.orchestrator.models import AgentDefinition, AgentKind

logger = logging.getLogger(__name__)

ArtifactCheck = Callable[[AgentDefinition, DeliverableStore], str | None]
"""Returns ``None`` when the workspace holds the required artifacts, else a reason."""


class DefaultPolicy(str, Enum):
    """What a kind without an artifact check returns."""

    ATTEMPT_SUCCESS = "attempt_success"
    REQUIRE_ARTIFACTS = "require_artifacts"


@dataclass(slots=True)
class ValidationResult:
    """Result of validating one attempt's workspace."""

    is_valid: bool
    error_summary: str | None = None
    relaxed: bool = False


def _require_files(*names: str) -> ArtifactCheck:
    def check(_agent: AgentDefinition, store: DeliverableStore) -> str | None:
        missing = [name for name in names if not store.exists(name)]
        if missing:
            return f"Missing deliverables: {', '.join(missing)}"
        return None

    return check


def _vuln_check(agent: AgentDefinition, store: DeliverableStore) -> str | None:
    vuln_type = vuln_type_of(agent)
    assert vuln_type is not None
    analysis = analysis_deliverable_name(vuln_type)
    queue = exploitation_queue_name(vuln_type)
    missing = [name for name in (analysis, queue) if not store.exists(name)]
    if missing:
        return f"Missing deliverables: {', '.join(missing)}"
    raw = store.read_json(queue)
    if not isinstance(raw, dict) or not isinstance(raw.get("vulnerabilities"), list):
        return f"{queue} must be a JSON object with a 'vulnerabilities' list."
    return None


def _exploit_check(agent: AgentDefinition, store: DeliverableStore) -> str | None:
    vuln_type = vuln_type_of(agent)
    assert vuln_type is not None
    evidence = evidence_deliverable_name(vuln_type)
    if not store.exists(evidence):
        return f"Missing deliverables: {evidence}"
    return None


_VULN_KINDS: tuple[AgentKind, ...] = (
    AgentKind.INJECTION_VULN,
    AgentKind.XSS_VULN,
    AgentKind.AUTH_VULN,
    AgentKind.SSRF_VULN,
    AgentKind.AUTHZ_VULN,
)
_EXPLOIT_KINDS: tuple[AgentKind, ...] = (
    AgentKind.INJECTION_EXPLOIT,
    AgentKind.XSS_EXPLOIT,
    AgentKind.AUTH_EXPLOIT,
    AgentKind.SSRF_EXPLOIT,
    AgentKind.AUTHZ_EXPLOIT,
)

DEFAULT_CHECKS: Mapping[AgentKind, ArtifactCheck] = MappingProxyType(
    {
        AgentKind.PRE_RECON: _require_files(CODE_ANALYSIS_DELIVERABLE),
        AgentKind.RECON: _require_files(RECON_DELIVERABLE),
        **{kind: _vuln_check for kind in _VULN_KINDS},
        **{kind: _exploit_check for kind in _EXPLOIT_KINDS},
        AgentKind.REPORT: _require_files(FINAL_REPORT_DELIVERABLE),
    },
)


class ValidatorRegistry:
    """Maps every :class:`AgentKind` to an artifact check or an explicit default policy.

    Kinds without a registered check must be given a policy; a kind with neither
    is rejected at construction so nothing falls through silently.
    """

    def __init__(
        self,
        checks: Mapping[AgentKind, ArtifactCheck] | None = None,
        *,
        default_policies: Mapping[AgentKind, DefaultPolicy] | None = None,
    ) -> None:
        self._checks: dict[AgentKind, ArtifactCheck] = dict(
            DEFAULT_CHECKS if checks is None else checks,
        )
        self._policies: dict[AgentKind, DefaultPolicy] = dict(default_policies or {})
        unassigned = [
            kind.value
            for kind in AgentKind
            if kind not in self._checks and kind not in self._policies
        ]
        if unassigned:
            raise ValueError(f"No validator or default policy for kinds: {', '.join(unassigned)}")

    def register(self, kind: AgentKind, check: ArtifactCheck) -> None:
        self._checks[kind] = check

    def validate(
        self,
        agent_name: str,
        workspace: Path,
        *,
        attempt_succeeded: bool,
        options: PipelineOptions,
    ) -> ValidationResult:
        """Judge the workspace after an attempt. Never mutates the workspace."""

        agent = get_agent(agent_name)
        if agent.kind in options.relaxed_kinds():
            logger.info(
                "Validation relaxed for %s in %s mode",
                agent_name,
                options.execution_mode.value,
            )
            return ValidationResult(is_valid=attempt_succeeded, relaxed=True)

        check = self._checks.get(agent.kind)
        if check is None:
            policy = self._policies[agent.kind]
            if policy == DefaultPolicy.ATTEMPT_SUCCESS:
                return ValidationResult(is_valid=attempt_succeeded)
            return ValidationResult(
                is_valid=False,
                error_summary=f"No artifact check registered for {agent.kind.value}",
            )

        reason = check(agent, DeliverableStore(workspace))
        if reason is not None:
            logger.warning("Validation failed for %s: %s", agent_name, reason)
            return ValidationResult(is_valid=False, error_summary=reason)
        return ValidationResult(is_valid=True)
