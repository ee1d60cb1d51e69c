"""Session progress tracking and resumption points."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from pentest_pipeline.orchestrator.catalog import (
    AGENT_CATALOG,
    AGENT_ORDER,
    agents_in_phase,
    get_agent,
)
from pentest_pipeline.orchestrator.models import (
    AgentDefinition,
    CommitRef,
    Phase,
    Session,
    SessionStatus,
)

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def load(self, session_id: str) -> Session | None: ...

    def save(self, session: Session) -> Session: ...


class SessionStateMachine:
    """Pure progress transitions over immutable sessions, persisted after each one.

    Every mutating method saves through the store; a failed save raises
    :class:`~pentest_pipeline.orchestrator.errors.PersistenceError` carrying the
    updated, unsaved session.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def get_next_agent(self, session: Session) -> AgentDefinition | None:
        for agent in AGENT_CATALOG:
            if agent.name not in session.completed_agents:
                return agent
        return None

    def start_phase(self, session: Session) -> Phase | None:
        """Phase of the first uncompleted agent; ``None`` when everything is done."""

        agent = self.get_next_agent(session)
        return agent.phase if agent is not None else None

    def pending_agents(self, session: Session, phase: Phase) -> tuple[AgentDefinition, ...]:
        return tuple(
            agent for agent in agents_in_phase(phase) if agent.name not in session.completed_agents
        )

    def mark_in_progress(self, session: Session) -> Session:
        if session.status == SessionStatus.IN_PROGRESS:
            return session
        return self._store.save(dataclasses.replace(session, status=SessionStatus.IN_PROGRESS))

    def update_progress(
        self,
        session: Session,
        agent_name: str,
        checkpoint_ref: CommitRef | None = None,
        *,
        timing_ms: int | None = None,
        cost_usd: float | None = None,
    ) -> Session:
        """Record ``agent_name`` as completed and persist."""

        get_agent(agent_name)
        checkpoints = dict(session.checkpoints)
        if checkpoint_ref is not None:
            checkpoints[agent_name] = checkpoint_ref
        updated = dataclasses.replace(
            session,
            completed_agents=session.completed_agents | {agent_name},
            failed_agents=session.failed_agents - {agent_name},
            checkpoints=checkpoints,
            status=SessionStatus.IN_PROGRESS,
            timing=_with_agent_value(session.timing, agent_name, timing_ms),
            cost=_with_agent_value(session.cost, agent_name, cost_usd),
        )
        logger.info("Agent %s completed (checkpoint %s)", agent_name, checkpoint_ref or "-")
        return self._store.save(updated)

    def mark_failed(
        self,
        session: Session,
        agent_name: str,
        *,
        cost_usd: float | None = None,
    ) -> Session:
        """Record ``agent_name`` as failed, dropping any completion and checkpoint."""

        get_agent(agent_name)
        checkpoints = {
            name: ref for name, ref in session.checkpoints.items() if name != agent_name
        }
        updated = dataclasses.replace(
            session,
            completed_agents=session.completed_agents - {agent_name},
            failed_agents=session.failed_agents | {agent_name},
            checkpoints=checkpoints,
            status=SessionStatus.IN_PROGRESS,
            cost=_with_agent_value(session.cost, agent_name, cost_usd),
        )
        logger.warning("Agent %s marked as failed", agent_name)
        return self._store.save(updated)

    def rollback_to(self, session: Session, agent_name: str) -> tuple[Session, CommitRef]:
        """Forget progress after ``agent_name``; return its checkpoint to restore."""

        agent = get_agent(agent_name)
        if agent.name not in session.completed_agents:
            raise ValueError(f"Agent {agent_name!r} has not completed in session {session.id}")
        ref = session.checkpoints.get(agent.name)
        if ref is None:
            raise ValueError(f"Agent {agent_name!r} has no recorded checkpoint to roll back to")

        updated = self._truncate(session, AGENT_ORDER.index(agent.name) + 1)
        logger.info("Rolled session %s back to %s", session.id, agent_name)
        return updated, ref

    def rewind_before(
        self,
        session: Session,
        agent_name: str,
    ) -> tuple[Session, tuple[CommitRef, ...]]:
        """Forget the phase of ``agent_name`` and everything after it, ready for a re-run.

        Siblings in a parallel phase merge in completion order, so no single
        sibling checkpoint excludes the others; the whole phase is dropped.
        Returns the checkpoints of the closest earlier phase that recorded any;
        the newest of them is the state to restore.
        """

        agent = get_agent(agent_name)
        keep = [name for name in AGENT_ORDER if get_agent(name).phase < agent.phase]
        refs: tuple[CommitRef, ...] = ()
        for phase in sorted({get_agent(name).phase for name in keep}, reverse=True):
            refs = tuple(
                session.checkpoints[candidate.name]
                for candidate in agents_in_phase(phase)
                if candidate.name in session.checkpoints
            )
            if refs:
                break
        updated = self._truncate(session, len(keep))
        logger.info("Rewound session %s to before phase %s", session.id, agent.phase.label)
        return updated, refs

    def _truncate(self, session: Session, keep_count: int) -> Session:
        keep = set(AGENT_ORDER[:keep_count])
        updated = dataclasses.replace(
            session,
            completed_agents=frozenset(session.completed_agents & keep),
            failed_agents=frozenset(session.failed_agents & keep),
            checkpoints={
                name: value for name, value in session.checkpoints.items() if name in keep
            },
            status=SessionStatus.IN_PROGRESS,
        )
        logger.debug("Dropped progress of %s", sorted(session.completed_agents - keep))
        return self._store.save(updated)

    def mark_completed(
        self,
        session: Session,
        *,
        timing: Mapping[str, Any] | None = None,
        cost: Mapping[str, Any] | None = None,
    ) -> Session:
        updated = dataclasses.replace(
            session,
            status=SessionStatus.COMPLETED,
            timing={**session.timing, **(timing or {})},
            cost={**session.cost, **(cost or {})},
        )
        return self._store.save(updated)


def _with_agent_value(
    breakdown: Mapping[str, Any],
    agent_name: str,
    value: float | int | None,
) -> dict[str, Any]:
    merged = dict(breakdown)
    if value is None:
        return merged
    agents = dict(merged.get("agents", {}))
    agents[agent_name] = value
    merged["agents"] = agents
    return merged
