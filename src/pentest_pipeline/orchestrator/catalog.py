"""Static catalog of supported agents and their phase membership."""

from __future__ import annotations

from pentest_pipeline.orchestrator.models import AgentDefinition, AgentKind, Phase

VULN_TYPES: tuple[str, ...] = ("injection", "xss", "auth", "ssrf", "authz")

_VULN_DISPLAY: dict[str, str] = {
    "injection": "Injection",
    "xss": "XSS",
    "auth": "Auth",
    "ssrf": "SSRF",
    "authz": "Authz",
}


def _build_catalog() -> tuple[AgentDefinition, ...]:
    agents = [
        AgentDefinition(
            name="pre-recon",
            display_name="Pre-recon agent",
            phase=Phase.PRE_RECON,
            kind=AgentKind.PRE_RECON,
            prompt_name="pre-recon-code",
        ),
        AgentDefinition(
            name="recon",
            display_name="Recon agent",
            phase=Phase.RECON,
            kind=AgentKind.RECON,
            prompt_name="recon",
        ),
    ]
    for vuln_type in VULN_TYPES:
        agents.append(
            AgentDefinition(
                name=f"{vuln_type}-vuln",
                display_name=f"{_VULN_DISPLAY[vuln_type]} vuln agent",
                phase=Phase.VULNERABILITY_ANALYSIS,
                kind=AgentKind(f"{vuln_type}_vuln"),
                prompt_name=f"vuln-{vuln_type}",
            ),
        )
    for vuln_type in VULN_TYPES:
        agents.append(
            AgentDefinition(
                name=f"{vuln_type}-exploit",
                display_name=f"{_VULN_DISPLAY[vuln_type]} exploit agent",
                phase=Phase.EXPLOITATION,
                kind=AgentKind(f"{vuln_type}_exploit"),
                prompt_name=f"exploit-{vuln_type}",
            ),
        )
    agents.append(
        AgentDefinition(
            name="report",
            display_name="Executive summary and report cleanup",
            phase=Phase.REPORTING,
            kind=AgentKind.REPORT,
            prompt_name="report-executive",
        ),
    )
    return tuple(agents)


AGENT_CATALOG: tuple[AgentDefinition, ...] = _build_catalog()
AGENTS: dict[str, AgentDefinition] = {agent.name: agent for agent in AGENT_CATALOG}
AGENT_ORDER: tuple[str, ...] = tuple(agent.name for agent in AGENT_CATALOG)

PARALLEL_PHASES: frozenset[Phase] = frozenset({Phase.VULNERABILITY_ANALYSIS, Phase.EXPLOITATION})


def get_agent(name: str) -> AgentDefinition:
    """Return the catalog entry for ``name`` or raise ``KeyError``."""

    try:
        return AGENTS[name]
    except KeyError:
        raise KeyError(f"Unknown agent: {name!r}. Known agents: {', '.join(AGENT_ORDER)}") from None


def phase_for_agent(name: str) -> Phase:
    return get_agent(name).phase


def agents_in_phase(phase: Phase) -> tuple[AgentDefinition, ...]:
    return tuple(agent for agent in AGENT_CATALOG if agent.phase == phase)


def is_parallel_phase(phase: Phase) -> bool:
    return phase in PARALLEL_PHASES


def vuln_type_of(agent: AgentDefinition) -> str | None:
    """Vulnerability class handled by a phase 3/4 agent."""

    if agent.phase not in PARALLEL_PHASES:
        return None
    return agent.name.rsplit("-", 1)[0]
