"""Agent invoker implementations."""

from pentest_pipeline.orchestrator.backend.base import AgentEvent, AgentInvoker, AgentRunRequest
from pentest_pipeline.orchestrator.backend.cli_backend import CliAgentInvoker

__all__ = [
    "AgentEvent",
    "AgentInvoker",
    "AgentRunRequest",
    "CliAgentInvoker",
]
