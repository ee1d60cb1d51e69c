"""Local deterministic agent for CLI invoker integration tests.

Writes the deliverables of the agent named in ``PENTEST_PIPELINE_AGENT_NAME``
into ``./deliverables`` and prints Claude-style stream JSON.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

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
from pentest_pipeline.orchestrator.models import AgentKind, Phase


def _write_deliverables(agent_name: str, store: DeliverableStore, *, vulnerable: bool) -> None:
    agent = get_agent(agent_name)
    vuln_type = vuln_type_of(agent)
    if agent.kind == AgentKind.PRE_RECON:
        store.write_text(CODE_ANALYSIS_DELIVERABLE, "# Code analysis\n\nEcho analysis.\n")
    elif agent.kind == AgentKind.RECON:
        store.write_text(RECON_DELIVERABLE, "# Recon\n\nEcho recon.\n")
    elif agent.phase == Phase.VULNERABILITY_ANALYSIS and vuln_type is not None:
        store.write_text(analysis_deliverable_name(vuln_type), f"# {vuln_type} analysis\n")
        queue = [{"id": f"{vuln_type.upper()}-VULN-01"}] if vulnerable else []
        store.write_text(exploitation_queue_name(vuln_type), json.dumps({"vulnerabilities": queue}))
    elif agent.phase == Phase.EXPLOITATION and vuln_type is not None:
        store.write_text(evidence_deliverable_name(vuln_type), f"# {vuln_type} evidence\n")
    elif agent.kind == AgentKind.REPORT:
        existing = store.read_text(FINAL_REPORT_DELIVERABLE) or ""
        store.write_text(FINAL_REPORT_DELIVERABLE, f"# Executive summary\n\n{existing}")


def _emit(record: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic agent output."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=False)
    parser.add_argument(
        "--fail",
        choices=("none", "transient", "fatal", "no-output"),
        default="none",
    )
    parser.add_argument("--cost", type=float, default=0.01)
    args, _ = parser.parse_known_args(argv)

    agent_name = os.environ.get("PENTEST_PIPELINE_AGENT_NAME", "recon")
    vulnerable = os.environ.get("PENTEST_PIPELINE_ECHO_VULNERABLE", "1") == "1"
    prompt = Path(args.prompt_file).read_text("utf-8") if args.prompt_file else ""

    _emit({"type": "system", "subtype": "init", "agent": agent_name})
    if args.fail == "transient":
        sys.stderr.write("connection reset by peer\n")
        return 1
    if args.fail == "fatal":
        sys.stderr.write("invalid api key\n")
        return 1

    _emit(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": f"Working on {agent_name} ({len(prompt)} chars)"},
                    {"type": "tool_use", "id": "tool-1", "name": "Write", "input": {}},
                ],
            },
        },
    )
    if args.fail != "no-output":
        _write_deliverables(agent_name, DeliverableStore(Path.cwd()), vulnerable=vulnerable)
    _emit(
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "tool-1"}]},
        },
    )
    _emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": f"{agent_name} done",
            "total_cost_usd": args.cost,
            "duration_ms": 5,
            "num_turns": 1,
        },
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
