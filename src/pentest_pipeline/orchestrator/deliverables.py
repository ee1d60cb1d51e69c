"""Named artifact files under a workspace's ``deliverables/`` area."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pentest_pipeline.orchestrator.catalog import VULN_TYPES
from pentest_pipeline.orchestrator.errors import StorageError
from pentest_pipeline.orchestrator.models import ToolScanResult, ToolStatus

logger = logging.getLogger(__name__)

DELIVERABLES_DIR = "deliverables"
CODE_ANALYSIS_DELIVERABLE = "code_analysis_deliverable.md"
PRE_RECON_DELIVERABLE = "pre_recon_deliverable.md"
RECON_DELIVERABLE = "recon_deliverable.md"
FINAL_REPORT_DELIVERABLE = "comprehensive_security_assessment_report.md"

_CODE_ANALYSIS_FALLBACK = "No code analysis deliverable was produced for this run."
_CODE_ANALYSIS_KEY = "code-analysis"

# Order of wave sections in the stitched pre-recon report.
_FOOTPRINT_SECTIONS: tuple[tuple[str, str], ...] = (
    ("nmap", "Port discovery (nmap)"),
    ("naabu", "Fast port discovery (naabu)"),
    ("subfinder", "Subdomain discovery (subfinder)"),
    ("whatweb", "Technology detection (whatweb)"),
)
_ADDITIONAL_SECTIONS: tuple[tuple[str, str], ...] = (
    ("schemathesis", "API schema testing (schemathesis)"),
    ("httpx", "HTTP probing (httpx)"),
    ("nuclei", "Template scanning (nuclei)"),
    ("sqlmap", "SQL injection probing (sqlmap)"),
)


def analysis_deliverable_name(vuln_type: str) -> str:
    return f"{vuln_type}_analysis_deliverable.md"


def exploitation_queue_name(vuln_type: str) -> str:
    return f"{vuln_type}_exploitation_queue.json"


def evidence_deliverable_name(vuln_type: str) -> str:
    return f"{vuln_type}_exploitation_evidence.md"


class DeliverableStore:
    """Read and write deliverable files for one workspace."""

    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace
        self.root = workspace / DELIVERABLES_DIR

    def path(self, name: str) -> Path:
        return self.root / name

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def read_text(self, name: str) -> str | None:
        path = self.path(name)
        if not path.is_file():
            return None
        return path.read_text("utf-8")

    def write_text(self, name: str, content: str) -> Path:
        """Atomically write a deliverable, raising ``StorageError`` on failure."""

        path = self.path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except OSError as error:
            raise StorageError(f"Could not write deliverable {path}: {error}") from error
        return path

    def read_json(self, name: str) -> Any | None:
        text = self.read_text(name)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Deliverable %s is not valid JSON", self.path(name))
            return None

    def exploitation_candidates(self, vuln_type: str) -> list[dict[str, Any]]:
        """Vulnerabilities queued for exploitation; empty when the queue is missing."""

        raw = self.read_json(exploitation_queue_name(vuln_type))
        if not isinstance(raw, dict):
            return []
        vulnerabilities = raw.get("vulnerabilities")
        if not isinstance(vulnerabilities, list):
            return []
        return [item for item in vulnerabilities if isinstance(item, dict)]

    def stitch_pre_recon_report(
        self,
        *,
        target_url: str,
        footprint: Mapping[str, ToolScanResult],
        additional: Mapping[str, ToolScanResult],
    ) -> Path:
        """Compose the pre-recon deliverable from named wave results."""

        scans = {name: result for name, result in footprint.items() if name != _CODE_ANALYSIS_KEY}
        code_analysis = self.read_text(CODE_ANALYSIS_DELIVERABLE)
        if code_analysis is None:
            analysis_scan = footprint.get(_CODE_ANALYSIS_KEY)
            if analysis_scan is not None and analysis_scan.status != ToolStatus.SUCCESS:
                code_analysis = f"{_CODE_ANALYSIS_FALLBACK}\n\n{analysis_scan.output}"
            else:
                code_analysis = _CODE_ANALYSIS_FALLBACK

        lines = [f"# Pre-Reconnaissance Report: {target_url}", ""]
        lines.extend(_render_sections("Network footprint", scans, _FOOTPRINT_SECTIONS))
        lines.extend(_render_sections("Additional scanning", additional, _ADDITIONAL_SECTIONS))
        lines.extend(["## Code analysis", "", code_analysis.strip(), ""])
        return self.write_text(PRE_RECON_DELIVERABLE, "\n".join(lines))

    def assemble_final_report(self) -> Path:
        """Concatenate specialist evidence into the report the report agent edits."""

        sections: list[str] = []
        for vuln_type in VULN_TYPES:
            content = self.read_text(evidence_deliverable_name(vuln_type))
            if content is None:
                logger.debug("No %s evidence deliverable found", vuln_type)
                continue
            sections.append(content.strip())
        if not sections:
            sections.append("No exploitation evidence was produced.")
        body = "\n\n".join(["# Security Assessment Report", *sections]) + "\n"
        return self.write_text(FINAL_REPORT_DELIVERABLE, body)


def _render_sections(
    heading: str,
    results: Mapping[str, ToolScanResult],
    order: tuple[tuple[str, str], ...],
) -> list[str]:
    lines = [f"## {heading}", ""]
    known = {name for name, _ in order}
    titled = [(name, title) for name, title in order if name in results]
    titled.extend((name, name) for name in sorted(results) if name not in known)
    if not titled:
        lines.extend(["No scans were run.", ""])
        return lines
    for name, title in titled:
        result = results[name]
        lines.append(f"### {title}")
        lines.append("")
        lines.append(f"Status: {result.status.value} ({result.duration_ms} ms)")
        lines.append("")
        output = result.output.strip() or "(no output)"
        lines.extend(["```", output, "```", ""])
    return lines
