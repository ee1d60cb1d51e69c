from __future__ import annotations

import dataclasses
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import requires_git

from pentest_pipeline.main import pentest_pipeline
from pentest_pipeline.orchestrator.audit import AuditSink
from pentest_pipeline.orchestrator.deliverables import DeliverableStore, analysis_deliverable_name
from pentest_pipeline.orchestrator.models import SessionStatus
from pentest_pipeline.orchestrator.repository import SessionRepository

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, echo_agent: str) -> Path:
    monkeypatch.setenv("PENTEST_PIPELINE_AUDIT_ROOT", str(tmp_path / "audit"))
    monkeypatch.setenv("PENTEST_PIPELINE_WORKSPACE_ROOT", str(tmp_path / "workspaces"))
    monkeypatch.setenv("PENTEST_PIPELINE_PROMPTS_DIR", str(tmp_path / "prompts"))
    monkeypatch.setenv("PENTEST_PIPELINE_TOOLS", "tool-that-is-not-installed")
    return tmp_path / "pipeline.db"


def test_list_agents_groups_by_phase() -> None:
    result = CliRunner().invoke(pentest_pipeline, ["list-agents"])

    assert result.exit_code == 0, result.output
    assert "Phase 1: pre-recon" in result.output
    assert "Phase 5: reporting" in result.output
    assert "authz-exploit" in result.output


def test_status_without_sessions(cli_env: Path) -> None:
    result = CliRunner().invoke(pentest_pipeline, ["status", "--db-path", str(cli_env)])

    assert result.exit_code == 0, result.output
    assert "No sessions found." in result.output


def test_status_unknown_session_fails(cli_env: Path) -> None:
    result = CliRunner().invoke(pentest_pipeline, ["status", "nope", "--db-path", str(cli_env)])

    assert result.exit_code == 1
    assert "Session not found: nope" in result.output


def test_check_tools_reports_missing(cli_env: Path) -> None:
    result = CliRunner().invoke(pentest_pipeline, ["check-tools"])

    assert result.exit_code == 0, result.output
    assert "tool-that-is-not-installed: not found" in result.output


@requires_git
def test_run_status_and_rollback_end_to_end(cli_env: Path, workspace: Path) -> None:
    runner = CliRunner()

    run = runner.invoke(
        pentest_pipeline,
        [
            "run",
            "https://app.example.com",
            str(workspace),
            "--db-path",
            str(cli_env),
            "--pipeline-testing",
        ],
    )

    assert run.exit_code == 0, run.output
    match = re.search(r"Session created: (\S+)", run.output)
    assert match is not None
    session_id = match.group(1)
    assert f"Session {session_id}: completed" in run.output

    status = runner.invoke(pentest_pipeline, ["status", session_id, "--db-path", str(cli_env)])
    assert status.exit_code == 0, status.output
    assert "recon: completed" in status.output
    assert "Interrupted attempts" not in status.output

    rollback = runner.invoke(
        pentest_pipeline,
        ["rollback-to", session_id, "recon", "--db-path", str(cli_env)],
    )
    assert rollback.exit_code == 0, rollback.output
    assert f"Session {session_id} rolled back to recon" in rollback.output
    assert not (workspace / "deliverables" / "comprehensive_security_assessment_report.md").exists()

    repository = SessionRepository(cli_env)
    session = repository.load(session_id)
    repository.close()
    assert session is not None
    assert session.completed_agents == {"pre-recon", "recon"}


@requires_git
def test_run_agent_rejects_unknown_agent(cli_env: Path, workspace: Path) -> None:
    repository = SessionRepository(cli_env)
    repository.init_schema()
    session = repository.create_session(
        target_url="https://app.example.com",
        workspace=str(workspace),
    )
    repository.close()

    result = CliRunner().invoke(
        pentest_pipeline,
        ["run-agent", session.id, "sql-vuln", "--db-path", str(cli_env)],
    )

    assert result.exit_code == 1
    assert "Unknown agent" in result.output


def test_run_agent_requires_prerequisites(cli_env: Path, workspace: Path) -> None:
    repository = SessionRepository(cli_env)
    repository.init_schema()
    session = repository.create_session(
        target_url="https://app.example.com",
        workspace=str(workspace),
    )
    repository.close()

    result = CliRunner().invoke(
        pentest_pipeline,
        ["run-agent", session.id, "report", "--db-path", str(cli_env)],
    )

    assert result.exit_code == 1
    assert "prerequisites not completed" in result.output


def _create_session(db_path: Path, workspace: Path, *completed: str) -> str:
    repository = SessionRepository(db_path)
    repository.init_schema()
    session = repository.create_session(
        target_url="https://app.example.com",
        workspace=str(workspace),
    )
    if completed:
        repository.save(dataclasses.replace(session, completed_agents=frozenset(completed)))
    repository.close()
    return session.id


def _load(db_path: Path, session_id: str):
    repository = SessionRepository(db_path)
    session = repository.load(session_id)
    repository.close()
    return session


@requires_git
def test_run_agent_accepts_mode_flags(cli_env: Path, workspace: Path) -> None:
    session_id = _create_session(cli_env, workspace, "pre-recon")

    result = CliRunner().invoke(
        pentest_pipeline,
        [
            "run-agent",
            session_id,
            "recon",
            "--db-path",
            str(cli_env),
            "--pipeline-testing",
            "--blackbox",
            "--skip-text-only-phases",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Completed: recon" in result.output


@requires_git
def test_rerun_and_run_phase_end_to_end(cli_env: Path, workspace: Path) -> None:
    runner = CliRunner()
    run = runner.invoke(
        pentest_pipeline,
        [
            "run",
            "https://app.example.com",
            str(workspace),
            "--db-path",
            str(cli_env),
            "--pipeline-testing",
        ],
    )
    assert run.exit_code == 0, run.output
    match = re.search(r"Session created: (\S+)", run.output)
    assert match is not None
    session_id = match.group(1)

    rerun = runner.invoke(
        pentest_pipeline,
        ["rerun", session_id, "xss-vuln", "--db-path", str(cli_env), "--pipeline-testing"],
    )

    assert rerun.exit_code == 0, rerun.output
    assert f"Session {session_id} rewound to before xss-vuln" in rerun.output
    assert "Completed: xss-vuln" in rerun.output
    store = DeliverableStore(workspace)
    assert store.exists(analysis_deliverable_name("xss"))
    assert not store.exists(analysis_deliverable_name("injection"))
    session = _load(cli_env, session_id)
    assert session.completed_agents == {"pre-recon", "recon", "xss-vuln"}
    assert session.status == SessionStatus.IN_PROGRESS

    phase = runner.invoke(
        pentest_pipeline,
        [
            "run-phase",
            session_id,
            "vulnerability-analysis",
            "--db-path",
            str(cli_env),
            "--pipeline-testing",
        ],
    )

    assert phase.exit_code == 0, phase.output
    assert "Phase 3: vulnerability-analysis" in phase.output
    for vuln_type in ("injection", "xss", "auth", "ssrf", "authz"):
        assert store.exists(analysis_deliverable_name(vuln_type))
    session = _load(cli_env, session_id)
    assert {"injection-vuln", "auth-vuln", "ssrf-vuln", "authz-vuln"} <= session.completed_agents
    assert not any(name.endswith("-exploit") for name in session.completed_agents)


def test_run_phase_requires_prerequisites(cli_env: Path, workspace: Path) -> None:
    session_id = _create_session(cli_env, workspace, "pre-recon")
    runner = CliRunner()

    result = runner.invoke(
        pentest_pipeline,
        ["run-phase", session_id, "3", "--db-path", str(cli_env)],
    )
    unknown_phase = runner.invoke(
        pentest_pipeline,
        ["run-phase", session_id, "fuzzing", "--db-path", str(cli_env)],
    )

    assert result.exit_code == 1
    assert "prerequisites not completed: recon" in result.output
    assert unknown_phase.exit_code == 2


def test_rerun_rejects_unknown_session_and_agent(cli_env: Path, workspace: Path) -> None:
    session_id = _create_session(cli_env, workspace)
    runner = CliRunner()

    missing = runner.invoke(
        pentest_pipeline,
        ["rerun", "nope", "recon", "--db-path", str(cli_env)],
    )
    unknown = runner.invoke(
        pentest_pipeline,
        ["rerun", session_id, "sql-vuln", "--db-path", str(cli_env)],
    )

    assert missing.exit_code == 1
    assert "Session not found: nope" in missing.output
    assert unknown.exit_code == 1
    assert "Unknown agent" in unknown.output


def test_cleanup_deletes_one_or_all_sessions(cli_env: Path, workspace: Path) -> None:
    first = _create_session(cli_env, workspace)
    _create_session(cli_env, workspace)
    runner = CliRunner()

    no_target = runner.invoke(pentest_pipeline, ["cleanup", "--db-path", str(cli_env)])
    one = runner.invoke(pentest_pipeline, ["cleanup", first, "--db-path", str(cli_env)])
    again = runner.invoke(pentest_pipeline, ["cleanup", first, "--db-path", str(cli_env)])
    everything = runner.invoke(pentest_pipeline, ["cleanup", "--all", "--db-path", str(cli_env)])

    assert no_target.exit_code == 1
    assert "Pass either a SESSION_ID or --all." in no_target.output
    assert one.exit_code == 0, one.output
    assert f"Deleted session {first}." in one.output
    assert again.exit_code == 1
    assert f"Session not found: {first}" in again.output
    assert everything.exit_code == 0, everything.output
    assert "Deleted 1 session(s)." in everything.output
    assert "No sessions found." in runner.invoke(
        pentest_pipeline,
        ["status", "--db-path", str(cli_env)],
    ).output


def test_status_reports_unreadable_audit_log(cli_env: Path, workspace: Path) -> None:
    session_id = _create_session(cli_env, workspace)
    log_dir = AuditSink(cli_env.parent / "audit").session_dir(session_id) / "agents" / "recon"
    log_dir.mkdir(parents=True)
    (log_dir / "attempt-1.jsonl").write_text('{"kind": "attempt_st\n{"kind": "x"}\n', "utf-8")

    result = CliRunner().invoke(pentest_pipeline, ["status", session_id, "--db-path", str(cli_env)])

    assert result.exit_code == 0, result.output
    assert "recon: pending" in result.output
    assert "Audit log unreadable" in result.output


def test_invalid_numeric_env_is_reported_without_traceback(
    cli_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PENTEST_PIPELINE_MAX_ATTEMPTS", "abc")

    result = CliRunner().invoke(pentest_pipeline, ["status", "--db-path", str(cli_env)])

    assert result.exit_code == 1
    assert "PENTEST_PIPELINE_MAX_ATTEMPTS" in result.output
    assert "Traceback" not in result.output
