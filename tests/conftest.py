"""Shared test fixtures."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

import pytest

from pentest_pipeline.orchestrator.models import Session

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m pentest_pipeline.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


class MemorySessionStore:
    """In-memory stand-in for the SQLite session repository."""

    def __init__(self) -> None:
        self.saved: dict[str, Session] = {}
        self.save_calls = 0

    def load(self, session_id: str) -> Session | None:
        return self.saved.get(session_id)

    def save(self, session: Session) -> Session:
        self.save_calls += 1
        self.saved[session.id] = session
        return session


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    """Target workspace with one tracked source file."""

    path = tmp_path / "workspace"
    path.mkdir()
    (path / "app.py").write_text("print('hello')\n", "utf-8")
    return path


@pytest.fixture()
def memory_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture()
def echo_agent(monkeypatch: pytest.MonkeyPatch) -> str:
    """Point the configured agent command at the local echo agent."""

    monkeypatch.setenv("PENTEST_PIPELINE_AGENT_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("PENTEST_PIPELINE_RETRY_BASE_SECONDS", "0")
    return ECHO_AGENT_COMMAND_TEMPLATE
