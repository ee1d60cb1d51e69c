"""Crash-safe, append-only audit log of agent attempts.

Layout under ``<audit_root>/<session_id>/``::

    agents/<agent>/attempt-<n>[-<run>].jsonl   one AuditEvent per line, fsynced per append
    prompts/<agent>_attempt-<n>[-<run>].md     exact prompt snapshot of the attempt
    attempts.jsonl                             one summary line per finished attempt

Attempt numbers restart whenever an agent is resumed or re-run, so every
attempt claims a log name nobody has used yet; the ``-<run>`` suffix appears
from the second run on. A crash between appends leaves at most one torn
trailing line in that attempt's own log, which :meth:`AuditSink.replay`
ignores. Nothing is ever rewritten.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pentest_pipeline.orchestrator.errors import StorageError
from pentest_pipeline.orchestrator.models import AuditEvent, utc_now
from pentest_pipeline.orchestrator.sanitization import sanitize_error

logger = logging.getLogger(__name__)

ATTEMPT_STARTED = "attempt_started"
ATTEMPT_FINISHED = "attempt_finished"

_SANITIZED_KEYS = frozenset({"error", "message", "stderr"})


@dataclass(slots=True)
class AttemptHandle:
    """Open attempt log returned by :meth:`AuditSink.start_attempt`."""

    session_id: str
    agent_name: str
    attempt_number: int
    log_path: Path
    prompt_path: Path
    started_at: datetime = field(default_factory=utc_now)
    closed: bool = False


class AuditSink:
    """Append-only recorder correlated to (session, agent, attempt)."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def start_attempt(
        self,
        session_id: str,
        agent_name: str,
        attempt_number: int,
        prompt: str,
    ) -> AttemptHandle:
        """Snapshot the prompt and open the attempt log with a start record."""

        base = self.session_dir(session_id)
        log_path = _claim_log(base / "agents" / agent_name, attempt_number)
        handle = AttemptHandle(
            session_id=session_id,
            agent_name=agent_name,
            attempt_number=attempt_number,
            log_path=log_path,
            prompt_path=base / "prompts" / f"{agent_name}_{log_path.stem}.md",
        )
        _write_once(handle.prompt_path, prompt)
        self.append(
            handle,
            AuditEvent(
                kind=ATTEMPT_STARTED,
                payload={
                    "agent": agent_name,
                    "attempt": attempt_number,
                    "prompt_path": str(handle.prompt_path),
                },
                timestamp=handle.started_at,
            ),
        )
        return handle

    def append(self, handle: AttemptHandle, event: AuditEvent) -> None:
        """Durably append one event; returns only after fsync."""

        if handle.closed:
            raise StorageError(
                f"Attempt log already closed: {handle.agent_name} attempt {handle.attempt_number}",
            )
        record = event.to_record()
        record["payload"] = _sanitize_payload(record["payload"])
        _append_line(handle.log_path, record)

    def end_attempt(self, handle: AttemptHandle, outcome: Mapping[str, Any]) -> None:
        """Write the finishing record and the per-session attempt summary."""

        payload = _sanitize_payload(
            {
                "agent": handle.agent_name,
                "attempt": handle.attempt_number,
                "duration_ms": int((utc_now() - handle.started_at).total_seconds() * 1000),
                **outcome,
            },
        )
        self.append(handle, AuditEvent(kind=ATTEMPT_FINISHED, payload=payload))
        handle.closed = True
        _append_line(
            self.session_dir(handle.session_id) / "attempts.jsonl",
            {
                "timestamp": utc_now().isoformat(),
                "log_path": str(handle.log_path),
                **payload,
            },
        )

    def replay(self, path: Path) -> list[AuditEvent]:
        """Return every durable event in ``path``, ignoring a torn trailing line."""

        if not path.exists():
            return []
        events: list[AuditEvent] = []
        lines = path.read_text("utf-8").split("\n")
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                events.append(AuditEvent.from_record(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError):
                if index == len(lines) - 1:
                    logger.warning("Ignoring torn trailing audit line in %s", path)
                    break
                raise StorageError(f"Corrupt audit record at {path}:{index + 1}") from None
        return events

    def incomplete_attempts(self, session_id: str) -> list[Path]:
        """Attempt logs that never received a finishing record."""

        agents_dir = self.session_dir(session_id) / "agents"
        if not agents_dir.is_dir():
            return []
        incomplete: list[Path] = []
        for log_path in sorted(agents_dir.glob("*/attempt-*.jsonl"), key=_log_order):
            events = self.replay(log_path)
            if not any(event.kind == ATTEMPT_FINISHED for event in events):
                incomplete.append(log_path)
        return incomplete


def _log_order(path: Path) -> tuple[str, int, int]:
    attempt, _, run = path.stem.removeprefix("attempt-").partition("-")
    return (
        path.parent.name,
        int(attempt) if attempt.isdigit() else 0,
        int(run) if run.isdigit() else 1,
    )


def _sanitize_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in payload.items():
        if key in _SANITIZED_KEYS and isinstance(value, str):
            sanitized[key] = sanitize_error(value)
        else:
            sanitized[key] = value
    return sanitized


def _append_line(path: Path, record: Mapping[str, Any]) -> None:
    line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.flush()
            os.fsync(handle.fileno())
    except OSError as error:
        raise StorageError(f"Could not append audit record to {path}: {error}") from error


def _claim_log(agent_dir: Path, attempt_number: int) -> Path:
    """Create and return the first unused log path for ``attempt_number``."""

    try:
        agent_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise StorageError(f"Could not create audit directory {agent_dir}: {error}") from error
    run = 1
    while True:
        suffix = "" if run == 1 else f"-{run}"
        path = agent_dir / f"attempt-{attempt_number}{suffix}.jsonl"
        try:
            with path.open("x", encoding="utf-8"):
                return path
        except FileExistsError:
            run += 1
        except OSError as error:
            raise StorageError(f"Could not create attempt log {path}: {error}") from error


def _write_once(path: Path, content: str) -> None:
    """Durably publish ``content`` at ``path``; an existing file is never replaced."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.link(tmp_name, path)
        finally:
            os.unlink(tmp_name)
    except FileExistsError as error:
        raise StorageError(f"Prompt snapshot already exists: {path}") from error
    except OSError as error:
        raise StorageError(f"Could not write prompt snapshot {path}: {error}") from error
