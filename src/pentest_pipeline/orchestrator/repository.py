"""Session persistence backed by SQLModel + SQLite."""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session as DbSession
from sqlmodel import SQLModel, col, create_engine, select

from pentest_pipeline.orchestrator.errors import PersistenceError
from pentest_pipeline.orchestrator.models import Session, SessionStatus, utc_now
from pentest_pipeline.storage.sqlmodel_models import PipelineSessionRow

logger = logging.getLogger(__name__)


class SessionRepository:
    """Keyed store of session documents."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = _build_engine(db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the sessions table when missing."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(self.engine, tables=[PipelineSessionRow.__table__])

    def create_session(
        self,
        *,
        target_url: str,
        workspace: str,
        config_path: str | None = None,
    ) -> Session:
        """Create and persist a fresh pending session."""

        now = utc_now()
        session = Session(
            id=str(uuid4()),
            target_url=target_url,
            workspace=workspace,
            config_path=config_path,
            created_at=now,
            updated_at=now,
        )
        return self.save(session)

    def load(self, session_id: str) -> Session | None:
        with DbSession(self.engine) as db:
            row = db.get(PipelineSessionRow, session_id)
            if row is None:
                return None
            return _to_session(row)

    def save(self, session: Session) -> Session:
        """Upsert the session document; raises ``PersistenceError`` on any DB failure."""

        stamped = dataclasses.replace(session, updated_at=utc_now())
        document = stamped.to_document()
        try:
            with DbSession(self.engine) as db:
                row = db.get(PipelineSessionRow, stamped.id)
                if row is None:
                    row = PipelineSessionRow(
                        session_id=stamped.id,
                        target_url=stamped.target_url,
                        workspace=stamped.workspace,
                        status=stamped.status.value,
                        document_json="{}",
                        created_at=_to_db_datetime(stamped.created_at),
                        updated_at=_to_db_datetime(stamped.updated_at),
                    )
                row.status = stamped.status.value
                row.document_json = json.dumps(document, ensure_ascii=False, sort_keys=True)
                row.updated_at = _to_db_datetime(stamped.updated_at)
                db.add(row)
                db.commit()
        except SQLAlchemyError as error:
            logger.error("Could not save session %s: %s", stamped.id, error)
            raise PersistenceError(
                f"Could not save session {stamped.id}: {error}",
                session=stamped,
            ) from error
        return stamped

    def find_resumable(self, *, target_url: str, workspace: str) -> Session | None:
        """Latest unfinished session for the same target and workspace."""

        with DbSession(self.engine) as db:
            row = db.exec(
                select(PipelineSessionRow)
                .where(
                    PipelineSessionRow.target_url == target_url,
                    PipelineSessionRow.workspace == workspace,
                    PipelineSessionRow.status != SessionStatus.COMPLETED.value,
                )
                .order_by(col(PipelineSessionRow.updated_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_session(row) if row is not None else None

    def list_sessions(self, *, limit: int = 20) -> list[Session]:
        with DbSession(self.engine) as db:
            rows = db.exec(
                select(PipelineSessionRow)
                .order_by(col(PipelineSessionRow.updated_at).desc())
                .limit(limit),
            ).all()
            return [_to_session(row) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        """Remove one session row; returns ``False`` when it did not exist."""

        try:
            with DbSession(self.engine) as db:
                row = db.get(PipelineSessionRow, session_id)
                if row is None:
                    return False
                db.delete(row)
                db.commit()
        except SQLAlchemyError as error:
            raise PersistenceError(f"Could not delete session {session_id}: {error}") from error
        logger.info("Deleted session %s", session_id)
        return True

    def delete_all(self) -> int:
        with DbSession(self.engine) as db:
            session_ids = list(db.exec(select(PipelineSessionRow.session_id)).all())
        return sum(1 for session_id in session_ids if self.delete_session(session_id))


def _build_engine(db_path: Path, *, busy_timeout_ms: int) -> Engine:
    """SQLite engine whose commits survive power loss before they are acknowledged."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"timeout": max(1.0, busy_timeout_ms / 1000.0)},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:  # noqa: ANN001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = FULL")
        cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        cursor.close()

    return engine


def _to_session(row: PipelineSessionRow) -> Session:
    return Session.from_document(json.loads(row.document_json))


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
