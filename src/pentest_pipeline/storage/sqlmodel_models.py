"""SQLModel ORM tables for pipeline session storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class PipelineSessionRow(SQLModel, table=True):
    __tablename__ = "pipeline_sessions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("ix_pipeline_sessions_target_workspace", "target_url", "workspace"),
    )

    session_id: str = Field(primary_key=True)
    target_url: str = Field(index=True)
    workspace: str
    status: str = Field(index=True)
    document_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
