"""Persistent file store models.

Models are defined using SQLModel (SQLAlchemy + Pydantic).
"""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class ProjectFileRecord(SQLModel, table=True):
    """One source file of a project, keyed by (project_id, path)."""

    __tablename__ = "project_files"

    project_id: str = Field(primary_key=True, max_length=255)
    path: str = Field(primary_key=True, max_length=1024)
    content: str = Field(sa_column=Column(Text, nullable=False))
    size: int = Field(default=0)
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class ProjectRecord(SQLModel, table=True):
    """Project-level metadata (e.g. repositoryUrl of an imported repo)."""

    __tablename__ = "projects"

    id: str = Field(primary_key=True, max_length=255)
    attributes: dict = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default="{}"),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
