"""Database models for devhub.

Models are defined using SQLModel (SQLAlchemy + Pydantic).
"""

from devhub.core.models.project import ProjectFileRecord, ProjectRecord, utc_now

__all__ = [
    "ProjectFileRecord",
    "ProjectRecord",
    "utc_now",
]
