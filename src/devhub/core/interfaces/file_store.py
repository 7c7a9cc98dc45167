"""Persistent file store interface.

Authoritative copy of each project's source tree. Instances are
ephemeral; whatever they hold is rebuilt from here.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel


class ProjectFile(BaseModel):
    """A file in the persistent store."""

    path: str
    content: str
    size: int = 0
    updated_at: datetime | None = None

    model_config = {"frozen": True}


class FileStore(ABC):
    """Interface to the persistent file store."""

    # Writes accepted by one put_many transaction
    BATCH_LIMIT: int = 500

    @abstractmethod
    async def get_file(self, project_id: str, path: str) -> ProjectFile | None: ...

    @abstractmethod
    async def put_file(self, project_id: str, path: str, content: str) -> ProjectFile: ...

    @abstractmethod
    async def delete_file(self, project_id: str, path: str) -> bool:
        """Delete a file. Returns False if it did not exist."""
        ...

    @abstractmethod
    async def list_files(self, project_id: str) -> list[ProjectFile]:
        """List every file of a project, content included."""
        ...

    @abstractmethod
    async def list_paths(self, project_id: str) -> set[str]: ...

    @abstractmethod
    async def put_many(self, project_id: str, files: list[tuple[str, str]]) -> int:
        """Upsert (path, content) pairs in one atomic transaction.

        Raises:
            BatchLimitExceededError: More than BATCH_LIMIT files.
        """
        ...

    @abstractmethod
    async def get_metadata(self, project_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def set_metadata(self, project_id: str, values: dict[str, Any]) -> None:
        """Merge values into the project's metadata."""
        ...
