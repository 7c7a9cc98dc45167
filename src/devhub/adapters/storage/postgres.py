"""PostgreSQL implementation of FileStore.

Tables: project_files (project_id, path) -> content, projects (id) -> attributes.
put_many upserts a whole batch in one transaction; a failure rolls the
entire batch back.
"""

import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from devhub.core.errors import BatchLimitExceededError
from devhub.core.interfaces import FileStore, ProjectFile
from devhub.core.models import ProjectFileRecord, ProjectRecord, utc_now

logger = logging.getLogger(__name__)


def _to_file(record: ProjectFileRecord) -> ProjectFile:
    return ProjectFile(
        path=record.path,
        content=record.content,
        size=record.size,
        updated_at=record.updated_at,
    )


class PostgresFileStore(FileStore):
    """FileStore backed by SQLModel tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _upsert(self, project_id: str, files: list[tuple[str, str]]):
        now = utc_now()
        stmt = insert(ProjectFileRecord).values(
            [
                {
                    "project_id": project_id,
                    "path": path,
                    "content": content,
                    "size": len(content.encode("utf-8")),
                    "updated_at": now,
                }
                for path, content in files
            ]
        )
        return stmt.on_conflict_do_update(
            index_elements=["project_id", "path"],
            set_={
                "content": stmt.excluded.content,
                "size": stmt.excluded.size,
                "updated_at": stmt.excluded.updated_at,
            },
        )

    async def get_file(self, project_id: str, path: str) -> ProjectFile | None:
        async with self._session_factory() as session:
            record = await session.get(ProjectFileRecord, (project_id, path))
            return _to_file(record) if record else None

    async def put_file(self, project_id: str, path: str, content: str) -> ProjectFile:
        async with self._session_factory() as session, session.begin():
            await session.execute(self._upsert(project_id, [(path, content)]))
        return ProjectFile(
            path=path,
            content=content,
            size=len(content.encode("utf-8")),
            updated_at=utc_now(),
        )

    async def delete_file(self, project_id: str, path: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(ProjectFileRecord).where(
                    ProjectFileRecord.project_id == project_id,
                    ProjectFileRecord.path == path,
                )
            )
        return result.rowcount > 0

    async def list_files(self, project_id: str) -> list[ProjectFile]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProjectFileRecord)
                .where(ProjectFileRecord.project_id == project_id)
                .order_by(ProjectFileRecord.path)
            )
            return [_to_file(record) for record in result.scalars()]

    async def list_paths(self, project_id: str) -> set[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProjectFileRecord.path).where(
                    ProjectFileRecord.project_id == project_id
                )
            )
            return set(result.scalars())

    async def put_many(self, project_id: str, files: list[tuple[str, str]]) -> int:
        if len(files) > self.BATCH_LIMIT:
            raise BatchLimitExceededError(len(files), self.BATCH_LIMIT)
        if not files:
            return 0

        async with self._session_factory() as session, session.begin():
            await session.execute(self._upsert(project_id, files))
        logger.debug("Upserted %d files for %s", len(files), project_id)
        return len(files)

    async def get_metadata(self, project_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            record = await session.get(ProjectRecord, project_id)
            return dict(record.attributes) if record else {}

    async def set_metadata(self, project_id: str, values: dict[str, Any]) -> None:
        stmt = insert(ProjectRecord).values(
            id=project_id, attributes=values, updated_at=utc_now()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                # JSONB merge keeps keys written by other callers
                "attributes": ProjectRecord.__table__.c.attributes.op("||")(
                    stmt.excluded.attributes
                ),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(stmt)
