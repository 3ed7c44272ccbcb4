"""Artifact persistence: generated scripts, styles, components and workers.

Each artifact keeps its current code plus the history of previous code
versions. Methods follow the session injection pattern: pass a session to
join an outer transaction, or omit it to run in a fresh one.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from conjure.agent.state import Artifact, ArtifactType, CodeVersion
from conjure.storage.database import Database
from conjure.storage.models import ArtifactRecord

logger = logging.getLogger(__name__)

_UPDATABLE = ("name", "code", "element_xpath", "enabled")


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class ArtifactStore:
    """CRUD over the artifacts table. Also the engine's ArtifactSource."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def list_artifacts(self, thread_id: str, session: AsyncSession | None = None) -> list[Artifact]:
        """All artifacts for a thread, oldest first."""
        if session is None:
            async with self.db.session() as session:
                return await self._list(thread_id, session)
        return await self._list(thread_id, session)

    async def _list(self, thread_id: str, session: AsyncSession) -> list[Artifact]:
        result = await session.execute(
            select(ArtifactRecord)
            .where(ArtifactRecord.thread_id == thread_id)
            .order_by(ArtifactRecord.created_at, ArtifactRecord.id)
        )
        return [self._to_artifact(row) for row in result.scalars()]

    async def get_artifact(self, artifact_id: str, session: AsyncSession | None = None) -> Artifact | None:
        if session is None:
            async with self.db.session() as session:
                row = await session.get(ArtifactRecord, artifact_id)
                return self._to_artifact(row) if row else None
        row = await session.get(ArtifactRecord, artifact_id)
        return self._to_artifact(row) if row else None

    async def create_artifact(
        self,
        thread_id: str,
        type: ArtifactType,
        name: str,
        code: str,
        element_xpath: str | None = None,
        artifact_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> Artifact:
        """Create an artifact; its first code version is the initial code."""
        if session is None:
            async with self.db.session() as session:
                result = await self._create(thread_id, type, name, code, element_xpath, artifact_id, session)
                await session.commit()
                return result
        return await self._create(thread_id, type, name, code, element_xpath, artifact_id, session)

    async def _create(
        self,
        thread_id: str,
        type: ArtifactType,
        name: str,
        code: str,
        element_xpath: str | None,
        artifact_id: str | None,
        session: AsyncSession,
    ) -> Artifact:
        now = datetime.now(UTC)
        row = ArtifactRecord(
            id=artifact_id or uuid.uuid4().hex,
            thread_id=thread_id,
            type=type,
            name=name,
            code=code,
            code_versions=[CodeVersion(code=code, timestamp=now).model_dump(mode="json")],
            element_xpath=element_xpath,
            enabled=True,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        await session.flush()
        logger.info("Created %s artifact %s (%s) for thread %s", type, row.id, name, thread_id)
        return self._to_artifact(row)

    async def update_artifact(
        self,
        artifact_id: str,
        session: AsyncSession | None = None,
        **changes: Any,
    ) -> Artifact:
        """Apply changes to name/code/element_xpath/enabled.

        A code change appends a new code version. Raises ValueError if the
        artifact does not exist or a field is not updatable.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._update(artifact_id, changes, session)
                await session.commit()
                return result
        return await self._update(artifact_id, changes, session)

    async def _update(self, artifact_id: str, changes: dict[str, Any], session: AsyncSession) -> Artifact:
        unknown = set(changes) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update artifact fields: {sorted(unknown)}")

        row = await session.get(ArtifactRecord, artifact_id)
        if row is None:
            raise ValueError(f"Artifact {artifact_id} not found")

        now = datetime.now(UTC)
        code = changes.get("code")
        if code is not None and code != row.code:
            # Reassign so the JSON column is flagged dirty
            row.code_versions = [
                *row.code_versions,
                CodeVersion(code=code, timestamp=now).model_dump(mode="json"),
            ]
        for key, value in changes.items():
            if value is not None:
                setattr(row, key, value)
        row.updated_at = now
        await session.flush()
        return self._to_artifact(row)

    async def delete_artifact(self, artifact_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(delete(ArtifactRecord).where(ArtifactRecord.id == artifact_id))
            await session.commit()
            return result.rowcount > 0

    async def delete_thread(self, thread_id: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(delete(ArtifactRecord).where(ArtifactRecord.thread_id == thread_id))
            await session.commit()
            return result.rowcount

    @staticmethod
    def _to_artifact(row: ArtifactRecord) -> Artifact:
        return Artifact(
            id=row.id,
            thread_id=row.thread_id,
            type=row.type,
            name=row.name,
            code=row.code,
            code_versions=[CodeVersion.model_validate(v) for v in row.code_versions or []],
            element_xpath=row.element_xpath,
            enabled=row.enabled,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )
