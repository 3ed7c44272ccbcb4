"""Durable, versioned per-thread checkpoints with pending writes.

A checkpoint is an immutable JSON snapshot of conversation state, keyed by
(thread_id, namespace, checkpoint_id). Ids are 20-digit zero-padded
microsecond stamps, strictly increasing per (thread, namespace), so string
order is write order.

Pending writes are partial results recorded against a checkpoint before its
successor exists (one per completed tool call), so a resumed run does not
have to redo work the interrupted run already finished.

Every operation for a thread runs under that thread's asyncio.Lock, which
is discarded once no operation holds or awaits it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from conjure.storage.database import Database
from conjure.storage.models import AgentCheckpoint, AgentCheckpointWrite

logger = logging.getLogger(__name__)

ID_WIDTH = 20


@dataclass
class PendingWrite:
    task_id: str
    index: int
    channel: str
    value: Any


@dataclass
class CheckpointTuple:
    thread_id: str
    namespace: str
    checkpoint_id: str
    checkpoint: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)
    parent_checkpoint_id: str | None = None
    pending_writes: list[PendingWrite] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "namespace": self.namespace,
            "checkpoint_id": self.checkpoint_id,
            "parent_checkpoint_id": self.parent_checkpoint_id,
            "metadata": self.metadata,
            "checkpoint": self.checkpoint,
            "pending_writes": [
                {"task_id": w.task_id, "index": w.index, "channel": w.channel, "value": w.value}
                for w in self.pending_writes
            ],
        }


def format_checkpoint_id(value: int) -> str:
    return f"{value:0{ID_WIDTH}d}"


class CheckpointStore:
    """Checkpoint persistence over the async SQLAlchemy session factory."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per thread; the lock is dropped when this hits zero
        self._lock_users: defaultdict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def _lock(self, thread_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        self._lock_users[thread_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[thread_id] -= 1
            if not self._lock_users[thread_id]:
                del self._lock_users[thread_id]
                del self._locks[thread_id]

    # ------------------------------------------------------------------
    # put()
    # ------------------------------------------------------------------

    async def put(
        self,
        thread_id: str,
        namespace: str,
        checkpoint: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        parent_checkpoint_id: str | None = None,
    ) -> str:
        """Write a new immutable checkpoint and return its id."""
        async with self._lock(thread_id):
            async with self.db.session() as session:
                checkpoint_id = await self._next_id(thread_id, namespace, session)
                session.add(
                    AgentCheckpoint(
                        thread_id=thread_id,
                        checkpoint_ns=namespace,
                        checkpoint_id=checkpoint_id,
                        parent_checkpoint_id=parent_checkpoint_id,
                        state=checkpoint,
                        metadata_=metadata or {},
                    )
                )
                await session.commit()

        logger.debug(
            "Checkpoint %s written for thread %s (parent %s)",
            checkpoint_id,
            thread_id,
            parent_checkpoint_id,
        )
        return checkpoint_id

    async def _next_id(self, thread_id: str, namespace: str, session: AsyncSession) -> str:
        result = await session.execute(
            select(func.max(AgentCheckpoint.checkpoint_id))
            .where(AgentCheckpoint.thread_id == thread_id)
            .where(AgentCheckpoint.checkpoint_ns == namespace)
        )
        last = result.scalar()
        now_us = time.time_ns() // 1000
        if last is not None:
            now_us = max(now_us, int(last) + 1)
        return format_checkpoint_id(now_us)

    # ------------------------------------------------------------------
    # get()
    # ------------------------------------------------------------------

    async def get(
        self,
        thread_id: str,
        namespace: str = "",
        checkpoint_id: str | None = None,
    ) -> CheckpointTuple | None:
        """Fetch one checkpoint (latest when checkpoint_id is omitted)."""
        async with self._lock(thread_id):
            async with self.db.session() as session:
                query = (
                    select(AgentCheckpoint)
                    .where(AgentCheckpoint.thread_id == thread_id)
                    .where(AgentCheckpoint.checkpoint_ns == namespace)
                )
                if checkpoint_id is not None:
                    query = query.where(AgentCheckpoint.checkpoint_id == checkpoint_id)
                else:
                    query = query.order_by(AgentCheckpoint.checkpoint_id.desc()).limit(1)
                row = (await session.execute(query)).scalar_one_or_none()
                if row is None:
                    return None
                writes = await self._pending_writes(row, session)
                return self._to_tuple(row, writes)

    async def _pending_writes(self, row: AgentCheckpoint, session: AsyncSession) -> list[PendingWrite]:
        result = await session.execute(
            select(AgentCheckpointWrite)
            .where(AgentCheckpointWrite.thread_id == row.thread_id)
            .where(AgentCheckpointWrite.checkpoint_ns == row.checkpoint_ns)
            .where(AgentCheckpointWrite.checkpoint_id == row.checkpoint_id)
            .order_by(AgentCheckpointWrite.task_id, AgentCheckpointWrite.idx)
        )
        return [
            PendingWrite(task_id=w.task_id, index=w.idx, channel=w.channel, value=w.value)
            for w in result.scalars()
        ]

    # ------------------------------------------------------------------
    # list()
    # ------------------------------------------------------------------

    async def list(
        self,
        thread_id: str,
        namespace: str | None = None,
        before: str | None = None,
        limit: int | None = None,
    ) -> list[CheckpointTuple]:
        """Checkpoints newest first. Pending writes are not loaded here."""
        async with self._lock(thread_id):
            async with self.db.session() as session:
                query = select(AgentCheckpoint).where(AgentCheckpoint.thread_id == thread_id)
                if namespace is not None:
                    query = query.where(AgentCheckpoint.checkpoint_ns == namespace)
                if before is not None:
                    query = query.where(AgentCheckpoint.checkpoint_id < before)
                query = query.order_by(AgentCheckpoint.checkpoint_id.desc())
                if limit is not None:
                    query = query.limit(limit)
                rows = (await session.execute(query)).scalars().all()
                return [self._to_tuple(row) for row in rows]

    # ------------------------------------------------------------------
    # put_writes()
    # ------------------------------------------------------------------

    async def put_writes(
        self,
        thread_id: str,
        namespace: str,
        checkpoint_id: str,
        writes: Sequence[tuple[str, Any]],
        task_id: str,
    ) -> None:
        """Record pending writes; re-writing a (task_id, index) replaces it."""
        async with self._lock(thread_id):
            async with self.db.session() as session:
                for index, (channel, value) in enumerate(writes):
                    await session.merge(
                        AgentCheckpointWrite(
                            thread_id=thread_id,
                            checkpoint_ns=namespace,
                            checkpoint_id=checkpoint_id,
                            task_id=task_id,
                            idx=index,
                            channel=channel,
                            value=value,
                        )
                    )
                await session.commit()

    # ------------------------------------------------------------------
    # delete_thread()
    # ------------------------------------------------------------------

    async def delete_thread(self, thread_id: str) -> None:
        """Remove every checkpoint and pending write for the thread."""
        async with self._lock(thread_id):
            async with self.db.session() as session:
                await session.execute(
                    delete(AgentCheckpointWrite).where(AgentCheckpointWrite.thread_id == thread_id)
                )
                await session.execute(
                    delete(AgentCheckpoint).where(AgentCheckpoint.thread_id == thread_id)
                )
                await session.commit()
        logger.info("Deleted checkpoints for thread %s", thread_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_tuple(row: AgentCheckpoint, writes: list[PendingWrite] | None = None) -> CheckpointTuple:
        return CheckpointTuple(
            thread_id=row.thread_id,
            namespace=row.checkpoint_ns,
            checkpoint_id=row.checkpoint_id,
            checkpoint=row.state,
            metadata=row.metadata_ or {},
            parent_checkpoint_id=row.parent_checkpoint_id,
            pending_writes=writes or [],
        )
