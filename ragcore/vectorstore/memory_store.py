"""
In-memory Vector Store — exact linear scan.

Same semantics as the pgvector backend, minus durability. Visibility filters
(completed / active / scope) are read from the in-memory registry at query
time, so toggling a file's active flag takes effect immediately.

insert() stages rows into a scratch list and publishes them in one step, so
a failure part-way through leaves nothing readable.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Optional, Sequence
from uuid import UUID

from ragcore.core.exceptions import PersistenceError
from ragcore.processing.chunking import cosine_similarity
from ragcore.registry.memory import MemorySourceFileRegistry
from ragcore.schemas.documents import FileStatus
from ragcore.vectorstore.base import (
    PassageRecord,
    SearchHit,
    StoredPassage,
    VectorStoreBase,
)

logger = logging.getLogger(__name__)


class MemoryVectorStore(VectorStoreBase):

    def __init__(self, registry: MemorySourceFileRegistry, dimensions: int) -> None:
        super().__init__(dimensions)
        self._registry = registry
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        # id → (passage, embedding)
        self._rows: dict[int, tuple[StoredPassage, list[float]]] = {}

    async def insert(self, records: Sequence[PassageRecord]) -> list[int]:
        if not records:
            return []
        self._validate_records(records)

        async with self._lock:
            staged: list[tuple[StoredPassage, list[float]]] = []
            try:
                for record in records:
                    staged.append(self._write_row(record))
            except Exception as exc:
                logger.error(
                    "Passage insert rolled back | source_file=%s staged=%d error=%s",
                    records[0].source_file_id, len(staged), exc,
                )
                raise PersistenceError(f"Passage insert failed: {exc}") from exc

            for passage, embedding in staged:
                self._rows[passage.id] = (passage, embedding)

        return [passage.id for passage, _ in staged]

    def _write_row(self, record: PassageRecord) -> tuple[StoredPassage, list[float]]:
        passage = StoredPassage(
            id=next(self._ids),
            source_file_id=record.source_file_id,
            content=record.content,
        )
        return passage, [float(x) for x in record.embedding]

    async def search(
        self,
        query_embedding: Sequence[float],
        limit:           int,
        threshold:       float,
        scope_id:        Optional[UUID] = None,
        require_active:  bool = True,
    ) -> list[SearchHit]:
        self._validate_vector(query_embedding)
        self._validate_limit(limit)

        hits: list[SearchHit] = []
        for passage, embedding in list(self._rows.values()):
            source = self._registry.snapshot(passage.source_file_id)
            if source is None or source.status is not FileStatus.COMPLETED:
                continue
            if require_active and not source.active:
                continue
            if scope_id is not None and source.scope_id != scope_id:
                continue

            similarity = cosine_similarity(query_embedding, embedding)
            if similarity > threshold:
                hits.append(SearchHit(passage=passage, similarity=similarity))

        hits.sort(key=lambda h: (-h.similarity, h.passage.id))
        return hits[:limit]

    async def delete_by_source_file(self, source_file_id: int) -> int:
        async with self._lock:
            doomed = [pid for pid, (p, _) in self._rows.items() if p.source_file_id == source_file_id]
            for pid in doomed:
                del self._rows[pid]
        return len(doomed)

    async def count_by_source_file(self, source_file_id: int) -> int:
        return sum(1 for p, _ in self._rows.values() if p.source_file_id == source_file_id)

    async def count(self, scope_id: Optional[UUID] = None) -> int:
        if scope_id is None:
            return len(self._rows)
        total = 0
        for passage, _ in self._rows.values():
            source = self._registry.snapshot(passage.source_file_id)
            if source is not None and source.scope_id == scope_id:
                total += 1
        return total
