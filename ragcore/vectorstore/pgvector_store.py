"""
pgvector Vector Store — PostgreSQL + HNSW (vector_cosine_ops)

Search query shape:

    SELECT p.id, p.source_file_id, p.content, 1 - (p.embedding <=> :q) AS similarity
    FROM passages p JOIN source_files f ON f.id = p.source_file_id
    WHERE f.status = 'completed'
      AND 1 - (p.embedding <=> :q) > :threshold
      [AND f.active]
      [AND f.scope_id = :scope]
    ORDER BY p.embedding <=> :q, p.id
    LIMIT :limit

Ordering by the raw distance (rather than the derived similarity) lets the
planner use the HNSW index. `hnsw.ef_search` is set per transaction with
SET LOCAL, so pooled connections are not left modified.

Inserts run in a single transaction: a failure on any row rolls back all of
them.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import Select, delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError

from ragcore.core.config import settings
from ragcore.core.exceptions import PersistenceError
from ragcore.db.session import get_session
from ragcore.models.documents import Passage, SourceFile
from ragcore.registry.sql import SessionFactory
from ragcore.schemas.documents import FileStatus
from ragcore.vectorstore.base import (
    PassageRecord,
    SearchHit,
    StoredPassage,
    VectorStoreBase,
)

logger = logging.getLogger(__name__)


def build_search_statement(
    query_embedding: Sequence[float],
    limit:           int,
    threshold:       float,
    scope_id:        Optional[UUID] = None,
    require_active:  bool = True,
) -> Select:
    distance = Passage.embedding.cosine_distance(list(query_embedding))
    similarity = (1 - distance).label("similarity")

    stmt = (
        select(Passage.id, Passage.source_file_id, Passage.content, similarity)
        .join(SourceFile, SourceFile.id == Passage.source_file_id)
        .where(
            SourceFile.status == FileStatus.COMPLETED.value,
            (1 - distance) > threshold,
        )
    )
    if require_active:
        stmt = stmt.where(SourceFile.active.is_(True))
    if scope_id is not None:
        stmt = stmt.where(SourceFile.scope_id == scope_id)

    return stmt.order_by(distance.asc(), Passage.id.asc()).limit(limit)


class PgVectorStore(VectorStoreBase):

    def __init__(
        self,
        dimensions:      int = settings.embedding_dimensions,
        ef_search:       int = settings.hnsw_ef_search,
        session_factory: SessionFactory = get_session,
    ) -> None:
        super().__init__(dimensions)
        self._ef_search = int(ef_search)
        self._session = session_factory

    async def insert(self, records: Sequence[PassageRecord]) -> list[int]:
        if not records:
            return []
        self._validate_records(records)

        rows = [
            Passage(
                source_file_id=r.source_file_id,
                content=r.content,
                embedding=list(r.embedding),
            )
            for r in records
        ]
        try:
            async with self._session() as session:
                session.add_all(rows)
                await session.flush()
                ids = [row.id for row in rows]
        except SQLAlchemyError as exc:
            logger.error(
                "Passage insert rolled back | source_file=%s rows=%d error=%s",
                records[0].source_file_id, len(records), exc,
            )
            raise PersistenceError(f"Passage insert failed: {exc}") from exc

        logger.debug("Passages inserted | source_file=%s rows=%d", records[0].source_file_id, len(ids))
        return ids

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

        stmt = build_search_statement(query_embedding, limit, threshold, scope_id, require_active)
        try:
            async with self._session() as session:
                await session.execute(text(f"SET LOCAL hnsw.ef_search = {self._ef_search}"))
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            logger.error("Vector search failed | error=%s", exc)
            raise PersistenceError(f"Vector search failed: {exc}") from exc

        return [
            SearchHit(
                passage=StoredPassage(id=row.id, source_file_id=row.source_file_id, content=row.content),
                similarity=float(row.similarity),
            )
            for row in rows
        ]

    async def delete_by_source_file(self, source_file_id: int) -> int:
        try:
            async with self._session() as session:
                result = await session.execute(
                    delete(Passage).where(Passage.source_file_id == source_file_id)
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Passage delete failed: {exc}") from exc
        return result.rowcount or 0

    async def count_by_source_file(self, source_file_id: int) -> int:
        async with self._session() as session:
            return (
                await session.scalar(
                    select(func.count())
                    .select_from(Passage)
                    .where(Passage.source_file_id == source_file_id)
                )
            ) or 0

    async def count(self, scope_id: Optional[UUID] = None) -> int:
        stmt = select(func.count()).select_from(Passage)
        if scope_id is not None:
            stmt = (
                stmt.join(SourceFile, SourceFile.id == Passage.source_file_id)
                .where(SourceFile.scope_id == scope_id)
            )
        async with self._session() as session:
            return (await session.scalar(stmt)) or 0
