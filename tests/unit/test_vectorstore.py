"""
Unit Tests — Vector Store backends
══════════════════════════════════
MemoryVectorStore: atomic insert, validation, visibility filters, ordering.
PgVectorStore: statement shape and error mapping against a mocked session.
"""

from __future__ import annotations

import math
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ragcore.core.exceptions import PersistenceError
from ragcore.schemas.documents import FileStatus
from ragcore.vectorstore.base import PassageRecord
from ragcore.vectorstore.pgvector_store import PgVectorStore, build_search_statement

from tests.conftest import TEST_DIMENSIONS, unit_vector, vector_with_similarity


async def _processing_file(registry, content_hash: str = "a" * 64, scope_id=None):
    return await registry.create(
        display_name="doc.txt",
        content_hash=content_hash,
        owner_id="owner",
        scope_id=scope_id,
    )


def _records(file_id: int, n: int) -> list[PassageRecord]:
    return [
        PassageRecord(source_file_id=file_id, content=f"passage {i}", embedding=unit_vector(i % TEST_DIMENSIONS))
        for i in range(n)
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Insert
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.vectorstore
class TestMemoryInsert:

    async def test_insert_returns_ids_in_input_order(self, registry, vector_store):
        record = await _processing_file(registry)
        ids = await vector_store.insert(_records(record.id, 3))

        assert len(ids) == 3
        assert ids == sorted(ids)
        assert await vector_store.count_by_source_file(record.id) == 3

    async def test_empty_insert_is_noop(self, vector_store):
        assert await vector_store.insert([]) == []
        assert await vector_store.count() == 0

    async def test_failure_mid_batch_persists_nothing(self, registry, vector_store):
        record = await _processing_file(registry)
        original = vector_store._write_row
        calls = {"n": 0}

        def _flaky(rec):
            calls["n"] += 1
            if calls["n"] == 3:
                raise OSError("disk full")
            return original(rec)

        with patch.object(vector_store, "_write_row", side_effect=_flaky):
            with pytest.raises(PersistenceError):
                await vector_store.insert(_records(record.id, 5))

        assert await vector_store.count_by_source_file(record.id) == 0
        assert await vector_store.count() == 0

    async def test_wrong_dimension_rejected_before_write(self, registry, vector_store):
        record = await _processing_file(registry)
        bad = _records(record.id, 2) + [
            PassageRecord(source_file_id=record.id, content="short vec", embedding=[1.0, 0.0])
        ]
        with pytest.raises(ValueError, match="dimensions"):
            await vector_store.insert(bad)
        assert await vector_store.count() == 0

    async def test_non_finite_embedding_rejected(self, registry, vector_store):
        record = await _processing_file(registry)
        vec = unit_vector(0)
        vec[3] = math.inf
        with pytest.raises(ValueError, match="non-finite"):
            await vector_store.insert([PassageRecord(record.id, "text", vec)])

    async def test_blank_content_rejected(self, registry, vector_store):
        record = await _processing_file(registry)
        with pytest.raises(ValueError, match="empty content"):
            await vector_store.insert([PassageRecord(record.id, "   ", unit_vector(0))])


# ─────────────────────────────────────────────────────────────────────────────
# Search
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.vectorstore
class TestMemorySearch:

    async def test_threshold_is_strict(self, vector_store, make_completed_file):
        edge = [3.0, 4.0] + [0.0] * (TEST_DIMENSIONS - 2)   # similarity exactly 0.6
        await make_completed_file([("edge", edge)])
        query = unit_vector(0)

        assert await vector_store.search(query, limit=5, threshold=0.6) == []
        hits = await vector_store.search(query, limit=5, threshold=0.59)
        assert [h.passage.content for h in hits] == ["edge"]

    async def test_ordered_by_similarity_then_id(self, vector_store, make_completed_file):
        await make_completed_file([
            ("low",   vector_with_similarity(0.55)),
            ("tie-a", vector_with_similarity(0.8)),
            ("high",  vector_with_similarity(0.95)),
            ("tie-b", vector_with_similarity(0.8)),
        ])

        hits = await vector_store.search(unit_vector(0), limit=10, threshold=0.5)

        assert [h.passage.content for h in hits] == ["high", "tie-a", "tie-b", "low"]
        assert hits[1].passage.id < hits[2].passage.id
        sims = [h.similarity for h in hits]
        assert sims == sorted(sims, reverse=True)

    async def test_limit_caps_results(self, vector_store, make_completed_file):
        await make_completed_file([(f"p{i}", vector_with_similarity(0.9)) for i in range(6)])
        hits = await vector_store.search(unit_vector(0), limit=2, threshold=0.0)
        assert len(hits) == 2

    async def test_processing_files_are_invisible(self, registry, vector_store):
        record = await _processing_file(registry)
        await vector_store.insert([PassageRecord(record.id, "pending", unit_vector(0))])

        assert await vector_store.search(unit_vector(0), limit=5, threshold=0.0) == []

        await registry.transition(record.id, FileStatus.COMPLETED, passage_count=1)
        assert len(await vector_store.search(unit_vector(0), limit=5, threshold=0.0)) == 1

    async def test_inactive_files_excluded_unless_requested(self, vector_store, make_completed_file):
        await make_completed_file([("hidden", unit_vector(0))], active=False)

        assert await vector_store.search(unit_vector(0), limit=5, threshold=0.0) == []
        hits = await vector_store.search(unit_vector(0), limit=5, threshold=0.0, require_active=False)
        assert [h.passage.content for h in hits] == ["hidden"]

    async def test_scope_filter(self, vector_store, make_completed_file, test_scope_id, other_scope_id):
        await make_completed_file([("mine", unit_vector(0))], scope_id=test_scope_id)
        await make_completed_file([("theirs", unit_vector(0))], scope_id=other_scope_id)

        hits = await vector_store.search(unit_vector(0), limit=5, threshold=0.0, scope_id=test_scope_id)
        assert [h.passage.content for h in hits] == ["mine"]

        unscoped = await vector_store.search(unit_vector(0), limit=5, threshold=0.0)
        assert {h.passage.content for h in unscoped} == {"mine", "theirs"}

    async def test_query_dimension_mismatch(self, vector_store):
        with pytest.raises(ValueError):
            await vector_store.search([1.0, 0.0], limit=5, threshold=0.0)

    async def test_limit_must_be_positive(self, vector_store):
        with pytest.raises(ValueError):
            await vector_store.search(unit_vector(0), limit=0, threshold=0.0)


# ─────────────────────────────────────────────────────────────────────────────
# Delete / count
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.vectorstore
class TestMemoryDeleteAndCount:

    async def test_delete_removes_only_that_file(self, vector_store, make_completed_file):
        a = await make_completed_file([("a1", unit_vector(0)), ("a2", unit_vector(1))])
        b = await make_completed_file([("b1", unit_vector(2))])

        assert await vector_store.delete_by_source_file(a.id) == 2
        assert await vector_store.count_by_source_file(a.id) == 0
        assert await vector_store.count_by_source_file(b.id) == 1

    async def test_delete_missing_file_returns_zero(self, vector_store):
        assert await vector_store.delete_by_source_file(999) == 0

    async def test_count_by_scope(self, vector_store, make_completed_file, test_scope_id, other_scope_id):
        await make_completed_file([("a", unit_vector(0)), ("b", unit_vector(1))], scope_id=test_scope_id)
        await make_completed_file([("c", unit_vector(2))], scope_id=other_scope_id)

        assert await vector_store.count() == 3
        assert await vector_store.count(test_scope_id) == 2
        assert await vector_store.count(other_scope_id) == 1


# ─────────────────────────────────────────────────────────────────────────────
# pgvector backend
# ─────────────────────────────────────────────────────────────────────────────

def _session_factory(session):
    @asynccontextmanager
    async def _factory():
        yield session
    return _factory


@pytest.mark.unit
@pytest.mark.vectorstore
class TestPgVectorStore:

    def test_search_statement_shape(self, test_scope_id):
        stmt = build_search_statement(unit_vector(0), limit=5, threshold=0.5, scope_id=test_scope_id)
        sql = str(stmt.compile(dialect=postgresql.dialect()))

        assert "<=>" in sql
        assert "JOIN source_files" in sql
        assert "source_files.status" in sql
        assert "source_files.active IS true" in sql
        assert "source_files.scope_id" in sql
        assert "ORDER BY" in sql and "passages.id ASC" in sql
        assert "LIMIT" in sql

    def test_statement_without_optional_filters(self):
        stmt = build_search_statement(unit_vector(0), limit=5, threshold=0.5, require_active=False)
        sql = str(stmt.compile(dialect=postgresql.dialect()))

        assert "source_files.active" not in sql
        assert "source_files.scope_id" not in sql

    async def test_search_sets_ef_search_and_maps_rows(self):
        session = MagicMock(spec=AsyncSession)
        row = SimpleNamespace(id=7, source_file_id=3, content="hello", similarity=0.83)
        session.execute = AsyncMock(side_effect=[
            MagicMock(),
            MagicMock(all=MagicMock(return_value=[row])),
        ])
        store = PgVectorStore(dimensions=TEST_DIMENSIONS, ef_search=64, session_factory=_session_factory(session))

        hits = await store.search(unit_vector(0), limit=5, threshold=0.5)

        first_stmt = session.execute.call_args_list[0].args[0]
        assert "SET LOCAL hnsw.ef_search = 64" in str(first_stmt)
        assert len(hits) == 1
        assert hits[0].passage.id == 7
        assert hits[0].passage.source_file_id == 3
        assert hits[0].similarity == pytest.approx(0.83)

    async def test_insert_failure_raises_persistence_error(self):
        session = MagicMock(spec=AsyncSession)
        session.add_all = MagicMock()
        session.flush = AsyncMock(side_effect=SQLAlchemyError("connection reset"))
        store = PgVectorStore(dimensions=TEST_DIMENSIONS, session_factory=_session_factory(session))

        with pytest.raises(PersistenceError):
            await store.insert(_records(1, 3))
        assert len(session.add_all.call_args.args[0]) == 3

    async def test_search_failure_raises_persistence_error(self):
        session = MagicMock(spec=AsyncSession)
        session.execute = AsyncMock(side_effect=SQLAlchemyError("timeout"))
        store = PgVectorStore(dimensions=TEST_DIMENSIONS, session_factory=_session_factory(session))

        with pytest.raises(PersistenceError):
            await store.search(unit_vector(0), limit=5, threshold=0.5)
