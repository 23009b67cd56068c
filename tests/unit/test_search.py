"""
Unit Tests — SearchService
══════════════════════════
Query → embedding → filtered, ranked passages. The fake gateway's `vectors`
table pins the query embedding, so similarities are exact.
"""

from __future__ import annotations

import pytest

from ragcore.core.exceptions import EmbeddingGatewayError, ScopeNotFoundError

from tests.conftest import unit_vector, vector_with_similarity

QUERY = "where is the pool?"


@pytest.fixture
def pinned_query(fake_gateway):
    fake_gateway.vectors[QUERY] = unit_vector(0)
    return QUERY


@pytest.mark.unit
@pytest.mark.search
class TestThreshold:

    async def test_low_similarity_filtered_by_high_threshold(self, search_service, make_completed_file, pinned_query):
        await make_completed_file([("The pool opens at 7am.", vector_with_similarity(0.42))])

        assert await search_service.search_documents(pinned_query, threshold=0.9) == []

    async def test_low_similarity_returned_under_low_threshold(self, search_service, make_completed_file, pinned_query):
        await make_completed_file([("The pool opens at 7am.", vector_with_similarity(0.42))])

        hits = await search_service.search_documents(pinned_query, threshold=0.3)

        assert len(hits) == 1
        assert hits[0].passage.content == "The pool opens at 7am."
        assert hits[0].similarity == pytest.approx(0.42, abs=1e-9)

    async def test_raising_threshold_never_adds_results(self, search_service, make_completed_file, pinned_query):
        await make_completed_file([
            (f"p{s}", vector_with_similarity(s)) for s in (0.1, 0.3, 0.5, 0.7, 0.9)
        ])
        previous = None
        for threshold in (-1.0, 0.0, 0.2, 0.4, 0.6, 0.8, 0.95):
            ids = {h.passage.id for h in await search_service.search_documents(
                pinned_query, limit=50, threshold=threshold
            )}
            if previous is not None:
                assert ids <= previous
            previous = ids

    async def test_default_threshold_is_half(self, search_service, make_completed_file, pinned_query):
        await make_completed_file([
            ("above", vector_with_similarity(0.7)),
            ("below", vector_with_similarity(0.3)),
        ])
        hits = await search_service.search_documents(pinned_query)
        assert [h.passage.content for h in hits] == ["above"]


@pytest.mark.unit
@pytest.mark.search
class TestRankingAndLimit:

    async def test_results_sorted_descending(self, search_service, make_completed_file, pinned_query):
        await make_completed_file([
            ("mid",  vector_with_similarity(0.7)),
            ("top",  vector_with_similarity(0.99)),
            ("low",  vector_with_similarity(0.55)),
        ])
        hits = await search_service.search_documents(pinned_query)
        assert [h.passage.content for h in hits] == ["top", "mid", "low"]

    async def test_default_limit_is_five(self, search_service, make_completed_file, pinned_query):
        await make_completed_file([(f"p{i}", vector_with_similarity(0.9)) for i in range(8)])
        assert len(await search_service.search_documents(pinned_query)) == 5

    async def test_limit_is_clamped_to_max(self, search_service, make_completed_file, pinned_query):
        await make_completed_file([(f"p{i}", vector_with_similarity(0.9)) for i in range(60)])
        assert len(await search_service.search_documents(pinned_query, limit=500)) == 50

    @pytest.mark.parametrize("limit", [0, -3])
    async def test_non_positive_limit_rejected(self, search_service, pinned_query, limit):
        with pytest.raises(ValueError):
            await search_service.search_documents(pinned_query, limit=limit)

    @pytest.mark.parametrize("query", ["", "   ", "\n\t"])
    async def test_blank_query_rejected_without_embedding(self, search_service, fake_gateway, query):
        with pytest.raises(ValueError):
            await search_service.search_documents(query)
        assert fake_gateway.calls == []


@pytest.mark.unit
@pytest.mark.search
class TestFilters:

    async def test_deactivation_hides_and_reactivation_restores(
        self, search_service, file_service, make_completed_file, pinned_query
    ):
        record = await make_completed_file([("spa hours", vector_with_similarity(0.9))])

        assert len(await search_service.search_documents(pinned_query)) == 1
        await file_service.set_active(record.id, False)
        assert await search_service.search_documents(pinned_query) == []
        await file_service.set_active(record.id, True)
        assert len(await search_service.search_documents(pinned_query)) == 1

    async def test_scope_name_restricts_results(
        self, search_service, make_completed_file, pinned_query, test_scope_id, other_scope_id
    ):
        await make_completed_file([("grand", vector_with_similarity(0.9))], scope_id=test_scope_id)
        await make_completed_file([("harbor", vector_with_similarity(0.95))], scope_id=other_scope_id)

        hits = await search_service.search_documents(pinned_query, scope_name="grand-hotel")
        assert [h.passage.content for h in hits] == ["grand"]

        everything = await search_service.search_documents(pinned_query)
        assert [h.passage.content for h in everything] == ["harbor", "grand"]

    async def test_unknown_scope_is_an_error(self, search_service, fake_gateway, pinned_query):
        with pytest.raises(ScopeNotFoundError):
            await search_service.search_documents(pinned_query, scope_name="nowhere")
        assert fake_gateway.calls == []


@pytest.mark.unit
@pytest.mark.search
class TestGatewayInteraction:

    async def test_each_search_embeds_the_query(self, search_service, fake_gateway, pinned_query):
        await search_service.search_documents(pinned_query)
        await search_service.search_documents(pinned_query)
        assert fake_gateway.calls == [[pinned_query], [pinned_query]]

    async def test_new_passages_visible_to_next_search(self, search_service, make_completed_file, pinned_query):
        assert await search_service.search_documents(pinned_query) == []
        await make_completed_file([("fresh", vector_with_similarity(0.9))])
        assert len(await search_service.search_documents(pinned_query)) == 1

    async def test_gateway_failure_propagates(self, search_service, fake_gateway, pinned_query):
        fake_gateway.fail = True
        with pytest.raises(EmbeddingGatewayError):
            await search_service.search_documents(pinned_query)
