"""Tests for Reciprocal Rank Fusion and the hybrid search service."""

from datetime import datetime
from typing import Dict, Optional, Sequence, Set
from unittest.mock import AsyncMock

import pytest

from worknote_retrieval.models.search import LexicalMatch, SearchFilters, SearchSource, VectorMatch
from worknote_retrieval.models.work_note import WorkNoteDocument
from worknote_retrieval.services.hybrid_search_service import (
    HybridSearchService,
    reciprocal_rank_fusion,
    rrf_score,
)
from worknote_retrieval.services.lexical_search_service import SqlLexicalSearchClient
from worknote_retrieval.utils.errors import EmbeddingRateLimitError, LexicalSearchError


def _doc(work_id: str, title: Optional[str] = None) -> WorkNoteDocument:
    now = datetime(2024, 3, 1, 9, 0, 0)
    return WorkNoteDocument(id=work_id, title=title or work_id, created_at=now, updated_at=now)


class FakeStore:
    """In-memory stand-in for DocumentStore.find_by_ids."""

    def __init__(self, ids: Sequence[str], excluded_by_filters: Set[str] = frozenset()):
        self.docs: Dict[str, WorkNoteDocument] = {work_id: _doc(work_id) for work_id in ids}
        self.excluded_by_filters = set(excluded_by_filters)

    async def find_by_ids(self, work_ids, filters=None):
        out = []
        for work_id in work_ids:
            if work_id not in self.docs:
                continue
            if filters is not None and not filters.is_empty() and work_id in self.excluded_by_filters:
                continue
            out.append(self.docs[work_id])
        return out


def _vector_matches(work_ids: Sequence[str]):
    return [
        VectorMatch(chunk_id=f"{work_id}#chunk0", work_id=work_id, score=1.0 - i * 0.01)
        for i, work_id in enumerate(work_ids)
    ]


def _service(store, lexical_ids=(), semantic_ids=(), search_settings=None):
    lexical_client = AsyncMock()
    lexical_client.match.return_value = [LexicalMatch(work_id=w, score=1.0) for w in lexical_ids]
    embedding_service = AsyncMock()
    embedding_service.embed.return_value = [0.1] * 8
    vector_index = AsyncMock()
    vector_index.query.return_value = _vector_matches(semantic_ids)
    return HybridSearchService(
        store, lexical_client, embedding_service, vector_index, search_settings
    )


class TestReciprocalRankFusion:
    def test_rrf_score(self):
        assert rrf_score(1) == pytest.approx(1 / 61)
        assert rrf_score(3, k=10) == pytest.approx(1 / 13)

    def test_ids_in_both_lists_rank_first(self):
        fused = reciprocal_rank_fusion(["A", "B", "C"], ["B", "A", "D"], k=60)
        order = [work_id for work_id, _, _ in fused]
        sources = {work_id: source for work_id, _, source in fused}

        assert order.index("B") < order.index("C")
        assert order.index("B") < order.index("D")
        assert order.index("A") < order.index("C")
        assert order.index("A") < order.index("D")
        assert sources["A"] == sources["B"] == SearchSource.HYBRID
        assert sources["C"] == SearchSource.LEXICAL
        assert sources["D"] == SearchSource.SEMANTIC

    def test_scores_are_summed(self):
        fused = dict((w, s) for w, s, _ in reciprocal_rank_fusion(["X"], ["Y", "Z", "X"], k=60))
        assert fused["X"] == pytest.approx(1 / 61 + 1 / 63)
        assert fused["Y"] == pytest.approx(1 / 61)

    def test_empty_lists(self):
        assert reciprocal_rank_fusion([], []) == []
        assert [w for w, _, _ in reciprocal_rank_fusion([], ["A"])] == ["A"]


class TestHybridSearchService:
    @pytest.mark.asyncio
    async def test_budget_report_scenario(self, search_settings):
        store = FakeStore(["X", "Y", "Z", "A"])
        service = _service(store, lexical_ids=["X", "A"], semantic_ids=["Y", "Z", "X"], search_settings=search_settings)

        results = await service.search("budget report", SearchFilters(), k=60)

        assert results[0].work_id == "X"
        assert results[0].source == SearchSource.HYBRID
        assert results[0].score == pytest.approx(1 / 61 + 1 / 63)
        assert results[1].work_id == "Y"
        assert results[1].source == SearchSource.SEMANTIC
        assert results[1].score == pytest.approx(1 / 61)

    @pytest.mark.asyncio
    async def test_overfetches_and_truncates_after_fusion(self, search_settings):
        store = FakeStore(["A", "B", "C"])
        service = _service(store, lexical_ids=["A", "B"], semantic_ids=["B", "C"], search_settings=search_settings)

        results = await service.search("q", SearchFilters(limit=1))

        assert [r.work_id for r in results] == ["B"]
        service.lexical_client.match.assert_awaited_once()
        assert service.lexical_client.match.await_args.args[1] == 2
        assert service.vector_index.query.await_args.kwargs["top_k"] == 4

    @pytest.mark.asyncio
    async def test_default_limit(self, search_settings):
        ids = [f"W{i}" for i in range(30)]
        service = _service(FakeStore(ids), lexical_ids=ids, search_settings=search_settings)

        results = await service.search("q")

        assert len(results) == search_settings.default_limit
        assert service.lexical_client.match.await_args.args[1] == 20

    @pytest.mark.asyncio
    async def test_lexical_failure_degrades_to_semantic(self, search_settings):
        store = FakeStore(["A", "B"])
        service = _service(store, semantic_ids=["A", "B"], search_settings=search_settings)
        service.lexical_client.match.side_effect = LexicalSearchError()

        results = await service.search("q")

        assert [r.work_id for r in results] == ["A", "B"]
        assert all(r.source == SearchSource.SEMANTIC for r in results)

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades_to_lexical(self, search_settings):
        store = FakeStore(["A"])
        service = _service(store, lexical_ids=["A"], semantic_ids=["A"], search_settings=search_settings)
        service.embedding_service.embed.side_effect = EmbeddingRateLimitError()

        results = await service.search("q")

        assert [(r.work_id, r.source) for r in results] == [("A", SearchSource.LEXICAL)]

    @pytest.mark.asyncio
    async def test_both_sides_failing_returns_empty(self, search_settings):
        service = _service(FakeStore([]), search_settings=search_settings)
        service.lexical_client.match.side_effect = LexicalSearchError()
        service.vector_index.query.side_effect = RuntimeError("index down")

        assert await service.search("q") == []

    @pytest.mark.asyncio
    async def test_semantic_hits_are_deduped_and_filtered(self, search_settings):
        store = FakeStore(["A", "B"], excluded_by_filters={"B"})
        service = _service(store, search_settings=search_settings)
        service.vector_index.query.return_value = [
            VectorMatch(chunk_id="A#chunk1", work_id="A", score=0.9),
            VectorMatch(chunk_id="B#chunk0", work_id="B", score=0.8),
            VectorMatch(chunk_id="A#chunk0", work_id="A", score=0.7),
            VectorMatch(chunk_id="GONE#chunk0", work_id="GONE", score=0.6),
        ]

        ids = await service.semantic_search("q", SearchFilters(category="meeting"), fetch_limit=10)

        assert ids == ["A"]
        assert service.vector_index.query.await_args.kwargs["filter"] == {
            "scope": "WORK",
            "category": "meeting",
        }

    @pytest.mark.asyncio
    async def test_deleted_documents_are_not_returned(self, search_settings):
        service = _service(FakeStore(["A"]), lexical_ids=["A", "DELETED"], search_settings=search_settings)

        results = await service.search("q")

        assert [r.work_id for r in results] == ["A"]


class TestHybridSearchEndToEnd:
    @pytest.mark.asyncio
    async def test_search_over_embedded_notes(
        self, session_factory, store, processor, embedding_service, vector_index, make_note, search_settings
    ):
        budget = await make_note(title="Q3 budget report", content="Quarterly budget review", category="finance")
        await make_note(title="Team offsite", content="Agenda and venue", category="event")
        await processor.embed_pending()

        service = HybridSearchService(
            store, SqlLexicalSearchClient(session_factory), embedding_service, vector_index, search_settings
        )
        results = await service.search("budget report")

        assert results[0].work_id == budget.id
        assert results[0].source == SearchSource.HYBRID
        assert results[0].title == "Q3 budget report"

        filtered = await service.search("budget", SearchFilters(category="event"))
        assert budget.id not in [r.work_id for r in filtered]
