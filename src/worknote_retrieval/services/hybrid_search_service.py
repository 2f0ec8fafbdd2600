"""Hybrid retrieval: lexical + semantic search fused with Reciprocal Rank Fusion."""

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from worknote_retrieval.config import SearchSettings, get_settings
from worknote_retrieval.models.search import RankedResult, SearchFilters, SearchSource
from worknote_retrieval.services.document_store import DocumentStore
from worknote_retrieval.services.embedding_service import EmbeddingService
from worknote_retrieval.services.lexical_search_service import SqlLexicalSearchClient
from worknote_retrieval.services.qdrant_service import QdrantService
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("hybrid_search")

DEFAULT_RRF_K = 60


def rrf_score(rank: int, k: int = DEFAULT_RRF_K) -> float:
    """Contribution of a 1-based ``rank`` within one list."""
    return 1.0 / (k + rank)


def reciprocal_rank_fusion(
    lexical_ids: List[str],
    semantic_ids: List[str],
    k: int = DEFAULT_RRF_K,
) -> List[Tuple[str, float, SearchSource]]:
    """
    Merge two ranked id lists.

    Each list contributes ``1 / (k + rank)`` per id; contributions are summed
    across lists. Ids found by both lists are labelled HYBRID. Ties keep
    first-seen order (lexical list first).

    Returns:
        (work_id, fused score, source) sorted by score descending
    """
    fused: Dict[str, float] = defaultdict(float)
    sources: Dict[str, Set[SearchSource]] = defaultdict(set)

    for label, ids in ((SearchSource.LEXICAL, lexical_ids), (SearchSource.SEMANTIC, semantic_ids)):
        for rank, work_id in enumerate(ids, start=1):
            fused[work_id] += rrf_score(rank, k)
            sources[work_id].add(label)

    merged = []
    for work_id, score in fused.items():
        found_in = sources[work_id]
        if len(found_in) > 1:
            source = SearchSource.HYBRID
        else:
            source = next(iter(found_in))
        merged.append((work_id, score, source))

    merged.sort(key=lambda item: item[1], reverse=True)
    return merged


def dedupe_preserving_order(ids: List[str]) -> List[str]:
    seen: Set[str] = set()
    out = []
    for work_id in ids:
        if work_id not in seen:
            seen.add(work_id)
            out.append(work_id)
    return out


class HybridSearchService:
    """
    Run lexical and semantic search concurrently and fuse by rank.

    Each side over-fetches ``limit * overfetch_factor`` candidates under the
    same document filters. A failing side contributes nothing instead of
    failing the query. Truncation to ``limit`` happens after fusion.
    """

    def __init__(
        self,
        store: DocumentStore,
        lexical_client: SqlLexicalSearchClient,
        embedding_service: EmbeddingService,
        vector_index: QdrantService,
        settings: Optional[SearchSettings] = None,
    ):
        self.store = store
        self.lexical_client = lexical_client
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.settings = settings or get_settings().search

    async def lexical_search(
        self, query: str, filters: Optional[SearchFilters], fetch_limit: int
    ) -> List[str]:
        try:
            matches = await self.lexical_client.match(query, fetch_limit, filters)
            return dedupe_preserving_order([m.work_id for m in matches])
        except Exception as e:
            logger.error(f"Lexical search error: {e}", extra={"query": query})
            return []

    async def semantic_search(
        self, query: str, filters: Optional[SearchFilters], fetch_limit: int
    ) -> List[str]:
        """
        Ranked work ids from chunk similarity.

        Chunk hits collapse to their note (best chunk wins); notes that no
        longer exist or fail the document filters are dropped.
        """
        try:
            vector = await self.embedding_service.embed(query)

            payload_filter: Dict[str, str] = {"scope": "WORK"}
            if filters and filters.category:
                payload_filter["category"] = filters.category

            matches = await self.vector_index.query(
                vector, top_k=fetch_limit * 2, filter=payload_filter, return_metadata=True
            )
            ranked = dedupe_preserving_order([m.work_id for m in matches])
            if not ranked:
                return []

            allowed = {doc.id for doc in await self.store.find_by_ids(ranked, filters)}
            return [work_id for work_id in ranked if work_id in allowed][:fetch_limit]
        except Exception as e:
            logger.error(f"Vector search error: {e}", extra={"query": query})
            return []

    async def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        k: Optional[int] = None,
    ) -> List[RankedResult]:
        """
        Fused search results, best first.

        Args:
            query: Free-text query
            filters: Person / department / category / date filters and result limit
            k: RRF constant (defaults to settings.search.rrf_k)

        Returns:
            At most ``filters.limit`` results
        """
        filters = filters or SearchFilters()
        k = k if k is not None else self.settings.rrf_k
        limit = filters.limit or self.settings.default_limit
        fetch_limit = limit * max(1, self.settings.overfetch_factor)

        lexical_ids, semantic_ids = await asyncio.gather(
            self.lexical_search(query, filters, fetch_limit),
            self.semantic_search(query, filters, fetch_limit),
        )

        fused = reciprocal_rank_fusion(lexical_ids, semantic_ids, k)
        if not fused:
            return []

        docs = {doc.id: doc for doc in await self.store.find_by_ids([f[0] for f in fused])}

        results: List[RankedResult] = []
        for work_id, score, source in fused:
            doc = docs.get(work_id)
            if doc is None:
                continue
            results.append(
                RankedResult(
                    work_id=work_id,
                    title=doc.title,
                    category=doc.category,
                    created_at=doc.created_at,
                    score=score,
                    source=source,
                )
            )
            if len(results) >= limit:
                break

        logger.info(
            f"Hybrid search: query={query!r}, lexical={len(lexical_ids)}, "
            f"semantic={len(semantic_ids)}, returned={len(results)}"
        )
        return results
