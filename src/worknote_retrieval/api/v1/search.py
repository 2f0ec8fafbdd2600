"""Hybrid search endpoint."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from worknote_retrieval.dependencies import get_hybrid_search
from worknote_retrieval.models.search import SearchFilters, SearchResponse
from worknote_retrieval.services.hybrid_search_service import HybridSearchService

router = APIRouter(prefix="/search", tags=["search"])


def get_search_filters(
    person_id: Optional[str] = Query(None, description="Only notes linked to this person"),
    dept_name: Optional[str] = Query(None, description="Only notes linked to a person in this department"),
    category: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None, description="Created on or after (YYYY-MM-DD)"),
    date_to: Optional[date] = Query(None, description="Created on or before (YYYY-MM-DD)"),
    limit: Optional[int] = Query(None, ge=1, le=100),
) -> SearchFilters:
    try:
        return SearchFilters(
            person_id=person_id,
            dept_name=dept_name,
            category=category,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
        )
    except ValidationError as e:
        raise RequestValidationError(e.errors()) from e


@router.get(
    "",
    response_model=SearchResponse,
    summary="Hybrid Search",
    description="Full-text and vector search over work notes, fused by Reciprocal Rank Fusion.",
)
async def search(
    q: str = Query(..., min_length=1, description="Search query"),
    filters: SearchFilters = Depends(get_search_filters),
    search_service: HybridSearchService = Depends(get_hybrid_search),
) -> SearchResponse:
    results = await search_service.search(q, filters)
    return SearchResponse(query=q, results=results, count=len(results))
