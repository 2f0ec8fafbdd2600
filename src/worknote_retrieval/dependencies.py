"""FastAPI dependencies."""

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from worknote_retrieval.container import ServiceContainer
from worknote_retrieval.database.session import session_scope
from worknote_retrieval.services.embedding_processor import EmbeddingProcessor
from worknote_retrieval.services.hybrid_search_service import HybridSearchService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def get_session(
    container: ServiceContainer = Depends(get_container),
) -> AsyncGenerator[AsyncSession, None]:
    """Database session for one request; committed when the handler returns."""
    async with session_scope(container.session_factory) as session:
        yield session


def get_embedding_processor(
    container: ServiceContainer = Depends(get_container),
) -> EmbeddingProcessor:
    return container.processor


def get_hybrid_search(
    container: ServiceContainer = Depends(get_container),
) -> HybridSearchService:
    return container.hybrid_search
