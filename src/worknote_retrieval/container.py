"""Wiring of the long-lived service objects shared by the API."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from worknote_retrieval.config import Settings, get_settings
from worknote_retrieval.database.connection import create_engine
from worknote_retrieval.database.session import build_session_factory
from worknote_retrieval.services.background import BackgroundTaskRunner
from worknote_retrieval.services.chunking_service import ChunkingService
from worknote_retrieval.services.document_store import DocumentStore
from worknote_retrieval.services.embedding_processor import EmbeddingProcessor
from worknote_retrieval.services.embedding_service import EmbeddingService
from worknote_retrieval.services.hybrid_search_service import HybridSearchService
from worknote_retrieval.services.lexical_search_service import SqlLexicalSearchClient
from worknote_retrieval.services.qdrant_service import QdrantService
from worknote_retrieval.services.work_note_embedding_service import WorkNoteEmbeddingService
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("container")


@dataclass
class ServiceContainer:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    store: DocumentStore
    embedding_service: EmbeddingService
    vector_index: QdrantService
    background: BackgroundTaskRunner
    processor: EmbeddingProcessor
    hooks: WorkNoteEmbeddingService
    hybrid_search: HybridSearchService

    async def close(self) -> None:
        """Wait for detached embedding work, then release clients and the pool."""
        await self.background.drain()
        try:
            self.vector_index.close()
        except Exception as e:
            logger.error(f"Error closing Qdrant client: {e}", exc_info=True)
        await self.engine.dispose()


def build_container(
    settings: Optional[Settings] = None,
    engine: Optional[AsyncEngine] = None,
    embedding_service: Optional[EmbeddingService] = None,
    vector_index: Optional[QdrantService] = None,
) -> ServiceContainer:
    """
    Build the service graph.

    Any of the engine, embedding client or vector index may be injected
    (tests pass an SQLite engine, a stub embedder and an in-memory Qdrant).
    """
    settings = settings or get_settings()
    engine = engine or create_engine()
    session_factory = build_session_factory(engine)

    store = DocumentStore(session_factory)
    embedding_service = embedding_service or EmbeddingService(settings.embedding)
    vector_index = vector_index or QdrantService(
        settings.qdrant, vector_size=settings.embedding.embedding_dimension
    )
    background = BackgroundTaskRunner()

    processor = EmbeddingProcessor(
        store,
        ChunkingService(settings.chunking.chunk_size, settings.chunking.chunk_overlap_ratio),
        embedding_service,
        vector_index,
        settings.pipeline,
    )
    hooks = WorkNoteEmbeddingService(
        processor,
        background,
        retry_session_factory=session_factory,
        retry_settings=settings.retry,
    )
    hybrid_search = HybridSearchService(
        store,
        SqlLexicalSearchClient(session_factory),
        embedding_service,
        vector_index,
        settings.search,
    )

    return ServiceContainer(
        engine=engine,
        session_factory=session_factory,
        store=store,
        embedding_service=embedding_service,
        vector_index=vector_index,
        background=background,
        processor=processor,
        hooks=hooks,
        hybrid_search=hybrid_search,
    )
