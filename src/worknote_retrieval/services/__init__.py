"""Services package."""

from worknote_retrieval.services.background import BackgroundTaskRunner
from worknote_retrieval.services.chunking_service import ChunkingService
from worknote_retrieval.services.document_store import DocumentStore
from worknote_retrieval.services.embedding_processor import EmbeddingProcessor
from worknote_retrieval.services.embedding_service import EmbeddingService
from worknote_retrieval.services.hybrid_search_service import HybridSearchService
from worknote_retrieval.services.lexical_search_service import SqlLexicalSearchClient
from worknote_retrieval.services.qdrant_service import QdrantService
from worknote_retrieval.services.work_note_embedding_service import WorkNoteEmbeddingService

__all__ = [
    "BackgroundTaskRunner",
    "ChunkingService",
    "DocumentStore",
    "EmbeddingProcessor",
    "EmbeddingService",
    "HybridSearchService",
    "SqlLexicalSearchClient",
    "QdrantService",
    "WorkNoteEmbeddingService",
]
