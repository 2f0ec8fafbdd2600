"""Pydantic models for the retrieval engine."""

from worknote_retrieval.models.chunk import ChunkMetadata, TextChunk
from worknote_retrieval.models.embedding import (
    EmbeddingData,
    EmbeddingResponse,
    EmbeddingStats,
    ReindexError,
    ReindexResult,
    VectorRecord,
)
from worknote_retrieval.models.retry import (
    DeadLetterPage,
    RetryOperation,
    RetryQueueItemResponse,
    RetryResetResponse,
    RetryStatus,
)
from worknote_retrieval.models.search import (
    LexicalMatch,
    RankedResult,
    SearchFilters,
    SearchResponse,
    SearchSource,
    VectorMatch,
)
from worknote_retrieval.models.work_note import (
    PersonContext,
    WorkNoteDocument,
    WorkNoteVersionSnapshot,
)

__all__ = [
    "ChunkMetadata",
    "TextChunk",
    "EmbeddingData",
    "EmbeddingResponse",
    "EmbeddingStats",
    "ReindexError",
    "ReindexResult",
    "VectorRecord",
    "DeadLetterPage",
    "RetryOperation",
    "RetryQueueItemResponse",
    "RetryResetResponse",
    "RetryStatus",
    "LexicalMatch",
    "RankedResult",
    "SearchFilters",
    "SearchResponse",
    "SearchSource",
    "VectorMatch",
    "PersonContext",
    "WorkNoteDocument",
    "WorkNoteVersionSnapshot",
]
