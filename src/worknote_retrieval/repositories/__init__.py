"""Repositories package."""

from worknote_retrieval.repositories.base import BaseRepository
from worknote_retrieval.repositories.embedding_retry_queue_repository import (
    EmbeddingRetryQueueRepository,
    compute_backoff,
)
from worknote_retrieval.repositories.work_note_repository import (
    MAX_VERSIONS,
    WorkNoteRepository,
    build_filter_clauses,
)

__all__ = [
    "BaseRepository",
    "WorkNoteRepository",
    "EmbeddingRetryQueueRepository",
    "MAX_VERSIONS",
    "build_filter_clauses",
    "compute_backoff",
]
