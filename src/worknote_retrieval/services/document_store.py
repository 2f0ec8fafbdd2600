"""Unit-of-work adapter over the work note repository."""

from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worknote_retrieval.database.session import session_scope
from worknote_retrieval.models.embedding import EmbeddingStats
from worknote_retrieval.models.search import SearchFilters
from worknote_retrieval.models.work_note import (
    PersonContext,
    WorkNoteDocument,
    WorkNoteVersionSnapshot,
)
from worknote_retrieval.repositories.work_note_repository import MAX_VERSIONS, WorkNoteRepository


class DocumentStore:
    """
    Document store used by the embedding pipeline and hybrid search.

    Every call runs in its own session and transaction, so concurrent
    per-document tasks never share a session, and the compare-and-set on
    ``embedded_at`` commits independently of anything else. Rows are
    returned as detached ``WorkNoteDocument`` snapshots.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_by_id(self, work_id: str) -> Optional[WorkNoteDocument]:
        async with session_scope(self._session_factory) as session:
            note = await WorkNoteRepository(session).get_by_id(work_id)
            return WorkNoteDocument.model_validate(note) if note else None

    async def list_by_cursor(
        self, after: Optional[Tuple[datetime, str]], limit: int
    ) -> List[WorkNoteDocument]:
        async with session_scope(self._session_factory) as session:
            notes = await WorkNoteRepository(session).list_by_cursor(after, limit)
            return [WorkNoteDocument.model_validate(n) for n in notes]

    async def list_unembedded(
        self,
        limit: int,
        offset: int = 0,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[WorkNoteDocument]:
        async with session_scope(self._session_factory) as session:
            notes = await WorkNoteRepository(session).list_unembedded(limit, offset, after)
            return [WorkNoteDocument.model_validate(n) for n in notes]

    async def update_embedded_at_if_version_matches(
        self, work_id: str, expected_updated_at: datetime
    ) -> bool:
        async with session_scope(self._session_factory) as session:
            return await WorkNoteRepository(session).update_embedded_at_if_version_matches(
                work_id, expected_updated_at
            )

    async def update_embedded_at(self, work_id: str) -> None:
        async with session_scope(self._session_factory) as session:
            await WorkNoteRepository(session).update_embedded_at(work_id)

    async def get_versions(
        self, work_id: str, limit: int = MAX_VERSIONS
    ) -> List[WorkNoteVersionSnapshot]:
        async with session_scope(self._session_factory) as session:
            versions = await WorkNoteRepository(session).get_versions(work_id, limit)
            return [WorkNoteVersionSnapshot.model_validate(v) for v in versions]

    async def get_person_context(self, work_id: str) -> PersonContext:
        async with session_scope(self._session_factory) as session:
            return await WorkNoteRepository(session).get_person_context(work_id)

    async def get_embedding_stats(self) -> EmbeddingStats:
        async with session_scope(self._session_factory) as session:
            return await WorkNoteRepository(session).get_embedding_stats()

    async def find_by_ids(
        self, work_ids: Sequence[str], filters: Optional[SearchFilters] = None
    ) -> List[WorkNoteDocument]:
        async with session_scope(self._session_factory) as session:
            notes = await WorkNoteRepository(session).find_by_ids(work_ids, filters)
            return [WorkNoteDocument.model_validate(n) for n in notes]
