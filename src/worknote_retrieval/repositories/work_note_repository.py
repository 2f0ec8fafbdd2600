"""Work note repository: the document store consumed by the embedding pipeline."""

from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from worknote_retrieval.database.models import (
    Person,
    WorkNote,
    WorkNotePerson,
    WorkNoteVersion,
    utc_now,
)
from worknote_retrieval.models.embedding import EmbeddingStats
from worknote_retrieval.models.search import SearchFilters
from worknote_retrieval.models.work_note import PersonContext
from worknote_retrieval.repositories.base import BaseRepository
from worknote_retrieval.utils.errors import DatabaseError
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("repositories.work_note")

MAX_VERSIONS = 5


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min)


def _after_cursor(after: Tuple[datetime, str]):
    after_created_at, after_id = after
    return or_(
        WorkNote.created_at > after_created_at,
        and_(WorkNote.created_at == after_created_at, WorkNote.id > after_id),
    )


def build_filter_clauses(filters: Optional[SearchFilters]) -> list:
    """
    WHERE clauses over WorkNote for document-level search filters.

    Both lexical and semantic search go through this function so that
    fusion never mixes differently-filtered candidate sets.
    """
    if filters is None or filters.is_empty():
        return []

    clauses = []
    if filters.category:
        clauses.append(WorkNote.category == filters.category)
    if filters.date_from:
        clauses.append(WorkNote.created_at >= _day_start(filters.date_from))
    if filters.date_to:
        # inclusive upper bound on the calendar day
        clauses.append(WorkNote.created_at < _day_start(filters.date_to + timedelta(days=1)))
    if filters.person_id:
        clauses.append(
            exists().where(
                and_(
                    WorkNotePerson.work_note_id == WorkNote.id,
                    WorkNotePerson.person_id == filters.person_id,
                )
            )
        )
    if filters.dept_name:
        clauses.append(
            exists().where(
                and_(
                    WorkNotePerson.work_note_id == WorkNote.id,
                    WorkNotePerson.person_id == Person.id,
                    Person.current_dept == filters.dept_name,
                )
            )
        )
    return clauses


class WorkNoteRepository(BaseRepository[WorkNote]):
    """Repository for work note data access operations."""

    def __init__(self, session: AsyncSession):
        """Initialize work note repository."""
        super().__init__(WorkNote, session)

    async def list_by_cursor(
        self,
        after: Optional[Tuple[datetime, str]],
        limit: int,
    ) -> List[WorkNote]:
        """
        Keyset page of work notes ordered by (created_at, id).

        Args:
            after: (created_at, id) of the last row of the previous page, or None
            limit: Page size

        Returns:
            Up to ``limit`` notes strictly after the cursor
        """
        try:
            query = select(WorkNote)
            if after is not None:
                query = query.where(_after_cursor(after))
            query = query.order_by(WorkNote.created_at.asc(), WorkNote.id.asc()).limit(limit)
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing work notes by cursor {after}: {e}")
            raise DatabaseError("Failed to list work notes") from e

    async def list_unembedded(
        self,
        limit: int,
        offset: int = 0,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[WorkNote]:
        """Notes whose embedded_at marker is unset, oldest first, optionally after a keyset cursor."""
        try:
            query = select(WorkNote).where(WorkNote.embedded_at.is_(None))
            if after is not None:
                query = query.where(_after_cursor(after))
            result = await self.session.execute(
                query
                .order_by(WorkNote.created_at.asc(), WorkNote.id.asc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing unembedded work notes: {e}")
            raise DatabaseError("Failed to list pending work notes") from e

    async def update_embedded_at(self, work_id: str) -> None:
        """Unconditionally stamp the embedded_at marker."""
        try:
            await self.session.execute(
                update(WorkNote).where(WorkNote.id == work_id).values(embedded_at=utc_now())
            )
        except SQLAlchemyError as e:
            logger.error(f"Error updating embedded_at for {work_id}: {e}")
            raise DatabaseError("Failed to update embedding marker") from e

    async def update_embedded_at_if_version_matches(
        self, work_id: str, expected_updated_at: datetime
    ) -> bool:
        """
        Compare-and-set the embedded_at marker.

        A single UPDATE guarded by ``updated_at = expected_updated_at``, so a
        concurrent edit between read and write is never overwritten.

        Returns:
            True if a row changed, False if the note is gone or was edited
        """
        try:
            result = await self.session.execute(
                update(WorkNote)
                .where(WorkNote.id == work_id, WorkNote.updated_at == expected_updated_at)
                .values(embedded_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            logger.error(f"Error in conditional embedded_at update for {work_id}: {e}")
            raise DatabaseError("Failed to update embedding marker") from e

    async def get_versions(self, work_id: str, limit: int = MAX_VERSIONS) -> List[WorkNoteVersion]:
        """Most recent versions first."""
        try:
            result = await self.session.execute(
                select(WorkNoteVersion)
                .where(WorkNoteVersion.work_note_id == work_id)
                .order_by(WorkNoteVersion.version_no.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting versions for {work_id}: {e}")
            raise DatabaseError("Failed to retrieve work note versions") from e

    async def get_embedding_stats(self) -> EmbeddingStats:
        try:
            result = await self.session.execute(
                select(func.count(WorkNote.id), func.count(WorkNote.embedded_at))
            )
            total, embedded = result.one()
            total = total or 0
            embedded = embedded or 0
            return EmbeddingStats(total=total, embedded=embedded, pending=total - embedded)
        except SQLAlchemyError as e:
            logger.error(f"Error computing embedding stats: {e}")
            raise DatabaseError("Failed to compute embedding stats") from e

    async def find_by_ids(
        self, work_ids: Sequence[str], filters: Optional[SearchFilters] = None
    ) -> List[WorkNote]:
        """Existing notes among ``work_ids`` that pass the filters (unordered)."""
        if not work_ids:
            return []
        try:
            query = select(WorkNote).where(WorkNote.id.in_(list(work_ids)))
            for clause in build_filter_clauses(filters):
                query = query.where(clause)
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error finding work notes by ids: {e}")
            raise DatabaseError("Failed to retrieve work notes") from e

    async def get_person_context(self, work_id: str) -> PersonContext:
        """Linked person ids in association order and the first person's department."""
        try:
            result = await self.session.execute(
                select(WorkNotePerson.person_id, Person.current_dept)
                .join(Person, Person.id == WorkNotePerson.person_id)
                .where(WorkNotePerson.work_note_id == work_id)
                .order_by(WorkNotePerson.position.asc(), WorkNotePerson.person_id.asc())
            )
            rows = result.all()
        except SQLAlchemyError as e:
            logger.error(f"Error loading person context for {work_id}: {e}")
            raise DatabaseError("Failed to load work note persons") from e

        if not rows:
            return PersonContext()
        return PersonContext(person_ids=[row[0] for row in rows], dept_name=rows[0][1])

    async def save_version(self, note: WorkNote) -> WorkNoteVersion:
        """Snapshot the note's current title/content and prune history to MAX_VERSIONS."""
        try:
            result = await self.session.execute(
                select(func.max(WorkNoteVersion.version_no)).where(
                    WorkNoteVersion.work_note_id == note.id
                )
            )
            next_no = (result.scalar() or 0) + 1
            version = WorkNoteVersion(
                work_note_id=note.id,
                version_no=next_no,
                title=note.title,
                content_raw=note.content_raw,
                category=note.category,
            )
            self.session.add(version)
            await self.session.flush()

            keep = (
                select(WorkNoteVersion.id)
                .where(WorkNoteVersion.work_note_id == note.id)
                .order_by(WorkNoteVersion.version_no.desc())
                .limit(MAX_VERSIONS)
            )
            await self.session.execute(
                delete(WorkNoteVersion).where(
                    WorkNoteVersion.work_note_id == note.id,
                    WorkNoteVersion.id.not_in(keep),
                )
            )
            return version
        except SQLAlchemyError as e:
            logger.error(f"Error saving version for {note.id}: {e}")
            raise DatabaseError("Failed to save work note version") from e

    async def update_content(
        self,
        work_id: str,
        title: Optional[str] = None,
        content_raw: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Optional[WorkNote]:
        """
        Edit a note, recording the previous content as a version.

        Bumps ``updated_at`` so any in-flight embedding run for the old
        content fails its version check, and clears ``embedded_at`` so the
        note is pending until a run for the new content commits.
        """
        note = await self.get_by_id(work_id)
        if note is None:
            return None

        await self.save_version(note)
        try:
            if title is not None:
                note.title = title
            if content_raw is not None:
                note.content_raw = content_raw
            if category is not None:
                note.category = category
            # strictly newer even when the clock has not ticked
            note.updated_at = max(utc_now(), note.updated_at + timedelta(microseconds=1))
            note.embedded_at = None
            await self.session.flush()
            await self.session.refresh(note)
            return note
        except SQLAlchemyError as e:
            logger.error(f"Error updating work note {work_id}: {e}")
            raise DatabaseError("Failed to update work note") from e

    async def link_persons(self, work_id: str, person_ids: Sequence[str]) -> None:
        """Replace the note's person links, preserving the given order."""
        try:
            await self.session.execute(
                delete(WorkNotePerson).where(WorkNotePerson.work_note_id == work_id)
            )
            for position, person_id in enumerate(person_ids):
                self.session.add(
                    WorkNotePerson(work_note_id=work_id, person_id=person_id, position=position)
                )
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Error linking persons to {work_id}: {e}")
            raise DatabaseError("Failed to link persons") from e
