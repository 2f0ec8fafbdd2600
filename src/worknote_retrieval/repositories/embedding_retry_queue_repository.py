"""Embedding retry queue repository (retry / dead-letter state machine)."""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from worknote_retrieval.database.models import EmbeddingRetryQueueItem, WorkNote, utc_now
from worknote_retrieval.models.retry import RetryOperation, RetryStatus
from worknote_retrieval.repositories.base import BaseRepository
from worknote_retrieval.utils.errors import DatabaseError
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("repositories.retry_queue")

_OPEN_STATUSES = (RetryStatus.PENDING.value, RetryStatus.RETRYING.value)


def compute_backoff(attempt: int, base: float = 2.0) -> timedelta:
    """Exponential backoff: ``base ** attempt`` seconds; the first attempt is immediate."""
    if attempt <= 0:
        return timedelta(0)
    return timedelta(seconds=base ** attempt)


class EmbeddingRetryQueueRepository(BaseRepository[EmbeddingRetryQueueItem]):
    """
    Repository for the embedding retry queue.

    A scheduler polls :meth:`find_due_items`, marks an item ``retrying`` while
    it runs, then deletes it on success or calls :meth:`record_failed_attempt`,
    which puts it back to ``pending`` with backoff or moves it to
    ``dead_letter``. ``dead_letter -> pending`` only happens through
    :meth:`reset_to_pending`, which is guarded by the current status.
    """

    def __init__(self, session: AsyncSession):
        """Initialize retry queue repository."""
        super().__init__(EmbeddingRetryQueueItem, session)

    async def find_by_id(self, id: str) -> Optional[EmbeddingRetryQueueItem]:
        return await self.get_by_id(id)

    async def find_dead_letter_items(
        self, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Tuple[EmbeddingRetryQueueItem, Optional[str]]], int]:
        """
        Page of dead-letter items, newest first, with the note title.

        Returns:
            ([(item, work_title), ...], total dead-letter count)
        """
        try:
            result = await self.session.execute(
                select(EmbeddingRetryQueueItem, WorkNote.title)
                .outerjoin(WorkNote, WorkNote.id == EmbeddingRetryQueueItem.work_note_id)
                .where(EmbeddingRetryQueueItem.status == RetryStatus.DEAD_LETTER.value)
                .order_by(
                    EmbeddingRetryQueueItem.dead_letter_at.desc(),
                    EmbeddingRetryQueueItem.id.asc(),
                )
                .offset(offset)
                .limit(limit)
            )
            rows = [(row[0], row[1]) for row in result.all()]
            total = await self.count(status=RetryStatus.DEAD_LETTER.value)
            return rows, total
        except SQLAlchemyError as e:
            logger.error(f"Error listing dead-letter items: {e}")
            raise DatabaseError("Failed to list dead-letter items") from e

    async def find_due_items(
        self, limit: int = 10, now: Optional[datetime] = None
    ) -> List[Tuple[EmbeddingRetryQueueItem, Optional[str]]]:
        """Pending items whose ``next_retry_at`` has passed, soonest first, with the note title."""
        now = now or utc_now()
        try:
            result = await self.session.execute(
                select(EmbeddingRetryQueueItem, WorkNote.title)
                .outerjoin(WorkNote, WorkNote.id == EmbeddingRetryQueueItem.work_note_id)
                .where(
                    EmbeddingRetryQueueItem.status == RetryStatus.PENDING.value,
                    EmbeddingRetryQueueItem.next_retry_at <= now,
                )
                .order_by(
                    EmbeddingRetryQueueItem.next_retry_at.asc(),
                    EmbeddingRetryQueueItem.id.asc(),
                )
                .limit(limit)
            )
            return [(row[0], row[1]) for row in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing due retry items: {e}")
            raise DatabaseError("Failed to list due retry items") from e

    async def reset_to_pending(self, id: str) -> bool:
        """
        Move a dead-letter item back to pending for another round of retries.

        The UPDATE only matches while the row is still ``dead_letter``; of two
        concurrent resets exactly one changes the row.

        Returns:
            True if the row changed, False if missing or not dead-lettered
        """
        now = utc_now()
        try:
            result = await self.session.execute(
                update(EmbeddingRetryQueueItem)
                .where(
                    EmbeddingRetryQueueItem.id == id,
                    EmbeddingRetryQueueItem.status == RetryStatus.DEAD_LETTER.value,
                )
                .values(
                    status=RetryStatus.PENDING.value,
                    attempt_count=0,
                    next_retry_at=now,
                    updated_at=now,
                    dead_letter_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            changed = (result.rowcount or 0) > 0
            logger.info(f"Reset retry item {id} to pending: changed={changed}")
            return changed
        except SQLAlchemyError as e:
            logger.error(f"Error resetting retry item {id}: {e}")
            raise DatabaseError("Failed to reset retry item") from e

    async def update_status(self, id: str, status: RetryStatus) -> None:
        values: Dict[str, Any] = {"status": status.value, "updated_at": utc_now()}
        if status == RetryStatus.DEAD_LETTER:
            values["dead_letter_at"] = values["updated_at"]
        try:
            await self.session.execute(
                update(EmbeddingRetryQueueItem)
                .where(EmbeddingRetryQueueItem.id == id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error(f"Error updating retry item {id} to {status.value}: {e}")
            raise DatabaseError("Failed to update retry item status") from e

    async def enqueue(
        self,
        work_id: str,
        operation_type: RetryOperation,
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
    ) -> EmbeddingRetryQueueItem:
        """
        Record a failed embedding attempt.

        If an open (pending or retrying) item already exists for the same note
        and operation, it is returned unchanged instead of creating a duplicate.
        """
        try:
            result = await self.session.execute(
                select(EmbeddingRetryQueueItem)
                .where(
                    EmbeddingRetryQueueItem.work_note_id == work_id,
                    EmbeddingRetryQueueItem.operation_type == operation_type.value,
                    EmbeddingRetryQueueItem.status.in_(_OPEN_STATUSES),
                )
                .limit(1)
            )
            existing = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error checking open retry items for {work_id}: {e}")
            raise DatabaseError("Failed to enqueue retry item") from e

        if existing is not None:
            logger.debug(f"Retry item already open for {work_id} ({operation_type.value}): {existing.id}")
            return existing

        now = utc_now()
        item = await self.create(
            work_note_id=work_id,
            operation_type=operation_type.value,
            attempt_count=0,
            max_attempts=max_attempts,
            next_retry_at=now + compute_backoff(0, backoff_base),
            status=RetryStatus.PENDING.value,
            error_message=error_message,
            error_details=json.dumps(error_details) if error_details else None,
            created_at=now,
            updated_at=now,
        )
        logger.info(f"Enqueued embedding retry {item.id} for {work_id} ({operation_type.value})")
        return item

    async def record_failed_attempt(
        self,
        id: str,
        error_message: str,
        backoff_base: float = 2.0,
    ) -> Optional[EmbeddingRetryQueueItem]:
        """
        Count one more failed attempt.

        Schedules the next retry ``backoff_base ** attempt_count`` seconds out,
        or moves the item to ``dead_letter`` once attempts are exhausted.
        """
        item = await self.get_by_id(id)
        if item is None:
            return None

        now = utc_now()
        try:
            item.attempt_count += 1
            item.error_message = error_message
            item.updated_at = now
            if item.attempt_count >= item.max_attempts:
                item.status = RetryStatus.DEAD_LETTER.value
                item.dead_letter_at = now
                item.next_retry_at = None
                logger.warning(
                    f"Retry item {id} for {item.work_note_id} dead-lettered "
                    f"after {item.attempt_count} attempts"
                )
            else:
                item.status = RetryStatus.PENDING.value
                item.next_retry_at = now + compute_backoff(item.attempt_count, backoff_base)
            await self.session.flush()
            return item
        except SQLAlchemyError as e:
            logger.error(f"Error recording failed attempt for {id}: {e}")
            raise DatabaseError("Failed to update retry item") from e

    async def delete_item(self, id: str) -> bool:
        """Remove an item after its retry succeeded."""
        return await self.delete(id)

    async def count_by_status(self) -> Dict[str, int]:
        try:
            result = await self.session.execute(
                select(EmbeddingRetryQueueItem.status, func.count()).group_by(
                    EmbeddingRetryQueueItem.status
                )
            )
            counts = {status.value: 0 for status in RetryStatus}
            for status, count in result.all():
                counts[status] = count
            return counts
        except SQLAlchemyError as e:
            logger.error(f"Error counting retry items by status: {e}")
            raise DatabaseError("Failed to count retry items") from e
