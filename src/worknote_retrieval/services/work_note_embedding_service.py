"""Embedding hooks for the work note write path."""

import asyncio
from typing import Awaitable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worknote_retrieval.config import RetrySettings, get_settings
from worknote_retrieval.database.session import session_scope
from worknote_retrieval.models.retry import RetryOperation
from worknote_retrieval.models.work_note import PersonContext, WorkNoteDocument
from worknote_retrieval.repositories.embedding_retry_queue_repository import (
    EmbeddingRetryQueueRepository,
)
from worknote_retrieval.services.background import BackgroundTaskRunner
from worknote_retrieval.services.embedding_processor import EmbeddingProcessor
from worknote_retrieval.utils.errors import (
    EmbeddingRateLimitError,
    EmbeddingSkipError,
    NotFoundError,
    classify_failure_reason,
    is_transient,
)
from worknote_retrieval.utils.logging import get_logger, log_error

logger = get_logger("work_note_embedding")


def find_rate_limit(error: BaseException) -> Optional[EmbeddingRateLimitError]:
    """The rate-limit error in ``error``'s cause chain, if any."""
    current: Optional[BaseException] = error
    while current is not None:
        if isinstance(current, EmbeddingRateLimitError):
            return current
        current = current.__cause__
    return None


class WorkNoteEmbeddingService:
    """
    Keeps vectors in step with note creates, updates and deletes.

    The note write itself has already committed when a hook runs; embedding
    outcome never changes that. With ``background=True`` the hook returns a
    detached task at once. Inline callers see ``EmbeddingRateLimitError``
    re-raised so they can report it; every other failure is logged (and
    queued for retry when a retry store is configured). A superseded run is
    logged at warning level and otherwise ignored.
    """

    def __init__(
        self,
        processor: EmbeddingProcessor,
        background: BackgroundTaskRunner,
        retry_session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        retry_settings: Optional[RetrySettings] = None,
    ):
        self.processor = processor
        self.background = background
        self._retry_session_factory = retry_session_factory
        self._retry_settings = retry_settings or get_settings().retry

    async def _enqueue_retry(self, work_id: str, operation: RetryOperation, error: Exception) -> None:
        if self._retry_session_factory is None:
            return
        try:
            async with session_scope(self._retry_session_factory) as session:
                await EmbeddingRetryQueueRepository(session).enqueue(
                    work_id,
                    operation,
                    error_message=str(error),
                    error_details={
                        "reason": classify_failure_reason(error).value,
                        "error_type": type(error).__name__,
                        "transient": is_transient(error),
                    },
                    max_attempts=self._retry_settings.max_attempts,
                    backoff_base=self._retry_settings.backoff_base,
                )
        except Exception as e:
            logger.error(f"Failed to enqueue embedding retry for {work_id}: {e}")

    async def _guarded(
        self,
        work_id: str,
        operation: RetryOperation,
        run: Awaitable[object],
        surface_rate_limit: bool,
    ) -> None:
        try:
            await run
        except EmbeddingSkipError as e:
            logger.warning(
                f"Embedding skipped for {work_id}: {e.message}",
                extra={"work_id": work_id, "reason": e.reason.value},
            )
        except Exception as e:
            log_error(e, context={"work_id": work_id, "operation": operation.value})
            await self._enqueue_retry(work_id, operation, e)
            rate_limited = find_rate_limit(e)
            if surface_rate_limit and rate_limited is not None:
                raise rate_limited from e

    async def _dispatch(
        self,
        work_id: str,
        operation: RetryOperation,
        run: Awaitable[object],
        background: bool,
    ) -> Optional[asyncio.Task]:
        if background:
            return self.background.spawn(
                self._guarded(work_id, operation, run, surface_rate_limit=False),
                name=f"embed:{operation.value}:{work_id}",
                context={"work_id": work_id},
            )
        await self._guarded(work_id, operation, run, surface_rate_limit=True)
        return None

    async def on_created(
        self,
        doc: WorkNoteDocument,
        persons: Optional[PersonContext] = None,
        background: bool = False,
    ) -> Optional[asyncio.Task]:
        run = self.processor.embed_document(doc, persons, expected_updated_at=doc.updated_at)
        return await self._dispatch(doc.id, RetryOperation.CREATE, run, background)

    async def on_updated(
        self,
        doc: WorkNoteDocument,
        previous: Optional[WorkNoteDocument] = None,
        persons: Optional[PersonContext] = None,
        background: bool = False,
    ) -> Optional[asyncio.Task]:
        """
        Re-embed after an edit.

        ``previous`` is the row as it was before the edit; its chunk count
        bounds the stale-chunk cleanup together with version history.
        """
        known = 0
        if previous is not None:
            known = self.processor.estimate_chunk_count(
                previous.id, previous.title, previous.content_raw
            )
        run = self.processor.embed_document(
            doc, persons, expected_updated_at=doc.updated_at, known_chunk_count=known
        )
        return await self._dispatch(doc.id, RetryOperation.UPDATE, run, background)

    async def reembed_only(self, work_id: str) -> None:
        """
        Refresh a note's vectors without touching its content.

        Used when related data (todos, persons) changes. Guarded by the
        note's current ``updated_at``; only ``embedded_at`` moves.
        """
        doc = await self.processor.store.get_by_id(work_id)
        if doc is None:
            raise NotFoundError("Work note", work_id)
        run = self.processor.embed_document(doc, expected_updated_at=doc.updated_at)
        await self._dispatch(work_id, RetryOperation.UPDATE, run, background=False)

    async def estimate_delete_range(self, doc: WorkNoteDocument) -> int:
        """Chunk-id upper bound to capture before the note row is deleted."""
        current = self.processor.estimate_chunk_count(doc.id, doc.title, doc.content_raw)
        return await self.processor.get_max_known_chunk_count(doc.id, current)

    async def on_deleted(
        self,
        work_id: str,
        max_known_chunk_count: int,
        background: bool = False,
    ) -> Optional[asyncio.Task]:
        """Best-effort removal of every chunk id ``[0, max_known_chunk_count)``."""

        async def _cleanup() -> None:
            if max_known_chunk_count <= 0:
                return
            try:
                await self.processor.delete_chunk_range(work_id, 0, max_known_chunk_count)
                logger.info(f"Deleted {max_known_chunk_count} chunk ids for {work_id}")
            except Exception as e:
                logger.error(f"Failed to delete work note chunks for {work_id}: {e}")

        if background:
            return self.background.spawn(_cleanup(), name=f"embed:delete:{work_id}")
        await _cleanup()
        return None
