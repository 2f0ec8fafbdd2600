"""Embedding pipeline: keeps the vector index consistent with the work note store."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from worknote_retrieval.config import PipelineSettings, get_settings
from worknote_retrieval.models.chunk import ChunkMetadata, TextChunk
from worknote_retrieval.models.embedding import EmbeddingStats, ReindexResult, VectorRecord
from worknote_retrieval.models.work_note import PersonContext, WorkNoteDocument
from worknote_retrieval.services.chunking_service import (
    ChunkingService,
    generate_chunk_id,
    parse_chunk_id,
)
from worknote_retrieval.services.document_store import DocumentStore
from worknote_retrieval.services.embedding_service import EmbeddingService
from worknote_retrieval.services.qdrant_service import QdrantService
from worknote_retrieval.utils.errors import (
    ChunkingError,
    EmbeddingFailureReason,
    EmbeddingPipelineError,
    EmbeddingSkipError,
    NotFoundError,
    classify_failure_reason,
)
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("embedding_processor")


def version_token(updated_at: datetime) -> str:
    """Payload tag identifying the note version a vector was computed from."""
    return updated_at.isoformat()


@dataclass
class _PendingDocument:
    """A note whose chunks are queued in the shared embed-pending batch."""

    work_id: str
    expected_updated_at: datetime
    chunks: List[TextChunk] = field(default_factory=list)


class EmbeddingProcessor:
    """
    Chunk, embed, upsert, clean up and mark work notes.

    Per-note run (:meth:`embed_document`):

    1. pre-check the note version (when an expected ``updated_at`` is given)
    2. chunk title + content
    3. embed in bounded batches
    4. upsert every vector before deleting anything
    5. post-check the version; a superseded run deletes what it just wrote
    6. delete stale chunk ids ``[new_count, max_known_count)`` in batches
    7. compare-and-set ``embedded_at`` against the expected ``updated_at``

    Optimistic throughout: there is no lock across the store and the index.
    """

    def __init__(
        self,
        store: DocumentStore,
        chunking_service: ChunkingService,
        embedding_service: EmbeddingService,
        vector_index: QdrantService,
        settings: Optional[PipelineSettings] = None,
    ):
        self.store = store
        self.chunking_service = chunking_service
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.settings = settings or get_settings().pipeline

    # ------------------------------------------------------------------
    # Chunk preparation
    # ------------------------------------------------------------------

    def build_metadata(self, doc: WorkNoteDocument, persons: PersonContext) -> ChunkMetadata:
        return ChunkMetadata(
            work_id=doc.id,
            person_ids=persons.person_ids,
            dept_name=persons.dept_name,
            category=doc.category,
            created_at_bucket=doc.created_at.strftime("%Y-%m-%d"),
            project_id=doc.project_id,
        )

    async def prepare_chunks(
        self, doc: WorkNoteDocument, persons: Optional[PersonContext] = None
    ) -> List[TextChunk]:
        """Chunk a note with its person/department metadata."""
        try:
            if persons is None:
                persons = await self.store.get_person_context(doc.id)
            return self.chunking_service.chunk_work_note(
                doc.id, doc.title, doc.content_raw, self.build_metadata(doc, persons)
            )
        except Exception as e:
            raise EmbeddingPipelineError(
                EmbeddingFailureReason.PREPARE_FAILED,
                f"Failed to prepare chunks for {doc.id}: {e}",
                work_id=doc.id,
            ) from e

    def estimate_chunk_count(self, work_id: str, title: str, content_raw: str) -> int:
        return self.chunking_service.count_chunks(title, content_raw)

    async def get_max_known_chunk_count(self, work_id: str, fallback_count: int) -> int:
        """
        Upper bound on chunk ids that may exist for ``work_id``.

        Combines ``fallback_count`` with the chunk counts of retained prior
        versions and, when authoritative cleanup is enabled, the highest chunk
        index actually stored in the vector index. Lookup failures degrade to
        whatever was gathered so far.
        """
        max_count = max(0, fallback_count)

        try:
            versions = await self.store.get_versions(work_id, self.settings.version_history_limit)
            for version in versions:
                max_count = max(
                    max_count, self.estimate_chunk_count(work_id, version.title, version.content_raw)
                )
        except Exception as e:
            logger.warning(
                f"Failed to inspect versions for chunk cleanup: {e}", extra={"work_id": work_id}
            )

        if self.settings.authoritative_cleanup:
            try:
                for chunk_id in await self.vector_index.list_chunk_ids(work_id):
                    try:
                        owner, index = parse_chunk_id(chunk_id)
                    except ChunkingError:
                        continue
                    if owner == work_id:
                        max_count = max(max_count, index + 1)
            except Exception as e:
                logger.warning(
                    f"Failed to enumerate stored chunks for cleanup: {e}", extra={"work_id": work_id}
                )

        return max_count

    # ------------------------------------------------------------------
    # Vector writes
    # ------------------------------------------------------------------

    async def embed_chunks(
        self, chunks: List[TextChunk], doc_version: Optional[str] = None
    ) -> List[VectorRecord]:
        texts = [chunk.text for chunk in chunks]
        vectors = await self.embedding_service.embed_batch(texts)
        if len(vectors) != len(chunks):
            raise EmbeddingPipelineError(
                EmbeddingFailureReason.PREPARE_FAILED,
                f"Missing embeddings: expected {len(chunks)}, got {len(vectors)}",
            )
        return [
            VectorRecord(
                chunk_id=chunk.chunk_id,
                vector=vector,
                metadata=chunk.metadata,
                doc_version=doc_version,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

    async def delete_chunk_ids_in_batches(self, chunk_ids: List[str]) -> None:
        batch_size = max(1, self.settings.delete_batch_size)
        for start in range(0, len(chunk_ids), batch_size):
            await self.vector_index.delete_by_ids(chunk_ids[start : start + batch_size])

    async def delete_chunk_range(self, work_id: str, start_index: int, end_exclusive: int) -> None:
        if end_exclusive <= start_index:
            return
        await self.delete_chunk_ids_in_batches(
            [generate_chunk_id(work_id, i) for i in range(start_index, end_exclusive)]
        )

    async def delete_stale_chunks(self, work_id: str, new_count: int, max_known_count: int) -> None:
        """Delete chunk ids past the new chunk count; failures are logged, not raised."""
        if max_known_count <= new_count:
            return
        try:
            await self.delete_chunk_range(work_id, new_count, max_known_count)
            logger.debug(
                f"Deleted stale chunks {new_count}..{max_known_count - 1} for {work_id}"
            )
        except Exception as e:
            logger.error(
                f"Error deleting stale chunks for {work_id}: {e}",
                extra={"work_id": work_id, "start": new_count, "end": max_known_count},
            )

    async def rollback_upsert(self, work_id: str, records: List[VectorRecord]) -> None:
        """Best-effort removal of vectors written by a superseded run."""
        chunk_ids = [record.chunk_id for record in records]
        try:
            doc_version = records[0].doc_version if records else None
            if doc_version:
                await self.vector_index.delete_version_points(chunk_ids, work_id, doc_version)
            else:
                await self.delete_chunk_ids_in_batches(chunk_ids)
            logger.info(f"Rolled back {len(chunk_ids)} upserted chunks for {work_id}")
        except Exception as e:
            logger.error(f"Failed to roll back chunk upsert for {work_id}: {e}")

    # ------------------------------------------------------------------
    # Version guard
    # ------------------------------------------------------------------

    async def ensure_current(self, work_id: str, expected_updated_at: datetime) -> WorkNoteDocument:
        """
        Reload the note and confirm it is still at ``expected_updated_at``.

        Raises:
            EmbeddingSkipError: NOT_FOUND or STALE_VERSION
        """
        current = await self.store.get_by_id(work_id)
        if current is None:
            raise EmbeddingSkipError(
                EmbeddingFailureReason.NOT_FOUND, f"Work note {work_id} not found", work_id=work_id
            )
        if current.updated_at != expected_updated_at:
            raise EmbeddingSkipError(
                EmbeddingFailureReason.STALE_VERSION,
                f"Work note {work_id} is stale (expected {expected_updated_at.isoformat()}, "
                f"got {current.updated_at.isoformat()})",
                work_id=work_id,
            )
        return current

    async def _skip_reason_after_failed_cas(self, work_id: str, expected_updated_at: datetime) -> EmbeddingSkipError:
        current = await self.store.get_by_id(work_id)
        if current is None:
            return EmbeddingSkipError(
                EmbeddingFailureReason.NOT_FOUND, f"Work note {work_id} not found", work_id=work_id
            )
        return EmbeddingSkipError(
            EmbeddingFailureReason.STALE_VERSION,
            f"Work note {work_id} is stale (expected {expected_updated_at.isoformat()}, "
            f"got {current.updated_at.isoformat()})",
            work_id=work_id,
        )

    async def commit_document(
        self,
        work_id: str,
        records: List[VectorRecord],
        expected_updated_at: Optional[datetime],
        known_chunk_count: int = 0,
    ) -> None:
        """Steps 4-7: upsert, post-check, stale cleanup, marker update."""
        try:
            await self.vector_index.upsert(records)
        except Exception as e:
            raise EmbeddingPipelineError(
                EmbeddingFailureReason.UPSERT_FAILED,
                f"Failed to upsert chunks for {work_id}: {e}",
                work_id=work_id,
            ) from e

        if expected_updated_at is not None:
            try:
                await self.ensure_current(work_id, expected_updated_at)
            except EmbeddingSkipError:
                await self.rollback_upsert(work_id, records)
                raise

        new_count = len(records)
        max_known = await self.get_max_known_chunk_count(work_id, max(new_count, known_chunk_count))
        await self.delete_stale_chunks(work_id, new_count, max_known)

        if expected_updated_at is None:
            await self.store.update_embedded_at(work_id)
            return

        changed = await self.store.update_embedded_at_if_version_matches(work_id, expected_updated_at)
        if not changed:
            await self.rollback_upsert(work_id, records)
            raise await self._skip_reason_after_failed_cas(work_id, expected_updated_at)

    # ------------------------------------------------------------------
    # Per-note entry points
    # ------------------------------------------------------------------

    async def embed_document(
        self,
        doc: WorkNoteDocument,
        persons: Optional[PersonContext] = None,
        expected_updated_at: Optional[datetime] = None,
        known_chunk_count: int = 0,
    ) -> int:
        """
        Make the vector index reflect ``doc``.

        Args:
            doc: Note snapshot to embed
            persons: Person metadata; loaded from the store when omitted
            expected_updated_at: Version guard; None means unconditional overwrite
            known_chunk_count: Extra lower bound for stale cleanup, e.g. the
                chunk count of the content an update replaced

        Returns:
            Number of chunks written

        Raises:
            EmbeddingSkipError: The note vanished or was superseded
            EmbeddingPipelineError: PREPARE_FAILED / UPSERT_FAILED
        """
        if expected_updated_at is not None:
            await self.ensure_current(doc.id, expected_updated_at)

        chunks = await self.prepare_chunks(doc, persons)

        try:
            records = await self.embed_chunks(chunks, version_token(doc.updated_at))
        except EmbeddingPipelineError:
            raise
        except Exception as e:
            raise EmbeddingPipelineError(
                EmbeddingFailureReason.UPSERT_FAILED,
                f"Failed to embed chunks for {doc.id}: {e}",
                work_id=doc.id,
            ) from e

        await self.commit_document(doc.id, records, expected_updated_at, known_chunk_count)
        logger.info(f"Embedded work note {doc.id}: chunks={len(records)}")
        return len(records)

    async def reindex_one(self, work_id: str) -> int:
        """Re-embed one note from its current row, without the version guard."""
        doc = await self.store.get_by_id(work_id)
        if doc is None:
            raise NotFoundError("Work note", work_id)
        return await self.embed_document(doc)

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def reindex_all(self, batch_size: int = 10) -> ReindexResult:
        """
        Re-embed every note, one at a time, paging by (created_at, id).

        Per-note failures are classified and recorded; they never stop the run.
        """
        stats = await self.store.get_embedding_stats()
        result = ReindexResult(total=stats.total)
        if result.total == 0:
            return result

        logger.info(f"Starting reindex of {result.total} work notes")

        cursor: Optional[Tuple[datetime, str]] = None
        while True:
            notes = await self.store.list_by_cursor(cursor, batch_size)
            if not notes:
                break

            for doc in notes:
                try:
                    await self.embed_document(doc, expected_updated_at=doc.updated_at)
                    result.record_success()
                except Exception as e:
                    result.record_failure(doc.id, classify_failure_reason(e), str(e))
                    logger.error(f"Failed to embed {doc.id}: {e}")

                if result.processed % 10 == 0:
                    logger.info(f"Reindex progress: {result.processed}/{result.total}")

            cursor = (notes[-1].created_at, notes[-1].id)

        result.total = max(result.total, result.processed)
        logger.info(
            f"Reindex complete: {result.succeeded}/{result.total} succeeded, {result.failed} failed"
        )
        return result

    async def _process_pending_batch(self, batch: Dict[str, _PendingDocument]) -> ReindexResult:
        """Embed every queued chunk in one go, then commit each note independently."""
        result = ReindexResult()
        if not batch:
            return result

        documents = list(batch.values())
        all_chunks = [chunk for pending in documents for chunk in pending.chunks]

        try:
            texts = [chunk.text for chunk in all_chunks]
            vectors = await self.embedding_service.embed_batch(texts)
            if len(vectors) != len(all_chunks):
                raise EmbeddingPipelineError(
                    EmbeddingFailureReason.UPSERT_FAILED,
                    f"Missing embeddings: expected {len(all_chunks)}, got {len(vectors)}",
                )
        except Exception as e:
            reason = classify_failure_reason(e, EmbeddingFailureReason.UPSERT_FAILED)
            for pending in documents:
                result.record_failure(pending.work_id, reason, str(e))
            logger.error(f"Batch embedding failed for {len(documents)} notes: {e}")
            return result

        vector_by_chunk = {chunk.chunk_id: vector for chunk, vector in zip(all_chunks, vectors)}

        async def _commit(pending: _PendingDocument) -> None:
            records = [
                VectorRecord(
                    chunk_id=chunk.chunk_id,
                    vector=vector_by_chunk[chunk.chunk_id],
                    metadata=chunk.metadata,
                    doc_version=version_token(pending.expected_updated_at),
                )
                for chunk in pending.chunks
            ]
            await self.commit_document(pending.work_id, records, pending.expected_updated_at)

        outcomes = await asyncio.gather(
            *(_commit(pending) for pending in documents), return_exceptions=True
        )
        for pending, outcome in zip(documents, outcomes):
            if isinstance(outcome, BaseException):
                result.record_failure(pending.work_id, classify_failure_reason(outcome), str(outcome))
                logger.error(f"Failed to commit embeddings for {pending.work_id}: {outcome}")
            else:
                result.record_success()
        return result

    async def embed_pending(self, batch_size: int = 10) -> ReindexResult:
        """
        Embed notes whose ``embedded_at`` is unset.

        Chunks from several notes share one embedding call of up to
        ``max_chunks_per_batch`` chunks; the per-note upsert, cleanup and
        marker update then run as independent concurrent tasks. A note that
        fails is not picked up again within the same run.
        """
        stats = await self.store.get_embedding_stats()
        result = ReindexResult(total=stats.pending)
        if result.total == 0:
            return result

        logger.info(f"Starting batch embedding of {result.total} pending work notes")

        failed_ids: Set[str] = set()
        batch: Dict[str, _PendingDocument] = {}
        batch_chunks = 0
        cursor: Optional[Tuple[datetime, str]] = None

        async def flush() -> None:
            nonlocal batch, batch_chunks
            batch_result = await self._process_pending_batch(batch)
            result.processed += batch_result.processed
            result.succeeded += batch_result.succeeded
            result.failed += batch_result.failed
            result.errors.extend(batch_result.errors)
            failed_ids.update(error.work_id for error in batch_result.errors)
            batch = {}
            batch_chunks = 0
            logger.info(f"Embed-pending progress: {result.processed}/{result.total}")

        while True:
            notes = await self.store.list_unembedded(batch_size, after=cursor)
            if not notes:
                break
            cursor = (notes[-1].created_at, notes[-1].id)

            for doc in notes:
                if doc.id in failed_ids or doc.id in batch:
                    continue
                try:
                    chunks = await self.prepare_chunks(doc)
                except Exception as e:
                    result.record_failure(
                        doc.id,
                        classify_failure_reason(e, EmbeddingFailureReason.PREPARE_FAILED),
                        str(e),
                    )
                    failed_ids.add(doc.id)
                    logger.error(f"Failed to prepare {doc.id}: {e}")
                    continue

                batch[doc.id] = _PendingDocument(doc.id, doc.updated_at, chunks)
                batch_chunks += len(chunks)
                if batch_chunks >= self.settings.max_chunks_per_batch:
                    await flush()

        if batch:
            await flush()

        result.total = max(result.total, result.processed)
        logger.info(
            f"Batch embedding complete: {result.succeeded}/{result.total} succeeded, "
            f"{result.failed} failed"
        )
        return result

    async def get_embedding_stats(self) -> EmbeddingStats:
        return await self.store.get_embedding_stats()
