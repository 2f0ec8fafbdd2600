"""Admin endpoints for embedding maintenance and the retry dead-letter queue."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from worknote_retrieval.dependencies import get_embedding_processor, get_session
from worknote_retrieval.models.embedding import EmbeddingStats, ReindexResult
from worknote_retrieval.models.retry import (
    DeadLetterPage,
    RetryQueueItemResponse,
    RetryResetResponse,
    RetryStatus,
)
from worknote_retrieval.repositories.embedding_retry_queue_repository import (
    EmbeddingRetryQueueRepository,
)
from worknote_retrieval.services.embedding_processor import EmbeddingProcessor
from worknote_retrieval.utils.errors import ConflictError, NotFoundError
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("api.admin")

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/reindex-all",
    response_model=ReindexResult,
    summary="Reindex All Work Notes",
    description="Re-embed every work note, paging by creation time. Per-note failures are reported, not raised.",
)
async def reindex_all(
    batch_size: int = Query(10, ge=1, le=500, description="Notes loaded per page"),
    processor: EmbeddingProcessor = Depends(get_embedding_processor),
) -> ReindexResult:
    return await processor.reindex_all(batch_size=batch_size)


@router.post(
    "/reindex/{work_id}",
    summary="Reindex One Work Note",
)
async def reindex_one(
    work_id: str,
    processor: EmbeddingProcessor = Depends(get_embedding_processor),
) -> Dict[str, Any]:
    chunks = await processor.reindex_one(work_id)
    return {"work_id": work_id, "chunks": chunks}


@router.post(
    "/embed-pending",
    response_model=ReindexResult,
    summary="Embed Pending Work Notes",
    description="Embed notes whose embedding marker is unset (new or edited since last embedding).",
)
async def embed_pending(
    batch_size: int = Query(10, ge=1, le=500, description="Notes loaded per page"),
    processor: EmbeddingProcessor = Depends(get_embedding_processor),
) -> ReindexResult:
    return await processor.embed_pending(batch_size=batch_size)


@router.get(
    "/embedding-stats",
    response_model=EmbeddingStats,
    summary="Embedding Coverage",
)
async def embedding_stats(
    processor: EmbeddingProcessor = Depends(get_embedding_processor),
) -> EmbeddingStats:
    return await processor.get_embedding_stats()


@router.get(
    "/embedding-failures",
    response_model=DeadLetterPage,
    summary="List Dead-Letter Embedding Failures",
)
async def list_embedding_failures(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> DeadLetterPage:
    repo = EmbeddingRetryQueueRepository(session)
    rows, total = await repo.find_dead_letter_items(limit=limit, offset=offset)

    items = []
    for item, work_title in rows:
        response = RetryQueueItemResponse.model_validate(item)
        response.work_title = work_title
        items.append(response)

    return DeadLetterPage(items=items, total=total, limit=limit, offset=offset)


@router.post(
    "/embedding-failures/{item_id}/retry",
    response_model=RetryResetResponse,
    status_code=status.HTTP_200_OK,
    summary="Retry Dead-Letter Item",
    description="Move a dead-lettered item back to pending. Returns 409 if the item is not dead-lettered.",
)
async def retry_embedding_failure(
    item_id: str,
    session: AsyncSession = Depends(get_session),
) -> RetryResetResponse:
    repo = EmbeddingRetryQueueRepository(session)
    item = await repo.find_by_id(item_id)
    if item is None:
        raise NotFoundError("Retry queue item", item_id)

    if not await repo.reset_to_pending(item_id):
        # lost a race with another reset, or the item was never dead-lettered
        raise ConflictError(
            f"Retry queue item {item_id} is not in dead_letter status",
            details={"id": item_id, "status": item.status},
        )

    logger.info(f"Dead-letter item {item_id} scheduled for retry")
    return RetryResetResponse(id=item_id, status=RetryStatus.PENDING)
